"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document normalization (text, HTML, Markdown, JSON, Word)
- Document chunking with word overlap
- Embedding generation
- Tenant-scoped vector storage and search
- Context retrieval, document upload and chat
"""
