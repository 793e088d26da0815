"""Retriever for semantic search over a knowledge base.

Handles:
- Query embedding generation
- Tenant-scoped similarity search
- Context assembly under a character budget
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from chatbot_rag import config
from chatbot_rag.rag.embeddings import EmbeddingGenerator
from chatbot_rag.rag.index import SearchResult, SimilarityIndex

logger = structlog.get_logger()


@dataclass
class RetrievedContext:
    """Assembled prompt context and the results it was built from."""

    context: str
    results: List[SearchResult] = field(default_factory=list)


def format_context_entry(result: SearchResult) -> str:
    return f"Document: {result.metadata.source_document}\nContent: {result.content}\n\n"


def build_context(results: List[SearchResult], max_context_length: int = None) -> str:
    """Concatenate results into prompt context, best first.

    Stops at the first entry that would push the total past
    max_context_length characters, so the context never exceeds it.
    """
    max_context_length = config.MAX_CONTEXT_LENGTH if max_context_length is None else max_context_length

    parts = []
    total_chars = 0

    for result in results:
        entry = format_context_entry(result)
        if total_chars + len(entry) > max_context_length:
            break
        parts.append(entry)
        total_chars += len(entry)

    context = "".join(parts).strip()

    logger.debug(
        "context_formatted",
        num_chunks=len(parts),
        total_chars=len(context),
        max_context_length=max_context_length,
    )

    return context


class Retriever:
    """Semantic retriever for RAG pipeline."""

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        index: SimilarityIndex,
        top_k: int = None,
        max_context_length: int = None,
    ):
        """Initialize the retriever.

        Args:
            embedder: Embedding generator used for queries
            index: Similarity index to search
            top_k: Number of results to retrieve (default from config)
            max_context_length: Context budget in characters (default from config)
        """
        self.embedder = embedder
        self.index = index
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.max_context_length = max_context_length or config.MAX_CONTEXT_LENGTH

        logger.info(
            "retriever_initialized",
            top_k=self.top_k,
            max_context_length=self.max_context_length,
        )

    async def retrieve(
        self,
        query: str,
        knowledge_base_id: str,
        tenant_id: str,
        top_k: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchResult]:
        """Retrieve relevant chunks for a query.

        Args:
            query: User query text
            knowledge_base_id: Knowledge base to search
            tenant_id: Tenant that owns the knowledge base
            top_k: Number of results to return (overrides default)
            filter: Extra metadata filter

        Returns:
            List of SearchResult objects, best first

        Raises:
            ExternalServiceError: If embedding or search fails
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        top_k = top_k or self.top_k

        logger.info(
            "retrieval_started",
            query_length=len(query),
            knowledge_base_id=knowledge_base_id,
            top_k=top_k,
        )

        query_vector = await self.embedder.embed_single(query)

        results = await self.index.search_similar_chunks(
            query_vector,
            knowledge_base_id=knowledge_base_id,
            tenant_id=tenant_id,
            top_k=top_k,
            filter=filter,
        )

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results

    async def retrieve_context(
        self,
        query: str,
        knowledge_base_id: str,
        tenant_id: str,
        top_k: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None,
        max_context_length: Optional[int] = None,
    ) -> RetrievedContext:
        """Retrieve and format context for an LLM prompt."""
        results = await self.retrieve(
            query,
            knowledge_base_id=knowledge_base_id,
            tenant_id=tenant_id,
            top_k=top_k,
            filter=filter,
        )

        context = build_context(results, max_context_length or self.max_context_length)
        return RetrievedContext(context=context, results=results)
