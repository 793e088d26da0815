"""Knowledge-base retrieval pipeline for multi-tenant chatbots."""

__version__ = "0.1.0"
