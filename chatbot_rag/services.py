"""Wiring of the pipeline components from configuration."""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from chatbot_rag import config
from chatbot_rag.llm_client import CompletionClient, EmbeddingClient, OpenAIClient
from chatbot_rag.rag.chat import ChatService
from chatbot_rag.rag.chunker import TextChunker
from chatbot_rag.rag.embeddings import EmbeddingGenerator
from chatbot_rag.rag.index import SimilarityIndex
from chatbot_rag.rag.ingest import IngestPipeline
from chatbot_rag.rag.normalizer import DocumentNormalizer
from chatbot_rag.rag.retriever import Retriever
from chatbot_rag.rag.store_faiss import FAISSVectorIndex, VectorIndexClient

logger = structlog.get_logger()


@dataclass
class RAGServices:
    """The components shared by the HTTP app and the CLI."""

    index: SimilarityIndex
    retriever: Retriever
    ingest: IngestPipeline
    chat: ChatService


def build_services(
    embedding_client: Optional[EmbeddingClient] = None,
    completion_client: Optional[CompletionClient] = None,
    index_client: Optional[VectorIndexClient] = None,
) -> RAGServices:
    """Build the pipeline with config defaults for anything not provided."""
    if embedding_client is None or completion_client is None:
        vendor = OpenAIClient()
        embedding_client = embedding_client or vendor
        completion_client = completion_client or vendor

    if index_client is None:
        index_dir = Path(config.VECTOR_INDEX_DIR) if config.VECTOR_INDEX_DIR else None
        index_client = FAISSVectorIndex(index_dir=index_dir)

    embedder = EmbeddingGenerator(embedding_client)
    index = SimilarityIndex(index_client, dimension=embedder.dimension)
    retriever = Retriever(embedder, index)

    services = RAGServices(
        index=index,
        retriever=retriever,
        ingest=IngestPipeline(DocumentNormalizer(), TextChunker(), embedder, index),
        chat=ChatService(retriever, completion_client),
    )

    logger.info(
        "services_built",
        index_name=index.index_name,
        embedding_model=embedder.model,
        chat_model=services.chat.model,
    )

    return services


# Singleton instance for convenience
_services_instance: Optional[RAGServices] = None


def get_services() -> RAGServices:
    """Get or create the default services instance."""
    global _services_instance
    if _services_instance is None:
        _services_instance = build_services()
    return _services_instance
