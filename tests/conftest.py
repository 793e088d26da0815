"""Pytest configuration and fixtures for the pipeline tests."""
import math
import zlib
from typing import Dict, List, Optional

import pytest

from chatbot_rag.errors import ExternalServiceError
from chatbot_rag.llm_client import (
    CompletionClient,
    CompletionResponse,
    EmbeddingClient,
    EmbeddingResponse,
)
from chatbot_rag.rag.chat import ChatService
from chatbot_rag.rag.chunker import TextChunker
from chatbot_rag.rag.embeddings import EmbeddingGenerator
from chatbot_rag.rag.index import SimilarityIndex
from chatbot_rag.rag.ingest import IngestPipeline
from chatbot_rag.rag.normalizer import DocumentNormalizer
from chatbot_rag.rag.retriever import Retriever
from chatbot_rag.rag.store_faiss import FAISSVectorIndex
from chatbot_rag.services import RAGServices

# Test configuration
DIMENSION = 256
INDEX_NAME = "test-index"


def text_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    """Deterministic bag-of-words vector: texts sharing words point the same way."""
    vector = [0.0] * dimension
    for word in text.lower().split():
        vector[zlib.crc32(word.encode("utf-8")) % dimension] += 1.0
    return vector


class FakeEmbeddingClient(EmbeddingClient):
    """Embedding client that records calls and can be told to fail."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls: List[List[str]] = []
        self.fail_on: Optional[str] = None

    async def embed(self, texts: List[str], model: str) -> EmbeddingResponse:
        self.calls.append(list(texts))
        if self.fail_on is not None and any(self.fail_on in text for text in texts):
            raise ExternalServiceError("embeddings", "HTTP 500: upstream failure", status_code=500)
        return EmbeddingResponse(
            embeddings=[text_vector(text, self.dimension) for text in texts],
            total_tokens=sum(math.ceil(len(text) / 4) for text in texts),
        )


class FakeCompletionClient(CompletionClient):
    def __init__(self, content: str = "Here is what the knowledge base says.", total_tokens: int = 150):
        self.content = content
        self.total_tokens = total_tokens
        self.calls: List[Dict] = []
        self.error: Optional[Exception] = None

    async def complete(self, messages, model, temperature=None, max_tokens=None) -> CompletionResponse:
        self.calls.append({
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.error is not None:
            raise self.error
        return CompletionResponse(content=self.content, total_tokens=self.total_tokens)


@pytest.fixture
def embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def faiss_client() -> FAISSVectorIndex:
    """In-memory FAISS index client."""
    return FAISSVectorIndex()


@pytest.fixture
def embedder(embedding_client) -> EmbeddingGenerator:
    return EmbeddingGenerator(embedding_client, dimension=DIMENSION, batch_delay=0)


@pytest.fixture
def similarity_index(faiss_client) -> SimilarityIndex:
    return SimilarityIndex(faiss_client, index_name=INDEX_NAME, dimension=DIMENSION, poll_interval=0)


@pytest.fixture
def retriever(embedder, similarity_index) -> Retriever:
    return Retriever(embedder, similarity_index, top_k=5, max_context_length=4000)


@pytest.fixture
def pipeline(embedder, similarity_index) -> IngestPipeline:
    return IngestPipeline(
        DocumentNormalizer(),
        TextChunker(chunk_size=1000, overlap=200),
        embedder,
        similarity_index,
    )


@pytest.fixture
def chat_service(retriever, completion_client) -> ChatService:
    return ChatService(retriever, completion_client, model="test-chat-model")


@pytest.fixture
def services(similarity_index, retriever, pipeline, chat_service) -> RAGServices:
    return RAGServices(
        index=similarity_index,
        retriever=retriever,
        ingest=pipeline,
        chat=chat_service,
    )
