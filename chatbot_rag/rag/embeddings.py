"""Embedding generation for chunks and queries.

Batches texts through the embedding vendor sequentially, with a delay
between batches for rate limiting, and tracks token usage and cost.
"""
import asyncio
import math
from dataclasses import dataclass
from typing import List, Tuple

import structlog

from chatbot_rag import config
from chatbot_rag.errors import ExternalServiceError
from chatbot_rag.llm_client import EmbeddingClient
from chatbot_rag.rag.chunker import Chunk

logger = structlog.get_logger()

# Vendor cap on texts per embedding request
MAX_BATCH_SIZE = 100
CHARS_PER_TOKEN = 4
MODEL_MAX_TOKENS = 8192


@dataclass
class EmbeddingVector:
    """Embedding for one chunk."""

    chunk_id: str
    values: List[float]
    tokens_used: int


@dataclass
class EmbeddingResult:
    """Embeddings for a list of texts, in input order, with usage totals."""

    embeddings: List[List[float]]
    total_tokens: int
    cost: float


class EmbeddingGenerator:
    """Maps chunk and query text to dense vectors through an EmbeddingClient."""

    def __init__(
        self,
        client: EmbeddingClient,
        model: str = None,
        dimension: int = None,
        batch_size: int = None,
        batch_delay: float = None,
        max_tokens: int = None,
        cost_per_1k_tokens: float = None,
    ):
        """Initialize the embedding generator.

        Args:
            client: Vendor embedding client
            model: Embedding model name (default from config)
            dimension: Vector dimension the model produces (default from config)
            batch_size: Texts per vendor call, capped at 100 (default from config)
            batch_delay: Seconds to wait between batches (default from config)
            max_tokens: Estimated token limit per text before truncation
            cost_per_1k_tokens: Price used for cost accounting
        """
        self.client = client
        self.model = model or config.EMBEDDING_MODEL
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.batch_size = min(batch_size or config.EMBEDDING_BATCH_SIZE, MAX_BATCH_SIZE)
        self.batch_delay = config.EMBEDDING_BATCH_DELAY if batch_delay is None else batch_delay
        self.max_tokens = max_tokens or config.EMBEDDING_MAX_TOKENS
        self.cost_per_1k_tokens = (
            config.EMBEDDING_COST_PER_1K if cost_per_1k_tokens is None else cost_per_1k_tokens
        )

    @staticmethod
    def estimate_tokens(text: str) -> float:
        return len(text) / CHARS_PER_TOKEN

    def validate_text_length(self, text: str) -> bool:
        return self.estimate_tokens(text) <= self.max_tokens

    def truncate_text(self, text: str) -> str:
        """Truncate text so its estimated token count fits the model limit."""
        if self.validate_text_length(text):
            return text

        max_chars = self.max_tokens * CHARS_PER_TOKEN
        logger.warning(
            "embedding_text_truncated",
            original_length=len(text),
            truncated_length=max_chars,
        )
        return text[:max_chars]

    def calculate_cost(self, tokens: int) -> float:
        return (tokens / 1000) * self.cost_per_1k_tokens

    async def embed_batch(self, texts: List[str]) -> EmbeddingResult:
        """Generate embeddings for a list of texts.

        Batches are sent strictly one after another. A failed batch aborts
        the whole operation.

        Args:
            texts: Texts to embed

        Returns:
            EmbeddingResult with vectors in the same order as texts

        Raises:
            ExternalServiceError: If a vendor call fails or returns the wrong
                number of vectors
        """
        if not texts:
            return EmbeddingResult(embeddings=[], total_tokens=0, cost=0.0)

        embeddings: List[List[float]] = []
        total_tokens = 0
        total_cost = 0.0
        batch_count = math.ceil(len(texts) / self.batch_size)

        for batch_number, start in enumerate(range(0, len(texts), self.batch_size), 1):
            batch = [self.truncate_text(text) for text in texts[start : start + self.batch_size]]

            logger.debug(
                "embedding_batch_started",
                batch=batch_number,
                batch_count=batch_count,
                batch_size=len(batch),
            )

            response = await self.client.embed(batch, self.model)

            if len(response.embeddings) != len(batch):
                logger.error(
                    "embedding_count_mismatch",
                    expected=len(batch),
                    received=len(response.embeddings),
                )
                raise ExternalServiceError(
                    "embeddings",
                    f"expected {len(batch)} vectors, received {len(response.embeddings)}",
                )

            embeddings.extend(response.embeddings)
            total_tokens += response.total_tokens
            total_cost += self.calculate_cost(response.total_tokens)

            # Rate limiting - wait between batches
            if batch_number < batch_count:
                await asyncio.sleep(self.batch_delay)

        logger.info(
            "embeddings_generated",
            count=len(embeddings),
            total_tokens=total_tokens,
            cost=round(total_cost, 6),
        )

        return EmbeddingResult(embeddings=embeddings, total_tokens=total_tokens, cost=total_cost)

    async def embed_chunks(self, chunks: List[Chunk]) -> Tuple[List[EmbeddingVector], EmbeddingResult]:
        """Generate one EmbeddingVector per chunk, in chunk order."""
        result = await self.embed_batch([chunk.content for chunk in chunks])

        vectors = [
            EmbeddingVector(
                chunk_id=chunk.id,
                values=values,
                tokens_used=math.ceil(self.estimate_tokens(chunk.content)),
            )
            for chunk, values in zip(chunks, result.embeddings)
        ]
        return vectors, result

    async def embed_single(self, text: str) -> List[float]:
        """Generate an embedding for one query string (no batching, no delay)."""
        response = await self.client.embed([self.truncate_text(text)], self.model)

        if len(response.embeddings) != 1:
            raise ExternalServiceError(
                "embeddings", f"expected 1 vector, received {len(response.embeddings)}"
            )

        return response.embeddings[0]

    def get_model_info(self) -> dict:
        return {
            "name": self.model,
            "max_tokens": MODEL_MAX_TOKENS,
            "dimensions": self.dimension,
            "cost_per_1k_tokens": self.cost_per_1k_tokens,
        }
