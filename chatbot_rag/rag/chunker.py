"""Text chunking with word overlap for the RAG pipeline.

Packs whole words greedily into character-bounded chunks, never splitting a
word.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from chatbot_rag import config
from chatbot_rag.errors import ValidationError

logger = structlog.get_logger()

# Overlap is configured in characters and applied as whole words
CHARS_PER_OVERLAP_WORD = 10


@dataclass(frozen=True)
class ChunkMetadata:
    """Positional and provenance metadata carried into the vector index."""

    chunk_index: int
    total_chunks: int = 0
    document_id: str = ""
    knowledge_base_id: str = ""
    tenant_id: str = ""
    document_type: str = ""
    source_document: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to index-safe primitives."""
        return {
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "document_id": self.document_id,
            "knowledge_base_id": self.knowledge_base_id,
            "tenant_id": self.tenant_id,
            "document_type": self.document_type,
            "source_document": self.source_document,
            "created_at": self.created_at.isoformat() if self.created_at else "",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkMetadata":
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at) if created_at else None
        return cls(
            chunk_index=int(data.get("chunk_index", 0)),
            total_chunks=int(data.get("total_chunks", 0)),
            document_id=str(data.get("document_id", "")),
            knowledge_base_id=str(data.get("knowledge_base_id", "")),
            tenant_id=str(data.get("tenant_id", "")),
            document_type=str(data.get("document_type", "")),
            source_document=str(data.get("source_document", "")),
            created_at=created_at,
        )


@dataclass(frozen=True)
class Chunk:
    """A chunk of document text with word positions (inclusive)."""

    id: str
    content: str
    start_index: int
    end_index: int
    metadata: ChunkMetadata


class TextChunker:
    """Word-packing text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Character budget of each chunk (default from config)
            overlap: Overlap budget in characters (default from config)
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.overlap = config.CHUNK_OVERLAP if overlap is None else overlap

        if self.chunk_size <= 0:
            raise ValidationError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.overlap < 0:
            raise ValidationError(f"Overlap must not be negative, got {self.overlap}")
        if self.overlap >= self.chunk_size:
            raise ValidationError(
                f"Overlap ({self.overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            overlap=self.overlap,
            overlap_words=self.overlap_words,
        )

    @property
    def overlap_words(self) -> int:
        """Number of trailing words repeated at the start of the next chunk."""
        return self.overlap // CHARS_PER_OVERLAP_WORD

    def chunk(self, content: str) -> List[Chunk]:
        """Split text into overlapping chunks.

        Args:
            content: Normalized document text

        Returns:
            List of Chunk objects with total_chunks set
        """
        words = content.split()
        if not words:
            return []

        spans = []
        current: List[str] = []
        current_length = 0
        start_index = 0

        for i, word in enumerate(words):
            potential_length = current_length + (1 if current else 0) + len(word)

            if potential_length > self.chunk_size and current:
                spans.append((current, start_index, i - 1))

                seed = current[-self.overlap_words:] if self.overlap_words else []
                start_index = i - len(seed)
                current = seed + [word]
                current_length = len(" ".join(current))
            else:
                current = current + [word]
                current_length = potential_length

        spans.append((current, start_index, len(words) - 1))

        # Second pass: total_chunks is only known once iteration is complete
        total = len(spans)
        chunks = [
            Chunk(
                id=f"chunk_{index}",
                content=" ".join(span_words),
                start_index=start,
                end_index=end,
                metadata=ChunkMetadata(chunk_index=index, total_chunks=total),
            )
            for index, (span_words, start, end) in enumerate(spans)
        ]

        logger.debug(
            "text_chunked",
            text_length=len(content),
            chunk_count=total,
            avg_chunk_size=sum(len(c.content) for c in chunks) // total,
        )

        return chunks

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.overlap,
        }

    def create_index_chunks(
        self,
        content: str,
        document_id: str,
        knowledge_base_id: str,
        tenant_id: str,
        document_type: str,
        source_document: Optional[str] = None,
    ) -> List[Chunk]:
        """Chunk text and tag the chunks for the vector index."""
        return tag_for_index(
            self.chunk(content),
            document_id=document_id,
            knowledge_base_id=knowledge_base_id,
            tenant_id=tenant_id,
            document_type=document_type,
            source_document=source_document,
        )


def tag_for_index(
    chunks: List[Chunk],
    document_id: str,
    knowledge_base_id: str,
    tenant_id: str,
    document_type: str,
    source_document: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> List[Chunk]:
    """Stamp tenancy and provenance metadata onto chunks.

    Chunk ids become "<document_id>_chunk_<index>" so they are unique within
    a shared index and stable when a document is ingested again.

    Raises:
        ValidationError: If any identifier is missing
    """
    missing = [
        name
        for name, value in (
            ("document_id", document_id),
            ("knowledge_base_id", knowledge_base_id),
            ("tenant_id", tenant_id),
        )
        if not value
    ]
    if missing:
        raise ValidationError(f"Missing required identifiers: {', '.join(missing)}")

    created_at = created_at or datetime.now(timezone.utc)

    return [
        replace(
            chunk,
            id=f"{document_id}_chunk_{chunk.metadata.chunk_index}",
            metadata=replace(
                chunk.metadata,
                document_id=document_id,
                knowledge_base_id=knowledge_base_id,
                tenant_id=tenant_id,
                document_type=document_type,
                source_document=source_document or document_id,
                created_at=created_at,
            ),
        )
        for chunk in chunks
    ]


# Singleton instance for convenience
_chunker_instance = None


def get_chunker() -> TextChunker:
    """Get a singleton text chunker instance.

    Returns:
        TextChunker instance with default config
    """
    global _chunker_instance
    if _chunker_instance is None:
        _chunker_instance = TextChunker()
    return _chunker_instance


# Convenience function
def chunk_text(text: str) -> List[Chunk]:
    """Chunk text using default chunker (convenience function)."""
    return get_chunker().chunk(text)
