"""Document normalizer for turning uploaded files into plaintext.

Handles:
- MIME type / extension resolution
- Per-format text extraction (plain text, HTML, Markdown, JSON, Word)
- Basic document statistics
"""
import io
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Callable, Dict, List, Optional

import docx
import structlog

from chatbot_rag.errors import DocumentProcessingError, UnsupportedFormatError

logger = structlog.get_logger()


class DocumentType(str, Enum):
    TEXT = "TEXT"
    HTML = "HTML"
    MARKDOWN = "MARKDOWN"
    JSON = "JSON"
    WORD_DOC = "WORD_DOC"
    PDF = "PDF"


TYPE_MAP: Dict[str, DocumentType] = {
    "application/pdf": DocumentType.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentType.WORD_DOC,
    "text/plain": DocumentType.TEXT,
    "text/html": DocumentType.HTML,
    "text/markdown": DocumentType.MARKDOWN,
    "text/x-markdown": DocumentType.MARKDOWN,
    "application/json": DocumentType.JSON,
    ".pdf": DocumentType.PDF,
    ".docx": DocumentType.WORD_DOC,
    ".txt": DocumentType.TEXT,
    ".html": DocumentType.HTML,
    ".htm": DocumentType.HTML,
    ".md": DocumentType.MARKDOWN,
    ".markdown": DocumentType.MARKDOWN,
    ".json": DocumentType.JSON,
}

# Keys whose values are emitted first when flattening JSON objects
JSON_PRIORITY_FIELDS = ("text", "content", "description", "title", "name", "body")
JSON_MAX_DEPTH = 10

GENERIC_CONTENT_TYPES = ("", "application/octet-stream")


@dataclass(frozen=True)
class DocumentMetadata:
    word_count: int
    char_count: int
    extracted_at: datetime
    pages: Optional[int] = None


@dataclass(frozen=True)
class NormalizedDocument:
    """Plaintext extracted from one uploaded file."""

    content: str
    type: DocumentType
    metadata: DocumentMetadata


def resolve_type(mime_or_ext: Optional[str]) -> DocumentType:
    """Map a MIME type or file extension to a DocumentType.

    Unknown values resolve to TEXT; this never raises.
    """
    if not mime_or_ext:
        return DocumentType.TEXT

    key = str(mime_or_ext).split(";", 1)[0].strip().lower()
    if key in TYPE_MAP:
        return TYPE_MAP[key]
    if key and not key.startswith(".") and "/" not in key:
        return TYPE_MAP.get(f".{key}", DocumentType.TEXT)
    return DocumentType.TEXT


def type_from_filename(filename: str) -> str:
    """Get the declared type to use for a file uploaded without a MIME type."""
    return PurePath(filename or "").suffix.lower()


def decode_text(data: bytes) -> str:
    """Decode UTF-8, dropping a leading BOM and replacing undecodable bytes."""
    return data.decode("utf-8-sig", errors="replace")


def extract_json_text(data: bytes) -> str:
    return flatten_json(json.loads(decode_text(data)))


def extract_word_text(data: bytes) -> str:
    """Extract raw paragraph and table text from a .docx file."""
    document = docx.Document(io.BytesIO(data))
    parts = [para.text for para in document.paragraphs if para.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" ".join(cells))
    return "\n".join(parts)


def flatten_json(obj: Any, depth: int = 0) -> str:
    """Flatten JSON leaf values into space-joined text.

    Priority fields (text, content, description, title, name, body) come
    before the other keys of an object.
    """
    if depth > JSON_MAX_DEPTH:
        return ""

    if isinstance(obj, str):
        return obj
    if isinstance(obj, bool):
        return "true" if obj else "false"
    if isinstance(obj, (int, float)):
        return str(obj)
    if isinstance(obj, list):
        parts = [flatten_json(item, depth + 1) for item in obj]
    elif isinstance(obj, dict):
        priority = [key for key in obj if key in JSON_PRIORITY_FIELDS]
        remaining = [key for key in obj if key not in JSON_PRIORITY_FIELDS]
        parts = [flatten_json(obj[key], depth + 1) for key in priority + remaining]
    else:
        return ""

    return " ".join(part for part in parts if part)


DEFAULT_EXTRACTORS: Dict[DocumentType, Callable[[bytes], str]] = {
    DocumentType.TEXT: decode_text,
    DocumentType.HTML: decode_text,
    DocumentType.MARKDOWN: decode_text,
    DocumentType.JSON: extract_json_text,
    DocumentType.WORD_DOC: extract_word_text,
}


class DocumentNormalizer:
    """Converts raw upload bytes into a NormalizedDocument."""

    def __init__(self, extractors: Optional[Dict[DocumentType, Callable[[bytes], str]]] = None):
        """Initialize the normalizer.

        Args:
            extractors: Mapping of document type to extraction function. Types
                without an extractor are rejected with UnsupportedFormatError.
                Defaults to every type except PDF.
        """
        self._extractors = dict(DEFAULT_EXTRACTORS if extractors is None else extractors)

        logger.info(
            "normalizer_initialized",
            supported_types=[t.value for t in self.supported_types()],
        )

    def supports(self, doc_type: DocumentType) -> bool:
        return doc_type in self._extractors

    def supported_types(self) -> List[DocumentType]:
        return list(self._extractors)

    def process(self, data: bytes, filename: str, declared_type: Optional[str] = None) -> NormalizedDocument:
        """Extract plaintext and statistics from an uploaded file.

        Args:
            data: Raw file bytes
            filename: Original file name
            declared_type: MIME type or extension; the filename's extension is
                used when missing or generic

        Returns:
            NormalizedDocument with trimmed content

        Raises:
            UnsupportedFormatError: If the resolved type has no extractor
            DocumentProcessingError: If decoding or parsing fails
        """
        if (declared_type or "").strip().lower() in GENERIC_CONTENT_TYPES:
            declared_type = type_from_filename(filename)

        doc_type = resolve_type(declared_type)

        logger.debug(
            "document_type_resolved",
            filename=filename,
            declared_type=declared_type,
            doc_type=doc_type.value,
        )

        if not self.supports(doc_type):
            logger.warning("unsupported_document_type", filename=filename, doc_type=doc_type.value)
            raise UnsupportedFormatError(filename, doc_type.value)

        try:
            content = self._extractors[doc_type](data).strip()
        except Exception as e:
            logger.error(
                "document_extraction_failed",
                filename=filename,
                doc_type=doc_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise DocumentProcessingError(filename, str(e), cause=e) from e

        metadata = DocumentMetadata(
            word_count=len(content.split()),
            char_count=len(content),
            extracted_at=datetime.now(timezone.utc),
        )

        logger.info(
            "document_normalized",
            filename=filename,
            doc_type=doc_type.value,
            word_count=metadata.word_count,
            char_count=metadata.char_count,
        )

        return NormalizedDocument(content=content, type=doc_type, metadata=metadata)


def clean_text(text: str) -> str:
    """Collapse runs of whitespace into single spaces."""
    return re.sub(r"\s+", " ", text).strip()


def calculate_stats(content: str) -> Dict[str, float]:
    """Calculate document statistics.

    Args:
        content: Document text

    Returns:
        Dictionary with character, word, sentence and paragraph counts
    """
    words = content.split()
    sentences = [s for s in re.split(r"[.!?]+", content) if s.strip()]
    paragraphs = [p for p in re.split(r"\n\s*\n", content) if p.strip()]

    return {
        "characters": len(content),
        "words": len(words),
        "sentences": len(sentences),
        "paragraphs": len(paragraphs),
        "average_words_per_sentence": len(words) / max(len(sentences), 1),
        "average_words_per_paragraph": len(words) / max(len(paragraphs), 1),
    }
