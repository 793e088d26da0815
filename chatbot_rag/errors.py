"""Error taxonomy for the retrieval pipeline."""
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable = False


class DocumentProcessingError(PipelineError):
    """Raised when a supported document cannot be decoded or parsed."""

    def __init__(self, filename: str, message: str, cause: Optional[BaseException] = None):
        self.filename = filename
        self.cause = cause
        super().__init__(f"Failed to process document {filename}: {message}")


class UnsupportedFormatError(DocumentProcessingError):
    """Raised when a file's type has no extractor."""

    def __init__(self, filename: str, doc_type: str):
        self.doc_type = doc_type
        super().__init__(filename, f"File type {doc_type} is not supported")


class ExternalServiceError(PipelineError):
    """Raised when an embedding, completion or vector index call fails."""

    retryable = True

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class ValidationError(PipelineError, ValueError):
    """Raised when required identifiers or parameters are missing or invalid."""

    pass
