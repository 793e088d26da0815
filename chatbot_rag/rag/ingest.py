"""Upload pipeline for indexing knowledge base documents.

Orchestrates:
- Document normalization
- Text chunking and tenancy tagging
- Embedding generation
- Vector storage
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from chatbot_rag.errors import PipelineError, ValidationError
from chatbot_rag.rag.chunker import TextChunker, tag_for_index
from chatbot_rag.rag.embeddings import EmbeddingGenerator
from chatbot_rag.rag.index import SimilarityIndex
from chatbot_rag.rag.normalizer import DocumentNormalizer

logger = structlog.get_logger()


@dataclass
class UploadedFile:
    """Raw bytes of one uploaded file."""

    filename: str
    data: bytes
    content_type: Optional[str] = None


@dataclass
class IngestResult:
    """Outcome of indexing one document."""

    file_name: str
    document_id: str
    document_type: str
    chunks_created: int
    embeddings_generated: int
    tokens_used: int
    cost: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "documentId": self.document_id,
            "documentType": self.document_type,
            "status": "success",
            "chunks": self.chunks_created,
            "embeddings": self.embeddings_generated,
            "tokensUsed": self.tokens_used,
            "cost": self.cost,
        }


@dataclass
class IngestError:
    file_name: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"fileName": self.file_name, "error": self.error}


@dataclass
class UploadReport:
    """Per-file results and errors of a batch upload."""

    results: List[IngestResult] = field(default_factory=list)
    errors: List[IngestError] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return len(self.results)

    @property
    def total_errors(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "results": [result.to_dict() for result in self.results],
            "errors": [error.to_dict() for error in self.errors],
            "totalProcessed": self.total_processed,
            "totalErrors": self.total_errors,
        }


class IngestPipeline:
    """Pipeline for ingesting uploaded documents into a knowledge base."""

    def __init__(
        self,
        normalizer: DocumentNormalizer,
        chunker: TextChunker,
        embedder: EmbeddingGenerator,
        index: SimilarityIndex,
    ):
        self.normalizer = normalizer
        self.chunker = chunker
        self.embedder = embedder
        self.index = index

        logger.info(
            "ingest_pipeline_initialized",
            chunk_size=chunker.chunk_size,
            overlap=chunker.overlap,
            embedding_model=embedder.model,
            index_name=index.index_name,
        )

    async def ingest_document(
        self,
        upload: UploadedFile,
        knowledge_base_id: str,
        tenant_id: str,
        document_id: Optional[str] = None,
        chunker: Optional[TextChunker] = None,
    ) -> IngestResult:
        """Ingest a single uploaded file.

        Args:
            upload: The uploaded file
            knowledge_base_id: Target knowledge base
            tenant_id: Tenant that owns the knowledge base
            document_id: Id to store the document under (generated if not given)
            chunker: Chunker to use instead of the pipeline default

        Returns:
            IngestResult with chunk, embedding and cost counts

        Raises:
            DocumentProcessingError: If the file cannot be normalized
            ExternalServiceError: If embedding or storage fails
            ValidationError: If identifiers are missing
        """
        chunker = chunker or self.chunker
        document_id = document_id or str(uuid.uuid4())

        logger.info(
            "ingesting_file",
            file_name=upload.filename,
            document_id=document_id,
            knowledge_base_id=knowledge_base_id,
        )

        doc = self.normalizer.process(upload.data, upload.filename, upload.content_type)

        chunks = tag_for_index(
            chunker.chunk(doc.content),
            document_id=document_id,
            knowledge_base_id=knowledge_base_id,
            tenant_id=tenant_id,
            document_type=doc.type.value,
            source_document=upload.filename,
        )

        if not chunks:
            logger.warning("no_chunks_created", file_name=upload.filename, document_id=document_id)
            return IngestResult(
                file_name=upload.filename,
                document_id=document_id,
                document_type=doc.type.value,
                chunks_created=0,
                embeddings_generated=0,
                tokens_used=0,
                cost=0.0,
            )

        vectors, usage = await self.embedder.embed_chunks(chunks)
        try:
            await self.index.store_document_chunks(chunks, [vector.values for vector in vectors])
        except Exception as e:
            logger.error(
                "chunk_store_failed",
                file_name=upload.filename,
                document_id=document_id,
                error=str(e),
            )
            await self._discard_partial_document(document_id, tenant_id)
            raise

        logger.info(
            "file_ingested",
            file_name=upload.filename,
            document_id=document_id,
            chunks_created=len(chunks),
            tokens_used=usage.total_tokens,
        )

        return IngestResult(
            file_name=upload.filename,
            document_id=document_id,
            document_type=doc.type.value,
            chunks_created=len(chunks),
            embeddings_generated=len(vectors),
            tokens_used=usage.total_tokens,
            cost=usage.cost,
        )

    async def upload_documents(
        self,
        files: List[UploadedFile],
        knowledge_base_id: str,
        tenant_id: str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> UploadReport:
        """Ingest a batch of files, one at a time.

        A failure on one file is recorded in the report and does not stop the
        others.

        Args:
            files: Uploaded files, processed in order
            knowledge_base_id: Target knowledge base
            tenant_id: Tenant that owns the knowledge base
            chunk_size: Chunk size override for this upload
            overlap: Overlap override for this upload
            progress_callback: Optional callback function(current, total, file_name)

        Returns:
            UploadReport

        Raises:
            ValidationError: If identifiers or files are missing, or the
                chunking overrides are invalid
        """
        if not knowledge_base_id or not tenant_id:
            raise ValidationError("knowledge_base_id and tenant_id are required")
        if not files:
            raise ValidationError("No files provided")

        chunker = self.chunker
        if chunk_size is not None or overlap is not None:
            chunker = TextChunker(
                chunk_size=self.chunker.chunk_size if chunk_size is None else chunk_size,
                overlap=self.chunker.overlap if overlap is None else overlap,
            )

        logger.info(
            "upload_started",
            knowledge_base_id=knowledge_base_id,
            file_count=len(files),
            chunk_size=chunker.chunk_size,
            overlap=chunker.overlap,
        )

        report = UploadReport()

        for idx, upload in enumerate(files, 1):
            if progress_callback:
                progress_callback(idx, len(files), upload.filename)

            try:
                result = await self.ingest_document(
                    upload, knowledge_base_id, tenant_id, chunker=chunker
                )
                report.results.append(result)

            except Exception as e:
                logger.error(
                    "file_ingestion_failed",
                    file_name=upload.filename,
                    knowledge_base_id=knowledge_base_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report.errors.append(IngestError(file_name=upload.filename, error=str(e)))
                # Continue with next file instead of failing entirely

        logger.info(
            "upload_completed",
            knowledge_base_id=knowledge_base_id,
            total_processed=report.total_processed,
            total_errors=report.total_errors,
        )

        return report

    async def reindex_document(
        self,
        upload: UploadedFile,
        knowledge_base_id: str,
        tenant_id: str,
        document_id: str,
        chunker: Optional[TextChunker] = None,
    ) -> IngestResult:
        """Replace a document's chunks with a fresh ingestion of the file."""
        if not document_id:
            raise ValidationError("document_id is required to reindex")

        deleted = await self.index.delete_document_chunks(document_id, tenant_id=tenant_id)
        logger.info("document_reindex_started", document_id=document_id, chunks_removed=deleted)

        return await self.ingest_document(
            upload, knowledge_base_id, tenant_id, document_id=document_id, chunker=chunker
        )

    async def _discard_partial_document(self, document_id: str, tenant_id: str) -> None:
        """Remove whatever batches of a failed store did land in the index."""
        try:
            deleted = await self.index.delete_document_chunks(document_id, tenant_id=tenant_id)
        except PipelineError as e:
            logger.warning("partial_document_cleanup_failed", document_id=document_id, error=str(e))
            return
        if deleted:
            logger.info("partial_document_removed", document_id=document_id, chunks_removed=deleted)

    async def delete_document(
        self,
        document_id: str,
        tenant_id: Optional[str] = None,
        knowledge_base_id: Optional[str] = None,
    ) -> int:
        return await self.index.delete_document_chunks(
            document_id, tenant_id=tenant_id, knowledge_base_id=knowledge_base_id
        )

    async def delete_knowledge_base(self, knowledge_base_id: str, tenant_id: Optional[str] = None) -> int:
        return await self.index.delete_knowledge_base_chunks(knowledge_base_id, tenant_id=tenant_id)
