"""Tenant-scoped similarity index over a shared vector index.

Handles:
- Lazy index creation and readiness polling
- Batched upsert of tagged chunks
- Similarity search with a mandatory tenancy filter
- Deletion of a document's or a knowledge base's chunks
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional

import structlog

from chatbot_rag import config
from chatbot_rag.errors import ExternalServiceError, PipelineError, ValidationError
from chatbot_rag.rag.chunker import Chunk, ChunkMetadata
from chatbot_rag.rag.store_faiss import VectorIndexClient, VectorRecord

logger = structlog.get_logger()

SERVICE_NAME = "vector_index"


@dataclass
class SearchResult:
    """A single retrieved chunk with its similarity score."""

    id: str
    score: float
    content: str
    metadata: ChunkMetadata

    @property
    def source(self) -> str:
        """Display name of the document this chunk came from."""
        return self.metadata.source_document or self.metadata.document_id


class SimilarityIndex:
    """Stores and searches chunk embeddings, scoped by tenant and knowledge base."""

    def __init__(
        self,
        client: VectorIndexClient,
        index_name: str = None,
        dimension: int = None,
        metric: str = None,
        max_ready_attempts: int = None,
        poll_interval: float = None,
        upsert_batch_size: int = None,
        delete_scan_top_k: int = None,
        call_timeout: float = None,
    ):
        """Initialize the similarity index.

        Args:
            client: Vector index client
            index_name: Name of the shared index (default from config)
            dimension: Vector dimension fixed at creation (default from config)
            metric: Similarity metric (default from config)
            max_ready_attempts: Readiness polls after creation before giving up
            poll_interval: Seconds between readiness polls
            upsert_batch_size: Records per upsert call
            delete_scan_top_k: Match limit when listing chunks to delete
            call_timeout: Seconds allowed for each client call
        """
        self.client = client
        self.index_name = index_name or config.INDEX_NAME
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.metric = metric or config.INDEX_METRIC
        self.max_ready_attempts = max_ready_attempts or config.INDEX_READY_MAX_ATTEMPTS
        self.poll_interval = config.INDEX_READY_POLL_INTERVAL if poll_interval is None else poll_interval
        self.upsert_batch_size = upsert_batch_size or config.INDEX_UPSERT_BATCH_SIZE
        self.delete_scan_top_k = delete_scan_top_k or config.DELETE_SCAN_TOP_K
        self.call_timeout = call_timeout or config.INDEX_CALL_TIMEOUT

        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def _call(self, operation: str, call: Awaitable[Any]) -> Any:
        """Await a client call under the per-call timeout."""
        try:
            async with asyncio.timeout(self.call_timeout):
                return await call
        except PipelineError:
            raise
        except TimeoutError as e:
            logger.error(
                "vector_index_timeout",
                operation=operation,
                index_name=self.index_name,
                timeout=self.call_timeout,
            )
            raise ExternalServiceError(
                SERVICE_NAME, f"{operation} timed out after {self.call_timeout}s"
            ) from e
        except Exception as e:
            logger.error(
                "vector_index_call_failed",
                operation=operation,
                index_name=self.index_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ExternalServiceError(SERVICE_NAME, f"{operation} failed: {e}") from e

    async def initialize(self) -> None:
        """Create the index if it does not exist and wait until it is ready.

        Raises:
            ExternalServiceError: If the index never becomes ready
            ValidationError: If an existing index has a different dimension
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            names = await self._call("list_indexes", self.client.list_indexes())

            if self.index_name not in names:
                logger.info(
                    "vector_index_creating",
                    index_name=self.index_name,
                    dimension=self.dimension,
                    metric=self.metric,
                )
                await self._call(
                    "create_index",
                    self.client.create_index(self.index_name, self.dimension, self.metric),
                )
                await self._call("flush", self.client.flush(self.index_name))
                await self._wait_until_ready()
            else:
                stats = await self._call(
                    "describe_index_stats", self.client.describe_index_stats(self.index_name)
                )
                existing = stats.get("dimension")
                if existing is not None and int(existing) != self.dimension:
                    raise ValidationError(
                        f"Index {self.index_name} has dimension {existing}, "
                        f"expected {self.dimension}"
                    )

            self._initialized = True
            logger.info("vector_index_ready", index_name=self.index_name)

    async def _wait_until_ready(self) -> None:
        for attempt in range(1, self.max_ready_attempts + 1):
            try:
                stats = await self._call(
                    "describe_index_stats", self.client.describe_index_stats(self.index_name)
                )
                if stats.get("ready"):
                    return
            except ExternalServiceError as e:
                logger.warning("vector_index_not_ready", attempt=attempt, error=str(e))

            if attempt < self.max_ready_attempts:
                await asyncio.sleep(self.poll_interval)

        raise ExternalServiceError(
            SERVICE_NAME,
            f"index {self.index_name} not ready after {self.max_ready_attempts} attempts",
        )

    def _check_dimension(self, vector: List[float]) -> None:
        if len(vector) != self.dimension:
            raise ValidationError(
                f"Vector dimension {len(vector)} does not match index dimension {self.dimension}"
            )

    async def store_document_chunks(self, chunks: List[Chunk], vectors: List[List[float]]) -> int:
        """Upsert tagged chunks with their embeddings.

        Args:
            chunks: Chunks carrying tenant and knowledge base ids
            vectors: One vector per chunk, in the same order

        Returns:
            Number of records written

        Raises:
            ValidationError: On a length, tagging or dimension mismatch
            ExternalServiceError: If an upsert fails
        """
        if len(chunks) != len(vectors):
            raise ValidationError(
                f"Got {len(chunks)} chunks but {len(vectors)} vectors"
            )
        if not chunks:
            return 0

        records = []
        for chunk, vector in zip(chunks, vectors):
            if not chunk.metadata.tenant_id or not chunk.metadata.knowledge_base_id:
                raise ValidationError(f"Chunk {chunk.id} is missing tenant or knowledge base id")
            self._check_dimension(vector)

            metadata = chunk.metadata.to_dict()
            metadata.update(
                content=chunk.content,
                start_index=chunk.start_index,
                end_index=chunk.end_index,
            )
            records.append(VectorRecord(id=chunk.id, values=list(vector), metadata=metadata))

        await self.initialize()

        for start in range(0, len(records), self.upsert_batch_size):
            batch = records[start : start + self.upsert_batch_size]
            await self._call("upsert", self.client.upsert(self.index_name, batch))
        await self._call("flush", self.client.flush(self.index_name))

        logger.info(
            "chunks_stored",
            index_name=self.index_name,
            count=len(records),
            document_id=chunks[0].metadata.document_id,
        )

        return len(records)

    async def search_similar_chunks(
        self,
        query_vector: List[float],
        knowledge_base_id: str,
        tenant_id: str,
        top_k: int = None,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchResult]:
        """Find the chunks most similar to a query vector within one knowledge base.

        Args:
            query_vector: Query embedding
            knowledge_base_id: Knowledge base to search
            tenant_id: Tenant that owns the knowledge base
            top_k: Maximum number of results (default from config)
            filter: Extra metadata filter, combined with the tenancy filter

        Returns:
            SearchResult list, best match first
        """
        if not knowledge_base_id or not tenant_id:
            raise ValidationError("knowledge_base_id and tenant_id are required for search")

        top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k
        if top_k < 1:
            raise ValidationError(f"top_k must be positive, got {top_k}")

        self._check_dimension(query_vector)

        tenancy = {"knowledge_base_id": knowledge_base_id, "tenant_id": tenant_id}
        merged = {**(filter or {}), **tenancy}

        await self.initialize()

        matches = await self._call(
            "query", self.client.query(self.index_name, list(query_vector), top_k, merged)
        )

        results = []
        for match in matches:
            metadata = match.metadata or {}
            if (
                metadata.get("knowledge_base_id") != knowledge_base_id
                or metadata.get("tenant_id") != tenant_id
            ):
                logger.warning("cross_tenant_match_dropped", chunk_id=match.id)
                continue

            results.append(
                SearchResult(
                    id=match.id,
                    score=match.score,
                    content=str(metadata.get("content", "")),
                    metadata=ChunkMetadata.from_dict(metadata),
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)

        logger.debug(
            "similarity_search_completed",
            knowledge_base_id=knowledge_base_id,
            top_k=top_k,
            results_found=len(results),
        )

        return results

    async def _delete_matching(self, filter: Dict[str, Any]) -> int:
        await self.initialize()

        if self.client.supports_delete_by_filter:
            deleted = await self._call(
                "delete_by_filter", self.client.delete_by_filter(self.index_name, filter)
            )
            await self._call("flush", self.client.flush(self.index_name))
            return deleted

        # No native filtered delete: list the matching ids, then delete them
        matches = await self._call(
            "query",
            self.client.query(
                self.index_name, [0.0] * self.dimension, self.delete_scan_top_k, filter
            ),
        )
        ids = [match.id for match in matches]
        if ids:
            await self._call("delete_many", self.client.delete_many(self.index_name, ids))
            await self._call("flush", self.client.flush(self.index_name))
        return len(ids)

    async def delete_document_chunks(
        self,
        document_id: str,
        tenant_id: Optional[str] = None,
        knowledge_base_id: Optional[str] = None,
    ) -> int:
        """Delete every chunk of a document. Returns the number deleted.

        When given, tenant_id and knowledge_base_id narrow the delete so a
        document id from another tenant or knowledge base matches nothing.
        """
        if not document_id:
            raise ValidationError("document_id is required")

        filter = {"document_id": document_id}
        if tenant_id:
            filter["tenant_id"] = tenant_id
        if knowledge_base_id:
            filter["knowledge_base_id"] = knowledge_base_id

        deleted = await self._delete_matching(filter)
        logger.info("document_chunks_deleted", document_id=document_id, deleted=deleted)
        return deleted

    async def delete_knowledge_base_chunks(
        self, knowledge_base_id: str, tenant_id: Optional[str] = None
    ) -> int:
        """Delete every chunk of a knowledge base. Returns the number deleted."""
        if not knowledge_base_id:
            raise ValidationError("knowledge_base_id is required")

        filter = {"knowledge_base_id": knowledge_base_id}
        if tenant_id:
            filter["tenant_id"] = tenant_id

        deleted = await self._delete_matching(filter)
        logger.info(
            "knowledge_base_chunks_deleted",
            knowledge_base_id=knowledge_base_id,
            deleted=deleted,
        )
        return deleted

    async def get_index_stats(self) -> Dict[str, Any]:
        await self.initialize()
        return await self._call(
            "describe_index_stats", self.client.describe_index_stats(self.index_name)
        )
