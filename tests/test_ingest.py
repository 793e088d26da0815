"""Tests for the document upload pipeline."""
import json

import pytest

from chatbot_rag.errors import ExternalServiceError, ValidationError
from chatbot_rag.rag.chunker import TextChunker
from chatbot_rag.rag.index import SimilarityIndex
from chatbot_rag.rag.ingest import IngestPipeline, UploadedFile
from chatbot_rag.rag.normalizer import DocumentNormalizer
from chatbot_rag.rag.store_faiss import FAISSVectorIndex

from conftest import DIMENSION, INDEX_NAME, text_vector


def words(count: int) -> bytes:
    return " ".join(f"w{i:04d}" for i in range(count)).encode()


class FailingSecondUpsertIndex(FAISSVectorIndex):
    def __init__(self):
        super().__init__()
        self.upserts = 0

    async def upsert(self, name, records):
        self.upserts += 1
        if self.upserts == 2:
            raise ConnectionError("connection reset")
        await super().upsert(name, records)


async def test_small_text_becomes_one_chunk(pipeline, similarity_index):
    result = await pipeline.ingest_document(
        UploadedFile("fifty.txt", words(50), "text/plain"), "kb-1", "tenant-a", document_id="doc-50"
    )

    hits = await similarity_index.search_similar_chunks(text_vector("w0001"), "kb-1", "tenant-a")

    assert result.chunks_created == 1
    assert result.embeddings_generated == 1
    assert result.document_type == "TEXT"
    assert hits[0].id == "doc-50_chunk_0"
    assert hits[0].metadata.total_chunks == 1
    assert len(hits[0].content.split()) == 50


async def test_long_text_is_chunked_with_overlap(pipeline, similarity_index):
    result = await pipeline.ingest_document(
        UploadedFile("long.txt", words(833), "text/plain"), "kb-1", "tenant-a", document_id="long"
    )

    stats = await similarity_index.get_index_stats()

    assert 5 <= result.chunks_created <= 6
    assert stats["total_record_count"] == result.chunks_created
    assert result.tokens_used > 0
    assert result.cost == pytest.approx(result.tokens_used / 1000 * 0.00002)


async def test_json_document_flattened_with_priority_fields(pipeline, similarity_index):
    payload = json.dumps({"title": "Policy", "body": "Refunds within 30 days.", "internalId": 42})

    await pipeline.ingest_document(
        UploadedFile("policy.json", payload.encode(), "application/json"), "kb-1", "tenant-a"
    )
    hits = await similarity_index.search_similar_chunks(text_vector("policy"), "kb-1", "tenant-a")

    assert hits[0].content == "Policy Refunds within 30 days. 42"
    assert hits[0].metadata.document_type == "JSON"


async def test_empty_document_stores_nothing(pipeline, embedding_client):
    result = await pipeline.ingest_document(
        UploadedFile("blank.txt", b"   \n  ", "text/plain"), "kb-1", "tenant-a"
    )

    assert result.chunks_created == 0
    assert embedding_client.calls == []


async def test_upload_continues_after_failures(pipeline, embedding_client):
    embedding_client.fail_on = "explode"
    files = [
        UploadedFile("good.txt", b"first good document", "text/plain"),
        UploadedFile("scan.pdf", b"%PDF-1.4", "application/pdf"),
        UploadedFile("bad.txt", b"this one will explode", "text/plain"),
        UploadedFile("also-good.md", b"# second good document", "text/markdown"),
    ]

    report = await pipeline.upload_documents(files, "kb-1", "tenant-a")
    body = report.to_dict()

    assert [r.file_name for r in report.results] == ["good.txt", "also-good.md"]
    assert [e.file_name for e in report.errors] == ["scan.pdf", "bad.txt"]
    assert "File type PDF is not supported" in report.errors[0].error
    assert body["totalProcessed"] == 2
    assert body["totalErrors"] == 2
    assert body["errors"][1] == {"fileName": "bad.txt", "error": report.errors[1].error}


async def test_upload_reports_progress(pipeline):
    seen = []
    files = [UploadedFile(f"f{i}.txt", b"some text", "text/plain") for i in range(3)]

    await pipeline.upload_documents(
        files, "kb-1", "tenant-a", progress_callback=lambda i, n, name: seen.append((i, n, name))
    )

    assert seen == [(1, 3, "f0.txt"), (2, 3, "f1.txt"), (3, 3, "f2.txt")]


async def test_upload_applies_chunking_overrides(pipeline):
    report = await pipeline.upload_documents(
        [UploadedFile("doc.txt", words(100), "text/plain")],
        "kb-1",
        "tenant-a",
        chunk_size=120,
        overlap=20,
    )

    assert report.results[0].chunks_created > 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"knowledge_base_id": "", "tenant_id": "tenant-a"},
        {"knowledge_base_id": "kb-1", "tenant_id": ""},
    ],
)
async def test_upload_requires_identifiers(pipeline, kwargs):
    with pytest.raises(ValidationError):
        await pipeline.upload_documents([UploadedFile("a.txt", b"text")], **kwargs)


async def test_upload_requires_files(pipeline):
    with pytest.raises(ValidationError, match="No files"):
        await pipeline.upload_documents([], "kb-1", "tenant-a")


async def test_invalid_overrides_reject_whole_upload(pipeline, embedding_client):
    with pytest.raises(ValidationError):
        await pipeline.upload_documents(
            [UploadedFile("a.txt", b"text")], "kb-1", "tenant-a", chunk_size=100, overlap=100
        )

    assert embedding_client.calls == []


async def test_ingest_propagates_vendor_errors(pipeline, embedding_client):
    embedding_client.fail_on = "text"

    with pytest.raises(ExternalServiceError):
        await pipeline.ingest_document(UploadedFile("a.txt", b"some text"), "kb-1", "tenant-a")


async def test_deleted_knowledge_base_is_not_searchable(pipeline, similarity_index):
    report = await pipeline.upload_documents(
        [
            UploadedFile("a.txt", b"alpha shipping policy", "text/plain"),
            UploadedFile("b.txt", b"beta shipping policy", "text/plain"),
        ],
        "kb-1",
        "tenant-a",
    )
    await pipeline.ingest_document(
        UploadedFile("other.txt", b"gamma shipping policy", "text/plain"), "kb-2", "tenant-a"
    )

    deleted = await pipeline.delete_knowledge_base("kb-1", tenant_id="tenant-a")
    hits = await similarity_index.search_similar_chunks(
        text_vector("shipping policy"), "kb-1", "tenant-a"
    )
    other = await similarity_index.search_similar_chunks(
        text_vector("shipping policy"), "kb-2", "tenant-a"
    )

    deleted_ids = {r.document_id for r in report.results}
    assert deleted == 2
    assert not any(h.metadata.document_id in deleted_ids for h in hits)
    assert len(other) == 1


async def test_reindex_replaces_document_chunks(pipeline, similarity_index):
    await pipeline.ingest_document(
        UploadedFile("doc.txt", words(400), "text/plain"), "kb-1", "tenant-a", document_id="doc"
    )

    result = await pipeline.reindex_document(
        UploadedFile("doc.txt", b"short replacement text", "text/plain"),
        "kb-1",
        "tenant-a",
        document_id="doc",
    )

    stats = await similarity_index.get_index_stats()
    hits = await similarity_index.search_similar_chunks(
        text_vector("short replacement text"), "kb-1", "tenant-a"
    )

    assert result.chunks_created == 1
    assert stats["total_record_count"] == 1
    assert hits[0].content == "short replacement text"


async def test_delete_document(pipeline, similarity_index):
    result = await pipeline.ingest_document(
        UploadedFile("doc.txt", b"to be deleted", "text/plain"), "kb-1", "tenant-a"
    )

    deleted = await pipeline.delete_document(result.document_id, tenant_id="tenant-a")

    assert deleted == 1
    assert await similarity_index.search_similar_chunks(
        text_vector("deleted"), "kb-1", "tenant-a"
    ) == []


async def test_failed_store_leaves_no_partial_document(embedder):
    client = FailingSecondUpsertIndex()
    index = SimilarityIndex(
        client, index_name=INDEX_NAME, dimension=DIMENSION, poll_interval=0, upsert_batch_size=1
    )
    pipeline = IngestPipeline(DocumentNormalizer(), TextChunker(chunk_size=1000, overlap=200), embedder, index)

    with pytest.raises(ExternalServiceError) as exc_info:
        await pipeline.ingest_document(
            UploadedFile("doc.txt", words(400), "text/plain"), "kb-1", "tenant-a", document_id="doc"
        )

    stats = await index.get_index_stats()
    assert exc_info.value.service == "vector_index"
    assert client.upserts == 2
    assert stats["total_record_count"] == 0
