"""Tests for the HTTP API."""
import pytest

from chatbot_rag.errors import ExternalServiceError
from chatbot_rag.main import create_app
from chatbot_rag.rag.index import SimilarityIndex
from chatbot_rag.rag.store_faiss import FAISSVectorIndex
from chatbot_rag.services import RAGServices

from conftest import DIMENSION

TENANT = {"X-Tenant-ID": "tenant-a"}
BOUNDARY = "testboundary"


def multipart(files, fields=None):
    """Encode (filename, content_type, data) tuples as "files" form parts."""
    parts = []
    for name, value in (fields or {}).items():
        parts.append(
            f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n'.encode()
        )
    for filename, content_type, data in files:
        header = (
            f"--{BOUNDARY}\r\n"
            f'Content-Disposition: form-data; name="files"; filename="{filename}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        )
        parts.append(header.encode() + data + b"\r\n")
    parts.append(f"--{BOUNDARY}--\r\n".encode())

    headers = dict(TENANT)
    headers["Content-Type"] = f"multipart/form-data; boundary={BOUNDARY}"
    return b"".join(parts), headers


class BrokenIndex(FAISSVectorIndex):
    async def list_indexes(self):
        raise ConnectionError("index unreachable")


@pytest.fixture
def client(services):
    return create_app(services).test_client()


async def upload(client, files, fields=None, kb="kb-1"):
    body, headers = multipart(files, fields)
    return await client.post(f"/api/knowledge-bases/{kb}/documents", data=body, headers=headers)


async def test_health_live(client):
    response = await client.get("/health/live")

    assert response.status_code == 200
    assert await response.get_json() == {"status": "alive"}


async def test_health_ready(client):
    response = await client.get("/health/ready")
    body = await response.get_json()

    assert response.status_code == 200
    assert body["status"] == "healthy"
    assert body["index"]["dimension"] == DIMENSION


async def test_health_ready_when_index_unreachable(services):
    broken = SimilarityIndex(BrokenIndex(), index_name="broken", dimension=DIMENSION)
    app = create_app(
        RAGServices(index=broken, retriever=services.retriever, ingest=services.ingest, chat=services.chat)
    )

    response = await app.test_client().get("/health/ready")

    assert response.status_code == 503
    assert (await response.get_json())["status"] == "unhealthy"


async def test_upload_with_partial_failure(client):
    response = await upload(
        client,
        [
            ("faq.txt", "text/plain", b"Shipping takes three days."),
            ("manual.pdf", "application/pdf", b"%PDF-1.4"),
            ("data.json", "application/json", b'{"title": "Pricing", "price": 10}'),
        ],
    )
    body = await response.get_json()

    assert response.status_code == 200
    assert body["success"] is True
    assert body["totalProcessed"] == 2
    assert body["totalErrors"] == 1
    assert [r["fileName"] for r in body["results"]] == ["faq.txt", "data.json"]
    assert body["errors"][0]["fileName"] == "manual.pdf"


async def test_upload_rejects_bad_chunk_settings(client):
    response = await upload(
        client, [("faq.txt", "text/plain", b"text")], fields={"chunkSize": "abc"}
    )

    assert response.status_code == 400


async def test_upload_without_files(client):
    response = await upload(client, [], fields={"chunkSize": "500"})

    assert response.status_code == 400
    assert "No files" in (await response.get_json())["error"]


async def test_missing_tenant_header(client):
    response = await client.post("/api/knowledge-bases/kb-1/search", json={"query": "hi"})

    assert response.status_code == 400
    assert "X-Tenant-ID" in (await response.get_json())["error"]


async def test_search_after_upload(client):
    await upload(client, [("faq.txt", "text/plain", b"Shipping takes three business days.")])

    response = await client.post(
        "/api/knowledge-bases/kb-1/search",
        json={"query": "shipping business days", "topK": 3},
        headers=TENANT,
    )
    body = await response.get_json()

    assert response.status_code == 200
    assert body["results"][0]["sourceDocument"] == "faq.txt"
    assert body["results"][0]["content"] == "Shipping takes three business days."


async def test_search_validates_body(client):
    response = await client.post(
        "/api/knowledge-bases/kb-1/search", json={"query": "", "topK": 0}, headers=TENANT
    )

    assert response.status_code == 400
    assert (await response.get_json())["error"] == "Invalid request"


async def test_chat(client, completion_client):
    await upload(client, [("faq.txt", "text/plain", b"Support is open on weekends.")])

    response = await client.post(
        "/api/chat",
        json={"message": "Is support open on weekends?", "knowledgeBaseId": "kb-1", "maxTokens": 100},
        headers=TENANT,
    )
    body = await response.get_json()

    assert response.status_code == 200
    assert body["message"] == completion_client.content
    assert body["context"]["tokensUsed"] == completion_client.total_tokens
    assert body["context"]["sources"][0]["title"] == "faq.txt"
    assert completion_client.calls[0]["max_tokens"] == 100


async def test_chat_requires_message(client):
    response = await client.post("/api/chat", json={"knowledgeBaseId": "kb-1"}, headers=TENANT)

    assert response.status_code == 400


async def test_chat_rejects_blank_message(client, completion_client):
    response = await client.post(
        "/api/chat", json={"message": "   \n\t ", "knowledgeBaseId": "kb-1"}, headers=TENANT
    )

    assert response.status_code == 400
    assert (await response.get_json())["error"] == "Invalid request"
    assert completion_client.calls == []


async def test_chat_vendor_failure_is_bad_gateway(client, completion_client):
    completion_client.error = ExternalServiceError("completions", "HTTP 503", status_code=503)

    response = await client.post(
        "/api/chat", json={"message": "hello", "knowledgeBaseId": "kb-1"}, headers=TENANT
    )
    body = await response.get_json()

    assert response.status_code == 502
    assert body["service"] == "completions"


async def test_delete_document_and_knowledge_base(client):
    uploaded = await (await upload(
        client,
        [("a.txt", "text/plain", b"first document"), ("b.txt", "text/plain", b"second document")],
    )).get_json()
    document_id = uploaded["results"][0]["documentId"]

    response = await client.delete(
        f"/api/knowledge-bases/kb-1/documents/{document_id}", headers=TENANT
    )
    assert (await response.get_json()) == {"success": True, "deleted": 1}

    response = await client.delete("/api/knowledge-bases/kb-1", headers=TENANT)
    assert (await response.get_json()) == {"success": True, "deleted": 1}


async def test_delete_document_through_other_knowledge_base(client):
    uploaded = await (await upload(
        client, [("a.txt", "text/plain", b"kept document text")], kb="kb-1"
    )).get_json()
    document_id = uploaded["results"][0]["documentId"]

    response = await client.delete(
        f"/api/knowledge-bases/kb-2/documents/{document_id}", headers=TENANT
    )
    search = await client.post(
        "/api/knowledge-bases/kb-1/search", json={"query": "kept document text"}, headers=TENANT
    )

    assert (await response.get_json()) == {"success": True, "deleted": 0}
    assert [r["documentId"] for r in (await search.get_json())["results"]] == [document_id]


async def test_unknown_route(client):
    response = await client.get("/nope")

    assert response.status_code == 404
