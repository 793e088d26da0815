"""Tests for the OpenAI-compatible HTTP client."""
import json

import httpx
import pytest

from chatbot_rag.errors import ExternalServiceError
from chatbot_rag.llm_client import OpenAIClient


def make_client(handler) -> OpenAIClient:
    return OpenAIClient(
        base_url="https://vendor.test/v1/",
        api_key="sk-test",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


async def test_embed_sorts_by_index_and_reads_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0]},
                    {"index": 0, "embedding": [1.0, 0.0]},
                ],
                "usage": {"total_tokens": 7},
            },
        )

    response = await make_client(handler).embed(["first", "second"], "text-embedding-3-small")

    assert seen["url"] == "https://vendor.test/v1/embeddings"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {
        "model": "text-embedding-3-small",
        "input": ["first", "second"],
        "encoding_format": "float",
    }
    assert response.embeddings == [[1.0, 0.0], [0.0, 1.0]]
    assert response.total_tokens == 7


async def test_complete_reads_first_choice():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/v1/chat/completions"
        assert body["stream"] is False
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 50
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
                "usage": {"total_tokens": 42},
            },
        )

    response = await make_client(handler).complete(
        [{"role": "user", "content": "Hello"}], "gpt-3.5-turbo", temperature=0.2, max_tokens=50
    )

    assert response.content == "Hi there"
    assert response.total_tokens == 42


async def test_http_error_carries_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "rate limited"}})

    with pytest.raises(ExternalServiceError) as exc_info:
        await make_client(handler).embed(["text"], "m")

    assert exc_info.value.service == "embeddings"
    assert exc_info.value.status_code == 429


async def test_connection_error_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalServiceError) as exc_info:
        await make_client(handler).complete([{"role": "user", "content": "hi"}], "m")

    assert exc_info.value.service == "completions"
    assert exc_info.value.status_code is None


async def test_timeout_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(ExternalServiceError, match="timed out"):
        await make_client(handler).embed(["text"], "m")


@pytest.mark.parametrize(
    "payload",
    [b"not json", json.dumps({"unexpected": True}).encode()],
)
async def test_malformed_embedding_response(payload):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=payload)

    with pytest.raises(ExternalServiceError):
        await make_client(handler).embed(["text"], "m")


async def test_no_auth_header_without_key():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

    client = OpenAIClient(
        base_url="http://localhost:11434/v1",
        api_key="",
        transport=httpx.MockTransport(handler),
    )

    response = await client.embed(["text"], "nomic-embed-text")

    assert response.total_tokens == 0
