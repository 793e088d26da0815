"""Vendor clients for embeddings and chat completions, with error handling."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog

from chatbot_rag import config
from chatbot_rag.errors import ExternalServiceError

logger = structlog.get_logger()


@dataclass
class EmbeddingResponse:
    """Vectors for one embedding request, in input order."""

    embeddings: List[List[float]]
    total_tokens: int


@dataclass
class CompletionResponse:
    """Text and token usage of one chat completion."""

    content: str
    total_tokens: int


class EmbeddingClient(ABC):
    @abstractmethod
    async def embed(self, texts: List[str], model: str) -> EmbeddingResponse: ...


class CompletionClient(ABC):
    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResponse: ...


class OpenAIClient(EmbeddingClient, CompletionClient):
    """Async client for OpenAI-compatible embedding and chat APIs."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL including the version prefix (defaults to config.OPENAI_BASE_URL)
            api_key: Bearer token (defaults to config.OPENAI_API_KEY)
            timeout: Request timeout in seconds (defaults to config.VENDOR_TIMEOUT)
            transport: Optional httpx transport, used by tests
        """
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.timeout = timeout or config.VENDOR_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, service: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()
                return response.json()

        except httpx.TimeoutException as e:
            logger.error("vendor_timeout", service=service, timeout=self.timeout, error=str(e))
            raise ExternalServiceError(service, f"request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error("vendor_http_error", service=service, status_code=status_code)
            raise ExternalServiceError(
                service, f"HTTP {status_code}: {e.response.text[:200]}", status_code=status_code
            ) from e
        except httpx.HTTPError as e:
            logger.error("vendor_connection_error", service=service, error=str(e), base_url=self.base_url)
            raise ExternalServiceError(service, str(e)) from e
        except ValueError as e:
            logger.error("vendor_invalid_response", service=service, error=str(e))
            raise ExternalServiceError(service, f"invalid JSON response: {e}") from e

    async def embed(self, texts: List[str], model: str = None) -> EmbeddingResponse:
        """Generate embeddings for a list of texts.

        Args:
            texts: Texts to embed (the vendor accepts at most 100 per request)
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            EmbeddingResponse with one vector per text, in input order

        Raises:
            ExternalServiceError: On network, HTTP or response-shape errors
        """
        model = model or config.EMBEDDING_MODEL

        logger.debug("embedding_request", model=model, text_count=len(texts))

        data = await self._post(
            "embeddings",
            "/embeddings",
            {"model": model, "input": texts, "encoding_format": "float"},
        )

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            embeddings = [item["embedding"] for item in items]
        except (KeyError, TypeError) as e:
            raise ExternalServiceError("embeddings", f"malformed response: missing {e}") from e

        total_tokens = int((data.get("usage") or {}).get("total_tokens", 0))

        logger.debug(
            "embedding_response",
            model=model,
            vector_count=len(embeddings),
            total_tokens=total_tokens,
        )

        return EmbeddingResponse(embeddings=embeddings, total_tokens=total_tokens)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResponse:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate

        Returns:
            CompletionResponse with the first choice's content

        Raises:
            ExternalServiceError: On network, HTTP or response-shape errors
        """
        model = model or config.CHAT_MODEL

        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        logger.info("chat_completion_request", model=model, message_count=len(messages))

        data = await self._post("completions", "/chat/completions", payload)

        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError("completions", f"malformed response: {e!r}") from e

        total_tokens = int((data.get("usage") or {}).get("total_tokens", 0))

        logger.info(
            "chat_completion_response",
            model=model,
            response_length=len(content),
            total_tokens=total_tokens,
        )

        return CompletionResponse(content=content, total_tokens=total_tokens)
