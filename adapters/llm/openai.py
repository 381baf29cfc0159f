"""
OpenAI Responses API adapter.

Streams ``/v1/responses`` as Server-Sent Events and exposes the file store
and code-interpreter container endpoints over the same HTTP client.
"""

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .base import LLMError, ResponseRequest, ResponsesAdapter

logger = logging.getLogger(__name__)


class OpenAIResponsesAdapter(ResponsesAdapter):
    """Adapter for the OpenAI Responses API."""

    API_BASE_URL: str = "https://api.openai.com/v1"
    DEFAULT_MODEL: str = "gpt-5"
    PROVIDER: str = "openai"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ) -> None:
        """
        Initialize OpenAI adapter.

        Args:
            model: Default model identifier
            api_key: OpenAI API key (defaults to OPENAI_API_KEY env var)
            base_url: API base URL (defaults to the public endpoint)
            organization: OpenAI organization ID (optional)
            timeout: Read timeout in seconds; streams of reasoning models are slow
            transport: Optional httpx transport (tests)
            **kwargs: Additional configuration
        """
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OpenAI API key required (set OPENAI_API_KEY env var)")

        super().__init__(model, api_key, **kwargs)
        self.organization = organization or os.getenv("OPENAI_ORGANIZATION")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self.organization:
            headers["OpenAI-Organization"] = self.organization

        self.client = httpx.AsyncClient(
            base_url=base_url or self.API_BASE_URL,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=30.0),
            transport=transport,
        )

    def _error_from_response(self, status_code: int, body: str) -> LLMError:
        """Build an LLMError from an API error body."""
        error: Dict[str, Any] = {}
        try:
            error = json.loads(body).get("error") or {}
        except (json.JSONDecodeError, AttributeError):
            pass
        message = error.get("message") or body[:500] or f"HTTP {status_code}"
        return LLMError(
            f"OpenAI request failed ({status_code}): {message}",
            provider=self.PROVIDER,
            status_code=status_code,
            error_type=error.get("type"),
            param=error.get("param"),
            code=error.get("code"),
        )

    async def stream(self, request: ResponseRequest) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream a response as raw protocol events.

        Yields:
            Decoded ``data:`` payloads of the SSE stream

        Raises:
            LLMError: If the API rejects the request or the stream breaks
        """
        payload = request.to_payload(self.model, stream=True)

        try:
            async with self.client.stream("POST", "/responses", json=payload) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise self._error_from_response(response.status_code, body.decode(errors="replace"))

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data or data == "[DONE]":
                        continue
                    try:
                        yield json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping undecodable stream line: {data[:100]}")

        except httpx.HTTPError as e:
            raise LLMError(
                f"Stream terminated: {e}",
                provider=self.PROVIDER,
                original_error=e,
                error_type="server_error",
            )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise LLMError(
                f"OpenAI request to {url} failed: {e}", provider=self.PROVIDER, original_error=e
            )
        if response.status_code >= 400:
            raise self._error_from_response(response.status_code, response.text)
        return response

    async def create(self, request: ResponseRequest) -> Dict[str, Any]:
        """Create a response without streaming."""
        response = await self._request("POST", "/responses", json=request.to_payload(self.model))
        return response.json()

    async def retrieve(self, response_id: str) -> Dict[str, Any]:
        """Fetch a response object by id."""
        response = await self._request("GET", f"/responses/{response_id}")
        return response.json()

    async def upload_file(self, data: bytes, filename: str, purpose: str = "user_data") -> str:
        """Upload bytes to the file store and return the file id."""
        response = await self._request(
            "POST", "/files", files={"file": (filename, data)}, data={"purpose": purpose}
        )
        return response.json()["id"]

    async def download_file(self, file_id: str) -> bytes:
        """Download a file from the file store."""
        response = await self._request("GET", f"/files/{file_id}/content")
        return response.content

    async def list_container_files(self, container_id: str) -> List[Dict[str, Any]]:
        """List files in a code-interpreter container."""
        response = await self._request("GET", f"/containers/{container_id}/files")
        return response.json().get("data", [])

    async def download_container_file(self, container_id: str, file_id: str) -> bytes:
        """Download a file from a code-interpreter container."""
        response = await self._request("GET", f"/containers/{container_id}/files/{file_id}/content")
        return response.content

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> "OpenAIResponsesAdapter":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.aclose()
