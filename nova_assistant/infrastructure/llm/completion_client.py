from typing import AsyncIterator, Dict, Optional
from contextlib import asynccontextmanager

import httpx
import structlog

from nova_assistant.domain.errors import TransportError

logger = structlog.get_logger(__name__)

RATE_LIMITED = 429
PAYMENT_REQUIRED = 402


def _rejection_message(status_code: int) -> str:
    if status_code == RATE_LIMITED:
        return "Rate limit exceeded. Please try again in a moment."
    if status_code == PAYMENT_REQUIRED:
        return "AI credits exhausted. Please add funds to your workspace."
    return f"AI gateway error: {status_code}"


class CompletionClient:
    """Client of the chat-ai edge function"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        endpoint: str = "/chat-ai",
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = base_url.rstrip("/") + endpoint
        self.api_key = api_key
        self.timeout = timeout
        # No read timeout: a slow but live stream may run indefinitely
        self._stream_timeout = httpx.Timeout(timeout, connect=connect_timeout, read=None)
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @asynccontextmanager
    async def open_stream(self, message: str, system_prompt: str) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streamed reply and yield its raw chunks"""

        payload = {
            "message": message,
            "systemPrompt": system_prompt,
            "stream": True
        }

        async with self._client(self._stream_timeout) as client:
            try:
                async with client.stream("POST", self.url, json=payload, headers=self._headers()) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        logger.error(
                            "Completion request rejected",
                            status_code=response.status_code,
                            body=body[:300].decode("utf-8", errors="replace")
                        )
                        raise TransportError(
                            _rejection_message(response.status_code),
                            status_code=response.status_code,
                            retryable=response.status_code != PAYMENT_REQUIRED
                        )

                    yield self._chunks(response)
            except httpx.HTTPError as e:
                raise TransportError(f"Stream failed: {e}") from e

    async def _chunks(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            raise TransportError(f"Stream interrupted: {e}") from e

    async def complete(self, message: str, system_prompt: str) -> str:
        """One-shot reply"""

        payload = {
            "message": message,
            "systemPrompt": system_prompt,
            "stream": False
        }

        async with self._client(httpx.Timeout(self.timeout)) as client:
            try:
                response = await client.post(self.url, json=payload, headers=self._headers())
            except httpx.HTTPError as e:
                raise TransportError(f"Request failed: {e}") from e

        if response.status_code != 200:
            raise TransportError(
                _rejection_message(response.status_code),
                status_code=response.status_code,
                retryable=response.status_code != PAYMENT_REQUIRED
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("Invalid completion response") from e

        content = data.get("response") if isinstance(data, dict) else None
        if not isinstance(content, str):
            raise TransportError("Completion response has no content", retryable=False)
        return content
