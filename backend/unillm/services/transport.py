from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx
import structlog

from unillm.core.config import settings
from unillm.errors import AuthFailed, LLMError, NetworkError, UnknownError
from unillm.providers.base import WireRequest

logger = structlog.get_logger()


class ByteStream:
    """
    A streaming HTTP response body that can be closed from the outside.

    Closing releases the pooled connection right away. Bytes already handed
    out stay with the caller's decoder, which decides what a trailing partial
    frame means.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self.closed = False
        self.received = 0

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> Mapping[str, str]:
        return self._response.headers

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                self.received += len(chunk)
                yield chunk
        except httpx.StreamClosed:
            if not self.closed:
                raise NetworkError("response stream closed unexpectedly")
        except httpx.TimeoutException as exc:
            raise NetworkError(f"read timed out after {self.received} bytes") from exc
        except httpx.TransportError as exc:
            if self.closed:
                return
            raise NetworkError(f"connection lost mid-stream: {exc}") from exc

    async def read_text(self) -> str:
        try:
            raw = await self._response.aread()
        except httpx.TransportError as exc:
            raise NetworkError(f"failed to read error body: {exc}") from exc
        return raw.decode("utf-8", errors="replace")

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._response.aclose()


class HttpTransport:
    """Shared connection pool for every completion in the process."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
        max_connections: Optional[int] = None,
    ) -> None:
        if client is None:
            timeout = httpx.Timeout(
                read_timeout or settings.READ_TIMEOUT_SECONDS,
                connect=connect_timeout or settings.CONNECT_TIMEOUT_SECONDS,
            )
            limits = httpx.Limits(max_connections=max_connections or settings.MAX_CONNECTIONS)
            client = httpx.AsyncClient(timeout=timeout, limits=limits)
        self._client = client

    async def open(self, wire: WireRequest) -> ByteStream:
        request = self._client.build_request(wire.method, wire.url, headers=wire.headers, json=wire.body)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{wire.provider_id}: request timed out ({type(exc).__name__})") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{wire.provider_id}: {exc}") from exc
        logger.debug(
            "transport_opened",
            provider=wire.provider_id,
            model=wire.model_id,
            status=response.status_code,
        )
        return ByteStream(response)

    async def get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.TransportError as exc:
            raise NetworkError(f"GET {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise status_error(response.status_code, response.text)
        try:
            return response.json()
        except ValueError as exc:
            raise UnknownError(f"GET {url} returned non-JSON body", raw=response.text) from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def status_error(status: int, body: str) -> LLMError:
    if status in (401, 403):
        return AuthFailed(f"request rejected ({status})", status_code=status, raw=body)
    if status >= 500:
        return NetworkError(f"server error ({status})", status_code=status, raw=body)
    return UnknownError(f"request failed ({status})", status_code=status, raw=body)
