"""HTTP transport adapter -- the pipeline's only network dependency.

The pipeline talks to the network through the :class:`Transport` protocol:
one coroutine taking a :class:`~restpipe.payload.RequestPayload` and
returning a :class:`~restpipe.payload.ResponsePayload`. The default
implementation, :class:`HttpxTransport`, wraps :class:`httpx.AsyncClient`
and translates httpx network failures into
:class:`~restpipe.exceptions.TransportError` carrying a transient fault
code, which the retry classifier recognises.

Tests substitute an :class:`httpx.MockTransport` via ``client=``::

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = HttpxTransport(client=client)
"""

from __future__ import annotations

import time
from typing import Optional, Protocol, runtime_checkable

import httpx

from restpipe.exceptions import TransportError
from restpipe.models import TransportConfig
from restpipe.payload import RequestPayload, ResponsePayload, parse_body


@runtime_checkable
class Transport(Protocol):
    """Anything that can send a request and return a response."""

    async def send(self, request: RequestPayload) -> ResponsePayload: ...


# httpx exception -> transient fault code. Checked in order; subclasses first.
_ERROR_CODES: tuple[tuple[type[httpx.TransportError], str], ...] = (
    (httpx.ConnectTimeout, "ETIMEDOUT"),
    (httpx.TimeoutException, "ETIMEDOUT"),
    (httpx.ConnectError, "ECONNREFUSED"),
    (httpx.RemoteProtocolError, "ECONNRESET"),
    (httpx.ReadError, "ECONNRESET"),
)


def _error_code(exc: httpx.TransportError) -> str:
    for exc_type, code in _ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return "ECONNABORTED"


class HttpxTransport:
    """:class:`Transport` backed by :class:`httpx.AsyncClient`.

    Args:
        base_url: Prefix for relative request URLs.
        timeout: Default request timeout in seconds.
        verify_ssl: Whether to verify TLS certificates.
        client: A pre-built client to use instead of creating one. The
            transport does not close a client it did not create.

    Example::

        async with HttpxTransport("https://api.example.com") as transport:
            response = await transport.send(RequestPayload("GET", "/users"))
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url or ""
        self._timeout = timeout
        self._verify_ssl = verify_ssl
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_config(cls, config: TransportConfig) -> HttpxTransport:
        return cls(
            base_url=config.base_url,
            timeout=config.timeout,
            verify_ssl=config.verify_ssl,
        )

    # ------------------------------------------------------------------
    # Async context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> HttpxTransport:
        self._ensure_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                verify=self._verify_ssl,
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, request: RequestPayload) -> ResponsePayload:
        """Send *request* and return the parsed response.

        Status codes are not interpreted here; the pipeline decides what
        counts as an error.

        Raises:
            TransportError: On connection, timeout, or protocol failures.
        """
        client = self._ensure_client()
        kwargs: dict = {
            "method": request.method,
            "url": request.url,
            "headers": request.headers,
            "params": request.params,
        }
        if request.json is not None:
            kwargs["json"] = request.json
        elif request.content is not None:
            kwargs["content"] = request.content
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout

        started = time.perf_counter()
        try:
            response = await client.request(**kwargs)
        except httpx.TransportError as exc:
            code = _error_code(exc)
            raise TransportError(
                f"{request.method} {request.url} failed: {exc or type(exc).__name__}",
                code=code,
            ) from exc
        elapsed = time.perf_counter() - started

        text = response.text
        return ResponsePayload(
            status_code=response.status_code,
            headers=dict(response.headers),
            data=parse_body(text, response.headers.get("content-type")),
            text=text,
            elapsed=elapsed,
            request=request,
        )
