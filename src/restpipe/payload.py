"""Request and response value types passed through the interceptor chains.

Both payloads are plain dataclasses with a deep :meth:`copy`. The chain
executor hands every interceptor its own copy of the current payload, so an
interceptor can mutate what it receives freely without affecting the
caller's original or the value a previous stage produced.
"""

from __future__ import annotations

import copy as _copy
import json
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class RequestPayload:
    """An outgoing HTTP request description.

    Attributes:
        method: HTTP method (e.g. ``"GET"``). Normalised to upper case.
        url: Absolute URL, or a path relative to the transport's base URL.
        headers: Request headers.
        params: Query parameters.
        json: JSON-serialisable body. Mutually exclusive with *content*.
        content: Raw body bytes or text.
        timeout: Per-request timeout in seconds, or ``None`` for the
            transport default.
        extensions: Free-form values for interceptors and transports
            (e.g. ``"compression"``).
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    json: Any = None
    content: Optional[bytes | str] = None
    timeout: Optional[float] = None
    extensions: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.method = self.method.upper()

    def copy(self) -> RequestPayload:
        """Return a deep copy of this request."""
        return _copy.deepcopy(self)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


@dataclass
class ResponsePayload:
    """A received HTTP response.

    Attributes:
        status_code: HTTP status code.
        headers: Response headers.
        data: Parsed body (JSON value when the body is JSON, otherwise the
            text).
        text: Raw body text.
        elapsed: Seconds between sending the request and receiving the
            response.
        request: The request that produced this response, if known.
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    data: Any = None
    text: str = ""
    elapsed: float = 0.0
    request: Optional[RequestPayload] = None

    def copy(self) -> ResponsePayload:
        """Return a deep copy of this response."""
        return _copy.deepcopy(self)

    @property
    def is_success(self) -> bool:
        """Whether the status code is in the 2xx range."""
        return 200 <= self.status_code < 300

    @property
    def is_error(self) -> bool:
        """Whether the status code is 400 or above."""
        return self.status_code >= 400

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict (used by the response cache)."""
        return {
            "status_code": self.status_code,
            "headers": dict(self.headers),
            "data": self.data,
            "text": self.text,
            "elapsed": self.elapsed,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ResponsePayload:
        """Rebuild a response from :meth:`to_dict` output."""
        return cls(
            status_code=int(raw["status_code"]),
            headers=dict(raw.get("headers") or {}),
            data=raw.get("data"),
            text=raw.get("text", ""),
            elapsed=float(raw.get("elapsed", 0.0)),
        )


def parse_body(text: str, content_type: Optional[str] = None) -> Any:
    """Parse *text* as JSON when it looks like JSON, otherwise return it as-is."""
    if not text:
        return None
    if content_type and "json" not in content_type.lower():
        return text
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
