"""Disk-backed store for successful GET responses.

:class:`ResponseCache` keeps :meth:`ResponsePayload.to_dict` snapshots in a
:mod:`diskcache` directory for ``CacheConfig.ttl_seconds``. Anything other
than a GET, and any response outside 2xx, is never stored.

Keys hash the method, the URL and the query parameters (sorted), so
``?a=1&b=2`` and ``?b=2&a=1`` share an entry. Headers are not part of the
key.

See Also:
    :class:`~restpipe.interceptors.builtin.CacheInterceptor` and
    :class:`~restpipe.interceptors.builtin.CacheStoreInterceptor`, which
    read and fill this cache from the request and response chains.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Optional

import diskcache

from restpipe.models import CacheConfig
from restpipe.payload import RequestPayload, ResponsePayload

logger = logging.getLogger(__name__)

_CACHEABLE_METHOD = "GET"


class ResponseCache:
    """Response store shared by the caching built-ins.

    Args:
        cache_dir: Parent directory; entries live in ``<cache_dir>/responses``.
        config: ``enabled`` and ``ttl_seconds``. A disabled cache opens
            nothing on disk and every operation is a no-op.

    Example::

        cache = ResponseCache("/tmp/api-cache", CacheConfig(ttl_seconds=60))
        request = RequestPayload("GET", "https://api.example.com/users")
        cache.set(request, ResponsePayload(200, data=[{"id": 1}]))
        hit = cache.get(request)
    """

    def __init__(self, cache_dir: str | Path, config: Optional[CacheConfig] = None) -> None:
        self._config = config or CacheConfig()
        self._directory = Path(cache_dir) / "responses"
        self._store: Optional[diskcache.Cache] = (
            diskcache.Cache(str(self._directory)) if self._config.enabled else None
        )
        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self._store is not None

    def _key_for(self, request: RequestPayload) -> Optional[str]:
        if self._store is None or request.method != _CACHEABLE_METHOD:
            return None
        return self.make_key(request)

    def get(self, request: RequestPayload) -> Optional[ResponsePayload]:
        """Return the stored response for *request*, or ``None``."""
        key = self._key_for(request)
        if key is None:
            return None
        snapshot = self._store.get(key)
        if snapshot is None:
            self._misses += 1
            return None
        self._hits += 1
        logger.debug("Cache hit for %s %s", request.method, request.url)
        return ResponsePayload.from_dict(snapshot)

    def set(self, request: RequestPayload, response: ResponsePayload) -> bool:
        """Store *response* if it is a 2xx answer to a GET; report whether it was."""
        key = self._key_for(request)
        if key is None or not response.is_success:
            return False
        self._store.set(key, response.to_dict(), expire=self._config.ttl_seconds)
        return True

    def invalidate(self, request: RequestPayload) -> None:
        if self._store is not None:
            self._store.delete(self.make_key(request))

    def clear(self) -> None:
        if self._store is not None:
            self._store.clear()

    def stats(self) -> dict[str, Any]:
        """Entry count, lookup counters and location; just ``enabled`` when off."""
        if self._store is None:
            return {"enabled": False}
        return {
            "enabled": True,
            "size": len(self._store),
            "hits": self._hits,
            "misses": self._misses,
            "directory": str(self._directory),
            "ttl_seconds": self._config.ttl_seconds,
        }

    def close(self) -> None:
        if self._store is not None:
            self._store.close()

    @staticmethod
    def make_key(request: RequestPayload) -> str:
        """SHA-256 over method, URL and the sorted query parameters."""
        material = {
            "method": request.method,
            "url": request.url,
            "params": request.params or {},
        }
        encoded = json.dumps(material, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()
