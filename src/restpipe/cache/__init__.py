"""Disk-based response caching for restpipe.

This package provides :class:`ResponseCache`, the store behind the caching
built-in interceptors. Successful GET responses are written to disk with
:mod:`diskcache` and served back on later identical requests, which
short-circuits the transport call.

The cache is controlled by the ``cache`` section of
:class:`~restpipe.models.PipelineConfig` (:class:`~restpipe.models.CacheConfig`).
"""

from restpipe.cache.cache import ResponseCache

__all__ = ["ResponseCache"]
