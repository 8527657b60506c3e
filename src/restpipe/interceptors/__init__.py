"""Interceptor chains -- registration, ordering, and execution.

Key classes:

* :class:`Interceptor` -- Abstract base class for one chain step.
* :class:`FunctionInterceptor` -- Wraps a plain ``(payload, context)`` callable.
* :class:`InterceptorRegistry` -- Per-phase ordered collections, the chain
  executor, and per-entry statistics.

Built-in interceptors live in :mod:`restpipe.interceptors.builtin`.

Example::

    registry = InterceptorRegistry()
    registry.register(FunctionInterceptor("tag", Phase.REQUEST, add_tag), priority=750)
    result = await registry.run_chain(Phase.REQUEST, request, ExecutionContext())
"""

from restpipe.interceptors.base import FunctionInterceptor, Interceptor
from restpipe.interceptors.registry import (
    ChainResult,
    InterceptorEntry,
    InterceptorRegistry,
    InterceptorResult,
    InterceptorStatistics,
    is_recovery_value,
)

__all__ = [
    "ChainResult",
    "FunctionInterceptor",
    "Interceptor",
    "InterceptorEntry",
    "InterceptorRegistry",
    "InterceptorResult",
    "InterceptorStatistics",
    "is_recovery_value",
]
