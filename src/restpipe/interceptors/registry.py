"""Interceptor registry and chain executor.

:class:`InterceptorRegistry` keeps one ordered collection of
:class:`InterceptorEntry` objects per :class:`~restpipe.models.Phase` and runs
them as a chain with :meth:`InterceptorRegistry.run_chain`.

Ordering is priority descending, with registration order breaking ties.
Registration and removal replace the phase collection under a lock
(copy-on-write), so a running chain always iterates a consistent snapshot.
The ``enabled`` flag, by contrast, is read live: an entry disabled while a
chain is in flight is skipped when the chain reaches it.

Every step is raced against its timeout with
:func:`~restpipe.context.run_with_deadline`; synchronous interceptors run in
a worker thread so they are raced the same way. A step that misses its
deadline is discarded: its late result never reaches the chain.
A failing or timed-out step either aborts the chain with
:class:`~restpipe.exceptions.CriticalInterceptorFailure` (critical entries,
request and response phases only) or is logged and passed over, leaving the
payload unchanged.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from restpipe.context import DeadlineExceeded, ExecutionContext, run_with_deadline
from restpipe.exceptions import (
    CriticalInterceptorFailure,
    DuplicateInterceptorError,
    InterceptorTimeoutError,
    OperationCancelledError,
)
from restpipe.interceptors.base import Interceptor
from restpipe.models import InterceptorConfig, Phase
from restpipe.payload import RequestPayload, ResponsePayload

logger = logging.getLogger(__name__)

Condition = Callable[[ExecutionContext], bool]


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------


@dataclass
class InterceptorEntry:
    """Registry bookkeeping for one registered interceptor.

    Attributes:
        id: Generated identifier, ``<name>-<8 hex chars>``.
        interceptor: The registered :class:`Interceptor`.
        sequence: Insertion counter used to break priority ties.
    """

    id: str
    interceptor: Interceptor
    name: str
    phase: Phase
    priority: int
    enabled: bool
    critical: bool
    group: Optional[str]
    condition: Optional[Condition]
    description: str
    timeout: Optional[float]
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phase": self.phase.value,
            "priority": self.priority,
            "enabled": self.enabled,
            "critical": self.critical,
            "group": self.group,
            "description": self.description,
        }


@dataclass
class InterceptorResult:
    """Outcome of one visited entry in one chain run."""

    interceptor: str
    phase: Phase
    success: bool
    skipped: bool = False
    modified: bool = False
    duration: float = 0.0
    error: Optional[BaseException] = None


@dataclass
class ChainResult:
    """Outcome of :meth:`InterceptorRegistry.run_chain`.

    Attributes:
        payload: Final payload; for the error phase, the transformed error
            or the recovery value.
        errors: Exceptions from non-critical steps that failed.
        short_circuited: A step set ``context.short_circuit``.
        recovered: An error-phase step returned a recovery value.
    """

    phase: Phase
    payload: Any
    results: list[InterceptorResult] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)
    short_circuited: bool = False
    recovered: bool = False
    duration: float = 0.0


@dataclass
class InterceptorStatistics:
    """Per-entry execution counters. Durations are in seconds."""

    executions: int = 0
    successes: int = 0
    errors: int = 0
    skips: int = 0
    timeouts: int = 0
    total_duration: float = 0.0
    last_executed: Optional[float] = None

    @property
    def average_duration(self) -> float:
        if self.executions == 0:
            return 0.0
        return self.total_duration / self.executions

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["average_duration"] = self.average_duration
        return data


Listener = Callable[[InterceptorEntry, InterceptorResult], None]


def is_recovery_value(value: Any) -> bool:
    """Return whether an error-phase return value stands in for a response.

    A value counts as a recovery when it is a
    :class:`~restpipe.payload.ResponsePayload`, a non-exception object with
    ``status_code`` and ``data`` attributes, or a mapping with a ``data`` key
    and a ``status`` or ``status_code`` key.
    """
    if isinstance(value, ResponsePayload):
        return True
    if isinstance(value, BaseException) or value is None:
        return False
    if isinstance(value, Mapping):
        return ("status" in value or "status_code" in value) and "data" in value
    return hasattr(value, "status_code") and hasattr(value, "data")


def _copy_payload(payload: Any) -> Any:
    if isinstance(payload, (RequestPayload, ResponsePayload)):
        return payload.copy()
    if isinstance(payload, (dict, list)):
        return copy.deepcopy(payload)
    return payload


# ------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------


class InterceptorRegistry:
    """Registers interceptors per phase and executes them as ordered chains.

    Args:
        config: Executor settings (default timeout, duplicate policy, slow
            threshold). Defaults to :class:`~restpipe.models.InterceptorConfig`.

    Example::

        registry = InterceptorRegistry()
        registry.register(FunctionInterceptor("ua", Phase.REQUEST, set_ua))
        request = await registry.run_request_chain(request, ExecutionContext())
    """

    def __init__(self, config: Optional[InterceptorConfig] = None) -> None:
        self.config = config or InterceptorConfig()
        self._lock = threading.RLock()
        self._chains: dict[Phase, tuple[InterceptorEntry, ...]] = {
            phase: () for phase in Phase
        }
        self._by_id: dict[str, InterceptorEntry] = {}
        self._stats: dict[str, InterceptorStatistics] = {}
        self._listeners: list[Listener] = []
        self._sequence = itertools.count()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        interceptor: Interceptor,
        *,
        priority: Optional[int] = None,
        enabled: Optional[bool] = None,
        critical: Optional[bool] = None,
        group: Optional[str] = None,
        condition: Optional[Condition] = None,
    ) -> str:
        """Add *interceptor* to its phase chain.

        Keyword arguments override the interceptor's own defaults for this
        registration.

        Returns:
            The generated entry id.

        Raises:
            DuplicateInterceptorError: If the name is already registered in
                the phase and ``allow_duplicates`` is off.
        """
        phase = Phase(interceptor.phase)
        name = interceptor.name
        with self._lock:
            if not self.config.allow_duplicates and any(
                e.name == name for e in self._chains[phase]
            ):
                raise DuplicateInterceptorError(name, phase.value)

            entry = InterceptorEntry(
                id=f"{name}-{uuid.uuid4().hex[:8]}",
                interceptor=interceptor,
                name=name,
                phase=phase,
                priority=int(interceptor.priority if priority is None else priority),
                enabled=interceptor.enabled if enabled is None else enabled,
                critical=interceptor.critical if critical is None else critical,
                group=group if group is not None else interceptor.group,
                condition=condition if condition is not None else interceptor.condition,
                description=interceptor.description,
                timeout=interceptor.timeout,
                sequence=next(self._sequence),
            )
            chain = list(self._chains[phase])
            chain.append(entry)
            chain.sort(key=lambda e: (-e.priority, e.sequence))
            self._chains[phase] = tuple(chain)
            self._by_id[entry.id] = entry
            self._stats[entry.id] = InterceptorStatistics()

        logger.debug(
            "Registered interceptor '%s' (%s, priority %d) as %s",
            name,
            phase.value,
            entry.priority,
            entry.id,
        )
        return entry.id

    def _remove(self, predicate: Callable[[InterceptorEntry], bool]) -> int:
        with self._lock:
            removed = [e for e in self._by_id.values() if predicate(e)]
            if not removed:
                return 0
            ids = {e.id for e in removed}
            for phase in Phase:
                self._chains[phase] = tuple(
                    e for e in self._chains[phase] if e.id not in ids
                )
            for entry_id in ids:
                del self._by_id[entry_id]
                self._stats.pop(entry_id, None)
        for entry in removed:
            logger.debug("Unregistered interceptor '%s' (%s)", entry.name, entry.id)
        return len(removed)

    def unregister(self, entry_id: str) -> int:
        """Remove the entry with *entry_id*. Returns the number removed (0 or 1)."""
        return self._remove(lambda e: e.id == entry_id)

    def unregister_by_name(self, name: str) -> int:
        return self._remove(lambda e: e.name == name)

    def unregister_by_group(self, group: str) -> int:
        return self._remove(lambda e: e.group == group)

    # ------------------------------------------------------------------
    # Enable / disable
    # ------------------------------------------------------------------

    def set_enabled(self, entry_id: str, enabled: bool) -> bool:
        """Toggle one entry. Returns ``False`` if *entry_id* is unknown."""
        with self._lock:
            entry = self._by_id.get(entry_id)
            if entry is None:
                return False
            entry.enabled = enabled
        return True

    def enable(self, entry_id: str) -> bool:
        return self.set_enabled(entry_id, True)

    def disable(self, entry_id: str) -> bool:
        return self.set_enabled(entry_id, False)

    def set_group_enabled(self, group: str, enabled: bool) -> int:
        """Toggle every entry in *group*. Returns the number of entries touched."""
        with self._lock:
            entries = [e for e in self._by_id.values() if e.group == group]
            for entry in entries:
                entry.enabled = enabled
        return len(entries)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[InterceptorEntry]:
        with self._lock:
            return self._by_id.get(entry_id)

    def find(self, name: str) -> list[InterceptorEntry]:
        """Return every entry named *name*, across phases."""
        with self._lock:
            return [e for e in self._by_id.values() if e.name == name]

    def entries(self, phase: Optional[Phase] = None) -> list[InterceptorEntry]:
        """Return entries in execution order; all phases when *phase* is ``None``."""
        with self._lock:
            if phase is not None:
                return list(self._chains[Phase(phase)])
            return [e for p in Phase for e in self._chains[p]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        """Call *listener(entry, result)* after every visited entry."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, entry: InterceptorEntry, result: InterceptorResult) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entry, result)
            except Exception:
                logger.exception("Interceptor listener failed for '%s'", entry.name)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_chain(
        self, phase: Phase, payload: Any, context: ExecutionContext
    ) -> ChainResult:
        """Run every enabled entry of *phase* in order.

        Each step receives a copy of the current payload. A step whose
        condition is false is recorded as skipped. After any step, a set
        ``context.short_circuit`` stops the chain. In the error phase, a
        recovery value (see :func:`is_recovery_value`) also stops it.

        Raises:
            CriticalInterceptorFailure: A critical request or response step
                failed or timed out.
            OperationCancelledError: The context's token was cancelled.
        """
        phase = Phase(phase)
        with self._lock:
            snapshot = self._chains[phase]
        chain = ChainResult(phase=phase, payload=payload)
        started = time.perf_counter()
        previous_phase = context.phase
        context.phase = phase
        try:
            for entry in snapshot:
                context.check_cancelled()
                if not entry.enabled:
                    continue
                result = await self._run_entry(entry, chain, context)
                chain.results.append(result)
                self._notify(entry, result)
                if chain.recovered:
                    break
                if context.short_circuit:
                    chain.short_circuited = True
                    break
        finally:
            context.phase = previous_phase
            chain.duration = time.perf_counter() - started
        return chain

    async def _run_entry(
        self, entry: InterceptorEntry, chain: ChainResult, context: ExecutionContext
    ) -> InterceptorResult:
        phase = chain.phase
        stats = self._stats.get(entry.id)
        try:
            applies = entry.condition(context) if entry.condition else True
        except Exception as exc:
            logger.warning("Condition of interceptor '%s' raised: %s", entry.name, exc)
            applies = False
        if not applies:
            if stats is not None:
                with self._lock:
                    stats.skips += 1
            return InterceptorResult(entry.name, phase, success=True, skipped=True)

        value = _copy_payload(chain.payload)
        started = time.perf_counter()
        failure: Optional[BaseException] = None
        timed_out = False
        try:
            output = await self._invoke(entry, value, context)
        except OperationCancelledError:
            raise
        except DeadlineExceeded as exc:
            timed_out = True
            failure = InterceptorTimeoutError(entry.name, phase.value, exc.timeout)
        except Exception as exc:
            failure = exc
        duration = time.perf_counter() - started

        if stats is not None:
            with self._lock:
                stats.executions += 1
                stats.total_duration += duration
                stats.last_executed = time.time()
                if failure is None:
                    stats.successes += 1
                else:
                    stats.errors += 1
                    if timed_out:
                        stats.timeouts += 1

        if duration > self.config.slow_threshold:
            logger.warning(
                "Interceptor '%s' took %.2fs (%s)", entry.name, duration, phase.value
            )

        if failure is not None:
            self._call_on_error(entry, failure, context)
            if entry.critical and phase != Phase.ERROR:
                raise CriticalInterceptorFailure(
                    entry.name, phase.value, failure
                ) from failure
            logger.warning(
                "Interceptor '%s' failed during %s phase: %s",
                entry.name,
                phase.value,
                failure,
            )
            chain.errors.append(failure)
            return InterceptorResult(
                entry.name, phase, success=False, duration=duration, error=failure
            )

        modified = self._apply_output(chain, value, output)
        return InterceptorResult(
            entry.name, phase, success=True, modified=modified, duration=duration
        )

    async def _invoke(
        self, entry: InterceptorEntry, value: Any, context: ExecutionContext
    ) -> Any:
        timeout = entry.timeout if entry.timeout is not None else self.config.timeout
        return await run_with_deadline(
            entry.interceptor.intercept, value, context, timeout=timeout
        )

    @staticmethod
    def _apply_output(chain: ChainResult, value: Any, output: Any) -> bool:
        if chain.phase == Phase.ERROR:
            if output is None:
                return False
            if is_recovery_value(output):
                chain.payload = output
                chain.recovered = True
                return True
            if isinstance(output, BaseException):
                modified = output is not chain.payload
                chain.payload = output
                return modified
            logger.debug(
                "Ignoring error-phase return value of type %s", type(output).__name__
            )
            return False

        new_payload = value if output is None else output
        try:
            modified = bool(new_payload != chain.payload)
        except Exception:
            modified = True
        chain.payload = new_payload
        return modified

    def _call_on_error(
        self, entry: InterceptorEntry, failure: BaseException, context: ExecutionContext
    ) -> None:
        try:
            entry.interceptor.on_error(failure, context)
        except Exception as exc:
            logger.warning(
                "on_error hook of interceptor '%s' raised: %s", entry.name, exc
            )

    async def run_request_chain(self, request: Any, context: ExecutionContext) -> Any:
        return (await self.run_chain(Phase.REQUEST, request, context)).payload

    async def run_response_chain(self, response: Any, context: ExecutionContext) -> Any:
        return (await self.run_chain(Phase.RESPONSE, response, context)).payload

    async def run_error_chain(
        self, error: BaseException, context: ExecutionContext
    ) -> Any:
        """Run the error chain and return the final error or recovery value."""
        return (await self.run_chain(Phase.ERROR, error, context)).payload

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_statistics(
        self, entry_id: Optional[str] = None
    ) -> InterceptorStatistics | dict[str, InterceptorStatistics] | None:
        """Return a copy of one entry's statistics, or of all keyed by id."""
        with self._lock:
            if entry_id is not None:
                stats = self._stats.get(entry_id)
                return copy.copy(stats) if stats is not None else None
            return {key: copy.copy(value) for key, value in self._stats.items()}

    def get_global_statistics(self) -> dict[str, Any]:
        with self._lock:
            stats = list(self._stats.values())
            total = len(self._by_id)
            enabled = sum(1 for e in self._by_id.values() if e.enabled)
        executions = sum(s.executions for s in stats)
        errors = sum(s.errors for s in stats)
        duration = sum(s.total_duration for s in stats)
        return {
            "total_interceptors": total,
            "enabled_interceptors": enabled,
            "total_executions": executions,
            "total_successes": sum(s.successes for s in stats),
            "total_errors": errors,
            "total_skips": sum(s.skips for s in stats),
            "total_timeouts": sum(s.timeouts for s in stats),
            "error_rate": errors / executions if executions else 0.0,
            "average_duration": duration / executions if executions else 0.0,
        }

    def clear_statistics(self, entry_id: Optional[str] = None) -> None:
        with self._lock:
            if entry_id is not None:
                if entry_id in self._stats:
                    self._stats[entry_id] = InterceptorStatistics()
                return
            for key in self._stats:
                self._stats[key] = InterceptorStatistics()

    def get_summary(self) -> dict[str, Any]:
        """Counts by phase and priority, plus enabled/disabled totals."""
        with self._lock:
            entries = list(self._by_id.values())
        by_phase = {phase.value: 0 for phase in Phase}
        by_priority: dict[int, int] = {}
        groups: dict[str, int] = {}
        for entry in entries:
            by_phase[entry.phase.value] += 1
            by_priority[entry.priority] = by_priority.get(entry.priority, 0) + 1
            if entry.group:
                groups[entry.group] = groups.get(entry.group, 0) + 1
        enabled = sum(1 for e in entries if e.enabled)
        return {
            "total": len(entries),
            "enabled": enabled,
            "disabled": len(entries) - enabled,
            "by_phase": by_phase,
            "by_priority": dict(sorted(by_priority.items(), reverse=True)),
            "groups": groups,
        }

    def reset(self) -> None:
        """Remove every entry, statistic and listener."""
        with self._lock:
            self._chains = {phase: () for phase in Phase}
            self._by_id.clear()
            self._stats.clear()
            self._listeners.clear()
