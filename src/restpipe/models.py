"""Canonical Pydantic models and enums shared across restpipe modules.

The models fall into two groups:

**Enumerations** used on every layer:
    :class:`Phase`, :class:`Priority`, :class:`PluginStatus`,
    :class:`PluginCapability`, :class:`CircuitState`,
    :class:`BackoffStrategy`, :class:`BuiltinType`.

**Configuration models** -- serialised as JSON in the user's config
directory and passed to the runtime components:
    :class:`InterceptorConfig`, :class:`RetryPolicy`,
    :class:`CircuitBreakerConfig`, :class:`PluginManagerConfig`,
    :class:`PluginsConfig`, :class:`CacheConfig`, :class:`TransportConfig`,
    and the root :class:`PipelineConfig`.

All durations are expressed in seconds as floats.
"""

from __future__ import annotations

import enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# --- Enumerations ---


class Phase(str, enum.Enum):
    """Interceptor execution phase; selects which ordered chain runs."""

    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"


class Priority(enum.IntEnum):
    """Conventional priority levels. Higher values run first.

    Any integer is accepted as a priority; these are the levels the
    built-in interceptors use so custom ones can slot in between.
    """

    HIGHEST = 1000
    HIGH = 750
    NORMAL = 500
    LOW = 250
    LOWEST = 0


class PluginStatus(str, enum.Enum):
    """Plugin lifecycle state.

    ``LOADING -> LOADED -> ACTIVE <-> INACTIVE``, any state ``-> ERROR``,
    and ``LOADED/ACTIVE/INACTIVE/ERROR -> UNLOADED`` (terminal).
    """

    LOADING = "loading"
    LOADED = "loaded"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    UNLOADED = "unloaded"


class PluginCapability(str, enum.Enum):
    """What a plugin declares it contributes to the pipeline."""

    REQUEST_INTERCEPTION = "request_interception"
    RESPONSE_INTERCEPTION = "response_interception"
    ERROR_HANDLING = "error_handling"
    VARIABLE_MANIPULATION = "variable_manipulation"
    ASSERTION_ENHANCEMENT = "assertion_enhancement"
    REPORTING = "reporting"
    AUTHENTICATION = "authentication"
    CACHING = "caching"
    LOGGING = "logging"
    MONITORING = "monitoring"
    DATA_TRANSFORMATION = "data_transformation"


class CircuitState(str, enum.Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BackoffStrategy(str, enum.Enum):
    """Base formula used to compute the delay before a retry."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


class BuiltinType(str, enum.Enum):
    """Built-in interceptors that :class:`PipelineConfig` can switch on."""

    AUTHENTICATION = "authentication"
    LOGGING = "logging"
    RETRY = "retry"
    TIMEOUT = "timeout"
    USER_AGENT = "user_agent"
    COMPRESSION = "compression"
    VALIDATION = "validation"
    CACHING = "caching"
    RATE_LIMITING = "rate_limiting"
    RESPONSE_TIME = "response_time"
    MONITORING = "monitoring"


# --- Interceptor chain ---


class InterceptorConfig(BaseModel):
    """Settings for the interceptor registry and chain executor."""

    timeout: float = Field(
        default=30.0, gt=0, description="Per-interceptor timeout in seconds"
    )
    allow_duplicates: bool = Field(
        default=False,
        description="Allow several enabled interceptors with the same name in a phase",
    )
    slow_threshold: float = Field(
        default=5.0,
        ge=0,
        description="Interceptors slower than this are logged as a warning",
    )


# --- Resilience ---


DEFAULT_RETRY_STATUS_CODES = [408, 429, 500, 502, 503, 504]


class RetryPolicy(BaseModel):
    """How an operation is retried.

    ``retry_condition`` is a runtime-only callable ``(error, attempt) ->
    bool``; when present it alone decides whether an error is retryable. It
    is excluded from serialisation.

    Example::

        RetryPolicy(max_retries=5, backoff_strategy="linear", jitter=False)
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    retry_delay: float = Field(default=1.0, ge=0, description="Base delay in seconds")
    backoff_factor: float = Field(default=2.0, gt=0, description="Exponential growth factor")
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter: bool = Field(default=True, description="Perturb delays symmetrically")
    jitter_factor: float = Field(default=0.1, ge=0, le=1)
    min_retry_delay: float = Field(default=0.1, ge=0)
    max_retry_delay: float = Field(default=30.0, ge=0)
    timeout: Optional[float] = Field(
        default=None, gt=0, description="Per-attempt timeout in seconds"
    )
    retry_status_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRY_STATUS_CODES)
    )
    retry_condition: Optional[Callable[[BaseException, int], bool]] = Field(
        default=None, exclude=True
    )

    @field_validator("retry_status_codes")
    @classmethod
    def _check_status_codes(cls, value: list[int]) -> list[int]:
        for code in value:
            if code < 100 or code > 599:
                raise ValueError(f"Invalid HTTP status code: {code}")
        return value

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "RetryPolicy":
        if self.min_retry_delay > self.max_retry_delay:
            raise ValueError("min_retry_delay must not exceed max_retry_delay")
        return self


class CircuitBreakerConfig(BaseModel):
    """Thresholds for one circuit breaker."""

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(
        default=3, ge=1, description="Consecutive half-open successes needed to close"
    )
    recovery_timeout: float = Field(
        default=30.0, ge=0, description="Seconds OPEN before a trial call is allowed"
    )


# --- Plugins ---


class PluginManagerConfig(BaseModel):
    """Settings for :class:`~restpipe.plugins.manager.PluginManager`."""

    plugin_timeout: float = Field(
        default=30.0, gt=0, description="Timeout for lifecycle hooks in seconds"
    )
    health_check_timeout: float = Field(default=5.0, gt=0)
    health_check_interval: float = Field(
        default=60.0, ge=0, description="Seconds between health sweeps; 0 disables"
    )
    enable_statistics: bool = True
    environment: str = Field(default="development")


class PluginsConfig(BaseModel):
    """Explicit plugin allow/deny lists used by entry-point discovery."""

    enabled: list[str] = Field(default_factory=list)
    disabled: list[str] = Field(default_factory=list)


# --- Built-ins and transport ---


class CacheConfig(BaseModel):
    """Response cache settings for the caching built-in."""

    enabled: bool = Field(default=True, description="Enable response caching")
    ttl_seconds: int = Field(default=300, description="Cache TTL in seconds")
    directory: Optional[str] = Field(
        default=None, description="Cache directory; defaults to the XDG cache dir"
    )


class TransportConfig(BaseModel):
    """HTTP transport settings for :class:`~restpipe.transport.HttpxTransport`."""

    base_url: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    raise_for_status: bool = Field(
        default=True, description="Treat responses >= 400 as errors"
    )


class PipelineConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/restpipe/config.json``.

    Loaded by :func:`~restpipe.config.load_config`; environment variables
    (``RESTPIPE_*``) override file values, see
    :func:`~restpipe.config.resolve_config`.

    Plugins may keep their own settings under ``plugin_config`` keyed by
    plugin name; unknown top-level keys are preserved in ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    interceptors: InterceptorConfig = Field(default_factory=InterceptorConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    plugin_manager: PluginManagerConfig = Field(default_factory=PluginManagerConfig)
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    builtins: list[BuiltinType] = Field(
        default_factory=lambda: [
            BuiltinType.LOGGING,
            BuiltinType.RETRY,
            BuiltinType.TIMEOUT,
            BuiltinType.USER_AGENT,
            BuiltinType.COMPRESSION,
            BuiltinType.VALIDATION,
            BuiltinType.MONITORING,
        ],
        description="Built-in interceptors registered when a pipeline starts",
    )
    user_agent: str = Field(default="restpipe")
    auth_source: Optional[str] = Field(
        default=None,
        description="Credential source for the authentication built-in (env:VAR, file:/path)",
    )
    plugin_config: dict[str, dict[str, Any]] = Field(default_factory=dict)
