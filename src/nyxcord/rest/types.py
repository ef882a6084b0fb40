"""
Data types for the REST client.

Configuration dataclasses validate themselves in __post_init__. Event
payloads are frozen dataclasses, one per RestEvent member.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Literal

from nyxcord.errors import ValidationError

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
RateLimitScope = Literal["user", "global", "shared"]

DISCORD_USER_AGENT_REGEX = re.compile(r"^DiscordBot \(([^,\s]+), (\d+(\.\d+)*)\)$")
DEFAULT_USER_AGENT = "DiscordBot (https://github.com/nyxcord/nyxcord, 0.1.0)"

DEFAULT_RETRY_METHODS: frozenset[str] = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
DEFAULT_RETRY_STATUS_CODES: frozenset[int] = frozenset({500, 502, 503, 504})
DEFAULT_RETRY_ERROR_CODES: tuple[str, ...] = (
    "ECONNRESET",
    "ECONNREFUSED",
    "ENOTFOUND",
    "ENETDOWN",
    "ENETUNREACH",
    "EHOSTDOWN",
    "EHOSTUNREACH",
    "EPIPE",
    "ETIMEDOUT",
)

# Routes that share one bucket regardless of their parameters: (pattern, identifier)
DEFAULT_SHARED_BUCKETS: tuple[tuple[str, str], ...] = (
    (r"^/guilds/\d+/emojis", "emoji"),
    (r"^/channels/\d+/messages/bulk-delete", "bulk-delete"),
    (r"^/guilds/\d+/channels", "guild-channels"),
    (r"^/guilds/\d+/members", "guild-members"),
)


class QueuePriority(IntEnum):
    """Request priority inside the queue (higher runs first)."""

    LOW = 0
    NORMAL = 5
    HIGH = 10


class RetryReason(str, Enum):
    """Why a request is being retried."""

    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class RestEvent(str, Enum):
    """Events emitted by the REST client."""

    REQUEST_START = "request_start"
    REQUEST_FINISH = "request_finish"
    REQUEST_FAILURE = "request_failure"
    RATE_LIMIT_HIT = "rate_limit_hit"
    RATE_LIMIT_UPDATE = "rate_limit_update"
    RATE_LIMIT_EXPIRE = "rate_limit_expire"
    RETRY = "retry"
    QUEUE_COMPLETE = "queue_complete"
    QUEUE_TIMEOUT = "queue_timeout"
    QUEUE_REJECT = "queue_reject"


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class RateLimitConfig:
    """Rate limit governor settings."""

    safety_margin_ms: int = 50
    cleanup_interval_ms: int = 30000
    max_backoff_multiplier: int = 8
    # Fallback when a 429 carries no retry-after header
    default_retry_after_ms: int = 1000
    shared_buckets: tuple[tuple[str, str], ...] = DEFAULT_SHARED_BUCKETS

    def __post_init__(self) -> None:
        if self.safety_margin_ms < 0:
            msg = f"safety_margin_ms must be >= 0, got {self.safety_margin_ms}"
            raise ValidationError(msg)
        if self.cleanup_interval_ms <= 0:
            msg = f"cleanup_interval_ms must be > 0, got {self.cleanup_interval_ms}"
            raise ValidationError(msg)
        if self.max_backoff_multiplier < 1:
            msg = f"max_backoff_multiplier must be >= 1, got {self.max_backoff_multiplier}"
            raise ValidationError(msg)
        for pattern, identifier in self.shared_buckets:
            if not identifier:
                msg = f"shared bucket pattern {pattern!r} has an empty identifier"
                raise ValidationError(msg)
            try:
                re.compile(pattern)
            except re.error as e:
                msg = f"invalid shared bucket pattern {pattern!r}: {e}"
                raise ValidationError(msg) from e


@dataclass
class RetryConfig:
    """Retry policy for failed requests."""

    max_retries: int = 3
    min_timeout_ms: int = 100
    max_timeout_ms: int = 15000
    timeout_factor: float = 2.0
    methods: frozenset[str] = DEFAULT_RETRY_METHODS
    status_codes: frozenset[int] = DEFAULT_RETRY_STATUS_CODES
    error_codes: tuple[str, ...] = DEFAULT_RETRY_ERROR_CODES

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            msg = f"max_retries must be >= 0, got {self.max_retries}"
            raise ValidationError(msg)
        if self.min_timeout_ms < 0:
            msg = f"min_timeout_ms must be >= 0, got {self.min_timeout_ms}"
            raise ValidationError(msg)
        if self.max_timeout_ms < self.min_timeout_ms:
            msg = (
                f"max_timeout_ms ({self.max_timeout_ms}) must be >= "
                f"min_timeout_ms ({self.min_timeout_ms})"
            )
            raise ValidationError(msg)
        if self.timeout_factor < 1.0:
            msg = f"timeout_factor must be >= 1.0, got {self.timeout_factor}"
            raise ValidationError(msg)
        self.methods = frozenset(m.upper() for m in self.methods)
        self.status_codes = frozenset(self.status_codes)
        self.error_codes = tuple(code.upper() for code in self.error_codes)


@dataclass
class QueueConfig:
    """Request queue settings."""

    enabled: bool = True
    concurrency: int = 10
    max_queue_size: int = 1000
    # Max time a request may wait in the queue (0 = unlimited)
    timeout_ms: int = 0
    # Explicit overrides keyed by "{METHOD}:{path}"
    priorities: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            msg = f"concurrency must be > 0, got {self.concurrency}"
            raise ValidationError(msg)
        if self.max_queue_size <= 0:
            msg = f"max_queue_size must be > 0, got {self.max_queue_size}"
            raise ValidationError(msg)
        if self.timeout_ms < 0:
            msg = f"timeout_ms must be >= 0, got {self.timeout_ms}"
            raise ValidationError(msg)


@dataclass
class HttpConfig:
    """Transport settings for the HTTP service."""

    token: str
    version: int = 10
    base_url: str = "https://discord.com"
    user_agent: str = DEFAULT_USER_AGENT
    timeout_ms: int = 15000

    def __post_init__(self) -> None:
        if not self.token:
            msg = "token must be a non-empty string"
            raise ValidationError(msg)
        if self.version != 10:
            msg = f"only API version 10 is supported, got {self.version}"
            raise ValidationError(msg)
        if not DISCORD_USER_AGENT_REGEX.match(self.user_agent):
            msg = f"user_agent must match 'DiscordBot (url, version)', got {self.user_agent!r}"
            raise ValidationError(msg)
        if self.timeout_ms <= 0:
            msg = f"timeout_ms must be > 0, got {self.timeout_ms}"
            raise ValidationError(msg)
        self.base_url = self.base_url.rstrip("/")

    def __repr__(self) -> str:
        return (
            f"HttpConfig(token='***', version={self.version}, base_url={self.base_url!r}, "
            f"timeout_ms={self.timeout_ms})"
        )


@dataclass
class RestConfig:
    """Full REST client configuration."""

    http: HttpConfig
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    @classmethod
    def from_token(cls, token: str, **kwargs: Any) -> RestConfig:
        return cls(http=HttpConfig(token=token), **kwargs)


# =============================================================================
# State records
# =============================================================================


@dataclass
class RateLimitBucket:
    """Locally tracked Discord rate limit bucket."""

    hash: str
    limit: int
    remaining: int
    reset: int  # epoch ms
    reset_after: int  # ms
    scope: RateLimitScope = "user"
    shared_route: str | None = None

    def is_expired(self, now_ms: int) -> bool:
        return self.reset < now_ms


@dataclass
class RateLimitAttempt:
    """Consecutive 429 tracking for one route key."""

    count: int
    last_attempt: int
    next_reset: int
    scope: RateLimitScope = "user"


@dataclass
class RateLimitStatus:
    limited: bool
    remaining: float
    reset_after: int
    scope: RateLimitScope


@dataclass(frozen=True)
class FileUpload:
    """A file attached to a multipart request."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class RequestOptions:
    """A single REST call."""

    method: HttpMethod
    path: str
    body: Any = None
    query: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    reason: str | None = None
    files: list[FileUpload] | None = None

    def __post_init__(self) -> None:
        self.method = self.method.upper()  # type: ignore[assignment]
        if self.method not in {"GET", "POST", "PUT", "PATCH", "DELETE"}:
            msg = f"unsupported HTTP method {self.method!r}"
            raise ValidationError(msg)
        if not self.path.startswith("/"):
            msg = f"path must start with '/', got {self.path!r}"
            raise ValidationError(msg)


@dataclass
class HttpResponse:
    """Raw result of one HTTP exchange."""

    status: int
    headers: dict[str, str]
    data: Any
    latency_ms: int = 0
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status < 400


@dataclass
class RestMetrics:
    """Counters for REST observability."""

    requests_total: int = 0
    requests_succeeded: int = 0
    requests_failed: int = 0
    rate_limited: int = 0
    retries: int = 0
    queue_rejected: int = 0
    queue_timed_out: int = 0
    last_latency_ms: int = 0


# =============================================================================
# Event payloads
# =============================================================================


@dataclass(frozen=True)
class RequestStartEvent:
    request_id: str
    method: str
    path: str
    timestamp_ms: int


@dataclass(frozen=True)
class RequestFinishEvent:
    request_id: str
    method: str
    path: str
    status: int
    latency_ms: int
    timestamp_ms: int


@dataclass(frozen=True)
class RequestFailureEvent:
    request_id: str
    method: str
    path: str
    error: BaseException
    latency_ms: int
    timestamp_ms: int


@dataclass(frozen=True)
class RateLimitHitEvent:
    route_key: str
    method: str
    path: str
    retry_after_ms: int
    scope: str
    global_: bool
    attempts: int
    bucket_hash: str | None
    timestamp_ms: int


@dataclass(frozen=True)
class RateLimitUpdateEvent:
    route_key: str
    bucket_hash: str
    limit: int
    remaining: int
    reset_after_ms: int
    scope: str
    timestamp_ms: int


@dataclass(frozen=True)
class RateLimitExpireEvent:
    bucket_hash: str
    timestamp_ms: int


@dataclass(frozen=True)
class RetryEvent:
    request_id: str
    method: str
    path: str
    attempt: int
    max_attempts: int
    delay_ms: int
    reason: RetryReason
    error: BaseException
    timestamp_ms: int


@dataclass(frozen=True)
class QueueCompleteEvent:
    request_id: str
    method: str
    path: str
    priority: int
    queue_time_ms: int
    success: bool
    timestamp_ms: int


@dataclass(frozen=True)
class QueueTimeoutEvent:
    request_id: str
    method: str
    path: str
    priority: int
    queue_time_ms: int
    timestamp_ms: int


@dataclass(frozen=True)
class QueueRejectEvent:
    request_id: str
    method: str
    path: str
    priority: int
    queue_size: int
    max_queue_size: int
    timestamp_ms: int
