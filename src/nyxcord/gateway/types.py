"""
Data types for the Gateway client.

Wire payloads are validated with pydantic; configuration and state records
are dataclasses validated in __post_init__.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from nyxcord.errors import ValidationError

EncodingType = Literal["json", "etf"]

DEFAULT_GATEWAY_URL = "wss://gateway.discord.gg"
MAX_SEQUENCE = 2**53 - 1
ZLIB_SUFFIX = b"\x00\x00\xff\xff"


class GatewayOpcode(IntEnum):
    """Gateway opcodes."""

    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    PRESENCE_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


class GatewayCloseCode(IntEnum):
    """Close codes sent by the Gateway."""

    UNKNOWN_ERROR = 4000
    UNKNOWN_OPCODE = 4001
    DECODE_ERROR = 4002
    NOT_AUTHENTICATED = 4003
    AUTHENTICATION_FAILED = 4004
    ALREADY_AUTHENTICATED = 4005
    INVALID_SEQ = 4007
    RATE_LIMITED = 4008
    SESSION_TIMED_OUT = 4009
    INVALID_SHARD = 4010
    SHARDING_REQUIRED = 4011
    INVALID_API_VERSION = 4012
    INVALID_INTENTS = 4013
    DISALLOWED_INTENTS = 4014


# Reconnecting cannot fix these
FATAL_CLOSE_CODES: frozenset[int] = frozenset({4004, 4010, 4011, 4012, 4013, 4014})
# The session cannot be resumed after these
SESSION_INVALIDATING_CLOSE_CODES: frozenset[int] = frozenset({4007, 4009})


class GatewayIntentBits(IntFlag):
    """Gateway intents."""

    GUILDS = 1 << 0
    GUILD_MEMBERS = 1 << 1
    GUILD_MODERATION = 1 << 2
    GUILD_EXPRESSIONS = 1 << 3
    GUILD_INTEGRATIONS = 1 << 4
    GUILD_WEBHOOKS = 1 << 5
    GUILD_INVITES = 1 << 6
    GUILD_VOICE_STATES = 1 << 7
    GUILD_PRESENCES = 1 << 8
    GUILD_MESSAGES = 1 << 9
    GUILD_MESSAGE_REACTIONS = 1 << 10
    GUILD_MESSAGE_TYPING = 1 << 11
    DIRECT_MESSAGES = 1 << 12
    DIRECT_MESSAGE_REACTIONS = 1 << 13
    DIRECT_MESSAGE_TYPING = 1 << 14
    MESSAGE_CONTENT = 1 << 15
    GUILD_SCHEDULED_EVENTS = 1 << 16
    AUTO_MODERATION_CONFIGURATION = 1 << 20
    AUTO_MODERATION_EXECUTION = 1 << 21
    GUILD_MESSAGE_POLLS = 1 << 24
    DIRECT_MESSAGE_POLLS = 1 << 25


ALL_INTENTS = 0
for _intent in GatewayIntentBits:
    ALL_INTENTS |= _intent.value


def resolve_intents(intents: int | Iterable[GatewayIntentBits | int]) -> int:
    """Combine intents into a bitfield, rejecting unknown bits."""
    if isinstance(intents, int):
        value = int(intents)
    else:
        value = 0
        for intent in intents:
            value |= int(intent)
    if value < 0 or value & ~ALL_INTENTS:
        msg = f"Invalid intents: {value}"
        raise ValidationError(msg)
    return value


class ConnectionState(str, Enum):
    """Gateway connection state."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    IDENTIFYING = "IDENTIFYING"
    CONNECTED = "CONNECTED"
    RESUMING = "RESUMING"
    CLOSED = "CLOSED"


class CompressionType(str, Enum):
    """Transport compression negotiated in the connection URL."""

    ZLIB_STREAM = "zlib-stream"


class GatewayEvent(str, Enum):
    """Events emitted by the Gateway client."""

    STATE_CHANGE = "state_change"
    HELLO = "hello"
    READY = "ready"
    RESUMED = "resumed"
    DISPATCH = "dispatch"
    HEARTBEAT_SENT = "heartbeat_sent"
    HEARTBEAT_ACK = "heartbeat_ack"
    INVALID_SESSION = "invalid_session"
    RECONNECTING = "reconnecting"
    ZOMBIE = "zombie"
    CLOSE = "close"
    ERROR = "error"
    WARN = "warn"
    DEBUG = "debug"


class GatewayPayload(BaseModel):
    """Gateway payload structure: {op, d, s, t}."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    op: GatewayOpcode = Field(..., description="Opcode")
    d: Any = Field(default=None, description="Event data")
    s: int | None = Field(default=None, ge=0, description="Sequence number (dispatch only)")
    t: str | None = Field(default=None, description="Event name (dispatch only)")


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class EncodingConfig:
    """Payload encoding settings."""

    encoding: EncodingType = "json"
    max_payload_size: int = 4096
    # Integers outside the IEEE-754 safe range are sent as strings
    allow_big_ints: bool = True
    etf_strict_mode: bool = True
    etf_allow_atom_keys: bool = False

    def __post_init__(self) -> None:
        if self.encoding not in ("json", "etf"):
            msg = f"encoding must be 'json' or 'etf', got {self.encoding!r}"
            raise ValidationError(msg)
        if self.max_payload_size <= 0:
            msg = f"max_payload_size must be > 0, got {self.max_payload_size}"
            raise ValidationError(msg)


@dataclass
class CompressionConfig:
    """zlib-stream transport compression settings."""

    compression_type: CompressionType = CompressionType.ZLIB_STREAM
    window_bits: int = 15
    flush_suffix: bytes = ZLIB_SUFFIX
    max_chunks_in_memory: int = 1000
    max_chunk_size: int = 1024 * 1024

    def __post_init__(self) -> None:
        self.compression_type = CompressionType(self.compression_type)
        if not 9 <= self.window_bits <= 15:
            msg = f"window_bits must be in [9, 15], got {self.window_bits}"
            raise ValidationError(msg)
        if not self.flush_suffix:
            msg = "flush_suffix must not be empty"
            raise ValidationError(msg)
        if self.max_chunks_in_memory <= 0:
            msg = f"max_chunks_in_memory must be > 0, got {self.max_chunks_in_memory}"
            raise ValidationError(msg)
        if self.max_chunk_size <= 0:
            msg = f"max_chunk_size must be > 0, got {self.max_chunk_size}"
            raise ValidationError(msg)


@dataclass
class HeartbeatConfig:
    """Heartbeat supervision settings."""

    max_missed_heartbeats: int = 2
    max_latency_ms: int = 10000
    use_jitter: bool = True
    min_jitter: float = 0.0
    max_jitter: float = 1.0
    reset_on_zombie: bool = False
    monitor_latency: bool = True
    min_sequence: int = 0
    max_sequence: int = MAX_SEQUENCE

    def __post_init__(self) -> None:
        if self.max_missed_heartbeats < 1:
            msg = f"max_missed_heartbeats must be >= 1, got {self.max_missed_heartbeats}"
            raise ValidationError(msg)
        if not 0.0 <= self.min_jitter <= self.max_jitter <= 1.0:
            msg = (
                "jitter bounds must satisfy 0 <= min_jitter <= max_jitter <= 1, "
                f"got ({self.min_jitter}, {self.max_jitter})"
            )
            raise ValidationError(msg)
        if self.min_sequence > self.max_sequence:
            msg = f"min_sequence ({self.min_sequence}) > max_sequence ({self.max_sequence})"
            raise ValidationError(msg)


@dataclass
class GatewayConfig:
    """Gateway connection settings."""

    token: str
    intents: int | Iterable[GatewayIntentBits | int] = 0
    version: int = 10
    url: str | None = None
    encoding: EncodingConfig = field(default_factory=EncodingConfig)
    compression: CompressionConfig | None = None
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    presence: dict[str, Any] | None = None
    shard: tuple[int, int] | None = None
    large_threshold: int = 50
    validate_payloads: bool = True
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 5
    reconnect_delay_ms: int = 5000
    max_reconnect_delay_ms: int = 60000
    session_timeout_ms: int = 300000
    connect_timeout_ms: int = 30000

    def __post_init__(self) -> None:
        if not self.token:
            msg = "token must be a non-empty string"
            raise ValidationError(msg)
        self.intents = resolve_intents(self.intents)
        if self.version != 10:
            msg = f"only Gateway version 10 is supported, got {self.version}"
            raise ValidationError(msg)
        if not 50 <= self.large_threshold <= 250:
            msg = f"large_threshold must be in [50, 250], got {self.large_threshold}"
            raise ValidationError(msg)
        if self.max_reconnect_attempts <= 0:
            msg = f"max_reconnect_attempts must be > 0, got {self.max_reconnect_attempts}"
            raise ValidationError(msg)
        if self.reconnect_delay_ms <= 0:
            msg = f"reconnect_delay_ms must be > 0, got {self.reconnect_delay_ms}"
            raise ValidationError(msg)
        if self.shard is not None:
            shard_id, shard_count = self.shard
            if shard_count <= 0 or not 0 <= shard_id < shard_count:
                msg = f"invalid shard {self.shard!r}"
                raise ValidationError(msg)

    def __repr__(self) -> str:
        return (
            f"GatewayConfig(token='***', intents={self.intents}, "
            f"encoding={self.encoding.encoding!r}, "
            f"compression={self.compression.compression_type.value if self.compression else None!r})"
        )


# =============================================================================
# State records
# =============================================================================


@dataclass
class GatewaySession:
    """Resumable session state."""

    session_id: str | None = None
    sequence: int | None = None
    resume_gateway_url: str | None = None
    disconnected_at: int | None = None

    @property
    def can_resume(self) -> bool:
        return self.session_id is not None and self.sequence is not None

    def clear(self) -> None:
        self.session_id = None
        self.sequence = None
        self.resume_gateway_url = None
        self.disconnected_at = None


@dataclass(frozen=True)
class HeartbeatMetrics:
    """Read-only heartbeat snapshot."""

    latency: int
    last_ack: int
    last_send: int
    sequence: int | None
    missed_heartbeats: int
    total_beats: int
    uptime: int
    average_latency: int


@dataclass(frozen=True)
class GatewayStats:
    """Read-only connection snapshot."""

    ping: int
    last_heartbeat: int | None
    session_id: str | None
    sequence: int | None
    reconnect_attempts: int
    uptime: int
    state: ConnectionState
    received_payloads: int
    sent_payloads: int
    missed_heartbeats: int


# =============================================================================
# Event payloads
# =============================================================================


@dataclass(frozen=True)
class StateChangeEvent:
    old_state: ConnectionState
    new_state: ConnectionState


@dataclass(frozen=True)
class DispatchEvent:
    t: str
    d: Any
    s: int | None


@dataclass(frozen=True)
class CloseEvent:
    code: int | None
    will_reconnect: bool
    will_resume: bool


@dataclass(frozen=True)
class ZombieEvent:
    missed_heartbeats: int
    last_ack: int
