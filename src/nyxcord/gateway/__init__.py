"""Discord Gateway client: connection state machine, heartbeat, encoding and compression."""

from nyxcord.gateway.compression import ZlibStreamDecompressor
from nyxcord.gateway.connection import (
    GatewayConnection,
    build_gateway_url,
    build_identify_payload,
)
from nyxcord.gateway.encoding import EncodingService
from nyxcord.gateway.heartbeat import HeartbeatService
from nyxcord.gateway.types import (
    FATAL_CLOSE_CODES,
    CompressionConfig,
    CompressionType,
    ConnectionState,
    DispatchEvent,
    EncodingConfig,
    GatewayCloseCode,
    GatewayConfig,
    GatewayEvent,
    GatewayIntentBits,
    GatewayOpcode,
    GatewayPayload,
    GatewaySession,
    GatewayStats,
    HeartbeatConfig,
    HeartbeatMetrics,
)

__all__ = [
    "FATAL_CLOSE_CODES",
    "CompressionConfig",
    "CompressionType",
    "ConnectionState",
    "DispatchEvent",
    "EncodingConfig",
    "EncodingService",
    "GatewayCloseCode",
    "GatewayConfig",
    "GatewayConnection",
    "GatewayEvent",
    "GatewayIntentBits",
    "GatewayOpcode",
    "GatewayPayload",
    "GatewaySession",
    "GatewayStats",
    "HeartbeatConfig",
    "HeartbeatMetrics",
    "HeartbeatService",
    "ZlibStreamDecompressor",
    "build_gateway_url",
    "build_identify_payload",
]
