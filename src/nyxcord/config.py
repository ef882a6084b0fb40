"""
Client configuration loading.

ClientConfig bundles REST and Gateway settings and can be built from
environment variables or a YAML file. The bot token is never written back
out: to_safe_dict() redacts it for logging.

Environment variables:
    DISCORD_TOKEN          bot token (required)
    NYXCORD_INTENTS        bitfield ("33281") or names ("GUILDS,GUILD_MESSAGES")
    NYXCORD_ENCODING       json | etf
    NYXCORD_COMPRESSION    zlib-stream | none
    NYXCORD_API_VERSION    API / Gateway version (only 10 is supported)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from nyxcord.errors import ValidationError
from nyxcord.gateway.types import (
    CompressionConfig,
    CompressionType,
    EncodingConfig,
    GatewayConfig,
    GatewayIntentBits,
    HeartbeatConfig,
)
from nyxcord.rest.types import HttpConfig, QueueConfig, RateLimitConfig, RestConfig, RetryConfig

# Redacted in to_safe_dict() output
REDACTED_FIELDS = frozenset({"token"})
REDACTED = "***"


def parse_intents(value: str | int | list[str | int]) -> int:
    """
    Parse intents from a bitfield, a comma-separated string or a list of names.

    Raises:
        ValidationError: Unknown intent name or malformed value.
    """
    if isinstance(value, bool):
        msg = f"Invalid intents value: {value!r}"
        raise ValidationError(msg)
    if isinstance(value, int):
        return value
    items: list[str | int]
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return int(stripped)
        items = [part.strip() for part in stripped.split(",") if part.strip()]
    else:
        items = list(value)

    result = 0
    for item in items:
        if isinstance(item, int):
            result |= item
            continue
        try:
            result |= GatewayIntentBits[item.upper()]
        except KeyError as e:
            msg = f"Unknown intent: {item!r}"
            raise ValidationError(msg) from e
    return result


def _parse_compression(value: str | None) -> CompressionConfig | None:
    if value is None or value.strip().lower() in ("", "none", "false", "off"):
        return None
    try:
        compression_type = CompressionType(value.strip().lower())
    except ValueError as e:
        msg = f"Unsupported compression: {value!r}"
        raise ValidationError(msg) from e
    return CompressionConfig(compression_type=compression_type)


def _section(data: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        msg = f"Config section '{key}' must be a mapping"
        raise ValidationError(msg)
    return dict(value)


def _build(cls: type[Any], values: dict[str, Any], section: str) -> Any:
    try:
        return cls(**values)
    except TypeError as e:
        msg = f"Invalid '{section}' config: {e}"
        raise ValidationError(msg) from e


@dataclass
class ClientConfig:
    """Top-level configuration for REST and Gateway clients."""

    rest: RestConfig
    gateway: GatewayConfig
    log_level: str = "INFO"
    json_logs: bool = True

    @property
    def token(self) -> str:
        return self.rest.http.token

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """
        Build configuration from environment variables.

        Raises:
            ValidationError: DISCORD_TOKEN missing or a value is invalid.
        """
        env = os.environ if environ is None else environ
        token = env.get("DISCORD_TOKEN", "")
        if not token:
            msg = "DISCORD_TOKEN is required"
            raise ValidationError(msg)

        version_raw = env.get("NYXCORD_API_VERSION", "10")
        try:
            version = int(version_raw)
        except ValueError as e:
            msg = f"NYXCORD_API_VERSION must be an integer, got {version_raw!r}"
            raise ValidationError(msg) from e

        return cls.from_dict(
            {
                "token": token,
                "api_version": version,
                "intents": env.get("NYXCORD_INTENTS", "0"),
                "encoding": env.get("NYXCORD_ENCODING", "json"),
                "compression": env.get("NYXCORD_COMPRESSION"),
                "logging": {
                    "level": env.get("NYXCORD_LOG_LEVEL", "INFO"),
                    "json": env.get("NYXCORD_LOG_JSON", "true").lower() in ("1", "true", "yes"),
                },
            }
        )

    @classmethod
    def from_yaml(cls, path: str | Path, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """
        Load configuration from a YAML file.

        The token may be omitted from the file; DISCORD_TOKEN is used then.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, Mapping):
            msg = f"Config file {path} must contain a mapping"
            raise ValidationError(msg)
        data = dict(data)
        if not data.get("token"):
            env = os.environ if environ is None else environ
            data["token"] = env.get("DISCORD_TOKEN", "")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClientConfig:
        """
        Build configuration from a plain mapping (the YAML layout).

        Raises:
            ValidationError: Missing token, unknown keys or invalid values.
        """
        token = data.get("token") or ""
        if not token:
            msg = "token is required"
            raise ValidationError(msg)
        version = int(data.get("api_version", 10))

        rest_data = _section(data, "rest")
        http = _build(
            HttpConfig,
            {"token": token, "version": version, **_section(rest_data, "http")},
            "rest.http",
        )
        rest = RestConfig(
            http=http,
            rate_limit=_build(RateLimitConfig, _section(rest_data, "rate_limit"), "rest.rate_limit"),
            retry=_build(RetryConfig, _section(rest_data, "retry"), "rest.retry"),
            queue=_build(QueueConfig, _section(rest_data, "queue"), "rest.queue"),
        )

        gateway_data = _section(data, "gateway")
        encoding = _build(
            EncodingConfig,
            {"encoding": data.get("encoding", "json"), **_section(gateway_data, "encoding")},
            "gateway.encoding",
        )
        heartbeat = _build(HeartbeatConfig, _section(gateway_data, "heartbeat"), "gateway.heartbeat")
        gateway_options = {
            k: v for k, v in gateway_data.items() if k not in ("encoding", "heartbeat")
        }
        if "shard" in gateway_options and gateway_options["shard"] is not None:
            gateway_options["shard"] = tuple(gateway_options["shard"])
        gateway = _build(
            GatewayConfig,
            {
                "token": token,
                "version": version,
                "intents": parse_intents(data.get("intents", 0)),
                "encoding": encoding,
                "compression": _parse_compression(data.get("compression")),
                "heartbeat": heartbeat,
                **gateway_options,
            },
            "gateway",
        )

        logging_data = _section(data, "logging")
        return cls(
            rest=rest,
            gateway=gateway,
            log_level=str(logging_data.get("level", "INFO")).upper(),
            json_logs=bool(logging_data.get("json", True)),
        )

    def to_safe_dict(self) -> dict[str, Any]:
        """Configuration as a dict with secrets redacted."""
        return _redact(
            {
                "rest": asdict(self.rest),
                "gateway": asdict(self.gateway),
                "log_level": self.log_level,
                "json_logs": self.json_logs,
            }
        )


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if k in REDACTED_FIELDS and v else _redact(v) for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    if isinstance(value, frozenset):
        return sorted(value, key=str)
    if isinstance(value, bytes):
        return value.hex()
    return value

