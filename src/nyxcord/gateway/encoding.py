"""
Payload encoding for the Gateway: JSON (text frames) or ETF (binary frames).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import orjson

from nyxcord.errors import EncodingError, ValidationError
from nyxcord.gateway import etf
from nyxcord.gateway.types import MAX_SEQUENCE, EncodingConfig, EncodingType, GatewayEvent

if TYPE_CHECKING:
    from nyxcord.emitter import EventEmitter

logger = logging.getLogger(__name__)


class EncodingService:
    """
    Encodes outgoing payloads and decodes incoming frames.

    Usage:
        encoding = EncodingService(EncodingConfig(encoding="etf"))
        frame = encoding.encode({"op": 1, "d": 42})
        payload = encoding.decode(frame)
    """

    def __init__(
        self,
        config: EncodingConfig | None = None,
        emitter: EventEmitter[GatewayEvent] | None = None,
    ) -> None:
        self._config = config or EncodingConfig()
        self._emitter = emitter

    @property
    def encoding_type(self) -> EncodingType:
        return self._config.encoding

    @property
    def max_payload_size(self) -> int:
        return self._config.max_payload_size

    @property
    def is_json(self) -> bool:
        return self._config.encoding == "json"

    @property
    def is_etf(self) -> bool:
        return self._config.encoding == "etf"

    def encode(self, payload: dict[str, Any]) -> str | bytes:
        """
        Encode a payload for sending.

        Returns:
            str for JSON (sent as a text frame), bytes for ETF.

        Raises:
            ValidationError: Encoded size exceeds max_payload_size.
            EncodingError: Payload cannot be represented in the encoding.
        """
        try:
            if self.is_json:
                processed = self._process(payload, validate_keys=False)
                result: str | bytes = orjson.dumps(processed, option=orjson.OPT_NON_STR_KEYS).decode()
            else:
                processed = self._process(
                    payload, validate_keys=not self._config.etf_allow_atom_keys
                )
                result = etf.pack(processed)
        except EncodingError:
            raise
        except (TypeError, orjson.JSONEncodeError) as e:
            msg = f"Failed to encode payload: {self._config.encoding}"
            raise EncodingError(msg) from e

        size = len(result.encode("utf-8")) if isinstance(result, str) else len(result)
        if size > self._config.max_payload_size:
            msg = (
                f"Payload size {size} bytes exceeds maximum "
                f"{self._config.max_payload_size} bytes"
            )
            raise ValidationError(msg)

        self._debug(f"Encoded payload ({size} bytes)")
        return result

    def decode(self, data: str | bytes) -> dict[str, Any]:
        """
        Decode a received frame.

        Raises:
            EncodingError: Frame is malformed or not a payload object.
        """
        if self.is_json:
            try:
                result = orjson.loads(data)
            except orjson.JSONDecodeError as e:
                msg = "Failed to decode payload: json"
                raise EncodingError(msg) from e
        else:
            raw = data.encode("latin-1") if isinstance(data, str) else data
            result = etf.unpack(raw)

        if not isinstance(result, dict) or "op" not in result:
            msg = f"Decoded frame is not a Gateway payload: {type(result).__name__}"
            raise EncodingError(msg)

        self._debug(f"Decoded payload (op {result['op']})")
        return result

    def _process(self, data: Any, *, validate_keys: bool) -> Any:
        if isinstance(data, bool) or data is None:
            return data
        if isinstance(data, int):
            if self._config.allow_big_ints and abs(data) > MAX_SEQUENCE:
                return str(data)
            return data
        if isinstance(data, (list, tuple)):
            return [self._process(item, validate_keys=validate_keys) for item in data]
        if isinstance(data, dict):
            processed: dict[Any, Any] = {}
            for key, value in data.items():
                if validate_keys and not isinstance(key, str):
                    self._debug(f"Invalid ETF key type: {type(key).__name__}")
                    if self._config.etf_strict_mode:
                        msg = f"Invalid ETF key: {key!r} is not a string"
                        raise EncodingError(msg)
                    continue
                processed[key] = self._process(value, validate_keys=validate_keys)
            return processed
        return data

    def _debug(self, message: str) -> None:
        logger.debug(message, extra={"encoding": self._config.encoding})
        if self._emitter is not None:
            self._emitter.emit(GatewayEvent.DEBUG, f"[Gateway:Encoding] {message}")
