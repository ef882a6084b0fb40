"""
zlib-stream transport decompression.

With compress=zlib-stream the Gateway sends one zlib stream for the life of
the connection. A message may span several binary frames; it is complete
when the buffered data ends with the 00 00 FF FF sync-flush suffix. The
inflate context is shared across messages and must be reset on reconnect.
"""

from __future__ import annotations

import logging
import zlib
from typing import Any

from nyxcord.errors import CompressionError
from nyxcord.gateway.types import CompressionConfig

logger = logging.getLogger(__name__)


class ZlibStreamDecompressor:
    """
    Incremental inflater for zlib-stream frames.

    Usage:
        inflater = ZlibStreamDecompressor()
        for frame in frames:
            message = inflater.push(frame)
            if message is not None:
                handle(message)
    """

    def __init__(self, config: CompressionConfig | None = None) -> None:
        self._config = config or CompressionConfig()
        self._inflater = zlib.decompressobj(self._config.window_bits)
        self._chunks: list[bytes] = []
        self._buffered_bytes = 0

        self._messages = 0
        self._compressed_bytes = 0
        self._decompressed_bytes = 0

    @property
    def config(self) -> CompressionConfig:
        return self._config

    @property
    def pending_chunks(self) -> int:
        return len(self._chunks)

    def push(self, chunk: bytes) -> bytes | None:
        """
        Feed one binary frame.

        Returns:
            The inflated message once the flush suffix arrives, otherwise None.

        Raises:
            CompressionError: Chunk or buffer limits exceeded, or the stream is corrupt.
        """
        if len(chunk) > self._config.max_chunk_size:
            self._clear_buffer()
            msg = (
                f"Chunk size {len(chunk)} exceeds maximum {self._config.max_chunk_size} bytes"
            )
            raise CompressionError(msg)
        if len(self._chunks) >= self._config.max_chunks_in_memory:
            self._clear_buffer()
            msg = f"Too many buffered chunks (max {self._config.max_chunks_in_memory})"
            raise CompressionError(msg)

        self._chunks.append(bytes(chunk))
        self._buffered_bytes += len(chunk)

        suffix = self._config.flush_suffix
        if not chunk.endswith(suffix) and not self._buffer_ends_with(suffix):
            return None

        data = b"".join(self._chunks)
        self._clear_buffer()
        try:
            inflated = self._inflater.decompress(data)
        except zlib.error as e:
            logger.warning("zlib-stream inflate failed", extra={"error": str(e)})
            msg = f"Failed to decompress zlib-stream data: {e}"
            raise CompressionError(msg) from e

        self._messages += 1
        self._compressed_bytes += len(data)
        self._decompressed_bytes += len(inflated)
        return inflated

    def _buffer_ends_with(self, suffix: bytes) -> bool:
        # Suffix may be split across frames
        if self._buffered_bytes < len(suffix):
            return False
        tail = b"".join(self._chunks[-len(suffix) :])
        return tail.endswith(suffix)

    def _clear_buffer(self) -> None:
        self._chunks.clear()
        self._buffered_bytes = 0

    def reset(self) -> None:
        """Discard buffered data and start a new inflate context."""
        self._clear_buffer()
        self._inflater = zlib.decompressobj(self._config.window_bits)

    def get_stats(self) -> dict[str, Any]:
        """Get decompression stats for observability."""
        ratio = (
            self._decompressed_bytes / self._compressed_bytes if self._compressed_bytes else 0.0
        )
        return {
            "messages": self._messages,
            "compressed_bytes": self._compressed_bytes,
            "decompressed_bytes": self._decompressed_bytes,
            "ratio": round(ratio, 2),
            "pending_chunks": len(self._chunks),
        }
