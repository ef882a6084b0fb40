"""
Tests for zlib-stream decompression.

Frames are produced with a single compressobj and Z_SYNC_FLUSH, which is
how the Gateway emits them.
"""

from __future__ import annotations

import zlib

import pytest

from nyxcord.errors import CompressionError
from nyxcord.gateway.compression import ZlibStreamDecompressor
from nyxcord.gateway.types import ZLIB_SUFFIX, CompressionConfig


class StreamCompressor:
    """Server side of a zlib-stream connection."""

    def __init__(self) -> None:
        self._compressor = zlib.compressobj()

    def message(self, data: bytes) -> bytes:
        return self._compressor.compress(data) + self._compressor.flush(zlib.Z_SYNC_FLUSH)


class TestZlibStream:
    """Tests for message reassembly."""

    def test_single_frame_messages(self) -> None:
        server = StreamCompressor()
        inflater = ZlibStreamDecompressor()

        first = server.message(b'{"op":10}')
        second = server.message(b'{"op":11}')

        assert first.endswith(ZLIB_SUFFIX)
        assert inflater.push(first) == b'{"op":10}'
        # Second message depends on the shared context
        assert inflater.push(second) == b'{"op":11}'
        assert inflater.get_stats()["messages"] == 2

    def test_message_split_across_frames(self) -> None:
        server = StreamCompressor()
        inflater = ZlibStreamDecompressor()
        payload = b'{"op":0,"t":"GUILD_CREATE","d":{"members":[' + b'"x",' * 500 + b'"y"]}}'
        frame = server.message(payload)

        parts = [frame[:10], frame[10:-2], frame[-2:]]
        assert inflater.push(parts[0]) is None
        # Suffix split across the last two frames
        assert inflater.push(parts[1]) is None
        assert inflater.pending_chunks == 2
        assert inflater.push(parts[2]) == payload
        assert inflater.pending_chunks == 0

    def test_reset_starts_new_stream(self) -> None:
        inflater = ZlibStreamDecompressor()
        inflater.push(StreamCompressor().message(b"first"))

        inflater.reset()

        assert inflater.push(StreamCompressor().message(b"second")) == b"second"

    def test_corrupt_stream(self) -> None:
        inflater = ZlibStreamDecompressor()
        with pytest.raises(CompressionError, match="decompress"):
            inflater.push(b"\x00\x01\x02garbage" + ZLIB_SUFFIX)

    def test_chunk_size_limit(self) -> None:
        inflater = ZlibStreamDecompressor(CompressionConfig(max_chunk_size=8))
        with pytest.raises(CompressionError, match="Chunk size"):
            inflater.push(b"x" * 9)

    def test_buffered_chunk_limit(self) -> None:
        inflater = ZlibStreamDecompressor(CompressionConfig(max_chunks_in_memory=2))
        inflater.push(b"a")
        inflater.push(b"b")

        with pytest.raises(CompressionError, match="Too many"):
            inflater.push(b"c")
        assert inflater.pending_chunks == 0

    def test_invalid_window_bits(self) -> None:
        with pytest.raises(ValueError):
            CompressionConfig(window_bits=20)
