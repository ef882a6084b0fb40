"""
Erlang External Term Format codec for Gateway payloads.

Covers the subset of the format the Gateway produces and accepts:
atoms, integers (small, 32-bit and big), floats, binaries, strings,
lists, tuples, maps, and zlib-compressed terms.

Encoding maps Python types as follows:
    None / True / False -> atoms nil / true / false
    int                 -> SMALL_INTEGER, INTEGER or SMALL/LARGE_BIG
    float               -> NEW_FLOAT
    str / bytes         -> BINARY (str as UTF-8)
    list                -> LIST (NIL when empty)
    tuple               -> SMALL/LARGE_TUPLE
    dict                -> MAP
"""

from __future__ import annotations

import struct
import zlib
from typing import Any

from nyxcord.errors import EncodingError

FORMAT_VERSION = 131

NEW_FLOAT_EXT = 70
COMPRESSED = 80
SMALL_INTEGER_EXT = 97
INTEGER_EXT = 98
FLOAT_EXT = 99
ATOM_EXT = 100
SMALL_TUPLE_EXT = 104
LARGE_TUPLE_EXT = 105
NIL_EXT = 106
STRING_EXT = 107
LIST_EXT = 108
BINARY_EXT = 109
SMALL_BIG_EXT = 110
LARGE_BIG_EXT = 111
SMALL_ATOM_EXT = 115
MAP_EXT = 116
ATOM_UTF8_EXT = 118
SMALL_ATOM_UTF8_EXT = 119

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

_ATOM_VALUES: dict[str, Any] = {"nil": None, "true": True, "false": False}


# =============================================================================
# Encoding
# =============================================================================


def pack(term: Any) -> bytes:
    """
    Encode a Python value as an ETF binary.

    Raises:
        EncodingError: Value contains an unsupported type.
    """
    out = bytearray([FORMAT_VERSION])
    _pack_term(term, out)
    return bytes(out)


def _pack_atom(name: str, out: bytearray) -> None:
    raw = name.encode("utf-8")
    if len(raw) < 256:
        out.append(SMALL_ATOM_UTF8_EXT)
        out.append(len(raw))
    else:
        out.append(ATOM_UTF8_EXT)
        out += struct.pack(">H", len(raw))
    out += raw


def _pack_int(value: int, out: bytearray) -> None:
    if 0 <= value <= 255:
        out.append(SMALL_INTEGER_EXT)
        out.append(value)
        return
    if _INT32_MIN <= value <= _INT32_MAX:
        out.append(INTEGER_EXT)
        out += struct.pack(">i", value)
        return

    sign = 1 if value < 0 else 0
    magnitude = abs(value)
    digits = magnitude.to_bytes((magnitude.bit_length() + 7) // 8, "little")
    if len(digits) < 256:
        out.append(SMALL_BIG_EXT)
        out.append(len(digits))
    else:
        out.append(LARGE_BIG_EXT)
        out += struct.pack(">I", len(digits))
    out.append(sign)
    out += digits


def _pack_binary(raw: bytes, out: bytearray) -> None:
    out.append(BINARY_EXT)
    out += struct.pack(">I", len(raw))
    out += raw


def _pack_term(term: Any, out: bytearray) -> None:
    # bool before int: bool is an int subclass
    if term is None:
        _pack_atom("nil", out)
    elif term is True:
        _pack_atom("true", out)
    elif term is False:
        _pack_atom("false", out)
    elif isinstance(term, int):
        _pack_int(term, out)
    elif isinstance(term, float):
        out.append(NEW_FLOAT_EXT)
        out += struct.pack(">d", term)
    elif isinstance(term, str):
        _pack_binary(term.encode("utf-8"), out)
    elif isinstance(term, (bytes, bytearray)):
        _pack_binary(bytes(term), out)
    elif isinstance(term, list):
        if not term:
            out.append(NIL_EXT)
            return
        out.append(LIST_EXT)
        out += struct.pack(">I", len(term))
        for item in term:
            _pack_term(item, out)
        out.append(NIL_EXT)
    elif isinstance(term, tuple):
        if len(term) < 256:
            out.append(SMALL_TUPLE_EXT)
            out.append(len(term))
        else:
            out.append(LARGE_TUPLE_EXT)
            out += struct.pack(">I", len(term))
        for item in term:
            _pack_term(item, out)
    elif isinstance(term, dict):
        out.append(MAP_EXT)
        out += struct.pack(">I", len(term))
        for key, value in term.items():
            _pack_term(key, out)
            _pack_term(value, out)
    else:
        msg = f"Cannot encode {type(term).__name__} as ETF"
        raise EncodingError(msg)


# =============================================================================
# Decoding
# =============================================================================


class _Reader:
    """Cursor over an ETF buffer."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def take(self, size: int) -> bytes:
        end = self.pos + size
        if end > len(self.data):
            msg = f"Truncated ETF data at offset {self.pos} (need {size} bytes)"
            raise EncodingError(msg)
        chunk = self.data[self.pos : end]
        self.pos = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        value: int = struct.unpack(">H", self.take(2))[0]
        return value

    def u32(self) -> int:
        value: int = struct.unpack(">I", self.take(4))[0]
        return value


def unpack(data: bytes) -> Any:
    """
    Decode an ETF binary into Python values.

    Raises:
        EncodingError: Data is malformed, truncated or uses an unsupported tag.
    """
    if not data:
        msg = "Empty ETF data"
        raise EncodingError(msg)
    reader = _Reader(bytes(data))
    version = reader.u8()
    if version != FORMAT_VERSION:
        msg = f"Unsupported ETF version: {version}"
        raise EncodingError(msg)
    term = _unpack_term(reader)
    if reader.pos != len(reader.data):
        msg = f"Trailing bytes after ETF term ({len(reader.data) - reader.pos})"
        raise EncodingError(msg)
    return term


def _decode_text(raw: bytes, encoding: str) -> str:
    try:
        return raw.decode(encoding)
    except UnicodeDecodeError as e:
        msg = f"Invalid {encoding} text in ETF data"
        raise EncodingError(msg) from e


def _atom(name: str) -> Any:
    return _ATOM_VALUES.get(name, name)


def _unpack_big(reader: _Reader, size: int) -> int:
    sign = reader.u8()
    value = int.from_bytes(reader.take(size), "little")
    return -value if sign else value


def _unpack_term(reader: _Reader) -> Any:
    tag = reader.u8()

    if tag == SMALL_INTEGER_EXT:
        return reader.u8()
    if tag == INTEGER_EXT:
        value: int = struct.unpack(">i", reader.take(4))[0]
        return value
    if tag == NEW_FLOAT_EXT:
        number: float = struct.unpack(">d", reader.take(8))[0]
        return number
    if tag == FLOAT_EXT:
        text = reader.take(31).split(b"\x00", 1)[0]
        try:
            return float(text.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            msg = "Invalid FLOAT_EXT value"
            raise EncodingError(msg) from e
    if tag in (ATOM_EXT, ATOM_UTF8_EXT):
        return _atom(_decode_text(reader.take(reader.u16()), "utf-8"))
    if tag in (SMALL_ATOM_EXT, SMALL_ATOM_UTF8_EXT):
        return _atom(_decode_text(reader.take(reader.u8()), "utf-8"))
    if tag == SMALL_TUPLE_EXT:
        return tuple(_unpack_term(reader) for _ in range(reader.u8()))
    if tag == LARGE_TUPLE_EXT:
        return tuple(_unpack_term(reader) for _ in range(reader.u32()))
    if tag == NIL_EXT:
        return []
    if tag == STRING_EXT:
        return _decode_text(reader.take(reader.u16()), "latin-1")
    if tag == LIST_EXT:
        length = reader.u32()
        items = [_unpack_term(reader) for _ in range(length)]
        tail = _unpack_term(reader)
        if tail != []:
            items.append(tail)
        return items
    if tag == BINARY_EXT:
        return _decode_text(reader.take(reader.u32()), "utf-8")
    if tag == SMALL_BIG_EXT:
        return _unpack_big(reader, reader.u8())
    if tag == LARGE_BIG_EXT:
        return _unpack_big(reader, reader.u32())
    if tag == MAP_EXT:
        arity = reader.u32()
        result: dict[Any, Any] = {}
        for _ in range(arity):
            key = _unpack_term(reader)
            value = _unpack_term(reader)
            if isinstance(key, list):
                key = tuple(key)
            try:
                result[key] = value
            except TypeError as e:
                msg = f"Unhashable ETF map key: {type(key).__name__}"
                raise EncodingError(msg) from e
        return result
    if tag == COMPRESSED:
        size = reader.u32()
        try:
            inflated = zlib.decompress(reader.data[reader.pos :])
        except zlib.error as e:
            msg = "Invalid compressed ETF term"
            raise EncodingError(msg) from e
        reader.pos = len(reader.data)
        if len(inflated) != size:
            msg = f"Compressed ETF size mismatch: expected {size}, got {len(inflated)}"
            raise EncodingError(msg)
        inner = _Reader(inflated)
        term = _unpack_term(inner)
        if inner.pos != len(inner.data):
            msg = "Trailing bytes in compressed ETF term"
            raise EncodingError(msg)
        return term

    msg = f"Unsupported ETF tag: {tag}"
    raise EncodingError(msg)
