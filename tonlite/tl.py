"""TL binary serialization of fixed-width integers, byte strings and dataclass records."""

from __future__ import annotations

import dataclasses
import io
import struct
from typing import Any, TypeVar

T = TypeVar("T")


class TLError(ValueError):
    """Raised when a value cannot be encoded to or decoded from TL."""


class _FixedInt(int):
    """An integer that encodes as a fixed-width little-endian field."""

    _format = ""
    _size = 0
    _min = 0
    _max = 0

    def __new__(cls, value: Any = 0):
        obj = super().__new__(cls, value)
        if not cls._min <= obj <= cls._max:
            raise TLError(f"{int(obj)} is out of range for {cls.__name__}")
        return obj

    def __repr__(self) -> str:
        return f"{type(self).__name__}({int(self)})"

    def _pack(self) -> bytes:
        return struct.pack(self._format, int(self))

    @classmethod
    def _unpack(cls, raw: bytes) -> _FixedInt:
        return cls(struct.unpack(cls._format, raw)[0])


class Int32(_FixedInt):
    """Signed 32-bit integer field."""

    _format = "<i"
    _size = 4
    _min = -(1 << 31)
    _max = (1 << 31) - 1


class UInt32(_FixedInt):
    """Unsigned 32-bit integer field."""

    _format = "<I"
    _size = 4
    _min = 0
    _max = (1 << 32) - 1


class Int64(_FixedInt):
    """Signed 64-bit integer field."""

    _format = "<q"
    _size = 8
    _min = -(1 << 63)
    _max = (1 << 63) - 1


class UInt64(_FixedInt):
    """Unsigned 64-bit integer field."""

    _format = "<Q"
    _size = 8
    _min = 0
    _max = (1 << 64) - 1


_KNOWN_TYPES: dict[str, type] = {
    "Int32": Int32,
    "UInt32": UInt32,
    "Int64": Int64,
    "UInt64": UInt64,
    "bytes": bytes,
    "bytearray": bytearray,
}


def _resolve(hint: Any) -> Any:
    """Turn a field annotation, possibly a string, into a type this module handles."""
    if isinstance(hint, str):
        name = hint.strip().strip("'\"").rsplit(".", 1)[-1]
        return _KNOWN_TYPES.get(name, hint)
    return hint


def _pad(data: bytes) -> bytes:
    return data + bytes(-len(data) % 4)


def encode_length(length: int) -> bytes:
    """Encode a byte-string length prefix: one byte, or 0xFE and three bytes."""
    if length < 0:
        raise TLError(f"negative length: {length}")
    if length >= 0xFE:
        raw = struct.pack("<I", (length << 8) & 0xFFFFFFFF)
        return b"\xfe" + raw[1:]
    return bytes([length])


def to_bytes(buf: bytes) -> bytes:
    """Encode a byte string with its length prefix, padded to a multiple of 4."""
    data = bytes(buf)
    return _pad(encode_length(len(data)) + data)


def _coerce(hint: Any, value: Any) -> Any:
    hint = _resolve(hint)
    if (
        isinstance(hint, type)
        and issubclass(hint, _FixedInt)
        and isinstance(value, int)
        and not isinstance(value, bool)
        and not isinstance(value, hint)
    ):
        return hint(value)
    return value


def marshal(obj: Any) -> bytes:
    """Serialize a TL value: fixed-width int, bytes, dataclass or object with marshal_tl()."""
    custom = getattr(obj, "marshal_tl", None)
    if callable(custom):
        return bytes(custom())
    if isinstance(obj, _FixedInt):
        return obj._pack()
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return to_bytes(bytes(obj))
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return b"".join(
            marshal(_coerce(field.type, getattr(obj, field.name)))
            for field in dataclasses.fields(obj)
        )
    raise TLError(f"type {type(obj).__name__} not implemented")


def _read_exact(reader: io.BytesIO, size: int) -> bytes:
    chunk = reader.read(size)
    if len(chunk) != size:
        raise TLError("unexpected end of data")
    return chunk


def _read_byte_slice(reader: io.BytesIO) -> bytes:
    first = _read_exact(reader, 1)[0]
    if first < 0xFE:
        data = _read_exact(reader, first)
        full = 1 + len(data)
    elif first == 0xFE:
        size = int.from_bytes(_read_exact(reader, 3), "little")
        data = _read_exact(reader, size)
        full = 4 + len(data)
    else:
        raise TLError("invalid bytes prefix")
    _read_exact(reader, -full % 4)
    return data


def _decode(reader: io.BytesIO, cls: Any) -> Any:
    cls = _resolve(cls)
    if isinstance(cls, type):
        if issubclass(cls, _FixedInt):
            return cls._unpack(_read_exact(reader, cls._size))
        if issubclass(cls, (bytes, bytearray)):
            return cls(_read_byte_slice(reader))
        if dataclasses.is_dataclass(cls):
            values = {}
            for field in dataclasses.fields(cls):
                if not field.init:
                    raise TLError(f"can't set field {field.name}")
                values[field.name] = _decode(reader, field.type)
            return cls(**values)
    raise TLError(f"type {cls!r} not implemented")


def unmarshal(data: bytes, cls: type[T]) -> T:
    """Deserialize TL data into an instance of cls."""
    return _decode(io.BytesIO(bytes(data)), cls)