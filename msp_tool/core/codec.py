"""Typed (de)serialization of MSP payload values.

Every payload shape is described by a codec object exposing ``encode(buffer,
value)`` and ``decode(cursor)``. Composite shapes delegate to the codecs of
their parts, so a new record layout is declared by composing existing codecs::

    SERIAL_CONFIG = Struct(SerialConfig, ("identifier", U8), ("function_mask", U16), ...)

The frame decoder never needs to know about them.
"""

from __future__ import annotations

import struct
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple


class PayloadExhausted(Exception):
    """Raised when a typed read needs more bytes than the payload has left.

    Distinct from malformed data: decoders of variable-count lists use it to
    detect the end of the list.
    """

    def __init__(self, needed: int, remaining: int) -> None:
        self.needed = needed
        self.remaining = remaining
        super().__init__(f"payload exhausted: need {needed} bytes, {remaining} left")


class PayloadCursor:
    """Sequential reader over a payload."""

    def __init__(self, data: bytes, position: int = 0) -> None:
        self._data = bytes(data)
        self._position = position

    @property
    def position(self) -> int:
        return self._position

    @property
    def remaining(self) -> int:
        return len(self._data) - self._position

    def take(self, size: int) -> bytes:
        if size > self.remaining:
            raise PayloadExhausted(size, self.remaining)
        chunk = self._data[self._position : self._position + size]
        self._position += size
        return chunk

    def rest(self) -> bytes:
        return self.take(self.remaining)


class Codec(Protocol):
    def encode(self, buffer: bytearray, value: Any) -> None:  # pragma: no cover - protocol signature
        ...

    def decode(self, cursor: PayloadCursor) -> Any:  # pragma: no cover - protocol signature
        ...


class UInt:
    """Unsigned little-endian integer of 1, 2 or 4 bytes."""

    _FORMATS = {1: "<B", 2: "<H", 4: "<I"}

    def __init__(self, size: int) -> None:
        if size not in self._FORMATS:
            raise ValueError(f"unsupported integer width {size}")
        self.size = size
        self._struct = struct.Struct(self._FORMATS[size])
        self.max_value = (1 << (8 * size)) - 1

    def encode(self, buffer: bytearray, value: int) -> None:
        value = int(value)
        if not 0 <= value <= self.max_value:
            raise ValueError(f"{value} does not fit in uint{8 * self.size}")
        buffer.extend(self._struct.pack(value))

    def decode(self, cursor: PayloadCursor) -> int:
        return self._struct.unpack(cursor.take(self.size))[0]

    def __repr__(self) -> str:
        return f"U{8 * self.size}"


U8 = UInt(1)
U16 = UInt(2)
U32 = UInt(4)


class Struct:
    """Fixed record: fields encoded and decoded in declaration order."""

    def __init__(self, factory: Callable[..., Any], *fields: Tuple[str, Codec]) -> None:
        if not fields:
            raise ValueError("a record needs at least one field")
        self.factory = factory
        self.fields = fields

    def encode(self, buffer: bytearray, value: Any) -> None:
        for name, codec in self.fields:
            codec.encode(buffer, getattr(value, name))

    def decode(self, cursor: PayloadCursor) -> Any:
        values = {name: codec.decode(cursor) for name, codec in self.fields}
        return self.factory(**values)

    @property
    def size(self) -> Optional[int]:
        sizes = [getattr(codec, "size", None) for _, codec in self.fields]
        if any(size is None for size in sizes):
            return None
        return sum(sizes)


class Array:
    """Fixed-length sequence of elements sharing one codec."""

    def __init__(self, element: Codec, length: int) -> None:
        self.element = element
        self.length = length

    def encode(self, buffer: bytearray, value: Sequence[Any]) -> None:
        if len(value) != self.length:
            raise ValueError(f"expected {self.length} elements, got {len(value)}")
        for item in value:
            self.element.encode(buffer, item)

    def decode(self, cursor: PayloadCursor) -> List[Any]:
        return [self.element.decode(cursor) for _ in range(self.length)]

    @property
    def size(self) -> Optional[int]:
        element_size = getattr(self.element, "size", None)
        return None if element_size is None else element_size * self.length


class Repeated:
    """Variable-length sequence that runs until the payload is exhausted.

    A trailing partial element is dropped.
    """

    def __init__(self, element: Codec) -> None:
        self.element = element

    def encode(self, buffer: bytearray, value: Sequence[Any]) -> None:
        for item in value:
            self.element.encode(buffer, item)

    def decode(self, cursor: PayloadCursor) -> List[Any]:
        items: List[Any] = []
        while cursor.remaining:
            try:
                items.append(self.element.decode(cursor))
            except PayloadExhausted:
                break
        return items


def pack(codec: Codec, value: Any) -> bytes:
    buffer = bytearray()
    codec.encode(buffer, value)
    return bytes(buffer)


def unpack(codec: Codec, payload: bytes) -> Any:
    return codec.decode(PayloadCursor(payload))
