"""MSP framing primitives: v1/v2 encoders, checksums and the stream decoder.

Wire layouts::

    v1: '$' 'M' dir size(1B) cmd(1B) payload[size] xor(1B)
    v2: '$' 'X' dir flags(1B) cmd(2B LE) size(2B LE) payload[size] crc8(1B)

The v1 checksum is the XOR of every byte from ``size`` through the payload. The
v2 checksum is CRC-8/DVB-S2 over every byte from ``flags`` through the payload.
"""

from __future__ import annotations

import binascii
import io
import struct
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from .codec import Codec, PayloadCursor

MSP_V1_START = b"$M"
MSP_V2_START = b"$X"
FRAME_MARKER = ord("$")
V1_MARKER = ord("M")
V2_MARKER = ord("X")
DIR_TO_FC = ord("<")
DIR_FROM_FC = ord(">")
DIR_UNSUPPORTED = ord("!")

V1_MAX_PAYLOAD = 0xFF
V2_MAX_PAYLOAD = 0xFFFF

_V2_HEADER = struct.Struct("<BHH")


class MSPError(Exception):
    """Base class for MSP related errors."""


class MSPProtocolError(MSPError):
    """Recoverable stream corruption; the caller drops the frame and keeps reading."""


class MSPChecksumError(MSPProtocolError):
    """Raised when a frame fails checksum validation."""

    def __init__(self, command: int, payload: bytes, checksum: int, expected: int) -> None:
        self.command = command
        self.payload = payload
        self.checksum = checksum
        self.expected = expected
        super().__init__(
            f"invalid CRC 0x{checksum:02x}, expecting 0x{expected:02x} "
            f"in cmd {command} with payload {hexlify(payload) or '<empty>'}"
        )


class MSPOutOfBandError(MSPProtocolError):
    """Raised for a byte seen outside of a frame."""

    def __init__(self, value: int) -> None:
        self.value = value
        super().__init__(f"out of band MSP byte 0x{value:02x}")


class MSPUnknownFrameError(MSPProtocolError):
    """Raised when the byte after ``$`` selects no known protocol version."""

    def __init__(self, marker: int) -> None:
        self.marker = marker
        super().__init__(f"unknown MSP frame marker 0x{marker:02x}")


class MSPDirectionError(MSPProtocolError):
    """Raised for a header carrying an invalid direction character."""

    def __init__(self, direction: int) -> None:
        self.direction = direction
        super().__init__(f"invalid MSP direction char 0x{direction:02x}")


class ByteSource(Protocol):
    """Anything with a blocking ``read``; an empty result means end of stream."""

    def read(self, size: int) -> bytes:  # pragma: no cover - protocol signature
        ...


@dataclass
class MSPFrame:
    """One decoded MSP message. Typed reads advance an internal cursor."""

    code: int
    payload: bytes = b""
    version: int = 1
    direction: int = DIR_FROM_FC
    _cursor: PayloadCursor = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.payload = bytes(self.payload)
        self._cursor = PayloadCursor(self.payload)

    @property
    def cursor(self) -> PayloadCursor:
        return self._cursor

    @property
    def remaining(self) -> int:
        return self._cursor.remaining

    @property
    def unsupported(self) -> bool:
        """True when the board answered with the ``!`` (not supported) direction."""

        return self.direction == DIR_UNSUPPORTED

    def byte(self, index: int) -> int:
        return self.payload[index]

    def read(self, codec: Codec):
        """Decode the next value described by *codec* from the payload."""

        return codec.decode(self._cursor)


def xor_checksum(data: Iterable[int]) -> int:
    checksum = 0
    for byte in data:
        checksum ^= byte
    return checksum & 0xFF


def crc8_dvb_s2(crc: int, byte: int) -> int:
    """Fold one byte into a CRC-8/DVB-S2 accumulator (poly 0xD5, MSB first)."""

    crc ^= byte
    for _ in range(8):
        if crc & 0x80:
            crc = ((crc << 1) ^ 0xD5) & 0xFF
        else:
            crc = (crc << 1) & 0xFF
    return crc


def crc8_dvb_s2_bytes(data: Iterable[int], crc: int = 0) -> int:
    for byte in data:
        crc = crc8_dvb_s2(crc, byte)
    return crc


def encode_v1(command: int, payload: bytes = b"", *, direction: int = DIR_TO_FC) -> bytes:
    """Return the wire bytes of an MSP v1 frame."""

    if not 0 <= command <= 0xFF:
        raise ValueError("command must fit in uint8")
    if len(payload) > V1_MAX_PAYLOAD:
        raise ValueError("payload cannot exceed 255 bytes in MSP v1")
    body = bytes([len(payload), command]) + bytes(payload)
    return MSP_V1_START + bytes([direction]) + body + bytes([xor_checksum(body)])


def encode_v2(
    command: int,
    payload: bytes = b"",
    *,
    flags: int = 0,
    direction: int = DIR_TO_FC,
) -> bytes:
    """Return the wire bytes of an MSP v2 frame."""

    if not 0 <= command <= 0xFFFF:
        raise ValueError("command must fit in uint16")
    if not 0 <= flags <= 0xFF:
        raise ValueError("flags must fit in uint8")
    if len(payload) > V2_MAX_PAYLOAD:
        raise ValueError("payload cannot exceed 65535 bytes in MSP v2")
    body = _V2_HEADER.pack(flags, command, len(payload)) + bytes(payload)
    return MSP_V2_START + bytes([direction]) + body + bytes([crc8_dvb_s2_bytes(body)])


def encode(version: int, command: int, payload: bytes = b"") -> bytes:
    if version == 1:
        return encode_v1(command, payload)
    if version == 2:
        return encode_v2(command, payload)
    raise ValueError(f"unsupported MSP version {version}")


def _read_exact(source: ByteSource, size: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < size:
        chunk = source.read(size - len(chunks))
        if not chunk:
            raise EOFError(f"stream ended after {len(chunks)} of {size} bytes")
        chunks.extend(chunk)
    return bytes(chunks)


def _check_direction(direction: int) -> None:
    if direction not in (DIR_TO_FC, DIR_FROM_FC, DIR_UNSUPPORTED):
        raise MSPDirectionError(direction)


def _read_v1(source: ByteSource) -> MSPFrame:
    direction, size, command = _read_exact(source, 3)
    _check_direction(direction)
    payload = _read_exact(source, size)
    checksum = _read_exact(source, 1)[0]
    expected = xor_checksum(bytes([size, command]) + payload)
    if checksum != expected:
        raise MSPChecksumError(command, payload, checksum, expected)
    return MSPFrame(code=command, payload=payload, version=1, direction=direction)


def _read_v2(source: ByteSource) -> MSPFrame:
    direction = _read_exact(source, 1)[0]
    _check_direction(direction)
    header = _read_exact(source, _V2_HEADER.size)
    _flags, command, size = _V2_HEADER.unpack(header)
    payload = _read_exact(source, size)
    checksum = _read_exact(source, 1)[0]
    expected = crc8_dvb_s2_bytes(header + payload)
    if checksum != expected:
        raise MSPChecksumError(command, payload, checksum, expected)
    return MSPFrame(code=command, payload=payload, version=2, direction=direction)


def read_frame(source: ByteSource) -> MSPFrame:
    """Read exactly one frame from *source*.

    A byte other than ``$`` where a frame should start raises
    :class:`MSPOutOfBandError` after consuming only that byte, so calling this
    again resynchronises on the next marker. Protocol corruption raises a
    :class:`MSPProtocolError`; a stream that ends mid-frame raises ``EOFError``
    and any error from *source* itself propagates untouched.
    """

    marker = _read_exact(source, 1)[0]
    if marker != FRAME_MARKER:
        raise MSPOutOfBandError(marker)
    kind = _read_exact(source, 1)[0]
    if kind == V1_MARKER:
        return _read_v1(source)
    if kind == V2_MARKER:
        return _read_v2(source)
    raise MSPUnknownFrameError(kind)


def decode(data: bytes) -> MSPFrame:
    """Decode a single frame held entirely in *data*."""

    return read_frame(io.BytesIO(data))


def hexlify(data: bytes) -> str:
    """Return a lowercase hexadecimal representation of *data*."""

    return binascii.hexlify(data).decode("ascii")
