"""pyserial backed byte transport with blocking reads and a distinct closed state."""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Protocol

import serial

log = logging.getLogger(__name__)

POLL_TIMEOUT = 0.1


class TransportError(OSError):
    """The serial link failed."""


class TransportClosedError(TransportError):
    """The transport was closed on purpose and then used."""


class Transport(Protocol):
    def read(self, size: int) -> bytes:  # pragma: no cover - protocol signature
        ...

    def write(self, data: bytes) -> int:  # pragma: no cover - protocol signature
        ...

    def close(self) -> None:  # pragma: no cover - protocol signature
        ...


TransportOpener = Callable[[str, int], Transport]


class SerialTransport:
    """Blocking reads over a :class:`serial.Serial`.

    :meth:`read` waits until at least one byte arrives. Closing the transport
    from another thread makes a pending or later :meth:`read` raise
    :class:`TransportClosedError` within one poll interval.
    """

    def __init__(self, ser: serial.Serial) -> None:
        self._serial = ser
        self._closed = threading.Event()

    @property
    def port(self) -> str:
        return self._serial.port

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise TransportClosedError(f"{self.port} is closed")

    def read(self, size: int) -> bytes:
        while True:
            self._check_open()
            try:
                chunk = self._serial.read(size)
            except (serial.SerialException, OSError, TypeError, ValueError) as exc:
                self._check_open()
                raise TransportError(str(exc)) from exc
            if chunk:
                return chunk

    def write(self, data: bytes) -> int:
        self._check_open()
        try:
            written = self._serial.write(data)
            self._serial.flush()
        except (serial.SerialException, OSError) as exc:
            self._check_open()
            raise TransportError(str(exc)) from exc
        return written or 0

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._serial.close()
        except (serial.SerialException, OSError) as exc:
            log.debug("error closing %s: %s", self.port, exc)


def open_transport(port: str, baudrate: int) -> SerialTransport:
    """Open *port*; failures raise :class:`serial.SerialException` (an ``OSError``)."""

    ser = serial.Serial(port=port, baudrate=baudrate, timeout=POLL_TIMEOUT)
    return SerialTransport(ser)


def port_is_present(port: str) -> bool:
    return os.path.exists(port)
