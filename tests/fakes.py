from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Union

from msp_tool.core.msp import DIR_FROM_FC, encode_v1
from msp_tool.io.transport import TransportClosedError


class ScriptedTransport:
    """In-memory transport that replays *data* and then fails as scripted.

    Once drained, *then* decides what happens: ``None`` is an end of stream,
    an exception instance is raised, and a callable is invoked before the read
    fails as if the handle had been closed.
    """

    def __init__(
        self,
        data: bytes = b"",
        then: Union[None, BaseException, Callable[[], None]] = None,
        write_error: Optional[BaseException] = None,
    ) -> None:
        self._buffer = bytearray(data)
        self._then = then
        self._write_error = write_error
        self.written: List[bytes] = []
        self.closed = False

    def read(self, size: int) -> bytes:
        if self.closed:
            raise TransportClosedError("closed")
        if self._buffer:
            chunk = bytes(self._buffer[:size])
            del self._buffer[:size]
            return chunk
        then = self._then
        if then is None:
            return b""
        if isinstance(then, BaseException):
            raise then
        self._then = None
        then()
        raise TransportClosedError("closed")

    def write(self, data: bytes) -> int:
        if self.closed:
            raise TransportClosedError("closed")
        if self._write_error is not None:
            raise self._write_error
        self.written.append(bytes(data))
        return len(data)

    def close(self) -> None:
        self.closed = True


class FakeOpener:
    """Hands out scripted results in order: transports are returned, exceptions raised."""

    def __init__(self, results: Sequence[object]) -> None:
        self._results = list(results)
        self.calls: List[tuple] = []

    def __call__(self, port: str, baudrate: int):
        self.calls.append((port, baudrate))
        if not self._results:
            raise OSError(f"{port} is gone")
        result = self._results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeTime:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(seconds)


def response(command: int, payload: bytes = b"") -> bytes:
    return encode_v1(command, payload, direction=DIR_FROM_FC)


