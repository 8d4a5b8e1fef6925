"""Connection lifecycle for one serial port: read loop, reconnection and reboots."""

from __future__ import annotations

import logging
import sys
import threading
import time
from enum import Enum
from typing import Callable, Optional, TextIO, TypeVar

from ..core.config import SessionOptions
from ..core.msp import MSPFrame, MSPProtocolError, encode_v1, read_frame
from .transport import (
    Transport,
    TransportClosedError,
    TransportOpener,
    open_transport,
    port_is_present,
)

log = logging.getLogger(__name__)

PORT_POLL_INTERVAL = 0.01

T = TypeVar("T")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SessionFatalError(RuntimeError):
    """Reconnection failed with an error that retrying cannot fix."""


class ConnectionSession:
    """Own the transport of one port and keep it connected.

    Frames are handed to *on_frame* from the thread running :meth:`run`.
    *on_connect* runs after every successful open, before the first frame of
    the new connection is read.
    """

    def __init__(
        self,
        options: SessionOptions,
        *,
        on_frame: Callable[[MSPFrame], None],
        on_connect: Optional[Callable[[], None]] = None,
        output: Optional[TextIO] = None,
        opener: TransportOpener = open_transport,
        port_present: Callable[[str], bool] = port_is_present,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options
        self._on_frame = on_frame
        self._on_connect = on_connect
        self._output = output or sys.stdout
        self._opener = opener
        self._port_present = port_present
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._transport: Optional[Transport] = None
        self._state = ConnectionState.DISCONNECTED
        self._stopped = threading.Event()

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _print(self, message: str) -> None:
        print(message, file=self._output, flush=True)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            if self._state is not state:
                log.debug("%s: %s -> %s", self.options.port, self._state.value, state.value)
            self._state = state

    def _current(self) -> Optional[Transport]:
        with self._lock:
            return self._transport

    def _install(self, transport: Transport) -> bool:
        with self._lock:
            if self._stopped.is_set():
                stale: Optional[Transport] = transport
                installed = False
            else:
                stale, self._transport = self._transport, transport
                self._state = ConnectionState.CONNECTED
                installed = True
        if stale is not None:
            stale.close()
        return installed

    def _detach(self) -> Optional[Transport]:
        with self._lock:
            transport, self._transport = self._transport, None
            self._state = ConnectionState.DISCONNECTED
        return transport

    def _connected(self) -> None:
        if self._on_connect is None:
            return
        try:
            self._on_connect()
        except OSError as exc:
            # The read loop notices a dead link on its own.
            log.warning("handshake on %s failed: %s", self.options.port, exc)

    def open(self) -> None:
        """Open the port and run the connect hook. Open failures propagate."""

        self._stopped.clear()
        self._set_state(ConnectionState.CONNECTING)
        try:
            transport = self._opener(self.options.port, self.options.baudrate)
        except OSError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        if self._install(transport):
            self._connected()

    def close(self) -> None:
        """Stop the read loop and release the port."""

        self._stopped.set()
        transport = self._detach()
        if transport is not None:
            transport.close()

    def write(self, data: bytes) -> int:
        transport = self._current()
        if transport is None:
            raise TransportClosedError(f"{self.options.port} is not connected")
        with self._write_lock:
            return transport.write(data)

    def write_command(self, command: int, payload: bytes = b"") -> int:
        return self.write(encode_v1(command, payload))

    def read_frame(self) -> MSPFrame:
        transport = self._current()
        if transport is None:
            # Detached on purpose, e.g. before a reboot. Waiting for EOF instead
            # can reset the whole USB hub on some hosts.
            raise TransportClosedError(f"{self.options.port} was closed")
        return read_frame(transport)

    def run(self) -> None:
        """Read and dispatch frames until :meth:`close` is called.

        Raises :class:`SessionFatalError` when reconnecting fails unexpectedly.
        """

        while not self._stopped.is_set():
            try:
                frame = self.read_frame()
                # Handlers write back to the board, so a dead link can surface here too.
                self._on_frame(frame)
            except MSPProtocolError as exc:
                self._print(str(exc))
            except (OSError, EOFError) as exc:
                if self._stopped.is_set():
                    break
                self._handle_disconnect(exc)

    def _handle_disconnect(self, exc: BaseException) -> None:
        self._set_state(ConnectionState.DISCONNECTED)
        self._print(f"Board disconnected ({exc}), trying to reconnect...")
        if isinstance(exc, TransportClosedError):
            self._sleep(self.options.closed_settle_delay)
            self._wait_for_port_to_vanish()
        try:
            self.reconnect()
        except Exception as error:
            log.critical("unexpected error reconnecting to %s", self.options.port, exc_info=True)
            raise SessionFatalError(f"could not reconnect to {self.options.port}: {error!r}") from error

    def _wait_for_port_to_vanish(self) -> None:
        # Some hosts keep a stale device file around for a moment while the
        # board re-enumerates.
        if not self.options.check_port_presence:
            return
        deadline = self._clock() + self.options.port_disappear_timeout
        while self._port_present(self.options.port) and self._clock() < deadline:
            self._sleep(PORT_POLL_INTERVAL)

    def reconnect(self) -> bool:
        """Retry opening the port until it works or the session is closed."""

        stale = self._detach()
        if stale is not None:
            stale.close()
        port, baudrate = self.options.port, self.options.baudrate
        while not self._stopped.is_set():
            self._set_state(ConnectionState.CONNECTING)
            # Opening a missing device file resets the USB hub on macOS.
            if not self.options.check_port_presence or self._port_present(port):
                try:
                    transport = self._opener(port, baudrate)
                except OSError as exc:
                    log.debug("reconnect to %s failed: %s", port, exc)
                else:
                    if not self._install(transport):
                        break
                    self._print(f"Reconnected to {port} @ {baudrate}bps")
                    self._connected()
                    return True
            self._sleep(self.options.reconnect_interval)
        self._set_state(ConnectionState.DISCONNECTED)
        return False

    def prepare_to_reboot(self, action: Callable[[Transport], T]) -> T:
        """Run *action* on a fresh handle after closing the primary one.

        The read loop must never read the EOF a rebooting board produces, so
        the primary handle is closed first and the read loop sees a closed
        transport instead. The reboot command itself goes out on a second,
        short-lived handle.
        """

        transport = self._detach()
        if transport is not None:
            transport.close()
        self._sleep(self.options.reboot_settle_delay)
        temporary = self._opener(self.options.port, self.options.baudrate)
        try:
            return action(temporary)
        finally:
            temporary.close()
