"""Flight controller facade wiring the MSP session, board state and sticks."""

from __future__ import annotations

import logging
import os
import sys
import threading
import traceback
from pathlib import Path
from typing import Optional, Sequence, TextIO

from .core.board import BoardIdentity, BoardState, PIDReceiver
from .core.codec import pack
from .core.commands import IDENTIFICATION_COMMANDS, MSPCommand
from .core.config import SessionOptions
from .core.msp import encode_v1
from .core.records import PID_TABLE, RC_CHANNELS
from .core.sticks import RXKey, StickSimulator
from .core.ticker import Ticker
from .io.dfu import DfuFlasher, FlashError
from .io.session import ConnectionSession, SessionFatalError
from .io.transport import TransportError, TransportOpener, open_transport, port_is_present

log = logging.getLogger(__name__)


class FlightController:
    """A board on a serial port that survives disconnects and reboots.

    Call :meth:`connect`, then :meth:`start_updating` to read from the board
    on a background thread.
    """

    def __init__(
        self,
        options: SessionOptions,
        *,
        output: Optional[TextIO] = None,
        pid_receiver: Optional[PIDReceiver] = None,
        opener: TransportOpener = open_transport,
        port_present=port_is_present,
        flasher: Optional[DfuFlasher] = None,
    ) -> None:
        self.options = options
        self._output = output or sys.stdout
        self.board = BoardState(
            self._send,
            output=self._output,
            enable_debug_trace=options.enable_debug_trace,
            pid_receiver=pid_receiver,
        )
        self.sticks = StickSimulator(key_timeout=options.key_timeout)
        self.session = ConnectionSession(
            options,
            on_frame=self.board.handle_frame,
            on_connect=self._on_connected,
            output=self._output,
            opener=opener,
            port_present=port_present,
        )
        self.flasher = flasher or DfuFlasher(
            output=self._output,
            make_command=options.make_command,
            dfu_util=options.dfu_util,
            timeout=options.dfu_timeout,
        )
        self._rx_lock = threading.Lock()
        self._rx_ticker: Optional[Ticker] = None
        self._reader: Optional[threading.Thread] = None

    def _send(self, command: int, payload: bytes = b"") -> None:
        self.session.write_command(command, payload)

    def _on_connected(self) -> None:
        self.disable_rx_simulation()
        self.board.reset()
        self.sticks.reset()
        for command in IDENTIFICATION_COMMANDS:
            self._send(command)

    def connect(self) -> None:
        self.session.open()

    def start_updating(self) -> threading.Thread:
        """Run the read loop on a daemon thread. A fatal session error exits the process."""

        if self._reader is not None and self._reader.is_alive():
            return self._reader
        self._reader = threading.Thread(target=self._read_loop, name="msp-reader", daemon=True)
        self._reader.start()
        return self._reader

    def _read_loop(self) -> None:
        try:
            self.session.run()
        except SessionFatalError:
            traceback.print_exc()
            os._exit(1)

    def close(self) -> None:
        self.disable_rx_simulation()
        self.session.close()
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)

    def identity(self) -> BoardIdentity:
        return self.board.identity()

    def has_detected_target_name(self) -> bool:
        return self.board.has_detected_target_name()

    def reboot(self) -> None:
        self.session.prepare_to_reboot(lambda t: t.write(encode_v1(MSPCommand.MSP_REBOOT)))

    def reboot_into_bootloader(self) -> None:
        character = self.options.reboot_character.encode("ascii")
        self.session.prepare_to_reboot(lambda t: t.write(character))

    def flash(self, src_dir: Path, target_name: Optional[str] = None) -> None:
        target = target_name or self.board.identity().target_name
        if not target:
            raise FlashError("empty target name")
        self.flasher.flash(Path(src_dir), target, self.reboot_into_bootloader)

    def get_pids(self) -> None:
        self._send(MSPCommand.MSP_PID)

    def set_pids(self, values: Sequence[int]) -> None:
        self._send(MSPCommand.MSP_SET_PID, pack(PID_TABLE, values))
        self._send(MSPCommand.MSP_EEPROM_WRITE)

    def keypress(self, key: RXKey) -> None:
        self.sticks.keypress(key)

    def is_simulating_rx(self) -> bool:
        with self._rx_lock:
            return self._rx_ticker is not None

    def enable_rx_simulation(self) -> None:
        with self._rx_lock:
            if self._rx_ticker is not None:
                return
            self._rx_ticker = Ticker(self.options.rx_interval, self._rx_tick, name="rx-sim")
            self._rx_ticker.start()

    def disable_rx_simulation(self) -> None:
        """Stop sending RC channels; no MSP_SET_RAW_RC goes out after this returns."""

        with self._rx_lock:
            ticker, self._rx_ticker = self._rx_ticker, None
        if ticker is not None:
            ticker.stop()

    def toggle_rx_simulation(self) -> bool:
        if self.is_simulating_rx():
            self.disable_rx_simulation()
            return False
        self.enable_rx_simulation()
        return True

    def _rx_tick(self) -> None:
        self.sticks.update()
        channels = self.sticks.to_channels(self.board.channel_map())
        try:
            self._send(MSPCommand.MSP_SET_RAW_RC, pack(RC_CHANNELS, channels))
        except TransportError as exc:
            log.debug("skipping RC update: %s", exc)
