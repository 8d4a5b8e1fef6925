"""Command line entry point: interactive MSP console for a single board."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List

from msp_tool.core.board import Pid
from msp_tool.core.config import DEFAULT_PROFILE, ProfileError, load_options
from msp_tool.core.sticks import RXKey
from msp_tool.fc import FlightController
from msp_tool.io.dfu import FlashError

KEY_CTRL_C = b"\x03"

RX_KEYS: Dict[bytes, RXKey] = {
    b"w": RXKey.W,
    b"a": RXKey.A,
    b"s": RXKey.S,
    b"d": RXKey.D,
    b"\x1b[A": RXKey.UP,
    b"\x1b[D": RXKey.LEFT,
    b"\x1b[B": RXKey.DOWN,
    b"\x1b[C": RXKey.RIGHT,
}
RX_KEYS.update({str(i).encode(): RXKey(RXKey.AUX1 + i - 1) for i in range(1, 9)})

HELP = """
Available commands:
h	Print this help
r	Reboot the board
f	Build and flash the firmware (needs --src-dir)
x	Toggle RC simulation
p	Fetch PIDs
q	Quit

While simulating RC: WASD move the left stick, the arrows the right one
and 1-8 toggle AUX1-AUX8.
"""


class PrintingPIDReceiver:
    def __init__(self, output=None) -> None:
        self._output = output or sys.stdout

    def received_pid(self, pids: Dict[str, Pid]) -> None:
        for key, pid in pids.items():
            values = " ".join(str(v) for v in pid.value)
            print(f"PID {key} ({pid.flight_surface}): {values}", file=self._output, flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="msp-tool", description="Interactive MSP console")
    parser.add_argument("-p", "--port", required=True, help="Serial port")
    parser.add_argument("-b", "--baud", type=int, help="Baud rate (overrides the profile)")
    parser.add_argument("--config", help="Path to config.yaml overriding defaults")
    parser.add_argument(
        "--profile",
        default=DEFAULT_PROFILE,
        help="Session profile defined in config.yaml",
    )
    parser.add_argument(
        "--debug-trace",
        action="store_true",
        default=None,
        help="Enable DEBUG_TRACE on boards that support it",
    )
    parser.add_argument("--src-dir", help="Firmware source tree used by the flash command")
    parser.add_argument("--target", help="Firmware target, when it cannot be detected via MSP")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


@contextmanager
def cbreak_terminal(fd: int) -> Iterator[None]:
    """Deliver key presses one at a time while keeping Ctrl+C and output processing."""

    if not os.isatty(fd):
        yield
        return
    import termios
    import tty

    saved = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def handle_key(fc: FlightController, key: bytes, args: argparse.Namespace) -> bool:
    """Apply one key press. Returns False when the console should exit."""

    if key in (b"q", KEY_CTRL_C):
        return False
    try:
        _apply_key(fc, key, args)
    except OSError as exc:
        # raised while the board is unplugged or rebooting
        print(f"Board not connected: {exc}")
    return True


def _apply_key(fc: FlightController, key: bytes, args: argparse.Namespace) -> None:
    if fc.is_simulating_rx() and key in RX_KEYS:
        fc.keypress(RX_KEYS[key])
    elif key == b"h":
        print(HELP)
    elif key == b"r":
        fc.reboot()
    elif key == b"x":
        enabled = fc.toggle_rx_simulation()
        print(f"RC simulation {'enabled' if enabled else 'disabled'}")
    elif key == b"p":
        fc.get_pids()
    elif key == b"f":
        if not args.src_dir:
            print("Missing --src-dir, can't flash")
        elif not args.target and not fc.has_detected_target_name():
            print("Target name was not detected via MSP, use --target")
        else:
            try:
                fc.flash(Path(args.src_dir), args.target)
            except FlashError as exc:
                print(f"Error flashing board: {exc}")


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        options = load_options(
            args.port, args.profile, Path(args.config) if args.config else None
        ).with_overrides(baudrate=args.baud, enable_debug_trace=args.debug_trace)
    except ProfileError as exc:
        parser.error(str(exc))

    fc = FlightController(options, pid_receiver=PrintingPIDReceiver())
    try:
        fc.connect()
    except OSError as exc:
        print(f"Could not open {options.port}: {exc}", file=sys.stderr)
        return 1
    print(f"Connected to {options.port} @ {options.baudrate}bps. Press 'h' for help.")
    fc.start_updating()

    fd = sys.stdin.fileno()
    try:
        with cbreak_terminal(fd):
            while True:
                key = os.read(fd, 3)
                if not key or not handle_key(fc, key, args):
                    break
    except KeyboardInterrupt:
        pass
    finally:
        fc.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
