"""Board identification state and the dispatch table for incoming frames."""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Callable, Dict, List, Optional, Protocol, TextIO, Tuple

from .codec import PayloadExhausted, pack
from .commands import (
    FEATURE_DEBUG_TRACE,
    SERIAL_FUNCTION_DEBUG_TRACE,
    SERIAL_FUNCTION_MSP,
    MSPCommand,
)
from .msp import MSPFrame, hexlify
from .records import (
    API_VERSION,
    FC_VERSION,
    FEATURES,
    PID_TABLE,
    RX_MAP,
    SERIAL_CONFIGS,
    SerialConfig,
)

log = logging.getLogger(__name__)

# DEBUG_TRACE is only supported by INAV 1.9.0 and later.
DEBUG_TRACE_VARIANT = "INAV"
DEBUG_TRACE_MIN_VERSION = (1, 9, 0)

BUILD_DATE_LEN = 11
BUILD_TIME_LEN = 8
BOARD_ID_LEN = 4
# board id, hw revision (u16), osd type (u8), vcp flag (u8), then target name length
TARGET_NAME_LEN_OFFSET = 8

# (key, label, start, stop) slices of the 30 byte MSP_PID payload. The "yaw"
# entry carries the label "pitch" exactly as the tool always reported it; this
# looks like an upstream mistake and is kept visible here rather than fixed.
PID_LAYOUT: Tuple[Tuple[str, str, int, int], ...] = (
    ("roll", "roll", 0, 3),
    ("pitch", "pitch", 3, 6),
    ("yaw", "pitch", 6, 8),
    ("alt", "alt", 8, 11),
    ("vel", "vel", 11, 14),
    ("mag", "mag", 14, 15),
    ("pos", "pos", 15, 16),
    ("posR", "posR", 16, 19),
    ("navR", "navR", 19, 22),
)


@dataclass(frozen=True)
class Pid:
    flight_surface: str
    value: bytes


class PIDReceiver(Protocol):
    def received_pid(self, pids: Dict[str, Pid]) -> None:  # pragma: no cover - protocol signature
        ...


@dataclass
class BoardIdentity:
    """Identification facts gathered from the board since the last connect."""

    variant: str = ""
    version_major: int = 0
    version_minor: int = 0
    version_patch: int = 0
    board_id: str = ""
    target_name: str = ""
    features: int = 0
    channel_map: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return bool(self.variant and self.version_major and self.board_id)

    @property
    def version(self) -> Tuple[int, int, int]:
        return (self.version_major, self.version_minor, self.version_patch)

    def summary(self) -> str:
        target = f", target {self.target_name}" if self.target_name else ""
        return (
            f"{self.variant} {self.version_major}.{self.version_minor}.{self.version_patch} "
            f"(board {self.board_id}{target})"
        )


def _text(data: bytes) -> str:
    return data.decode("ascii", errors="replace")


def decode_pids(values: List[int]) -> Dict[str, Pid]:
    raw = bytes(values)
    return {key: Pid(label, raw[start:stop]) for key, label, start, stop in PID_LAYOUT}


class BoardState:
    """Apply decoded frames to the board identity, PID set and channel map.

    *send* is called with ``(command, payload)`` for the writes some handlers
    issue (feature and serial port fix-ups, EEPROM writes).
    """

    def __init__(
        self,
        send: Callable[[int, bytes], None],
        *,
        output: Optional[TextIO] = None,
        enable_debug_trace: bool = False,
        pid_receiver: Optional[PIDReceiver] = None,
    ) -> None:
        self._send = send
        self._output = output or sys.stdout
        self.enable_debug_trace = enable_debug_trace
        self.pid_receiver = pid_receiver
        self._lock = threading.RLock()
        self._identity = BoardIdentity()
        self._pids: Dict[str, Pid] = {}
        # work a handler leaves for after the lock is released
        self._deferred: List[Callable[[], None]] = []
        self._handlers: Dict[int, Callable[[MSPFrame], None]] = {
            MSPCommand.MSP_API_VERSION: self._on_api_version,
            MSPCommand.MSP_FC_VARIANT: self._on_fc_variant,
            MSPCommand.MSP_FC_VERSION: self._on_fc_version,
            MSPCommand.MSP_BOARD_INFO: self._on_board_info,
            MSPCommand.MSP_BUILD_INFO: self._on_build_info,
            MSPCommand.MSP_FEATURE: self._on_feature,
            MSPCommand.MSP_CF_SERIAL_CONFIG: self._on_serial_config,
            MSPCommand.MSP_RX_MAP: self._on_rx_map,
            MSPCommand.MSP_REBOOT: self._on_reboot,
            MSPCommand.MSP_DEBUG_MSG: self._on_debug_msg,
            MSPCommand.MSP_PID: self._on_pid,
            MSPCommand.MSP_SET_FEATURE: self._ignore,
            MSPCommand.MSP_SET_CF_SERIAL_CONFIG: self._ignore,
            MSPCommand.MSP_SET_RAW_RC: self._ignore,
            MSPCommand.MSP_SET_PID: self._ignore,
            MSPCommand.MSP_EEPROM_WRITE: self._ignore,
        }

    def _print(self, message: str) -> None:
        print(message, file=self._output, flush=True)

    def reset(self) -> None:
        """Forget everything learned from the board."""

        with self._lock:
            self._identity = BoardIdentity()
            self._pids = {}

    def identity(self) -> BoardIdentity:
        with self._lock:
            return replace(self._identity, channel_map=list(self._identity.channel_map))

    def channel_map(self) -> List[int]:
        with self._lock:
            return list(self._identity.channel_map)

    def pids(self) -> Dict[str, Pid]:
        with self._lock:
            return dict(self._pids)

    def has_detected_target_name(self) -> bool:
        with self._lock:
            return self._identity.target_name != ""

    def should_enable_debug_trace(self) -> bool:
        with self._lock:
            identity = self._identity
            return (
                self.enable_debug_trace
                and identity.variant == DEBUG_TRACE_VARIANT
                and identity.version >= DEBUG_TRACE_MIN_VERSION
            )

    def handle_frame(self, frame: MSPFrame) -> None:
        """Dispatch *frame* to its handler.

        A payload too short for its handler aborts that frame only. Writes
        back to the board and the PID receiver run after the board lock is
        released; a failing write propagates to the caller.
        """

        if frame.unsupported:
            self._print(f"Board does not support MSP command {frame.code}")
            return
        handler = self._handlers.get(frame.code)
        if handler is None:
            self._print(
                f"Unhandled MSP frame {frame.code} with payload {hexlify(frame.payload) or '<empty>'}"
            )
            return
        with self._lock:
            self._deferred = []
            try:
                handler(frame)
            except PayloadExhausted as exc:
                log.warning("dropping MSP frame %d: %s", frame.code, exc)
                self._deferred = []
            deferred, self._deferred = self._deferred, []
        for action in deferred:
            action()

    def _queue_send(self, command: int, payload: bytes = b"") -> None:
        self._deferred.append(partial(self._send, command, payload))

    def _print_info(self) -> None:
        if self._identity.complete:
            self._print(self._identity.summary())

    def _on_api_version(self, frame: MSPFrame) -> None:
        version = frame.read(API_VERSION)
        self._print(
            f"MSP API version {version.major}.{version.minor} (protocol {version.protocol})"
        )

    def _on_fc_variant(self, frame: MSPFrame) -> None:
        self._identity.variant = _text(frame.payload)
        self._print_info()

    def _on_fc_version(self, frame: MSPFrame) -> None:
        version = frame.read(FC_VERSION)
        self._identity.version_major = version.major
        self._identity.version_minor = version.minor
        self._identity.version_patch = version.patch
        self._print_info()

    def _on_board_info(self, frame: MSPFrame) -> None:
        payload = frame.payload
        self._identity.board_id = _text(frame.cursor.take(BOARD_ID_LEN))
        # Recent Betaflight and INAV append a length-prefixed target name.
        if len(payload) > TARGET_NAME_LEN_OFFSET:
            name_len = payload[TARGET_NAME_LEN_OFFSET]
            start = TARGET_NAME_LEN_OFFSET + 1
            if len(payload) >= start + name_len:
                self._identity.target_name = _text(payload[start : start + name_len])
        self._print_info()

    def _on_build_info(self, frame: MSPFrame) -> None:
        cursor = frame.cursor
        build_date = _text(cursor.take(BUILD_DATE_LEN))
        build_time = _text(cursor.take(BUILD_TIME_LEN))
        # 7 characters on Betaflight/Cleanflight, 8 on INAV
        revision = _text(cursor.rest())
        self._print(f"Build {revision} (built on {build_date} @ {build_time})")

    def _on_feature(self, frame: MSPFrame) -> None:
        self._identity.features = frame.read(FEATURES)
        if not self._identity.features & FEATURE_DEBUG_TRACE and self.should_enable_debug_trace():
            self._print("Enabling FEATURE_DEBUG_TRACE")
            self._identity.features |= FEATURE_DEBUG_TRACE
            self._queue_send(MSPCommand.MSP_SET_FEATURE, pack(FEATURES, self._identity.features))
            self._queue_send(MSPCommand.MSP_EEPROM_WRITE, b"")

    def _on_serial_config(self, frame: MSPFrame) -> None:
        if not self.should_enable_debug_trace():
            return
        configs: List[SerialConfig] = frame.read(SERIAL_CONFIGS)
        mask = SERIAL_FUNCTION_MSP | SERIAL_FUNCTION_DEBUG_TRACE
        if any(cfg.function_mask & mask == mask for cfg in configs):
            return
        # DEBUG_TRACE only works on one port: use the first MSP one.
        for cfg in configs:
            if cfg.function_mask & SERIAL_FUNCTION_MSP:
                self._print(f"Enabling FUNCTION_DEBUG_TRACE on serial port {cfg.identifier}")
                cfg.function_mask |= SERIAL_FUNCTION_DEBUG_TRACE
                break
        else:
            log.info("no MSP serial port found, leaving serial config untouched")
            return
        self._queue_send(MSPCommand.MSP_SET_CF_SERIAL_CONFIG, pack(SERIAL_CONFIGS, configs))
        self._queue_send(MSPCommand.MSP_EEPROM_WRITE, b"")

    def _on_rx_map(self, frame: MSPFrame) -> None:
        self._identity.channel_map = frame.read(RX_MAP)

    def _on_reboot(self, frame: MSPFrame) -> None:
        self._print("Rebooting board...")

    def _on_debug_msg(self, frame: MSPFrame) -> None:
        message = _text(frame.payload).strip(" \r\n\t\x00")
        self._print(f"[DEBUG] {message}")

    def _on_pid(self, frame: MSPFrame) -> None:
        pids = decode_pids(frame.read(PID_TABLE))
        self._pids = pids
        if self.pid_receiver is not None:
            self._deferred.append(partial(self._deliver_pids, self.pid_receiver, dict(pids)))

    def _deliver_pids(self, receiver: PIDReceiver, pids: Dict[str, Pid]) -> None:
        try:
            receiver.received_pid(pids)
        except Exception:
            log.exception("PID receiver rejected the PID set")

    def _ignore(self, frame: MSPFrame) -> None:
        log.debug("ack for MSP command %d", frame.code)
