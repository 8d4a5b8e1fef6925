"""Keyboard driven virtual RC sticks.

Front ends usually deliver key-down events only, so a stick snaps to its
extreme on a key press and falls back to centre once its key has not been
pressed again for ``key_timeout`` seconds. Presses and the periodic
:meth:`StickSimulator.update` run on different threads and share one lock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

RX_LOW = 1000
RX_MID = 1500
RX_HIGH = 2000

KEY_TIMEOUT = 0.1


class RXKey(IntEnum):
    """WASD drive the left stick, the arrows the right one, AUX keys toggle."""

    W = 0
    A = 1
    S = 2
    D = 3
    UP = 4
    LEFT = 5
    DOWN = 6
    RIGHT = 7
    AUX1 = 8
    AUX2 = 9
    AUX3 = 10
    AUX4 = 11
    AUX5 = 12
    AUX6 = 13
    AUX7 = 14
    AUX8 = 15


STICK_AXES = ("roll", "pitch", "yaw", "throttle")
AUX_CHANNEL_COUNT = 8
DEFAULT_CHANNEL_MAP = (0, 1, 2, 3)

# key -> (axis, value, opposite key)
_STICK_KEYS: Dict[RXKey, Tuple[str, int, RXKey]] = {
    RXKey.W: ("throttle", RX_HIGH, RXKey.S),
    RXKey.S: ("throttle", RX_LOW, RXKey.W),
    RXKey.A: ("yaw", RX_LOW, RXKey.D),
    RXKey.D: ("yaw", RX_HIGH, RXKey.A),
    RXKey.UP: ("pitch", RX_HIGH, RXKey.DOWN),
    RXKey.DOWN: ("pitch", RX_LOW, RXKey.UP),
    RXKey.LEFT: ("roll", RX_LOW, RXKey.RIGHT),
    RXKey.RIGHT: ("roll", RX_HIGH, RXKey.LEFT),
}


@dataclass
class StickState:
    roll: int = RX_MID
    pitch: int = RX_MID
    yaw: int = RX_MID
    throttle: int = RX_MID
    aux: List[int] = field(default_factory=lambda: [RX_LOW] * AUX_CHANNEL_COUNT)


class StickSimulator:
    def __init__(
        self,
        *,
        key_timeout: float = KEY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key_timeout = key_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = StickState()
        self._last_press: List[Optional[float]] = [None] * len(RXKey)

    def reset(self) -> None:
        with self._lock:
            self._state = StickState()
            self._last_press = [None] * len(RXKey)

    def snapshot(self) -> StickState:
        with self._lock:
            state = self._state
            return StickState(state.roll, state.pitch, state.yaw, state.throttle, list(state.aux))

    def keypress(self, key: RXKey) -> None:
        key = RXKey(key)
        with self._lock:
            if key in _STICK_KEYS:
                axis, value, opposite = _STICK_KEYS[key]
                setattr(self._state, axis, value)
                # A reversal must not let the old key re-centre the stick later.
                self._last_press[opposite] = None
            else:
                index = key - RXKey.AUX1
                current = self._state.aux[index]
                self._state.aux[index] = RX_LOW if current == RX_HIGH else RX_HIGH
            self._last_press[key] = self._clock()

    def update(self) -> None:
        """Re-centre every stick whose key press has timed out."""

        with self._lock:
            now = self._clock()
            for index, pressed_at in enumerate(self._last_press):
                if pressed_at is None or now - pressed_at <= self.key_timeout:
                    continue
                self._last_press[index] = None
                key = RXKey(index)
                if key in _STICK_KEYS:
                    setattr(self._state, _STICK_KEYS[key][0], RX_MID)

    def to_channels(self, channel_map: Optional[Sequence[int]] = None) -> List[int]:
        """Return the RC channel list for MSP_SET_RAW_RC.

        ``channel_map[i]`` is the channel index receiving roll, pitch, yaw and
        throttle for ``i`` = 0..3; aux channels follow in order.
        """

        mapping = list(channel_map[: len(STICK_AXES)]) if channel_map else list(DEFAULT_CHANNEL_MAP)
        if sorted(mapping) != list(range(len(STICK_AXES))):
            raise ValueError(f"channel map {mapping} is not a permutation of 0..3")
        with self._lock:
            channels = [0] * len(STICK_AXES)
            for axis, position in zip(STICK_AXES, mapping):
                channels[position] = getattr(self._state, axis)
            channels.extend(self._state.aux)
        return channels
