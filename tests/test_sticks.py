from __future__ import annotations

import pytest

from msp_tool.core.sticks import RX_HIGH, RX_LOW, RX_MID, RXKey, StickSimulator


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sticks(clock):
    return StickSimulator(key_timeout=0.1, clock=clock)


def test_throttle_up_then_decay(sticks, clock):
    sticks.keypress(RXKey.W)
    assert sticks.snapshot().throttle == RX_HIGH
    clock.advance(0.05)
    sticks.update()
    assert sticks.snapshot().throttle == RX_HIGH
    clock.advance(0.06)
    sticks.update()
    assert sticks.snapshot().throttle == RX_MID


def test_repeated_press_postpones_decay(sticks, clock):
    sticks.keypress(RXKey.UP)
    clock.advance(0.08)
    sticks.keypress(RXKey.UP)
    clock.advance(0.08)
    sticks.update()
    assert sticks.snapshot().pitch == RX_HIGH


def test_reversal_cancels_pending_decay(sticks, clock):
    sticks.keypress(RXKey.W)
    clock.advance(0.09)
    sticks.keypress(RXKey.S)
    assert sticks.snapshot().throttle == RX_LOW
    # the W press would have timed out here
    clock.advance(0.05)
    sticks.update()
    assert sticks.snapshot().throttle == RX_LOW
    clock.advance(0.06)
    sticks.update()
    assert sticks.snapshot().throttle == RX_MID


def test_right_after_left_is_not_recentred_by_left(sticks, clock):
    sticks.keypress(RXKey.LEFT)
    clock.advance(0.09)
    sticks.keypress(RXKey.RIGHT)
    clock.advance(0.05)
    sticks.update()
    assert sticks.snapshot().roll == RX_HIGH


def test_toggle_pair_is_identity(sticks):
    before = sticks.snapshot().aux
    sticks.keypress(RXKey.AUX3)
    assert sticks.snapshot().aux[2] == RX_HIGH
    sticks.keypress(RXKey.AUX3)
    assert sticks.snapshot().aux == before


def test_toggle_is_not_decayed(sticks, clock):
    sticks.keypress(RXKey.AUX1)
    clock.advance(1.0)
    sticks.update()
    assert sticks.snapshot().aux[0] == RX_HIGH


def test_to_channels_follows_channel_map(sticks):
    sticks.keypress(RXKey.W)
    sticks.keypress(RXKey.LEFT)
    sticks.keypress(RXKey.AUX2)
    # AETR: roll->0, pitch->1, yaw->3, throttle->2
    channels = sticks.to_channels([0, 1, 3, 2, 4, 5, 6, 7])
    assert channels[:4] == [RX_LOW, RX_MID, RX_HIGH, RX_MID]
    assert channels[4:] == [RX_LOW, RX_HIGH, RX_LOW, RX_LOW, RX_LOW, RX_LOW, RX_LOW, RX_LOW]


def test_to_channels_defaults_without_map(sticks):
    sticks.keypress(RXKey.D)
    assert sticks.to_channels(None)[:4] == [RX_MID, RX_MID, RX_HIGH, RX_MID]


def test_to_channels_rejects_bad_map(sticks):
    with pytest.raises(ValueError):
        sticks.to_channels([0, 0, 1, 2])


def test_reset_recentres(sticks):
    sticks.keypress(RXKey.W)
    sticks.keypress(RXKey.AUX8)
    sticks.reset()
    state = sticks.snapshot()
    assert state.throttle == RX_MID
    assert state.aux[7] == RX_LOW
