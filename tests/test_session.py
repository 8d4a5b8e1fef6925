from __future__ import annotations

import pytest

from fakes import FakeOpener, ScriptedTransport, response
from msp_tool.core.commands import MSPCommand
from msp_tool.core.config import SessionOptions
from msp_tool.core.msp import encode_v1
from msp_tool.io.session import ConnectionSession, ConnectionState, SessionFatalError
from msp_tool.io.transport import TransportClosedError, TransportError

PORT = "/dev/ttyACM0"

API_FRAME = response(MSPCommand.MSP_API_VERSION, b"\x00\x01\x2a")
VARIANT_FRAME = response(MSPCommand.MSP_FC_VARIANT, b"INAV")


class PortPresence:
    """Answers presence checks from a script, repeating the last answer."""

    def __init__(self, *answers: bool) -> None:
        self._answers = list(answers)
        self.calls = 0

    def __call__(self, port: str) -> bool:
        self.calls += 1
        if len(self._answers) > 1:
            return self._answers.pop(0)
        return self._answers[0]


def make_session(opener, fake_time, out, *, port_present=None, **overrides):
    options = SessionOptions(port=PORT, check_port_presence=False).with_overrides(**overrides)
    frames = []
    connects = []
    session = ConnectionSession(
        options,
        on_frame=frames.append,
        on_connect=lambda: connects.append(1),
        output=out,
        opener=opener,
        port_present=port_present or PortPresence(True),
        sleep=fake_time.sleep,
        clock=fake_time.monotonic,
    )
    return session, frames, connects


def test_frames_are_dispatched_until_closed(fake_time, out):
    holder = {}
    transport = ScriptedTransport(API_FRAME + VARIANT_FRAME, then=lambda: holder["s"].close())
    session, frames, connects = make_session(FakeOpener([transport]), fake_time, out)
    holder["s"] = session

    session.open()
    assert session.connected
    session.run()

    assert [f.code for f in frames] == [MSPCommand.MSP_API_VERSION, MSPCommand.MSP_FC_VARIANT]
    assert connects == [1]
    assert transport.closed
    assert session.state is ConnectionState.DISCONNECTED


def test_protocol_errors_are_reported_and_skipped(fake_time, out):
    holder = {}
    corrupted = bytearray(API_FRAME)
    corrupted[-1] ^= 0x55
    data = b"xy" + bytes(corrupted) + VARIANT_FRAME
    transport = ScriptedTransport(data, then=lambda: holder["s"].close())
    session, frames, _ = make_session(FakeOpener([transport]), fake_time, out)
    holder["s"] = session

    session.open()
    session.run()

    assert [f.code for f in frames] == [MSPCommand.MSP_FC_VARIANT]
    lines = out.getvalue().splitlines()
    assert lines[0] == "out of band MSP byte 0x78"
    assert lines[1] == "out of band MSP byte 0x79"
    assert len(lines) == 3


@pytest.mark.parametrize(
    "failure",
    [TransportError("device reports readiness to read but returned no data"), None],
    ids=["io-error", "eof"],
)
def test_reconnects_after_link_failure(fake_time, out, failure):
    holder = {}
    first = ScriptedTransport(API_FRAME, then=failure)
    second = ScriptedTransport(VARIANT_FRAME, then=lambda: holder["s"].close())
    opener = FakeOpener([first, OSError("resource busy"), second])
    session, frames, connects = make_session(opener, fake_time, out)
    holder["s"] = session

    session.open()
    session.run()

    assert [f.code for f in frames] == [MSPCommand.MSP_API_VERSION, MSPCommand.MSP_FC_VARIANT]
    assert connects == [1, 1]
    assert first.closed
    assert len(opener.calls) == 3
    assert fake_time.sleeps == [session.options.reconnect_interval]
    output = out.getvalue()
    assert "Board disconnected" in output
    assert f"Reconnected to {PORT} @ 115200bps" in output


def test_handshake_runs_on_the_new_handle(fake_time, out):
    holder = {}
    first = ScriptedTransport(b"", then=TransportError("gone"))
    second = ScriptedTransport(b"", then=lambda: holder["s"].close())
    session = ConnectionSession(
        SessionOptions(port=PORT, check_port_presence=False),
        on_frame=lambda frame: None,
        on_connect=lambda: holder["s"].write_command(MSPCommand.MSP_API_VERSION),
        output=out,
        opener=FakeOpener([first, second]),
        sleep=fake_time.sleep,
        clock=fake_time.monotonic,
    )
    holder["s"] = session

    session.open()
    session.run()

    assert first.written == [encode_v1(MSPCommand.MSP_API_VERSION)]
    assert second.written == [encode_v1(MSPCommand.MSP_API_VERSION)]


def test_closed_handle_waits_for_port_to_vanish(fake_time, out):
    holder = {}
    first = ScriptedTransport(b"")
    first._then = first.close
    second = ScriptedTransport(VARIANT_FRAME, then=lambda: holder["s"].close())
    presence = PortPresence(True, True, False, False, True)
    session, frames, connects = make_session(
        FakeOpener([first, second]),
        fake_time,
        out,
        port_present=presence,
        check_port_presence=True,
    )
    holder["s"] = session

    session.open()
    session.run()

    options = session.options
    assert fake_time.sleeps == [
        options.closed_settle_delay,
        0.01,
        0.01,
        options.reconnect_interval,
    ]
    assert [f.code for f in frames] == [MSPCommand.MSP_FC_VARIANT]
    assert connects == [1, 1]


def test_port_vanish_wait_is_bounded(fake_time, out):
    holder = {}
    first = ScriptedTransport(b"")
    first._then = first.close
    second = ScriptedTransport(b"", then=lambda: holder["s"].close())
    session, _, connects = make_session(
        FakeOpener([first, second]),
        fake_time,
        out,
        port_present=PortPresence(True),
        check_port_presence=True,
        port_disappear_timeout=0.05,
    )
    holder["s"] = session

    session.open()
    session.run()

    assert connects == [1, 1]
    assert sum(fake_time.sleeps) < 2.0


def test_presence_check_can_be_disabled(fake_time, out):
    holder = {}
    first = ScriptedTransport(b"")
    first._then = first.close
    second = ScriptedTransport(b"", then=lambda: holder["s"].close())

    def no_presence_checks(port):
        raise AssertionError("presence must not be checked")

    session, _, connects = make_session(
        FakeOpener([first, second]), fake_time, out, port_present=no_presence_checks
    )
    holder["s"] = session

    session.open()
    session.run()

    assert fake_time.sleeps == [session.options.closed_settle_delay]
    assert connects == [1, 1]


def test_unexpected_reconnect_error_is_fatal(fake_time, out):
    first = ScriptedTransport(b"", then=TransportError("gone"))
    session, _, _ = make_session(FakeOpener([first, RuntimeError("boom")]), fake_time, out)

    session.open()
    with pytest.raises(SessionFatalError):
        session.run()


def test_close_stops_reconnecting(fake_time, out):
    session, _, connects = make_session(FakeOpener([]), fake_time, out)

    def stop_after_three(seconds):
        if len(fake_time.sleeps) == 3:
            session.close()

    fake_time.on_sleep = stop_after_three
    assert session.reconnect() is False
    assert len(fake_time.sleeps) == 3
    assert connects == []


def test_open_failure_propagates(fake_time, out):
    session, _, connects = make_session(FakeOpener([OSError("no such port")]), fake_time, out)
    with pytest.raises(OSError):
        session.open()
    assert session.state is ConnectionState.DISCONNECTED
    assert connects == []


def test_prepare_to_reboot_uses_a_temporary_handle(fake_time, out):
    primary = ScriptedTransport()
    temporary = ScriptedTransport()
    session, _, connects = make_session(FakeOpener([primary, temporary]), fake_time, out)
    session.open()

    written = session.prepare_to_reboot(lambda t: t.write(b"R"))

    assert written == 1
    assert primary.closed
    assert temporary.closed
    assert temporary.written == [b"R"]
    assert primary.written == []
    assert fake_time.sleeps == [session.options.reboot_settle_delay]
    assert connects == [1]
    with pytest.raises(TransportClosedError):
        session.read_frame()


def test_write_without_connection(fake_time, out):
    session, _, _ = make_session(FakeOpener([]), fake_time, out)
    with pytest.raises(TransportClosedError):
        session.write_command(MSPCommand.MSP_API_VERSION)


def test_dispatch_write_failure_reconnects(fake_time, out):
    holder = {}
    first = ScriptedTransport(API_FRAME)
    second = ScriptedTransport(VARIANT_FRAME, then=lambda: holder["s"].close())
    frames = []

    def on_frame(frame):
        frames.append(frame.code)
        if len(frames) == 1:
            raise TransportError("write failed")

    session = ConnectionSession(
        SessionOptions(port=PORT, check_port_presence=False),
        on_frame=on_frame,
        output=out,
        opener=FakeOpener([first, second]),
        sleep=fake_time.sleep,
        clock=fake_time.monotonic,
    )
    holder["s"] = session

    session.open()
    session.run()

    assert frames == [MSPCommand.MSP_API_VERSION, MSPCommand.MSP_FC_VARIANT]
    assert first.closed
    assert "Board disconnected (write failed)" in out.getvalue()
