"""Unit tests for spp_capture._events."""

import typing
import warnings

import beartype
import msgspec
import pytest

import spp_capture


def test_relay_tags_events():
    events = []
    relay = spp_capture.EventRelay(events.append)
    listener = relay.listener("/dev/cu.A", 7)

    listener.on_data(b"\xffOK")
    cause = OSError(5, "Input/output error")
    error = spp_capture.SerialIoException("Serial read error", "/dev/cu.A")
    error.__cause__ = cause
    listener.on_error(error)
    listener.on_close()

    data, err, closed = events
    assert isinstance(data, spp_capture.SerialData)
    assert (data.path, data.connection_id) == ("/dev/cu.A", 7)
    assert data.data == "\ufffdOK"
    assert data.raw == b"\xffOK"
    assert data.nbytes == 3

    assert isinstance(err, spp_capture.SerialError)
    assert err.connection_id == 7
    assert err.message.startswith("/dev/cu.A: Serial read error")
    assert "Input/output error" in err.message

    assert closed == spp_capture.SerialClosed(
        path="/dev/cu.A", connection_id=7, ts=closed.ts
    )
    assert data.ts <= err.ts <= closed.ts


def test_relay_without_sink_drops():
    relay = spp_capture.EventRelay()
    relay.listener("/dev/cu.A", 1).on_data(b"lost")

    events = []
    relay.attach(events.append)
    relay.listener("/dev/cu.A", 1).on_close()
    relay.detach()
    relay.listener("/dev/cu.A", 1).on_close()
    assert len(events) == 1


def test_relay_survives_failing_sink():
    def sink(event: spp_capture.SerialEvent):
        raise RuntimeError("ui went away")

    relay = spp_capture.EventRelay(sink)
    relay.listener("/dev/cu.A", 1).on_data(b"x")  # logged, not raised


def test_events_encode_with_tags():
    event = spp_capture.SerialClosed(path="/dev/cu.A", connection_id=2, ts=1.5)
    decoded = msgspec.json.decode(msgspec.json.encode(event))
    assert decoded == {
        "type": "closed",
        "path": "/dev/cu.A",
        "connection_id": 2,
        "ts": 1.5,
    }


def test_link_events_carry_connection_id(fake_serial, wait_until):
    events = []
    with spp_capture.SerialLink(events.append) as link:
        link.connect("/dev/cu.A")
        fake_serial.last("/dev/cu.A").feed(b"one")
        wait_until(lambda: len(events) == 1)

        link.connect("/dev/cu.B")
        fake_serial.last("/dev/cu.B").feed(b"two")
        wait_until(lambda: len(events) == 3)

    first, closed, second = events
    assert (first.data, first.connection_id) == ("one", 1)
    assert isinstance(closed, spp_capture.SerialClosed)
    assert (closed.path, closed.connection_id) == ("/dev/cu.A", 1)
    assert (second.data, second.path, second.connection_id) == (
        "two",
        "/dev/cu.B",
        2,
    )


def test_sink_attached_through_link(fake_serial, wait_until):
    events = []
    with spp_capture.SerialLink() as link:
        link.relay.attach(events.append)
        link.connect("/dev/cu.A")
        fake_serial.last("/dev/cu.A").feed(b"hello")
        wait_until(lambda: events)

        link.relay.detach()
        fake_serial.last("/dev/cu.A").feed(b"ignored")

    (data,) = events
    assert (data.data, data.connection_id) == ("hello", 1)


@pytest.mark.parametrize(
    "hint",
    [
        spp_capture.EventSink,
        *typing.get_type_hints(spp_capture.SerialListener).values(),
    ],
)
def test_callback_hints_check_without_warnings(hint):
    def accept(value: hint) -> None:
        pass

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        beartype.beartype(accept)
