"""Tests for the background status poller."""

import time

from bufferflow_lib.events import CollectingSink
from bufferflow_lib.models import PortError
from bufferflow_lib.status_poller import StatusPoller
from fakes.fake_port import FakePort


def test_poller_writes_query_each_interval() -> None:
    port = FakePort()
    poller = StatusPoller(port.write_direct, b"M114\n", 0.05, port.name, CollectingSink())

    poller.start()
    time.sleep(0.4)
    poller.stop()

    assert len(port.written) >= 3
    assert set(port.written) == {b"M114\n"}
    assert not poller.is_running()


def test_stop_halts_writes() -> None:
    port = FakePort()
    poller = StatusPoller(port.write_direct, b"M114\n", 0.05, port.name, CollectingSink())

    poller.start()
    time.sleep(0.2)
    poller.stop()
    count = len(port.written)
    time.sleep(0.2)

    assert len(port.written) == count


def test_write_failure_stops_poller_and_reports() -> None:
    port = FakePort("/dev/ttyACM0")
    port.fail_writes = True
    sink = CollectingSink()
    poller = StatusPoller(port.write_direct, b"M114\n", 0.05, port.name, sink)

    poller.start()
    assert sink.wait_for(PortError, timeout=2.0)
    time.sleep(0.2)

    assert not poller.is_running()
    (error,) = sink.of_type(PortError)
    assert error.to_wire() == (
        "Error writing to /dev/ttyACM0 Failed to write to port: device disconnected"
    )
    poller.stop()


def test_start_is_idempotent() -> None:
    port = FakePort()
    poller = StatusPoller(port.write_direct, b"M114\n", 10.0, port.name, CollectingSink())

    poller.start()
    poller.start()

    assert poller.is_running()
    poller.stop()
    assert not poller.is_running()
