"""Tests for the Repetier buffer flow: blocking, classification, directives."""

import threading
import time
from typing import List

import pytest

from bufferflow_lib.bufferflow import Bufferflow
from bufferflow_lib.events import CollectingSink
from bufferflow_lib.models import BlockResult, CommandComplete, LineData, PortError, WipedQueue
from bufferflow_lib.repetier import RepetierBufferflow
from fakes.fake_port import FakePort


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def port() -> FakePort:
    return FakePort("/dev/ttyUSB0")


@pytest.fixture
def flow(sink, port):
    """Repetier buffer flow without the background poller."""
    bf = RepetierBufferflow(port.name, sink, port=port, start_poller=False)
    yield bf
    bf.close()


def _block_in_thread(bf: Bufferflow, cmd: str, id: str) -> tuple:
    results: List[BlockResult] = []
    thread = threading.Thread(target=lambda: results.append(bf.block_until_ready(cmd, id)), daemon=True)
    thread.start()
    return thread, results


# =============================================================================
# Flow control
# =============================================================================

def test_block_until_ready_returns_immediately_with_room(flow) -> None:
    result = flow.block_until_ready("G28\n", "1")

    assert result == BlockResult(True, True, "")
    assert flow.queue.total_bytes() == 4
    assert flow.get_paused() is False


def test_full_buffer_blocks_next_command_until_ok(sink, port) -> None:
    """Capacity 10: 4+4+4 bytes pauses, the fourth call waits for an ok."""
    bf = RepetierBufferflow(port.name, sink, port=port, start_poller=False, buffer_max=10)

    assert bf.block_until_ready("G1a", "a").proceed
    assert bf.block_until_ready("G1b", "b").proceed
    assert bf.queue.total_bytes() == 6
    assert bf.get_paused() is False

    # Reaching capacity exactly still pauses
    assert bf.block_until_ready("G1cd", "c").proceed
    assert bf.queue.total_bytes() == 10
    assert bf.get_paused() is True

    thread, results = _block_in_thread(bf, "G1d", "d")
    time.sleep(0.3)
    assert thread.is_alive(), "Sender should block while the buffer is full"

    bf.on_incoming_data("ok\n")
    thread.join(timeout=2.0)

    assert results == [BlockResult(True, True, "")]
    completes = sink.of_type(CommandComplete)
    assert [c.id for c in completes] == ["a"]
    assert completes[0].buf_size == 7
    # d was queued after the release and refilled the buffer
    assert bf.queue.total_bytes() == 10
    assert bf.get_paused() is True


def test_capacity_ten_with_four_byte_commands(sink) -> None:
    bf = RepetierBufferflow("COM3", sink, start_poller=False, buffer_max=10)

    for id in ("a", "b"):
        assert bf.block_until_ready("G1X\n", id).proceed
    assert bf.queue.total_bytes() == 8
    assert bf.get_paused() is False

    assert bf.block_until_ready("G1Y\n", "c").proceed
    assert bf.queue.total_bytes() == 12
    assert bf.get_paused() is True

    thread, results = _block_in_thread(bf, "G1Z\n", "d")
    time.sleep(0.3)
    assert thread.is_alive()

    bf.on_incoming_data("ok\n")
    thread.join(timeout=2.0)

    assert results == [BlockResult(True, True, "")]
    assert sink.of_type(CommandComplete)[0].id == "a"
    assert sink.of_type(CommandComplete)[0].buf_size == 8


def test_two_oks_in_one_chunk_complete_both_in_order(flow, sink) -> None:
    flow.block_until_ready("G28\n", "first")
    flow.block_until_ready("G1X5\n", "second")

    flow.on_incoming_data("ok\nok\n")

    completes = sink.of_type(CommandComplete)
    assert [(c.cmd, c.id, c.data) for c in completes] == [
        ("Complete", "first", "G28\n"),
        ("Complete", "second", "G1X5\n"),
    ]
    assert flow.queue.count_of_items() == 0


def test_error_response_publishes_error_event(flow, sink) -> None:
    flow.block_until_ready("G999\n", "bad")

    flow.on_incoming_data("error:Unknown command: G999\n")

    (event,) = sink.of_type(CommandComplete)
    assert event.cmd == "Error"
    assert event.id == "bad"
    assert event.port == "/dev/ttyUSB0"
    assert event.to_wire() == {"Cmd": "Error", "Id": "bad", "P": "/dev/ttyUSB0"}


def test_ok_with_empty_queue_is_logged_not_raised(flow, sink) -> None:
    flow.on_incoming_data("ok\nok C: X:0.00 Y:0.00 Z:0.000 E:0.0000\n")

    assert sink.of_type(CommandComplete) == []
    lines = sink.of_type(LineData)
    assert [l.data for l in lines] == ["ok\n", "ok C: X:0.00 Y:0.00 Z:0.000 E:0.0000\n"]


def test_status_report_is_not_an_acknowledgement(flow, sink) -> None:
    flow.block_until_ready("G1X1\n", "move")

    flow.on_incoming_data("ok C: X:1.00 Y:0.00 Z:0.000 E:0.0000\n")

    assert sink.of_type(CommandComplete) == []
    assert flow.queue.count_of_items() == 1
    assert flow.snapshot.last_status.startswith("ok C: X:1.00")


def test_every_status_line_is_forwarded(flow, sink) -> None:
    status = "ok X:0.00 Y:0.00 Z:0.000 E:0.0000\n"

    flow.on_incoming_data(status * 3)

    assert [l.data for l in sink.of_type(LineData)] == [status] * 3


def test_partial_lines_wait_for_terminator(flow, sink) -> None:
    flow.block_until_ready("G28\n", "1")

    flow.on_incoming_data("o")
    assert sink.snapshot() == []

    flow.on_incoming_data("k\r")
    assert sink.snapshot() == []

    flow.on_incoming_data("\n")
    assert sink.of_type(CommandComplete)[0].id == "1"


def test_chunked_input_produces_same_events(sink, port) -> None:
    stream = "ok\nok C: X:1.00 Y:2.00 Z:0.000 E:0.0000\nerror:bad\nok\n"

    def run(chunks: List[str]) -> list:
        events = CollectingSink()
        bf = RepetierBufferflow(port.name, events, start_poller=False)
        for i in range(3):
            bf.block_until_ready(f"G1X{i}\n", str(i))
        for chunk in chunks:
            bf.on_incoming_data(chunk)
        return [e.to_wire() for e in events.snapshot()]

    whole = run([stream])
    for size in (1, 2, 5, 11):
        assert run([stream[i:i + size] for i in range(0, len(stream), size)]) == whole


def test_classification_error_does_not_stop_remaining_lines(flow, sink, monkeypatch) -> None:
    flow.block_until_ready("G28\n", "1")
    original = flow._classify_line
    calls = []

    def flaky(line: str) -> None:
        calls.append(line)
        if line == "garbage":
            raise ValueError("boom")
        original(line)

    monkeypatch.setattr(flow, "_classify_line", flaky)
    flow.on_incoming_data("garbage\nok\n")

    assert calls == ["garbage", "ok"]
    assert sink.of_type(CommandComplete)[0].id == "1"
    assert [l.data for l in sink.of_type(LineData)] == ["garbage\n", "ok\n"]


# =============================================================================
# Firmware banner and wipe
# =============================================================================

def test_banner_wipes_queue_and_cancels_blocked_sender(sink, port) -> None:
    bf = RepetierBufferflow(port.name, sink, port=port, start_poller=False, buffer_max=8)
    bf.block_until_ready("G1X100\n", "a")
    bf.block_until_ready("G1Y100\n", "b")
    assert bf.get_paused() is True

    thread, results = _block_in_thread(bf, "G1Z1\n", "c")
    time.sleep(0.2)
    assert thread.is_alive()

    bf.on_incoming_data("start\nFIRMWARE_NAME:Repetier_1.0.4\n")
    thread.join(timeout=2.0)

    assert results == [BlockResult(False, False, "")]
    assert bf.queue.count_of_items() == 0
    assert bf.get_paused() is False
    assert bf.snapshot.firmware_version == "FIRMWARE_NAME:Repetier_1.0.4"
    assert len(sink.of_type(WipedQueue)) == 1


def test_release_lock_cancels_blocked_sender(sink) -> None:
    bf = RepetierBufferflow("COM1", sink, start_poller=False, buffer_max=4)
    bf.block_until_ready("G28\n", "a")

    thread, results = _block_in_thread(bf, "G1X1\n", "b")
    time.sleep(0.2)
    bf.release_lock()
    thread.join(timeout=2.0)

    assert results == [BlockResult(False, False, "")]
    assert bf.queue.total_bytes() == 0


def test_wipe_token_drains_staged_commands(flow, sink, port) -> None:
    port.stage("G1X1\n", "1")
    port.stage("G1X2\n", "2")
    flow.block_until_ready("G28\n", "0")

    cmds = flow.break_apart_commands("%")

    assert cmds == []
    assert port.staged == []
    assert flow.queue.count_of_items() == 0
    (wiped,) = sink.of_type(WipedQueue)
    assert wiped.to_wire() == {"Cmd": "WipedQueue", "QCnt": 0, "Port": "/dev/ttyUSB0"}


def test_wipe_without_port_reports_zero(sink) -> None:
    bf = RepetierBufferflow("COM7", sink, start_poller=False)

    bf.local_buffer_wipe()

    assert sink.of_type(WipedQueue)[0].qcnt == 0


# =============================================================================
# Preprocessing
# =============================================================================

def test_break_apart_strips_comments_and_consumes_wipe(flow) -> None:
    assert flow.break_apart_commands("G1 X1\n;comment\nM114\n%") == ["G1X1\n", "M114\n"]


def test_break_apart_drops_empty_items(flow) -> None:
    assert flow.break_apart_commands("\n  \n(just a note)\nG28 ; home\n") == ["G28\n"]


def test_init_and_status_directives_replay_snapshot(flow, sink) -> None:
    flow.on_incoming_data("FIRMWARE_NAME:Repetier_1.0.4\nok C: X:3.00 Y:0.00 Z:0.000 E:0.0000\n")
    sink.clear()

    assert flow.break_apart_commands("*init*\n*status*") == []

    assert [l.data for l in sink.of_type(LineData)] == [
        "FIRMWARE_NAME:Repetier_1.0.4\n",
        "ok C: X:3.00 Y:0.00 Z:0.000 E:0.0000\n",
    ]


@pytest.mark.parametrize(
    "cmd, skip, pause, unpause, wipe",
    [
        ("!", True, True, False, False),
        ("~", True, False, True, False),
        ("\x18", True, False, False, True),
        ("G1 X1", False, False, False, False),
        ("M114", False, False, False, False),
    ],
)
def test_directive_predicates(flow, cmd, skip, pause, unpause, wipe) -> None:
    assert flow.see_if_specific_commands_should_skip_buffer(cmd) is skip
    assert flow.see_if_specific_commands_should_pause_buffer(cmd) is pause
    assert flow.see_if_specific_commands_should_unpause_buffer(cmd) is unpause
    assert flow.see_if_specific_commands_should_wipe_buffer(cmd) is wipe
    assert flow.see_if_specific_commands_return_no_response(cmd) is False


# =============================================================================
# Pause / capabilities
# =============================================================================

def test_pause_and_unpause(flow) -> None:
    flow.pause()
    assert flow.get_paused() is True

    thread, results = _block_in_thread(flow, "G28\n", "1")
    time.sleep(0.2)
    assert thread.is_alive()

    flow.unpause()
    thread.join(timeout=2.0)

    assert results == [BlockResult(True, True, "")]


def test_manual_paused_flag_alone_does_not_block(flow) -> None:
    flow.set_manual_paused(True)

    assert flow.get_manual_paused() is True
    assert flow.block_until_ready("G28\n", "1").proceed


def test_manual_pause_survives_ok_for_in_flight_command(flow, sink) -> None:
    flow.block_until_ready("G1X1\n", "1")
    flow.set_manual_paused(True)
    flow.pause()

    thread, results = _block_in_thread(flow, "G1X2\n", "2")
    flow.on_incoming_data("ok\n")
    time.sleep(0.2)

    assert sink.wait_for(CommandComplete, timeout=1.0)
    assert flow.queue.count_of_items() == 0
    assert flow.get_paused() is True
    assert thread.is_alive()
    assert results == []

    flow.unpause()
    thread.join(timeout=2.0)

    assert results == [BlockResult(True, True, "")]
    assert flow.get_manual_paused() is False


def test_wipe_ends_manual_pause(flow) -> None:
    flow.set_manual_paused(True)
    flow.pause()

    flow.local_buffer_wipe()

    assert flow.get_manual_paused() is False
    assert flow.get_paused() is False


def test_clear_out_semaphore_drops_stale_release(flow) -> None:
    flow.unpause()

    assert flow.clear_out_semaphore() == 1
    assert flow.clear_out_semaphore() == 0


def test_capabilities(flow) -> None:
    assert flow.is_buffer_globally_sending_back_incoming_data() is True
    assert flow.rewrite_serial_data("G28\n", "1") == ""
    assert flow.buffer_max == 127


def test_invalid_buffer_max(sink) -> None:
    with pytest.raises(ValueError):
        RepetierBufferflow("COM1", sink, buffer_max=0)


# =============================================================================
# Status poller wiring
# =============================================================================

def test_poller_writes_status_query(sink, port, monkeypatch) -> None:
    monkeypatch.setattr(RepetierBufferflow, "status_interval_s", 0.05)
    bf = RepetierBufferflow(port.name, sink, port=port)

    try:
        assert port.wait_for_write(timeout=2.0)
        assert port.written[0] == b"M114\n"
        assert bf.queue.count_of_items() == 0
    finally:
        bf.close()


def test_poller_failure_is_reported(sink, port, monkeypatch) -> None:
    monkeypatch.setattr(RepetierBufferflow, "status_interval_s", 0.05)
    port.fail_writes = True
    bf = RepetierBufferflow(port.name, sink, port=port)

    try:
        assert sink.wait_for(PortError, timeout=2.0)
        (error,) = sink.of_type(PortError)
        assert error.message.startswith("Error writing to /dev/ttyUSB0")
    finally:
        bf.close()
