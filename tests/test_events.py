"""Tests for event wire forms and the subscriber hub."""

import json
import threading

from bufferflow_lib.events import CollectingSink, Hub
from bufferflow_lib.models import CommandComplete, LineData, PortError, WipedQueue, to_json


def test_wire_forms() -> None:
    complete = CommandComplete("Complete", "42", "COM3", buf_size=12, data="G28\n")

    assert json.loads(to_json(complete)) == {"Cmd": "Complete", "Id": "42", "P": "COM3"}
    assert json.loads(to_json(LineData("COM3", "ok\n"))) == {"P": "COM3", "D": "ok\n"}
    assert json.loads(to_json(WipedQueue(2, "COM3"))) == {"Cmd": "WipedQueue", "QCnt": 2, "Port": "COM3"}
    assert to_json(PortError("Error writing to COM3 boom")) == "Error writing to COM3 boom"


def test_hub_fans_out_to_every_subscriber() -> None:
    hub = Hub()
    first = hub.subscribe()
    second = hub.subscribe()

    hub.publish(LineData("COM3", "start\n"))

    assert first.get_nowait() == second.get_nowait() == '{"P": "COM3", "D": "start\\n"}'
    assert hub.subscriber_count() == 2


def test_hub_unsubscribe_stops_delivery() -> None:
    hub = Hub()
    q = hub.subscribe()

    hub.unsubscribe(q)
    hub.unsubscribe(q)
    hub.publish(PortError("gone"))

    assert q.empty()
    assert hub.subscriber_count() == 0


def test_hub_drops_oldest_when_subscriber_is_full() -> None:
    hub = Hub(maxsize=3)
    q = hub.subscribe()

    for i in range(5):
        hub.publish(PortError(f"msg {i}"))

    assert [q.get_nowait() for _ in range(3)] == ["msg 2", "msg 3", "msg 4"]


def test_collecting_sink_wait_for_across_threads() -> None:
    sink = CollectingSink()

    def produce() -> None:
        for i in range(3):
            sink.publish(CommandComplete("Complete", str(i), "COM3"))

    threading.Thread(target=produce, daemon=True).start()

    assert sink.wait_for(CommandComplete, count=3, timeout=2.0)
    assert [e.id for e in sink.of_type(CommandComplete)] == ["0", "1", "2"]
    assert sink.wait_for(WipedQueue, timeout=0.1) is False
