import queue
import threading
import time

import pytest

from hospital_queue.client import EventGap, QueueClient, QueueView
from hospital_queue.topics import observer_events


def _entry(entry_id, sequence, status="Waiting", department="GEN", minute=0):
    return {
        "entry_id": entry_id,
        "token": f"{department}{sequence:03d}",
        "sequence": sequence,
        "department": department,
        "status": status,
        "registered_at": f"2024-03-04T09:{minute:02d}:00",
        "name": f"p{entry_id}",
    }


def test_view_builds_from_snapshot_and_events():
    view = QueueView()
    assert view.apply({"type": "INITIAL_QUEUE", "seq": 4, "data": [_entry(1, 1), _entry(2, 2, minute=1)]})
    assert view.apply({"type": "NEW_REGISTRATION", "seq": 5, "data": _entry(3, 3, minute=2)})
    assert view.apply({"type": "STATUS_UPDATE", "seq": 6, "data": {"entry_id": 1, "status": "InProgress"}})

    rows = view.rows()
    assert [(r["token"], r["status"], r["position"]) for r in rows] == [
        ("GEN001", "InProgress", None),
        ("GEN002", "Waiting", 0),
        ("GEN003", "Waiting", 1),
    ]
    assert rows[0]["name"] == "p1"
    assert view.last_seq == 6


def test_view_ignores_stale_and_early_events():
    view = QueueView()
    assert not view.apply({"type": "NEW_REGISTRATION", "seq": 1, "data": _entry(1, 1)})
    view.apply({"type": "INITIAL_QUEUE", "seq": 3, "data": [_entry(1, 1)]})
    assert not view.apply({"type": "STATUS_UPDATE", "seq": 3, "data": {"entry_id": 1, "status": "Completed"}})
    assert view.rows()[0]["status"] == "Waiting"


def test_view_detects_gaps():
    view = QueueView()
    view.apply({"type": "INITIAL_QUEUE", "seq": 0, "data": []})
    with pytest.raises(EventGap):
        view.apply({"type": "NEW_REGISTRATION", "seq": 2, "data": _entry(2, 2)})


def test_view_rows_by_department():
    view = QueueView()
    view.apply({"type": "INITIAL_QUEUE", "seq": 0, "data": [_entry(1, 1), _entry(2, 1, department="ENT")]})
    assert [r["token"] for r in view.rows("ENT")] == ["ENT001"]
    assert view.rows("ENT")[0]["position"] == 0


def test_view_rows_do_not_change_the_view():
    view = QueueView()
    view.apply({"type": "INITIAL_QUEUE", "seq": 0, "data": [_entry(1, 1), _entry(2, 2, minute=1)]})
    rows = view.rows()
    rows[0]["status"] = "Completed"
    assert "position" not in view.entries[2]
    assert view.rows()[0]["status"] == "Waiting"


class FakeBroker:
    """Stands in for MqttClient: answers requests and lets tests push events."""

    def __init__(self):
        self.handlers = []
        self.requests = queue.Queue()
        self.published = []

    def add_handler(self, handler):
        self.handlers.append(handler)

    def subscribe(self, topic):
        pass

    def unsubscribe(self, topic):
        pass

    def publish(self, topic, message):
        self.published.append((topic, message))

    def request(self, *, request_topic, response_topic, message, timeout):
        self.requests.put(message)
        return {"type": message["type"] + "d", "observer_id": message.get("observer_id")}

    def push(self, topic, message):
        for h in self.handlers:
            h(topic, message)


def test_watch_resubscribes_when_the_service_dropped_it():
    client = QueueClient(mqtt_host="127.0.0.1", mqtt_port=1883, namespace="test/v1", name="screen")
    broker = FakeBroker()
    client.mqtt = broker
    topic = observer_events("screen-1", "test/v1")
    seen = []
    stop = threading.Event()

    watcher = threading.Thread(
        target=client.watch,
        args=(lambda event, view: seen.append((event["type"], view.last_seq)),),
        kwargs={"observer_id": "screen-1", "heartbeat_every": 60, "stop": stop},
        daemon=True,
    )
    watcher.start()
    try:
        assert broker.requests.get(timeout=2.0)["type"] == "subscribe"
        broker.push(topic, {"type": "INITIAL_QUEUE", "seq": 3, "data": [_entry(1, 1)]})
        broker.push(topic, {"type": "RESUBSCRIBE", "observer_id": "screen-1"})
        assert broker.requests.get(timeout=2.0) == {"type": "subscribe", "observer_id": "screen-1"}

        broker.push(topic, {"type": "INITIAL_QUEUE", "seq": 7, "data": [_entry(1, 1), _entry(2, 2)]})
        deadline = time.time() + 2.0
        while len(seen) < 2 and time.time() < deadline:
            time.sleep(0.05)
    finally:
        stop.set()
        watcher.join(timeout=2.0)

    assert seen == [("INITIAL_QUEUE", 3), ("INITIAL_QUEUE", 7)]
    assert broker.requests.get(timeout=1.0)["type"] == "unsubscribe"
