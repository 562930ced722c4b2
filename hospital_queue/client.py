from __future__ import annotations

# Client side of the MQTT protocol.
#
# Used by registration desks, doctor screens and dashboards:
# - `QueueClient` wraps the request/response calls
# - `QueueView` keeps a local copy of today's queue from the event stream
# - `QueueClient.watch()` subscribes, feeds a view and heartbeats until stopped
#
# Event stream rules an observer relies on:
# - the first message is INITIAL_QUEUE, carrying the seq of the last change it
#   already contains
# - every later event has seq == previous + 1; a gap means events were lost
#   and the view must be rebuilt from a fresh snapshot (re-subscribe)
# - a RESUBSCRIBE notice means the service dropped the session; same remedy

import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable

from .errors import QueueError, error_from_message
from .models import EventType, Status
from .mqtt_client import MqttClient
from .topics import observer_events, queue_requests, queue_responses

logger = logging.getLogger(__name__)


class EventGap(Exception):
    """Events were lost between two deliveries; the view is no longer trustworthy."""


class QueueView:
    """Local, event-driven copy of today's queue."""

    def __init__(self) -> None:
        self.entries: dict[int, dict[str, Any]] = {}
        self.last_seq: int | None = None

    def apply(self, event: dict[str, Any]) -> bool:
        """Apply one event; False if it was stale or arrived before the snapshot.

        Raises `EventGap` when events were missed and a fresh snapshot is needed.
        """
        etype = event.get("type")
        seq = event.get("seq")
        if not isinstance(seq, int):
            return False

        if etype == EventType.INITIAL_QUEUE.value:
            self.entries = {int(e["entry_id"]): dict(e) for e in event.get("data") or []}
            self.last_seq = seq
            return True

        # Before the snapshot, or already contained in it.
        if self.last_seq is None or seq <= self.last_seq:
            return False
        if seq != self.last_seq + 1:
            raise EventGap(f"expected seq {self.last_seq + 1}, got {seq}")

        data = event.get("data") or {}
        if etype in (EventType.NEW_REGISTRATION.value, EventType.STATUS_UPDATE.value):
            entry_id = int(data["entry_id"])
            merged = dict(self.entries.get(entry_id, {}))
            merged.update(data)
            self.entries[entry_id] = merged
        self.last_seq = seq
        return True

    def rows(self, department: str | None = None) -> list[dict[str, Any]]:
        """Entries in registration order, with positions recomputed locally."""
        rows = [
            dict(e) for e in self.entries.values() if department is None or e.get("department") == department
        ]
        rows.sort(key=lambda e: (str(e.get("registered_at")), int(e["entry_id"])))

        ahead: dict[str, int] = {}
        for e in sorted(rows, key=lambda e: int(e.get("sequence", 0))):
            if e.get("status") == Status.WAITING.value:
                dept = str(e.get("department"))
                e["position"] = ahead.get(dept, 0)
                ahead[dept] = ahead.get(dept, 0) + 1
            else:
                e["position"] = None
        return rows


class QueueClient:
    def __init__(
        self,
        *,
        mqtt_host: str,
        mqtt_port: int,
        namespace: str,
        name: str = "client",
        timeout: float = 5.0,
    ) -> None:
        # Unique client id so many desks/screens can run concurrently.
        self.client_id = f"{name}-{uuid.uuid4().hex[:8]}"
        self.namespace = namespace
        self.timeout = timeout
        self.mqtt = MqttClient(client_id=self.client_id, host=mqtt_host, port=mqtt_port)
        self.reply_topic = queue_responses(self.client_id, namespace)

    def __enter__(self) -> "QueueClient":
        self.mqtt.start()
        self.mqtt.subscribe(self.reply_topic)
        return self

    def __exit__(self, *exc: Any) -> None:
        self.mqtt.stop()

    def call(self, message: dict[str, Any]) -> dict[str, Any]:
        """Send one request; error replies are raised as `QueueError` subclasses."""
        resp = self.mqtt.request(
            request_topic=queue_requests(self.namespace),
            response_topic=self.reply_topic,
            message=message,
            timeout=self.timeout,
        )
        if resp.get("type") == "error":
            raise error_from_message(resp)
        return resp

    # -------------------- requests --------------------

    def register(
        self, *, name: str, age: int, gender: str, contact: str, department: str, symptoms: str = ""
    ) -> dict[str, Any]:
        return self.call(
            {
                "type": "register",
                "name": name,
                "age": age,
                "gender": gender,
                "contact": contact,
                "department": department,
                "symptoms": symptoms,
            }
        )

    def lookup_patient(self, contact: str) -> dict[str, Any] | None:
        return self.call({"type": "lookup_patient", "contact": contact}).get("patient")

    def queue(self, department: str | None = None) -> list[dict[str, Any]]:
        return self.call({"type": "get_queue", "department": department}).get("entries", [])

    def update_status(self, entry_id: int, status: str) -> dict[str, Any]:
        return self.call({"type": "update_status", "entry_id": entry_id, "status": status})["entry"]

    def history(self, patient_id: int) -> list[dict[str, Any]]:
        return self.call({"type": "get_history", "patient_id": patient_id}).get("entries", [])

    def stats(self) -> dict[str, Any]:
        return self.call({"type": "get_stats"})["stats"]

    # -------------------- live updates --------------------

    def watch(
        self,
        on_event: Callable[[dict[str, Any], QueueView], None],
        *,
        observer_id: str | None = None,
        heartbeat_every: float = 10.0,
        stop: threading.Event | None = None,
    ) -> None:
        """Follow the live queue until `stop` is set (or Ctrl+C)."""
        observer_id = observer_id or self.client_id
        events_topic = observer_events(observer_id, self.namespace)
        stop = stop or threading.Event()
        view = QueueView()

        inbox: "queue.Queue[dict[str, Any]]" = queue.Queue()

        def _on_message(topic: str, msg: dict[str, Any]) -> None:
            if topic == events_topic:
                inbox.put(msg)

        self.mqtt.add_handler(_on_message)
        # Listen before asking, so INITIAL_QUEUE cannot arrive unheard.
        self.mqtt.subscribe(events_topic)
        self.call({"type": "subscribe", "observer_id": observer_id})

        last_hb = time.time()
        try:
            while not stop.is_set():
                try:
                    msg = inbox.get(timeout=0.5)
                except queue.Empty:
                    msg = None

                if msg is not None and msg.get("type") == EventType.RESUBSCRIBE.value:
                    logger.warning("observer %s was dropped by the service, re-subscribing", observer_id)
                    view = QueueView()
                    self.call({"type": "subscribe", "observer_id": observer_id})
                elif msg is not None:
                    try:
                        if view.apply(msg):
                            on_event(msg, view)
                    except EventGap as e:
                        logger.warning("%s, re-subscribing for a fresh snapshot", e)
                        view = QueueView()
                        self.call({"type": "subscribe", "observer_id": observer_id})

                now = time.time()
                if now - last_hb >= heartbeat_every:
                    self.mqtt.publish(
                        queue_requests(self.namespace), {"type": "heartbeat", "observer_id": observer_id}
                    )
                    last_hb = now
        finally:
            self.mqtt.unsubscribe(events_topic)
            try:
                self.call({"type": "unsubscribe", "observer_id": observer_id})
            except (TimeoutError, QueueError) as e:
                logger.debug("unsubscribe of %s not confirmed: %s", observer_id, e)
