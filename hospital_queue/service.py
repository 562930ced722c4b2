from __future__ import annotations

# MQTT front of the queue system.
#
# IMPORTANT: the business rules live in `QueueEngine` / `EventBroadcaster`.
# This module only:
# 1) decodes request messages and calls the engine
# 2) wraps results / errors into reply messages
# 3) wires observer sessions to per-observer event topics
# 4) runs a background loop that drops observers which stopped heartbeating

import argparse
import logging
import re
import threading
import time
from typing import Any, Callable, TYPE_CHECKING

from .broadcaster import EventBroadcaster
from .config import Settings, configure_logging
from .engine import QueueEngine
from .errors import ErrorResponse, QueueError, ValidationError
from .models import EventType, PatientInput
from .topics import observer_events, queue_requests

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

# Observer ids end up inside topic names.
_OBSERVER_ID = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


class MqttObserverTransport:
    """Delivers one observer's events to its own topic."""

    def __init__(self, mqtt: MqttClient, topic: str) -> None:
        self.mqtt = mqtt
        self.topic = topic

    def send(self, message: dict[str, Any]) -> None:
        self.mqtt.publish(self.topic, message)


class MqttQueueService:
    """MQTT adapter around the QueueEngine business logic."""

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        engine: QueueEngine,
        namespace: str,
        observer_idle_seconds: float = 120.0,
        observer_backlog: int = 256,
    ) -> None:
        self.mqtt = mqtt
        self.engine = engine
        self.namespace = namespace
        self.observer_idle_seconds = observer_idle_seconds
        self.broadcaster = EventBroadcaster(engine, backlog=observer_backlog)

        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "register": self._on_register,
            "lookup_patient": self._on_lookup_patient,
            "get_queue": self._on_get_queue,
            "update_status": self._on_update_status,
            "get_history": self._on_get_history,
            "get_stats": self._on_get_stats,
            "subscribe": self._on_subscribe,
            "unsubscribe": self._on_unsubscribe,
        }

        # Background reaper thread control.
        self._stop_event = threading.Event()
        self._reaper_thread: threading.Thread | None = None

    def start(self, *, reap_every: float = 5.0) -> None:
        self.mqtt.subscribe(queue_requests(self.namespace))
        self.mqtt.add_handler(self._handle_message)

        self._reaper_thread = threading.Thread(
            target=self._reaper_loop,
            args=(reap_every,),
            name="observer-reaper",
            daemon=True,
        )
        self._reaper_thread.start()

    def stop(self) -> None:
        """Stop background threads and observer sessions. Call before disconnecting MQTT."""
        self._stop_event.set()
        t = self._reaper_thread
        if t and t.is_alive():
            t.join(timeout=1.0)
        self.broadcaster.close()

    def _reaper_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            self.broadcaster.reap_idle(self.observer_idle_seconds)
            self._stop_event.wait(interval)

    def _reply(self, reply_to: str, corr_id: str | None, message: dict[str, Any]) -> None:
        msg = dict(message)
        if corr_id is not None:
            msg["corr_id"] = corr_id
        try:
            self.mqtt.publish(reply_to, msg)
        except QueueError as e:
            # The requester is gone; the operation itself already happened.
            logger.warning("reply to %s lost: %s", reply_to, e)

    def _notify_resubscribe(self, observer_id: str) -> None:
        logger.info("heartbeat from dropped observer %s, asking it to re-subscribe", observer_id)
        notice = {"type": EventType.RESUBSCRIBE.value, "observer_id": observer_id}
        try:
            self.mqtt.publish(observer_events(observer_id, self.namespace), notice)
        except QueueError as e:
            logger.warning("re-subscribe notice to %s lost: %s", observer_id, e)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        mtype = msg.get("type")

        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None

        # Heartbeats are publish-only: they keep an observer session alive, or
        # tell an observer whose session was dropped to subscribe again.
        if mtype == "heartbeat":
            observer_id = msg.get("observer_id")
            if isinstance(observer_id, str) and _OBSERVER_ID.match(observer_id):
                if not self.broadcaster.touch(observer_id):
                    self._notify_resubscribe(observer_id)
            return

        if not reply_to:
            return

        handler = self._handlers.get(str(mtype))
        if handler is None:
            self._reply(reply_to, corr_id, ErrorResponse("bad_request", f"unknown type {mtype!r}").to_message())
            return

        try:
            response = handler(msg)
        except QueueError as e:
            logger.info("%s rejected: %s (%s)", mtype, e.code, e)
            response = e.to_response().to_message()
        except Exception:
            logger.exception("%s failed", mtype)
            response = ErrorResponse("internal_error", "unexpected server error").to_message()
        self._reply(reply_to, corr_id, response)

    # -------------------- request handlers --------------------

    def _on_register(self, msg: dict[str, Any]) -> dict[str, Any]:
        patient = PatientInput.from_message(msg)
        result = self.engine.register(patient, msg.get("department"), msg.get("symptoms") or "")
        return {"type": "registered", **result.to_dict()}

    def _on_lookup_patient(self, msg: dict[str, Any]) -> dict[str, Any]:
        patient = self.engine.find_patient(msg.get("contact"))
        return {"type": "patient", "patient": patient.to_dict() if patient is not None else None}

    def _on_get_queue(self, msg: dict[str, Any]) -> dict[str, Any]:
        department = msg.get("department") or None
        rows = self.engine.snapshot(department)
        return {"type": "queue", "department": department, "entries": [r.to_dict() for r in rows]}

    def _on_update_status(self, msg: dict[str, Any]) -> dict[str, Any]:
        if msg.get("status") in (None, ""):
            raise ValidationError("status required")
        row = self.engine.advance(msg.get("entry_id"), msg.get("status"))
        return {"type": "status_updated", "entry": row.to_dict()}

    def _on_get_history(self, msg: dict[str, Any]) -> dict[str, Any]:
        entries = self.engine.history(msg.get("patient_id"))
        return {"type": "history", "entries": [e.to_dict() for e in entries]}

    def _on_get_stats(self, msg: dict[str, Any]) -> dict[str, Any]:
        return {"type": "stats", "stats": self.engine.statistics().to_dict()}

    def _on_subscribe(self, msg: dict[str, Any]) -> dict[str, Any]:
        observer_id = _observer_id(msg)
        topic = observer_events(observer_id, self.namespace)
        snapshot, session = self.broadcaster.subscribe(
            MqttObserverTransport(self.mqtt, topic), observer_id=observer_id
        )
        return {
            "type": "subscribed",
            "observer_id": session.observer_id,
            "events_topic": topic,
            "entries": len(snapshot),
        }

    def _on_unsubscribe(self, msg: dict[str, Any]) -> dict[str, Any]:
        observer_id = _observer_id(msg)
        return {"type": "unsubscribed", "observer_id": observer_id, "removed": self.broadcaster.unsubscribe(observer_id)}


def _observer_id(msg: dict[str, Any]) -> str:
    observer_id = msg.get("observer_id")
    if not isinstance(observer_id, str) or not _OBSERVER_ID.match(observer_id):
        raise ValidationError("observer_id must be 1-64 characters of [A-Za-z0-9_.-]")
    return observer_id


def run_service(settings: Settings, *, reap_every: float = 5.0) -> None:
    """Start the queue service and block until Ctrl+C."""
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient
    from .store import RecordStore

    store = RecordStore.from_url(settings.database_url)
    store.create_all()
    engine = QueueEngine(store)

    mqtt_client = MqttClient(client_id=f"queue-service-{int(time.time())}", host=settings.mqtt_host, port=settings.mqtt_port)
    mqtt_client.start()

    service = MqttQueueService(
        mqtt=mqtt_client,
        engine=engine,
        namespace=settings.namespace,
        observer_idle_seconds=settings.observer_idle_seconds,
        observer_backlog=settings.observer_backlog,
    )
    service.start(reap_every=reap_every)

    print(f"[service] connected to MQTT {settings.mqtt_host}:{settings.mqtt_port}, namespace={settings.namespace}")
    print(f"[service] database: {settings.database_url}")
    print(f"[service] requests on {queue_requests(settings.namespace)} (Ctrl+C to stop)")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n[service] shutting down")
    finally:
        service.stop()
        mqtt_client.stop()
        store.close()


def add_service_args(parser: argparse.ArgumentParser, defaults: Settings) -> None:
    parser.add_argument("--mqtt-host", default=defaults.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=defaults.mqtt_port)
    parser.add_argument("--namespace", default=defaults.namespace)
    parser.add_argument("--database-url", default=defaults.database_url)
    parser.add_argument(
        "--observer-idle-seconds",
        type=float,
        default=defaults.observer_idle_seconds,
        help="drop observers that sent no heartbeat for this long",
    )
    parser.add_argument("--observer-backlog", type=int, default=defaults.observer_backlog)
    parser.add_argument("--log-level", default=defaults.log_level)


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace.rstrip("/"),
        database_url=args.database_url,
        observer_idle_seconds=args.observer_idle_seconds,
        observer_backlog=args.observer_backlog,
        log_level=args.log_level.upper(),
    )
    settings.validate()
    return settings


def main() -> None:
    parser = argparse.ArgumentParser(description="Hospital queue service (MQTT)")
    add_service_args(parser, Settings.from_env())
    settings = settings_from_args(parser.parse_args())
    configure_logging(settings.log_level)
    run_service(settings)


if __name__ == "__main__":
    main()
