from __future__ import annotations

# Event fan-out.
#
# The broadcaster registers itself as an engine listener, so `publish()` runs
# while the engine lock is held and events arrive in commit order.
# `subscribe()` takes the same lock while it captures the snapshot and activates
# the session: no change can slip in between the two, so every observer sees
# each change exactly once from its snapshot onwards.
#
# The session set has its own small lock. `publish()` iterates over a copy, so
# sessions can be removed (e.g. by a failing sender thread) at any time.

import logging
import threading
import time

from .engine import QueueEngine
from .models import ChangeEvent, EventType, QueueRow
from .session import ObserverSession, Transport

logger = logging.getLogger(__name__)


class EventBroadcaster:
    def __init__(self, engine: QueueEngine, *, backlog: int = 256) -> None:
        self.engine = engine
        self.backlog = backlog
        self._sessions: dict[str, ObserverSession] = {}
        self._lock = threading.Lock()
        engine.add_listener(self.publish)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def sessions(self) -> list[ObserverSession]:
        with self._lock:
            return list(self._sessions.values())

    def get(self, observer_id: str) -> ObserverSession | None:
        with self._lock:
            return self._sessions.get(observer_id)

    def subscribe(
        self, transport: Transport, *, observer_id: str | None = None
    ) -> tuple[list[QueueRow], ObserverSession]:
        """Attach a viewer: it first receives INITIAL_QUEUE, then live events.

        Re-using an `observer_id` replaces the previous session (reconnect).
        """
        session = ObserverSession(
            transport, observer_id=observer_id, backlog=self.backlog, on_failure=self._on_delivery_failure
        )

        with self.engine.lock:
            snapshot = self.engine.snapshot()
            initial = ChangeEvent(
                type=EventType.INITIAL_QUEUE,
                seq=self.engine.last_seq,
                ts=self.engine.clock.now(),
                data=[r.to_dict() for r in snapshot],
            )
            session.offer(initial.to_message())
            with self._lock:
                previous = self._sessions.get(session.observer_id)
                self._sessions[session.observer_id] = session

        if previous is not None:
            previous.close()
            logger.info("observer %s re-subscribed, old session replaced", session.observer_id)
        session.start()
        logger.info("observer %s subscribed (%d entries in snapshot)", session.observer_id, len(snapshot))
        return snapshot, session

    def unsubscribe(self, handle: ObserverSession | str) -> bool:
        """Detach a viewer. Returns False if it was not (or no longer) attached."""
        observer_id = handle if isinstance(handle, str) else handle.observer_id
        with self._lock:
            session = self._sessions.get(observer_id)
            if session is None or (not isinstance(handle, str) and session is not handle):
                return False
            del self._sessions[observer_id]
        session.close()
        logger.info("observer %s unsubscribed", observer_id)
        return True

    def publish(self, event: ChangeEvent) -> None:
        """Hand one change to every session without waiting on any of them."""
        message = event.to_message()
        for session in self.sessions():
            if not session.offer(message):
                logger.warning(
                    "observer %s backlog full at seq=%d, dropping it", session.observer_id, event.seq
                )
                self.unsubscribe(session)

    def touch(self, observer_id: str) -> bool:
        session = self.get(observer_id)
        if session is None:
            return False
        session.touch()
        return True

    def reap_idle(self, idle_seconds: float, *, now: float | None = None) -> list[str]:
        """Drop sessions that have not shown a sign of life for `idle_seconds`."""
        now = now if now is not None else time.time()
        stale = [s for s in self.sessions() if s.idle_for(now) > idle_seconds]
        dropped: list[str] = []
        for s in stale:
            if self.unsubscribe(s):
                logger.info("observer %s idle for %.0fs, dropped", s.observer_id, s.idle_for(now))
                dropped.append(s.observer_id)
        return dropped

    def close(self) -> None:
        self.engine.remove_listener(self.publish)
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for s in sessions:
            s.close(wait=1.0)

    def _on_delivery_failure(self, session: ObserverSession) -> None:
        # Called from the session's own sender thread.
        if self.unsubscribe(session):
            logger.warning("observer %s dropped after delivery failure", session.observer_id)
