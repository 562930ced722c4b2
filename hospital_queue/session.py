from __future__ import annotations

# One connected viewer.
#
# A session owns:
# - a transport (anything with `send(message: dict)`)
# - a bounded outbound queue, filled by the broadcaster
# - a daemon sender thread that drains the queue into the transport
#
# The broadcaster only ever calls `offer()`, which never blocks, so a slow or
# dead viewer cannot stall the engine. If the transport raises, the session
# reports itself through `on_failure` and stops.

import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def send(self, message: dict[str, Any]) -> None: ...


_STOP = object()


class ObserverSession:
    def __init__(
        self,
        transport: Transport,
        *,
        observer_id: str | None = None,
        backlog: int = 256,
        on_failure: Callable[["ObserverSession"], None] | None = None,
    ) -> None:
        self.observer_id = observer_id or uuid.uuid4().hex
        self.transport = transport
        self.last_seen = time.time()

        self._outbox: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, backlog))
        self._on_failure = on_failure
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def touch(self) -> None:
        """Record a sign of life (heartbeat) from the viewer."""
        self.last_seen = time.time()

    def idle_for(self, now: float | None = None) -> float:
        return max(0.0, (now if now is not None else time.time()) - self.last_seen)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._sender_loop, name=f"observer-{self.observer_id}", daemon=True
        )
        self._thread.start()

    def offer(self, message: dict[str, Any]) -> bool:
        """Queue a message for delivery. False if the session is closed or backlogged."""
        if self._closed.is_set():
            return False
        try:
            self._outbox.put_nowait(message)
        except queue.Full:
            return False
        return True

    def close(self, *, wait: float | None = None) -> None:
        """Stop delivering. Safe to call more than once and from any thread."""
        self._closed.set()
        try:
            self._outbox.put_nowait(_STOP)
        except queue.Full:
            # The sender checks `_closed` after every item anyway.
            pass
        t = self._thread
        if wait is not None and t is not None and t is not threading.current_thread():
            t.join(timeout=wait)

    def _sender_loop(self) -> None:
        while not self._closed.is_set():
            item = self._outbox.get()
            if item is _STOP or self._closed.is_set():
                break
            try:
                self.transport.send(item)
            except Exception as e:
                logger.warning("delivery to observer %s failed: %s", self.observer_id, e)
                self._closed.set()
                if self._on_failure is not None:
                    self._on_failure(self)
                break
