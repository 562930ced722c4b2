from __future__ import annotations

# The Queue Engine is the authoritative brain of the system.
#
# All store access and all event emission happen while holding `self.lock`
# (process-wide, re-entrant). That gives three guarantees:
# - token allocation (count + insert) is never interleaved, so tokens are unique
# - listeners receive events in commit order
# - a snapshot taken under the lock is a consistent point in time relative to
#   the event stream (the broadcaster relies on this when subscribing observers)
#
# Listeners must not block: they are called with the lock held.

import logging
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

from .clock import SystemClock
from .errors import InvalidTransition, NotFound, ValidationError
from .models import (
    ChangeEvent,
    EventType,
    Patient,
    PatientInput,
    QueueEntry,
    QueueRow,
    RegistrationResult,
    Statistics,
    Status,
    normalize_department,
)
from .store import RecordStore
from .tokens import TokenAllocator

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10

Listener = Callable[[ChangeEvent], None]


def with_positions(rows: list[QueueRow]) -> list[QueueRow]:
    """Attach the live queue position to every Waiting row.

    Position is the number of Waiting rows of the same department whose token
    was issued earlier (lower sequence).
    """
    waiting: dict[str, list[int]] = defaultdict(list)
    for r in rows:
        if r.status is Status.WAITING:
            waiting[r.department].append(r.sequence)
    for seqs in waiting.values():
        seqs.sort()

    out: list[QueueRow] = []
    for r in rows:
        if r.status is Status.WAITING:
            out.append(replace(r, position=waiting[r.department].index(r.sequence)))
        else:
            out.append(replace(r, position=None))
    return out


class QueueEngine:
    def __init__(
        self,
        store: RecordStore,
        *,
        clock: SystemClock | None = None,
        allocator: TokenAllocator | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.allocator = allocator or TokenAllocator()

        self.lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._seq = 0

    # -------------------- listeners --------------------

    def add_listener(self, listener: Listener) -> None:
        with self.lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self.lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def last_seq(self) -> int:
        """Sequence number of the most recently emitted change."""
        with self.lock:
            return self._seq

    def _emit(self, etype: EventType, data: dict[str, Any], ts: datetime) -> ChangeEvent:
        # Caller holds self.lock and has already committed.
        self._seq += 1
        event = ChangeEvent(type=etype, seq=self._seq, ts=ts, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("listener failed on %s seq=%d", etype.value, event.seq)
        return event

    # -------------------- writes --------------------

    def register(self, patient: PatientInput, department: str, symptoms: str = "") -> RegistrationResult:
        """Resolve the patient, issue a token and queue a new Waiting entry.

        The whole operation is one store transaction: either everything is
        visible (patient, entry, event) or nothing is.
        """
        department = normalize_department(department)
        symptoms = str(symptoms or "").strip()

        with self.lock:
            now = self.clock.now()
            day = now.date()

            with self.store.transaction() as tx:
                existing = tx.find_patient_by_contact(patient.contact)
                record = tx.upsert_patient(patient, now)
                token = self.allocator.allocate(tx, department, day)
                entry_id = tx.insert_entry(
                    patient_id=record.id,
                    token=token.text,
                    sequence=token.sequence,
                    department=department,
                    day=day,
                    symptoms=symptoms,
                    registered_at=now,
                )
                position = tx.count_waiting_ahead(department, day, token.sequence)
                row = tx.get_entry_row(entry_id)

            result = RegistrationResult(
                token=token.text,
                position=position,
                is_returning=existing is not None,
                visit_count=record.visit_count,
                patient_id=record.id,
                entry_id=entry_id,
            )

            data = row.to_dict() if row is not None else {}
            data.update(position=position, is_returning=result.is_returning)
            self._emit(EventType.NEW_REGISTRATION, data, now)

        logger.info(
            "registered %s in %s (entry=%d, position=%d, returning=%s)",
            result.token,
            department,
            entry_id,
            position,
            result.is_returning,
        )
        return result

    def advance(self, entry_id: int, new_status: Any) -> QueueRow:
        """Move an entry one step along Waiting -> InProgress -> Completed."""
        entry_id = _as_id(entry_id, "entry_id")

        with self.lock:
            now = self.clock.now()
            with self.store.transaction() as tx:
                entry = tx.get_entry(entry_id)
                if entry is None:
                    raise NotFound(f"queue entry {entry_id} not found")

                target = Status.parse(new_status)
                allowed = entry.status.next()
                if allowed is None:
                    raise InvalidTransition(f"entry {entry_id} is already {entry.status.value}")
                if target is not allowed:
                    raise InvalidTransition(
                        f"entry {entry_id}: {entry.status.value} -> {target.value} not allowed"
                    )

                tx.update_entry_status(entry_id, target, _stamp_after(entry, now))
                row = tx.get_entry_row(entry_id)
                if row is None:
                    raise NotFound(f"queue entry {entry_id} vanished during update")

            self._emit(EventType.STATUS_UPDATE, row.to_dict(), now)

        logger.info("entry %d (%s) -> %s", entry_id, row.token, target.value)
        return row

    # -------------------- reads --------------------

    def find_patient(self, contact: str) -> Patient | None:
        contact = str(contact or "").strip()
        if not contact:
            raise ValidationError("contact required")
        with self.lock, self.store.transaction() as tx:
            return tx.find_patient_by_contact(contact)

    def snapshot(self, department: str | None = None) -> list[QueueRow]:
        """Today's entries, patient-joined, oldest registration first."""
        if department is not None:
            department = normalize_department(department)
        with self.lock:
            day = self.clock.today()
            with self.store.transaction() as tx:
                rows = tx.query_entries_for_day(day, department)
        return with_positions(rows)

    def position_of(self, entry_id: int) -> int | None:
        """Current position of an entry, or None once it has left Waiting."""
        entry_id = _as_id(entry_id, "entry_id")
        with self.lock, self.store.transaction() as tx:
            entry = tx.get_entry(entry_id)
            if entry is None:
                raise NotFound(f"queue entry {entry_id} not found")
            if entry.status is not Status.WAITING:
                return None
            return tx.count_waiting_ahead(entry.department, entry.day, entry.sequence)

    def history(self, patient_id: int) -> list[QueueEntry]:
        patient_id = _as_id(patient_id, "patient_id")
        with self.lock, self.store.transaction() as tx:
            if tx.get_patient(patient_id) is None:
                raise NotFound(f"patient {patient_id} not found")
            return tx.query_history(patient_id, HISTORY_LIMIT)

    def statistics(self) -> Statistics:
        with self.lock:
            day = self.clock.today()
            with self.store.transaction() as tx:
                return tx.query_aggregate_stats(day)


def _as_id(raw: Any, name: str) -> int:
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        raise ValidationError(f"{name} must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None
    if value < 1:
        raise ValidationError(f"{name} must be positive")
    return value


def _stamp_after(entry: QueueEntry, now: datetime) -> datetime:
    # Timestamps never run backwards, even if the wall clock does.
    floor = entry.called_at or entry.registered_at
    return max(now, floor)
