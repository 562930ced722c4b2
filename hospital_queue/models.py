from __future__ import annotations

# Domain types shared by the store, the engine and the wire layer.
#
# Everything here is a plain dataclass with a `to_dict()` producing the JSON
# shape sent over MQTT (snake_case keys, ISO-8601 timestamps).

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

from .errors import InvalidTransition, ValidationError


class Status(str, enum.Enum):
    WAITING = "Waiting"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"

    @classmethod
    def parse(cls, raw: Any) -> "Status":
        """Accept the canonical value plus the spellings older desks send."""
        if isinstance(raw, Status):
            return raw
        key = str(raw or "").strip().replace(" ", "").replace("_", "").lower()
        for st in cls:
            if st.value.lower() == key:
                return st
        raise InvalidTransition(f"unknown status {raw!r}")

    def next(self) -> "Status | None":
        """The only status this one may move to (None once terminal)."""
        return _NEXT[self]


_NEXT: dict[Status, Status | None] = {
    Status.WAITING: Status.IN_PROGRESS,
    Status.IN_PROGRESS: Status.COMPLETED,
    Status.COMPLETED: None,
}


class EventType(str, enum.Enum):
    INITIAL_QUEUE = "INITIAL_QUEUE"
    NEW_REGISTRATION = "NEW_REGISTRATION"
    STATUS_UPDATE = "STATUS_UPDATE"
    # Control notice, carries no seq: the session was dropped, subscribe again.
    RESUBSCRIBE = "RESUBSCRIBE"


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _jsonable(d: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in d.items():
        if isinstance(v, (datetime, date)):
            out[k] = v.isoformat()
        elif isinstance(v, enum.Enum):
            out[k] = v.value
        else:
            out[k] = v
    return out


# -------------------- input --------------------


@dataclass(frozen=True)
class PatientInput:
    name: str
    age: int
    gender: str
    contact: str

    def __post_init__(self) -> None:
        for field_name in ("name", "gender", "contact"):
            value = getattr(self, field_name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{field_name} required")
        if isinstance(self.age, bool) or not isinstance(self.age, int):
            raise ValidationError("age must be an integer")
        if not 0 <= self.age <= 150:
            raise ValidationError("age must be between 0 and 150")

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> "PatientInput":
        """Build from a registration request; field checks happen on construction."""
        raw_age = msg.get("age")
        age = raw_age
        if not isinstance(raw_age, bool):
            try:
                age = int(raw_age)  # type: ignore[arg-type]
            except (TypeError, ValueError):
                raise ValidationError("age must be an integer") from None

        return cls(
            name=str(msg.get("name") or "").strip(),
            age=age,  # type: ignore[arg-type]
            gender=str(msg.get("gender") or "").strip(),
            contact=str(msg.get("contact") or "").strip(),
        )


def normalize_department(raw: Any) -> str:
    """Departments become the token prefix, so they must be plain alphanumerics."""
    dept = str(raw or "").strip().upper()
    if not dept:
        raise ValidationError("department required")
    if not dept.isalnum():
        raise ValidationError("department must be alphanumeric")
    return dept


# -------------------- stored records --------------------


@dataclass(frozen=True)
class Patient:
    id: int
    name: str
    age: int
    gender: str
    contact: str
    created_at: datetime
    last_visit: datetime
    visit_count: int

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class QueueEntry:
    id: int
    patient_id: int
    token: str
    sequence: int
    department: str
    day: date
    symptoms: str
    status: Status
    registered_at: datetime
    called_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class QueueRow:
    """One snapshot line: a queue entry joined with its patient."""

    entry_id: int
    token: str
    sequence: int
    department: str
    symptoms: str
    status: Status
    registered_at: datetime
    called_at: datetime | None
    completed_at: datetime | None
    patient_id: int
    name: str
    age: int
    gender: str
    contact: str
    visit_count: int
    # Only meaningful while Waiting; recomputed on every read.
    position: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


# -------------------- results --------------------


@dataclass(frozen=True)
class RegistrationResult:
    token: str
    position: int
    is_returning: bool
    visit_count: int
    patient_id: int
    entry_id: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DepartmentStats:
    department: str
    count: int
    waiting: int
    completed: int


@dataclass(frozen=True)
class Statistics:
    day: date
    waiting: int
    in_progress: int
    completed: int
    total: int
    total_patients: int
    departments: list[DepartmentStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "day": _iso(self.day),
            "today": {
                "waiting": self.waiting,
                "in_progress": self.in_progress,
                "completed": self.completed,
                "total": self.total,
            },
            "total_patients": self.total_patients,
            "departments": [asdict(d) for d in self.departments],
        }


@dataclass(frozen=True)
class ChangeEvent:
    """Immutable notification handed to every observer session.

    `seq` is the engine's commit sequence number. For INITIAL_QUEUE it is the
    sequence number of the last change the snapshot already contains.
    """

    type: EventType
    seq: int
    ts: datetime
    data: Any

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type.value, "seq": self.seq, "ts": self.ts.isoformat(), "data": self.data}
