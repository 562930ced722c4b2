from __future__ import annotations

# Record store adapter (SQLAlchemy).
#
# The engine only talks to `StoreSession`, obtained from
# `RecordStore.transaction()`. One transaction == one engine operation: it
# commits when the block exits cleanly and rolls back on any exception, so a
# failed registration leaves neither an orphaned entry nor a bumped visit count.
#
# Any SQLAlchemy error is re-raised as `StorageFailure`; the store never retries.

import logging
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterator

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageFailure
from .models import DepartmentStats, Patient, PatientInput, QueueEntry, QueueRow, Statistics, Status

logger = logging.getLogger(__name__)

Base = declarative_base()


class PatientRecord(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    age = Column(Integer, nullable=False)
    gender = Column(String(32), nullable=False)
    contact = Column(String(64), unique=True, index=True, nullable=False)
    created_at = Column(DateTime, nullable=False)
    last_visit = Column(DateTime, nullable=False)
    visit_count = Column(Integer, nullable=False, default=1)

    entries = relationship("QueueEntryRecord", back_populates="patient")


class QueueEntryRecord(Base):
    __tablename__ = "queue"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    token = Column(String(64), nullable=False)
    sequence = Column(Integer, nullable=False)
    department = Column(String(32), nullable=False)
    day = Column(Date, nullable=False)
    symptoms = Column(Text, nullable=False, default="")
    status = Column(
        Enum(Status, values_callable=lambda e: [m.value for m in e], name="queue_status"),
        nullable=False,
        default=Status.WAITING,
    )
    registered_at = Column(DateTime, nullable=False)
    called_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    patient = relationship("PatientRecord", back_populates="entries")

    __table_args__ = (
        # Last line of defence for token uniqueness; the engine lock is the first.
        UniqueConstraint("department", "day", "sequence", name="uq_queue_department_day_sequence"),
        Index("idx_queue_day_department", "day", "department"),
        Index("idx_queue_status", "status"),
    )


def _patient(rec: PatientRecord) -> Patient:
    return Patient(
        id=rec.id,
        name=rec.name,
        age=rec.age,
        gender=rec.gender,
        contact=rec.contact,
        created_at=rec.created_at,
        last_visit=rec.last_visit,
        visit_count=rec.visit_count,
    )


def _entry(rec: QueueEntryRecord) -> QueueEntry:
    return QueueEntry(
        id=rec.id,
        patient_id=rec.patient_id,
        token=rec.token,
        sequence=rec.sequence,
        department=rec.department,
        day=rec.day,
        symptoms=rec.symptoms or "",
        status=rec.status,
        registered_at=rec.registered_at,
        called_at=rec.called_at,
        completed_at=rec.completed_at,
    )


def _row(q: QueueEntryRecord, p: PatientRecord) -> QueueRow:
    return QueueRow(
        entry_id=q.id,
        token=q.token,
        sequence=q.sequence,
        department=q.department,
        symptoms=q.symptoms or "",
        status=q.status,
        registered_at=q.registered_at,
        called_at=q.called_at,
        completed_at=q.completed_at,
        patient_id=p.id,
        name=p.name,
        age=p.age,
        gender=p.gender,
        contact=p.contact,
        visit_count=p.visit_count,
    )


class StoreSession:
    """The read/write contract the engine consumes, bound to one DB session."""

    def __init__(self, session: Session) -> None:
        self._s = session

    # -------------------- patients --------------------

    def find_patient_by_contact(self, contact: str) -> Patient | None:
        rec = self._s.query(PatientRecord).filter(PatientRecord.contact == contact).one_or_none()
        return _patient(rec) if rec is not None else None

    def get_patient(self, patient_id: int) -> Patient | None:
        rec = self._s.get(PatientRecord, patient_id)
        return _patient(rec) if rec is not None else None

    def upsert_patient(self, data: PatientInput, now: datetime) -> Patient:
        """Insert a new patient, or bump visit metadata of the existing contact.

        Demographics of a returning patient are left as first recorded.
        """
        rec = self._s.query(PatientRecord).filter(PatientRecord.contact == data.contact).one_or_none()
        if rec is None:
            rec = PatientRecord(
                name=data.name,
                age=data.age,
                gender=data.gender,
                contact=data.contact,
                created_at=now,
                last_visit=now,
                visit_count=1,
            )
            self._s.add(rec)
        else:
            rec.visit_count = rec.visit_count + 1
            rec.last_visit = now
        self._s.flush()
        return _patient(rec)

    # -------------------- queue entries --------------------

    def count_entries(self, department: str, day: date) -> int:
        return (
            self._s.query(func.count(QueueEntryRecord.id))
            .filter(QueueEntryRecord.department == department, QueueEntryRecord.day == day)
            .scalar()
            or 0
        )

    def insert_entry(
        self,
        *,
        patient_id: int,
        token: str,
        sequence: int,
        department: str,
        day: date,
        symptoms: str,
        registered_at: datetime,
    ) -> int:
        rec = QueueEntryRecord(
            patient_id=patient_id,
            token=token,
            sequence=sequence,
            department=department,
            day=day,
            symptoms=symptoms,
            status=Status.WAITING,
            registered_at=registered_at,
        )
        self._s.add(rec)
        self._s.flush()
        return rec.id

    def get_entry(self, entry_id: int) -> QueueEntry | None:
        rec = self._s.get(QueueEntryRecord, entry_id)
        return _entry(rec) if rec is not None else None

    def get_entry_row(self, entry_id: int) -> QueueRow | None:
        found = (
            self._s.query(QueueEntryRecord, PatientRecord)
            .join(PatientRecord, QueueEntryRecord.patient_id == PatientRecord.id)
            .filter(QueueEntryRecord.id == entry_id)
            .one_or_none()
        )
        return _row(*found) if found is not None else None

    def update_entry_status(self, entry_id: int, status: Status, timestamp: datetime) -> bool:
        rec = self._s.get(QueueEntryRecord, entry_id)
        if rec is None:
            return False
        rec.status = status
        if status is Status.IN_PROGRESS:
            rec.called_at = timestamp
        elif status is Status.COMPLETED:
            rec.completed_at = timestamp
        self._s.flush()
        return True

    def count_waiting_ahead(self, department: str, day: date, sequence: int) -> int:
        """Waiting entries of the same department/day issued before `sequence`."""
        return (
            self._s.query(func.count(QueueEntryRecord.id))
            .filter(
                QueueEntryRecord.department == department,
                QueueEntryRecord.day == day,
                QueueEntryRecord.status == Status.WAITING,
                QueueEntryRecord.sequence < sequence,
            )
            .scalar()
            or 0
        )

    def query_entries_for_day(self, day: date, department: str | None = None) -> list[QueueRow]:
        q = (
            self._s.query(QueueEntryRecord, PatientRecord)
            .join(PatientRecord, QueueEntryRecord.patient_id == PatientRecord.id)
            .filter(QueueEntryRecord.day == day)
        )
        if department is not None:
            q = q.filter(QueueEntryRecord.department == department)
        q = q.order_by(QueueEntryRecord.registered_at.asc(), QueueEntryRecord.id.asc())
        return [_row(e, p) for e, p in q.all()]

    def query_history(self, patient_id: int, limit: int) -> list[QueueEntry]:
        recs = (
            self._s.query(QueueEntryRecord)
            .filter(QueueEntryRecord.patient_id == patient_id)
            .order_by(QueueEntryRecord.registered_at.desc(), QueueEntryRecord.id.desc())
            .limit(limit)
            .all()
        )
        return [_entry(r) for r in recs]

    def query_aggregate_stats(self, day: date) -> Statistics:
        by_status = dict(
            self._s.query(QueueEntryRecord.status, func.count(QueueEntryRecord.id))
            .filter(QueueEntryRecord.day == day)
            .group_by(QueueEntryRecord.status)
            .all()
        )
        dept_rows = (
            self._s.query(
                QueueEntryRecord.department,
                func.count(QueueEntryRecord.id),
                func.sum(case((QueueEntryRecord.status == Status.WAITING, 1), else_=0)),
                func.sum(case((QueueEntryRecord.status == Status.COMPLETED, 1), else_=0)),
            )
            .filter(QueueEntryRecord.day == day)
            .group_by(QueueEntryRecord.department)
            .order_by(QueueEntryRecord.department)
            .all()
        )
        total_patients = self._s.query(func.count(PatientRecord.id)).scalar() or 0

        waiting = int(by_status.get(Status.WAITING, 0))
        in_progress = int(by_status.get(Status.IN_PROGRESS, 0))
        completed = int(by_status.get(Status.COMPLETED, 0))
        return Statistics(
            day=day,
            waiting=waiting,
            in_progress=in_progress,
            completed=completed,
            total=waiting + in_progress + completed,
            total_patients=int(total_patients),
            departments=[
                DepartmentStats(department=d, count=int(c), waiting=int(w or 0), completed=int(done or 0))
                for d, c, w, done in dept_rows
            ],
        )


class RecordStore:
    """Owns the SQLAlchemy engine and hands out transactional sessions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    @classmethod
    def from_url(cls, url: str) -> "RecordStore":
        """Build a store; SQLite files get their parent directory created."""
        parsed = make_url(url)
        if parsed.get_backend_name() != "sqlite":
            return cls(create_engine(url))

        connect_args = {"check_same_thread": False}
        if parsed.database in (None, "", ":memory:"):
            # One shared connection, otherwise every session sees an empty DB.
            return cls(create_engine(url, connect_args=connect_args, poolclass=StaticPool))

        Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        return cls(create_engine(url, connect_args=connect_args))

    def create_all(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageFailure(f"cannot initialise schema: {e}") from e

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[StoreSession]:
        session = self._session_factory()
        try:
            yield StoreSession(session)
            session.commit()
        except SQLAlchemyError as e:
            self._rollback(session)
            raise StorageFailure(str(e)) from e
        except BaseException:
            self._rollback(session)
            raise
        finally:
            session.close()

    @staticmethod
    def _rollback(session: Session) -> None:
        try:
            session.rollback()
        except SQLAlchemyError:
            # Nothing else can be undone from here; leave a trace for the operator.
            logger.exception("rollback failed, store may hold a partial write")
