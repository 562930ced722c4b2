from datetime import date, datetime

import pytest

from hospital_queue.errors import StorageFailure
from hospital_queue.models import PatientInput, Status
from hospital_queue.store import RecordStore

NOW = datetime(2024, 3, 4, 9, 0)
DAY = NOW.date()


def _insert(tx, patient_id, sequence, department="GEN", day=DAY):
    return tx.insert_entry(
        patient_id=patient_id,
        token=f"{department}{sequence:03d}",
        sequence=sequence,
        department=department,
        day=day,
        symptoms="",
        registered_at=datetime.combine(day, NOW.time()),
    )


def test_upsert_bumps_visit_metadata(store):
    data = PatientInput(name="A", age=30, gender="F", contact="555")
    with store.transaction() as tx:
        first = tx.upsert_patient(data, NOW)
    with store.transaction() as tx:
        second = tx.upsert_patient(data, datetime(2024, 3, 9, 10, 0))

    assert second.id == first.id
    assert second.visit_count == 2
    assert second.last_visit == datetime(2024, 3, 9, 10, 0)
    assert second.created_at == NOW


def test_count_entries_is_scoped_by_department_and_day(store):
    with store.transaction() as tx:
        pid = tx.upsert_patient(PatientInput(name="A", age=30, gender="F", contact="1"), NOW).id
        _insert(tx, pid, 1)
        _insert(tx, pid, 2)
        _insert(tx, pid, 1, department="ENT")
        _insert(tx, pid, 1, day=date(2024, 3, 3))

    with store.transaction() as tx:
        assert tx.count_entries("GEN", DAY) == 2
        assert tx.count_entries("ENT", DAY) == 1
        assert tx.count_entries("GEN", date(2024, 3, 3)) == 1
        assert tx.count_entries("GEN", date(2024, 3, 5)) == 0


def test_duplicate_sequence_is_refused(store):
    with store.transaction() as tx:
        pid = tx.upsert_patient(PatientInput(name="A", age=30, gender="F", contact="1"), NOW).id
        _insert(tx, pid, 1)

    with pytest.raises(StorageFailure):
        with store.transaction() as tx:
            _insert(tx, pid, 1)

    with store.transaction() as tx:
        assert tx.count_entries("GEN", DAY) == 1


def test_update_entry_status_stamps_matching_column(store):
    with store.transaction() as tx:
        pid = tx.upsert_patient(PatientInput(name="A", age=30, gender="F", contact="1"), NOW).id
        eid = _insert(tx, pid, 1)
        assert tx.update_entry_status(eid, Status.IN_PROGRESS, datetime(2024, 3, 4, 9, 5))
        assert not tx.update_entry_status(eid + 100, Status.IN_PROGRESS, NOW)

    with store.transaction() as tx:
        entry = tx.get_entry(eid)
    assert entry.status is Status.IN_PROGRESS
    assert entry.called_at == datetime(2024, 3, 4, 9, 5)
    assert entry.completed_at is None


def test_count_waiting_ahead(store):
    with store.transaction() as tx:
        pid = tx.upsert_patient(PatientInput(name="A", age=30, gender="F", contact="1"), NOW).id
        first = _insert(tx, pid, 1)
        _insert(tx, pid, 2)
        _insert(tx, pid, 3)
        tx.update_entry_status(first, Status.IN_PROGRESS, NOW)

    with store.transaction() as tx:
        assert tx.count_waiting_ahead("GEN", DAY, 3) == 1
        assert tx.count_waiting_ahead("GEN", DAY, 2) == 0


def test_file_database_directory_is_created(tmp_path):
    db = tmp_path / "nested" / "hospital.db"
    store = RecordStore.from_url(f"sqlite:///{db}")
    store.create_all()
    store.close()
    assert db.exists()
