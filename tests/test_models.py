import pytest

from hospital_queue.errors import InvalidTransition, ValidationError
from hospital_queue.models import PatientInput, Status, normalize_department


def test_status_parse_accepts_known_spellings():
    assert Status.parse("InProgress") is Status.IN_PROGRESS
    assert Status.parse("In Progress") is Status.IN_PROGRESS
    assert Status.parse("in_progress") is Status.IN_PROGRESS
    assert Status.parse("completed") is Status.COMPLETED
    with pytest.raises(InvalidTransition):
        Status.parse("Cancelled")


def test_status_machine_only_moves_forward():
    assert Status.WAITING.next() is Status.IN_PROGRESS
    assert Status.IN_PROGRESS.next() is Status.COMPLETED
    assert Status.COMPLETED.next() is None


def test_patient_input_from_message():
    p = PatientInput.from_message({"name": " Asha ", "age": "34", "gender": "F", "contact": "555-0001"})
    assert p == PatientInput(name="Asha", age=34, gender="F", contact="555-0001")


@pytest.mark.parametrize(
    "msg",
    [
        {"age": 30, "gender": "F", "contact": "1"},
        {"name": "A", "gender": "F", "contact": "1"},
        {"name": "A", "age": "thirty", "gender": "F", "contact": "1"},
        {"name": "A", "age": 200, "gender": "F", "contact": "1"},
        {"name": "A", "age": True, "gender": "F", "contact": "1"},
        {"name": "A", "age": 30, "contact": "1"},
        {"name": "A", "age": 30, "gender": "F", "contact": "  "},
    ],
)
def test_patient_input_rejects_bad_fields(msg):
    with pytest.raises(ValidationError):
        PatientInput.from_message(msg)


def test_normalize_department():
    assert normalize_department(" gen ") == "GEN"
    with pytest.raises(ValidationError):
        normalize_department(None)
    with pytest.raises(ValidationError):
        normalize_department("GEN 2")


def test_patient_input_checks_fields_on_construction():
    with pytest.raises(ValidationError):
        PatientInput(name="A", age=False, gender="F", contact="1")
    with pytest.raises(ValidationError):
        PatientInput(name="A", age=151, gender="F", contact="1")
    assert PatientInput(name="A", age=0, gender="F", contact="1").age == 0
