import queue
from datetime import datetime

import pytest

from hospital_queue.clock import FixedClock
from hospital_queue.engine import QueueEngine
from hospital_queue.models import PatientInput
from hospital_queue.store import RecordStore


class ListTransport:
    """Observer transport that just records what it was sent."""

    def __init__(self):
        self.messages = queue.Queue()

    def send(self, message):
        self.messages.put(message)

    def next(self, timeout=2.0):
        return self.messages.get(timeout=timeout)


def patient(contact, name="Test Patient", age=40, gender="F"):
    return PatientInput(name=name, age=age, gender=gender, contact=contact)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 4, 9, 0, 0))


@pytest.fixture
def store():
    s = RecordStore.from_url("sqlite://")
    s.create_all()
    yield s
    s.close()


@pytest.fixture
def engine(store, clock):
    return QueueEngine(store, clock=clock)
