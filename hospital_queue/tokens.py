from __future__ import annotations

# Token allocation.
#
# A token is the department code followed by a zero-padded sequence number,
# e.g. GEN001. The sequence is derived from the number of entries that already
# exist for (department, day), plus one. There is no stored counter to lose or
# reset: a new day simply starts counting from an empty set.
#
# The count-then-insert pattern is only correct if the caller serializes it per
# (department, day). `QueueEngine` does that with its lock.

from dataclasses import dataclass
from datetime import date
from typing import Protocol

TOKEN_WIDTH = 3


class EntryCounter(Protocol):
    def count_entries(self, department: str, day: date) -> int: ...


@dataclass(frozen=True)
class Token:
    text: str
    sequence: int

    def __str__(self) -> str:
        return self.text


def format_token(department: str, sequence: int, *, width: int = TOKEN_WIDTH) -> str:
    """GEN + 7 -> GEN007. Sequences wider than `width` are kept whole (GEN1000)."""
    if sequence < 1:
        raise ValueError("sequence must be >= 1")
    return f"{department}{sequence:0{width}d}"


class TokenAllocator:
    def __init__(self, *, width: int = TOKEN_WIDTH) -> None:
        if width < 1:
            raise ValueError("width must be >= 1")
        self.width = width

    def allocate(self, counter: EntryCounter, department: str, day: date) -> Token:
        """Next token for (department, day).

        `counter` is the store session the new entry will be inserted through,
        so the count and the insert see the same data.
        """
        sequence = counter.count_entries(department, day) + 1
        return Token(text=format_token(department, sequence, width=self.width), sequence=sequence)
