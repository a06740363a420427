"""
chiptime/ledger.py
------------------
The invalidation ledger: which (chip, timestamp) punches a race has marked
invalid. It is a view over Race.invalid_times, so whatever persists the race
persists the ledger. Absence of a key means valid.

Keys are "<chip>:<unix-nanoseconds>" of the second-rounded timestamp, read as
UTC wall clock. Two punches for the same chip in the same rounded second
share a key on purpose.
"""

from __future__ import annotations

import calendar
from datetime import datetime
from typing import Iterable, List

from .models import Race


def unix_nanos(ts: datetime) -> int:
    return calendar.timegm(ts.timetuple()) * 1_000_000_000 + ts.microsecond * 1_000


def make_key(chip: str, ts: datetime) -> str:
    return f"{chip}:{unix_nanos(ts)}"


class InvalidationLedger:
    def __init__(self, race: Race):
        self._race = race

    @property
    def race(self) -> Race:
        return self._race

    def mark(self, chip: str, ts: datetime) -> str:
        key = make_key(chip, ts)
        self._race.invalid_times[key] = True
        return key

    def unmark(self, key: str) -> None:
        self._race.invalid_times.pop(key, None)

    def unmark_punch(self, chip: str, ts: datetime) -> str:
        key = make_key(chip, ts)
        self.unmark(key)
        return key

    def is_invalid(self, chip: str, ts: datetime) -> bool:
        return bool(self._race.invalid_times.get(make_key(chip, ts)))

    def mark_all(self, punches: Iterable) -> List[str]:
        """Mark every (chip, time) carrier in `punches`; returns the keys."""
        return [self.mark(p.chip, p.time) for p in punches]

    def __len__(self) -> int:
        return sum(1 for v in self._race.invalid_times.values() if v)

    def __contains__(self, key: str) -> bool:
        return bool(self._race.invalid_times.get(key))
