"""
chiptime/punch_parser.py
------------------------
Reads the timing device's punch log and turns it into TimedResults.

File format (no header, one punch per line, extra fields ignored):

    <chip>\t<YYYY-MM-DD HH:MM:SS.mmm>[\t...]

Key behaviors
-------------
- Lines with fewer than two fields or an unparseable timestamp are skipped
  and only counted (DEBUG log); they never abort a read.
- Every timestamp is rounded *up* to the next whole second before it is
  compared or stored, so 09:09:59.500 and 09:09:59.900 are the same punch.
  A timestamp already on a whole second is left alone.
- Punches for chips not registered on the race are dropped.
- A punch qualifies when it is strictly after the race start and the elapsed
  time is at least the race minimum.
- An unreadable file yields an empty result plus the error text; the caller
  decides how loud to be about it.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Collection, Dict, Iterator, List, Optional

from .ledger import InvalidationLedger
from .models import Race, TimedResult

log = logging.getLogger("chiptime.parser")

DEVICE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def round_up_to_second(ts: datetime) -> datetime:
    if ts.microsecond == 0:
        return ts
    return ts.replace(microsecond=0) + timedelta(seconds=1)


@dataclass(frozen=True)
class Punch:
    chip: str
    time: datetime   # already rounded


@dataclass
class ParseResult:
    results: List[TimedResult] = field(default_factory=list)
    rows: int = 0
    skipped: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RecordParser:
    def __init__(self, timestamp_format: str = DEVICE_TIMESTAMP_FORMAT):
        self.timestamp_format = timestamp_format

    # ---------- raw reader ----------

    def parse_timestamp(self, text: str) -> Optional[datetime]:
        try:
            return datetime.strptime(text.strip(), self.timestamp_format)
        except ValueError:
            return None

    def punches(self, path: str, stats: Optional[ParseResult] = None) -> Iterator[Punch]:
        """Yield every well-formed punch in file order. Raises OSError if unreadable.

        When `stats` is given its rows/skipped counters are updated as we go.
        """
        stats = stats if stats is not None else ParseResult()
        with open(path, "r", encoding="utf-8", errors="replace", newline="") as f:
            for record in csv.reader(f, delimiter="\t"):
                stats.rows += 1
                if len(record) < 2:
                    stats.skipped += 1
                    continue
                ts = self.parse_timestamp(record[1])
                if ts is None:
                    stats.skipped += 1
                    log.debug("skip line %d: bad timestamp %r", stats.rows, record[1])
                    continue
                yield Punch(chip=record[0].strip(), time=round_up_to_second(ts))
        if stats.skipped:
            log.debug("%s: %d of %d lines skipped", path, stats.skipped, stats.rows)

    # ---------- race views ----------

    def qualifying(self, race: Race, exclude: Collection[str] = ()) -> ParseResult:
        """Every qualifying punch of a registered chip, in file order.

        Chips in `exclude` (e.g. chips covered by a manual time) are left out.
        The invalid flag is resolved from the race's ledger.
        """
        out = ParseResult()
        if not race.results_file:
            return out
        ledger = InvalidationLedger(race)
        try:
            for p in self.punches(race.results_file, out):
                if p.chip in exclude or not race.has_chip(p.chip):
                    continue
                if not race.qualifies(p.time):
                    continue
                out.results.append(TimedResult(
                    chip=p.chip,
                    time=p.time,
                    duration=p.time - race.start_time,
                    invalid=ledger.is_invalid(p.chip, p.time),
                    manual=False,
                ))
        except OSError as ex:
            log.warning("could not read punch file %s: %s", race.results_file, ex)
            return ParseResult(error=f"{race.results_file}: {ex}")
        return out

    def parse(self, race: Race, exclude: Collection[str] = ()) -> ParseResult:
        """Earliest qualifying punch per chip."""
        allp = self.qualifying(race, exclude)
        first: Dict[str, TimedResult] = {}
        for r in allp.results:
            cur = first.get(r.chip)
            if cur is None or r.time < cur.time:
                first[r.chip] = r
        allp.results = sorted(first.values(), key=lambda r: r.time)
        return allp

    def next_valid(self, race: Race, chip: str, after: datetime) -> Optional[datetime]:
        """Earliest punch of `chip` later than `after` that qualifies and is
        not already in the ledger. None when there is none or the file
        cannot be read."""
        if not race.results_file:
            return None
        ledger = InvalidationLedger(race)
        best: Optional[datetime] = None
        try:
            for p in self.punches(race.results_file):
                if p.chip != chip or p.time <= after:
                    continue
                if not race.qualifies(p.time) or ledger.is_invalid(chip, p.time):
                    continue
                if best is None or p.time < best:
                    best = p.time
        except OSError as ex:
            log.info("next-valid search: %s unreadable: %s", race.results_file, ex)
            return None
        return best
