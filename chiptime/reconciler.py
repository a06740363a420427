"""
chiptime/reconciler.py
----------------------
Merges manual times, device punches and the invalidation ledger into the one
ordered result list every view and export reads.

Rules
-----
1. Manual entries become results first (manual=True). A chip with any manual
   entry gets no device-derived results at all.
2. Device punches come from RecordParser: every qualifying punch of every
   registered chip not covered by a manual entry.
3. The merged list is sorted by timestamp (stable).
4. Per chip we keep every invalid result plus the first valid one. With an
   empty ledger that is exactly "earliest qualifying punch per chip"; once a
   punch is marked invalid the next valid one shows up behind it.
5. The invalid flag is never trusted from a previous pass: it is recomputed
   from Race.invalid_times every time.
6. The full merged list (before step 4 drops later valid punches) is written
   to the result cache before the selected list is returned.

Mutations (toggle_invalid, add_manual_time) edit a copy of the race, then
persist the ledger delta through RaceStore.update() so the stored race is
read-modified-written under the store lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional, Set, Tuple, Union

from .durations import parse_clock
from .errors import ManualTimeError, PersistenceError, ResultNotFoundError
from .ledger import InvalidationLedger, make_key
from .models import ManualEntry, Race, TimedResult, sort_by_time
from .punch_parser import RecordParser
from .storage import ManualOverrideStore, RaceStore, ResultCache

log = logging.getLogger("chiptime.reconcile")


@dataclass
class Reconciliation:
    race: Race
    results: List[TimedResult] = field(default_factory=list)
    merged: List[TimedResult] = field(default_factory=list)   # what the cache holds
    manual_count: int = 0
    device_count: int = 0
    warnings: List[str] = field(default_factory=list)


@dataclass
class ToggleOutcome:
    race: Race
    results: List[TimedResult]
    invalid: bool                          # new state of the toggled punch
    added: Optional[TimedResult] = None    # fallback punch surfaced by the toggle
    removed: List[TimedResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def select_results(merged: List[TimedResult]) -> List[TimedResult]:
    """All invalid results plus the first valid one per chip, order kept."""
    have_valid: Set[str] = set()
    out: List[TimedResult] = []
    for r in merged:
        if r.invalid:
            out.append(r)
        elif r.chip not in have_valid:
            have_valid.add(r.chip)
            out.append(r)
    return out


def filter_results(results: List[TimedResult], search: str) -> List[TimedResult]:
    """Substring match on chip; an empty search returns the input list."""
    if not search:
        return results
    return [r for r in results if search in r.chip]


class ResultReconciler:
    def __init__(
        self,
        manual: ManualOverrideStore,
        cache: ResultCache,
        parser: Optional[RecordParser] = None,
        races: Optional[RaceStore] = None,
    ):
        self.manual = manual
        self.cache = cache
        self.parser = parser or RecordParser()
        self.races = races

    # ------------------------------------------------------------------
    # reconcile
    # ------------------------------------------------------------------

    def reconcile(self, race: Race) -> List[TimedResult]:
        return self.run(race).results

    def run(self, race: Race) -> Reconciliation:
        out = Reconciliation(race=race)
        ledger = InvalidationLedger(race)

        manual_results: List[TimedResult] = []
        try:
            entries = self.manual.load(race.name)
        except (OSError, ValueError, KeyError) as ex:
            log.warning("manual times for %s unreadable: %s", race.name, ex)
            out.warnings.append(f"manual times unreadable: {ex}")
            entries = []
        for e in entries:
            if e.race_name and e.race_name != race.name:
                continue
            manual_results.append(TimedResult(
                chip=e.chip,
                time=e.time,
                duration=e.time - race.start_time,
                invalid=ledger.is_invalid(e.chip, e.time),
                manual=True,
            ))
        out.manual_count = len(manual_results)

        device_results: List[TimedResult] = []
        if race.results_file:
            covered = {r.chip for r in manual_results}
            parsed = self.parser.qualifying(race, exclude=covered)
            if parsed.error:
                out.warnings.append(parsed.error)
            device_results = parsed.results
            log.debug("%s: %d rows, %d skipped, %d qualifying",
                      race.name, parsed.rows, parsed.skipped, len(device_results))
        out.device_count = len(device_results)

        out.merged = sort_by_time(manual_results + device_results)
        out.results = select_results(out.merged)

        warning = self._write_cache(race.name, out.merged)
        if warning:
            out.warnings.append(warning)

        log.info("reconciled %s: %d results (%d manual, %d device punches)",
                 race.name, len(out.results), out.manual_count, out.device_count)
        return out

    def _write_cache(self, race_name: str, results: List[TimedResult]) -> Optional[str]:
        try:
            self.cache.write(race_name, results)
        except PersistenceError as ex:
            return f"result cache not saved: {ex}"
        return None

    # ------------------------------------------------------------------
    # next valid punch
    # ------------------------------------------------------------------

    def find_next_valid(self, race: Race, chip: str, after: datetime) -> Tuple[Optional[datetime], bool]:
        """(timestamp, found) of the next usable punch for `chip` after `after`."""
        ts = self.parser.next_valid(race, chip, after)
        return ts, ts is not None

    # ------------------------------------------------------------------
    # toggle invalid
    # ------------------------------------------------------------------

    def toggle_invalid(
        self,
        race: Race,
        chip: str,
        ts: datetime,
        snapshot: Optional[List[TimedResult]] = None,
    ) -> ToggleOutcome:
        race = race.copy()
        ledger = InvalidationLedger(race)
        if snapshot is None:
            snapshot = self.run(race).results
        # fresh copies with the invalid flag re-derived from the ledger
        results = [replace(r, invalid=ledger.is_invalid(r.chip, r.time)) for r in snapshot]

        target = next((r for r in results if r.chip == chip and r.time == ts), None)
        if target is None:
            raise ResultNotFoundError(chip, ts)

        marked: List[str] = []
        unmarked: List[str] = []
        outcome = ToggleOutcome(race=race, results=results, invalid=not target.invalid)

        if outcome.invalid:
            marked.append(ledger.mark(chip, ts))
            target.invalid = True
            if race.results_file:
                nxt, found = self.find_next_valid(race, chip, ts)
                if found and not any(r.chip == chip and r.time == nxt for r in results):
                    outcome.added = TimedResult(
                        chip=chip, time=nxt, duration=nxt - race.start_time,
                        invalid=False, manual=False,
                    )
                    results.append(outcome.added)
                    results = sort_by_time(results)
                elif not found:
                    log.info("%s: no further valid punch for chip %s after %s", race.name, chip, ts)
        else:
            unmarked.append(ledger.unmark_punch(chip, ts))
            target.invalid = False
            # later punches only stood in for this one; drop them and their ledger keys
            outcome.removed = [r for r in results if r.chip == chip and r.time > ts]
            results = [r for r in results if not (r.chip == chip and r.time > ts)]
            for r in outcome.removed:
                unmarked.append(ledger.unmark_punch(r.chip, r.time))

        outcome.results = results
        outcome.race = self._persist_ledger(race, marked, unmarked, outcome.warnings)
        warning = self._write_cache(race.name, results)
        if warning:
            outcome.warnings.append(warning)

        log.info("%s: chip %s at %s marked %s", race.name, chip, ts,
                 "invalid" if outcome.invalid else "valid")
        return outcome

    def _persist_ledger(self, race: Race, marked: List[str], unmarked: List[str],
                        warnings: List[str]) -> Race:
        """Apply a ledger delta to the stored race; falls back to `race` in memory."""
        if self.races is None:
            return race

        def apply(stored: Race) -> None:
            for key in unmarked:
                stored.invalid_times.pop(key, None)
            for key in marked:
                stored.invalid_times[key] = True

        try:
            return self.races.update(race.name, apply)
        except PersistenceError as ex:
            warnings.append(f"race not saved, change is lost on restart: {ex}")
            return race

    # ------------------------------------------------------------------
    # manual times
    # ------------------------------------------------------------------

    def add_manual_time(
        self,
        race: Race,
        chip: str,
        elapsed: Union[str, timedelta],
        snapshot: Optional[List[TimedResult]] = None,
    ) -> Reconciliation:
        """Record an operator-entered finish time for `chip`.

        `elapsed` is "HH:MM:SS" since race start (or a timedelta). Every
        result the chip already has is marked invalid in the ledger so the
        manual time is the one that counts.
        """
        chip = (chip or "").strip()
        if not chip:
            raise ManualTimeError("chip number is required")
        if not race.has_chip(chip):
            raise ManualTimeError(f"chip {chip} is not registered in race {race.name!r}")
        if isinstance(elapsed, str):
            try:
                elapsed = parse_clock(elapsed)
            except ValueError as ex:
                raise ManualTimeError(str(ex)) from None
        if elapsed < race.min_time:
            raise ManualTimeError(f"time {elapsed} is shorter than the minimum time {race.min_time}")

        ts = race.start_time + elapsed
        race = race.copy()
        ledger = InvalidationLedger(race)
        if snapshot is None:
            snapshot = self.reconcile(race)

        warnings: List[str] = []
        entry = ManualEntry(chip=chip, time=ts, race_name=race.name)
        manual_saved = True
        try:
            entries = self.manual.load(race.name)
            entries.append(entry)
            self.manual.save(race.name, entries)
        except (OSError, ValueError, KeyError, PersistenceError) as ex:
            manual_saved = False
            log.warning("manual time for %s/%s not saved: %s", race.name, chip, ex)
            warnings.append(f"manual time not saved, it is lost on restart: {ex}")

        superseded = [r for r in snapshot if r.chip == chip and r.time != ts]
        marked = ledger.mark_all(superseded)
        # the new entry itself starts out valid
        unmarked = [make_key(chip, ts)]
        ledger.unmark(unmarked[0])
        race = self._persist_ledger(race, marked, unmarked, warnings)

        if manual_saved:
            out = self.run(race)
        else:
            results = [replace(r, invalid=ledger.is_invalid(r.chip, r.time)) for r in snapshot]
            results.append(TimedResult(chip=chip, time=ts, duration=elapsed, invalid=False, manual=True))
            results = sort_by_time(results)
            out = Reconciliation(race=race, results=results, merged=results, manual_count=1)
            w = self._write_cache(race.name, out.merged)
            if w:
                warnings.append(w)
        out.warnings = warnings + out.warnings
        log.info("%s: manual time %s for chip %s", race.name, elapsed, chip)
        return out
