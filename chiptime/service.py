"""
chiptime/service.py
-------------------
TimingService: the single object the HTTP layer and the CLI talk to.

Wiring
------
    RaceStore / ManualOverrideStore / ResultCache   (storage.py)
    RecordParser -> ResultReconciler                (punch_parser.py, reconciler.py)
    ConcurrencyRegistry                             (watcher handles, views, search text)
    RaceEventBus                                    (RaceUpdated fan-out)
    LiveWatcher per live race                       (watcher.py)

Every mutation of a race (toggle, manual time, edit, live flag) runs under a
per-race lock so user-triggered writes for one race never interleave. The
watcher's own reconcile only replaces the result cache and is not serialized
against them (last write wins for the cache).

Views
-----
A view is one open result listing: race name, search text, the full result
list and the filtered one. After every change to a race, each of its open
views is refreshed (re-applying its search) and a RaceUpdated is published.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import events
from .config_loader import get_data_dir, get_timestamp_format, get_watch_interval
from .errors import PersistenceError, ViewNotFoundError, WatcherConfigError
from .events import RaceEventBus, RaceUpdated
from .models import Race, TimedResult, ViewState
from .punch_parser import RecordParser
from .reconciler import Reconciliation, ResultReconciler, ToggleOutcome, filter_results
from .registry import ConcurrencyRegistry
from .storage import ManualOverrideStore, RaceStore, ResultCache
from .watcher import LiveWatcher

log = logging.getLogger("chiptime.service")


class TimingService:
    def __init__(
        self,
        data_dir: Optional[Path | str] = None,
        *,
        parser: Optional[RecordParser] = None,
        registry: Optional[ConcurrencyRegistry] = None,
        bus: Optional[RaceEventBus] = None,
        watch_interval: Optional[float] = None,
    ):
        self.data_dir = Path(data_dir) if data_dir is not None else get_data_dir()
        self.races = RaceStore(self.data_dir)
        self.manual = ManualOverrideStore(self.data_dir)
        self.cache = ResultCache(self.data_dir)
        self.parser = parser or RecordParser(get_timestamp_format())
        self.reconciler = ResultReconciler(self.manual, self.cache, self.parser, self.races)
        self.registry = registry or ConcurrencyRegistry()
        self.bus = bus or RaceEventBus()
        self.watch_interval = watch_interval if watch_interval is not None else get_watch_interval()

        self._locks_guard = threading.Lock()
        self._race_locks: Dict[str, threading.RLock] = {}

    def _race_lock(self, name: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._race_locks.get(name)
            if lock is None:
                lock = self._race_locks[name] = threading.RLock()
            return lock

    # ------------------------------------------------------------------
    # races
    # ------------------------------------------------------------------

    def list_races(self) -> List[Race]:
        return self.races.load()

    def get_race(self, name: str) -> Race:
        return self.races.require(name)

    def create_race(self, race: Race) -> Race:
        """Store a new race. A race created with live_update on starts watching."""
        want_live = race.live_update
        if want_live and not race.results_file:
            raise WatcherConfigError(f"race {race.name!r} has no results file to watch")
        stored = self.races.add(replace(race.copy(), live_update=False))
        self._publish(stored.name, events.RACE_CHANGED)
        if want_live:
            stored = self.enable_live_update(stored.name)
        return stored

    def update_race(
        self,
        name: str,
        *,
        new_name: Optional[str] = None,
        start_time: Optional[datetime] = None,
        min_time: Optional[timedelta] = None,
        chips: Optional[Iterable[str]] = None,
        results_file: Optional[str] = None,
    ) -> Race:
        """Edit a race. The ledger and the live flag carry over; the cache is dropped.

        Renaming moves the race's manual times and open views to the new name.
        A running watcher is restarted so it follows the edited race.
        """
        with self._race_lock(name):
            current = self.races.require(name)
            edited = current.copy()
            if new_name is not None and new_name.strip():
                edited.name = new_name.strip()
            if start_time is not None:
                edited.start_time = start_time
            if min_time is not None:
                edited.min_time = min_time
            if chips is not None:
                edited.chips = chip_map(chips)
            if results_file is not None:
                edited.results_file = results_file

            stored = self.races.replace(name, edited)
            was_live = self.registry.remove_watcher(name)
            self.cache.invalidate(name)
            if stored.name != name:
                self._move_manual_times(name, stored.name)
                self.cache.invalidate(stored.name)
                for vid, _ in self.registry.views_for_race(name):
                    self.registry.update_view(vid, lambda st: replace(st, race_name=stored.name))
                self._publish(name, events.RACE_DELETED)

            if was_live or stored.live_update:
                try:
                    stored = self._start_watcher(stored)
                except WatcherConfigError as ex:
                    log.warning("live update for %s not restarted: %s", stored.name, ex)
                    stored = self._persist_live_flag(stored.name, False)

        self._refresh_views(stored.name, events.RACE_CHANGED)
        return stored

    def set_results_file(self, name: str, path: str) -> Race:
        return self.update_race(name, results_file=path)

    def delete_race(self, name: str) -> Race:
        """Stop its watcher, remove the race and its cached results.

        Manual times stay on disk; re-creating the race picks them up again.
        """
        with self._race_lock(name):
            self.registry.remove_watcher(name)
            removed = self.races.delete(name)
            self.cache.invalidate(name)
        for vid, _ in self.registry.views_for_race(name):
            self.registry.update_view(vid, lambda st: replace(
                st, all_results=[], current_results=[], warning="race deleted"))
        self._publish(name, events.RACE_DELETED)
        return removed

    def _move_manual_times(self, old: str, new: str) -> None:
        try:
            entries = [replace(e, race_name=new) for e in self.manual.load(old)]
            if entries:
                self.manual.save(new, entries)
            self.manual.delete(old)
        except (OSError, ValueError, KeyError, PersistenceError) as ex:
            log.warning("manual times not moved from %s to %s: %s", old, new, ex)

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------

    def reconcile(self, name: str) -> Reconciliation:
        with self._race_lock(name):
            out = self.reconciler.run(self.races.require(name))
        self._refresh_views(name, events.RECONCILED, out.results, out.warnings)
        return out

    def results(self, name: str, search: str = "") -> List[TimedResult]:
        return filter_results(self.reconcile(name).results, search)

    def toggle_invalid(self, name: str, chip: str, ts: datetime) -> ToggleOutcome:
        with self._race_lock(name):
            race = self.races.require(name)
            out = self.reconciler.toggle_invalid(race, chip, ts)
        self._refresh_views(name, events.INVALID_TOGGLED, out.results, out.warnings)
        return out

    def add_manual_time(self, name: str, chip: str, elapsed: str | timedelta) -> Reconciliation:
        with self._race_lock(name):
            race = self.races.require(name)
            out = self.reconciler.add_manual_time(race, chip, elapsed)
        self._refresh_views(name, events.MANUAL_ADDED, out.results, out.warnings)
        return out

    # ------------------------------------------------------------------
    # live update
    # ------------------------------------------------------------------

    def enable_live_update(self, name: str) -> Race:
        """Start watching the race's punch file. No-op if already watching.

        On failure the race is stored with live_update off and the
        WatcherConfigError reaches the caller.
        """
        with self._race_lock(name):
            race = self.races.require(name)
            if self.registry.has_watcher(name):
                return race
            try:
                race = self._start_watcher(race)
            except WatcherConfigError:
                if race.live_update:
                    self._persist_live_flag(name, False)
                raise
            if not race.live_update:
                race = self._persist_live_flag(name, True)
        self._publish(name, events.LIVE_TOGGLED)
        return race

    def disable_live_update(self, name: str) -> Race:
        # stop() joins the poller, whose callbacks may need the race lock
        self.registry.remove_watcher(name)
        with self._race_lock(name):
            race = self.races.require(name)
            if race.live_update and not self.registry.has_watcher(name):
                race = self._persist_live_flag(name, False)
        self._publish(name, events.LIVE_TOGGLED)
        return race

    def set_live_update(self, name: str, enabled: bool) -> Race:
        return self.enable_live_update(name) if enabled else self.disable_live_update(name)

    def restore_live_updates(self) -> List[str]:
        """Restart watchers for races saved with live_update on. Returns the started names."""
        started: List[str] = []
        for race in self.races.load():
            if not race.live_update or self.registry.has_watcher(race.name):
                continue
            try:
                self.enable_live_update(race.name)
                started.append(race.name)
            except WatcherConfigError as ex:
                log.warning("live update for %s not restored: %s", race.name, ex)
        return started

    def shutdown(self) -> None:
        n = self.registry.stop_all_watchers()
        log.info("service shutdown: %d watcher(s) stopped", n)

    def _start_watcher(self, race: Race) -> Race:
        watcher = LiveWatcher.for_race(
            race,
            self.reconciler,
            load_race=lambda: self.races.require(race.name),
            notify=self._on_file_changed,
            interval_s=self.watch_interval,
        )
        watcher.start()
        if not self.registry.add_watcher(race.name, watcher):
            # lost a race against another enable; keep the registered one
            watcher.stop()
        return race

    def _persist_live_flag(self, name: str, enabled: bool) -> Race:
        try:
            return self.races.update(name, lambda r: replace(r, live_update=enabled))
        except PersistenceError as ex:
            log.warning("live flag for %s not saved: %s", name, ex)
            race = self.races.require(name)
            return replace(race, live_update=enabled)

    def _on_file_changed(self, race_name: str, results: List[TimedResult]) -> None:
        # runs on the watcher thread
        self._refresh_views(race_name, events.FILE_CHANGED, results)

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------

    def open_view(self, race_name: str, search: str = "") -> str:
        self.races.require(race_name)
        view_id = uuid.uuid4().hex
        self.registry.add_view(view_id, ViewState(race_name=race_name, search=search))
        self.registry.set_search(view_id, search)
        out = self.reconcile(race_name)
        log.debug("view %s opened on %s (%d results)", view_id, race_name, len(out.results))
        return view_id

    def close_view(self, view_id: str) -> None:
        if self.registry.remove_view(view_id) is None:
            raise ViewNotFoundError(view_id)

    def set_search(self, view_id: str, text: str) -> ViewState:
        text = text or ""
        self.registry.set_search(view_id, text)
        state = self.registry.update_view(view_id, lambda st: replace(
            st, search=text, current_results=filter_results(st.all_results, text)))
        if state is None:
            raise ViewNotFoundError(view_id)
        return state

    def view(self, view_id: str) -> ViewState:
        state, found = self.registry.get_view(view_id)
        if not found:
            raise ViewNotFoundError(view_id)
        return state

    def _refresh_views(
        self,
        race_name: str,
        reason: str,
        results: Optional[List[TimedResult]] = None,
        warnings: Optional[List[str]] = None,
    ) -> None:
        warning = "; ".join(warnings) if warnings else None
        if results is not None:
            for vid, _ in self.registry.views_for_race(race_name):
                search = self.registry.get_search(vid)
                self.registry.update_view(vid, lambda st, s=search: replace(
                    st,
                    search=s,
                    all_results=list(results),
                    current_results=filter_results(list(results), s),
                    warning=warning,
                ))
        self._publish(race_name, reason, len(results) if results is not None else 0)

    def _publish(self, race_name: str, reason: str, count: int = 0) -> None:
        self.bus.publish(RaceUpdated(race_name=race_name, reason=reason, result_count=count))


def chip_map(chips: Iterable[str]) -> Dict[str, bool]:
    """Registered chip set from free text lines / a list; blanks dropped."""
    out: Dict[str, bool] = {}
    for c in chips:
        c = str(c).strip()
        if c:
            out[c] = True
    return out


def parse_chip_text(text: str) -> List[str]:
    """One chip per line, or comma/space separated."""
    return [c for c in text.replace(",", "\n").split() if c]

