"""
chiptime/storage.py
-------------------
JSON persistence under the configured data directory.

    races.json                   every Race (the durable home of each ledger)
    manual_times_<race>.json     ManualEntry list per race, arrival order
    results_<race>.json          last reconciled result list (derived, disposable)

Responsibilities
----------------
- Writes are atomic: serialize to a temp file in the same directory, then
  os.replace(). A failed write leaves the previous file intact and raises
  PersistenceError; callers log it and keep going on in-memory state.
- Missing files read as empty lists, never as errors.
- RaceStore.update() is the one place a race is read-modified-written, under
  a single store lock, so concurrent writers never interleave their saves.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional

from .errors import PersistenceError, RaceExistsError, RaceNotFoundError
from .models import ManualEntry, Race, TimedResult

log = logging.getLogger("chiptime.storage")

RACES_FILE = "races.json"

_UNSAFE = re.compile(r"[\\/:*?\"<>|\x00-\x1f]")


def safe_name(name: str) -> str:
    """File-system safe rendering of a race name (path separators etc. -> '_')."""
    return _UNSAFE.sub("_", name).strip() or "_"


def write_json_atomic(path: Path, payload: Any) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
                f.write("\n")
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
    except OSError as ex:
        log.error("write failed: %s (%s)", path, ex)
        raise PersistenceError(path, ex) from ex


def read_json_list(path: Path) -> List[Any]:
    """[] when the file does not exist; ValueError when it is not a JSON list."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    data = json.loads(text) if text.strip() else []
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list, got {type(data).__name__}")
    return data


# ---------------------------------------------------------------------------
# Races
# ---------------------------------------------------------------------------

class RaceStore:
    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / RACES_FILE
        self._lock = threading.RLock()

    def load(self) -> List[Race]:
        """All races. A race with an unparseable minTime makes the whole load fail."""
        with self._lock:
            return [Race.from_json(d) for d in read_json_list(self.path)]

    def save(self, races: List[Race]) -> None:
        with self._lock:
            write_json_atomic(self.path, [r.to_json() for r in races])

    def get(self, name: str) -> Optional[Race]:
        for r in self.load():
            if r.name == name:
                return r
        return None

    def require(self, name: str) -> Race:
        race = self.get(name)
        if race is None:
            raise RaceNotFoundError(name)
        return race

    def add(self, race: Race) -> Race:
        with self._lock:
            races = self.load()
            if any(r.name == race.name for r in races):
                raise RaceExistsError(race.name)
            races.append(race)
            self.save(races)
            log.info("race added: %s", race.name)
            return race

    def replace(self, name: str, race: Race) -> Race:
        """Overwrite race `name` with `race` (which may carry a new name)."""
        with self._lock:
            races = self.load()
            idx = next((i for i, r in enumerate(races) if r.name == name), None)
            if idx is None:
                raise RaceNotFoundError(name)
            if race.name != name and any(r.name == race.name for r in races):
                raise RaceExistsError(race.name)
            races[idx] = race
            self.save(races)
            return race

    def update(self, name: str, fn: Callable[[Race], Optional[Race]]) -> Race:
        """Load race `name`, apply `fn`, persist, return the stored race.

        `fn` may mutate its argument in place and return None, or return a
        replacement. Load, mutation and save happen under one lock.
        """
        with self._lock:
            races = self.load()
            idx = next((i for i, r in enumerate(races) if r.name == name), None)
            if idx is None:
                raise RaceNotFoundError(name)
            current = races[idx]
            new = fn(current)
            races[idx] = new if new is not None else current
            self.save(races)
            return races[idx]

    def delete(self, name: str) -> Race:
        with self._lock:
            races = self.load()
            keep = [r for r in races if r.name != name]
            if len(keep) == len(races):
                raise RaceNotFoundError(name)
            self.save(keep)
            log.info("race deleted: %s", name)
            return next(r for r in races if r.name == name)


# ---------------------------------------------------------------------------
# Manual times
# ---------------------------------------------------------------------------

class ManualOverrideStore:
    """Full-list load/save of a race's manual times. No partial appends."""

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)

    def path(self, race_name: str) -> Path:
        return self.data_dir / f"manual_times_{safe_name(race_name)}.json"

    def load(self, race_name: str) -> List[ManualEntry]:
        return [ManualEntry.from_json(d) for d in read_json_list(self.path(race_name))]

    def save(self, race_name: str, entries: List[ManualEntry]) -> None:
        write_json_atomic(self.path(race_name), [e.to_json() for e in entries])

    def delete(self, race_name: str) -> None:
        try:
            self.path(race_name).unlink()
        except FileNotFoundError:
            pass


# ---------------------------------------------------------------------------
# Result cache
# ---------------------------------------------------------------------------

class ResultCache:
    """results_<race>.json: the reconciler's last output, rebuilt on demand."""

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)

    def path(self, race_name: str) -> Path:
        return self.data_dir / f"results_{safe_name(race_name)}.json"

    def write(self, race_name: str, results: List[TimedResult]) -> None:
        write_json_atomic(self.path(race_name), [r.to_json() for r in results])

    def load(self, race_name: str) -> List[TimedResult]:
        """Cached results, or [] when absent or unreadable (it is derived data)."""
        try:
            return [TimedResult.from_json(d) for d in read_json_list(self.path(race_name))]
        except (OSError, ValueError, KeyError) as ex:
            log.warning("ignoring unreadable cache %s: %s", self.path(race_name), ex)
            return []

    def invalidate(self, race_name: str) -> bool:
        """Delete the cache file. True if it is gone afterwards."""
        try:
            self.path(race_name).unlink()
        except FileNotFoundError:
            pass
        except OSError as ex:
            log.warning("could not remove cache %s: %s", self.path(race_name), ex)
            return False
        return True
