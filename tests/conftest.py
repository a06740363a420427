from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Tuple

import pytest

from chiptime.models import Race
from chiptime.punch_parser import RecordParser
from chiptime.reconciler import ResultReconciler
from chiptime.storage import ManualOverrideStore, RaceStore, ResultCache

START = datetime(2024, 1, 1, 9, 0, 0)


def at(hh: int, mm: int, ss: int = 0) -> datetime:
    return START.replace(hour=hh, minute=mm, second=ss)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def write_punches(tmp_path: Path) -> Callable[..., Path]:
    """write_punches([("42", "2024-01-01 09:09:59.500"), ...], name=..., append=False)"""

    def _write(lines: Iterable[Tuple[str, str]], name: str = "punches.txt", append: bool = False) -> Path:
        path = tmp_path / name
        with path.open("a" if append else "w", encoding="utf-8") as f:
            for chip, ts in lines:
                f.write(f"{chip}\t{ts}\n")
        return path

    return _write


@pytest.fixture
def scenario_file(write_punches) -> Path:
    return write_punches([
        ("42", "2024-01-01 09:09:59.500"),
        ("42", "2024-01-01 09:15:00.000"),
    ])


@pytest.fixture
def make_race() -> Callable[..., Race]:
    def _make(name: str = "Spring 10k", chips: Iterable[str] = ("42",), results_file: str | Path = "",
              min_time: timedelta = timedelta(minutes=10), **kw) -> Race:
        return Race(
            name=name,
            start_time=kw.pop("start_time", START),
            min_time=min_time,
            chips={c: True for c in chips},
            results_file=str(results_file),
            **kw,
        )

    return _make


@pytest.fixture
def store(data_dir: Path) -> RaceStore:
    return RaceStore(data_dir)


@pytest.fixture
def reconciler(data_dir: Path, store: RaceStore) -> ResultReconciler:
    return ResultReconciler(ManualOverrideStore(data_dir), ResultCache(data_dir), RecordParser(), store)


def bump_mtime(path: Path, seconds: int = 2) -> None:
    st = os.stat(path)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + seconds * 1_000_000_000))


@pytest.fixture
def bump() -> Callable[[Path], None]:
    return bump_mtime


class Recorder:
    """Thread-safe call recorder for notify callbacks."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()
        self.event = threading.Event()

    def __call__(self, *args):
        with self._lock:
            self.calls.append(args)
        self.event.set()

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.calls)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
