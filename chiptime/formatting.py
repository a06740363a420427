"""
chiptime/formatting.py
----------------------
Human-facing renderings of a result list: the printable result sheet and
the CSV export. Pure functions, no I/O.
"""

from __future__ import annotations

import csv
import io
from datetime import timedelta
from typing import Iterable, List, Optional

from .models import Race, TimedResult

CSV_HEADER = ["place", "chip", "elapsed", "status", "manual"]


def format_elapsed(d: timedelta) -> str:
    """MM:SS below one hour, HH:MM:SS from one hour up. Whole seconds."""
    total = int(d.total_seconds())
    sign = "-" if total < 0 else ""
    total = abs(total)
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{sign}{h:02d}:{m:02d}:{s:02d}"
    return f"{sign}{m:02d}:{s:02d}"


def format_min_time(d: timedelta) -> str:
    total = int(d.total_seconds())
    m, s = divmod(total, 60)
    return f"{m}:{s:02d}"


def _places(results: Iterable[TimedResult]) -> List[Optional[int]]:
    """Finishing place per row; invalid rows get None."""
    out: List[Optional[int]] = []
    place = 0
    for r in results:
        if r.invalid:
            out.append(None)
        else:
            place += 1
            out.append(place)
    return out


def format_results(race: Race, results: List[TimedResult]) -> str:
    lines = [
        f"Results: {race.name}",
        f"Start: {race.start_time:%Y-%m-%d %H:%M}",
        f"Minimum time: {format_min_time(race.min_time)}",
        "",
    ]
    for r, place in zip(results, _places(results)):
        row = f"{r.chip}\t{format_elapsed(r.duration)}"
        if place is None:
            row += "\t(invalid)"
        elif r.manual:
            row += "\t(manual)"
        lines.append(row)
    return "\n".join(lines) + "\n"


def results_to_csv(results: List[TimedResult]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(CSV_HEADER)
    for r, place in zip(results, _places(results)):
        w.writerow([
            "" if place is None else place,
            r.chip,
            format_elapsed(r.duration),
            "invalid" if r.invalid else "ok",
            "yes" if r.manual else "no",
        ])
    return buf.getvalue()


def finisher_count(results: Iterable[TimedResult]) -> int:
    return len({r.chip for r in results if not r.invalid})
