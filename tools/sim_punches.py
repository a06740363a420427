#!/usr/bin/env python3
"""
Punch simulator for exercising live update.

Appends tab-separated punch lines in the timing device format

    <chip>\t<YYYY-MM-DD HH:MM:SS.mmm>

to a file at a fixed interval. Each chip finishes once, at its own pace,
after --min-minutes of simulated race time; --dupes adds a second punch a
few seconds later for some chips so the invalidation workflow has something
to work with. Simulated time runs --speed times faster than the wall clock.

    python tools/sim_punches.py punches.txt --start "2024-01-01 09:00:00" --chips 1-20
"""

from __future__ import annotations

import argparse
import random
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, TextIO

DEVICE_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def format_punch_line(chip: str, ts: datetime) -> str:
    """One device line; milliseconds, not microseconds."""
    return f"{chip}\t{ts.strftime(DEVICE_TS_FORMAT)[:-3]}\n"


def parse_chip_range(text: str) -> List[str]:
    """'1-3,7,10-11' -> ['1', '2', '3', '7', '10', '11']"""
    out: List[str] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            out.extend(str(n) for n in range(int(lo), int(hi) + 1))
        else:
            out.append(part)
    return out


@dataclass
class Finisher:
    chip: str
    at: datetime


def plan_finishes(chips: List[str], start: datetime, min_minutes: float,
                  spread_minutes: float, dupes: float, rng: random.Random) -> List[Finisher]:
    """Finish punches for every chip, sorted by time; some chips get a duplicate."""
    out: List[Finisher] = []
    for chip in chips:
        secs = min_minutes * 60 + rng.uniform(0, spread_minutes * 60)
        at = start + timedelta(seconds=secs, milliseconds=rng.randint(0, 999))
        out.append(Finisher(chip, at))
        if rng.random() < dupes:
            out.append(Finisher(chip, at + timedelta(seconds=rng.uniform(2, 20))))
    out.sort(key=lambda f: f.at)
    return out


def append_punch(f: TextIO, chip: str, ts: datetime) -> None:
    f.write(format_punch_line(chip, ts))
    f.flush()


# -------------------- args / entrypoint --------------------

def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="ChipTime punch simulator")
    p.add_argument("out", type=Path, help="punch file to append to")
    p.add_argument("--start", default=None, help="race start 'YYYY-MM-DD HH:MM:SS' (default: now)")
    p.add_argument("--chips", default="1-20", help="chip numbers, e.g. 1-20,42")
    p.add_argument("--min-minutes", type=float, default=10.0)
    p.add_argument("--spread-minutes", type=float, default=20.0)
    p.add_argument("--dupes", type=float, default=0.2, help="share of chips punching twice")
    p.add_argument("--speed", type=float, default=60.0, help="simulated seconds per real second")
    p.add_argument("--noise", type=int, default=0, help="unregistered chip punches to mix in")
    p.add_argument("--seed", type=int, default=42)
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    rng = random.Random(args.seed)
    start = datetime.strptime(args.start, "%Y-%m-%d %H:%M:%S") if args.start else datetime.now().replace(microsecond=0)
    plan = plan_finishes(parse_chip_range(args.chips), start, args.min_minutes,
                         args.spread_minutes, args.dupes, rng)
    for _ in range(args.noise):
        plan.append(Finisher(str(9000 + rng.randint(0, 999)), start + timedelta(seconds=rng.uniform(0, 1800))))
    plan.sort(key=lambda f: f.at)

    stop = {"quit": False}

    def handle_sig(sig, frame):
        stop["quit"] = True

    signal.signal(signal.SIGINT, handle_sig)
    signal.signal(signal.SIGTERM, handle_sig)

    args.out.parent.mkdir(parents=True, exist_ok=True)
    sim_clock = start
    with args.out.open("a", encoding="utf-8") as f:
        for fin in plan:
            wait = (fin.at - sim_clock).total_seconds() / max(args.speed, 0.001)
            deadline = time.monotonic() + max(0.0, wait)
            while not stop["quit"] and time.monotonic() < deadline:
                time.sleep(max(0.0, min(0.1, deadline - time.monotonic())))
            if stop["quit"]:
                break
            append_punch(f, fin.chip, fin.at)
            sim_clock = fin.at
            sys.stdout.write(format_punch_line(fin.chip, fin.at))
            sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
