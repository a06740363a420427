from __future__ import annotations

import importlib.util
import random
import sys
from datetime import timedelta
from pathlib import Path

from chiptime.punch_parser import RecordParser

from conftest import START, at


def _load_sim_module():
    script_path = Path(__file__).resolve().parents[1] / "tools" / "sim_punches.py"
    spec = importlib.util.spec_from_file_location("sim_punches", script_path)
    assert spec is not None
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    loader = spec.loader
    assert loader is not None
    loader.exec_module(module)
    return module


sim = _load_sim_module()


def test_format_punch_line_matches_device_format() -> None:
    assert sim.format_punch_line("42", START.replace(minute=9, second=59, microsecond=500_000)) == \
        "42\t2024-01-01 09:09:59.500\n"


def test_parse_chip_range() -> None:
    assert sim.parse_chip_range("1-3,7, 10-11") == ["1", "2", "3", "7", "10", "11"]
    assert sim.parse_chip_range("") == []


def test_plan_finishes_respects_minimum() -> None:
    plan = sim.plan_finishes(["1", "2", "3"], START, min_minutes=10, spread_minutes=5, dupes=1.0,
                             rng=random.Random(1))
    assert sorted({f.chip for f in plan}) == ["1", "2", "3"]
    assert len(plan) == 6
    assert all(f.at - START >= timedelta(minutes=10) for f in plan)
    assert [f.at for f in plan] == sorted(f.at for f in plan)


def test_simulated_lines_parse(tmp_path: Path, make_race) -> None:
    path = tmp_path / "sim.txt"
    with path.open("a", encoding="utf-8") as f:
        sim.append_punch(f, "42", START.replace(minute=9, second=59, microsecond=500_000))
        sim.append_punch(f, "42", at(9, 15))

    parsed = RecordParser().parse(make_race(results_file=path))
    assert [(r.chip, r.time) for r in parsed.results] == [("42", at(9, 10))]
