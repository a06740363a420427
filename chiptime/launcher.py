from __future__ import annotations
"""
chiptime/launcher.py
--------------------
Command line entry point.

    python -m chiptime.launcher [--config PATH] serve [--host H] [--port P]
    python -m chiptime.launcher [--config PATH] results RACE [--search S] [--csv]
    python -m chiptime.launcher [--config PATH] watch RACE

`serve` runs the HTTP API under uvicorn. `results` prints the result sheet
once. `watch` turns on live update for RACE and prints each change until
Ctrl+C; live update is switched back off on exit unless it was on before.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from . import config_loader
from .config_loader import get_log_level, get_server_bind, load_config, setup_logging, use_config
from .errors import ChipTimeError
from .events import RaceUpdated
from .formatting import finisher_count, format_results, results_to_csv
from .reconciler import filter_results
from .service import TimingService

log = logging.getLogger("chiptime.launcher")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="chiptime", description="ChipTime race timing")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="run the HTTP API")
    sp.add_argument("--host", help="bind address (default from config)")
    sp.add_argument("--port", type=int, help="port (default from config)")

    rp = sub.add_parser("results", help="print a race's results")
    rp.add_argument("race")
    rp.add_argument("--search", default="", help="only chips containing this text")
    rp.add_argument("--csv", action="store_true", help="CSV instead of the text sheet")

    wp = sub.add_parser("watch", help="live-update a race in the foreground")
    wp.add_argument("race")
    return ap.parse_args(argv)


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .server import create_app

    host, port = get_server_bind()
    host = args.host or host
    port = args.port or port
    log.info("serving on http://%s:%d (data: %s)", host, port, config_loader.get_data_dir())
    uvicorn.run(create_app(TimingService()), host=host, port=port, log_level=get_log_level("INFO").lower())
    return 0


def cmd_results(args: argparse.Namespace, out=sys.stdout) -> int:
    svc = TimingService()
    race = svc.get_race(args.race)
    rec = svc.reconcile(race.name)
    results = filter_results(rec.results, args.search)
    for w in rec.warnings:
        log.warning("%s", w)
    out.write(results_to_csv(results) if args.csv else format_results(race, results))
    return 0


def cmd_watch(args: argparse.Namespace, out=sys.stdout) -> int:
    svc = TimingService()
    race = svc.get_race(args.race)
    was_live = race.live_update
    done = threading.Event()
    view_id: Optional[str] = None

    def on_update(evt: RaceUpdated) -> None:
        if view_id is None:
            return
        results = svc.view(view_id).all_results
        out.write(f"[{evt.reason}] {evt.race_name}: {len(results)} results, "
                  f"{finisher_count(results)} finishers\n")
        out.flush()

    def handle_sig(sig, frame):
        done.set()

    signal.signal(signal.SIGINT, handle_sig)
    signal.signal(signal.SIGTERM, handle_sig)

    token = svc.bus.subscribe(race.name, on_update)
    try:
        view_id = svc.open_view(race.name)
        svc.enable_live_update(race.name)
        out.write(f"watching {race.results_file} (Ctrl+C to stop)\n")
        out.flush()
        done.wait()
    finally:
        svc.bus.unsubscribe(token)
        if view_id is not None:
            svc.close_view(view_id)
        if not was_live:
            svc.disable_live_update(race.name)
        svc.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    if args.config:
        use_config(load_config(args.config))
    setup_logging()

    handlers = {"serve": cmd_serve, "results": cmd_results, "watch": cmd_watch}
    try:
        return handlers[args.cmd](args)
    except ChipTimeError as ex:
        log.error("%s", ex)
        return 2


if __name__ == "__main__":
    sys.exit(main())
