from __future__ import annotations
"""
chiptime/server.py
------------------
HTTP API over TimingService (FastAPI).

Routes
------
    GET    /healthz
    GET    /races                          POST /races
    GET    /races/{name}                   PUT  /races/{name}      DELETE /races/{name}
    GET    /races/{name}/results?search=
    POST   /races/{name}/results/toggle    {chip, time}
    POST   /races/{name}/manual            {chip, elapsed: "HH:MM:SS"}
    POST   /races/{name}/live              {enabled}
    GET    /races/{name}/export.txt        printable sheet
    GET    /races/{name}/export.csv
    POST   /views                          {race, search}
    GET    /views/{id}    PUT /views/{id}/search    DELETE /views/{id}
    GET    /races/{name}/stream            SSE "race_updated" events

Domain errors map to status codes in one exception handler:
not found -> 404, name clash / watcher state -> 409, bad input -> 400.

Live-update watchers run on their own threads; RaceEventBus callbacks hop
onto the event loop with call_soon_threadsafe before touching asyncio queues.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from .durations import parse_duration
from .errors import (
    ChipTimeError,
    DurationParseError,
    ManualTimeError,
    RaceExistsError,
    RaceNotFoundError,
    ResultNotFoundError,
    ViewNotFoundError,
    WatcherConfigError,
    WatcherStateError,
)
from .events import RaceUpdated
from .formatting import finisher_count, format_elapsed, format_results, results_to_csv
from .models import Race, TimedResult, ViewState, parse_iso
from .reconciler import filter_results
from .service import TimingService, chip_map

log = logging.getLogger("chiptime.server")

SSE_KEEPALIVE_S = 15.0


# ------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------

class RaceIn(BaseModel):
    name: str
    start_time: datetime
    min_time: str = "0s"                 # duration string: "10m", "1h30m0s"
    chips: List[str] = []
    results_file: str = ""
    live_update: bool = False


class RaceEditIn(BaseModel):
    name: Optional[str] = None
    start_time: Optional[datetime] = None
    min_time: Optional[str] = None
    chips: Optional[List[str]] = None
    results_file: Optional[str] = None


class ToggleIn(BaseModel):
    chip: str
    time: datetime


class ManualIn(BaseModel):
    chip: str
    elapsed: str = Field(..., description="time since start, HH:MM:SS")


class LiveIn(BaseModel):
    enabled: bool


class ViewIn(BaseModel):
    race: str
    search: str = ""


class SearchIn(BaseModel):
    search: str = ""


# ------------------------------------------------------------
# Shapes
# ------------------------------------------------------------

def _result_out(r: TimedResult) -> Dict[str, Any]:
    d = r.to_json()
    d["elapsed"] = format_elapsed(r.duration)
    return d


def _results_out(results: List[TimedResult], warnings: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "results": [_result_out(r) for r in results],
        "count": len(results),
        "finishers": finisher_count(results),
        "warnings": list(warnings or []),
    }


def _view_out(view_id: str, st: ViewState) -> Dict[str, Any]:
    return {
        "id": view_id,
        "race": st.race_name,
        "search": st.search,
        "all_count": len(st.all_results),
        "results": [_result_out(r) for r in st.current_results],
        "warning": st.warning,
    }


def _sse_frame(evt: RaceUpdated) -> str:
    return f"event: race_updated\ndata: {json.dumps(evt.to_json(), separators=(',', ':'))}\n\n"


def _status_for(ex: ChipTimeError) -> int:
    if isinstance(ex, (RaceNotFoundError, ViewNotFoundError, ResultNotFoundError)):
        return 404
    if isinstance(ex, (RaceExistsError, WatcherStateError)):
        return 409
    if isinstance(ex, (WatcherConfigError, ManualTimeError, DurationParseError)):
        return 400
    return 500


def _min_time(text: str):
    return parse_duration(text.strip() or "0s")


# ------------------------------------------------------------
# App factory
# ------------------------------------------------------------

def create_app(service: Optional[TimingService] = None) -> FastAPI:
    svc = service or TimingService()
    app = FastAPI(title="ChipTime", version="0.3.0")
    app.state.service = svc

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChipTimeError)
    async def _domain_error(request: Request, ex: ChipTimeError):
        code = _status_for(ex)
        if code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, ex)
        return JSONResponse(status_code=code, content={"detail": str(ex), "error": type(ex).__name__})

    @app.on_event("startup")
    async def restore_watchers() -> None:
        started = await asyncio.to_thread(svc.restore_live_updates)
        if started:
            log.info("live update restored for: %s", ", ".join(started))

    @app.on_event("shutdown")
    async def stop_watchers() -> None:
        await asyncio.to_thread(svc.shutdown)

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "data_dir": str(svc.data_dir), "watching": svc.registry.watcher_names()}

    app.include_router(_race_router(svc))
    app.include_router(_view_router(svc))
    return app


def _race_out(svc: TimingService, race: Race) -> Dict[str, Any]:
    d = race.to_json()
    d["watching"] = svc.registry.has_watcher(race.name)
    return d


def _race_router(svc: TimingService) -> APIRouter:
    router = APIRouter(prefix="/races", tags=["races"])

    @router.get("")
    def list_races():
        return {"races": [_race_out(svc, r) for r in svc.list_races()]}

    @router.post("", status_code=201)
    def create_race(body: RaceIn):
        race = Race(
            name=body.name.strip(),
            start_time=parse_iso(body.start_time),
            min_time=_min_time(body.min_time),
            chips=chip_map(body.chips),
            results_file=body.results_file,
            live_update=body.live_update,
        )
        if not race.name:
            raise HTTPException(status_code=400, detail="race name is required")
        return _race_out(svc, svc.create_race(race))

    @router.get("/{name}")
    def get_race(name: str):
        return _race_out(svc, svc.get_race(name))

    @router.put("/{name}")
    def edit_race(name: str, body: RaceEditIn):
        race = svc.update_race(
            name,
            new_name=body.name,
            start_time=parse_iso(body.start_time) if body.start_time is not None else None,
            min_time=_min_time(body.min_time) if body.min_time is not None else None,
            chips=body.chips,
            results_file=body.results_file,
        )
        return _race_out(svc, race)

    @router.delete("/{name}")
    def delete_race(name: str):
        removed = svc.delete_race(name)
        return {"deleted": removed.name}

    @router.get("/{name}/results")
    def results(name: str, search: str = ""):
        out = svc.reconcile(name)
        return _results_out(filter_results(out.results, search), out.warnings)

    @router.post("/{name}/results/toggle")
    def toggle(name: str, body: ToggleIn):
        out = svc.toggle_invalid(name, body.chip.strip(), parse_iso(body.time))
        payload = _results_out(out.results, out.warnings)
        payload.update({
            "invalid": out.invalid,
            "added": _result_out(out.added) if out.added else None,
            "removed": [_result_out(r) for r in out.removed],
        })
        return payload

    @router.post("/{name}/manual", status_code=201)
    def manual(name: str, body: ManualIn):
        out = svc.add_manual_time(name, body.chip, body.elapsed)
        return _results_out(out.results, out.warnings)

    @router.post("/{name}/live")
    def live(name: str, body: LiveIn):
        return _race_out(svc, svc.set_live_update(name, body.enabled))

    @router.get("/{name}/export.txt")
    def export_txt(name: str):
        race = svc.get_race(name)
        return PlainTextResponse(format_results(race, svc.reconcile(name).results))

    @router.get("/{name}/export.csv")
    def export_csv(name: str):
        text = results_to_csv(svc.reconcile(name).results)
        return StreamingResponse(
            iter([text]),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="results_{name}.csv"'},
        )

    @router.get("/{name}/stream")
    async def stream(name: str, request: Request, once: bool = False):
        """EventSource stream of RaceUpdated for one race. `once` ends after the first event."""
        svc.get_race(name)
        loop = asyncio.get_running_loop()
        q: asyncio.Queue[RaceUpdated] = asyncio.Queue(maxsize=256)

        def on_event(evt: RaceUpdated) -> None:
            loop.call_soon_threadsafe(_offer, q, evt)

        token = svc.bus.subscribe(name, on_event)

        async def gen():
            try:
                while not await request.is_disconnected():
                    try:
                        evt = await asyncio.wait_for(q.get(), timeout=SSE_KEEPALIVE_S)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield _sse_frame(evt)
                    if once:
                        break
            finally:
                svc.bus.unsubscribe(token)

        return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})

    return router


def _offer(q: "asyncio.Queue[RaceUpdated]", evt: RaceUpdated) -> None:
    # slow client: drop the oldest event rather than grow without bound
    if q.full():
        q.get_nowait()
    q.put_nowait(evt)


def _view_router(svc: TimingService) -> APIRouter:
    router = APIRouter(prefix="/views", tags=["views"])

    @router.post("", status_code=201)
    def open_view(body: ViewIn):
        view_id = svc.open_view(body.race, body.search)
        return _view_out(view_id, svc.view(view_id))

    @router.get("/{view_id}")
    def get_view(view_id: str):
        return _view_out(view_id, svc.view(view_id))

    @router.put("/{view_id}/search")
    def set_search(view_id: str, body: SearchIn):
        return _view_out(view_id, svc.set_search(view_id, body.search))

    @router.delete("/{view_id}")
    def close_view(view_id: str):
        svc.close_view(view_id)
        return {"closed": view_id}

    return router


app = create_app()
# ---------- End of server.py ----------
