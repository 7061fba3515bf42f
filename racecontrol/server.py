from __future__ import annotations

"""
racecontrol/server.py
---------------------
Thin FastAPI adapter over the race engine for the trackside terminals
(front desk, race control, lap-line observer, public displays).

- One route per engine operation; RaceControlError subclasses map to their
  `http_status` with a JSON body {"error", "message", ...}.
- GET /events is the push channel (Server-Sent Events). On connect a terminal
  receives a `state` frame with the current race, then every engine event.
- GET /races reads race history straight from SQLite via aiosqlite so long
  listings never contend with the engine's connection.

Authentication, rate limiting and static UI serving live elsewhere.

Run:
    python -m racecontrol.server
    # or: uvicorn racecontrol.server:app
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from .broadcast import FanoutBroadcaster, SseBroadcaster, format_sse
from .config_loader import CONFIG, get_lighting_cfg, get_log_level, get_server_bind
from .constants import RaceStatus
from .errors import RaceControlError, ValidationError
from .flag_lights import OscFlagLights
from .race_engine import RaceEngine, make_engine

log = logging.getLogger("racecontrol.server")

SSE_KEEPALIVE_S = 15.0


# ------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------
class DriverIn(BaseModel):
    name: Optional[str] = None
    carNumber: Optional[int] = None


class ModeIn(BaseModel):
    mode: Optional[str] = None


class LapIn(BaseModel):
    carNumber: int
    timestamp: Optional[int] = None


# ------------------------------------------------------------
# Push channel
# ------------------------------------------------------------
async def event_stream(engine: RaceEngine, sse: SseBroadcaster, q: "asyncio.Queue",
                       is_disconnected: Callable[[], Awaitable[bool]],
                       keepalive_s: float = SSE_KEEPALIVE_S, frames: Optional[int] = None):
    """
    SSE frames for one terminal: a `state` frame, then every engine event.
    Ends when the client goes away or once `frames` frames (state included) went out.
    Always unsubscribes `q` on the way out.
    """
    sent = 0
    try:
        yield format_sse("state", engine.get_current())
        sent += 1
        while frames is None or sent < frames:
            if await is_disconnected():
                return
            try:
                event, payload = await asyncio.wait_for(q.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event, payload)
            sent += 1
    finally:
        sse.unsubscribe(q)


# ------------------------------------------------------------
# History (aiosqlite)
# ------------------------------------------------------------
async def fetch_race_history(db_path: str, status: Optional[str], limit: int, offset: int) -> Dict[str, Any]:
    where, params = "", ()
    if status:
        try:
            where, params = "WHERE status=?", (RaceStatus(status.lower()).value,)
        except ValueError:
            raise ValidationError(f"Invalid race status '{status}'", field="status")

    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(f"SELECT COUNT(*) FROM v_races_summary {where}", params) as cur:
            total = (await cur.fetchone())[0]
        async with db.execute(
            f"SELECT * FROM v_races_summary {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ) as cur:
            rows = [dict(r) for r in await cur.fetchall()]
    return {"data": rows, "pagination": {"limit": limit, "offset": offset, "total": int(total)}}


# ------------------------------------------------------------
# App factory
# ------------------------------------------------------------
def create_app(engine: Optional[RaceEngine] = None, sse: Optional[SseBroadcaster] = None,
               cfg: Optional[dict] = None) -> FastAPI:
    """
    Build the app. With no engine, wire one from config: SQLite store, SSE fan-out
    and the OSC track lights. A caller passing its own engine must also pass the
    SseBroadcaster that engine publishes to.
    """
    cfg = CONFIG if cfg is None else cfg
    lights: Optional[OscFlagLights] = None
    if engine is None:
        sse = sse or SseBroadcaster()
        lights = OscFlagLights(get_lighting_cfg(cfg))
        engine = make_engine(cfg, FanoutBroadcaster([sse, lights]))
    sse = sse or SseBroadcaster()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if lights is not None:
            lights.start()
        log.info("race control up", extra={"environment": engine.environment})
        yield
        engine.shutdown()
        if lights is not None:
            lights.stop()

    app = FastAPI(title="Race Control", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.state.sse = sse

    @app.exception_handler(RaceControlError)
    async def _race_error(request: Request, exc: RaceControlError):
        log.warning("rejected %s %s: %s", request.method, request.url.path, exc.message,
                    extra={"kind": exc.kind})
        return JSONResponse(status_code=exc.http_status, content=exc.as_dict())

    # ---------------------- health ----------------------
    @app.get("/health")
    def health():
        return {"ok": True, "environment": engine.environment, "listeners": sse.listener_count}

    # ---------------------- races ----------------------
    @app.get("/races")
    async def list_races(status: Optional[str] = None,
                         limit: int = Query(10, ge=1, le=100),
                         offset: int = Query(0, ge=0)):
        db_path = getattr(engine.store, "db_path", None)
        if not db_path or db_path == ":memory:":
            return engine.list_races(status, limit=limit, offset=offset)
        return await fetch_race_history(str(Path(db_path)), status, limit, offset)

    @app.get("/races/current")
    def current_race():
        return engine.get_current()

    @app.post("/races", status_code=201)
    def create_race():
        return engine.create_session().as_dict()

    @app.get("/races/{race_id}")
    def get_race(race_id: int):
        race = engine.get_race(race_id)
        return {"race": race.as_dict(include_laps=True), "stats": engine.get_stats(race_id)}

    @app.delete("/races/{race_id}", status_code=204)
    def delete_race(race_id: int):
        engine.delete_session(race_id)
        return Response(status_code=204)

    @app.post("/races/{race_id}/start")
    def start_race(race_id: int):
        race = engine.start_session(race_id)
        return {"race": race.as_dict(), "stats": engine.get_stats(race_id)}

    @app.post("/races/{race_id}/end")
    def end_race(race_id: int):
        stats = engine.end_session(race_id)
        return {"race": engine.get_race(race_id).as_dict(), "stats": stats}

    @app.post("/races/{race_id}/mode")
    def change_mode(race_id: int, body: ModeIn):
        return {"race": engine.change_mode(race_id, body.mode).as_dict()}

    @app.get("/races/{race_id}/timer")
    def race_timer(race_id: int):
        return engine.timer_state(race_id)

    # ---------------------- drivers ----------------------
    @app.get("/races/{race_id}/drivers")
    def list_drivers(race_id: int) -> Dict[str, List[Dict[str, Any]]]:
        return {"drivers": [d.as_dict() for d in engine.get_drivers(race_id)]}

    @app.post("/races/{race_id}/drivers", status_code=201)
    def add_driver(race_id: int, body: DriverIn):
        driver = engine.add_driver(race_id, body.name, body.carNumber)
        return {"driver": driver.as_dict(), "stats": engine.get_stats(race_id)}

    @app.put("/races/{race_id}/drivers/{driver_id}")
    def update_driver(race_id: int, driver_id: int, body: DriverIn):
        driver = engine.update_driver(race_id, driver_id, body.name, body.carNumber)
        return {"driver": driver.as_dict(), "stats": engine.get_stats(race_id)}

    @app.delete("/races/{race_id}/drivers/{driver_id}", status_code=204)
    def remove_driver(race_id: int, driver_id: int):
        engine.remove_driver(race_id, driver_id)
        return Response(status_code=204)

    # ---------------------- laps & standings ----------------------
    @app.get("/races/{race_id}/laps")
    def list_laps(race_id: int):
        return {"laps": [l.as_dict() for l in engine.get_laps(race_id)]}

    @app.post("/races/{race_id}/laps", status_code=201)
    def record_lap(race_id: int, body: LapIn):
        lap = engine.record_lap(race_id, body.carNumber, body.timestamp)
        return {"lap": lap.as_dict(), "leaderboard": engine.get_leaderboard(race_id)}

    @app.get("/races/{race_id}/stats")
    def race_stats(race_id: int):
        return engine.get_stats(race_id)

    @app.get("/races/{race_id}/leaderboard")
    def leaderboard(race_id: int):
        return {"raceId": race_id, "leaderboard": engine.get_leaderboard(race_id)}

    # ---------------------- push channel ----------------------
    @app.get("/events")
    async def events(request: Request, frames: Optional[int] = Query(None, ge=1)):
        q = sse.subscribe()
        return StreamingResponse(event_stream(engine, sse, q, request.is_disconnected, frames=frames),
                                 media_type="text/event-stream",
                                 headers={"Cache-Control": "no-cache"})

    return app


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host, port = get_server_bind()
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
