from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .broadcast import Broadcaster, NullBroadcaster
from .constants import (
    INACTIVE_AFTER_MS, MAX_DRIVERS, MIN_DRIVERS, MODE_FLAGS, STATS_CACHE_TTL_MS,
    Events, RaceMode, RaceStatus,
)
from .errors import CapacityError, ConflictError, NotFoundError, StateError, ValidationError
from .models import Driver, LapRecord, Race
from .race_stats import RaceStatsService, StatsCache
from .session_timer import SessionTimer
from .store import SessionStore
from .time_utils import format_timer, get_race_duration, time_remaining, utc_ms
from .validation import validate_car_number, validate_driver_name, validate_race_mode, validate_timestamp

log = logging.getLogger("racecontrol.engine")


# ----------------------------- Race Engine -----------------------------
class RaceEngine:
    """
    Owns the race lifecycle: status/mode state machine, roster and car-number
    allocation, lap recording, and the end-of-race deadline.

    Every mutating call runs under a per-race lock, so "count of prior laps + 1"
    and "lowest free car number" are computed and written without another
    caller interleaving. The session timer takes the same lock. Events are
    published under that lock too, so terminals see them in write order.
    """

    def __init__(self, store: SessionStore, broadcaster: Optional[Broadcaster] = None,
                 stats: Optional[RaceStatsService] = None, timer: Optional[SessionTimer] = None,
                 config: Optional[dict] = None, environment: Optional[str] = None,
                 clock: Callable[[], int] = utc_ms):
        """
        config is the full loaded config ({"app": {...}}) or just the "app"
        mapping; only app.environment and app.engine.race are read.
        """
        self.cfg = config or {}
        app = self.cfg.get("app", self.cfg) or {}
        race_cfg = ((app.get("engine") or {}).get("race") or {})

        self.environment = str(environment or app.get("environment") or "production").lower()
        self.max_drivers = int(race_cfg.get("max_drivers", MAX_DRIVERS))
        durations = race_cfg.get("duration_ms") or {}
        self.race_duration_ms = int(durations.get(self.environment, get_race_duration(self.environment)))

        self.store = store
        self.broadcaster = broadcaster or NullBroadcaster()
        self._clock = clock
        self.stats = stats or RaceStatsService(
            StatsCache(int(race_cfg.get("stats_cache_ttl_ms", STATS_CACHE_TTL_MS)), clock=clock),
            clock=clock,
            inactive_after_ms=int(race_cfg.get("inactive_after_ms", INACTIVE_AFTER_MS)),
        )
        self.timer = timer or SessionTimer()

        self._create_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._race_locks: Dict[int, threading.RLock] = {}

    # ---------- plumbing ----------
    @contextmanager
    def _locked(self, race_id: int) -> Iterator[None]:
        race_id = int(race_id)
        with self._registry_lock:
            lock = self._race_locks.get(race_id)
            if lock is None:
                # locks exist only for races the store knows about
                if self.store.get_race(race_id) is None:
                    raise NotFoundError(f"Race {race_id} not found", raceId=race_id)
                lock = self._race_locks[race_id] = threading.RLock()
        with lock:
            yield

    def _forget_lock(self, race_id: int) -> None:
        with self._registry_lock:
            self._race_locks.pop(int(race_id), None)

    def _require_race(self, race_id: int) -> Race:
        race = self.store.get_race(int(race_id))
        if race is None:
            raise NotFoundError(f"Race {race_id} not found", raceId=race_id)
        return race

    def _publish(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.broadcaster.publish(event, payload)
        except Exception:
            log.exception("publish_failed", extra={"event": event})

    def _fresh(self, race_id: int) -> Race:
        """Re-read after a write and drop the cached stats for the race."""
        self.stats.invalidate(race_id)
        return self._require_race(race_id)

    def _flag_payload(self, race: Race) -> Dict[str, Any]:
        return {"raceId": race.id, "mode": race.mode.value, "flag": MODE_FLAGS[race.mode],
                "status": race.status.value}

    # ---------- lifecycle ----------
    def create_session(self) -> Race:
        with self._create_lock:
            active = self.store.get_active_race()
            if active is not None:
                raise ConflictError("An active race session already exists", raceId=active.id,
                                    status=active.status.value)
            race = self.store.create_race()
        log.info("race_created", extra={"race_id": race.id})
        self._publish(Events.RACE_CREATED, {"race": race.as_dict()})
        return race

    def start_session(self, race_id: int) -> Race:
        with self._locked(race_id):
            race = self._require_race(race_id)
            if race.status != RaceStatus.UPCOMING:
                raise StateError(f"Race {race_id} cannot start from status '{race.status.value}'",
                                 raceId=race.id, status=race.status.value)
            if len(race.drivers) < MIN_DRIVERS:
                raise StateError(f"Race {race_id} needs at least {MIN_DRIVERS} driver to start", raceId=race.id)

            self.store.update_race(race.id, status=RaceStatus.IN_PROGRESS, mode=RaceMode.SAFE,
                                   start_time=self._clock(), duration=self.race_duration_ms)
            race = self._fresh(race.id)
            self.timer.schedule(race.id, self.race_duration_ms, self._on_deadline)
            log.info("race_started", extra={"race_id": race.id, "duration_ms": self.race_duration_ms,
                                            "drivers": len(race.drivers)})

            stats = self.stats.calculate_race_stats(race)
            self._publish(Events.RACE_STARTED, {"race": race.as_dict(), "stats": stats})
            self._publish(Events.FLAG_STATUS_UPDATE, self._flag_payload(race))
            self._publish(Events.RACE_TIMER_UPDATE, self.timer_state(race.id))
            self._publish(Events.LEADERBOARD_UPDATE,
                          {"raceId": race.id, "leaderboard": self.stats.calculate_leaderboard(race)})
            return race

    def change_mode(self, race_id: int, mode: Any) -> Race:
        new_mode = validate_race_mode(mode)
        with self._locked(race_id):
            race = self._require_race(race_id)
            if race.status != RaceStatus.IN_PROGRESS:
                raise StateError(f"Mode can only change while racing (status '{race.status.value}')",
                                 raceId=race.id, status=race.status.value)
            if race.mode == RaceMode.FINISH:
                raise StateError("Mode is already 'finish'", raceId=race.id, mode=race.mode.value)

            previous = race.mode
            self.store.update_race(race.id, mode=new_mode)
            race = self._fresh(race.id)
            log.info("mode_changed", extra={"race_id": race.id, "from": previous.value, "to": new_mode.value})

            self._publish(Events.RACE_MODE_CHANGED, {"raceId": race.id, "mode": new_mode.value,
                                                     "previousMode": previous.value, "race": race.as_dict()})
            self._publish(Events.FLAG_STATUS_UPDATE, self._flag_payload(race))
            return race

    def end_session(self, race_id: int) -> Dict[str, Any]:
        """Finish the race and return the final statistics snapshot."""
        with self._locked(race_id):
            race = self._require_race(race_id)
            if race.status != RaceStatus.IN_PROGRESS:
                raise StateError(f"Race {race_id} cannot end from status '{race.status.value}'",
                                 raceId=race.id, status=race.status.value)

            self.timer.cancel(race.id)
            self.store.update_race(race.id, status=RaceStatus.FINISHED, mode=RaceMode.FINISH,
                                   end_time=self._clock())
            race = self._fresh(race.id)
            final = copy.deepcopy(self.stats.calculate_race_stats(race))
            leaderboard = self.stats.calculate_leaderboard(race)
            log.info("race_ended", extra={"race_id": race.id, "total_laps": final["totalLaps"]})

            self._publish(Events.RACE_ENDED, {"race": race.as_dict(), "stats": final,
                                              "leaderboard": leaderboard})
            self._publish(Events.FLAG_STATUS_UPDATE, self._flag_payload(race))
            self._publish(Events.RACE_TIMER_UPDATE, self.timer_state(race.id))
            return final

    def delete_session(self, race_id: int) -> None:
        with self._locked(race_id):
            self.timer.cancel(int(race_id))
            race = self._require_race(race_id)
            self.store.delete_race(race.id)
            self.stats.invalidate(race.id)
            self._forget_lock(race.id)
            log.info("race_deleted", extra={"race_id": race.id, "status": race.status.value})
            self._publish(Events.RACE_DELETED, {"raceId": race.id})

    def _on_deadline(self, race_id: int) -> None:
        """Session timer expiry: flag finish, then end. Losing to a manual end is fine."""
        try:
            with self._locked(race_id):
                race = self._require_race(race_id)
                if race.status == RaceStatus.IN_PROGRESS and race.mode != RaceMode.FINISH:
                    self.change_mode(race_id, RaceMode.FINISH)
                self.end_session(race_id)
        except (StateError, NotFoundError) as ex:
            log.debug("deadline_noop", extra={"race_id": race_id, "reason": ex.message})

    # ---------- roster ----------
    def add_driver(self, race_id: int, name: Any, car_number: Any = None) -> Driver:
        with self._locked(race_id):
            race = self._require_race(race_id)
            if race.status != RaceStatus.UPCOMING:
                raise StateError("Drivers can only be added before the race starts",
                                 raceId=race.id, status=race.status.value)
            if len(race.drivers) >= self.max_drivers:
                raise CapacityError(f"Maximum {self.max_drivers} drivers allowed", raceId=race.id)

            clean = validate_driver_name(name)
            if any(d.name.casefold() == clean.casefold() for d in race.drivers):
                raise ConflictError(f"Driver '{clean}' is already registered", raceId=race.id, name=clean)

            taken = {d.car_number for d in race.drivers}
            if car_number is None:
                free = [n for n in range(1, self.max_drivers + 1) if n not in taken]
                if not free:
                    raise CapacityError("No available car numbers", raceId=race.id)
                number = free[0]
            else:
                number = validate_car_number(car_number, self.max_drivers)
                if number in taken:
                    raise ConflictError(f"Car {number} is already taken", raceId=race.id, carNumber=number)

            driver = self.store.add_driver(race.id, clean, number)
            race = self._fresh(race.id)
            log.info("driver_added", extra={"race_id": race.id, "driver": clean, "car": number})
            self._publish(Events.DRIVER_ADDED, {"raceId": race.id, "driver": driver.as_dict(),
                                                "stats": self.stats.calculate_race_stats(race)})
            return driver

    def update_driver(self, race_id: int, driver_id: int, name: Any = None, car_number: Any = None) -> Driver:
        """Rename a driver and/or move them to another car while the race is upcoming."""
        with self._locked(race_id):
            race = self._require_race(race_id)
            if race.status != RaceStatus.UPCOMING:
                raise StateError("Drivers can only be edited before the race starts",
                                 raceId=race.id, status=race.status.value)
            driver = next((d for d in race.drivers if d.id == int(driver_id)), None)
            if driver is None:
                raise NotFoundError(f"Driver {driver_id} not found in race {race_id}",
                                    raceId=race.id, driverId=driver_id)
            others = [d for d in race.drivers if d.id != driver.id]

            clean = None
            if name is not None:
                clean = validate_driver_name(name)
                if any(d.name.casefold() == clean.casefold() for d in others):
                    raise ConflictError(f"Driver '{clean}' is already registered", raceId=race.id, name=clean)
            number = None
            if car_number is not None:
                number = validate_car_number(car_number, self.max_drivers)
                if any(d.car_number == number for d in others):
                    raise ConflictError(f"Car {number} is already taken", raceId=race.id, carNumber=number)

            updated = self.store.update_driver(race.id, driver.id, name=clean, car_number=number)
            race = self._fresh(race.id)
            log.info("driver_updated", extra={"race_id": race.id, "driver": updated.name,
                                              "car": updated.car_number})
            self._publish(Events.DRIVER_UPDATED, {"raceId": race.id, "driver": updated.as_dict(),
                                                  "previous": driver.as_dict(),
                                                  "stats": self.stats.calculate_race_stats(race)})
            return updated

    def remove_driver(self, race_id: int, driver_id: int) -> Driver:
        with self._locked(race_id):
            race = self._require_race(race_id)
            if race.status != RaceStatus.UPCOMING:
                raise StateError("Drivers can only be removed before the race starts",
                                 raceId=race.id, status=race.status.value)
            driver = next((d for d in race.drivers if d.id == int(driver_id)), None)
            if driver is None:
                raise NotFoundError(f"Driver {driver_id} not found in race {race_id}",
                                    raceId=race.id, driverId=driver_id)

            self.store.remove_driver(race.id, driver.id)
            race = self._fresh(race.id)
            log.info("driver_removed", extra={"race_id": race.id, "driver": driver.name, "car": driver.car_number})
            self._publish(Events.DRIVER_REMOVED, {"raceId": race.id, "driverId": driver.id,
                                                  "driver": driver.as_dict(),
                                                  "stats": self.stats.calculate_race_stats(race)})
            return driver

    # ---------- laps ----------
    def record_lap(self, race_id: int, car_number: Any, timestamp: Any = None) -> LapRecord:
        with self._locked(race_id):
            race = self._require_race(race_id)
            if race.status != RaceStatus.IN_PROGRESS:
                raise StateError(f"Race {race_id} is not in progress", raceId=race.id,
                                 status=race.status.value)
            car = validate_car_number(car_number, self.max_drivers)
            if race.driver_by_car(car) is None:
                raise NotFoundError(f"No driver registered for car {car}", raceId=race.id, carNumber=car)
            ts = self._clock() if timestamp is None else validate_timestamp(timestamp)

            prior = self.store.get_laps_for_car(race.id, car)
            if prior and ts < prior[-1].timestamp:
                raise ValidationError("Lap timestamp precedes the car's previous lap",
                                      carNumber=car, timestamp=ts, previous=prior[-1].timestamp)
            lap_number = len(prior) + 1
            duration = ts - prior[-1].timestamp if prior else 0

            fastest_before = self.stats.calculate_race_stats(race)["fastestLap"]
            lap = self.store.append_lap(race.id, car, lap_number, ts, duration)
            race = self._fresh(race.id)
            stats = self.stats.calculate_race_stats(race)
            log.info("lap_recorded", extra={"race_id": race.id, "car": car, "lap": lap_number,
                                            "duration_ms": duration})

            self._publish(Events.LAP_RECORDED, {"raceId": race.id, "lap": lap.as_dict(), "stats": stats})
            self._publish(Events.LEADERBOARD_UPDATE,
                          {"raceId": race.id, "leaderboard": self.stats.calculate_leaderboard(race)})
            fastest = stats["fastestLap"]
            if fastest["time"] is not None and (fastest["time"], fastest["carNumber"]) != \
                    (fastest_before["time"], fastest_before["carNumber"]):
                self._publish(Events.FASTEST_LAP_UPDATE, {"raceId": race.id, "fastestLap": fastest})
            return lap

    # ---------- reads ----------
    def get_race(self, race_id: int) -> Race:
        return self._require_race(race_id)

    # Reads take no race lock; the cache token keeps them from caching pre-write stats.
    # Callers get their own copy of the cached stats.
    def get_current(self) -> Dict[str, Any]:
        race = self.store.get_active_race()
        if race is None:
            return {"race": None, "status": RaceStatus.UPCOMING.value, "drivers": [], "stats": None}
        token = self.stats.cache.token(race.id)
        race = self._require_race(race.id)
        return {
            "race": race.as_dict(),
            "status": race.status.value,
            "drivers": [d.as_dict() for d in race.drivers],
            "stats": copy.deepcopy(self.stats.calculate_race_stats(race, token)),
        }

    def get_stats(self, race_id: int) -> Dict[str, Any]:
        token = self.stats.cache.token(int(race_id))
        return copy.deepcopy(self.stats.calculate_race_stats(self._require_race(race_id), token))

    def get_leaderboard(self, race_id: int) -> List[Dict[str, Any]]:
        token = self.stats.cache.token(int(race_id))
        return self.stats.calculate_leaderboard(self._require_race(race_id), token)

    def get_drivers(self, race_id: int) -> List[Driver]:
        return self._require_race(race_id).drivers

    def get_laps(self, race_id: int) -> List[LapRecord]:
        self._require_race(race_id)
        return self.store.get_laps(int(race_id))

    def list_races(self, status: Optional[Any] = None, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        st = None
        if status is not None:
            try:
                st = RaceStatus(str(status).lower())
            except ValueError:
                raise ValidationError(f"Invalid race status '{status}'", field="status")
        rows, total = self.store.list_races(st, limit=limit, offset=offset)
        return {"data": rows, "pagination": {"limit": limit, "offset": offset, "total": total}}

    def timer_state(self, race_id: int) -> Dict[str, Any]:
        race = self._require_race(race_id)
        deadline = self.timer.deadline(race.id)
        remaining = 0
        if race.status == RaceStatus.IN_PROGRESS:
            remaining = time_remaining(race.start_time, race.duration, self._clock())
        return {
            "raceId": race.id,
            "remainingMs": remaining,
            "remaining": format_timer(remaining),
            "timerPending": self.timer.pending(race.id),
            "deadlineAt": int(deadline * 1000) if deadline is not None else None,
        }

    # ---------- boot / shutdown ----------
    def resume(self) -> List[int]:
        """Re-arm deadlines for races still in progress in the store (after a restart)."""
        resumed: List[int] = []
        for race in self.store.get_races_by_status(RaceStatus.IN_PROGRESS):
            remaining = time_remaining(race.start_time, race.duration, self._clock())
            if remaining <= 0:
                log.info("race_overdue_on_boot", extra={"race_id": race.id})
                self._on_deadline(race.id)
                continue
            self.timer.schedule(race.id, remaining, self._on_deadline)
            resumed.append(race.id)
        return resumed

    def shutdown(self) -> None:
        self.timer.cancel_all()


# ----------------------------- factory -----------------------------
def make_engine(cfg: Optional[dict] = None, broadcaster: Optional[Broadcaster] = None) -> RaceEngine:
    """Wire an engine from the YAML config (SQLite store at the configured path)."""
    from .config_loader import CONFIG, get_db_path, get_environment, get_race_cfg
    from .store import SqliteSessionStore

    cfg = CONFIG if cfg is None else cfg
    store = SqliteSessionStore(get_db_path(cfg),
                               max_drivers=int(get_race_cfg(cfg).get("max_drivers", MAX_DRIVERS)))
    engine = RaceEngine(store, broadcaster, config=cfg, environment=get_environment(cfg))
    engine.resume()
    return engine
