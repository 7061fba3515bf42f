"""
racecontrol/race_stats.py
-------------------------
Derived statistics and the live leaderboard.

Stats are a pure function of a Race (drivers + laps) and the current time,
cached per race for a short TTL so a burst of lap events from several
lap-line terminals does not recompute from scratch on every read. Writers
invalidate the cache explicitly; the TTL only bounds staleness for reads.

Rules
-----
- "Valid" laps have duration > 0. The first lap of every car is recorded with
  duration 0 (no reference crossing) and never takes part in fastest/average.
- totalLaps counts every recorded lap, including that first one.
- Ranking: totalLaps desc, fastest lap asc, drivers without a fastest lap
  last, car number as the final tie-break.
"""
from __future__ import annotations

import logging
import math
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .constants import INACTIVE_AFTER_MS, STATS_CACHE_TTL_MS, RaceStatus
from .models import Driver, LapRecord, Race
from .time_utils import format_lap_time, time_remaining, utc_ms

log = logging.getLogger("racecontrol.stats")

NOT_STARTED = "NOT_STARTED"
ACTIVE = "ACTIVE"
INACTIVE = "INACTIVE"


# ----------------------------- Cache -----------------------------
class StatsCache:
    """
    Per-race TTL cache. Each invalidate() bumps the race's generation; a put()
    carrying an older generation token is dropped, so a read that loaded the
    race before a write cannot re-cache pre-write stats.
    """

    def __init__(self, ttl_ms: int = STATS_CACHE_TTL_MS, clock: Callable[[], int] = utc_ms):
        self.ttl_ms = int(ttl_ms)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[int, Tuple[int, Dict[str, Any]]] = {}
        self._generation: Dict[int, int] = {}

    def token(self, race_id: int) -> int:
        with self._lock:
            return self._generation.get(race_id, 0)

    def get(self, race_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            hit = self._entries.get(race_id)
            if hit is None:
                return None
            stored_at, stats = hit
            if self._clock() - stored_at >= self.ttl_ms:
                del self._entries[race_id]
                return None
            return stats

    def put(self, race_id: int, stats: Dict[str, Any], token: Optional[int] = None) -> bool:
        with self._lock:
            if token is not None and token != self._generation.get(race_id, 0):
                return False
            self._entries[race_id] = (self._clock(), stats)
            return True

    def invalidate(self, race_id: int) -> None:
        with self._lock:
            self._entries.pop(race_id, None)
            self._generation[race_id] = self._generation.get(race_id, 0) + 1


# ----------------------------- Pure helpers -----------------------------
def consistency(times: List[int]) -> Optional[float]:
    """Sample standard deviation of lap durations (None below two laps)."""
    if len(times) < 2:
        return None
    mean = sum(times) / len(times)
    variance = sum((t - mean) ** 2 for t in times) / (len(times) - 1)
    return math.sqrt(variance)


def _rank_key(ds: Dict[str, Any]) -> Tuple[int, int, float, int]:
    fastest = ds["fastestLap"]
    return (
        -ds["totalLaps"],
        0 if fastest else 1,
        fastest["time"] if fastest else 0,
        ds["carNumber"],
    )


# ----------------------------- Service -----------------------------
class RaceStatsService:
    def __init__(self, cache: Optional[StatsCache] = None, clock: Callable[[], int] = utc_ms,
                 inactive_after_ms: int = INACTIVE_AFTER_MS):
        self.cache = cache if cache is not None else StatsCache(clock=clock)
        self._clock = clock
        self.inactive_after_ms = int(inactive_after_ms)

    def invalidate(self, race_id: int) -> None:
        self.cache.invalidate(race_id)

    # ---------- race-wide ----------
    def calculate_race_stats(self, race: Race, token: Optional[int] = None) -> Dict[str, Any]:
        """
        Full stats for `race`. Pass the cache token taken *before* loading the
        race when reading outside the race lock.
        """
        cached = self.cache.get(race.id)
        if cached is not None:
            return cached

        now = self._clock()
        stats: Dict[str, Any] = {
            "raceId": race.id,
            "status": race.status.value,
            "mode": race.mode.value,
            "startTime": race.start_time,
            "endTime": race.end_time,
            "duration": race.duration,
            "timeRemaining": (time_remaining(race.start_time, race.duration, now)
                              if race.status == RaceStatus.IN_PROGRESS else 0),
            "totalLaps": 0,
            "participantsCount": len(race.drivers),
            "fastestLap": {"driverName": None, "carNumber": None, "time": None, "lapNumber": None},
            "averageLapTime": None,
            "driverStats": {},
            "progressStats": {"completedLaps": 0, "active": 0, "inactive": 0, "notStarted": 0},
            "rankings": [],
            "calculatedAt": now,
        }

        grouped = race.laps_by_car()
        for driver in race.drivers:
            ds = self.calculate_driver_stats(driver, grouped.get(driver.car_number, []), race, now)
            stats["driverStats"][driver.car_number] = ds
            stats["totalLaps"] += ds["totalLaps"]

            fastest = ds["fastestLap"]
            best = stats["fastestLap"]
            if fastest and (best["time"] is None or fastest["time"] < best["time"]):
                stats["fastestLap"] = {
                    "driverName": driver.name,
                    "carNumber": driver.car_number,
                    "time": fastest["time"],
                    "lapNumber": fastest["lapNumber"],
                }
            self._update_progress(stats["progressStats"], ds)

        stats["averageLapTime"] = self._overall_average(stats["driverStats"])
        self._consistency_scores(stats["driverStats"])
        stats["rankings"] = self._rank(stats["driverStats"])

        self.cache.put(race.id, stats, token)
        log.debug("stats_recomputed", extra={"race_id": race.id, "total_laps": stats["totalLaps"]})
        return stats

    # ---------- per driver ----------
    def calculate_driver_stats(self, driver: Driver, laps: List[LapRecord],
                               race: Optional[Race] = None, now: Optional[int] = None) -> Dict[str, Any]:
        now = self._clock() if now is None else now
        ds: Dict[str, Any] = {
            "driverId": driver.id,
            "name": driver.name,
            "carNumber": driver.car_number,
            "totalLaps": len(laps),
            "fastestLap": None,
            "averageLapTime": None,
            "lastLapTime": None,
            "lapTimes": [],
            "consistency": None,
            "consistencyScore": None,
            "status": self._driver_status(laps, race, now),
            "progression": {"improvement": 0, "deterioration": 0},
            "position": None,
        }

        valid = [{"lapNumber": l.lap_number, "time": l.duration} for l in laps if l.duration > 0]
        ds["lapTimes"] = valid
        if not valid:
            return ds

        fastest = valid[0]
        for lap in valid[1:]:
            if lap["time"] < fastest["time"]:   # strictly lesser; earliest lap keeps ties
                fastest = lap
        ds["fastestLap"] = dict(fastest)

        times = [l["time"] for l in valid]
        ds["averageLapTime"] = sum(times) / len(times)
        ds["lastLapTime"] = times[-1]
        ds["consistency"] = consistency(times)

        for prev, cur in zip(times, times[1:]):
            if cur < prev:
                ds["progression"]["improvement"] += 1
            elif cur > prev:
                ds["progression"]["deterioration"] += 1
        return ds

    def _driver_status(self, laps: List[LapRecord], race: Optional[Race], now: int) -> str:
        if not laps:
            return NOT_STARTED
        if race is not None and race.status != RaceStatus.IN_PROGRESS:
            return ACTIVE
        return INACTIVE if now - laps[-1].timestamp > self.inactive_after_ms else ACTIVE

    @staticmethod
    def _update_progress(progress: Dict[str, int], ds: Dict[str, Any]) -> None:
        status = ds["status"]
        if status == ACTIVE:
            progress["active"] += 1
        elif status == INACTIVE:
            progress["inactive"] += 1
        else:
            progress["notStarted"] += 1
        progress["completedLaps"] += ds["totalLaps"]

    @staticmethod
    def _overall_average(driver_stats: Dict[int, Dict[str, Any]]) -> Optional[float]:
        total_time = 0.0
        total_laps = 0
        for ds in driver_stats.values():
            n = len(ds["lapTimes"])
            if n and ds["averageLapTime"] is not None:
                total_time += ds["averageLapTime"] * n
                total_laps += n
        return total_time / total_laps if total_laps else None

    @staticmethod
    def _consistency_scores(driver_stats: Dict[int, Dict[str, Any]]) -> None:
        """0-100 relative to the least consistent driver (100 = perfectly even laps)."""
        scored = [ds for ds in driver_stats.values() if ds["consistency"] is not None]
        if not scored:
            return
        worst = max(ds["consistency"] for ds in scored)
        for ds in scored:
            ds["consistencyScore"] = 100 if worst == 0 else round(100 * (1 - ds["consistency"] / worst))

    @staticmethod
    def _rank(driver_stats: Dict[int, Dict[str, Any]]) -> List[int]:
        ordered = sorted(driver_stats.values(), key=_rank_key)
        for pos, ds in enumerate(ordered, start=1):
            ds["position"] = pos
        return [ds["carNumber"] for ds in ordered]

    # ---------- leaderboard ----------
    def calculate_leaderboard(self, race: Race, token: Optional[int] = None) -> List[Dict[str, Any]]:
        stats = self.calculate_race_stats(race, token)
        rows: List[Dict[str, Any]] = []
        for car in stats["rankings"]:
            ds = stats["driverStats"][car]
            best = ds["fastestLap"]["time"] if ds["fastestLap"] else None
            rows.append({
                "position": ds["position"],
                "carNumber": ds["carNumber"],
                "driverName": ds["name"],
                "totalLaps": ds["totalLaps"],
                "bestLap": best,
                "averageLap": ds["averageLapTime"],
                "bestLapFormatted": format_lap_time(best),
                "averageLapFormatted": format_lap_time(ds["averageLapTime"]),
            })
        return rows
