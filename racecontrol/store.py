"""
racecontrol/store.py
--------------------
Durable storage of races, drivers and lap records.

`SessionStore` is the contract the engine depends on; `SqliteSessionStore`
is the implementation shipped with the app. The engine owns all precondition
checks and per-race serialization; the store only guarantees that each call is
one transaction and that the DB-level unique indexes hold.

Failures
--------
- sqlite3.IntegrityError  -> ConflictError (a uniqueness index fired)
- any other sqlite3.Error -> StoreError (opaque; the write was not applied)
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .constants import MAX_DRIVERS, RaceMode, RaceStatus
from .db_schema import apply_schema, ensure_schema
from .errors import CapacityError, ConflictError, NotFoundError, StoreError
from .models import Driver, LapRecord, Race

log = logging.getLogger("racecontrol.store")

_UPDATABLE = {
    "status": "status",
    "mode": "mode",
    "start_time": "start_time",
    "end_time": "end_time",
    "duration": "duration_ms",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


# ----------------------------- Contract -----------------------------
class SessionStore(ABC):
    @abstractmethod
    def create_race(self) -> Race: ...

    @abstractmethod
    def get_race(self, race_id: int) -> Optional[Race]: ...

    @abstractmethod
    def get_active_race(self) -> Optional[Race]: ...

    @abstractmethod
    def get_races_by_status(self, status: RaceStatus) -> List[Race]: ...

    @abstractmethod
    def update_race(self, race_id: int, **fields: Any) -> Race: ...

    @abstractmethod
    def delete_race(self, race_id: int) -> None: ...

    @abstractmethod
    def add_driver(self, race_id: int, name: str, car_number: Optional[int] = None) -> Driver: ...

    @abstractmethod
    def update_driver(self, race_id: int, driver_id: int, name: Optional[str] = None,
                      car_number: Optional[int] = None) -> Driver: ...

    @abstractmethod
    def remove_driver(self, race_id: int, driver_id: int) -> None: ...

    @abstractmethod
    def append_lap(self, race_id: int, car_number: int, lap_number: int,
                   timestamp: int, duration: int) -> LapRecord: ...

    @abstractmethod
    def get_drivers(self, race_id: int) -> List[Driver]: ...

    @abstractmethod
    def get_laps(self, race_id: int) -> List[LapRecord]: ...

    @abstractmethod
    def get_laps_for_car(self, race_id: int, car_number: int) -> List[LapRecord]: ...

    @abstractmethod
    def list_races(self, status: Optional[RaceStatus] = None, limit: int = 10,
                   offset: int = 0) -> Tuple[List[Dict[str, Any]], int]: ...

    def close(self) -> None:
        pass


# ----------------------------- SQLite -----------------------------
class SqliteSessionStore(SessionStore):
    def __init__(self, db_path: Union[str, Path] = ":memory:", max_drivers: int = MAX_DRIVERS):
        self.db_path = str(db_path)
        self.max_drivers = int(max_drivers)
        self._lock = threading.RLock()

        if self.db_path == ":memory:":
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            apply_schema(self._conn)
        else:
            ensure_schema(self.db_path)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON;")
        log.info("store_open", extra={"db_path": self.db_path})

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Cursor]:
        """One transaction; commit on success, roll back on any failure."""
        with self._lock:
            cur = self._conn.cursor()
            try:
                yield cur
                self._conn.commit()
            except sqlite3.IntegrityError as ex:
                self._conn.rollback()
                raise ConflictError(f"uniqueness violation: {ex}") from ex
            except sqlite3.Error as ex:
                self._conn.rollback()
                log.exception("store_failure")
                raise StoreError(f"session store failure: {type(ex).__name__}: {ex}") from ex
            except BaseException:
                self._conn.rollback()
                raise
            finally:
                cur.close()

    # ---------- row mapping ----------
    @staticmethod
    def _driver(row: sqlite3.Row) -> Driver:
        return Driver(
            id=int(row["id"]),
            race_id=int(row["race_id"]),
            name=row["name"],
            car_number=int(row["car_number"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _lap(row: sqlite3.Row) -> LapRecord:
        return LapRecord(
            id=int(row["id"]),
            race_id=int(row["race_id"]),
            car_number=int(row["car_number"]),
            lap_number=int(row["lap_number"]),
            timestamp=int(row["timestamp"]),
            duration=int(row["duration_ms"]),
        )

    def _load_race(self, cur: sqlite3.Cursor, race_id: int) -> Optional[Race]:
        row = cur.execute("SELECT * FROM races WHERE id=?", (race_id,)).fetchone()
        if row is None:
            return None
        drivers = [self._driver(r) for r in cur.execute(
            "SELECT * FROM drivers WHERE race_id=? ORDER BY car_number", (race_id,)
        ).fetchall()]
        laps = [self._lap(r) for r in cur.execute(
            "SELECT * FROM lap_times WHERE race_id=? ORDER BY timestamp ASC, id ASC", (race_id,)
        ).fetchall()]
        return Race(
            id=int(row["id"]),
            status=RaceStatus(row["status"]),
            mode=RaceMode(row["mode"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            duration=row["duration_ms"],
            created_at=row["created_at"],
            drivers=drivers,
            laps=laps,
        )

    # ---------- races ----------
    def create_race(self) -> Race:
        now = _now_ms()
        with self._tx() as cur:
            cur.execute(
                "INSERT INTO races (status, mode, created_at, updated_at) VALUES (?,?,?,?)",
                (RaceStatus.UPCOMING.value, RaceMode.SAFE.value, now, now),
            )
            race = self._load_race(cur, int(cur.lastrowid))
        assert race is not None
        return race

    def get_race(self, race_id: int) -> Optional[Race]:
        with self._tx() as cur:
            return self._load_race(cur, int(race_id))

    def get_active_race(self) -> Optional[Race]:
        with self._tx() as cur:
            row = cur.execute(
                "SELECT id FROM races WHERE status IN (?, ?) ORDER BY created_at DESC, id DESC LIMIT 1",
                (RaceStatus.UPCOMING.value, RaceStatus.IN_PROGRESS.value),
            ).fetchone()
            return self._load_race(cur, int(row["id"])) if row else None

    def get_races_by_status(self, status: RaceStatus) -> List[Race]:
        with self._tx() as cur:
            ids = [int(r["id"]) for r in cur.execute(
                "SELECT id FROM races WHERE status=? ORDER BY id", (RaceStatus(status).value,)
            ).fetchall()]
            return [r for r in (self._load_race(cur, i) for i in ids) if r is not None]

    def update_race(self, race_id: int, **fields: Any) -> Race:
        cols: List[str] = []
        vals: List[Any] = []
        for key, value in fields.items():
            col = _UPDATABLE.get(key)
            if col is None:
                raise ValueError(f"field '{key}' is not updatable")
            if isinstance(value, (RaceStatus, RaceMode)):
                value = value.value
            cols.append(f"{col}=?")
            vals.append(value)

        with self._tx() as cur:
            cols.append("updated_at=?")
            vals.append(_now_ms())
            cur.execute(f"UPDATE races SET {', '.join(cols)} WHERE id=?", (*vals, int(race_id)))
            if cur.rowcount == 0:
                raise NotFoundError(f"Race {race_id} not found", raceId=race_id)
            race = self._load_race(cur, int(race_id))
        assert race is not None
        return race

    def delete_race(self, race_id: int) -> None:
        with self._tx() as cur:
            cur.execute("DELETE FROM races WHERE id=?", (int(race_id),))
            if cur.rowcount == 0:
                raise NotFoundError(f"Race {race_id} not found", raceId=race_id)

    def list_races(self, status: Optional[RaceStatus] = None, limit: int = 10,
                   offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        where, params = "", ()
        if status is not None:
            where, params = "WHERE status=?", (RaceStatus(status).value,)
        with self._tx() as cur:
            total = cur.execute(f"SELECT COUNT(*) FROM v_races_summary {where}", params).fetchone()[0]
            rows = cur.execute(
                f"SELECT * FROM v_races_summary {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, int(limit), int(offset)),
            ).fetchall()
            return [dict(r) for r in rows], int(total)

    # ---------- roster ----------
    def add_driver(self, race_id: int, name: str, car_number: Optional[int] = None) -> Driver:
        with self._tx() as cur:
            if car_number is None:
                used = {int(r[0]) for r in cur.execute(
                    "SELECT car_number FROM drivers WHERE race_id=?", (int(race_id),)
                ).fetchall()}
                free = [n for n in range(1, self.max_drivers + 1) if n not in used]
                if not free:
                    raise CapacityError("No available car numbers", raceId=race_id)
                car_number = free[0]
            cur.execute(
                "INSERT INTO drivers (race_id, name, car_number, created_at) VALUES (?,?,?,?)",
                (int(race_id), name, int(car_number), _now_ms()),
            )
            row = cur.execute("SELECT * FROM drivers WHERE id=?", (cur.lastrowid,)).fetchone()
            return self._driver(row)

    def update_driver(self, race_id: int, driver_id: int, name: Optional[str] = None,
                      car_number: Optional[int] = None) -> Driver:
        cols: List[str] = []
        vals: List[Any] = []
        if name is not None:
            cols.append("name=?")
            vals.append(name)
        if car_number is not None:
            cols.append("car_number=?")
            vals.append(int(car_number))

        with self._tx() as cur:
            if cols:
                cur.execute(f"UPDATE drivers SET {', '.join(cols)} WHERE race_id=? AND id=?",
                            (*vals, int(race_id), int(driver_id)))
            row = cur.execute("SELECT * FROM drivers WHERE race_id=? AND id=?",
                              (int(race_id), int(driver_id))).fetchone()
            if row is None:
                raise NotFoundError(f"Driver {driver_id} not found in race {race_id}",
                                    raceId=race_id, driverId=driver_id)
            return self._driver(row)

    def remove_driver(self, race_id: int, driver_id: int) -> None:
        with self._tx() as cur:
            cur.execute("DELETE FROM drivers WHERE race_id=? AND id=?", (int(race_id), int(driver_id)))
            if cur.rowcount == 0:
                raise NotFoundError(f"Driver {driver_id} not found in race {race_id}",
                                    raceId=race_id, driverId=driver_id)

    def get_drivers(self, race_id: int) -> List[Driver]:
        with self._tx() as cur:
            return [self._driver(r) for r in cur.execute(
                "SELECT * FROM drivers WHERE race_id=? ORDER BY car_number", (int(race_id),)
            ).fetchall()]

    # ---------- laps ----------
    def append_lap(self, race_id: int, car_number: int, lap_number: int,
                   timestamp: int, duration: int) -> LapRecord:
        with self._tx() as cur:
            cur.execute(
                "INSERT INTO lap_times (race_id, car_number, lap_number, timestamp, duration_ms) "
                "VALUES (?,?,?,?,?)",
                (int(race_id), int(car_number), int(lap_number), int(timestamp), int(duration)),
            )
            row = cur.execute("SELECT * FROM lap_times WHERE id=?", (cur.lastrowid,)).fetchone()
            return self._lap(row)

    def get_laps(self, race_id: int) -> List[LapRecord]:
        with self._tx() as cur:
            return [self._lap(r) for r in cur.execute(
                "SELECT * FROM lap_times WHERE race_id=? ORDER BY car_number, timestamp, lap_number",
                (int(race_id),),
            ).fetchall()]

    def get_laps_for_car(self, race_id: int, car_number: int) -> List[LapRecord]:
        with self._tx() as cur:
            return [self._lap(r) for r in cur.execute(
                "SELECT * FROM lap_times WHERE race_id=? AND car_number=? ORDER BY timestamp ASC, lap_number ASC",
                (int(race_id), int(car_number)),
            ).fetchall()]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
