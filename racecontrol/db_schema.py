from __future__ import annotations

"""
racecontrol/db_schema.py
------------------------
Centralized, idempotent SQLite schema management for race sessions.

Design goals
- Uniqueness invariants live in the DB as well as in the engine:
  * car number unique per race, driver name unique per race (case-insensitive).
  * lap number unique per (race, car).
- Deleting a race cascades to its drivers and laps.
- Keep schema creation safe to call at every boot (idempotent).
- Allow destructive rebuilds (recreate=True) when starting fresh.

IMPORTANT:
SQLite only enforces FOREIGN KEY constraints when 'PRAGMA foreign_keys=ON' is set
on the connection performing writes. The session store does that on connect.
"""

import sqlite3
from pathlib import Path
from typing import Union

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 1

# ------------------------
# DDL: Race sessions
# ------------------------
RACES_DDL = """
CREATE TABLE IF NOT EXISTS races (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    status      TEXT    NOT NULL DEFAULT 'upcoming',   -- upcoming | in_progress | finished
    mode        TEXT    NOT NULL DEFAULT 'safe',       -- safe | hazard | danger | finish
    start_time  INTEGER,                               -- epoch ms, set once on start
    end_time    INTEGER,                               -- epoch ms, set once on end
    duration_ms INTEGER,                               -- planned length, fixed on start
    created_at  INTEGER NOT NULL,                      -- epoch ms
    updated_at  INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_races_status ON races(status);
"""

# ------------------------
# DDL: Roster
# ------------------------
DRIVERS_DDL = """
CREATE TABLE IF NOT EXISTS drivers (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id     INTEGER NOT NULL,
    name        TEXT    NOT NULL,
    car_number  INTEGER NOT NULL,
    created_at  INTEGER NOT NULL,
    FOREIGN KEY (race_id) REFERENCES races(id) ON DELETE CASCADE
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_drivers_race_car  ON drivers(race_id, car_number);
CREATE UNIQUE INDEX IF NOT EXISTS idx_drivers_race_name ON drivers(race_id, name COLLATE NOCASE);
"""

# ------------------------
# DDL: Laps (append-only)
# ------------------------
LAP_TIMES_DDL = """
CREATE TABLE IF NOT EXISTS lap_times (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id     INTEGER NOT NULL,
    car_number  INTEGER NOT NULL,
    lap_number  INTEGER NOT NULL,                      -- 1-based per car
    timestamp   INTEGER NOT NULL,                      -- caller-supplied epoch ms
    duration_ms INTEGER NOT NULL DEFAULT 0,            -- 0 on the first lap
    FOREIGN KEY (race_id) REFERENCES races(id) ON DELETE CASCADE
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_laps_race_car_lap ON lap_times(race_id, car_number, lap_number);
CREATE INDEX IF NOT EXISTS idx_laps_race_car_time ON lap_times(race_id, car_number, timestamp);
"""

# ------------------------
# DDL: Convenience views (for history listings)
# ------------------------
VIEWS_DDL = """
CREATE VIEW IF NOT EXISTS v_races_summary AS
SELECT
    r.id,
    r.status,
    r.mode,
    r.start_time,
    r.end_time,
    r.duration_ms,
    r.created_at,
    (SELECT COUNT(*) FROM drivers d WHERE d.race_id = r.id)   AS driver_count,
    (SELECT COUNT(*) FROM lap_times l WHERE l.race_id = r.id) AS laps_count
FROM races r;
"""


# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    conn.executescript(script)
    conn.commit()


def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    # Views first (they depend on tables), then children before parents
    cur.execute("DROP VIEW IF EXISTS v_races_summary")
    cur.execute("DROP TABLE IF EXISTS lap_times")
    cur.execute("DROP TABLE IF EXISTS drivers")
    cur.execute("DROP TABLE IF EXISTS races")
    conn.commit()


def apply_schema(conn: sqlite3.Connection, recreate: bool = False) -> None:
    """Enforce the schema on an open connection (used directly for ':memory:' DBs)."""
    if recreate:
        _drop_everything(conn)
    _exec_script(conn, RACES_DDL)
    _exec_script(conn, DRIVERS_DDL)
    _exec_script(conn, LAP_TIMES_DDL)
    _exec_script(conn, VIEWS_DDL)
    conn.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
    conn.commit()


def ensure_schema(db_path: Union[str, Path], recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        apply_schema(conn, recreate=recreate)
    finally:
        conn.close()
