# racecontrol/constants.py
# -----------------------------------------------------------------------------
# Shared enums and limits for race sessions. Values are the wire values sent
# to terminals, so keep them lowercase and stable.
# -----------------------------------------------------------------------------
from __future__ import annotations

from enum import Enum
from typing import Dict


class RaceStatus(str, Enum):
    UPCOMING = "upcoming"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class RaceMode(str, Enum):
    SAFE = "safe"
    HAZARD = "hazard"
    DANGER = "danger"
    FINISH = "finish"


# Flag colors shown on the flag display and sent to the track lights.
MODE_FLAGS: Dict[RaceMode, str] = {
    RaceMode.SAFE: "green",
    RaceMode.HAZARD: "yellow",
    RaceMode.DANGER: "red",
    RaceMode.FINISH: "checkered",
}

MAX_DRIVERS = 8
MIN_DRIVERS = 1

RACE_DURATION_MS: Dict[str, int] = {
    "development": 60_000,   # 1 minute
    "production": 600_000,   # 10 minutes
}

STATS_CACHE_TTL_MS = 5_000
INACTIVE_AFTER_MS = 60_000

DRIVER_NAME_MAX = 50


class Events:
    """Push channel event names (what the terminals subscribe to)."""
    RACE_CREATED = "raceCreated"
    RACE_STARTED = "raceStarted"
    RACE_ENDED = "raceEnded"
    RACE_DELETED = "raceDeleted"
    RACE_MODE_CHANGED = "raceModeChanged"
    RACE_TIMER_UPDATE = "raceTimerUpdate"

    DRIVER_ADDED = "driverAdded"
    DRIVER_UPDATED = "driverUpdated"
    DRIVER_REMOVED = "driverRemoved"

    LAP_RECORDED = "lapRecorded"
    FASTEST_LAP_UPDATE = "fastestLapUpdate"

    LEADERBOARD_UPDATE = "leaderboardUpdate"
    FLAG_STATUS_UPDATE = "flagStatusUpdate"
