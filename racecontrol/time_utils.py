from __future__ import annotations

import time
from typing import Optional

from .constants import RACE_DURATION_MS


def utc_ms() -> int:
    return int(time.time() * 1000)


def format_time(time_ms: Optional[float], fmt: str = "mm:ss") -> str:
    """
    Render elapsed milliseconds as 'mm:ss' or 'mm:ss.ff' (hundredths).
    None renders as dashes so boards can show an empty cell.
    """
    if fmt not in ("mm:ss", "mm:ss.ff"):
        raise ValueError(f"Unsupported time format: {fmt}")
    if time_ms is None:
        return "--:--" if fmt == "mm:ss" else "--:--.--"

    ms = max(0, int(time_ms))
    minutes = ms // 60_000
    seconds = (ms % 60_000) // 1000
    hundredths = (ms % 1000) // 10

    if fmt == "mm:ss":
        return f"{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}.{hundredths:02d}"


def format_timer(time_ms: Optional[float]) -> str:
    return format_time(time_ms, "mm:ss")


def format_lap_time(time_ms: Optional[float]) -> str:
    return format_time(time_ms, "mm:ss.ff")


def time_remaining(start_ms: Optional[int], duration_ms: Optional[int], now_ms: Optional[int] = None) -> int:
    """Milliseconds left in a race that started at `start_ms` (0 once expired or never started)."""
    if start_ms is None or duration_ms is None:
        return 0
    now = utc_ms() if now_ms is None else int(now_ms)
    return max(0, int(duration_ms) - (now - int(start_ms)))


def get_race_duration(environment: str = "production") -> int:
    env = str(environment or "production").strip().lower()
    return RACE_DURATION_MS["development"] if env == "development" else RACE_DURATION_MS["production"]
