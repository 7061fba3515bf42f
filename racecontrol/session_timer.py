# racecontrol/session_timer.py
# -----------------------------------------------------------------------------
# One pending end-of-race deadline per race id. Each entry is a daemon
# threading.Timer acting as the cancellation token for that race. Callbacks
# run once; the entry is dropped before the callback runs so a callback may
# safely call cancel() on its own race.
# -----------------------------------------------------------------------------
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

log = logging.getLogger("racecontrol.timer")


class SessionTimer:
    def __init__(self):
        self._lock = threading.Lock()
        self._timers: Dict[int, Tuple[threading.Timer, float]] = {}  # race_id -> (timer, deadline epoch s)

    def schedule(self, race_id: int, delay_ms: int, callback: Callable[[int], None]) -> None:
        """Arm (or re-arm) the deadline for `race_id`; replaces any pending timer."""
        race_id = int(race_id)
        delay_s = max(0.0, float(delay_ms) / 1000.0)

        def _fire() -> None:
            with self._lock:
                cur = self._timers.get(race_id)
                if cur is None or cur[0] is not timer:
                    return  # cancelled or replaced while we were waking up
                del self._timers[race_id]
            log.info("timer_fired", extra={"race_id": race_id})
            try:
                callback(race_id)
            except Exception:
                log.exception("timer_callback_failed", extra={"race_id": race_id})

        timer = threading.Timer(delay_s, _fire)
        timer.daemon = True
        with self._lock:
            prev = self._timers.pop(race_id, None)
            if prev is not None:
                prev[0].cancel()
            self._timers[race_id] = (timer, time.time() + delay_s)
        timer.start()
        log.info("timer_armed", extra={"race_id": race_id, "delay_ms": int(delay_ms)})

    def cancel(self, race_id: int) -> bool:
        with self._lock:
            entry = self._timers.pop(int(race_id), None)
        if entry is None:
            return False
        entry[0].cancel()
        log.info("timer_cancelled", extra={"race_id": race_id})
        return True

    def pending(self, race_id: int) -> bool:
        with self._lock:
            return int(race_id) in self._timers

    def deadline(self, race_id: int) -> Optional[float]:
        """Epoch seconds at which the race's timer fires, or None."""
        with self._lock:
            entry = self._timers.get(int(race_id))
            return entry[1] if entry else None

    def cancel_all(self) -> None:
        with self._lock:
            entries = list(self._timers.values())
            self._timers.clear()
        for timer, _ in entries:
            timer.cancel()
