"""
Shared fixtures: in-memory SQLite store, a broadcaster that records every
event, and a hand-cranked clock so lap/inactivity math is deterministic.
"""
import threading
from typing import Any, Dict, List, Tuple

import pytest

from racecontrol.broadcast import Broadcaster
from racecontrol.race_engine import RaceEngine
from racecontrol.store import SqliteSessionStore


class RecordingBroadcaster(Broadcaster):
    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, event, payload):
        with self._lock:
            self.events.append((event, payload))

    def names(self) -> List[str]:
        with self._lock:
            return [e for e, _ in self.events]

    def last(self, event: str) -> Dict[str, Any]:
        with self._lock:
            for name, payload in reversed(self.events):
                if name == event:
                    return payload
        raise AssertionError(f"no '{event}' published; saw {self.names()}")

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class ManualClock:
    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def engine_config(duration_ms: int = 60_000, **race) -> Dict[str, Any]:
    race_cfg = {"max_drivers": 8, "duration_ms": {"development": duration_ms}, "stats_cache_ttl_ms": 5000}
    race_cfg.update(race)
    return {"app": {"environment": "development", "engine": {"race": race_cfg}}}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def recorder():
    return RecordingBroadcaster()


@pytest.fixture
def store():
    s = SqliteSessionStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def engine(store, recorder, clock):
    eng = RaceEngine(store, recorder, config=engine_config(), clock=clock)
    yield eng
    eng.shutdown()


@pytest.fixture
def running_race(engine):
    """A started race with Alice (car 1) and Bob (car 2)."""
    race = engine.create_session()
    engine.add_driver(race.id, "Alice")
    engine.add_driver(race.id, "Bob")
    engine.start_session(race.id)
    return race.id
