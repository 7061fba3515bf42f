"""
Concurrent writers against one race: lap numbers and car numbers must stay
unique even when terminals hit the engine at the same moment.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

from racecontrol.errors import CapacityError, ConflictError


def test_concurrent_laps_get_sequential_numbers(engine, running_race, clock):
    laps_per_car = 20
    start = threading.Barrier(2)

    def crossings(car):
        start.wait()
        return [engine.record_lap(running_race, car, clock.now).lap_number for _ in range(laps_per_car)]

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(crossings, [1, 2]))

    for numbers in results:
        assert numbers == list(range(1, laps_per_car + 1))
    for car in (1, 2):
        per_car = [l.lap_number for l in engine.get_laps(running_race) if l.car_number == car]
        assert sorted(per_car) == list(range(1, laps_per_car + 1))
    assert engine.get_stats(running_race)["totalLaps"] == 2 * laps_per_car


def test_same_car_from_many_threads(engine, running_race, clock):
    with ThreadPoolExecutor(max_workers=8) as pool:
        laps = list(pool.map(lambda _: engine.record_lap(running_race, 1, clock.now), range(32)))
    assert sorted(l.lap_number for l in laps) == list(range(1, 33))


def test_concurrent_registrations_never_share_a_car(engine):
    race = engine.create_session()

    def register(i):
        try:
            return engine.add_driver(race.id, f"Driver {i}")
        except (CapacityError, ConflictError):
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        added = [d for d in pool.map(register, range(12)) if d is not None]

    assert len(added) == 8
    assert sorted(d.car_number for d in added) == list(range(1, 9))


def test_single_active_session_under_contention(engine):
    def create(_):
        try:
            return engine.create_session()
        except ConflictError:
            return None

    with ThreadPoolExecutor(max_workers=6) as pool:
        created = [r for r in pool.map(create, range(6)) if r is not None]
    assert len(created) == 1
