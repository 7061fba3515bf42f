"""
Race lifecycle, roster, lap recording and the end-of-race deadline.
"""
import time

import pytest

from conftest import RecordingBroadcaster, engine_config
from racecontrol.constants import Events, RaceMode, RaceStatus
from racecontrol.errors import CapacityError, ConflictError, NotFoundError, StateError, ValidationError
from racecontrol.race_engine import RaceEngine


def _wait_for(predicate, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


# ----------------------------- sessions -----------------------------
def test_create_starts_upcoming_and_safe(engine, recorder):
    race = engine.create_session()
    assert race.status == RaceStatus.UPCOMING
    assert race.mode == RaceMode.SAFE
    assert race.drivers == [] and race.start_time is None
    assert recorder.names() == [Events.RACE_CREATED]


def test_only_one_active_session(engine):
    race = engine.create_session()
    with pytest.raises(ConflictError):
        engine.create_session()
    engine.add_driver(race.id, "Alice")
    engine.start_session(race.id)
    with pytest.raises(ConflictError):
        engine.create_session()
    engine.end_session(race.id)
    assert engine.create_session().id != race.id


def test_start_needs_a_driver(engine):
    race = engine.create_session()
    with pytest.raises(StateError):
        engine.start_session(race.id)
    assert engine.get_race(race.id).status == RaceStatus.UPCOMING


def test_start_sets_clock_duration_and_green_flag(engine, recorder, clock):
    race = engine.create_session()
    engine.add_driver(race.id, "Alice")
    recorder.clear()

    started = engine.start_session(race.id)
    assert started.status == RaceStatus.IN_PROGRESS
    assert started.mode == RaceMode.SAFE
    assert started.start_time == clock.now
    assert started.duration == 60_000
    assert engine.timer.pending(race.id)
    assert recorder.names() == [Events.RACE_STARTED, Events.FLAG_STATUS_UPDATE,
                                Events.RACE_TIMER_UPDATE, Events.LEADERBOARD_UPDATE]
    assert recorder.last(Events.FLAG_STATUS_UPDATE)["flag"] == "green"
    assert recorder.last(Events.RACE_TIMER_UPDATE)["remaining"] == "01:00"

    with pytest.raises(StateError):
        engine.start_session(race.id)


def test_unknown_race_is_not_found(engine):
    for call in (lambda: engine.start_session(404), lambda: engine.get_race(404),
                 lambda: engine.delete_session(404), lambda: engine.get_stats(404)):
        with pytest.raises(NotFoundError):
            call()


# ----------------------------- modes -----------------------------
def test_change_mode_publishes_flag(engine, running_race, recorder):
    recorder.clear()
    race = engine.change_mode(running_race, "hazard")
    assert race.mode == RaceMode.HAZARD
    changed = recorder.last(Events.RACE_MODE_CHANGED)
    assert changed["mode"] == "hazard" and changed["previousMode"] == "safe"
    assert recorder.last(Events.FLAG_STATUS_UPDATE)["flag"] == "yellow"


def test_invalid_mode_leaves_mode_unchanged_scenario_c(engine, running_race, recorder):
    engine.change_mode(running_race, "danger")
    recorder.clear()
    with pytest.raises(ValidationError):
        engine.change_mode(running_race, "turbo")
    assert engine.get_race(running_race).mode == RaceMode.DANGER
    assert recorder.names() == []


def test_mode_only_changes_while_racing(engine):
    race = engine.create_session()
    with pytest.raises(StateError):
        engine.change_mode(race.id, "hazard")


def test_finish_mode_is_terminal(engine, running_race):
    engine.change_mode(running_race, "finish")
    with pytest.raises(StateError):
        engine.change_mode(running_race, "safe")
    assert engine.get_race(running_race).status == RaceStatus.IN_PROGRESS


def test_same_mode_is_republished(engine, running_race, recorder):
    recorder.clear()
    engine.change_mode(running_race, "safe")
    assert recorder.names() == [Events.RACE_MODE_CHANGED, Events.FLAG_STATUS_UPDATE]


# ----------------------------- end / delete -----------------------------
def test_end_returns_final_snapshot_scenario_d(engine, running_race, recorder, clock):
    engine.record_lap(running_race, 1, 1000)
    engine.record_lap(running_race, 1, 21000)
    clock.advance(5000)
    final = engine.end_session(running_race)

    race = engine.get_race(running_race)
    assert race.status == RaceStatus.FINISHED
    assert race.mode == RaceMode.FINISH
    assert race.end_time == clock.now
    assert not engine.timer.pending(running_race)
    assert final["totalLaps"] == 2 and final["status"] == "finished"
    assert recorder.last(Events.FLAG_STATUS_UPDATE)["flag"] == "checkered"
    assert recorder.last(Events.RACE_ENDED)["stats"]["totalLaps"] == 2

    with pytest.raises(StateError):
        engine.end_session(running_race)
    final["totalLaps"] = -1
    assert engine.get_stats(running_race)["totalLaps"] == 2


def test_end_requires_in_progress(engine):
    race = engine.create_session()
    with pytest.raises(StateError):
        engine.end_session(race.id)


def test_delete_cancels_timer_and_removes_everything(engine, running_race, recorder):
    engine.record_lap(running_race, 1, 1000)
    engine.delete_session(running_race)
    assert not engine.timer.pending(running_race)
    assert recorder.last(Events.RACE_DELETED) == {"raceId": running_race}
    with pytest.raises(NotFoundError):
        engine.get_race(running_race)
    assert engine.get_current()["race"] is None


def test_deadline_flags_finish_then_ends(store, recorder, clock):
    eng = RaceEngine(store, recorder, config=engine_config(duration_ms=50), clock=clock)
    try:
        race = eng.create_session()
        eng.add_driver(race.id, "Alice")
        eng.start_session(race.id)
        assert _wait_for(lambda: Events.RACE_ENDED in recorder.names()), "race never auto-ended"

        done = eng.get_race(race.id)
        assert done.mode == RaceMode.FINISH
        names = recorder.names()
        assert names.index(Events.RACE_MODE_CHANGED) < names.index(Events.RACE_ENDED)
        assert names.count(Events.RACE_ENDED) == 1
    finally:
        eng.shutdown()


def test_manual_end_beats_deadline(store, recorder, clock):
    eng = RaceEngine(store, recorder, config=engine_config(duration_ms=100), clock=clock)
    try:
        race = eng.create_session()
        eng.add_driver(race.id, "Alice")
        eng.start_session(race.id)
        eng.end_session(race.id)
        time.sleep(0.25)
        assert recorder.names().count(Events.RACE_ENDED) == 1
    finally:
        eng.shutdown()


def test_resume_rearms_or_ends_overdue_races(store, recorder, clock):
    overdue = store.create_race()
    store.add_driver(overdue.id, "Alice", 1)
    store.update_race(overdue.id, status=RaceStatus.IN_PROGRESS, start_time=clock.now - 120_000, duration=60_000)

    eng = RaceEngine(store, recorder, config=engine_config(), clock=clock)
    try:
        assert eng.resume() == []
        assert eng.get_race(overdue.id).status == RaceStatus.FINISHED

        live = eng.create_session()
        store.add_driver(live.id, "Bob", 1)
        store.update_race(live.id, status=RaceStatus.IN_PROGRESS, start_time=clock.now, duration=60_000)
        assert eng.resume() == [live.id]
        assert eng.timer.pending(live.id)
        assert eng.timer_state(live.id)["remainingMs"] == 60_000
    finally:
        eng.shutdown()


# ----------------------------- roster -----------------------------
def test_car_numbers_lowest_free(engine, recorder):
    race = engine.create_session()
    alice = engine.add_driver(race.id, "Alice")
    bob = engine.add_driver(race.id, "Bob")
    assert (alice.car_number, bob.car_number) == (1, 2)
    assert recorder.last(Events.DRIVER_ADDED)["driver"]["carNumber"] == 2

    engine.remove_driver(race.id, alice.id)
    assert recorder.last(Events.DRIVER_REMOVED)["driverId"] == alice.id
    assert engine.add_driver(race.id, "Cara").car_number == 1
    assert engine.add_driver(race.id, "Dan", 5).car_number == 5
    assert engine.add_driver(race.id, "Eve").car_number == 3


def test_duplicate_name_and_car(engine):
    race = engine.create_session()
    engine.add_driver(race.id, "Alice", 3)
    with pytest.raises(ConflictError):
        engine.add_driver(race.id, "  alice ")
    with pytest.raises(ConflictError):
        engine.add_driver(race.id, "Bob", 3)
    with pytest.raises(ValidationError):
        engine.add_driver(race.id, "Bob", 9)
    with pytest.raises(ValidationError):
        engine.add_driver(race.id, "   ")
    assert len(engine.get_drivers(race.id)) == 1


def test_capacity(engine):
    race = engine.create_session()
    for i in range(8):
        engine.add_driver(race.id, f"Driver {i}")
    with pytest.raises(CapacityError):
        engine.add_driver(race.id, "Ninth")
    assert sorted(d.car_number for d in engine.get_drivers(race.id)) == list(range(1, 9))


def test_roster_frozen_once_started(engine, running_race):
    with pytest.raises(StateError):
        engine.add_driver(running_race, "Late")
    driver = engine.get_drivers(running_race)[0]
    with pytest.raises(StateError):
        engine.remove_driver(running_race, driver.id)


def test_remove_unknown_driver(engine):
    race = engine.create_session()
    with pytest.raises(NotFoundError):
        engine.remove_driver(race.id, 999)


def test_update_driver_renames_and_moves_car(engine, recorder):
    race = engine.create_session()
    alice = engine.add_driver(race.id, "Alice")
    engine.add_driver(race.id, "Bob")

    moved = engine.update_driver(race.id, alice.id, name=" Alicia ", car_number=5)
    assert (moved.id, moved.name, moved.car_number) == (alice.id, "Alicia", 5)
    event = recorder.last(Events.DRIVER_UPDATED)
    assert event["driver"]["carNumber"] == 5 and event["previous"]["carNumber"] == 1
    assert set(event["stats"]["driverStats"]) == {2, 5}

    # car 1 is free again
    assert engine.add_driver(race.id, "Cara").car_number == 1
    # keeping your own name or car is not a conflict
    assert engine.update_driver(race.id, alice.id, name="alicia", car_number=5).name == "alicia"
    assert engine.update_driver(race.id, alice.id).car_number == 5


def test_update_driver_rejections(engine):
    race = engine.create_session()
    alice = engine.add_driver(race.id, "Alice")
    engine.add_driver(race.id, "Bob", 2)

    with pytest.raises(ConflictError):
        engine.update_driver(race.id, alice.id, name="BOB")
    with pytest.raises(ConflictError):
        engine.update_driver(race.id, alice.id, car_number=2)
    with pytest.raises(ValidationError):
        engine.update_driver(race.id, alice.id, car_number=9)
    with pytest.raises(ValidationError):
        engine.update_driver(race.id, alice.id, name="  ")
    with pytest.raises(NotFoundError):
        engine.update_driver(race.id, 999, name="Zed")
    assert engine.get_race(race.id).driver_by_car(1).name == "Alice"

    engine.start_session(race.id)
    with pytest.raises(StateError):
        engine.update_driver(race.id, alice.id, name="Late Change")


# ----------------------------- laps -----------------------------
def test_lap_numbers_and_durations_scenario_a(engine, running_race, recorder):
    first = engine.record_lap(running_race, 1, 1000)
    assert (first.lap_number, first.duration) == (1, 0)
    assert Events.FASTEST_LAP_UPDATE not in recorder.names()

    second = engine.record_lap(running_race, 1, 21000)
    assert (second.lap_number, second.duration) == (2, 20000)
    assert recorder.last(Events.LAP_RECORDED)["lap"]["lapNumber"] == 2
    assert recorder.last(Events.FASTEST_LAP_UPDATE)["fastestLap"]["time"] == 20000

    other = engine.record_lap(running_race, 2, 22000)
    assert (other.lap_number, other.duration) == (1, 0)

    board = engine.get_leaderboard(running_race)
    assert [row["carNumber"] for row in board] == [1, 2]
    assert board[0]["bestLap"] == 20000


def test_fastest_update_only_when_it_changes(engine, running_race, recorder):
    engine.record_lap(running_race, 1, 0)
    engine.record_lap(running_race, 1, 30000)
    engine.record_lap(running_race, 2, 0)
    recorder.clear()
    engine.record_lap(running_race, 2, 31000)
    assert Events.FASTEST_LAP_UPDATE not in recorder.names()
    engine.record_lap(running_race, 2, 56000)
    assert recorder.last(Events.FASTEST_LAP_UPDATE)["fastestLap"]["carNumber"] == 2


def test_lap_timestamp_defaults_to_clock(engine, running_race, clock):
    lap = engine.record_lap(running_race, 1)
    assert lap.timestamp == clock.now
    clock.advance(25_000)
    assert engine.record_lap(running_race, 1).duration == 25_000


def test_lap_rejections_leave_no_record(engine, running_race):
    engine.record_lap(running_race, 1, 5000)
    with pytest.raises(ValidationError):
        engine.record_lap(running_race, 1, 4000)
    with pytest.raises(ValidationError):
        engine.record_lap(running_race, 0, 6000)
    with pytest.raises(NotFoundError):
        engine.record_lap(running_race, 7, 6000)
    assert len(engine.get_laps(running_race)) == 1


def test_no_laps_outside_a_running_race(engine):
    race = engine.create_session()
    engine.add_driver(race.id, "Alice")
    with pytest.raises(StateError):
        engine.record_lap(race.id, 1, 1000)
    engine.start_session(race.id)
    engine.end_session(race.id)
    with pytest.raises(StateError):
        engine.record_lap(race.id, 1, 1000)
    assert engine.get_laps(race.id) == []


def test_stats_follow_writes_without_waiting_for_ttl(engine, running_race):
    assert engine.get_stats(running_race)["totalLaps"] == 0
    engine.record_lap(running_race, 1, 1000)
    assert engine.get_stats(running_race)["totalLaps"] == 1


# ----------------------------- reads -----------------------------
def test_current_placeholder_and_active_race(engine):
    assert engine.get_current() == {"race": None, "status": "upcoming", "drivers": [], "stats": None}
    race = engine.create_session()
    engine.add_driver(race.id, "Alice")
    current = engine.get_current()
    assert set(current) == {"race", "status", "drivers", "stats"}
    assert current["race"]["id"] == race.id and current["status"] == "upcoming"
    assert [d["name"] for d in current["drivers"]] == ["Alice"]
    assert current["stats"]["participantsCount"] == 1


def test_list_races_filters_and_paginates(engine):
    first = engine.create_session()
    engine.add_driver(first.id, "Alice")
    engine.start_session(first.id)
    engine.end_session(first.id)
    engine.create_session()

    listing = engine.list_races()
    assert listing["pagination"]["total"] == 2
    finished = engine.list_races("finished")
    assert [r["id"] for r in finished["data"]] == [first.id]
    assert finished["data"][0]["driver_count"] == 1
    assert len(engine.list_races(limit=1)["data"]) == 1
    with pytest.raises(ValidationError):
        engine.list_races("paused")


def test_publish_failures_do_not_break_writes(store, clock):
    class Exploding(RecordingBroadcaster):
        def publish(self, event, payload):
            raise RuntimeError("gateway down")

    eng = RaceEngine(store, Exploding(), config=engine_config(), clock=clock)
    try:
        race = eng.create_session()
        eng.add_driver(race.id, "Alice")
        assert eng.get_race(race.id).drivers[0].name == "Alice"
    finally:
        eng.shutdown()


def test_stats_reads_hand_out_copies(engine, running_race):
    engine.record_lap(running_race, 1, 1000)
    stats = engine.get_stats(running_race)
    stats["totalLaps"] = 999
    stats["driverStats"][1]["totalLaps"] = 999
    again = engine.get_stats(running_race)
    assert again["totalLaps"] == 1 and again["driverStats"][1]["totalLaps"] == 1

    engine.get_current()["stats"]["totalLaps"] = 999
    assert engine.get_stats(running_race)["totalLaps"] == 1


def test_timer_state_reports_deadline(engine, running_race):
    before = time.time()
    state = engine.timer_state(running_race)
    assert state["timerPending"] is True
    assert before * 1000 + 59_000 < state["deadlineAt"] <= time.time() * 1000 + 60_000
    engine.end_session(running_race)
    assert engine.timer_state(running_race)["deadlineAt"] is None


def test_locks_only_for_known_races(engine, running_race):
    for bogus in range(1000, 1050):
        with pytest.raises(NotFoundError):
            engine.record_lap(bogus, 1, 1000)
    assert set(engine._race_locks) == {running_race}

    engine.delete_session(running_race)
    assert engine._race_locks == {}
    with pytest.raises(NotFoundError):
        engine.record_lap(running_race, 1, 2000)
    assert engine._race_locks == {}
