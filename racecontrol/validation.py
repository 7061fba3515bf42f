"""
Input checks shared by the engine and the HTTP adapter.

Normalizers return the cleaned value or raise ValidationError; the one
predicate (`validate_race_session`) returns (ok, message) for callers that
only need a yes/no.
"""
from __future__ import annotations

from typing import Any, Optional, Tuple

from .constants import DRIVER_NAME_MAX, MAX_DRIVERS, RaceMode
from .errors import ValidationError


def validate_driver_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Driver name is required", field="name")
    cleaned = name.strip()
    if len(cleaned) > DRIVER_NAME_MAX:
        raise ValidationError(
            f"Driver name must be at most {DRIVER_NAME_MAX} characters", field="name"
        )
    return cleaned


def validate_race_mode(mode: Any) -> RaceMode:
    if isinstance(mode, RaceMode):
        return mode
    if not isinstance(mode, str) or not mode.strip():
        raise ValidationError("Race mode is required", field="mode")
    try:
        return RaceMode(mode.strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in RaceMode)
        raise ValidationError(f"Invalid race mode '{mode}' (allowed: {allowed})", field="mode")


def validate_car_number(car_number: Any, max_drivers: int = MAX_DRIVERS) -> int:
    # bool is an int subclass; True must not become car 1
    if isinstance(car_number, bool):
        raise ValidationError("Car number must be an integer", field="carNumber")
    try:
        n = int(car_number)
    except (TypeError, ValueError):
        raise ValidationError("Car number must be an integer", field="carNumber")
    if isinstance(car_number, float) and car_number != n:
        raise ValidationError("Car number must be an integer", field="carNumber")
    if n < 1 or n > max_drivers:
        raise ValidationError(f"Car number must be between 1 and {max_drivers}", field="carNumber")
    return n


def validate_timestamp(timestamp: Any) -> int:
    if isinstance(timestamp, bool):
        raise ValidationError("Timestamp must be a number", field="timestamp")
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        raise ValidationError("Timestamp must be a number", field="timestamp")
    if ts < 0:
        raise ValidationError("Timestamp must be at least 0", field="timestamp")
    return ts


def validate_race_session(race: Optional[Any], max_drivers: int = MAX_DRIVERS) -> Tuple[bool, Optional[str]]:
    if not race:
        return False, "Race data is required"
    drivers = race.get("drivers") if isinstance(race, dict) else getattr(race, "drivers", None)
    if drivers and len(drivers) > max_drivers:
        return False, f"Maximum {max_drivers} drivers allowed"
    return True, None
