"""
racecontrol/errors.py
---------------------
Typed failures raised by the race engine.

Every error carries a `kind` (stable string the terminals can switch on), a
human message, and optional structured details. `http_status` is only a hint
for the HTTP adapter; the engine itself never talks about transports.
"""
from __future__ import annotations

from typing import Any, Dict


class RaceControlError(Exception):
    kind = "RaceControlError"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.kind, "message": self.message}
        out.update(self.details)
        return out


class ValidationError(RaceControlError):
    """Malformed input: bad name, bad mode value, out-of-range car number."""
    kind = "ValidationError"
    http_status = 400


class StateError(RaceControlError):
    """Operation not valid in the race's current status/mode."""
    kind = "StateError"
    http_status = 409


class ConflictError(RaceControlError):
    """Duplicate name/car number, or a second active session."""
    kind = "ConflictError"
    http_status = 409


class CapacityError(RaceControlError):
    kind = "CapacityError"
    http_status = 409


class NotFoundError(RaceControlError):
    kind = "NotFoundError"
    http_status = 404


class StoreError(RaceControlError):
    """Opaque infrastructure failure from the session store."""
    kind = "StoreError"
    http_status = 500
