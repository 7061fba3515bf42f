from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .constants import RaceMode, RaceStatus


@dataclass(frozen=True)
class Driver:
    id: int
    race_id: int
    name: str
    car_number: int
    created_at: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "raceId": self.race_id,
            "name": self.name,
            "carNumber": self.car_number,
        }


@dataclass(frozen=True)
class LapRecord:
    id: int
    race_id: int
    car_number: int
    lap_number: int
    timestamp: int
    duration: int   # 0 on a car's first lap (no reference crossing)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "raceId": self.race_id,
            "carNumber": self.car_number,
            "lapNumber": self.lap_number,
            "timestamp": self.timestamp,
            "duration": self.duration,
        }


@dataclass
class Race:
    id: int
    status: RaceStatus = RaceStatus.UPCOMING
    mode: RaceMode = RaceMode.SAFE
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    duration: Optional[int] = None
    created_at: Optional[int] = None
    drivers: List[Driver] = field(default_factory=list)
    laps: List[LapRecord] = field(default_factory=list)

    def driver_by_car(self, car_number: int) -> Optional[Driver]:
        for d in self.drivers:
            if d.car_number == car_number:
                return d
        return None

    def laps_by_car(self) -> Dict[int, List[LapRecord]]:
        """Laps grouped per car, each list ordered by timestamp then lap number."""
        grouped: Dict[int, List[LapRecord]] = {d.car_number: [] for d in self.drivers}
        for lap in self.laps:
            grouped.setdefault(lap.car_number, []).append(lap)
        for laps in grouped.values():
            laps.sort(key=lambda l: (l.timestamp, l.lap_number))
        return grouped

    def as_dict(self, include_laps: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "mode": self.mode.value,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "createdAt": self.created_at,
            "drivers": [d.as_dict() for d in self.drivers],
        }
        if include_laps:
            out["laps"] = [l.as_dict() for l in self.laps]
        return out
