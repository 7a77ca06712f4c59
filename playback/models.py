from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

Event = Dict[str, Any]
LatLng = Dict[str, float]


class TripStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class Trip:
    """A recorded trip and the display metadata the dashboard shows for it."""
    trip_id: int
    name: str
    color: str = "#1976d2"
    icon: str = ""
    events: Optional[Sequence[Event]] = None  # None when the log failed to load

    def as_catalog_entry(self) -> Dict[str, Any]:
        return {
            "id": self.trip_id,
            "name": self.name,
            "color": self.color,
            "icon": self.icon,
        }


@dataclass(frozen=True)
class TripState:
    """
    Point-in-time view of one trip, derived from its log and the simulated
    clock. Rebuilt from scratch on every tick.
    """
    trip_id: int
    status: TripStatus
    progress: float = 0.0
    position: Optional[LatLng] = None
    speed_kmh: float = 0.0
    path: Tuple[LatLng, ...] = ()
    alerts: Tuple[str, ...] = ()
    recent_events: Tuple[Event, ...] = ()
    total_events: int = 0
    color: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "status": self.status.value,
            "progress": self.progress,
            "position": dict(self.position) if self.position else None,
            "speed_kmh": self.speed_kmh,
            "path": [dict(point) for point in self.path],
            "alerts": list(self.alerts),
            "recent_events": list(self.recent_events),
            "total_events": self.total_events,
            "color": self.color,
        }


@dataclass(frozen=True)
class FleetMetrics:
    active: int = 0
    completed: int = 0
    cancelled: int = 0
    total_distance_km: float = 0.0
    avg_speed_kmh: float = 0.0
    total_alerts: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "total_distance_km": round(self.total_distance_km, 3),
            "avg_speed_kmh": round(self.avg_speed_kmh, 2),
            "total_alerts": self.total_alerts,
        }


@dataclass
class PlaybackSnapshot:
    """Latest derived output of a playback session."""
    states: List[TripState] = field(default_factory=list)
    fleet: FleetMetrics = field(default_factory=FleetMetrics)
    data_error: bool = False
