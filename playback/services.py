"""
Derivation helpers for replaying recorded trip logs against the simulated
clock, plus the process-wide playback session that serves the dashboard.
"""
from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from django.utils.dateparse import parse_datetime

from .clock import SPEED_OPTIONS, PlaybackClock
from .exceptions import InvalidTripLogError, UnknownTripError
from .models import Event, FleetMetrics, LatLng, PlaybackSnapshot, Trip, TripState, TripStatus

logger = logging.getLogger(__name__)

RECENT_EVENT_LIMIT = 5
INVALID_DATA_ALERT = "Data Invalid"

# Probe orders: for every logical field the recorded snake_case key comes
# first, then the camelCase alias.
EVENT_TYPE_KEYS = ("event_type", "eventType")
PLANNED_DISTANCE_KEYS = ("planned_distance_km", "plannedDistanceKm")
DISTANCE_TRAVELLED_KEYS = (
    "distance_travelled_km",
    "distanceTravelledKm",
    "total_distance_km",
    "totalDistanceKm",
    "distance_completed_km",
    "distanceCompletedKm",
)
SPEED_KEYS = ("speed_kmh", "speedKmh")
BATTERY_LOW_KEYS = ("battery_low", "batteryLow")
CANCELLATION_REASON_KEYS = ("cancellation_reason", "cancellationReason")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an event timestamp into an aware UTC datetime.
    Returns None for anything that is not a usable instant.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = parse_datetime(value.strip())
        except ValueError:
            return None
        if parsed is None:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _lookup(event: Mapping, keys: Iterable[str]) -> Any:
    for key in keys:
        value = event.get(key)
        if value is not None:
            return value
    return None


def _as_number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _as_location(value: Any) -> Optional[LatLng]:
    if not isinstance(value, Mapping):
        return None
    lat = _as_number(value.get("lat"), math.nan)
    lng = _as_number(value.get("lng"), math.nan)
    if math.isnan(lat) or math.isnan(lng):
        return None
    return {"lat": lat, "lng": lng}


def _event_type(event: Mapping) -> Optional[str]:
    return _lookup(event, EVENT_TYPE_KEYS)


def _validate_log(events: Any) -> Sequence[Event]:
    if events is None:
        raise InvalidTripLogError("log is missing")
    if not isinstance(events, (list, tuple)):
        raise InvalidTripLogError(f"log is a {type(events).__name__}, not a list")
    if not events:
        raise InvalidTripLogError("log is empty")
    return events


def planned_distance_km(events: Any) -> float:
    """Planned trip length, read from the first event of the log only."""
    try:
        events = _validate_log(events)
    except InvalidTripLogError:
        return 0.0
    first = events[0]
    if not isinstance(first, Mapping):
        return 0.0
    return max(_as_number(_lookup(first, PLANNED_DISTANCE_KEYS)), 0.0)


def distance_travelled_km(event: Mapping) -> float:
    return _as_number(_lookup(event, DISTANCE_TRAVELLED_KEYS))


def events_until(events: Sequence[Any], sim_time: datetime) -> List[Event]:
    """Events at or before ``sim_time``, in log order; undated entries are dropped."""
    visible: List[Event] = []
    for event in events:
        if not isinstance(event, Mapping):
            continue
        timestamp = parse_timestamp(event.get("timestamp"))
        if timestamp is not None and timestamp <= sim_time:
            visible.append(event)
    return visible


def classify_status(latest: Mapping) -> TripStatus:
    status = TripStatus.ACTIVE
    event_type = _event_type(latest)
    if event_type == "trip_completed":
        status = TripStatus.COMPLETED
    if event_type == "trip_cancelled":
        status = TripStatus.CANCELLED
    return status


def active_alerts(latest: Mapping) -> List[str]:
    """Alerts raised by the most recent event alone; earlier events do not linger."""
    alerts: List[str] = []
    event_type = _event_type(latest)
    if latest.get("overspeed") is True:
        alerts.append("Overspeed Alert")
    if event_type == "signal_lost":
        alerts.append("Signal Lost")
    if event_type == "fuel_level_low" or _lookup(latest, BATTERY_LOW_KEYS):
        alerts.append("Low Fuel/Battery")
    if event_type == "trip_cancelled":
        alerts.append(_lookup(latest, CANCELLATION_REASON_KEYS) or "Cancelled")
    return alerts


def derive_trip_state(
    events: Any,
    sim_time: datetime,
    trip_id: int,
    color: Optional[str] = None,
) -> TripState:
    """
    Compute the state of one trip as of ``sim_time``.

    Never raises: a missing, non-list or empty log becomes an ``error`` state,
    and a log whose first event lies after ``sim_time`` becomes ``idle``. An
    unusable ``sim_time`` sees no events, so a valid log is ``idle``.
    """
    try:
        events = _validate_log(events)
    except InvalidTripLogError as error:
        logger.warning("Invalid data for trip %s: %s", trip_id, error)
        return TripState(
            trip_id=trip_id,
            status=TripStatus.ERROR,
            alerts=(INVALID_DATA_ALERT,),
            color=color,
        )

    instant = parse_timestamp(sim_time)
    if instant is None:
        logger.warning("Unusable simulated time %r for trip %s", sim_time, trip_id)
        visible = []
    else:
        visible = events_until(events, instant)
    if not visible:
        return TripState(
            trip_id=trip_id,
            status=TripStatus.IDLE,
            total_events=len(events),
            color=color,
        )

    latest = visible[-1]
    planned = planned_distance_km(events)
    travelled = distance_travelled_km(latest)
    progress = max(min(travelled / planned * 100, 100.0), 0.0) if planned > 0 else 0.0

    path = []
    for event in visible:
        location = _as_location(event.get("location"))
        if location is not None:
            path.append(location)

    movement = latest.get("movement")
    speed = _as_number(_lookup(movement, SPEED_KEYS)) if isinstance(movement, Mapping) else 0.0

    return TripState(
        trip_id=trip_id,
        status=classify_status(latest),
        progress=progress,
        position=_as_location(latest.get("location")),
        speed_kmh=speed,
        path=tuple(path),
        alerts=tuple(active_alerts(latest)),
        recent_events=tuple(visible[-RECENT_EVENT_LIMIT:]),
        total_events=len(events),
        color=color,
    )


def planned_distances_for(trips: Iterable[Trip]) -> Dict[int, float]:
    return {trip.trip_id: planned_distance_km(trip.events) for trip in trips}


def aggregate_fleet(
    states: Sequence[TripState],
    planned_distances: Mapping,
) -> FleetMetrics:
    """
    Roll the per-trip states up into fleet totals. Trips without a planned
    distance contribute nothing to the distance total.

    Every state passed in counts, error states included: each one adds to the
    speed divisor with speed 0 and adds its "Data Invalid" alert. Callers that
    want the rollup over valid trips only should filter before calling.
    """
    counts = {TripStatus.ACTIVE: 0, TripStatus.COMPLETED: 0, TripStatus.CANCELLED: 0}
    total_distance = 0.0
    total_speed = 0.0
    total_alerts = 0

    for state in states:
        if state.status in counts:
            counts[state.status] += 1
        total_distance += (state.progress / 100) * planned_distances.get(state.trip_id, 0.0)
        total_speed += state.speed_kmh
        total_alerts += len(state.alerts)

    return FleetMetrics(
        active=counts[TripStatus.ACTIVE],
        completed=counts[TripStatus.COMPLETED],
        cancelled=counts[TripStatus.CANCELLED],
        total_distance_km=total_distance,
        avg_speed_kmh=total_speed / len(states) if states else 0.0,
        total_alerts=total_alerts,
    )


class PlaybackSession:
    """
    Ties the clock to the trip catalog: every change of simulated time
    re-derives each trip and the fleet totals.
    """

    def __init__(self, trips: Sequence[Trip], clock: PlaybackClock):
        self.trips = list(trips)
        self.clock = clock
        self.selected_trip_id: Optional[int] = None
        self._planned = planned_distances_for(self.trips)
        self._lock = threading.RLock()
        self._snapshot = PlaybackSnapshot()
        self._reported_data_error = False
        self.clock.add_listener(self.refresh)
        self.refresh(self.clock.sim_time)

    def refresh(self, sim_time: datetime) -> PlaybackSnapshot:
        states = [
            derive_trip_state(trip.events, sim_time, trip.trip_id, trip.color)
            for trip in self.trips
        ]
        fleet = aggregate_fleet(states, self._planned)
        data_error = not any(state.status is not TripStatus.ERROR for state in states)
        if data_error and not self._reported_data_error:
            logger.error("No valid trip data found. Check the JSON files in the trip data directory.")
        self._reported_data_error = data_error

        snapshot = PlaybackSnapshot(states=states, fleet=fleet, data_error=data_error)
        with self._lock:
            self._snapshot = snapshot
        if data_error and self.clock.is_playing:
            self.clock.pause()
        return snapshot

    @property
    def data_error(self) -> bool:
        with self._lock:
            return self._snapshot.data_error

    @property
    def states(self) -> List[TripState]:
        with self._lock:
            return list(self._snapshot.states)

    @property
    def fleet(self) -> FleetMetrics:
        with self._lock:
            return self._snapshot.fleet

    def state_for(self, trip_id: int) -> TripState:
        for state in self.states:
            if state.trip_id == trip_id:
                return state
        raise UnknownTripError(trip_id)

    def toggle_play(self) -> bool:
        """Flip play/pause. Playback never starts while the fleet has no valid data."""
        if self.clock.is_playing:
            self.clock.pause()
        elif not self.data_error:
            self.clock.play()
        else:
            logger.warning("Refusing to start playback: no valid trip data loaded.")
        return self.clock.is_playing

    def set_speed(self, speed: Any) -> int:
        self.clock.set_speed(speed)
        return self.clock.speed

    def select_trip(self, trip_id: Optional[int]) -> Optional[int]:
        """
        Mark a trip for emphasis; selecting the current selection clears it.
        Selection never changes derived values.
        """
        if trip_id is not None and (
            isinstance(trip_id, bool)
            or not isinstance(trip_id, int)
            or trip_id not in {trip.trip_id for trip in self.trips}
        ):
            raise UnknownTripError(trip_id)
        with self._lock:
            if trip_id == self.selected_trip_id:
                trip_id = None
            self.selected_trip_id = trip_id
            return self.selected_trip_id

    def snapshot(self) -> Dict[str, Any]:
        """
        Provide a ready-to-use snapshot for the dashboard APIs.
        """
        with self._lock:
            current = self._snapshot
            selected = self.selected_trip_id

        return {
            "sim_time": self.clock.sim_time.isoformat().replace("+00:00", "Z"),
            "is_playing": self.clock.is_playing,
            "speed": self.clock.speed,
            "speed_options": list(SPEED_OPTIONS),
            "selected_trip_id": selected,
            "data_error": current.data_error,
            "trips": [trip.as_catalog_entry() for trip in self.trips],
            "states": [state.as_dict() for state in current.states],
            "fleet": current.fleet.as_dict(),
        }

    def close(self) -> None:
        self.clock.close()


_SESSION: Optional[PlaybackSession] = None
_SESSION_LOCK = threading.Lock()


def get_session() -> PlaybackSession:
    """Build the process-wide session from settings on first use."""
    global _SESSION
    with _SESSION_LOCK:
        if _SESSION is None:
            from .catalog import build_clock, load_trips

            _SESSION = PlaybackSession(load_trips(), build_clock())
        return _SESSION


def reset_session() -> None:
    global _SESSION
    with _SESSION_LOCK:
        if _SESSION is not None:
            _SESSION.close()
        _SESSION = None
