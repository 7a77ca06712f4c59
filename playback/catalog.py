"""
Helpers for loading the recorded trip logs listed in settings.
A log that cannot be read is kept as ``None`` so the trip shows up as invalid
instead of disappearing from the fleet.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .clock import PlaybackClock
from .models import Trip
from .services import parse_timestamp

LOGGER = logging.getLogger(__name__)

DEFAULT_START_TIME = "2025-11-03T08:00:00.000Z"
DEFAULT_MAX_TIME = "2025-11-08T00:00:00.000Z"


def playback_config() -> Dict[str, Any]:
    return getattr(settings, "PLAYBACK_CONFIG", {}) or {}


def _config_instant(key: str, default: str) -> datetime:
    raw = playback_config().get(key, default)
    instant = parse_timestamp(raw)
    if instant is None:
        raise ImproperlyConfigured(f"PLAYBACK_CONFIG[{key!r}] is not a valid timestamp: {raw!r}")
    return instant


def build_clock(**kwargs) -> PlaybackClock:
    return PlaybackClock(
        start_time=_config_instant("start_time", DEFAULT_START_TIME),
        max_time=_config_instant("max_time", DEFAULT_MAX_TIME),
        **kwargs,
    )


def read_trip_log(path: Path) -> Optional[List[Any]]:
    try:
        with path.open(encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        LOGGER.warning("Trip log %s does not exist", path)
        return None
    except (OSError, ValueError) as error:
        LOGGER.warning("Trip log %s could not be read: %s", path, error)
        return None

    if not isinstance(payload, list):
        LOGGER.warning("Trip log %s holds a %s, expected a list of events", path, type(payload).__name__)
        return None
    return payload


def load_trips() -> List[Trip]:
    """
    Read every trip in ``settings.TRIP_CATALOG`` from the configured data directory.
    """
    data_dir = Path(playback_config().get("data_dir", "data/trips"))
    trips: List[Trip] = []
    for entry in getattr(settings, "TRIP_CATALOG", []):
        events = read_trip_log(data_dir / entry["file"])
        trips.append(
            Trip(
                trip_id=entry["id"],
                name=entry.get("name", f"Trip {entry['id']}"),
                color=entry.get("color", "#1976d2"),
                icon=entry.get("icon", ""),
                events=events,
            )
        )
    LOGGER.info(
        "Loaded %d trips from %s (%d with usable logs)",
        len(trips),
        data_dir,
        sum(1 for trip in trips if trip.events),
    )
    return trips
