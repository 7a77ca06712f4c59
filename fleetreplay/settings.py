"""
Django settings for the fleet replay project.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-fleet-replay-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = [host for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if host]

INSTALLED_APPS = [
    "playback",
]

MIDDLEWARE = [
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "fleetreplay.urls"
WSGI_APPLICATION = "fleetreplay.wsgi.application"

# Trip logs are static JSON files; nothing is persisted.
DATABASES = {}

USE_TZ = True
TIME_ZONE = "UTC"

PLAYBACK_CONFIG = {
    "start_time": os.environ.get("PLAYBACK_START_TIME", "2025-11-03T08:00:00.000Z"),
    "max_time": os.environ.get("PLAYBACK_MAX_TIME", "2025-11-08T00:00:00.000Z"),
    "data_dir": Path(os.environ.get("PLAYBACK_DATA_DIR", BASE_DIR / "data" / "trips")),
}

TRIP_CATALOG = [
    {"id": 1, "name": "Cross-Country Long Haul", "file": "trip_1_cross_country.json", "color": "#1976d2", "icon": "🚛"},
    {"id": 2, "name": "Urban Dense Delivery", "file": "trip_2_urban_dense.json", "color": "#f50057", "icon": "📦"},
    {"id": 3, "name": "Mountain Route Cancelled", "file": "trip_3_mountain_cancelled.json", "color": "#d32f2f", "icon": "⛰️"},
    {"id": 4, "name": "Southern Technical Issues", "file": "trip_4_southern_technical.json", "color": "#ed6c02", "icon": "🔧"},
    {"id": 5, "name": "Regional Logistics", "file": "trip_5_regional_logistics.json", "color": "#2196f3", "icon": "🛣️"},
]

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "playback": {
            "handlers": ["console"],
            "level": os.environ.get("PLAYBACK_LOG_LEVEL", "INFO"),
        },
    },
}
