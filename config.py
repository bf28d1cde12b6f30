import os
from dataclasses import dataclass
from functools import lru_cache

import streamlit as st


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    def viewbox(self):
        """Return the box as [(south, west), (north, east)] for geocoder viewboxes."""
        return [(self.south, self.west), (self.north, self.east)]

    @property
    def center(self):
        return ((self.north + self.south) / 2, (self.east + self.west) / 2)


# Bangalore
SERVICE_BOUNDS = Bounds(north=13.023577, south=12.823577, east=77.747774, west=77.447774)
SERVICE_COUNTRY_CODE = "in"

PROXIMITY_THRESHOLD_METERS = 2000
EARTH_RADIUS_METERS = 6371000
GEOCODE_MIN_QUERY_LENGTH = 3
GEOCODE_RESULT_LIMIT = 5
# Nominatim usage policy: at most one request per second
GEOCODE_MIN_DELAY_SECONDS = 1.0
GEOCODE_CACHE_SIZE = 500
MAX_SEAT_UPDATE_ATTEMPTS = 3

ORS_DIRECTIONS_URL = "https://api.openrouteservice.org/v2/directions/driving-car"

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def load_env_vars():
    """Copy Streamlit secrets into the environment without overriding it."""
    try:
        for k, v in st.secrets.items():
            os.environ.setdefault(k, str(v))
    except FileNotFoundError:
        # no secrets.toml, environment only
        pass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_key: str
    ors_api_key: str
    nominatim_user_agent: str
    geocode_timeout: float
    route_timeout: float
    restore_seats_on_cancel: bool
    log_level: str

    def __init__(self):
        load_env_vars()
        object.__setattr__(self, "supabase_url", os.getenv("SUPABASE_URL", "").strip())
        object.__setattr__(self, "supabase_key", os.getenv("SUPABASE_KEY", "").strip())
        object.__setattr__(self, "ors_api_key", os.getenv("ORS_API_KEY", "").strip())
        object.__setattr__(
            self,
            "nominatim_user_agent",
            os.getenv("NOMINATIM_USER_AGENT", "ridesharing_app").strip(),
        )
        object.__setattr__(
            self, "geocode_timeout", float(os.getenv("GEOCODE_TIMEOUT", "5").strip())
        )
        object.__setattr__(
            self, "route_timeout", float(os.getenv("ROUTE_TIMEOUT", "5").strip())
        )
        object.__setattr__(
            self,
            "restore_seats_on_cancel",
            _as_bool(os.getenv("RESTORE_SEATS_ON_CANCEL", "true")),
        )
        object.__setattr__(self, "log_level", os.getenv("LOG_LEVEL", "INFO").strip().upper())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
