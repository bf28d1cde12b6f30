import logging
from functools import lru_cache
from typing import List, Optional, Tuple

from geopy.exc import GeopyError
from geopy.extra.rate_limiter import RateLimiter
from geopy.geocoders import Nominatim

from config import (
    GEOCODE_CACHE_SIZE,
    GEOCODE_MIN_DELAY_SECONDS,
    GEOCODE_MIN_QUERY_LENGTH,
    GEOCODE_RESULT_LIMIT,
    SERVICE_BOUNDS,
    SERVICE_COUNTRY_CODE,
    get_settings,
)
from errors import UpstreamUnavailableError
from models import AddressRecord, Coordinates, PlaceCandidate
from utils import is_within_bounds, validate_coordinates

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_geolocator() -> Nominatim:
    settings = get_settings()
    return Nominatim(user_agent=settings.nominatim_user_agent, timeout=settings.geocode_timeout)


@lru_cache(maxsize=1)
def get_throttled_geocode() -> RateLimiter:
    """The shared geolocator's ``geocode``, spaced out to the Nominatim rate limit."""
    return RateLimiter(
        get_geolocator().geocode,
        min_delay_seconds=GEOCODE_MIN_DELAY_SECONDS,
        max_retries=0,
        swallow_exceptions=False,
    )


def _to_candidate(location) -> Optional[PlaceCandidate]:
    coords = [getattr(location, "latitude", None), getattr(location, "longitude", None)]
    if not validate_coordinates(coords):
        return None
    lat, lng = float(coords[0]), float(coords[1])
    if not is_within_bounds(lat, lng, SERVICE_BOUNDS):
        return None
    raw = getattr(location, "raw", None) or {}
    label = getattr(location, "address", None) or raw.get("display_name") or ""
    place_id = raw.get("place_id")
    return PlaceCandidate(
        label=str(label),
        location=Coordinates(lat=lat, lng=lng),
        external_id=str(place_id) if place_id is not None else None,
    )


def geocode_candidates(query: str, geolocator=None) -> List[PlaceCandidate]:
    """
    Look up places matching ``query`` inside the service area.

    Raises:
        UpstreamUnavailableError: the geocoder failed or returned an unusable payload
    """
    geocode = geolocator.geocode if geolocator is not None else get_throttled_geocode()
    try:
        locations = geocode(
            query,
            exactly_one=False,
            limit=GEOCODE_RESULT_LIMIT,
            viewbox=SERVICE_BOUNDS.viewbox(),
            bounded=True,
            country_codes=SERVICE_COUNTRY_CODE,
        )
    except GeopyError as e:
        raise UpstreamUnavailableError(f"Geocoding failed for {query!r}: {e}") from e

    if locations is None:
        return []
    if not isinstance(locations, (list, tuple)):
        raise UpstreamUnavailableError(f"Unexpected geocoder payload for {query!r}")

    candidates = []
    for location in locations:
        candidate = _to_candidate(location)
        if candidate is None:
            logger.debug(f"Dropping geocode result without usable coordinates: {location!r}")
            continue
        candidates.append(candidate)
    return candidates


@lru_cache(maxsize=GEOCODE_CACHE_SIZE)
def _cached_candidates(query: str, geolocator) -> Tuple[PlaceCandidate, ...]:
    # failures raise and are therefore not cached
    return tuple(geocode_candidates(query, geolocator=geolocator))


def search_location(query: str, geolocator=None) -> List[PlaceCandidate]:
    """
    Search-as-you-type lookup; never raises, returns [] on short input or failure.

    Streamlit reruns the page on every widget interaction, so successful
    lookups are cached per query.
    """
    query = (query or "").strip()
    if len(query) < GEOCODE_MIN_QUERY_LENGTH:
        return []
    try:
        return list(_cached_candidates(query, geolocator))
    except UpstreamUnavailableError as e:
        logger.warning(f"Location search unavailable: {e}")
        return []


def format_address(candidate: PlaceCandidate) -> AddressRecord:
    parts = [part.strip() for part in candidate.label.split(",") if part.strip()]
    primary = parts[0] if parts else candidate.label
    secondary = ", ".join(parts[1:])
    return AddressRecord(
        location=candidate.location,
        formatted_label=candidate.label,
        primary_label=primary,
        secondary_label=secondary,
        external_id=candidate.external_id,
    )
