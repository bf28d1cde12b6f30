"""
OpenRouteService directions client used for route display.
"""

import logging
from typing import Optional

import requests

from config import ORS_DIRECTIONS_URL, get_settings
from errors import UpstreamUnavailableError, ValidationError
from models import RouteResult
from utils import as_pair

logger = logging.getLogger(__name__)


def fetch_route(origin, destination, api_key: Optional[str] = None, timeout: Optional[float] = None) -> RouteResult:
    """
    Fetch a driving route between two points.

    Args:
        origin, destination: Coordinates, {"lat", "lng"} dicts or (lat, lng) pairs
        api_key: OpenRouteService key, defaults to the configured one
        timeout: request timeout in seconds, defaults to the configured one

    Returns:
        RouteResult with a GeoJSON LineString geometry

    Raises:
        ValidationError: either point is missing or not numeric
        UpstreamUnavailableError: the request failed, timed out or returned no route
    """
    start = as_pair(origin)
    end = as_pair(destination)
    if start is None or end is None:
        raise ValidationError("Route endpoints must be numeric coordinates")

    settings = None
    if api_key is None or timeout is None:
        settings = get_settings()
    api_key = api_key if api_key is not None else settings.ors_api_key
    timeout = timeout if timeout is not None else settings.route_timeout
    if not api_key:
        raise UpstreamUnavailableError("OpenRouteService API key is not configured")

    headers = {"Authorization": api_key}
    params = {"start": f"{start[1]},{start[0]}", "end": f"{end[1]},{end[0]}"}
    try:
        r = requests.get(ORS_DIRECTIONS_URL, headers=headers, params=params, timeout=timeout)
        r.raise_for_status()
        data = r.json()
    except requests.RequestException as e:
        raise UpstreamUnavailableError(f"Route request failed: {e}") from e
    except ValueError as e:
        raise UpstreamUnavailableError(f"Route response is not JSON: {e}") from e

    try:
        feat = data["features"][0]
        geometry = feat["geometry"]
        summary = feat["properties"]["summary"]
        return RouteResult(
            geometry=geometry,
            distance=float(summary.get("distance", 0)),
            duration=float(summary.get("duration", 0)),
        )
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise UpstreamUnavailableError(f"Malformed route response: {e}") from e


def get_route(origin, destination, api_key: Optional[str] = None, timeout: Optional[float] = None) -> RouteResult:
    """Route for display only: any failure yields the empty RouteResult."""
    try:
        return fetch_route(origin, destination, api_key=api_key, timeout=timeout)
    except ValidationError as e:
        logger.info(f"Skipping route lookup: {e}")
    except UpstreamUnavailableError as e:
        logger.warning(f"Route unavailable: {e}")
    return RouteResult()
