import math
from datetime import date, datetime, time
from typing import Optional, Sequence, Tuple

from config import EARTH_RADIUS_METERS, SERVICE_BOUNDS, Bounds


def haversine_m(a: Sequence[float], b: Sequence[float]) -> float:
    """Great-circle distance in meters between two (lat, lng) points."""
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(min(1.0, h)))


def is_within_bounds(lat: float, lng: float, bounds: Bounds = SERVICE_BOUNDS) -> bool:
    return bounds.south <= lat <= bounds.north and bounds.west <= lng <= bounds.east


def validate_coordinates(coords) -> bool:
    """True when coords is a (lat, lng) pair of finite numbers."""
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        return False
    try:
        return all(math.isfinite(float(value)) for value in coords)
    except (TypeError, ValueError):
        return False


def as_pair(point) -> Optional[Tuple[float, float]]:
    """Accept Coordinates, {"lat", "lng"} dicts or (lat, lng) sequences."""
    if point is None:
        return None
    if isinstance(point, dict):
        coords = [point.get("lat"), point.get("lng")]
    elif hasattr(point, "lat") and hasattr(point, "lng"):
        coords = [point.lat, point.lng]
    else:
        coords = list(point) if isinstance(point, (list, tuple)) else None
    if not validate_coordinates(coords):
        return None
    return float(coords[0]), float(coords[1])


def day_window(day: date) -> Tuple[datetime, datetime]:
    """Local-time [00:00:00.000, 23:59:59.999] bounds of a calendar day."""
    start = datetime.combine(day, time.min).astimezone()
    end = datetime.combine(day, time(23, 59, 59, 999000)).astimezone()
    return start, end


def format_departure(dep) -> str:
    if isinstance(dep, datetime):
        return dep.astimezone().strftime("%a %d %b %Y, %H:%M")
    if isinstance(dep, date):
        return dep.strftime("%a %d %b %Y")
    if isinstance(dep, str):
        try:
            return format_departure(datetime.fromisoformat(dep))
        except ValueError:
            return dep
    return str(dep)


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{meters:.0f} m"
    return f"{meters / 1000:.1f} km"
