from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from .errors import GeometryError

if TYPE_CHECKING:
    from .schema import Region, ViewportBounds

EARTH_RADIUS_M = 6_371_000.0


def validate_coordinates(latitude: Any, longitude: Any) -> tuple[float, float]:
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        raise GeometryError(f"coordinates must be numeric, got ({latitude!r}, {longitude!r})")
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise GeometryError(f"coordinates must be finite, got ({lat}, {lon})")
    if not -90.0 <= lat <= 90.0:
        raise GeometryError(f"latitude {lat} outside [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise GeometryError(f"longitude {lon} outside [-180, 180]")
    return lat, lon


def _latlon(point: Any) -> tuple[float, float]:
    if isinstance(point, (tuple, list)) and len(point) == 2:
        return validate_coordinates(point[0], point[1])
    try:
        return validate_coordinates(point.latitude, point.longitude)
    except AttributeError:
        raise GeometryError(f"not a coordinate pair: {point!r}")


def distance_meters(a: Any, b: Any) -> float:
    """Great-circle distance in meters between two points (haversine).

    Points may be ``Coordinates``, ``LocationSample``, anything with
    ``latitude``/``longitude`` attributes, or a ``(lat, lon)`` pair.
    """
    lat1, lon1 = _latlon(a)
    lat2, lon2 = _latlon(b)
    if lat1 == lat2 and lon1 == lon2:
        return 0.0

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # clamp rounding noise so asin stays in domain
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


def is_inside(point: Any, region: Region) -> bool:
    """Boundary-inclusive point-in-circle test."""
    return distance_meters(point, region.center) <= region.radius_m


def in_viewport(point: Any, bounds: ViewportBounds) -> bool:
    """Inclusive bounding-box test.

    Boxes crossing the anti-meridian (west > east) are not supported and
    match nothing.
    """
    lat, lon = _latlon(point)
    return bounds.south <= lat <= bounds.north and bounds.west <= lon <= bounds.east
