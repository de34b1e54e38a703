"""
Coordinate math for incident placement and nearby queries.

Pure functions only (no I/O):
- geohash encode / decode / neighbor lookup (codec from pygeohash)
- great-circle (Haversine) distance
- linear bounding box used as a cheap pre-filter before exact distance checks
- coordinate validation

Coordinates are (latitude, longitude) in WGS84 degrees everywhere in this module.
"""

import math
from numbers import Real
from typing import List, NamedTuple, Tuple

import pygeohash as pgh

from app.core.exceptions import InvalidLocation

EARTH_RADIUS_METERS = 6371000
METERS_PER_DEGREE_LAT = 111320

_BASE32 = frozenset("0123456789bcdefghjkmnpqrstuvwxyz")

MAX_GEOHASH_PRECISION = 12

# (lat step, lng step) in cell units, in the order N, NE, E, SE, S, SW, W, NW
_NEIGHBOR_DIRECTIONS = [
    (1, 0),
    (1, 1),
    (0, 1),
    (-1, 1),
    (-1, 0),
    (-1, -1),
    (0, -1),
    (1, -1),
]


class Point(NamedTuple):
    lat: float
    lng: float


class BoundingBox(NamedTuple):
    north: float
    south: float
    east: float
    west: float

    def contains(self, lat: float, lng: float) -> bool:
        """Inclusive containment check (no antimeridian wrapping)."""
        return self.south <= lat <= self.north and self.west <= lng <= self.east


def validate_coordinates(latitude, longitude) -> Point:
    """
    Validate a latitude/longitude pair.

    Rejects booleans, non-numbers, NaN/inf and out-of-range values.
    Values are never clamped.

    Returns:
        Point with float coordinates

    Raises:
        InvalidLocation: if either coordinate is unusable
    """
    for name, value in (("latitude", latitude), ("longitude", longitude)):
        if isinstance(value, bool) or not isinstance(value, Real):
            raise InvalidLocation(f"{name} must be a number, got {value!r}", latitude, longitude)
        if not math.isfinite(value):
            raise InvalidLocation(f"{name} must be finite, got {value!r}", latitude, longitude)

    if not -90.0 <= latitude <= 90.0:
        raise InvalidLocation(f"latitude {latitude} outside [-90, 90]", latitude, longitude)
    if not -180.0 <= longitude <= 180.0:
        raise InvalidLocation(f"longitude {longitude} outside [-180, 180]", latitude, longitude)

    return Point(float(latitude), float(longitude))


def encode_geohash(latitude: float, longitude: float, precision: int = 7) -> str:
    """
    Encode a coordinate as a base-32 geohash.

    Precision 7 gives cells of roughly 153m x 153m. Deterministic: the same
    input always yields the same string.
    """
    if not 1 <= precision <= MAX_GEOHASH_PRECISION:
        raise ValueError(f"precision must be between 1 and {MAX_GEOHASH_PRECISION}")
    return pgh.encode(latitude, longitude, precision=precision)


def decode_geohash_bbox(geohash: str) -> BoundingBox:
    """Return the exact cell bounds of a geohash."""
    if not geohash:
        raise ValueError("geohash must be a non-empty string")

    normalized = geohash.lower()
    for char in normalized:
        if char not in _BASE32:
            raise ValueError(f"invalid geohash character {char!r} in {geohash!r}")

    # errors are half the cell height and width
    lat, lng, lat_err, lng_err = pgh.decode_exactly(normalized)
    return BoundingBox(north=lat + lat_err, south=lat - lat_err, east=lng + lng_err, west=lng - lng_err)


def decode_geohash(geohash: str) -> Tuple[float, float]:
    """
    Decode a geohash to the center of its cell.

    The round trip is lossy: the result is within half a cell of the
    originally encoded point.
    """
    box = decode_geohash_bbox(geohash)
    return (box.north + box.south) / 2, (box.east + box.west) / 2


def geohash_neighbors(geohash: str) -> List[str]:
    """
    The eight adjacent cells at the same precision.

    Order is fixed: N, NE, E, SE, S, SW, W, NW. Longitude wraps around the
    antimeridian; latitude is clamped at the poles.
    """
    box = decode_geohash_bbox(geohash)
    center_lat = (box.north + box.south) / 2
    center_lng = (box.east + box.west) / 2
    lat_step = box.north - box.south
    lng_step = box.east - box.west
    precision = len(geohash)

    neighbors = []
    for d_lat, d_lng in _NEIGHBOR_DIRECTIONS:
        lat = min(90.0, max(-90.0, center_lat + d_lat * lat_step))
        lng = center_lng + d_lng * lng_step
        lng = ((lng + 180.0) % 360.0) - 180.0
        neighbors.append(encode_geohash(lat, lng, precision))
    return neighbors


def distance_meters(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Great-circle distance between two (lat, lng) points using the Haversine formula."""
    lat1, lon1 = a
    lat2, lon2 = b
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_METERS * c


def is_within_radius(center: Tuple[float, float], point: Tuple[float, float], radius_meters: float) -> bool:
    return distance_meters(center, point) <= radius_meters


def bounding_box(center: Tuple[float, float], radius_meters: float) -> BoundingBox:
    """
    Approximate box around a center point.

    Linear degree approximation: 1 degree of latitude ~ 111,320m, longitude
    degrees scaled by cos(latitude). Only a pre-filter: it is loose near the
    poles and for radii much larger than a city.
    """
    lat, lng = center
    lat_delta = radius_meters / METERS_PER_DEGREE_LAT
    lng_delta = radius_meters / (METERS_PER_DEGREE_LAT * math.cos(math.radians(lat)))
    return BoundingBox(
        north=lat + lat_delta,
        south=lat - lat_delta,
        east=lng + lng_delta,
        west=lng - lng_delta,
    )
