# =======================================================================================
# gate_discovery/utils/geo.py - Geospatial Primitives
# =======================================================================================
import math
from typing import Iterable, List, Optional, Sequence, Tuple

from .exceptions import InvalidCoordinateError

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE_LAT = 111320.0

# GPS fixes worse than this are treated as "no location"
MAX_GPS_ACCURACY_M = 100.0

Point = Tuple[float, float]


def _check_point(lat: float, lon: float) -> None:
    if lat is None or lon is None or math.isnan(lat) or math.isnan(lon):
        raise InvalidCoordinateError(f"Coordinate is missing or NaN: ({lat}, {lon})")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise InvalidCoordinateError(f"Coordinate out of range: ({lat}, {lon})")


def distance(a: Point, b: Point) -> float:
    """Great-circle distance in meters between two (lat, lon) pairs (haversine)."""
    lat1, lon1 = a
    lat2, lon2 = b
    _check_point(lat1, lon1)
    _check_point(lat2, lon2)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)

    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    # rounding can push h a hair outside [0, 1] for antipodal/identical points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def centroid(points: Sequence[Point]) -> Point:
    """Arithmetic mean location. Venue-scale clusters never straddle the antimeridian."""
    if not points:
        raise ValueError("centroid() of an empty point set")
    lat = sum(p[0] for p in points) / len(points)
    lon = sum(p[1] for p in points) / len(points)
    return lat, lon


def spatial_variance(points: Sequence[Point]) -> float:
    """Mean squared distance (m^2) of the points from their centroid."""
    if len(points) < 2:
        return 0.0
    center = centroid(points)
    return sum(distance(center, p) ** 2 for p in points) / len(points)


def weighted_centroid(points: Iterable[Tuple[Point, float]]) -> Point:
    """Mean location weighted by sample counts."""
    total = 0.0
    lat = 0.0
    lon = 0.0
    for (p_lat, p_lon), weight in points:
        lat += p_lat * weight
        lon += p_lon * weight
        total += weight
    if total <= 0:
        raise ValueError("weighted_centroid() needs a positive total weight")
    return lat / total, lon / total


def is_valid_location(lat: Optional[float], lon: Optional[float], accuracy: Optional[float]) -> bool:
    """
    GPS quality gate:
    - coordinates present and in range
    - accuracy reported, positive and within MAX_GPS_ACCURACY_M
    - not null island (devices report 0,0 when GPS is denied)
    """
    if lat is None or lon is None or accuracy is None:
        return False
    if any(math.isnan(v) for v in (lat, lon, accuracy)):
        return False
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        return False
    if accuracy <= 0 or accuracy > MAX_GPS_ACCURACY_M:
        return False
    if abs(lat) < 0.0001 and abs(lon) < 0.0001:
        return False
    return True


def grid_cell(lat: float, lon: float, cell_meters: float) -> Tuple[int, int]:
    """Integer grid cell of roughly cell_meters on each side around (lat, lon)."""
    lat_m = lat * METERS_PER_DEGREE_LAT
    lon_m = lon * METERS_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 1e-6)
    return int(math.floor(lat_m / cell_meters)), int(math.floor(lon_m / cell_meters))


def neighbouring_cells(cell: Tuple[int, int]) -> List[Tuple[int, int]]:
    row, col = cell
    return [(row + dr, col + dc) for dr in (-1, 0, 1) for dc in (-1, 0, 1)]


def offset(point: Point, north_m: float, east_m: float) -> Point:
    """Point displaced by the given meters; used to lay out synthetic venues."""
    lat, lon = point
    new_lat = lat + north_m / METERS_PER_DEGREE_LAT
    new_lon = lon + east_m / (METERS_PER_DEGREE_LAT * math.cos(math.radians(lat)))
    return new_lat, new_lon
