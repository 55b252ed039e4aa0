from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import json
import math
from typing import Any, Optional

from shapely.geometry import Point, shape
from shapely.geometry.base import BaseGeometry
from shapely.prepared import PreparedGeometry, prep

from .errors import Invalid

EARTH_RADIUS_KM = 6371.0

# 92 pixels on an image map correspond to 10 meters.
PIXELS_PER_10_METERS = 92.0


@dataclass(frozen=True)
class DistanceResult:
    distance_km: float
    is_correct: Optional[bool] = None


def validate_lat_lng(lat: float, lng: float) -> None:
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise Invalid("Coordinates must be finite numbers")
    if not -90.0 <= lat <= 90.0:
        raise Invalid("Latitude must be between -90 and 90")
    if not -180.0 <= lng <= 180.0:
        raise Invalid("Longitude must be between -180 and 180")


def validate_pixel(x: float, y: float) -> None:
    if not (math.isfinite(x) and math.isfinite(y)):
        raise Invalid("Pixel coordinates must be finite numbers")
    if x < 0 or y < 0:
        raise Invalid("Pixel coordinates must be non-negative")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    if lat1 == lat2 and lng1 == lng2:
        return 0.0

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlng = math.radians(lng2 - lng1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def pixel_distance_km(x1: float, y1: float, x2: float, y2: float) -> float:
    pixels = math.hypot(x2 - x1, y2 - y1)
    return pixels / PIXELS_PER_10_METERS * 0.01


@lru_cache(maxsize=512)
def _prepared_geometry(geojson_text: str) -> PreparedGeometry:
    return prep(_load_geometry(geojson_text))


def _load_geometry(geojson_text: str) -> BaseGeometry:
    data: Any = json.loads(geojson_text)
    if isinstance(data, dict) and data.get("type") == "Feature":
        data = data.get("geometry")
    if not isinstance(data, dict) or data.get("type") not in {"Polygon", "MultiPolygon"}:
        raise ValueError("Region geometry must be a GeoJSON Polygon or MultiPolygon")
    return shape(data)


def point_in_region(lat: float, lng: float, geojson_text: str) -> bool:
    # GeoJSON is ordered [lng, lat]; boundary clicks count as inside.
    geometry = _prepared_geometry(geojson_text)
    pt = Point(lng, lat)
    return geometry.intersects(pt)


def region_distance(
    lat: float,
    lng: float,
    geojson_text: str,
    center_lat: float,
    center_lng: float,
) -> DistanceResult:
    """Distance for "pick the country" rounds.

    Zero with ``is_correct=True`` when the click falls inside the region, otherwise
    the geodesic distance to the region's labeled center.
    """
    if point_in_region(lat, lng, geojson_text):
        return DistanceResult(distance_km=0.0, is_correct=True)
    return DistanceResult(distance_km=haversine_km(lat, lng, center_lat, center_lng), is_correct=False)
