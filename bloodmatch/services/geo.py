"""
Geo helpers — haversine distance, radius containment, bounding boxes.

distance_km / within_radius are tolerant: an invalid coordinate never raises,
so one bad location cannot break a batch of candidates.
bounding_box is a precondition check and raises on an invalid center.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import structlog

from bloodmatch.core.errors import ValidationError
from bloodmatch.schemas.request import Coordinate

logger = structlog.get_logger()

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.32


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, point: Coordinate) -> bool:
        if not self.min_lat <= point.latitude <= self.max_lat:
            return False
        span = self.max_lon - self.min_lon
        if span >= 360:
            return True
        # Bounds may run past +/-180; compare on the 360 degree circle
        return (point.longitude - self.min_lon) % 360 <= span


def is_valid_coordinate(coord: Optional[Coordinate]) -> bool:
    if coord is None:
        return False
    lat, lon = coord.latitude, coord.longitude
    if not (isinstance(lat, (int, float)) and isinstance(lon, (int, float))):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def distance_km(a: Optional[Coordinate], b: Optional[Coordinate]) -> float:
    if not is_valid_coordinate(a) or not is_valid_coordinate(b):
        logger.warning("invalid_coordinates", a=a, b=b)
        return 0.0

    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.latitude))
        * math.cos(math.radians(b.latitude))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def within_radius(center: Optional[Coordinate], point: Optional[Coordinate], radius_km: float) -> bool:
    if not is_valid_coordinate(center) or not is_valid_coordinate(point):
        return False
    return distance_km(center, point) <= radius_km


def bounding_box(center: Optional[Coordinate], radius_km: float) -> BoundingBox:
    if not is_valid_coordinate(center):
        raise ValidationError("Invalid center coordinates")

    lat_offset = radius_km / KM_PER_DEGREE
    # cos(lat) -> 0 at the poles; fall back to the full longitude range there
    cos_lat = math.cos(math.radians(center.latitude))
    lon_offset = radius_km / (KM_PER_DEGREE * cos_lat) if cos_lat > 1e-12 else 180.0

    return BoundingBox(
        min_lat=center.latitude - lat_offset,
        max_lat=center.latitude + lat_offset,
        min_lon=center.longitude - lon_offset,
        max_lon=center.longitude + lon_offset,
    )
