from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

from .errors import ConfigError
from .geometry import haversine_distance


@dataclass(frozen=True)
class RectangularRegion:
    """Lat/lon box. An empty box matches every point.

    The longitude span runs eastwards from ``lon_min`` to ``lon_max`` and
    wraps across the 180 meridian when ``lon_max < lon_min``.
    """

    lat_min: float = 0.0
    lon_min: float = 0.0
    lat_max: float = 0.0
    lon_max: float = 0.0
    empty: bool = True

    def contains(self, lat: float, lon: float) -> bool:
        if self.empty:
            return True
        if lat < self.lat_min or lat > self.lat_max:
            return False

        span = self.lon_max - self.lon_min
        if span < 0:
            span += 360.0

        dist = lon - self.lon_min
        if dist < 0:
            dist += 360.0

        return dist <= span


@dataclass(frozen=True)
class CircularRegion:
    """Great-circle disc around a centre point, boundary inclusive."""

    lat: float = 0.0
    lon: float = 0.0
    radius_km: float = 0.0
    empty: bool = True

    def contains(self, lat: float, lon: float) -> bool:
        if self.empty:
            return True
        return haversine_distance(self.lat, self.lon, lat, lon) <= self.radius_km


Region = Union[RectangularRegion, CircularRegion]

REGION_TYPES = {
    "RECTANGULAR": (RectangularRegion, 4),
    "CIRCULAR": (CircularRegion, 3),
}


def build_region(kind: str, values: Sequence | None) -> Region:
    """Build a region from its configured type name and bound values."""
    normalized = str(kind or "").strip().upper()
    if normalized not in REGION_TYPES:
        raise ConfigError(f"invalid region type: {kind!r}")
    region_cls, expected = REGION_TYPES[normalized]

    if not values:
        return region_cls()

    if len(values) != expected:
        raise ConfigError(
            f"expected {expected} values in {normalized.lower()} region definition, "
            f"got {len(values)}"
        )
    try:
        numbers = [float(value) for value in values]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid region value(s): {values!r}") from exc

    if region_cls is CircularRegion and numbers[2] < 0:
        raise ConfigError(f"circular region radius must be >= 0, got {numbers[2]}")
    return region_cls(*numbers, empty=False)
