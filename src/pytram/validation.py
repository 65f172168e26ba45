"""Location update validation.

Pure, stateless checks used by the reconciler to filter and classify
incoming points:

- :func:`is_valid` - coordinates are finite numbers within range
- :func:`has_changed` - the point moved more than the jitter tolerance
- :func:`is_stale` - the point's timestamp is older than the freshness bound

:class:`UpdateValidator` binds configured thresholds and a clock.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pytram.config import TramConfig
from pytram.exceptions import StaleDataError
from pytram.ingestion.normalize import parse_timestamp, safe_float
from pytram.models.location import GeoPoint

#: About half a metre at the equator.
DEFAULT_CHANGE_TOLERANCE_DEGREES = 5e-6
DEFAULT_STALE_THRESHOLD_MS = 60_000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _coordinates(point: GeoPoint | Mapping[str, Any] | None) -> tuple[float | None, float | None]:
    if point is None:
        return None, None
    if isinstance(point, GeoPoint):
        return safe_float(point.latitude), safe_float(point.longitude)
    if isinstance(point, Mapping):
        lat = point.get("latitude", point.get("lat"))
        lon = point.get("longitude", point.get("lon", point.get("lng")))
        return safe_float(lat), safe_float(lon)
    return None, None


def is_valid(point: GeoPoint | Mapping[str, Any] | None) -> bool:
    """Return ``True`` iff both coordinates are finite and within range."""
    lat, lon = _coordinates(point)
    if lat is None or lon is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def has_changed(
    new_point: GeoPoint,
    old_point: GeoPoint | None,
    tolerance_degrees: float = DEFAULT_CHANGE_TOLERANCE_DEGREES,
) -> bool:
    """Return ``True`` if either coordinate moved more than *tolerance_degrees*.

    An absent *old_point* always counts as a change.
    """
    if old_point is None:
        return True
    lat_diff = abs(new_point.latitude - old_point.latitude)
    lon_diff = abs(new_point.longitude - old_point.longitude)
    return lat_diff > tolerance_degrees or lon_diff > tolerance_degrees


def age_ms(timestamp: datetime | str | float | None, *, now: datetime | None = None) -> float | None:
    """Age of *timestamp* in milliseconds, ``None`` if it cannot be read."""
    moment = parse_timestamp(timestamp)
    if moment is None:
        return None
    reference = now if now is not None else _utcnow()
    return (reference - moment).total_seconds() * 1000.0


def is_stale(
    timestamp: datetime | str | float | None,
    max_age_ms: float = DEFAULT_STALE_THRESHOLD_MS,
    *,
    now: datetime | None = None,
) -> bool:
    """Return ``True`` if *timestamp* is absent or older than *max_age_ms*."""
    age = age_ms(timestamp, now=now)
    if age is None:
        return True
    return age > max_age_ms


class UpdateValidator:
    """Validation checks bound to configured thresholds."""

    def __init__(
        self,
        *,
        tolerance_degrees: float = DEFAULT_CHANGE_TOLERANCE_DEGREES,
        stale_threshold_ms: float = DEFAULT_STALE_THRESHOLD_MS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.tolerance_degrees = tolerance_degrees
        self.stale_threshold_ms = stale_threshold_ms
        self._clock = clock

    @classmethod
    def from_config(cls, config: TramConfig, *, clock: Callable[[], datetime] = _utcnow) -> UpdateValidator:
        return cls(
            tolerance_degrees=config.change_tolerance_degrees,
            stale_threshold_ms=config.stale_threshold_ms,
            clock=clock,
        )

    def is_valid(self, point: GeoPoint | Mapping[str, Any] | None) -> bool:
        return is_valid(point)

    def has_changed(self, new_point: GeoPoint, old_point: GeoPoint | None) -> bool:
        return has_changed(new_point, old_point, self.tolerance_degrees)

    def is_stale(self, timestamp: datetime | str | float | None) -> bool:
        return is_stale(timestamp, self.stale_threshold_ms, now=self._clock())

    def age_ms(self, timestamp: datetime | str | float | None) -> float | None:
        return age_ms(timestamp, now=self._clock())

    def ensure_fresh(self, timestamp: datetime | str | float | None) -> None:
        """Raise :class:`StaleDataError` if *timestamp* is stale."""
        if not self.is_stale(timestamp):
            return
        age = self.age_ms(timestamp)
        if age is None:
            raise StaleDataError("location has no usable timestamp")
        raise StaleDataError(f"location is {age:.0f} ms old", age_ms=age)
