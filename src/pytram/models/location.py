"""Location models."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import AliasChoices, Field

from pytram.models._base import TramBaseModel, TramEnum, TramTimestamp


class LocationStatus(TramEnum):
    """Status tag the server attaches to a location update."""

    ACTIVE = "active"
    SIMULATED = "simulated"
    UNKNOWN = "unknown"


class GeoPoint(TramBaseModel):
    """A timestamped geographic coordinate.

    Range checking is deliberately left to
    :func:`pytram.validation.is_valid`, so a point may carry out-of-range
    or non-finite coordinates.

    Parameters
    ----------
    latitude : float
        Latitude in degrees.
    longitude : float
        Longitude in degrees.
    timestamp : datetime or None
        When the position was observed (UTC).
    """

    latitude: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(validation_alias=AliasChoices("longitude", "lon", "lng"))
    timestamp: TramTimestamp = Field(default=None, validation_alias=AliasChoices("timestamp", "t", "time"))

    @classmethod
    def at(cls, latitude: float, longitude: float, timestamp: datetime | None = None) -> GeoPoint:
        """Build a point stamped with *timestamp* (default: now)."""
        return cls(
            latitude=latitude,
            longitude=longitude,
            timestamp=timestamp if timestamp is not None else datetime.now(UTC),
        )


class LocationUpdate(TramBaseModel):
    """One inbound location message, parsed.

    Constructed per message and never mutated; discarded once folded into
    reconciler state.
    """

    current: GeoPoint
    previous: GeoPoint | None = None
    status: LocationStatus = LocationStatus.ACTIVE
    source: str = "unknown"
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
