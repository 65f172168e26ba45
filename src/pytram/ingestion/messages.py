"""Inbound frame parsing.

Translates decoded push-channel payloads into :class:`LocationUpdate`
objects. Parsing never raises: the outcome is a :class:`ParseResult`
carrying either the update or the :class:`InvalidDataError` describing why
the payload was dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from pytram._redact import redact_for_log
from pytram.exceptions import InvalidDataError
from pytram.ingestion.normalize import parse_timestamp, safe_float, safe_str
from pytram.models.location import GeoPoint, LocationStatus, LocationUpdate

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ParseResult:
    """Tagged parse outcome: exactly one of ``update``/``error`` is set."""

    update: LocationUpdate | None = None
    error: InvalidDataError | None = None

    @property
    def ok(self) -> bool:
        return self.update is not None

    @classmethod
    def success(cls, update: LocationUpdate) -> ParseResult:
        return cls(update=update)

    @classmethod
    def failure(cls, message: str, payload: Any = None) -> ParseResult:
        return cls(error=InvalidDataError(message, payload=payload))


class _LocationEnvelope(BaseModel):
    """Minimal envelope for location payloads (``{c, p?, s?}``)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    c: dict[str, Any]
    p: Any = None
    s: Any = None


def _parse_point(raw: dict[str, Any], *, default_timestamp: datetime) -> GeoPoint:
    """Build a point from ``{lat, lon, t?}``.

    Raises :class:`InvalidDataError` when a coordinate is not numeric or the
    timestamp is present but unreadable. A missing timestamp falls back to
    *default_timestamp*.
    """
    lat = safe_float(raw.get("lat"))
    lon = safe_float(raw.get("lon", raw.get("lng")))
    if lat is None or lon is None:
        raise InvalidDataError("coordinates are missing or not numeric", payload=raw)

    raw_ts = raw.get("t")
    if raw_ts is None or raw_ts == "":
        timestamp = default_timestamp
    else:
        parsed_ts = parse_timestamp(raw_ts)
        if parsed_ts is None:
            raise InvalidDataError(f"unreadable timestamp {raw_ts!r}", payload=raw)
        timestamp = parsed_ts

    return GeoPoint(latitude=lat, longitude=lon, timestamp=timestamp)


def parse_location_payload(
    payload: Any,
    *,
    source: str,
    received_at: datetime | None = None,
) -> ParseResult:
    """Parse a location payload into a :class:`LocationUpdate`.

    A missing or malformed current point (``c``) fails the whole payload.
    A malformed previous point (``p``) is dropped on its own, since it is
    optional.
    """
    received = received_at if received_at is not None else datetime.now(UTC)

    if not isinstance(payload, dict):
        return ParseResult.failure("location payload is not an object", payload)
    try:
        envelope = _LocationEnvelope.model_validate(payload)
    except ValidationError:
        return ParseResult.failure("location payload has no current point", payload)

    try:
        current = _parse_point(envelope.c, default_timestamp=received)
    except InvalidDataError as exc:
        return ParseResult.failure(f"invalid current point: {exc}", payload)

    previous: GeoPoint | None = None
    if isinstance(envelope.p, dict):
        try:
            previous = _parse_point(envelope.p, default_timestamp=received)
        except InvalidDataError:
            _logger.debug("Dropping malformed previous point: %s", redact_for_log(envelope.p))
    elif envelope.p is not None:
        _logger.debug("Dropping malformed previous point: %s", redact_for_log(envelope.p))

    status_text = safe_str(envelope.s)
    status = LocationStatus(status_text) if status_text is not None else LocationStatus.ACTIVE

    return ParseResult.success(
        LocationUpdate(
            current=current,
            previous=previous,
            status=status,
            source=source,
            received_at=received,
        )
    )


def error_message_from_payload(payload: Any) -> str:
    """Extract a human-readable message from a server error frame."""
    if isinstance(payload, dict):
        message = safe_str(payload.get("message"))
        if message:
            return message
    elif isinstance(payload, str) and payload.strip():
        return payload.strip()
    return "GPS data error"
