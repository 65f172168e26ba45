"""Base model and enum for pytram payloads and snapshots.

Every wire/snapshot model inherits from :class:`TramBaseModel` which
provides:

* ``alias_generator=to_camel`` so camelCase keys map automatically to
  snake_case fields, and ``model_dump(by_alias=True)`` produces the
  camelCase shape consumers expect.
* Frozen instances; snapshots are never mutated after construction.

String enums inherit from :class:`TramEnum` which resolves any value
without a mapped member to ``UNKNOWN``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

from pytram.ingestion.normalize import parse_timestamp

TramTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces ISO strings and epoch s/ms to UTC datetimes."""


class TramEnum(enum.StrEnum):
    """Base for string state enums that carry an ``UNKNOWN`` member."""

    @classmethod
    def _missing_(cls, value: object) -> TramEnum:
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        if "UNKNOWN" in cls.__members__:
            return cls.__members__["UNKNOWN"]
        # Fallback: return first member
        return next(iter(cls))


class TramBaseModel(BaseModel):
    """Base for pytram models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
