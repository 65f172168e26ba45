"""Geographic to scene-space projection and heading math."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from pytram._constants import (
    BASE_HEIGHT,
    DEFAULT_CENTER_LATITUDE,
    DEFAULT_CENTER_LONGITUDE,
    MODEL_FORWARD_OFFSET,
    SCENE_SCALE,
)
from pytram.config import TramConfig
from pytram.models.location import GeoPoint
from pytram.models.transform import Vector3


@dataclass(frozen=True, slots=True)
class SceneProjection:
    """Fixed linear mapping from lat/lon to local scene coordinates.

    Latitude maps to ``x`` and longitude to ``z``; ``y`` is the constant
    base height of the tracked entity.
    """

    center_latitude: float = DEFAULT_CENTER_LATITUDE
    center_longitude: float = DEFAULT_CENTER_LONGITUDE
    scale: float = SCENE_SCALE
    base_height: float = BASE_HEIGHT

    @classmethod
    def from_route(
        cls,
        route: Sequence[GeoPoint] | None,
        *,
        scale: float = SCENE_SCALE,
        base_height: float = BASE_HEIGHT,
    ) -> SceneProjection:
        """Center the projection on the midpoint of the route's endpoints."""
        if not route:
            return cls(scale=scale, base_height=base_height)
        first, last = route[0], route[-1]
        return cls(
            center_latitude=(first.latitude + last.latitude) / 2,
            center_longitude=(first.longitude + last.longitude) / 2,
            scale=scale,
            base_height=base_height,
        )

    @classmethod
    def from_config(cls, config: TramConfig, route: Sequence[GeoPoint] | None = None) -> SceneProjection:
        if config.center_latitude is not None and config.center_longitude is not None:
            return cls(
                center_latitude=config.center_latitude,
                center_longitude=config.center_longitude,
                scale=config.scene_scale,
                base_height=config.base_height,
            )
        return cls.from_route(route, scale=config.scene_scale, base_height=config.base_height)

    def project(self, latitude: float, longitude: float) -> Vector3:
        return Vector3(
            x=(latitude - self.center_latitude) * self.scale,
            y=self.base_height,
            z=(longitude - self.center_longitude) * self.scale,
        )

    def project_point(self, point: GeoPoint) -> Vector3:
        return self.project(point.latitude, point.longitude)


def heading_between(start: Vector3, end: Vector3, forward_offset: float = MODEL_FORWARD_OFFSET) -> float:
    """Heading that faces the model from *start* towards *end*."""
    return math.atan2(end.x - start.x, end.z - start.z) + forward_offset


def shortest_rotation_delta(current: float, target: float) -> float:
    """Signed rotation from *current* to *target* with the smallest magnitude.

    The result lies in ``[-pi, pi]``.
    """
    return math.remainder(target - current, math.tau)
