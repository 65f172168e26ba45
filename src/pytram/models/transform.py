"""Scene-space value types."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Vector3:
    """A point in the local scene coordinate system."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def horizontal_distance_to(self, other: Vector3) -> float:
        """Distance in the ground (x/z) plane."""
        return math.hypot(other.x - self.x, other.z - self.z)

    def lerp(self, other: Vector3, t: float) -> Vector3:
        return Vector3(
            self.x + (other.x - self.x) * t,
            self.y + (other.y - self.y) * t,
            self.z + (other.z - self.z) * t,
        )


@dataclass(frozen=True, slots=True)
class Transform:
    """Position plus heading (rotation around the vertical axis, radians)."""

    position: Vector3
    heading: float = 0.0


@dataclass(slots=True)
class TrackedTransform:
    """The rendered transform of the tracked entity.

    Written only by the reconciler (snaps) and the transition runner it
    drives. Rendering collaborators read it through :meth:`snapshot`.
    """

    position: Vector3 = Vector3()
    heading: float = 0.0

    def snapshot(self) -> Transform:
        return Transform(position=self.position, heading=self.heading)

    def apply(self, transform: Transform) -> None:
        self.position = transform.position
        self.heading = transform.heading
