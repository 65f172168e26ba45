"""Typed models for pytram."""

from pytram.models.location import GeoPoint, LocationStatus, LocationUpdate
from pytram.models.status import (
    ConnectionPhase,
    ConnectionState,
    LatLng,
    ReconcilerState,
    ReconcilerStatus,
    RunningStatus,
    TrackingMode,
    TramStatusChange,
    TramStatusSnapshot,
)
from pytram.models.transform import TrackedTransform, Transform, Vector3

__all__ = [
    "ConnectionPhase",
    "ConnectionState",
    "GeoPoint",
    "LatLng",
    "LocationStatus",
    "LocationUpdate",
    "ReconcilerState",
    "ReconcilerStatus",
    "RunningStatus",
    "TrackedTransform",
    "TrackingMode",
    "TramStatusChange",
    "TramStatusSnapshot",
    "Transform",
    "Vector3",
]
