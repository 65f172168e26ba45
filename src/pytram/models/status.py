"""Connection and tracking status snapshots."""

from __future__ import annotations

from datetime import datetime

from pydantic import ConfigDict, Field

from pytram.models._base import TramBaseModel, TramEnum
from pytram.models.location import GeoPoint
from pytram.models.transform import Transform


class ConnectionPhase(TramEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TrackingMode(TramEnum):
    REALTIME = "realtime"
    FALLBACK = "fallback"


class ReconcilerState(TramEnum):
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"
    TRANSITIONING = "transitioning"
    STALE = "stale"
    DISCONNECTED = "disconnected"


class RunningStatus(TramEnum):
    RUNNING = "Running"
    STOPPED = "Stopped"

    @classmethod
    def _missing_(cls, value: object) -> RunningStatus:
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return cls.STOPPED


class ConnectionState(TramBaseModel):
    """Point-in-time view of the channel connection."""

    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    attempt_count: int = 0
    last_loss_at: datetime | None = None


class ReconcilerStatus(TramBaseModel):
    """Side-effect-free snapshot of the reconciler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    current_point: GeoPoint | None = None
    previous_point: GeoPoint | None = None
    is_moving: bool = False
    connection_healthy: bool = False
    last_connection_loss_at: datetime | None = None
    mode: TrackingMode = TrackingMode.REALTIME
    state: ReconcilerState = ReconcilerState.UNINITIALIZED
    transform: Transform | None = None


class LatLng(TramBaseModel):
    lat: float
    lng: float


class TramStatusSnapshot(TramBaseModel):
    """Consumer-facing tram status (camelCase when dumped ``by_alias``)."""

    tram_id: str
    status: RunningStatus = RunningStatus.STOPPED
    location: LatLng | None = None
    last_building_passed: str | None = None
    is_moving: bool = False
    ms_since_last_movement: int = Field(default=0, ge=0)
    connection_healthy: bool = False


class TramStatusChange(TramBaseModel):
    """Payload of a Running/Stopped transition."""

    old_status: RunningStatus | None = None
    new_status: RunningStatus
    location: LatLng | None = None
    timestamp: datetime
