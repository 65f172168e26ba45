"""pytram - Async real-time tram location reconciliation."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pytram")
except PackageNotFoundError:
    __version__ = "0+local"
from pytram.channel import ChannelClient
from pytram.config import TramConfig
from pytram.exceptions import (
    ExhaustedRetriesError,
    InvalidDataError,
    StaleDataError,
    TramConfigError,
    TramError,
    TransportError,
)
from pytram.models import (
    ConnectionPhase,
    ConnectionState,
    GeoPoint,
    LatLng,
    LocationStatus,
    LocationUpdate,
    ReconcilerState,
    ReconcilerStatus,
    RunningStatus,
    TrackedTransform,
    TrackingMode,
    TramStatusChange,
    TramStatusSnapshot,
    Transform,
    Vector3,
)
from pytram.projection import SceneProjection
from pytram.reconciler import PositionReconciler
from pytram.tracker import DEFAULT_LANDMARKS, Landmark, TramTracker
from pytram.transitions import AsyncioTransitionRunner, TransitionRunner, TransitionStep
from pytram.validation import UpdateValidator

__all__ = [
    "__version__",
    "AsyncioTransitionRunner",
    "ChannelClient",
    "ConnectionPhase",
    "ConnectionState",
    "DEFAULT_LANDMARKS",
    "ExhaustedRetriesError",
    "GeoPoint",
    "InvalidDataError",
    "LatLng",
    "Landmark",
    "LocationStatus",
    "LocationUpdate",
    "PositionReconciler",
    "ReconcilerState",
    "ReconcilerStatus",
    "RunningStatus",
    "SceneProjection",
    "StaleDataError",
    "TrackedTransform",
    "TrackingMode",
    "TramConfig",
    "TramConfigError",
    "TramError",
    "TramStatusChange",
    "TramStatusSnapshot",
    "TramTracker",
    "Transform",
    "TransitionRunner",
    "TransitionStep",
    "TransportError",
    "UpdateValidator",
    "Vector3",
]
