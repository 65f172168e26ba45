"""Consumer-side tram status: movement, Running/Stopped and landmarks."""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from pytram._constants import DEFAULT_TRAM_ID
from pytram._observers import ObserverRegistry, Subscription
from pytram.models.location import GeoPoint
from pytram.models.status import (
    LatLng,
    ReconcilerStatus,
    RunningStatus,
    TramStatusChange,
    TramStatusSnapshot,
)

_logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass(frozen=True, slots=True)
class Landmark:
    """A named place the tram can pass."""

    id: str
    name: str
    latitude: float
    longitude: float
    radius_m: float = 55.0
    stop_index: int = 0

    def distance_m(self, latitude: float, longitude: float) -> float:
        return haversine_m(latitude, longitude, self.latitude, self.longitude)


class _StatusSource(Protocol):
    def on_status(self, callback: Callable[[ReconcilerStatus], None]) -> Subscription: ...


DEFAULT_LANDMARKS: tuple[Landmark, ...] = (
    Landmark("msm_building", "MSM Building", 13.612565, 100.836516, stop_index=0),
    Landmark("it_building", "IT Building", 13.612177, 100.836425, stop_index=1),
    Landmark("au_mall", "AU Mall", 13.612764, 100.833440, stop_index=2),
    Landmark("queen_of_sheba", "Queen of Sheba", 13.614219, 100.832132, stop_index=3),
)


class TramTracker:
    """Track Running/Stopped status and the last landmark passed.

    Feed it with :meth:`update_position`, or attach it to a reconciler
    with :meth:`attach` so every accepted point is observed.

    A tram counts as moving when consecutive positions are more than
    ``movement_threshold_m`` apart. It is ``Running`` while its last
    movement is less than ``stopped_after`` ago and ``Stopped`` otherwise.
    The first position counts as a movement.
    """

    def __init__(
        self,
        *,
        tram_id: str = DEFAULT_TRAM_ID,
        landmarks: Sequence[Landmark] = DEFAULT_LANDMARKS,
        movement_threshold_m: float = 1.0,
        stopped_after: timedelta = timedelta(minutes=30),
        history_size: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {history_size}")
        self.tram_id = tram_id
        self._landmarks = tuple(landmarks)
        self._movement_threshold_m = movement_threshold_m
        self._stopped_after = stopped_after
        self._history_size = history_size
        self._clock = clock
        self._status_changes: ObserverRegistry[TramStatusChange] = ObserverRegistry("status change", logger=_logger)
        self.reset()

    def reset(self) -> None:
        """Forget every location and return to ``Stopped``."""
        self._current: GeoPoint | None = None
        self._last: GeoPoint | None = None
        self._history: deque[GeoPoint] = deque(maxlen=self._history_size)
        self._is_moving = False
        self._last_movement_at: datetime | None = None
        self._last_landmark: Landmark | None = None
        self._status = RunningStatus.STOPPED
        self._last_notified: RunningStatus | None = None
        self._connection_healthy = False
        self._observed_point: GeoPoint | None = None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def update_position(self, latitude: float, longitude: float) -> TramStatusSnapshot:
        """Record a new position and re-evaluate movement, landmark and status."""
        now = self._clock()
        location = GeoPoint(latitude=latitude, longitude=longitude, timestamp=now)
        self._last = self._current
        self._current = location
        self._history.append(location)

        self._detect_movement(now)
        landmark = self.nearest_landmark(latitude, longitude)
        if landmark is not None and landmark is not self._last_landmark:
            _logger.debug("Tram %s passed %s", self.tram_id, landmark.name)
            self._last_landmark = landmark
        self._update_status(now)
        return self.get_status_snapshot()

    def observe(self, status: ReconcilerStatus) -> None:
        """Consume a reconciler snapshot; new accepted points update the position."""
        self._connection_healthy = status.connection_healthy
        point = status.current_point
        if point is not None and point != self._observed_point:
            self._observed_point = point
            self.update_position(point.latitude, point.longitude)
        else:
            self._update_status(self._clock())

    def attach(self, reconciler: _StatusSource) -> Subscription:
        return reconciler.on_status(self.observe)

    def on_status_change(self, callback: Callable[[TramStatusChange], None]) -> Subscription:
        return self._status_changes.subscribe(callback)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def status(self) -> RunningStatus:
        return self._status

    @property
    def is_moving(self) -> bool:
        return self._is_moving

    @property
    def last_landmark(self) -> Landmark | None:
        return self._last_landmark

    @property
    def history(self) -> tuple[GeoPoint, ...]:
        return tuple(self._history)

    def nearest_landmark(self, latitude: float, longitude: float) -> Landmark | None:
        """Closest landmark whose radius contains the point."""
        best: Landmark | None = None
        best_distance = math.inf
        for landmark in self._landmarks:
            distance = landmark.distance_m(latitude, longitude)
            if distance <= landmark.radius_m and distance < best_distance:
                best, best_distance = landmark, distance
        return best

    def get_status_snapshot(self) -> TramStatusSnapshot:
        now = self._clock()
        self._update_status(now)
        current = self._current
        since_ms = 0
        if self._last_movement_at is not None:
            since_ms = max(0, int((now - self._last_movement_at).total_seconds() * 1000))
        return TramStatusSnapshot(
            tram_id=self.tram_id,
            status=self._status,
            location=LatLng(lat=current.latitude, lng=current.longitude) if current is not None else None,
            last_building_passed=self._last_landmark.name if self._last_landmark is not None else None,
            is_moving=self._is_moving,
            ms_since_last_movement=since_ms,
            connection_healthy=self._connection_healthy,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _detect_movement(self, now: datetime) -> None:
        last, current = self._last, self._current
        if current is None:
            self._is_moving = False
            return
        if last is None:
            self._is_moving = False
            self._last_movement_at = now
            return
        moved = haversine_m(last.latitude, last.longitude, current.latitude, current.longitude)
        self._is_moving = moved > self._movement_threshold_m
        if self._is_moving:
            self._last_movement_at = now

    def _update_status(self, now: datetime) -> None:
        last_movement = self._last_movement_at
        if last_movement is not None and now - last_movement < self._stopped_after:
            self._status = RunningStatus.RUNNING
        else:
            self._status = RunningStatus.STOPPED

        if self._current is None or self._status == self._last_notified:
            return
        change = TramStatusChange(
            old_status=self._last_notified,
            new_status=self._status,
            location=LatLng(lat=self._current.latitude, lng=self._current.longitude),
            timestamp=now,
        )
        self._last_notified = self._status
        _logger.debug("Tram %s status %s -> %s", self.tram_id, change.old_status, change.new_status)
        self._status_changes.emit(change)

