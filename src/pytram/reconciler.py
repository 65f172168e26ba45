"""Reconcile channel updates into the tracked entity's scene transform.

The reconciler owns the accepted location state and the single in-flight
transition. Every inbound point goes through the same pipeline:

1. validity (finite, in range)
2. staleness (freeze instead of animating towards old data)
3. change tolerance and chronology
4. noise gate in scene units
5. cancel-and-replace transition: rotate first, then translate
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError

from pytram._constants import SOURCE_FALLBACK, SOURCE_MANUAL
from pytram._observers import ObserverRegistry, Subscription
from pytram.channel import ChannelClient
from pytram.config import TramConfig
from pytram.exceptions import ExhaustedRetriesError, StaleDataError, TramError
from pytram.models.location import GeoPoint, LocationUpdate
from pytram.models.status import ReconcilerState, ReconcilerStatus, TrackingMode
from pytram.models.transform import TrackedTransform, Vector3
from pytram.projection import SceneProjection, heading_between, shortest_rotation_delta
from pytram.transitions import (
    AsyncioTransitionRunner,
    Easing,
    TransitionHandle,
    TransitionRunner,
    TransitionStep,
)
from pytram.validation import UpdateValidator

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UpdateChannel(Protocol):
    """What the reconciler needs from a channel (``ChannelClient`` fits)."""

    def on_update(self, callback: Callable[[LocationUpdate], None]) -> Subscription: ...

    def on_connection_change(self, callback: Callable[[bool], None]) -> Subscription: ...

    def on_error(self, callback: Callable[[TramError], None]) -> Subscription: ...

    def is_healthy(self) -> bool: ...

    def request_update(self) -> bool: ...

    async def connect(self) -> bool: ...

    async def disconnect(self) -> None: ...


class PositionReconciler:
    """Drive a :class:`TrackedTransform` from channel updates.

    One instance per tracked entity. Rendering collaborators read
    :attr:`transform`; status consumers use :meth:`get_status` or
    :meth:`on_status`.

    Parameters
    ----------
    channel : UpdateChannel, optional
        Source of updates. Defaults to a :class:`ChannelClient` built from
        *config*.
    config : TramConfig, optional
        Thresholds, speeds and projection parameters.
    runner : TransitionRunner, optional
        Executes transitions. Defaults to :class:`AsyncioTransitionRunner`.
    fallback_route : sequence of GeoPoint, optional
        Static route used when live data is unavailable. Its endpoints also
        center the projection unless *config* sets an explicit center.
    """

    def __init__(
        self,
        channel: UpdateChannel | None = None,
        *,
        config: TramConfig | None = None,
        runner: TransitionRunner | None = None,
        validator: UpdateValidator | None = None,
        projection: SceneProjection | None = None,
        fallback_route: Sequence[GeoPoint] | None = None,
        transform: TrackedTransform | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or TramConfig()
        self._channel: UpdateChannel = channel or ChannelClient(self._config, clock=clock)
        self._runner: TransitionRunner = runner or AsyncioTransitionRunner()
        self._clock = clock
        self._validator = validator or UpdateValidator.from_config(self._config, clock=clock)
        self._fallback_route: tuple[GeoPoint, ...] = tuple(fallback_route or ())
        self._projection = projection or SceneProjection.from_config(self._config, self._fallback_route)
        self._transform = transform or TrackedTransform()

        self._current: GeoPoint | None = None
        self._previous: GeoPoint | None = None
        self._current_is_live = False
        self._last_accepted_at: datetime | None = None
        self._last_loss_at: datetime | None = None
        self._last_stale_warning_at: datetime | None = None

        self._transition: TransitionHandle | None = None
        # Completion callbacks carry the generation they were started with;
        # anything older than the current generation is ignored.
        self._transition_generation = 0
        self._is_moving = False

        self._state = ReconcilerState.UNINITIALIZED
        self._mode = TrackingMode.REALTIME
        self._live_seen = False
        self._fallback_index = -1

        self._subscriptions: list[Subscription] = []
        self._status_observers: ObserverRegistry[ReconcilerStatus] = ObserverRegistry("status", logger=_logger)
        self._started = False
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> PositionReconciler:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.dispose()

    async def start(self) -> None:
        """Subscribe to the channel and connect it."""
        if self._disposed:
            raise RuntimeError("PositionReconciler has been disposed")
        if not self._started:
            self._started = True
            self._subscriptions = [
                self._channel.on_update(self._on_update),
                self._channel.on_connection_change(self._on_connection_change),
                self._channel.on_error(self._on_channel_error),
            ]
        await self._channel.connect()

    async def dispose(self) -> None:
        """Cancel the transition, drop every subscription and disconnect."""
        if self._disposed:
            return
        self._disposed = True
        self._cancel_transition()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._status_observers.clear()
        await self._channel.disconnect()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def transform(self) -> TrackedTransform:
        return self._transform

    @property
    def projection(self) -> SceneProjection:
        return self._projection

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def mode(self) -> TrackingMode:
        return self._mode

    @property
    def fallback_index(self) -> int:
        """Index of the current fallback route point, ``-1`` before fallback."""
        return self._fallback_index

    def on_status(self, callback: Callable[[ReconcilerStatus], None]) -> Subscription:
        """Register for a status snapshot after every state change."""
        return self._status_observers.subscribe(callback)

    def get_status(self) -> ReconcilerStatus:
        return ReconcilerStatus(
            current_point=self._current,
            previous_point=self._previous,
            is_moving=self._is_moving,
            connection_healthy=self._channel.is_healthy(),
            last_connection_loss_at=self._last_loss_at,
            mode=self._mode,
            state=self._state,
            transform=self._transform.snapshot(),
        )

    def inject_position(self, latitude: float, longitude: float, *, validate: bool = True) -> bool:
        """Feed a synthetic point stamped with the current time.

        ``validate=False`` skips only the range check; non-finite
        coordinates are always rejected. Returns whether the point was
        accepted.
        """
        try:
            point = GeoPoint.at(latitude, longitude, self._clock())
        except ValidationError:
            _logger.warning("Rejecting manual position (%r, %r): not numeric", latitude, longitude)
            return False
        return self._ingest(point, source=SOURCE_MANUAL, validate=validate)

    def enter_fallback(self) -> bool:
        """Switch to the static route; only possible before any live data."""
        if self._mode == TrackingMode.FALLBACK:
            return True
        if self._live_seen:
            _logger.debug("Live data already received; not entering fallback mode")
            return False
        if not self._fallback_route:
            _logger.debug("No fallback route configured")
            return False
        _logger.warning("Entering fallback mode with %d route points", len(self._fallback_route))
        self._mode = TrackingMode.FALLBACK
        self._fallback_index = -1
        self.advance_fallback(0)
        return True

    def advance_fallback(self, index: int | None = None) -> bool:
        """Move to the next route point (or *index*) through the normal pipeline."""
        if self._disposed or self._mode != TrackingMode.FALLBACK:
            return False
        route = self._fallback_route
        if index is None:
            index = (self._fallback_index + 1) % len(route)
        elif not 0 <= index < len(route):
            _logger.warning("Fallback index %d outside route of %d points", index, len(route))
            return False
        self._fallback_index = index
        waypoint = route[index]
        point = GeoPoint.at(waypoint.latitude, waypoint.longitude, self._clock())
        return self._ingest(point, source=SOURCE_FALLBACK)

    # ------------------------------------------------------------------
    # Channel callbacks
    # ------------------------------------------------------------------

    def _on_update(self, update: LocationUpdate) -> None:
        if self._disposed:
            return
        point = update.current
        if self._validator.is_valid(point):
            self._live_seen = True
            if self._mode == TrackingMode.FALLBACK:
                _logger.debug("Live data received; leaving fallback mode")
                self._mode = TrackingMode.REALTIME
        self._ingest(point, source=update.source, live=True)

    def _on_connection_change(self, connected: bool) -> None:
        if self._disposed:
            return
        if connected:
            if self._channel.is_healthy():
                self._channel.request_update()
            self._last_loss_at = None
            if self._current is None:
                self._state = ReconcilerState.UNINITIALIZED
            elif self._transition is not None:
                self._state = ReconcilerState.TRANSITIONING
            else:
                self._state = ReconcilerState.TRACKING
        else:
            self._cancel_transition()
            self._last_loss_at = self._clock()
            self._state = ReconcilerState.DISCONNECTED
            _logger.debug("Connection lost; holding last known transform")
        self._publish()

    def _on_channel_error(self, error: TramError) -> None:
        if self._disposed:
            return
        if isinstance(error, ExhaustedRetriesError) and not self._live_seen and self._fallback_route:
            self.enter_fallback()
            return
        _logger.debug("Channel error: %s", error)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _ingest(self, point: GeoPoint, *, source: str, live: bool = False, validate: bool = True) -> bool:
        if self._disposed:
            return False

        if validate:
            if not self._validator.is_valid(point):
                _logger.warning("Discarding invalid location from %s: %s", source, point)
                return False
        elif not (math.isfinite(point.latitude) and math.isfinite(point.longitude)):
            _logger.warning("Discarding non-finite location from %s: %s", source, point)
            return False

        if self._current is None:
            self._accept_first(point, live=live)
            return True

        try:
            self._validator.ensure_fresh(point.timestamp)
        except StaleDataError as exc:
            self._freeze_stale(exc)
            return False

        if not self._validator.has_changed(point, self._current):
            self._leave_stale()
            return False

        if self._is_out_of_order(point, live=live):
            _logger.debug("Discarding out-of-order location %s (current %s)", point.timestamp, self._current.timestamp)
            self._leave_stale()
            return False

        start = self._projection.project_point(self._current)
        target = self._projection.project_point(point)
        distance = start.horizontal_distance_to(target)
        if distance < self._config.min_motion_units:
            _logger.debug("Ignoring %.3f unit movement as noise", distance)
            self._leave_stale()
            return False

        self._previous = self._current
        self._current = point
        self._current_is_live = live
        self._last_accepted_at = self._clock()
        self._begin_motion(start, target)
        self._publish()
        return True

    def _accept_first(self, point: GeoPoint, *, live: bool) -> None:
        self._current = point
        self._previous = point
        self._current_is_live = live
        self._last_accepted_at = self._clock()
        self._cancel_transition()
        position = self._projection.project_point(point)
        self._transform.position = position
        self._state = ReconcilerState.TRACKING
        _logger.debug("Initial position %s placed at %s", point, position)
        self._publish()

    def _is_out_of_order(self, point: GeoPoint, *, live: bool) -> bool:
        current = self._current
        if not (live and self._current_is_live) or current is None:
            return False
        if point.timestamp is None or current.timestamp is None:
            return False
        return point.timestamp < current.timestamp

    def _freeze_stale(self, error: StaleDataError) -> None:
        self._cancel_transition()
        self._state = ReconcilerState.STALE
        now = self._clock()
        interval_s = self._config.stale_log_interval_ms / 1000.0
        last = self._last_stale_warning_at
        if last is None or (now - last).total_seconds() >= interval_s:
            self._last_stale_warning_at = now
            if error.age_ms is None:
                _logger.warning("Ignoring location update without a usable timestamp")
            else:
                _logger.warning("Ignoring stale location update (%.0f ms old)", error.age_ms)
        self._publish()

    def _leave_stale(self) -> None:
        if self._state != ReconcilerState.STALE:
            return
        self._state = ReconcilerState.TRANSITIONING if self._transition is not None else ReconcilerState.TRACKING
        self._publish()

    def _begin_motion(self, start: Vector3, target: Vector3) -> None:
        config = self._config
        self._cancel_transition()

        rendered = self._transform.snapshot()
        target_heading = heading_between(start, target, config.model_forward_offset)
        delta = shortest_rotation_delta(rendered.heading, target_heading)

        steps: list[TransitionStep] = []
        if abs(delta) > config.rotation_epsilon:
            steps.append(
                TransitionStep(
                    duration=min(config.max_rotation_duration, abs(delta) / config.rotation_speed),
                    heading=rendered.heading + delta,
                    easing=Easing.POWER2_IN_OUT,
                )
            )
        distance = rendered.position.horizontal_distance_to(target)
        steps.append(
            TransitionStep(
                duration=max(config.min_translation_duration, distance / config.linear_speed),
                position=target,
            )
        )

        generation = self._transition_generation
        self._is_moving = True
        self._state = ReconcilerState.TRANSITIONING
        self._transition = self._runner.begin_transition(
            self._transform,
            steps,
            lambda: self._on_transition_complete(generation),
        )

    def _on_transition_complete(self, generation: int) -> None:
        if self._disposed or generation != self._transition_generation:
            return
        self._transition = None
        self._transition_generation += 1
        self._is_moving = False
        if self._state == ReconcilerState.TRANSITIONING:
            self._state = ReconcilerState.TRACKING
        self._publish()

    def _cancel_transition(self) -> None:
        handle = self._transition
        self._transition = None
        self._transition_generation += 1
        self._is_moving = False
        if handle is not None:
            handle.cancel()

    def _publish(self) -> None:
        if self._disposed or not len(self._status_observers):
            return
        self._status_observers.emit(self.get_status())
