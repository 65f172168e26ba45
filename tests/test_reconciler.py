from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pytram._observers import ObserverRegistry, Subscription
from pytram._transport import DisconnectReason, TransportFrame
from pytram.channel import ChannelClient
from pytram.config import TramConfig
from pytram.exceptions import ExhaustedRetriesError, TramError
from pytram.models.location import GeoPoint, LocationUpdate
from pytram.models.status import ReconcilerState, ReconcilerStatus, TrackingMode
from pytram.models.transform import TrackedTransform, Vector3
from pytram.reconciler import PositionReconciler
from pytram.transitions import AsyncioTransitionRunner, Easing, TransitionStep

NOW = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)

MSM = GeoPoint(latitude=13.612565, longitude=100.836516)
AU_MALL = GeoPoint(latitude=13.612764, longitude=100.833440)
QUEEN_OF_SHEBA = GeoPoint(latitude=13.614219, longitude=100.832132)


class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FakeChannel:
    def __init__(self) -> None:
        self.updates: ObserverRegistry[LocationUpdate] = ObserverRegistry("update")
        self.connections: ObserverRegistry[bool] = ObserverRegistry("connection change")
        self.errors: ObserverRegistry[TramError] = ObserverRegistry("error")
        self.healthy = False
        self.requests = 0
        self.connect_calls = 0
        self.disconnected = False

    def on_update(self, callback: Callable[[LocationUpdate], None]) -> Subscription:
        return self.updates.subscribe(callback)

    def on_connection_change(self, callback: Callable[[bool], None]) -> Subscription:
        return self.connections.subscribe(callback)

    def on_error(self, callback: Callable[[TramError], None]) -> Subscription:
        return self.errors.subscribe(callback)

    def is_healthy(self) -> bool:
        return self.healthy

    def request_update(self) -> bool:
        self.requests += 1
        return self.healthy

    async def connect(self) -> bool:
        self.connect_calls += 1
        self.healthy = True
        self.connections.emit(True)
        return True

    async def disconnect(self) -> None:
        self.healthy = False
        self.disconnected = True

    # -- test helpers -------------------------------------------------

    def push(self, latitude: float, longitude: float, *, timestamp: datetime = NOW) -> None:
        self.updates.emit(
            LocationUpdate(
                current=GeoPoint(latitude=latitude, longitude=longitude, timestamp=timestamp),
                source="websocket-broadcast",
                received_at=NOW,
            )
        )

    def drop(self) -> None:
        self.healthy = False
        self.connections.emit(False)

    def restore(self) -> None:
        self.healthy = True
        self.connections.emit(True)


class _ManualTransition:
    def __init__(
        self,
        transform: TrackedTransform,
        steps: Sequence[TransitionStep],
        on_complete: Callable[[], None],
    ) -> None:
        self.transform = transform
        self.steps = list(steps)
        self.on_complete = on_complete
        self.start = transform.snapshot()
        self.cancelled = False
        self.finished = False

    @property
    def done(self) -> bool:
        return self.cancelled or self.finished

    @property
    def target(self) -> Vector3 | None:
        return self.steps[-1].position

    def cancel(self) -> None:
        self.cancelled = True

    def advance(self, fraction: float) -> None:
        """Rotate fully, then translate *fraction* of the way."""
        if self.cancelled:
            return
        current = self.start
        for step in self.steps[:-1]:
            current = step.interpolate(current, 1.0)
        self.transform.apply(self.steps[-1].interpolate(current, fraction))

    def finish(self) -> None:
        if self.cancelled:
            return
        self.advance(1.0)
        self.finished = True
        self.on_complete()


class _ManualRunner:
    def __init__(self) -> None:
        self.transitions: list[_ManualTransition] = []

    def begin_transition(
        self,
        transform: TrackedTransform,
        steps: Sequence[TransitionStep],
        on_complete: Callable[[], None],
    ) -> _ManualTransition:
        transition = _ManualTransition(transform, steps, on_complete)
        self.transitions.append(transition)
        return transition

    @property
    def active(self) -> list[_ManualTransition]:
        return [t for t in self.transitions if not t.done]


def _build(
    *,
    config: TramConfig | None = None,
    route: Sequence[GeoPoint] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> tuple[PositionReconciler, _FakeChannel, _ManualRunner]:
    channel = _FakeChannel()
    runner = _ManualRunner()
    reconciler = PositionReconciler(
        channel,
        config=config,
        runner=runner,
        fallback_route=route,
        clock=clock or _Clock(),
    )
    return reconciler, channel, runner


async def _started(**kwargs: Any) -> tuple[PositionReconciler, _FakeChannel, _ManualRunner]:
    reconciler, channel, runner = _build(**kwargs)
    await reconciler.start()
    return reconciler, channel, runner


@pytest.mark.asyncio
async def test_first_update_snaps_without_transition() -> None:
    reconciler, channel, runner = await _started()

    channel.push(13.6, 100.8)

    status = reconciler.get_status()
    assert runner.transitions == []
    assert status.current_point is not None
    assert status.current_point.latitude == 13.6
    assert status.previous_point == status.current_point
    assert status.state == ReconcilerState.TRACKING
    assert not status.is_moving
    assert reconciler.transform.position == reconciler.projection.project(13.6, 100.8)


@pytest.mark.asyncio
async def test_first_update_is_placed_even_when_old() -> None:
    reconciler, channel, runner = await _started()

    channel.push(13.6, 100.8, timestamp=NOW - timedelta(hours=1))

    assert reconciler.get_status().current_point is not None
    assert reconciler.state == ReconcilerState.TRACKING
    assert runner.transitions == []


@pytest.mark.asyncio
async def test_invalid_first_update_is_ignored() -> None:
    reconciler, channel, _runner = await _started()

    channel.push(123.0, 100.8)

    assert reconciler.get_status().current_point is None
    assert reconciler.state == ReconcilerState.UNINITIALIZED


@pytest.mark.asyncio
async def test_update_within_tolerance_starts_nothing() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)

    channel.push(13.6 + 1e-6, 100.8 - 1e-6)

    status = reconciler.get_status()
    assert runner.transitions == []
    assert not status.is_moving
    assert status.current_point is not None
    assert status.current_point.latitude == 13.6


@pytest.mark.asyncio
async def test_changed_update_transitions_then_settles() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)
    first = reconciler.get_status().current_point

    channel.push(13.6001, 100.8)

    status = reconciler.get_status()
    assert len(runner.transitions) == 1
    assert status.is_moving
    assert status.state == ReconcilerState.TRANSITIONING
    assert status.previous_point == first
    transition = runner.transitions[0]
    target = reconciler.projection.project(13.6001, 100.8)
    assert transition.target == target

    transition.finish()

    status = reconciler.get_status()
    assert not status.is_moving
    assert status.state == ReconcilerState.TRACKING
    assert status.current_point is not None
    assert (status.current_point.latitude, status.current_point.longitude) == (13.6001, 100.8)
    assert reconciler.transform.position == target


@pytest.mark.asyncio
async def test_heading_aligned_move_is_translation_only() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)

    # Moving along +x needs heading 0, which the model already has.
    channel.push(13.6001, 100.8)

    (step,) = runner.transitions[0].steps
    assert step.position is not None
    assert step.heading is None
    assert step.easing == Easing.LINEAR
    assert step.duration == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_rotation_step_precedes_translation() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)

    channel.push(13.6, 100.8005)

    rotate, translate = runner.transitions[0].steps
    assert rotate.heading == pytest.approx(-math.pi / 2)
    assert rotate.position is None
    assert rotate.duration == pytest.approx(1.0)
    assert rotate.easing == Easing.POWER2_IN_OUT
    assert translate.duration == pytest.approx(5.0)
    assert translate.easing == Easing.LINEAR

    runner.transitions[0].finish()
    assert reconciler.transform.heading == pytest.approx(-math.pi / 2)


@pytest.mark.asyncio
async def test_small_rotation_uses_shorter_duration() -> None:
    reconciler, channel, runner = await _started(config=TramConfig(rotation_speed=4.0))
    channel.push(13.6, 100.8)

    channel.push(13.6, 100.8005)

    rotate = runner.transitions[0].steps[0]
    assert rotate.duration == pytest.approx((math.pi / 2) / 4.0)


@pytest.mark.asyncio
async def test_stale_update_freezes_and_keeps_accepted_state(caplog: pytest.LogCaptureFixture) -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)
    channel.push(13.6001, 100.8)
    accepted = reconciler.get_status()
    transition = runner.transitions[0]
    transition.advance(0.5)
    frozen = reconciler.transform.snapshot()

    with caplog.at_level(logging.WARNING, logger="pytram.reconciler"):
        channel.push(14.0, 101.0, timestamp=NOW - timedelta(minutes=2))
        channel.push(14.5, 101.5, timestamp=NOW - timedelta(minutes=3))

    status = reconciler.get_status()
    assert transition.cancelled
    assert len(runner.transitions) == 1
    assert status.state == ReconcilerState.STALE
    assert not status.is_moving
    assert status.current_point == accepted.current_point
    assert status.previous_point == accepted.previous_point
    assert reconciler.transform.snapshot() == frozen
    stale_warnings = [r for r in caplog.records if "stale" in r.getMessage()]
    assert len(stale_warnings) == 1


@pytest.mark.asyncio
async def test_stale_warning_repeats_after_interval(caplog: pytest.LogCaptureFixture) -> None:
    clock = _Clock()
    reconciler, channel, _runner = await _started(clock=clock)
    channel.push(13.6, 100.8)

    with caplog.at_level(logging.WARNING, logger="pytram.reconciler"):
        channel.push(14.0, 101.0, timestamp=NOW - timedelta(minutes=2))
        clock.now = NOW + timedelta(seconds=31)
        channel.push(14.0, 101.0, timestamp=NOW - timedelta(minutes=2))

    assert len([r for r in caplog.records if "stale" in r.getMessage()]) == 2


@pytest.mark.asyncio
async def test_fresh_unchanged_update_leaves_stale_state() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)
    channel.push(14.0, 101.0, timestamp=NOW - timedelta(minutes=2))
    assert reconciler.state == ReconcilerState.STALE

    channel.push(13.6, 100.8)

    assert reconciler.state == ReconcilerState.TRACKING
    assert runner.transitions == []


@pytest.mark.asyncio
async def test_new_update_cancels_and_replaces_transition() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)

    channel.push(13.6001, 100.8)
    channel.push(13.6002, 100.8)

    first, second = runner.transitions
    assert first.cancelled
    assert runner.active == [second]
    assert second.target == reconciler.projection.project(13.6002, 100.8)

    # A late completion from the replaced transition is ignored.
    first.on_complete()
    assert reconciler.get_status().is_moving
    assert reconciler.state == ReconcilerState.TRANSITIONING

    second.finish()
    assert not reconciler.get_status().is_moving
    assert reconciler.state == ReconcilerState.TRACKING


@pytest.mark.asyncio
async def test_out_of_order_update_is_discarded() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)

    channel.push(13.6001, 100.8, timestamp=NOW - timedelta(seconds=10))

    assert runner.transitions == []
    current = reconciler.get_status().current_point
    assert current is not None and current.latitude == 13.6


@pytest.mark.asyncio
async def test_noise_below_min_motion_is_discarded() -> None:
    reconciler, channel, runner = await _started(config=TramConfig(min_motion_units=5.0))
    channel.push(13.6, 100.8)

    channel.push(13.60002, 100.8)

    assert runner.transitions == []
    current = reconciler.get_status().current_point
    assert current is not None and current.latitude == 13.6


@pytest.mark.asyncio
async def test_disconnect_freezes_mid_transition_and_reconnect_requests() -> None:
    reconciler, channel, runner = await _started()
    channel.push(13.6, 100.8)
    start = reconciler.transform.snapshot()
    channel.push(13.6001, 100.8)
    transition = runner.transitions[0]
    transition.advance(0.5)
    mid = reconciler.transform.snapshot()

    channel.drop()

    status = reconciler.get_status()
    assert transition.cancelled
    assert not status.connection_healthy
    assert status.state == ReconcilerState.DISCONNECTED
    assert status.last_connection_loss_at == NOW
    assert status.current_point is not None
    assert reconciler.transform.snapshot() == mid
    assert mid.position != start.position
    assert mid.position != transition.target

    requests_before = channel.requests
    channel.restore()

    status = reconciler.get_status()
    assert channel.requests == requests_before + 1
    assert status.connection_healthy
    assert status.state == ReconcilerState.TRACKING
    assert status.last_connection_loss_at is None


@pytest.mark.asyncio
async def test_restore_before_any_data_is_uninitialized() -> None:
    reconciler, channel, _runner = await _started()

    channel.drop()
    assert reconciler.state == ReconcilerState.DISCONNECTED
    channel.restore()

    assert reconciler.state == ReconcilerState.UNINITIALIZED


def test_inject_position() -> None:
    reconciler, _channel, runner = _build()

    assert reconciler.inject_position(13.6, 100.8)
    assert not reconciler.inject_position(95.0, 100.8)
    assert reconciler.inject_position(95.0, 100.8, validate=False)
    assert not reconciler.inject_position(float("nan"), 100.8, validate=False)
    assert not reconciler.inject_position("north", 100.8)  # type: ignore[arg-type]

    current = reconciler.get_status().current_point
    assert current is not None
    assert current.latitude == 95.0
    assert current.timestamp == NOW
    assert len(runner.transitions) == 1


def test_fallback_route_drives_position() -> None:
    reconciler, _channel, runner = _build(route=[MSM, AU_MALL, QUEEN_OF_SHEBA])

    assert reconciler.enter_fallback()

    assert reconciler.mode == TrackingMode.FALLBACK
    assert reconciler.fallback_index == 0
    current = reconciler.get_status().current_point
    assert current is not None
    assert (current.latitude, current.longitude) == (MSM.latitude, MSM.longitude)
    assert reconciler.projection.center_latitude == pytest.approx((MSM.latitude + QUEEN_OF_SHEBA.latitude) / 2)
    assert reconciler.transform.position == reconciler.projection.project_point(MSM)

    assert reconciler.advance_fallback()
    assert reconciler.fallback_index == 1
    assert runner.transitions[-1].target == reconciler.projection.project_point(AU_MALL)

    assert not reconciler.advance_fallback(7)
    assert reconciler.advance_fallback(2)
    assert reconciler.fallback_index == 2


def test_fallback_requires_a_route() -> None:
    reconciler, _channel, _runner = _build()

    assert not reconciler.enter_fallback()
    assert not reconciler.advance_fallback()
    assert reconciler.mode == TrackingMode.REALTIME


@pytest.mark.asyncio
async def test_live_update_exits_fallback_permanently() -> None:
    reconciler, channel, runner = await _started(route=[MSM, AU_MALL])
    assert reconciler.enter_fallback()

    channel.push(QUEEN_OF_SHEBA.latitude, QUEEN_OF_SHEBA.longitude)

    assert reconciler.mode == TrackingMode.REALTIME
    assert runner.transitions[-1].target == reconciler.projection.project_point(QUEEN_OF_SHEBA)
    assert not reconciler.enter_fallback()
    assert not reconciler.advance_fallback()


@pytest.mark.asyncio
async def test_exhausted_retries_enter_fallback_without_live_data() -> None:
    reconciler, channel, _runner = await _started(route=[MSM, AU_MALL])

    channel.errors.emit(ExhaustedRetriesError("Connection failed after 5 attempts", attempts=5))

    assert reconciler.mode == TrackingMode.FALLBACK


@pytest.mark.asyncio
async def test_restore_during_fallback_transition_keeps_transitioning() -> None:
    reconciler, channel, runner = await _started(route=[MSM, AU_MALL])
    channel.drop()
    channel.errors.emit(ExhaustedRetriesError("Connection failed after 5 attempts", attempts=5))
    assert reconciler.advance_fallback()
    transition = runner.transitions[-1]

    channel.restore()

    status = reconciler.get_status()
    assert status.state == ReconcilerState.TRANSITIONING
    assert status.is_moving
    assert not transition.cancelled

    transition.finish()

    assert reconciler.state == ReconcilerState.TRACKING
    assert not reconciler.get_status().is_moving


@pytest.mark.asyncio
async def test_exhausted_retries_after_live_data_keep_realtime() -> None:
    reconciler, channel, _runner = await _started(route=[MSM, AU_MALL])
    channel.push(13.6, 100.8)

    channel.errors.emit(ExhaustedRetriesError("Connection failed after 5 attempts", attempts=5))

    assert reconciler.mode == TrackingMode.REALTIME


@pytest.mark.asyncio
async def test_on_status_publishes_snapshots() -> None:
    reconciler, channel, runner = await _started()
    statuses: list[ReconcilerStatus] = []
    subscription = reconciler.on_status(statuses.append)

    channel.push(13.6, 100.8)
    channel.push(13.6001, 100.8)
    runner.transitions[0].finish()
    subscription.unsubscribe()
    channel.push(13.6002, 100.8)

    assert [s.state for s in statuses] == [
        ReconcilerState.TRACKING,
        ReconcilerState.TRANSITIONING,
        ReconcilerState.TRACKING,
    ]
    assert statuses[1].is_moving
    assert statuses[0].transform is not None


@pytest.mark.asyncio
async def test_dispose_cancels_and_unsubscribes() -> None:
    reconciler, channel, runner = await _started()
    statuses: list[ReconcilerStatus] = []
    reconciler.on_status(statuses.append)
    channel.push(13.6, 100.8)
    channel.push(13.6001, 100.8)
    transition = runner.transitions[0]

    await reconciler.dispose()
    await reconciler.dispose()

    assert transition.cancelled
    assert channel.disconnected
    assert len(channel.updates) == 0
    assert len(channel.connections) == 0
    assert len(channel.errors) == 0
    published = len(statuses)
    transition.on_complete()
    assert len(statuses) == published
    assert not reconciler.inject_position(13.7, 100.9)
    with pytest.raises(RuntimeError):
        await reconciler.start()


@pytest.mark.asyncio
async def test_context_manager_starts_and_disposes() -> None:
    channel = _FakeChannel()

    async with PositionReconciler(channel, runner=_ManualRunner(), clock=_Clock()) as reconciler:
        assert channel.connect_calls == 1
        assert reconciler.get_status().connection_healthy

    assert channel.disconnected


class _ScriptedTransport:
    def __init__(self) -> None:
        self.connected = False
        self.sent: list[str] = []
        self.close_reason: DisconnectReason | None = None
        self.inbox: asyncio.Queue[TransportFrame | None] = asyncio.Queue()

    async def open(self, timeout: float) -> None:
        self.connected = True

    async def send(self, event: str, data: Any = None) -> None:
        self.sent.append(event)

    async def receive(self) -> TransportFrame | None:
        return await self.inbox.get()

    async def close(self) -> None:
        self.connected = False
        self.close_reason = DisconnectReason.CLIENT
        self.inbox.put_nowait(None)


@pytest.mark.asyncio
async def test_end_to_end_with_channel_client_and_asyncio_runner() -> None:
    config = TramConfig(linear_speed=1e6, min_translation_duration=0.0, max_rotation_duration=0.0)
    transport = _ScriptedTransport()
    channel = ChannelClient(config, transport_factory=lambda: transport)
    reconciler = PositionReconciler(channel, config=config, runner=AsyncioTransitionRunner(frame_interval=0.001))

    async with reconciler:
        now_iso = datetime.now(UTC).isoformat()
        transport.inbox.put_nowait(TransportFrame("gps-data", {"c": {"lat": 13.6125, "lon": 100.8365, "t": now_iso}}))
        transport.inbox.put_nowait(
            TransportFrame("gps-data-update", {"c": {"lat": 13.6127, "lon": 100.8340, "t": now_iso}})
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while reconciler.state != ReconcilerState.TRACKING or reconciler.get_status().previous_point is None or (
            reconciler.get_status().previous_point == reconciler.get_status().current_point
        ):
            assert loop.time() < deadline, "reconciler did not settle"
            await asyncio.sleep(0.005)

        expected = reconciler.projection.project(13.6127, 100.8340)
        assert reconciler.transform.position.x == pytest.approx(expected.x)
        assert reconciler.transform.position.z == pytest.approx(expected.z)
        assert not reconciler.get_status().is_moving
        assert transport.sent == ["request-gps-data"]
