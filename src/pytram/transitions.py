"""Cancellable transitions of the tracked transform.

The reconciler treats animation as a capability: it hands a runner a
sequence of :class:`TransitionStep` targets and gets back a
:class:`TransitionHandle`. Runners must honour two rules:

- ``cancel()`` is synchronous and idempotent; once it returns, the runner
  never writes the transform again and never calls ``on_complete``;
- completion is reported through ``on_complete``, never by blocking.

:class:`AsyncioTransitionRunner` is the default implementation. It steps
the interpolation on the running event loop at a fixed frame interval.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from pytram.models.transform import TrackedTransform, Transform, Vector3

_logger = logging.getLogger(__name__)


class Easing(enum.StrEnum):
    LINEAR = "none"
    POWER2_IN_OUT = "power2.inOut"
    POWER2_OUT = "power2.out"


def ease(easing: Easing, t: float) -> float:
    """Map linear progress *t* in ``[0, 1]`` through *easing*."""
    t = min(1.0, max(0.0, t))
    if easing == Easing.POWER2_IN_OUT:
        if t < 0.5:
            return 2.0 * t * t
        return 1.0 - ((-2.0 * t + 2.0) ** 2) / 2.0
    if easing == Easing.POWER2_OUT:
        return 1.0 - (1.0 - t) ** 2
    return t


@dataclass(frozen=True, slots=True)
class TransitionStep:
    """One segment of a transition.

    ``None`` for ``position`` or ``heading`` leaves that component as it is
    when the step starts.
    """

    duration: float
    position: Vector3 | None = None
    heading: float | None = None
    easing: Easing = Easing.LINEAR

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got {self.duration}")

    def interpolate(self, start: Transform, fraction: float) -> Transform:
        if fraction >= 1.0:
            # Land exactly on the target.
            return Transform(
                position=self.position if self.position is not None else start.position,
                heading=self.heading if self.heading is not None else start.heading,
            )
        position = start.position
        if self.position is not None:
            position = start.position.lerp(self.position, fraction)
        heading = start.heading
        if self.heading is not None:
            heading = start.heading + (self.heading - start.heading) * fraction
        return Transform(position=position, heading=heading)


class TransitionHandle(Protocol):
    """Handle to an in-flight transition."""

    @property
    def done(self) -> bool: ...

    def cancel(self) -> None: ...


class TransitionRunner(Protocol):
    """Capability that executes transitions against a tracked transform."""

    def begin_transition(
        self,
        transform: TrackedTransform,
        steps: Sequence[TransitionStep],
        on_complete: Callable[[], None],
    ) -> TransitionHandle: ...


class _AsyncioTransition:
    def __init__(self) -> None:
        self.task: asyncio.Task[None] | None = None
        self.cancelled = False
        self.finished = False

    @property
    def done(self) -> bool:
        return self.finished or self.cancelled

    def cancel(self) -> None:
        if self.done:
            return
        self.cancelled = True
        task = self.task
        if task is not None and not task.done():
            task.cancel()


class AsyncioTransitionRunner:
    """Frame-stepped transitions on the asyncio event loop.

    Must be used from code running on the loop (``begin_transition`` calls
    :func:`asyncio.get_running_loop` unless a loop is supplied).
    """

    def __init__(
        self,
        *,
        frame_interval: float = 1 / 60,
        clock: Callable[[], float] = time.monotonic,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if frame_interval <= 0:
            raise ValueError(f"frame_interval must be positive, got {frame_interval}")
        self._frame_interval = frame_interval
        self._clock = clock
        self._loop = loop

    def begin_transition(
        self,
        transform: TrackedTransform,
        steps: Sequence[TransitionStep],
        on_complete: Callable[[], None],
    ) -> TransitionHandle:
        loop = self._loop or asyncio.get_running_loop()
        handle = _AsyncioTransition()
        handle.task = loop.create_task(self._run(handle, transform, tuple(steps), on_complete))
        return handle

    async def _run(
        self,
        handle: _AsyncioTransition,
        transform: TrackedTransform,
        steps: tuple[TransitionStep, ...],
        on_complete: Callable[[], None],
    ) -> None:
        for step in steps:
            start = transform.snapshot()
            started_at = self._clock()
            while True:
                if handle.cancelled:
                    return
                if step.duration <= 0:
                    fraction = 1.0
                else:
                    fraction = min(1.0, (self._clock() - started_at) / step.duration)
                transform.apply(step.interpolate(start, ease(step.easing, fraction)))
                if fraction >= 1.0:
                    break
                await asyncio.sleep(self._frame_interval)

        if handle.cancelled:
            return
        handle.finished = True
        try:
            on_complete()
        except Exception:
            _logger.exception("Transition completion callback failed")
