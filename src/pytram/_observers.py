"""Observer registry with unsubscribe tokens."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by ``on_*`` registration methods.

    Calling :meth:`unsubscribe` (or the handle itself) more than once is
    harmless.
    """

    __slots__ = ("_registry", "_callback")

    def __init__(self, registry: ObserverRegistry[Any], callback: Callable[[Any], None]) -> None:
        self._registry: ObserverRegistry[Any] | None = registry
        self._callback = callback

    @property
    def active(self) -> bool:
        registry = self._registry
        return registry is not None and registry._contains(self)  # noqa: SLF001

    def unsubscribe(self) -> None:
        registry = self._registry
        self._registry = None
        if registry is not None:
            registry._remove(self)  # noqa: SLF001

    def __call__(self) -> None:
        self.unsubscribe()


class ObserverRegistry(Generic[T]):
    """Ordered list of callbacks for one event stream.

    Callbacks run synchronously, in subscription order. A callback that
    raises is logged and does not prevent delivery to the others.
    """

    def __init__(self, name: str, *, logger: logging.Logger | None = None) -> None:
        self._name = name
        self._logger = logger or _logger
        self._subscriptions: list[Subscription] = []

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def emit(self, value: T) -> None:
        # Snapshot so callbacks may unsubscribe while being notified.
        for subscription in list(self._subscriptions):
            if not self._contains(subscription):
                continue
            try:
                subscription._callback(value)  # noqa: SLF001
            except Exception:
                self._logger.exception("Error in %s callback", self._name)

    def clear(self) -> None:
        subscriptions = self._subscriptions
        self._subscriptions = []
        for subscription in subscriptions:
            subscription._registry = None  # noqa: SLF001

    def _contains(self, subscription: Subscription) -> bool:
        return any(candidate is subscription for candidate in self._subscriptions)

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions = [cand for cand in self._subscriptions if cand is not subscription]
