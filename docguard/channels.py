"""Typed publish/subscribe channels.

Each concern (watch changes, watch health, ready conflicts, applied actions)
gets its own channel. Subscriptions are explicit objects so owners can
release them deterministically, e.g. when a document closes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


class Subscription:
    """Handle returned by ``EventChannel.subscribe``."""

    def __init__(self, channel: "EventChannel", callback: Callable) -> None:
        self._channel = channel
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Detach from the channel. Calling twice is harmless."""
        if not self.active:
            return
        self.active = False
        self._channel._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.unsubscribe()


class EventChannel(Generic[T]):
    """Synchronous fan-out of events of one type to subscribers.

    Subscribers run in subscription order on the publishing thread. A failing
    subscriber is logged and does not prevent delivery to the others.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscriptions: list[Subscription] = []

    def subscribe(self, callback: Callable[[T], object]) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def publish(self, event: T) -> list[object]:
        """Deliver ``event`` and return each subscriber's return value."""
        results: list[object] = []
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                results.append(subscription.callback(event))
            except Exception:
                logger.exception("subscriber on channel {} failed", self.name)
        return results

    def __len__(self) -> int:
        return len(self._subscriptions)


__all__ = ["EventChannel", "Subscription"]
