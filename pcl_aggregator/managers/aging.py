"""
Point aging notifications.

A stream publishes the label of every cloud it evicts. Listeners subscribe
through the channel and get a Subscription handle back, so the stream never
holds a listener past its own teardown: closing the stream closes the
channel and drops every subscription.

The channel also keeps one "primary" slot, the single aging callback a
stream exposes through set/get_point_aging_callback (last write wins).
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

AgingCallback = Callable[[int], None]

_logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by PointAgingChannel.subscribe()."""

    def __init__(self, channel: "PointAgingChannel", token: int, callback: AgingCallback):
        self._channel = channel
        self._token = token
        self.callback = callback

    @property
    def active(self) -> bool:
        return self._channel.is_subscribed(self._token)

    def unsubscribe(self) -> None:
        self._channel.unsubscribe(self._token)


class PointAgingChannel:
    """Thread-safe fan-out of evicted labels to subscribers."""

    def __init__(self, name: str = ""):
        self.name = name
        self._lock = threading.Lock()
        self._subscribers: Dict[int, AgingCallback] = {}
        self._next_token = 0
        self._primary: Optional[Subscription] = None
        self._closed = False

    def subscribe(self, callback: AgingCallback) -> Subscription:
        if not callable(callback):
            raise TypeError("Aging callback must be callable")
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Aging channel {self.name!r} is closed")
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
        return Subscription(self, token, callback)

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def is_subscribed(self, token: int) -> bool:
        with self._lock:
            return token in self._subscribers

    def set_primary(self, callback: Optional[AgingCallback]) -> None:
        """Replace the primary callback (None clears it)."""
        new = self.subscribe(callback) if callback is not None else None
        with self._lock:
            previous, self._primary = self._primary, new
        if previous is not None:
            previous.unsubscribe()

    def get_primary(self) -> Optional[AgingCallback]:
        with self._lock:
            return None if self._primary is None else self._primary.callback

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, label: int) -> None:
        """
        Deliver `label` to every subscriber.

        Callbacks run on the publishing thread, outside the channel lock.
        A failing callback does not stop delivery to the others; its error is
        logged with traceback.
        """
        with self._lock:
            callbacks: List[AgingCallback] = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(label)
            except Exception:
                _logger.exception(f"Aging callback failed on channel {self.name!r} for label {label}")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()
            self._primary = None
