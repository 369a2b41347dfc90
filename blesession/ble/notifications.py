"""BLE notification subscription tracking."""

from threading import RLock
from typing import Dict, Tuple

from blesession.ble.constants import logger


class NotificationManager:
    """
    Track which characteristics of one connection have notifications enabled.

    The adapter is only asked to change a subscription when the requested
    state differs from the tracked one, which keeps `set_notify` idempotent.
    State is connection scoped: `cleanup_all()` runs whenever the link goes away.
    """

    def __init__(self):
        """
        Initialize an empty, thread-safe subscription table.

        Attributes:
            _subscriptions (Dict[str, int]): Maps characteristic UUID to the token of its active subscription.
            _subscription_counter (int): Monotonic counter used to allocate subscription tokens.
            _lock (RLock): Reentrant lock protecting the table.
        """
        self._subscriptions: Dict[str, int] = {}
        self._subscription_counter = 0
        self._lock = RLock()

    def subscribe(self, characteristic: str) -> int:
        """
        Mark a characteristic as subscribed and return the token of its subscription.

        Subscribing an already-subscribed characteristic returns the existing token.
        """
        with self._lock:
            token = self._subscriptions.get(characteristic)
            if token is None:
                token = self._subscription_counter
                self._subscription_counter += 1
                self._subscriptions[characteristic] = token
            return token

    def unsubscribe(self, characteristic: str) -> bool:
        """Forget a subscription. Returns False if the characteristic was not subscribed."""
        with self._lock:
            return self._subscriptions.pop(characteristic, None) is not None

    def is_subscribed(self, characteristic: str) -> bool:
        with self._lock:
            return characteristic in self._subscriptions

    def subscribed(self) -> Tuple[str, ...]:
        """Characteristics with notifications enabled, in subscription order."""
        with self._lock:
            return tuple(self._subscriptions)

    def cleanup_all(self) -> None:
        """
        Clear all tracked subscriptions so the manager no longer remembers them.
        """
        with self._lock:
            if self._subscriptions:
                logger.debug("Dropping %d notification subscription(s)", len(self._subscriptions))
            self._subscriptions.clear()


__all__ = ["NotificationManager"]
