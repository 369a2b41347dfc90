"""The capability surface the engine needs from a platform BLE stack."""

from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import List, Optional

from blesession.ble.models import Advertisement, CharacteristicInfo, PeripheralId


class AdapterListener(ABC):
    """Receiver of the adapter's callback stream. Implemented by the engine."""

    @abstractmethod
    def on_advertisement(self, advertisement: Advertisement) -> None:
        """An advertisement was received while scanning."""

    @abstractmethod
    def on_power_state(self, powered: bool) -> None:
        """The radio was powered on or off (or lost/regained authorization)."""

    @abstractmethod
    def on_link_lost(
        self, peripheral_id: PeripheralId, error: Optional[BaseException] = None
    ) -> None:
        """A link dropped without the engine asking for it."""

    @abstractmethod
    def on_value(self, peripheral_id: PeripheralId, characteristic: str, value: bytes) -> None:
        """A subscribed characteristic notified or indicated a new value."""


class RadioAdapter(ABC):
    """
    Thin asynchronous interface to the platform's BLE central stack.

    Every method returns immediately. Radio work completes through the
    returned `concurrent.futures.Future`; failures are reported by setting an
    exception on that future, never by raising from the call itself.
    Cancelling an adapter future is a best-effort request.
    """

    def __init__(self) -> None:
        self.listener: Optional[AdapterListener] = None

    def set_listener(self, listener: Optional[AdapterListener]) -> None:
        """Register the receiver of advertisements, power, link-loss and value callbacks."""
        self.listener = listener

    @abstractmethod
    def start_scan(self) -> "Future[None]":
        """Start reporting advertisements. Idempotent."""

    @abstractmethod
    def stop_scan(self) -> "Future[None]":
        """Stop reporting advertisements. Idempotent."""

    @abstractmethod
    def connect(self, peripheral_id: PeripheralId, timeout: float) -> "Future[None]":
        """Open a link to the peripheral."""

    @abstractmethod
    def disconnect(self, peripheral_id: PeripheralId) -> "Future[None]":
        """Close the link, or cancel a pending connect. Must tolerate repeated calls."""

    @abstractmethod
    def discover_services(self, peripheral_id: PeripheralId) -> "Future[List[str]]":
        """Resolve to the ordered service UUIDs of a connected peripheral."""

    @abstractmethod
    def discover_characteristics(
        self, peripheral_id: PeripheralId, service: str
    ) -> "Future[List[CharacteristicInfo]]":
        """Resolve to the ordered characteristics of one discovered service."""

    @abstractmethod
    def read(self, peripheral_id: PeripheralId, characteristic: str) -> "Future[bytes]":
        """Read a characteristic value."""

    @abstractmethod
    def write(
        self,
        peripheral_id: PeripheralId,
        characteristic: str,
        data: bytes,
        ack_required: bool = True,
    ) -> "Future[None]":
        """Write a characteristic value, with or without a response from the peripheral."""

    @abstractmethod
    def subscribe(
        self, peripheral_id: PeripheralId, characteristic: str, enabled: bool
    ) -> "Future[None]":
        """Enable or disable notifications for a characteristic."""

    def close(self) -> None:
        """Release platform resources. The default implementation does nothing."""


__all__ = ["AdapterListener", "RadioAdapter"]
