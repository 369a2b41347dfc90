"""The consumer-facing BLE central session engine."""

import time
from concurrent.futures import Future, wait
from threading import RLock
from typing import Any, Callable, Dict, Optional, Tuple

from blesession.ble.adapter import AdapterListener, RadioAdapter
from blesession.ble.connection import ConnectionStateMachine, PeripheralConnection
from blesession.ble.constants import (
    BLEConfig,
    ERROR_ADAPTER_UNAVAILABLE,
    ERROR_ENGINE_CLOSED,
    ERROR_NOT_CONNECTED,
    EVENT_ROOT_TOPIC,
    logger,
)
from blesession.ble.errors import (
    AdapterUnavailable,
    BLEError,
    BLEErrorHandler,
    NotConnected,
)
from blesession.ble.events import (
    AdapterPoweredOff,
    AdapterPoweredOn,
    DeviceDiscovered,
    Event,
    EventBus,
)
from blesession.ble.models import (
    Advertisement,
    CharacteristicInfo,
    PeripheralId,
    PeripheralRecord,
)
from blesession.ble.policies import BackoffPolicy
from blesession.ble.registry import DeviceRegistry
from blesession.ble.state import ConnectionState
from blesession.util import DeferredExecution


class BLECentralEngine(AdapterListener):
    """
    Headless BLE central: discovery, connection lifecycle, GATT catalog and transactions.

    Commands return immediately. Anything that needs the radio hands back a
    `concurrent.futures.Future`, and everything that happens is also published
    as an event (see `subscribe()`). Adapter callbacks are drained by a single
    inbound worker thread; events are delivered by the shared publishing worker.

    The engine owns the adapter it is given and closes it in `close()`.
    """

    def __init__(
        self,
        adapter: RadioAdapter,
        *,
        connect_timeout: Optional[float] = None,
        disconnect_timeout: Optional[float] = None,
        retry_policy_factory: Optional[Callable[[], BackoffPolicy]] = None,
        publisher: Any = None,
    ):
        """
        Create the engine and attach it to `adapter`.

        Parameters:
            adapter (RadioAdapter): Platform radio the engine drives.
            connect_timeout (Optional[float]): Seconds before a connect attempt fails with ConnectTimeout.
            disconnect_timeout (Optional[float]): Seconds before an unconfirmed disconnect is forced.
            retry_policy_factory (Optional[Callable[[], BackoffPolicy]]): Builds each peripheral's retry policy.
            publisher: Executor events are published through; defaults to `blesession.publishingThread`.
        """
        self._adapter = adapter
        self.registry = DeviceRegistry()
        self._inbound = DeferredExecution("BLEInbound")
        self._bus = EventBus(self, publisher)
        self._machine = ConnectionStateMachine(
            adapter,
            self.registry,
            self._bus,
            self._inbound.queueWork,
            connect_timeout=connect_timeout,
            disconnect_timeout=disconnect_timeout,
            retry_policy_factory=retry_policy_factory,
            is_available=lambda: self._powered,
        )
        self._scan_lock = RLock()
        self._scan_desired = False
        self._scan_active = False
        self._scan_future: Optional["Future[Any]"] = None
        # Power state is unknown until the adapter reports it; assume usable
        self._powered = True
        self._closed = False
        adapter.set_listener(self)

    # -- context manager --------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    # -- subscriptions ----------------------------------------------------

    def subscribe(
        self, handler: Callable[[Event], Any], topic: str = EVENT_ROOT_TOPIC
    ) -> Callable[[Event], Any]:
        """
        Call `handler(event)` for every event this engine publishes under `topic`.

        There is no replay: a late subscriber should read `list_devices()` first.
        Handlers run on the publishing thread and must not call `flush()`.
        """
        return self._bus.subscribe(handler, topic)

    def unsubscribe(self, handler: Callable[[Event], Any]) -> bool:
        return self._bus.unsubscribe(handler)

    # -- commands ---------------------------------------------------------

    def scan(self, enabled: bool = True) -> None:
        """
        Ask for scanning to be on or off.

        Requests are coalesced: the adapter sees at most one outstanding
        start/stop at a time and the last request wins.

        Raises:
            AdapterUnavailable: If scanning is requested while the radio is off.
        """
        enabled = bool(enabled)
        with self._scan_lock:
            if enabled:
                self._require_open()
                self._require_powered()
            self._scan_desired = enabled
        self._reconcile_scan()

    def connect(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """Connect to a discovered peripheral. See `ConnectionStateMachine.connect`."""
        self._require_open()
        self._require_powered(peripheral_id)
        return self._machine.connect(peripheral_id)

    def disconnect(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """Disconnect a peripheral. Accepted in every state, even with the radio off."""
        return self._machine.disconnect(peripheral_id)

    def retry(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """Reconnect after a failure or disconnect, subject to the peripheral's backoff policy."""
        self._require_open()
        self._require_powered(peripheral_id)
        return self._machine.retry(peripheral_id)

    def toggle(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """Disconnect the peripheral if it is connected or connecting, otherwise connect it."""
        self._require_open()
        return self._machine.toggle(peripheral_id)

    def read(self, peripheral_id: PeripheralId, characteristic: str) -> "Future[bytes]":
        """Read a characteristic of a connected peripheral."""
        conn = self._gatt_target(peripheral_id)
        with conn.lock:
            self._require_connected(conn)
            return conn.session.read(characteristic)

    def write(
        self,
        peripheral_id: PeripheralId,
        characteristic: str,
        payload: Any,
        ack_required: bool = True,
    ) -> "Future[bytes]":
        """
        Write to a characteristic of a connected peripheral.

        Parameters:
            peripheral_id (PeripheralId): Target peripheral.
            characteristic (str): Characteristic UUID.
            payload (bytes-like): Data to write.
            ack_required (bool): Write with response when True, without response otherwise.
                Falls back to the other mode if the characteristic only supports that one.

        Raises:
            MalformedPayload: If `payload` is not bytes-like.
            WriteNotPermitted: If the characteristic is not writable.
            PayloadTooLarge: If `payload` exceeds the characteristic's maximum for the write mode used.
        """
        conn = self._gatt_target(peripheral_id)
        with conn.lock:
            self._require_connected(conn)
            return conn.session.write(characteristic, payload, ack_required)

    def set_notify(
        self, peripheral_id: PeripheralId, characteristic: str, enabled: bool = True
    ) -> "Future[bool]":
        """Enable or disable notifications; requesting the current state is a no-op success."""
        conn = self._gatt_target(peripheral_id)
        with conn.lock:
            self._require_connected(conn)
            return conn.session.set_notify(characteristic, enabled)

    # -- queries ----------------------------------------------------------

    def list_devices(self) -> Tuple[PeripheralRecord, ...]:
        """Every discovered peripheral, in discovery order."""
        return self.registry.list()

    def get_device(self, peripheral_id: Optional[str]) -> Optional[PeripheralRecord]:
        return self.registry.get(peripheral_id)

    def get_state(self, peripheral_id: Optional[str]) -> Optional[ConnectionState]:
        if peripheral_id is None:
            return None
        return self._machine.state(peripheral_id)

    def get_catalog(self, peripheral_id: Optional[str]) -> Dict[str, Tuple[str, ...]]:
        """Service UUID to characteristic UUIDs; empty unless the peripheral is connected."""
        conn = self._machine.find(peripheral_id)
        return conn.session.catalog() if conn else {}

    def get_characteristic(
        self, peripheral_id: Optional[str], characteristic: str
    ) -> Optional[CharacteristicInfo]:
        conn = self._machine.find(peripheral_id)
        return conn.session.characteristic(characteristic) if conn else None

    def get_subscriptions(self, peripheral_id: Optional[str]) -> Tuple[str, ...]:
        """Characteristics with notifications currently enabled."""
        conn = self._machine.find(peripheral_id)
        return conn.session.notifications.subscribed() if conn else ()

    @property
    def is_scanning(self) -> bool:
        with self._scan_lock:
            return self._scan_active

    @property
    def adapter_powered(self) -> bool:
        return self._powered

    @property
    def closed(self) -> bool:
        return self._closed

    # -- adapter callbacks (any thread) -------------------------------------

    def on_advertisement(self, advertisement: Advertisement) -> None:
        self._inbound.queueWork(lambda: self._handle_advertisement(advertisement))

    def on_power_state(self, powered: bool) -> None:
        self._inbound.queueWork(lambda: self._handle_power_state(bool(powered)))

    def on_link_lost(
        self, peripheral_id: PeripheralId, error: Optional[BaseException] = None
    ) -> None:
        self._inbound.queueWork(lambda: self._machine.handle_link_lost(peripheral_id, error))

    def on_value(self, peripheral_id: PeripheralId, characteristic: str, value: bytes) -> None:
        self._inbound.queueWork(lambda: self._handle_value(peripheral_id, characteristic, value))

    # -- lifecycle --------------------------------------------------------

    def flush(self, timeout: Optional[float] = BLEConfig.FLUSH_TIMEOUT) -> bool:
        """
        Wait until queued adapter callbacks have been handled and their events delivered.

        Returns:
            bool: False if the queues did not drain within `timeout`.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        def _remaining() -> Optional[float]:
            return None if deadline is None else max(0.0, deadline - time.monotonic())

        if not self._inbound.join(_remaining()):
            return False
        return self._bus.flush(_remaining())

    def close(self) -> None:
        """
        Stop scanning, disconnect every peripheral and stop the workers.

        Safe to call more than once.
        """
        with self._scan_lock:
            if self._closed:
                return
            self._closed = True
            self._scan_desired = False
        logger.debug("Closing BLE session engine")
        self._reconcile_scan()
        pending = self._machine.close_all()
        if pending:
            wait(pending, timeout=self._machine.disconnect_timeout + 1.0)
        self._machine.cancel_timers()
        self.flush(BLEConfig.FLUSH_TIMEOUT)
        self._inbound.close(BLEConfig.EVENT_THREAD_JOIN_TIMEOUT)
        self._bus.flush(BLEConfig.FLUSH_TIMEOUT)
        self._bus.close()
        self._adapter.set_listener(None)
        BLEErrorHandler.safe_cleanup(self._adapter.close, "adapter close")

    # -- internals ----------------------------------------------------------

    def _require_open(self) -> None:
        if self._closed:
            raise BLEError(ERROR_ENGINE_CLOSED)

    def _require_powered(self, peripheral_id: Optional[PeripheralId] = None) -> None:
        if not self._powered:
            raise AdapterUnavailable(ERROR_ADAPTER_UNAVAILABLE, peripheral_id)

    def _gatt_target(self, peripheral_id: PeripheralId) -> PeripheralConnection:
        self._require_open()
        self._require_powered(peripheral_id)
        return self._machine.connection(peripheral_id)

    @staticmethod
    def _require_connected(conn: PeripheralConnection) -> None:
        state = conn.state
        if state != ConnectionState.CONNECTED:
            raise NotConnected(
                ERROR_NOT_CONNECTED.format(conn.peripheral_id, state.value),
                conn.peripheral_id,
            )

    def _handle_advertisement(self, advertisement: Advertisement) -> None:
        try:
            peripheral_id, is_new = self.registry.upsert(advertisement)
        except ValueError as e:
            logger.debug("Ignoring advertisement: %s", e)
            return
        if is_new:
            self._bus.publish(
                DeviceDiscovered(
                    peripheral_id=peripheral_id, record=self.registry.get(peripheral_id)
                )
            )

    def _handle_value(self, peripheral_id: PeripheralId, characteristic: str, value: bytes) -> None:
        conn = self._machine.find(peripheral_id)
        if conn is None:
            logger.debug("Dropping value for untracked peripheral %s", peripheral_id)
            return
        conn.session.handle_notification(characteristic, value)

    def _handle_power_state(self, powered: bool) -> None:
        with self._scan_lock:
            if powered == self._powered:
                return
            self._powered = powered
            if not powered:
                # The radio stops scanning by itself; the wish to scan survives the outage
                self._scan_active = False
        if not powered:
            logger.warning("Bluetooth adapter powered off")
            self._bus.publish(AdapterPoweredOff())
            self._machine.handle_power_off()
            return
        logger.info("Bluetooth adapter powered on")
        self._bus.publish(AdapterPoweredOn())
        self._reconcile_scan()

    def _reconcile_scan(self) -> None:
        """Issue the next scan toggle if the adapter is idle and not in the desired state."""
        with self._scan_lock:
            if self._scan_future is not None or not self._powered:
                return
            if self._scan_desired == self._scan_active:
                return
            target = self._scan_desired
            logger.debug("%s scanning", "Starting" if target else "Stopping")
            future = self._adapter.start_scan() if target else self._adapter.stop_scan()
            self._scan_future = future
        future.add_done_callback(
            lambda f: self._inbound.queueWork(lambda: self._on_scan_toggled(target, f))
        )

    def _on_scan_toggled(self, target: bool, future: "Future[Any]") -> None:
        error = BLEErrorHandler.future_error(future)
        with self._scan_lock:
            self._scan_future = None
            if error is None:
                self._scan_active = target and self._powered
            else:
                logger.warning(
                    "Failed to %s scanning: %s", "start" if target else "stop", error
                )
                if self._powered and not isinstance(error, AdapterUnavailable):
                    # Give up on the request rather than retrying it in a loop
                    self._scan_desired = self._scan_active
        self._reconcile_scan()


__all__ = ["BLECentralEngine"]
