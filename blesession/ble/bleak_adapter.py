"""Radio adapter backed by bleak."""

import asyncio
from concurrent.futures import Future
from threading import RLock, Thread
from typing import Any, Dict, List, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from blesession.ble.adapter import RadioAdapter
from blesession.ble.constants import (
    BLEConfig,
    ERROR_ADAPTER_UNAVAILABLE,
    ERROR_NOT_CONNECTED,
    logger,
)
from blesession.ble.errors import AdapterUnavailable, BLEErrorHandler, NotConnected
from blesession.ble.models import Advertisement, CharacteristicInfo, PeripheralId
from blesession.ble.utils import format_uuid, sanitize_address

# Fragments of the messages bleak backends use when the radio is off or missing
UNAVAILABLE_MARKERS = (
    "turned off",
    "powered off",
    "not available",
    "unavailable",
    "no bluetooth adapters",
    "not authorized",
    "unauthorized",
)


def is_unavailable_error(error: BaseException) -> bool:
    """Whether a bleak error means the radio itself is off, missing or not authorized."""
    if isinstance(error, AdapterUnavailable):
        return True
    if not isinstance(error, BleakError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in UNAVAILABLE_MARKERS)


class BleakRadioAdapter(RadioAdapter):
    """
    RadioAdapter implemented with bleak.

    bleak is asyncio based; this adapter runs its own event loop on a
    dedicated thread and schedules every request there, handing the caller
    the `concurrent.futures.Future` from `asyncio.run_coroutine_threadsafe`.
    One BleakClient is kept per connected peripheral. Listener callbacks are
    invoked on the event-loop thread.

    bleak has no power-state notification, so the adapter infers it: a scan or
    connect failing with a "Bluetooth unavailable" error reports power-off, and
    a background poll reports power-on once a scanner can be started again.
    """

    def __init__(
        self,
        *,
        bluez_adapter: Optional[str] = None,
        power_poll_interval: float = BLEConfig.POWER_POLL_INTERVAL,
    ) -> None:
        """
        Start the adapter's event loop thread.

        Parameters:
            bluez_adapter (Optional[str]): Host adapter to use on Linux (for example "hci1").
            power_poll_interval (float): Seconds between power-on checks while the radio is off.
        """
        super().__init__()
        self._scanner_kwargs: Dict[str, Any] = {}
        if bluez_adapter:
            self._scanner_kwargs["adapter"] = bluez_adapter
        self.power_poll_interval = power_poll_interval
        self._lock = RLock()
        self._scanner: Optional[BleakScanner] = None
        self._devices: Dict[str, Any] = {}
        self._clients: Dict[str, BleakClient] = {}
        self._connect_futures: Dict[str, "Future[None]"] = {}
        self._requested_disconnects: Set[str] = set()
        self._powered = True
        self._power_poll: Optional["Future[None]"] = None
        self._closed = False

        self._eventLoop = asyncio.new_event_loop()
        self._eventThread = Thread(
            target=self._run_event_loop, name="BLEAdapterLoop", daemon=True
        )
        try:
            self._eventThread.start()
        except RuntimeError:
            self._eventLoop.close()
            raise

    # -- RadioAdapter -----------------------------------------------------

    def start_scan(self) -> "Future[None]":
        return self.async_run(self._start_scan())

    def stop_scan(self) -> "Future[None]":
        return self.async_run(self._stop_scan())

    def connect(self, peripheral_id: PeripheralId, timeout: float) -> "Future[None]":
        future = self.async_run(self._connect(peripheral_id, timeout))
        with self._lock:
            self._connect_futures[sanitize_address(peripheral_id)] = future
        return future

    def disconnect(self, peripheral_id: PeripheralId) -> "Future[None]":
        key = sanitize_address(peripheral_id)
        with self._lock:
            pending = self._connect_futures.pop(key, None)
        if pending is not None and not pending.done():
            logger.debug("Cancelling pending connect to %s", peripheral_id)
            pending.cancel()
        return self.async_run(self._disconnect(peripheral_id))

    def discover_services(self, peripheral_id: PeripheralId) -> "Future[List[str]]":
        return self.async_run(self._discover_services(peripheral_id))

    def discover_characteristics(
        self, peripheral_id: PeripheralId, service: str
    ) -> "Future[List[CharacteristicInfo]]":
        return self.async_run(self._discover_characteristics(peripheral_id, service))

    def read(self, peripheral_id: PeripheralId, characteristic: str) -> "Future[bytes]":
        return self.async_run(self._read(peripheral_id, characteristic))

    def write(
        self,
        peripheral_id: PeripheralId,
        characteristic: str,
        data: bytes,
        ack_required: bool = True,
    ) -> "Future[None]":
        return self.async_run(self._write(peripheral_id, characteristic, data, ack_required))

    def subscribe(
        self, peripheral_id: PeripheralId, characteristic: str, enabled: bool
    ) -> "Future[None]":
        return self.async_run(self._subscribe(peripheral_id, characteristic, enabled))

    def close(self) -> None:
        """
        Stop scanning, drop every link and shut down the event loop thread.
        """
        if self._closed:
            return
        self._closed = True
        shutdown = self.async_run(self._shutdown())
        BLEErrorHandler.safe_execute(
            lambda: shutdown.result(BLEConfig.DISCONNECT_TIMEOUT),
            error_msg="Error shutting down BLE adapter",
        )
        self.async_run(self._stop_event_loop())
        self._eventThread.join(timeout=BLEConfig.EVENT_THREAD_JOIN_TIMEOUT)
        if self._eventThread.is_alive():
            logger.warning(
                "BLE event thread did not exit within %.1fs",
                BLEConfig.EVENT_THREAD_JOIN_TIMEOUT,
            )

    def async_run(self, coro):
        """
        Schedule a coroutine on the adapter's event loop.

        Returns:
            concurrent.futures.Future: Future representing the scheduled coroutine's eventual result.
        """
        return asyncio.run_coroutine_threadsafe(coro, self._eventLoop)

    # -- event loop side --------------------------------------------------

    def _run_event_loop(self) -> None:
        BLEErrorHandler.safe_execute(
            self._eventLoop.run_forever, error_msg="Error in event loop", reraise=False
        )
        self._eventLoop.close()

    async def _stop_event_loop(self) -> None:
        self._eventLoop.stop()

    async def _start_scan(self) -> None:
        if self._scanner is not None:
            return
        scanner = BleakScanner(detection_callback=self._on_detection, **self._scanner_kwargs)
        try:
            await scanner.start()
        except BleakError as e:
            self._check_unavailable(e)
            raise
        self._scanner = scanner
        logger.debug("Scanner started")

    async def _stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except BleakError as e:
            # A scanner on a radio that went away has nothing left to stop
            if not self._check_unavailable(e):
                raise
        logger.debug("Scanner stopped")

    def _on_detection(self, device, advertisement_data) -> None:
        key = sanitize_address(device.address)
        if key is None:
            return
        self._devices[key] = device
        listener = self.listener
        if listener is None:
            return
        advertisement = Advertisement(
            address=device.address,
            name=advertisement_data.local_name or device.name,
            rssi=advertisement_data.rssi,
            service_uuids=tuple(format_uuid(u) for u in advertisement_data.service_uuids or ()),
            manufacturer_data=dict(advertisement_data.manufacturer_data or {}),
        )
        BLEErrorHandler.safe_execute(
            lambda: listener.on_advertisement(advertisement),
            error_msg="Error in advertisement listener",
        )

    async def _connect(self, peripheral_id: PeripheralId, timeout: float) -> None:
        key = sanitize_address(peripheral_id)
        target = self._devices.get(key, peripheral_id)
        client = BleakClient(
            target,
            disconnected_callback=lambda c: self._on_disconnected(peripheral_id, c),
            timeout=timeout,
            **self._scanner_kwargs,
        )
        self._clients[key] = client
        try:
            await client.connect()
        except BaseException as e:
            if self._clients.get(key) is client:
                del self._clients[key]
            if isinstance(e, BleakError) and self._check_unavailable(e):
                raise AdapterUnavailable(ERROR_ADAPTER_UNAVAILABLE, peripheral_id) from e
            raise
        finally:
            with self._lock:
                self._connect_futures.pop(key, None)
        logger.debug("BleakClient connected to %s", peripheral_id)

    async def _disconnect(self, peripheral_id: PeripheralId) -> None:
        key = sanitize_address(peripheral_id)
        client = self._clients.pop(key, None)
        if client is None:
            return
        self._requested_disconnects.add(key)
        try:
            await client.disconnect()
        finally:
            self._requested_disconnects.discard(key)

    def _on_disconnected(self, peripheral_id: PeripheralId, client) -> None:
        key = sanitize_address(peripheral_id)
        if key in self._requested_disconnects:
            return
        if self._clients.get(key) is client:
            del self._clients[key]
        logger.debug("BleakClient for %s disconnected unexpectedly", peripheral_id)
        listener = self.listener
        if listener is not None:
            BLEErrorHandler.safe_execute(
                lambda: listener.on_link_lost(peripheral_id),
                error_msg="Error in link-loss listener",
            )

    def _client(self, peripheral_id: PeripheralId) -> BleakClient:
        client = self._clients.get(sanitize_address(peripheral_id))
        if client is None or not client.is_connected:
            raise NotConnected(
                ERROR_NOT_CONNECTED.format(peripheral_id, "no link"), peripheral_id
            )
        return client

    async def _discover_services(self, peripheral_id: PeripheralId) -> List[str]:
        client = self._client(peripheral_id)
        return [format_uuid(service.uuid) for service in client.services]

    async def _discover_characteristics(
        self, peripheral_id: PeripheralId, service: str
    ) -> List[CharacteristicInfo]:
        client = self._client(peripheral_id)
        bleak_service = client.services.get_service(service)
        if bleak_service is None:
            raise BleakError(f"Service {service} not found on {peripheral_id}")
        result = []
        for char in bleak_service.characteristics:
            properties = frozenset(char.properties)
            # bleak only reports the write-without-response limit (ATT MTU - 3)
            max_write_without_response_size = None
            if "write-without-response" in properties:
                max_write_without_response_size = char.max_write_without_response_size
            result.append(
                CharacteristicInfo(
                    uuid=format_uuid(char.uuid),
                    service_uuid=format_uuid(service),
                    properties=properties,
                    max_write_without_response_size=max_write_without_response_size,
                )
            )
        return result

    async def _read(self, peripheral_id: PeripheralId, characteristic: str) -> bytes:
        client = self._client(peripheral_id)
        return bytes(await client.read_gatt_char(characteristic))

    async def _write(
        self,
        peripheral_id: PeripheralId,
        characteristic: str,
        data: bytes,
        ack_required: bool,
    ) -> None:
        client = self._client(peripheral_id)
        await client.write_gatt_char(characteristic, data, response=ack_required)

    async def _subscribe(
        self, peripheral_id: PeripheralId, characteristic: str, enabled: bool
    ) -> None:
        client = self._client(peripheral_id)
        if not enabled:
            await client.stop_notify(characteristic)
            return

        def _on_notify(_sender, data) -> None:
            listener = self.listener
            if listener is not None:
                BLEErrorHandler.safe_execute(
                    lambda: listener.on_value(peripheral_id, characteristic, bytes(data)),
                    error_msg="Error in notification listener",
                )

        await client.start_notify(characteristic, _on_notify)

    async def _shutdown(self) -> None:
        if self._power_poll is not None:
            self._power_poll.cancel()
        await self._stop_scan()
        for key in list(self._clients):
            client = self._clients.pop(key)
            self._requested_disconnects.add(key)
            try:
                await client.disconnect()
            except Exception as e:  # noqa: BLE001 - best effort during shutdown
                logger.debug("Error disconnecting %s during shutdown: %s", key, e)

    # -- power tracking ---------------------------------------------------

    def _check_unavailable(self, error: BaseException) -> bool:
        """Report power-off if `error` says the radio is gone. Runs on the event loop."""
        if not is_unavailable_error(error):
            return False
        self._set_powered(False)
        return True

    def _set_powered(self, powered: bool) -> None:
        if powered == self._powered:
            return
        self._powered = powered
        if not powered:
            self._scanner = None
            self._clients.clear()
            if not self._closed:
                self._power_poll = self.async_run(self._poll_power())
        listener = self.listener
        if listener is not None:
            BLEErrorHandler.safe_execute(
                lambda: listener.on_power_state(powered),
                error_msg="Error in power-state listener",
            )

    async def _poll_power(self) -> None:
        while not self._closed and not self._powered:
            await asyncio.sleep(self.power_poll_interval)
            scanner = BleakScanner(**self._scanner_kwargs)
            try:
                await scanner.start()
                await scanner.stop()
            except BleakError as e:
                if not is_unavailable_error(e):
                    logger.debug("Power poll failed: %s", e)
                continue
            logger.debug("Bluetooth radio is available again")
            self._set_powered(True)


__all__ = ["BleakRadioAdapter", "is_unavailable_error"]
