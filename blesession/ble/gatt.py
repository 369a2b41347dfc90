"""Per-connection GATT catalog and pending-operation tracking."""

import dataclasses
from concurrent.futures import Future
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Tuple

from blesession.ble.adapter import RadioAdapter
from blesession.ble.constants import (
    BLEConfig,
    ERROR_MALFORMED_PAYLOAD,
    ERROR_OPERATION_IN_PROGRESS,
    ERROR_PAYLOAD_TOO_LARGE,
    ERROR_UNKNOWN_CHARACTERISTIC,
    ERROR_WRITE_NOT_PERMITTED,
    logger,
)
from blesession.ble.errors import (
    BLEError,
    BLEErrorHandler,
    GattOperationError,
    MalformedPayload,
    OperationInProgress,
    PayloadTooLarge,
    UnknownCharacteristic,
    WriteNotPermitted,
)
from blesession.ble.events import (
    CharacteristicUpdated,
    EventBus,
    OperationFailed,
    ServicesDiscovered,
)
from blesession.ble.models import (
    CharacteristicInfo,
    OperationKind,
    PendingOperation,
    PeripheralId,
    ValueSource,
)
from blesession.ble.notifications import NotificationManager
from blesession.ble.utils import format_uuid, resolved_future, settle_future

PayloadTypes = (bytes, bytearray, memoryview)


class GattSession:
    """
    GATT state of one peripheral for the lifetime of one connection.

    The connection state machine calls `open()` on entering CONNECTED and
    `close()` on leaving it. Every `close()` bumps `generation`; adapter
    completions are tagged with the generation they were issued under and are
    discarded once it no longer matches, since GATT handles do not survive a
    reconnect.

    All mutation happens under the peripheral's lock, shared with its
    connection state machine entry.
    """

    def __init__(
        self,
        peripheral_id: PeripheralId,
        adapter: RadioAdapter,
        bus: EventBus,
        post: Callable[[Callable[[], None]], None],
        lock: Optional[RLock] = None,
    ):
        """
        Parameters:
            peripheral_id: Peripheral this session belongs to.
            adapter: Radio adapter GATT requests are issued to.
            bus: Event bus for discovery, value and failure events.
            post: Queues a callable onto the engine's inbound worker; adapter completions run through it.
            lock: The peripheral's lock. A private one is created when omitted.
        """
        self.peripheral_id = peripheral_id
        self._adapter = adapter
        self._bus = bus
        self._post = post
        self._lock = lock or RLock()
        self.generation = 0
        self._active = False
        # service uuid -> characteristic uuids, both in discovery order
        self._services: Dict[str, List[str]] = {}
        self._characteristics: Dict[str, CharacteristicInfo] = {}
        self._pending: Dict[Tuple[str, OperationKind], PendingOperation] = {}
        self.notifications = NotificationManager()

    # -- lifecycle --------------------------------------------------------

    def open(self) -> None:
        """Start a fresh session and kick off service discovery."""
        with self._lock:
            self.generation += 1
            self._active = True
            logger.debug("Starting GATT discovery for %s", self.peripheral_id)
            self._track(
                self._adapter.discover_services(self.peripheral_id),
                self._on_services_discovered,
            )

    def close(self) -> int:
        """
        End the session: cancel pending operations and forget the catalog.

        Returns:
            int: Number of pending operations that were cancelled.
        """
        with self._lock:
            self.generation += 1
            self._active = False
            pending = list(self._pending.values())
            self._pending.clear()
            for op in pending:
                op.future.cancel()
                if op.adapter_future is not None:
                    BLEErrorHandler.safe_cleanup(op.adapter_future.cancel, "adapter future cancel")
            self._services.clear()
            self._characteristics.clear()
            self.notifications.cleanup_all()
            if pending:
                logger.debug(
                    "Cancelled %d pending GATT operation(s) for %s",
                    len(pending),
                    self.peripheral_id,
                )
            return len(pending)

    # -- queries ----------------------------------------------------------

    def catalog(self) -> Dict[str, Tuple[str, ...]]:
        """Snapshot of the service catalog: service UUID to characteristic UUIDs."""
        with self._lock:
            return {service: tuple(chars) for service, chars in self._services.items()}

    def characteristic(self, characteristic: str) -> Optional[CharacteristicInfo]:
        with self._lock:
            return self._characteristics.get(format_uuid(characteristic))

    # -- commands ---------------------------------------------------------

    def read(self, characteristic: str) -> "Future[bytes]":
        """Read a characteristic. The future resolves to the value read."""
        with self._lock:
            info = self._require_characteristic(characteristic)
            op = self._begin(info.uuid, OperationKind.READ)
            op.adapter_future = self._adapter.read(self.peripheral_id, info.uuid)
            self._track(op.adapter_future, lambda f: self._on_read_done(op, f))
            return op.future

    def write(
        self, characteristic: str, payload: Any, ack_required: bool = True
    ) -> "Future[bytes]":
        """
        Write `payload` to a characteristic.

        `ack_required` selects an acknowledged write or write-without-response.
        When the characteristic only supports the other mode, that mode is used
        instead; the size limit checked is the one of the mode actually used.

        Raises:
            MalformedPayload: If the payload is not bytes-like.
            UnknownCharacteristic: If the characteristic was not discovered.
            WriteNotPermitted: If the characteristic supports neither write mode.
            PayloadTooLarge: If the payload exceeds the maximum size for the write mode.
            OperationInProgress: If a write to the characteristic is already pending.

        Returns:
            Future[bytes]: Resolves to the written payload once the adapter completes.
        """
        if not isinstance(payload, PayloadTypes):
            raise MalformedPayload(
                ERROR_MALFORMED_PAYLOAD.format(type(payload).__name__), self.peripheral_id
            )
        data = bytes(payload)
        with self._lock:
            info = self._require_characteristic(characteristic)
            ack_required = self._write_mode(info, ack_required)
            if ack_required:
                limit = info.max_write_size
            else:
                limit = info.max_write_without_response_size
            limit = limit or BLEConfig.DEFAULT_MAX_WRITE_SIZE
            if len(data) > limit:
                raise PayloadTooLarge(
                    ERROR_PAYLOAD_TOO_LARGE.format(len(data), limit, info.uuid),
                    self.peripheral_id,
                )
            op = self._begin(info.uuid, OperationKind.WRITE)
            op.payload = data
            op.adapter_future = self._adapter.write(
                self.peripheral_id, info.uuid, data, ack_required
            )
            self._track(op.adapter_future, lambda f: self._on_write_done(op, f))
            return op.future

    def set_notify(self, characteristic: str, enabled: bool) -> "Future[bool]":
        """
        Enable or disable notifications for a characteristic.

        Asking for the state the characteristic is already in succeeds at once
        without touching the adapter; asking again while the same change is
        pending returns the pending future.
        """
        enabled = bool(enabled)
        with self._lock:
            info = self._require_characteristic(characteristic)
            pending = self._pending.get((info.uuid, OperationKind.SUBSCRIBE))
            if pending is not None and pending.enable == enabled:
                return pending.future
            if pending is None and self.notifications.is_subscribed(info.uuid) == enabled:
                logger.debug(
                    "Notifications for %s on %s already %s",
                    info.uuid,
                    self.peripheral_id,
                    "enabled" if enabled else "disabled",
                )
                return resolved_future(enabled)
            op = self._begin(info.uuid, OperationKind.SUBSCRIBE)
            op.enable = enabled
            op.adapter_future = self._adapter.subscribe(self.peripheral_id, info.uuid, enabled)
            self._track(op.adapter_future, lambda f: self._on_subscribe_done(op, f))
            return op.future

    def handle_notification(self, characteristic: str, value: bytes) -> bool:
        """
        Publish a value pushed by the peripheral.

        Returns:
            bool: False if the value was dropped because nothing is subscribed.
        """
        uuid = format_uuid(characteristic)
        with self._lock:
            if not self._active:
                logger.debug("Dropping notification for %s on closed session %s", uuid, self.peripheral_id)
                return False
            pending = self._pending.get((uuid, OperationKind.SUBSCRIBE))
            expecting = pending is not None and pending.enable
            if not (self.notifications.is_subscribed(uuid) or expecting):
                logger.debug("Dropping notification for unsubscribed %s on %s", uuid, self.peripheral_id)
                return False
            self._bus.publish(
                CharacteristicUpdated(
                    peripheral_id=self.peripheral_id,
                    characteristic=uuid,
                    value=bytes(value),
                    source=ValueSource.NOTIFY,
                )
            )
            return True

    # -- internals --------------------------------------------------------

    def _require_characteristic(self, characteristic: str) -> CharacteristicInfo:
        info = self._characteristics.get(format_uuid(characteristic))
        if info is None:
            raise UnknownCharacteristic(
                ERROR_UNKNOWN_CHARACTERISTIC.format(self.peripheral_id, characteristic),
                self.peripheral_id,
            )
        return info

    def _write_mode(self, info: CharacteristicInfo, ack_required: bool) -> bool:
        """Return the ack_required flag to use for `info`, falling back to the mode it supports."""
        if not info.properties:
            # Adapter reported no properties; trust the caller
            return ack_required
        requested = "write" if ack_required else "write-without-response"
        if requested in info.properties:
            return ack_required
        fallback = "write-without-response" if ack_required else "write"
        if fallback not in info.properties:
            raise WriteNotPermitted(
                ERROR_WRITE_NOT_PERMITTED.format(info.uuid, self.peripheral_id),
                self.peripheral_id,
            )
        logger.debug(
            "Characteristic %s on %s does not support %s; using %s",
            info.uuid,
            self.peripheral_id,
            requested,
            fallback,
        )
        return not ack_required

    def _begin(self, characteristic: str, kind: OperationKind) -> PendingOperation:
        key = (characteristic, kind)
        if key in self._pending:
            raise OperationInProgress(
                ERROR_OPERATION_IN_PROGRESS.format(kind.value, characteristic, self.peripheral_id),
                self.peripheral_id,
            )
        op = PendingOperation(characteristic=characteristic, kind=kind, future=Future())
        self._pending[key] = op
        return op

    def _finish(self, op: PendingOperation) -> None:
        if self._pending.get((op.characteristic, op.kind)) is op:
            del self._pending[(op.characteristic, op.kind)]

    def _track(self, adapter_future: "Future[Any]", handler: Callable[["Future[Any]"], None]) -> None:
        """Route an adapter completion through the inbound worker, tagged with the current generation."""
        generation = self.generation
        adapter_future.add_done_callback(
            lambda f: self._post(lambda: self._complete(generation, f, handler))
        )

    def _complete(self, generation: int, future: "Future[Any]", handler) -> None:
        with self._lock:
            if generation != self.generation or not self._active:
                logger.debug(
                    "Discarding late GATT completion for %s (generation %d, current %d)",
                    self.peripheral_id,
                    generation,
                    self.generation,
                )
                return
            handler(future)

    def _fail(
        self,
        kind: OperationKind,
        characteristic: Optional[str],
        reason: BaseException,
        op: Optional[PendingOperation] = None,
    ) -> None:
        if isinstance(reason, BLEError):
            error = reason
        else:
            target = characteristic or "services"
            error = GattOperationError(
                f"{kind.value.capitalize()} of {target} on {self.peripheral_id} failed: {reason}",
                self.peripheral_id,
                adapter_reason=reason,
            )
        logger.warning("%s", error)
        self._bus.publish(
            OperationFailed(
                peripheral_id=self.peripheral_id,
                characteristic=characteristic,
                kind=kind,
                error=error,
            )
        )
        if op is not None:
            settle_future(op.future, error=error)

    def _on_read_done(self, op: PendingOperation, future: "Future[Any]") -> None:
        self._finish(op)
        error = BLEErrorHandler.future_error(future)
        if error is not None:
            self._fail(OperationKind.READ, op.characteristic, error, op)
            return
        value = bytes(future.result() or b"")
        self._bus.publish(
            CharacteristicUpdated(
                peripheral_id=self.peripheral_id,
                characteristic=op.characteristic,
                value=value,
                source=ValueSource.READ,
            )
        )
        settle_future(op.future, value)

    def _on_write_done(self, op: PendingOperation, future: "Future[Any]") -> None:
        self._finish(op)
        error = BLEErrorHandler.future_error(future)
        if error is not None:
            self._fail(OperationKind.WRITE, op.characteristic, error, op)
            return
        self._bus.publish(
            CharacteristicUpdated(
                peripheral_id=self.peripheral_id,
                characteristic=op.characteristic,
                value=op.payload or b"",
                source=ValueSource.WRITE,
            )
        )
        settle_future(op.future, op.payload)

    def _on_subscribe_done(self, op: PendingOperation, future: "Future[Any]") -> None:
        self._finish(op)
        error = BLEErrorHandler.future_error(future)
        if error is not None:
            self._fail(OperationKind.SUBSCRIBE, op.characteristic, error, op)
            return
        if op.enable:
            self.notifications.subscribe(op.characteristic)
        else:
            self.notifications.unsubscribe(op.characteristic)
        settle_future(op.future, bool(op.enable))

    def _on_services_discovered(self, future: "Future[Any]") -> None:
        error = BLEErrorHandler.future_error(future)
        if error is not None:
            self._fail(OperationKind.DISCOVERY, None, error)
            return
        services = []
        for service in future.result() or ():
            uuid = format_uuid(service)
            if uuid not in self._services:
                self._services[uuid] = []
                services.append(uuid)
        self._discover_characteristics(services, 0)

    def _discover_characteristics(self, services: List[str], index: int) -> None:
        if index >= len(services):
            logger.debug(
                "Discovered %d service(s) and %d characteristic(s) on %s",
                len(self._services),
                len(self._characteristics),
                self.peripheral_id,
            )
            self._bus.publish(
                ServicesDiscovered(peripheral_id=self.peripheral_id, catalog=self.catalog())
            )
            return
        service = services[index]
        self._track(
            self._adapter.discover_characteristics(self.peripheral_id, service),
            lambda f: self._on_characteristics_discovered(services, index, f),
        )

    def _on_characteristics_discovered(
        self, services: List[str], index: int, future: "Future[Any]"
    ) -> None:
        service = services[index]
        error = BLEErrorHandler.future_error(future)
        if error is not None:
            self._fail(OperationKind.DISCOVERY, service, error)
            return
        for info in future.result() or ():
            normalized = dataclasses.replace(
                info, uuid=format_uuid(info.uuid), service_uuid=service
            )
            if normalized.uuid not in self._characteristics:
                self._services[service].append(normalized.uuid)
            self._characteristics[normalized.uuid] = normalized
        self._discover_characteristics(services, index + 1)


__all__ = ["GattSession"]
