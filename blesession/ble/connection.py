"""Per-peripheral connection lifecycle."""

from concurrent.futures import Future
from threading import RLock, Timer
from typing import Any, Callable, Dict, List, Optional

from blesession.ble.adapter import RadioAdapter
from blesession.ble.constants import (
    BLEConfig,
    ERROR_ADAPTER_UNAVAILABLE,
    ERROR_CONNECT_FAILED,
    ERROR_CONNECT_TIMEOUT,
    ERROR_LINK_LOST,
    ERROR_OPERATION_IN_PROGRESS,
    ERROR_RETRY_LIMIT,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN_PERIPHERAL,
    logger,
)
from blesession.ble.errors import (
    AdapterUnavailable,
    BLEError,
    BLEErrorHandler,
    ConnectFailed,
    ConnectTimeout,
    LinkLost,
    OperationInProgress,
    RetryLimitExceeded,
    UnknownPeripheral,
)
from blesession.ble.events import EventBus, StateChanged
from blesession.ble.gatt import GattSession
from blesession.ble.models import PeripheralId
from blesession.ble.policies import BackoffPolicy, RetryPolicy
from blesession.ble.registry import DeviceRegistry
from blesession.ble.state import ConnectionState, PeripheralStateManager
from blesession.ble.utils import resolved_future, sanitize_address, settle_future


def _chain(source: "Future[Any]", target: "Future[Any]") -> None:
    """Complete `target` with whatever `source` completes with."""

    def _copy(done: "Future[Any]") -> None:
        if done.cancelled():
            target.cancel()
        else:
            settle_future(target, done.result())

    source.add_done_callback(_copy)


class PeripheralConnection:
    """Everything the engine tracks for one peripheral, guarded by one lock."""

    def __init__(
        self,
        peripheral_id: PeripheralId,
        session_factory: Callable[[RLock], GattSession],
        policy: BackoffPolicy,
    ):
        self.peripheral_id = peripheral_id
        self.state_manager = PeripheralStateManager(peripheral_id)
        self.session = session_factory(self.state_manager.lock)
        self.policy = policy
        # Bumped for every connect or disconnect issued; completions carrying an older token are stale
        self.attempt = 0
        self.connect_future: Optional["Future[ConnectionState]"] = None
        self.disconnect_future: Optional["Future[ConnectionState]"] = None
        self.retry_future: Optional["Future[ConnectionState]"] = None
        self.timer: Optional[Timer] = None
        self.retry_timer: Optional[Timer] = None

    @property
    def lock(self) -> RLock:
        return self.state_manager.lock

    @property
    def state(self) -> ConnectionState:
        return self.state_manager.state

    def start_timer(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel_timer()
        timer = Timer(delay, callback)
        timer.daemon = True
        timer.name = f"BLETimer-{self.peripheral_id}"
        timer.start()
        self.timer = timer

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def cancel_retry(self) -> None:
        if self.retry_timer is not None:
            self.retry_timer.cancel()
            self.retry_timer = None
        if self.retry_future is not None:
            self.retry_future.cancel()
            self.retry_future = None


class ConnectionStateMachine:
    """
    Drive each peripheral through DISCOVERED → CONNECTING → CONNECTED → DISCONNECTING → DISCONNECTED.

    Commands run on the caller's thread; adapter completions and timer expiries
    are posted to the engine's inbound worker. Both take the peripheral's lock,
    so a peripheral has a single logical owner at any time while different
    peripherals proceed independently. Each transition is published as exactly
    one StateChanged event while the lock is held, which keeps the events of one
    peripheral in transition order.
    """

    def __init__(
        self,
        adapter: RadioAdapter,
        registry: DeviceRegistry,
        bus: EventBus,
        post: Callable[[Callable[[], None]], None],
        *,
        connect_timeout: Optional[float] = None,
        disconnect_timeout: Optional[float] = None,
        retry_policy_factory: Optional[Callable[[], BackoffPolicy]] = None,
        is_available: Optional[Callable[[], bool]] = None,
    ):
        """
        Parameters:
            adapter: Radio adapter connect/disconnect requests go to.
            registry: Registry that mirrors each peripheral's state in its records.
            bus: Event bus StateChanged events are published on.
            post: Queues a callable onto the engine's inbound worker.
            connect_timeout: Seconds to wait for the adapter to confirm a connection (default `BLEConfig.CONNECT_TIMEOUT`).
            disconnect_timeout: Seconds after which an unconfirmed disconnect is treated as done (default `BLEConfig.DISCONNECT_TIMEOUT`).
            retry_policy_factory: Builds the backoff policy each peripheral uses for `retry()`.
            is_available: Reports whether the radio is currently usable.
        """
        self._adapter = adapter
        self._registry = registry
        self._bus = bus
        self._post = post
        self.connect_timeout = (
            BLEConfig.CONNECT_TIMEOUT if connect_timeout is None else connect_timeout
        )
        self.disconnect_timeout = (
            BLEConfig.DISCONNECT_TIMEOUT if disconnect_timeout is None else disconnect_timeout
        )
        self._retry_policy_factory = retry_policy_factory or RetryPolicy.connect_retry
        self._is_available = is_available or (lambda: True)
        self._connections: Dict[str, PeripheralConnection] = {}
        self._lock = RLock()

    # -- lookup -----------------------------------------------------------

    def connection(self, peripheral_id: PeripheralId) -> PeripheralConnection:
        """
        Return the connection entry for a discovered peripheral, creating it on first use.

        Raises:
            UnknownPeripheral: If the registry has never seen the peripheral.
        """
        record = self._registry.get(peripheral_id)
        if record is None:
            raise UnknownPeripheral(
                ERROR_UNKNOWN_PERIPHERAL.format(peripheral_id), peripheral_id
            )
        key = sanitize_address(record.id)
        with self._lock:
            conn = self._connections.get(key)
            if conn is None:
                conn = PeripheralConnection(
                    record.id,
                    lambda lock: GattSession(
                        record.id, self._adapter, self._bus, self._post, lock
                    ),
                    self._retry_policy_factory(),
                )
                self._connections[key] = conn
            return conn

    def find(self, peripheral_id: Optional[str]) -> Optional[PeripheralConnection]:
        """Return the connection entry if one exists; never raises."""
        key = sanitize_address(peripheral_id)
        if key is None:
            return None
        with self._lock:
            return self._connections.get(key)

    def connections(self) -> List[PeripheralConnection]:
        with self._lock:
            return list(self._connections.values())

    def state(self, peripheral_id: PeripheralId) -> Optional[ConnectionState]:
        conn = self.find(peripheral_id)
        if conn is not None:
            return conn.state
        record = self._registry.get(peripheral_id)
        return record.state if record else None

    # -- commands ---------------------------------------------------------

    def connect(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """
        Start connecting to a peripheral.

        The returned future resolves to CONNECTED or FAILED, or to DISCONNECTED
        if a disconnect abandons the attempt. While an attempt is in flight the
        same future is returned again and the adapter is not called a second time.

        Raises:
            UnknownPeripheral: If the peripheral was never discovered.
            AdapterUnavailable: If the radio is off.
            OperationInProgress: If the peripheral is still disconnecting.
        """
        conn = self.connection(peripheral_id)
        with conn.lock:
            state = conn.state
            if state == ConnectionState.CONNECTING and conn.connect_future is not None:
                logger.debug("Connect to %s already in progress", conn.peripheral_id)
                return conn.connect_future
            if state == ConnectionState.CONNECTED:
                return resolved_future(ConnectionState.CONNECTED)
            if state == ConnectionState.DISCONNECTING:
                raise OperationInProgress(
                    ERROR_OPERATION_IN_PROGRESS.format("disconnect", "link", conn.peripheral_id),
                    conn.peripheral_id,
                )
            return self._begin_connect(conn)

    def retry(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """
        Reconnect after a failure or disconnect, delayed by the peripheral's backoff policy.

        Raises:
            RetryLimitExceeded: If the backoff policy has no attempts left.
        """
        conn = self.connection(peripheral_id)
        with conn.lock:
            state = conn.state
            if state == ConnectionState.CONNECTING and conn.connect_future is not None:
                return conn.connect_future
            if state == ConnectionState.CONNECTED:
                return resolved_future(ConnectionState.CONNECTED)
            if conn.retry_future is not None and not conn.retry_future.done():
                return conn.retry_future
            if not conn.state_manager.can_connect:
                raise OperationInProgress(
                    ERROR_OPERATION_IN_PROGRESS.format("disconnect", "link", conn.peripheral_id),
                    conn.peripheral_id,
                )
            self._require_available(conn.peripheral_id)
            if conn.policy.exhausted:
                raise RetryLimitExceeded(
                    ERROR_RETRY_LIMIT.format(conn.peripheral_id, conn.policy.attempts),
                    conn.peripheral_id,
                )
            delay = conn.policy.take()
            if delay <= 0:
                return self._begin_connect(conn)
            future: "Future[ConnectionState]" = Future()
            logger.info(
                "Retrying connection to %s in %.2fs (attempt %d)",
                conn.peripheral_id,
                delay,
                conn.policy.attempts,
            )
            timer = Timer(delay, lambda: self._post(lambda: self._fire_retry(conn, future)))
            timer.daemon = True
            timer.name = f"BLERetry-{conn.peripheral_id}"
            conn.retry_future = future
            conn.retry_timer = timer
            timer.start()
            return future

    def disconnect(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """
        Close the link, or abandon a connection attempt. Always accepted.

        The future resolves to DISCONNECTED once the adapter confirms (or reports
        an error, or the disconnect timeout passes).
        """
        conn = self.connection(peripheral_id)
        with conn.lock:
            conn.cancel_retry()
            state = conn.state
            if state == ConnectionState.DISCONNECTED:
                return resolved_future(ConnectionState.DISCONNECTED)
            if state == ConnectionState.DISCONNECTING and conn.disconnect_future is not None:
                return conn.disconnect_future
            if state in (ConnectionState.DISCOVERED, ConnectionState.FAILED):
                self._transition(conn, ConnectionState.DISCONNECTED)
                return resolved_future(ConnectionState.DISCONNECTED)
            return self._begin_disconnect(conn)

    def toggle(self, peripheral_id: PeripheralId) -> "Future[ConnectionState]":
        """Disconnect a connected (or connecting) peripheral, otherwise connect it."""
        conn = self.connection(peripheral_id)
        with conn.lock:
            if conn.state in (
                ConnectionState.CONNECTED,
                ConnectionState.CONNECTING,
                ConnectionState.DISCONNECTING,
            ):
                return self.disconnect(peripheral_id)
            return self.connect(peripheral_id)

    # -- adapter callbacks --------------------------------------------------

    def handle_link_lost(
        self, peripheral_id: PeripheralId, reason: Optional[BaseException] = None
    ) -> None:
        """React to a link the adapter reports as dropped."""
        conn = self.find(peripheral_id)
        if conn is None:
            logger.debug("Ignoring link loss for untracked peripheral %s", peripheral_id)
            return
        with conn.lock:
            state = conn.state
            if state == ConnectionState.CONNECTED:
                self._lose_link(conn)
            elif state == ConnectionState.CONNECTING:
                conn.cancel_timer()
                self._fail_attempt(
                    conn,
                    ConnectFailed(
                        ERROR_CONNECT_FAILED.format(conn.peripheral_id, reason or "link dropped"),
                        conn.peripheral_id,
                        adapter_reason=reason,
                    ),
                )
            elif state == ConnectionState.DISCONNECTING:
                # The link went down on its own before the adapter confirmed our request
                conn.attempt += 1
                self._finish_disconnect(conn)
            else:
                logger.debug(
                    "Ignoring link loss for %s in state %s", conn.peripheral_id, state.value
                )

    def handle_power_off(self) -> None:
        """Tear down every live connection after the radio went away."""
        for conn in self.connections():
            with conn.lock:
                conn.cancel_retry()
                state = conn.state
                if state == ConnectionState.CONNECTED:
                    self._lose_link(conn)
                elif state == ConnectionState.CONNECTING:
                    conn.cancel_timer()
                    self._fail_attempt(
                        conn, AdapterUnavailable(ERROR_ADAPTER_UNAVAILABLE, conn.peripheral_id)
                    )

    def close_all(self) -> List["Future[ConnectionState]"]:
        """Disconnect every live peripheral and stop all timers. Used at engine shutdown."""
        futures = []
        for conn in self.connections():
            with conn.lock:
                conn.cancel_retry()
                if conn.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                    futures.append(self._begin_disconnect(conn))
                elif conn.state == ConnectionState.DISCONNECTING and conn.disconnect_future:
                    futures.append(conn.disconnect_future)
        return futures

    def cancel_timers(self) -> None:
        for conn in self.connections():
            with conn.lock:
                conn.cancel_timer()
                conn.cancel_retry()

    # -- internals ----------------------------------------------------------

    def _require_available(self, peripheral_id: PeripheralId) -> None:
        if not self._is_available():
            raise AdapterUnavailable(ERROR_ADAPTER_UNAVAILABLE, peripheral_id)

    def _transition(
        self,
        conn: PeripheralConnection,
        new_state: ConnectionState,
        error: Optional[BLEError] = None,
    ) -> bool:
        old_state = conn.state
        if not conn.state_manager.transition_to(new_state):
            return False
        if old_state == ConnectionState.CONNECTED:
            conn.session.close()
        self._registry.set_state(conn.peripheral_id, new_state, error)
        self._bus.publish(
            StateChanged(
                peripheral_id=conn.peripheral_id,
                old_state=old_state,
                new_state=new_state,
                error=error,
            )
        )
        return True

    def _begin_connect(self, conn: PeripheralConnection) -> "Future[ConnectionState]":
        self._require_available(conn.peripheral_id)
        conn.attempt += 1
        token = conn.attempt
        self._transition(conn, ConnectionState.CONNECTING)
        future: "Future[ConnectionState]" = Future()
        conn.connect_future = future
        logger.info("Connecting to %s", conn.peripheral_id)
        adapter_future = self._adapter.connect(conn.peripheral_id, self.connect_timeout)
        adapter_future.add_done_callback(
            lambda f: self._post(lambda: self._on_connect_done(conn, token, f))
        )
        conn.start_timer(
            self.connect_timeout,
            lambda: self._post(lambda: self._on_connect_timeout(conn, token)),
        )
        return future

    def _on_connect_done(
        self, conn: PeripheralConnection, token: int, future: "Future[Any]"
    ) -> None:
        with conn.lock:
            if token != conn.attempt or conn.state != ConnectionState.CONNECTING:
                logger.debug("Discarding late connect completion for %s", conn.peripheral_id)
                return
            conn.cancel_timer()
            error = BLEErrorHandler.future_error(future)
            if error is not None:
                if not isinstance(error, (AdapterUnavailable, ConnectFailed)):
                    error = ConnectFailed(
                        ERROR_CONNECT_FAILED.format(conn.peripheral_id, error),
                        conn.peripheral_id,
                        adapter_reason=error,
                    )
                logger.warning("%s", error)
                self._fail_attempt(conn, error)
                return
            self._transition(conn, ConnectionState.CONNECTED)
            conn.policy.reset()
            logger.info("Connected to %s", conn.peripheral_id)
            settle_future(conn.connect_future, ConnectionState.CONNECTED)
            conn.session.open()

    def _on_connect_timeout(self, conn: PeripheralConnection, token: int) -> None:
        with conn.lock:
            if token != conn.attempt or conn.state != ConnectionState.CONNECTING:
                return
            conn.timer = None
            error = ConnectTimeout(
                ERROR_CONNECT_TIMEOUT.format(conn.peripheral_id, self.connect_timeout),
                conn.peripheral_id,
            )
            logger.warning("%s", error)
            self._fail_attempt(conn, error)
            # The adapter may still finish the original attempt; that completion is discarded
            self._adapter.disconnect(conn.peripheral_id).add_done_callback(
                lambda f: self._log_cancel_result(conn.peripheral_id, f)
            )

    @staticmethod
    def _log_cancel_result(peripheral_id: PeripheralId, future: "Future[Any]") -> None:
        error = BLEErrorHandler.future_error(future)
        if error is not None:
            logger.debug("Cancelling connect to %s reported: %s", peripheral_id, error)

    def _fail_attempt(self, conn: PeripheralConnection, error: BLEError) -> None:
        self._transition(conn, ConnectionState.FAILED, error)
        settle_future(conn.connect_future, ConnectionState.FAILED)
        conn.connect_future = None

    def _begin_disconnect(self, conn: PeripheralConnection) -> "Future[ConnectionState]":
        conn.attempt += 1
        token = conn.attempt
        conn.cancel_timer()
        self._transition(conn, ConnectionState.DISCONNECTING)
        future: "Future[ConnectionState]" = Future()
        conn.disconnect_future = future
        logger.info("Disconnecting from %s", conn.peripheral_id)
        adapter_future = self._adapter.disconnect(conn.peripheral_id)
        adapter_future.add_done_callback(
            lambda f: self._post(lambda: self._on_disconnect_done(conn, token, f))
        )
        conn.start_timer(
            self.disconnect_timeout,
            lambda: self._post(lambda: self._on_disconnect_timeout(conn, token)),
        )
        return future

    def _on_disconnect_done(
        self, conn: PeripheralConnection, token: int, future: "Future[Any]"
    ) -> None:
        with conn.lock:
            if token != conn.attempt or conn.state != ConnectionState.DISCONNECTING:
                logger.debug("Discarding late disconnect completion for %s", conn.peripheral_id)
                return
            error = BLEErrorHandler.future_error(future)
            if error is not None:
                logger.warning(
                    "Adapter reported an error disconnecting %s: %s", conn.peripheral_id, error
                )
            self._finish_disconnect(conn)

    def _on_disconnect_timeout(self, conn: PeripheralConnection, token: int) -> None:
        with conn.lock:
            if token != conn.attempt or conn.state != ConnectionState.DISCONNECTING:
                return
            conn.timer = None
            logger.warning(
                "%s", ERROR_TIMEOUT.format(f"Disconnect of {conn.peripheral_id}", self.disconnect_timeout)
            )
            self._finish_disconnect(conn)

    def _finish_disconnect(
        self, conn: PeripheralConnection, error: Optional[BLEError] = None
    ) -> None:
        conn.cancel_timer()
        self._transition(conn, ConnectionState.DISCONNECTED, error)
        settle_future(conn.disconnect_future, ConnectionState.DISCONNECTED)
        # An attempt abandoned by this disconnect resolves here
        settle_future(conn.connect_future, ConnectionState.DISCONNECTED)
        conn.disconnect_future = None
        conn.connect_future = None
        logger.info("Disconnected from %s", conn.peripheral_id)

    def _lose_link(self, conn: PeripheralConnection) -> None:
        error = LinkLost(ERROR_LINK_LOST.format(conn.peripheral_id), conn.peripheral_id)
        logger.warning("%s", error)
        conn.attempt += 1
        conn.cancel_timer()
        self._transition(conn, ConnectionState.DISCONNECTING, error)
        self._finish_disconnect(conn, error)

    def _fire_retry(self, conn: PeripheralConnection, future: "Future[ConnectionState]") -> None:
        with conn.lock:
            if conn.retry_future is not future:
                return
            conn.retry_future = None
            conn.retry_timer = None
            if future.done():
                return
            state = conn.state
            if state == ConnectionState.CONNECTED:
                settle_future(future, state)
            elif state == ConnectionState.CONNECTING and conn.connect_future is not None:
                _chain(conn.connect_future, future)
            elif not conn.state_manager.can_connect or not self._is_available():
                logger.warning(
                    "Scheduled retry for %s skipped in state %s", conn.peripheral_id, state.value
                )
                settle_future(future, state)
            else:
                _chain(self._begin_connect(conn), future)


__all__ = ["ConnectionStateMachine", "PeripheralConnection"]
