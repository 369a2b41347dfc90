"""Scripted radio adapter and helpers shared by the session engine tests."""

import time
from collections import defaultdict
from concurrent.futures import Future
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from blesession.ble import (
    Advertisement,
    BLECentralEngine,
    CharacteristicInfo,
    ConnectionState,
    RadioAdapter,
    StateChanged,
)

ADDRESS = "AA:BB:CC:DD:EE:01"
OTHER_ADDRESS = "AA:BB:CC:DD:EE:02"
HEART_RATE_SERVICE = "0000180d-0000-1000-8000-00805f9b34fb"
HEART_RATE_MEASUREMENT = "00002a37-0000-1000-8000-00805f9b34fb"
BODY_SENSOR_LOCATION = "00002a38-0000-1000-8000-00805f9b34fb"
BATTERY_SERVICE = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL = "00002a19-0000-1000-8000-00805f9b34fb"
CONTROL_POINT = "00002a39-0000-1000-8000-00805f9b34fb"


def default_characteristics() -> Dict[str, List[CharacteristicInfo]]:
    """A heart-rate style peripheral with a small control point."""
    return {
        HEART_RATE_SERVICE: [
            CharacteristicInfo(
                uuid=HEART_RATE_MEASUREMENT,
                service_uuid=HEART_RATE_SERVICE,
                properties=frozenset({"notify"}),
            ),
            CharacteristicInfo(
                uuid=BODY_SENSOR_LOCATION,
                service_uuid=HEART_RATE_SERVICE,
                properties=frozenset({"read"}),
            ),
            CharacteristicInfo(
                uuid=CONTROL_POINT,
                service_uuid=HEART_RATE_SERVICE,
                properties=frozenset({"write", "write-without-response"}),
                max_write_size=64,
                max_write_without_response_size=20,
            ),
        ],
        BATTERY_SERVICE: [
            CharacteristicInfo(
                uuid=BATTERY_LEVEL,
                service_uuid=BATTERY_SERVICE,
                properties=frozenset({"read", "notify"}),
            ),
        ],
    }


class FakeRadioAdapter(RadioAdapter):
    """
    Scripted RadioAdapter.

    Scan toggles and disconnects complete immediately unless `auto_scan` /
    `auto_disconnect` are turned off; every other request stays pending until
    the test resolves the future found in `futures[name]`.
    """

    def __init__(self, *, auto_scan: bool = True, auto_disconnect: bool = True):
        super().__init__()
        self.auto_scan = auto_scan
        self.auto_disconnect = auto_disconnect
        self.calls: List[Tuple[Any, ...]] = []
        self.futures: Dict[str, List[Future]] = defaultdict(list)
        self.closed = False
        self._lock = Lock()

    def _record(self, name: str, *args, complete: bool = False, value: Any = None) -> Future:
        future: Future = Future()
        with self._lock:
            self.calls.append((name,) + args)
            self.futures[name].append(future)
        if complete:
            future.set_result(value)
        return future

    def count(self, name: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call[0] == name)

    def last(self, name: str) -> Future:
        with self._lock:
            return self.futures[name][-1]

    # RadioAdapter

    def start_scan(self) -> Future:
        return self._record("start_scan", complete=self.auto_scan)

    def stop_scan(self) -> Future:
        return self._record("stop_scan", complete=self.auto_scan)

    def connect(self, peripheral_id, timeout) -> Future:
        return self._record("connect", peripheral_id, timeout)

    def disconnect(self, peripheral_id) -> Future:
        return self._record("disconnect", peripheral_id, complete=self.auto_disconnect)

    def discover_services(self, peripheral_id) -> Future:
        return self._record("discover_services", peripheral_id)

    def discover_characteristics(self, peripheral_id, service) -> Future:
        return self._record("discover_characteristics", peripheral_id, service)

    def read(self, peripheral_id, characteristic) -> Future:
        return self._record("read", peripheral_id, characteristic)

    def write(self, peripheral_id, characteristic, data, ack_required=True) -> Future:
        return self._record("write", peripheral_id, characteristic, data, ack_required)

    def subscribe(self, peripheral_id, characteristic, enabled) -> Future:
        return self._record("subscribe", peripheral_id, characteristic, enabled)

    def close(self) -> None:
        self.closed = True

    # Radio-side stimuli

    def advertise(self, address: str = ADDRESS, name: Optional[str] = "Sensor", rssi: Optional[int] = -60, **kwargs):
        self.listener.on_advertisement(Advertisement(address=address, name=name, rssi=rssi, **kwargs))

    def power(self, powered: bool) -> None:
        self.listener.on_power_state(powered)

    def lose_link(self, peripheral_id: str = ADDRESS, error: Optional[BaseException] = None) -> None:
        self.listener.on_link_lost(peripheral_id, error)

    def notify(self, peripheral_id: str, characteristic: str, value: bytes) -> None:
        self.listener.on_value(peripheral_id, characteristic, value)


class EventRecorder:
    """Event handler that keeps everything it receives, in order."""

    def __init__(self):
        self.events: List[Any] = []
        self._lock = Lock()

    def __call__(self, event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type) -> List[Any]:
        with self._lock:
            return [event for event in self.events if isinstance(event, event_type)]

    def states(self, peripheral_id: Optional[str] = None) -> List[ConnectionState]:
        """New states of every StateChanged event, optionally for one peripheral."""
        return [
            event.new_state
            for event in self.of_type(StateChanged)
            if peripheral_id is None or event.peripheral_id == peripheral_id
        ]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


def discover(engine: BLECentralEngine, adapter: FakeRadioAdapter, catalog: Dict[str, Sequence[CharacteristicInfo]]) -> None:
    """Answer the discovery requests the engine issues after connecting, one service at a time."""
    adapter.last("discover_services").set_result(list(catalog))
    engine.flush()
    for service, characteristics in catalog.items():
        adapter.last("discover_characteristics").set_result(list(characteristics))
        engine.flush()


def connect_peripheral(
    engine: BLECentralEngine,
    adapter: FakeRadioAdapter,
    address: str = ADDRESS,
    catalog: Optional[Dict[str, Iterable[CharacteristicInfo]]] = None,
) -> Future:
    """Advertise, connect and run discovery to completion. Returns the connect future."""
    if engine.get_device(address) is None:
        adapter.advertise(address)
        engine.flush()
    future = engine.connect(address)
    adapter.last("connect").set_result(None)
    engine.flush()
    discover(engine, adapter, default_characteristics() if catalog is None else catalog)
    return future




def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll `predicate` until it returns True or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
