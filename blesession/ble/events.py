"""Engine events and their delivery through pypubsub."""

import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Tuple

from pubsub import pub

import blesession
from blesession.ble.constants import (
    EVENT_ROOT_TOPIC,
    TOPIC_ADAPTER_POWERED_OFF,
    TOPIC_ADAPTER_POWERED_ON,
    TOPIC_CHARACTERISTIC_UPDATED,
    TOPIC_DEVICE_DISCOVERED,
    TOPIC_OPERATION_FAILED,
    TOPIC_SERVICES_DISCOVERED,
    TOPIC_STATE_CHANGED,
    logger,
)
from blesession.ble.errors import BLEError, BLEErrorHandler
from blesession.ble.models import OperationKind, PeripheralRecord, ValueSource
from blesession.ble.state import ConnectionState


@dataclass(frozen=True)
class Event:
    """Base class of everything the engine publishes."""

    TOPIC: ClassVar[str] = EVENT_ROOT_TOPIC

    peripheral_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time, compare=False, kw_only=True)


@dataclass(frozen=True)
class DeviceDiscovered(Event):
    TOPIC: ClassVar[str] = TOPIC_DEVICE_DISCOVERED

    record: Optional[PeripheralRecord] = None


@dataclass(frozen=True)
class StateChanged(Event):
    TOPIC: ClassVar[str] = TOPIC_STATE_CHANGED

    old_state: Optional[ConnectionState] = None
    new_state: Optional[ConnectionState] = None
    # Set for FAILED transitions and for the two link-loss transitions
    error: Optional[BLEError] = None


@dataclass(frozen=True)
class ServicesDiscovered(Event):
    TOPIC: ClassVar[str] = TOPIC_SERVICES_DISCOVERED

    catalog: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class CharacteristicUpdated(Event):
    TOPIC: ClassVar[str] = TOPIC_CHARACTERISTIC_UPDATED

    characteristic: str = ""
    value: bytes = b""
    source: ValueSource = ValueSource.READ


@dataclass(frozen=True)
class OperationFailed(Event):
    TOPIC: ClassVar[str] = TOPIC_OPERATION_FAILED

    characteristic: Optional[str] = None
    kind: OperationKind = OperationKind.READ
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class AdapterPoweredOff(Event):
    TOPIC: ClassVar[str] = TOPIC_ADAPTER_POWERED_OFF


@dataclass(frozen=True)
class AdapterPoweredOn(Event):
    TOPIC: ClassVar[str] = TOPIC_ADAPTER_POWERED_ON


EVENT_TOPICS: Tuple[str, ...] = (
    TOPIC_DEVICE_DISCOVERED,
    TOPIC_STATE_CHANGED,
    TOPIC_SERVICES_DISCOVERED,
    TOPIC_CHARACTERISTIC_UPDATED,
    TOPIC_OPERATION_FAILED,
    TOPIC_ADAPTER_POWERED_OFF,
    TOPIC_ADAPTER_POWERED_ON,
)


def _event_listener_spec(event, engine):
    """Message data carried by every blesession topic."""


def _ensure_topics() -> None:
    """Create the topic tree up front so parent and child topics share one message spec."""
    manager = pub.getDefaultTopicMgr()
    created = set()
    for topic in (EVENT_ROOT_TOPIC,) + EVENT_TOPICS:
        parts = topic.split(".")
        for depth in range(1, len(parts) + 1):
            name = ".".join(parts[:depth])
            if name not in created:
                manager.getOrCreateTopic(name, _event_listener_spec)
                created.add(name)


class _EngineListener:
    """
    pypubsub listener that forwards one engine's events to a plain handler.

    `since` is the bus sequence number current when the handler subscribed;
    events published at or before it are skipped even if still queued.
    """

    def __init__(self, handler: Callable[[Event], Any], bus: "EventBus", topic: str, since: int):
        self.handler = handler
        self.bus = bus
        self.topic = topic
        self.since = since

    def __call__(self, event, engine):
        if engine is not self.bus._engine or self.bus._delivering <= self.since:
            return
        BLEErrorHandler.safe_execute(
            lambda: self.handler(event),
            error_msg=f"Error in event handler {self.handler!r}",
        )


class EventBus:
    """
    Ordered, replay-free event stream for one engine.

    Events are handed to a single publishing worker, so subscribers see them in
    emission order. pypubsub holds listeners weakly; the bus keeps a strong
    reference to each wrapper it registers until `unsubscribe()`.
    """

    def __init__(self, engine: Any, executor=None):
        """
        Parameters:
            engine: The object passed as `engine` with every message.
            executor: Object with `queueWork(callable)` and `join(timeout)`; defaults to `blesession.publishingThread`.
        """
        _ensure_topics()
        self._engine = engine
        self._executor = executor or blesession.publishingThread
        self._listeners: Dict[Callable[[Event], Any], _EngineListener] = {}
        self._lock = RLock()
        self._closed = False
        # Last sequence number issued, and the one the publishing worker is delivering
        self._sequence = 0
        self._delivering = 0

    def publish(self, event: Event) -> None:
        """Queue `event` for delivery; returns immediately."""
        if self._closed:
            logger.debug("Dropping %s published after the event bus closed", type(event).__name__)
            return
        with self._lock:
            self._sequence += 1
            sequence = self._sequence
            self._executor.queueWork(lambda: self._deliver(sequence, event))

    def subscribe(
        self, handler: Callable[[Event], Any], topic: str = EVENT_ROOT_TOPIC
    ) -> Callable[[Event], Any]:
        """
        Deliver events published under `topic` (and its subtopics) to `handler(event)`.

        Subscribing an already-subscribed handler replaces its previous topic,
        so a handler never receives the same event twice.

        Returns:
            The handler, for use with `unsubscribe()`.
        """
        if topic != EVENT_ROOT_TOPIC and topic not in EVENT_TOPICS and not any(
            name.startswith(topic + ".") for name in EVENT_TOPICS
        ):
            raise ValueError(f"Unknown event topic {topic!r}")
        with self._lock:
            self._drop(handler)
            listener = _EngineListener(handler, self, topic, self._sequence)
            pub.subscribe(listener, topic)
            self._listeners[handler] = listener
        return handler

    def unsubscribe(self, handler: Callable[[Event], Any]) -> bool:
        """Stop delivering events to `handler`. Returns False if it was not subscribed."""
        with self._lock:
            return self._drop(handler)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been delivered."""
        return self._executor.join(timeout)

    def close(self) -> None:
        """Unsubscribe every handler and drop events published afterwards."""
        with self._lock:
            for handler in list(self._listeners):
                self._drop(handler)
            self._closed = True

    def _deliver(self, sequence: int, event: Event) -> None:
        self._delivering = sequence
        pub.sendMessage(event.TOPIC, event=event, engine=self._engine)

    def _drop(self, handler: Callable[[Event], Any]) -> bool:
        listener = self._listeners.pop(handler, None)
        if listener is None:
            return False
        BLEErrorHandler.safe_cleanup(
            lambda: pub.unsubscribe(listener, listener.topic), "event unsubscribe"
        )
        return True


__all__ = [
    "AdapterPoweredOff",
    "AdapterPoweredOn",
    "CharacteristicUpdated",
    "DeviceDiscovered",
    "EVENT_TOPICS",
    "Event",
    "EventBus",
    "OperationFailed",
    "ServicesDiscovered",
    "StateChanged",
]
