"""Tests for event delivery through pypubsub."""

import logging
import threading

import pytest
from pubsub import pub

import blesession
from blesession.ble import (
    BLECentralEngine,
    CharacteristicUpdated,
    ConnectionState,
    DeviceDiscovered,
    EventBus,
    OperationFailed,
    ServicesDiscovered,
    StateChanged,
)
from blesession.ble.constants import (
    TOPIC_DEVICE_DISCOVERED,
    TOPIC_STATE_CHANGED,
)

from test_ble_fixtures import (
    ADDRESS,
    BATTERY_LEVEL,
    OTHER_ADDRESS,
    EventRecorder,
    FakeRadioAdapter,
    connect_peripheral,
)


class ImmediateExecutor:
    """Runs queued work on the calling thread."""

    def queueWork(self, runnable):
        runnable()

    def join(self, timeout=None):
        return True


class HeldExecutor:
    """Keeps queued work until `release()` runs it, like a busy publishing worker."""

    def __init__(self):
        self.pending = []

    def queueWork(self, runnable):
        self.pending.append(runnable)

    def join(self, timeout=None):
        return not self.pending

    def release(self):
        while self.pending:
            self.pending.pop(0)()


class TestEventBus:
    def test_publish_reaches_subscriber(self):
        owner = object()
        bus = EventBus(owner, ImmediateExecutor())
        recorder = EventRecorder()
        bus.subscribe(recorder)

        event = StateChanged(
            peripheral_id=ADDRESS,
            old_state=ConnectionState.DISCOVERED,
            new_state=ConnectionState.CONNECTING,
        )
        bus.publish(event)

        assert recorder.events == [event]
        bus.close()

    def test_topic_filtering(self):
        bus = EventBus(object(), ImmediateExecutor())
        states = EventRecorder()
        gatt = EventRecorder()
        bus.subscribe(states, TOPIC_STATE_CHANGED)
        bus.subscribe(gatt, "blesession.gatt")

        bus.publish(StateChanged(peripheral_id=ADDRESS))
        bus.publish(DeviceDiscovered(peripheral_id=ADDRESS))
        bus.publish(ServicesDiscovered(peripheral_id=ADDRESS))
        bus.publish(CharacteristicUpdated(peripheral_id=ADDRESS, characteristic=BATTERY_LEVEL))
        bus.publish(OperationFailed(peripheral_id=ADDRESS))

        assert [type(e) for e in states.events] == [StateChanged]
        assert [type(e) for e in gatt.events] == [
            ServicesDiscovered,
            CharacteristicUpdated,
            OperationFailed,
        ]
        bus.close()

    def test_unknown_topic_rejected(self):
        bus = EventBus(object(), ImmediateExecutor())
        with pytest.raises(ValueError):
            bus.subscribe(EventRecorder(), "blesession.nothing")
        bus.close()

    def test_unsubscribe(self):
        bus = EventBus(object(), ImmediateExecutor())
        recorder = EventRecorder()
        bus.subscribe(recorder)

        assert bus.unsubscribe(recorder) is True
        assert bus.unsubscribe(recorder) is False
        bus.publish(StateChanged(peripheral_id=ADDRESS))
        assert recorder.events == []
        bus.close()

    def test_resubscribe_replaces_topic(self):
        bus = EventBus(object(), ImmediateExecutor())
        recorder = EventRecorder()
        bus.subscribe(recorder)
        bus.subscribe(recorder, TOPIC_DEVICE_DISCOVERED)

        bus.publish(StateChanged(peripheral_id=ADDRESS))
        bus.publish(DeviceDiscovered(peripheral_id=ADDRESS))

        assert [type(e) for e in recorder.events] == [DeviceDiscovered]
        assert bus.unsubscribe(recorder) is True
        bus.close()

    def test_failing_handler_does_not_block_others(self, caplog):
        bus = EventBus(object(), ImmediateExecutor())
        recorder = EventRecorder()

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(broken)
        bus.subscribe(recorder)

        with caplog.at_level(logging.ERROR, logger="blesession.ble"):
            bus.publish(StateChanged(peripheral_id=ADDRESS))
            bus.publish(StateChanged(peripheral_id=OTHER_ADDRESS))

        assert len(recorder.events) == 2
        assert "Error in event handler" in caplog.text
        bus.close()

    def test_buses_of_different_owners_are_isolated(self):
        first = EventBus(object(), ImmediateExecutor())
        second = EventBus(object(), ImmediateExecutor())
        first_events = EventRecorder()
        second_events = EventRecorder()
        first.subscribe(first_events)
        second.subscribe(second_events)

        first.publish(StateChanged(peripheral_id=ADDRESS))

        assert len(first_events.events) == 1
        assert second_events.events == []
        first.close()
        second.close()

    def test_publish_after_close_is_dropped(self):
        bus = EventBus(object(), ImmediateExecutor())
        recorder = EventRecorder()
        bus.subscribe(recorder)
        bus.close()

        bus.publish(StateChanged(peripheral_id=ADDRESS))

        assert recorder.events == []
        assert bus.unsubscribe(recorder) is False

    def test_queued_events_skip_handlers_subscribed_after_them(self):
        executor = HeldExecutor()
        bus = EventBus(object(), executor)
        early = EventRecorder()
        bus.subscribe(early)

        queued = StateChanged(peripheral_id=ADDRESS, new_state=ConnectionState.CONNECTING)
        bus.publish(queued)
        late = EventRecorder()
        bus.subscribe(late)
        following = StateChanged(peripheral_id=ADDRESS, new_state=ConnectionState.CONNECTED)
        bus.publish(following)
        executor.release()

        assert early.events == [queued, following]
        assert late.events == [following]
        bus.close()


class TestEngineEvents:
    def test_device_discovered_once_per_peripheral(self, engine, adapter, recorder):
        adapter.advertise(ADDRESS, rssi=-80)
        adapter.advertise(ADDRESS, rssi=-50)
        adapter.advertise(OTHER_ADDRESS)
        engine.flush()

        discovered = recorder.of_type(DeviceDiscovered)
        assert [e.peripheral_id for e in discovered] == [ADDRESS, OTHER_ADDRESS]
        assert discovered[0].record.rssi == -80
        assert engine.get_device(ADDRESS).rssi == -50

    def test_no_replay_for_late_subscribers(self, engine, adapter):
        adapter.advertise(ADDRESS)
        engine.flush()
        late = EventRecorder()
        engine.subscribe(late)

        adapter.advertise(ADDRESS)
        engine.flush()

        assert late.events == []
        assert [record.id for record in engine.list_devices()] == [ADDRESS]

    def test_late_subscriber_skips_events_still_queued(self, engine, adapter, recorder):
        adapter.advertise(ADDRESS)
        engine.flush()
        gate = threading.Event()
        blesession.publishingThread.queueWork(lambda: gate.wait(2.0))

        future = engine.connect(ADDRESS)
        late = EventRecorder()
        engine.subscribe(late)
        gate.set()
        engine.flush()

        assert late.events == []
        assert recorder.states(ADDRESS) == [ConnectionState.CONNECTING]

        adapter.last("connect").set_result(None)
        engine.flush()
        assert late.states(ADDRESS) == [ConnectionState.CONNECTED]
        assert future.result(1.0) == ConnectionState.CONNECTED

    def test_events_for_a_peripheral_arrive_in_order(self, engine, adapter, recorder):
        connect_peripheral(engine, adapter)
        engine.disconnect(ADDRESS).result(1.0)
        engine.flush()

        kinds = [type(e).__name__ for e in recorder.events]
        assert kinds == [
            "DeviceDiscovered",
            "StateChanged",
            "StateChanged",
            "ServicesDiscovered",
            "StateChanged",
            "StateChanged",
        ]
        assert recorder.states(ADDRESS) == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTING,
            ConnectionState.DISCONNECTED,
        ]

    def test_engines_do_not_see_each_others_events(self, engine, recorder):
        other_adapter = FakeRadioAdapter()
        other_recorder = EventRecorder()

        with BLECentralEngine(other_adapter) as other:
            other.subscribe(other_recorder)
            other_adapter.advertise(OTHER_ADDRESS)
            other.flush()
            engine.flush()

        assert [e.peripheral_id for e in other_recorder.of_type(DeviceDiscovered)] == [OTHER_ADDRESS]
        assert recorder.of_type(DeviceDiscovered) == []
        assert other_adapter.closed

    def test_raw_pubsub_listener(self, engine, adapter):
        received = []

        def listener(event, engine):
            received.append((event, engine))

        pub.subscribe(listener, TOPIC_DEVICE_DISCOVERED)
        try:
            adapter.advertise(ADDRESS)
            engine.flush()
        finally:
            pub.unsubscribe(listener, TOPIC_DEVICE_DISCOVERED)

        assert len(received) == 1
        event, source = received[0]
        assert isinstance(event, DeviceDiscovered)
        assert source is engine

    def test_unsubscribed_handler_stops_receiving(self, engine, adapter, recorder):
        assert engine.unsubscribe(recorder) is True
        adapter.advertise(ADDRESS)
        engine.flush()
        assert recorder.events == []
