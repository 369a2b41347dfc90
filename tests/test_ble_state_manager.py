"""Tests for PeripheralStateManager state machine functionality."""

import threading
import time

import pytest

from blesession.ble import (
    VALID_TRANSITIONS,
    ConnectionState,
    PeripheralStateManager,
)

ADDRESS = "AA:BB:CC:DD:EE:FF"


class TestPeripheralStateManager:
    """Test cases for PeripheralStateManager class."""

    def test_initial_state(self):
        """Test that state manager starts in DISCOVERED state."""
        manager = PeripheralStateManager(ADDRESS)
        assert manager.state == ConnectionState.DISCOVERED
        assert manager.can_connect

    @pytest.mark.parametrize(
        "state, can_connect",
        [
            (ConnectionState.CONNECTING, False),
            (ConnectionState.CONNECTED, False),
            (ConnectionState.DISCONNECTING, False),
            (ConnectionState.DISCONNECTED, True),
            (ConnectionState.FAILED, True),
        ],
    )
    def test_can_connect(self, state, can_connect):
        manager = PeripheralStateManager(ADDRESS)
        manager._state = state
        assert manager.can_connect is can_connect

    def test_full_lifecycle(self):
        """Test the happy path through every lifecycle state."""
        manager = PeripheralStateManager(ADDRESS)

        # DISCOVERED → CONNECTING
        assert manager.transition_to(ConnectionState.CONNECTING)
        # CONNECTING → CONNECTED
        assert manager.transition_to(ConnectionState.CONNECTED)
        # CONNECTED → DISCONNECTING
        assert manager.transition_to(ConnectionState.DISCONNECTING)
        # DISCONNECTING → DISCONNECTED
        assert manager.transition_to(ConnectionState.DISCONNECTED)
        # DISCONNECTED → CONNECTING
        assert manager.transition_to(ConnectionState.CONNECTING)
        assert manager.state == ConnectionState.CONNECTING

    def test_failure_and_retry(self):
        """Test that FAILED allows a new attempt."""
        manager = PeripheralStateManager(ADDRESS)

        assert manager.transition_to(ConnectionState.CONNECTING)
        assert manager.transition_to(ConnectionState.FAILED)
        assert manager.can_connect

        assert manager.transition_to(ConnectionState.CONNECTING)
        assert manager.state == ConnectionState.CONNECTING

    @pytest.mark.parametrize(
        "path",
        [
            [ConnectionState.CONNECTED],
            [ConnectionState.FAILED],
            [ConnectionState.DISCONNECTING],
            [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.CONNECTING],
            [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED],
            [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.FAILED],
        ],
    )
    def test_invalid_transitions(self, path):
        """Test that the last step of each path is rejected and leaves the state unchanged."""
        manager = PeripheralStateManager(ADDRESS)
        for state in path[:-1]:
            assert manager.transition_to(state)
        before = manager.state
        assert not manager.transition_to(path[-1])
        assert manager.state == before

    def test_self_transitions_rejected(self):
        """No state may transition to itself."""
        for state, targets in VALID_TRANSITIONS.items():
            assert state not in targets

    def test_never_connected_disconnect(self):
        """A discovered peripheral can go straight to DISCONNECTED."""
        manager = PeripheralStateManager(ADDRESS)
        assert manager.transition_to(ConnectionState.DISCONNECTED)
        assert manager.state == ConnectionState.DISCONNECTED

    def test_thread_safety(self):
        """Test concurrent state access is thread-safe."""
        manager = PeripheralStateManager(ADDRESS)
        results = []
        errors = []

        def worker(worker_id):
            """
            Repeatedly attempt CONNECTING / FAILED transitions and record each outcome.

            Parameters:
                worker_id (int): Identifier used when recording results and errors.
            """
            try:
                for i in range(100):
                    if i % 2 == 0:
                        success = manager.transition_to(ConnectionState.CONNECTING)
                    else:
                        success = manager.transition_to(ConnectionState.FAILED)
                    results.append((worker_id, i, success, manager.state.value))
                    time.sleep(0.001)  # Small delay to increase contention
            except Exception as e:  # noqa: BLE001 - errors collected for assertion
                errors.append((worker_id, str(e)))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(errors) == 0, f"Errors occurred: {errors}"
        assert manager.state in (ConnectionState.CONNECTING, ConnectionState.FAILED)
        assert len(results) == 500  # 5 workers * 100 iterations each

    def test_state_transition_logging(self, caplog):
        """Test that state transitions are properly logged."""
        manager = PeripheralStateManager(ADDRESS)

        with caplog.at_level("DEBUG", logger="blesession.ble"):
            manager.transition_to(ConnectionState.CONNECTING)
            manager.transition_to(ConnectionState.CONNECTED)

        assert f"State transition for {ADDRESS}: discovered → connecting" in caplog.text
        assert f"State transition for {ADDRESS}: connecting → connected" in caplog.text

    def test_invalid_transition_logging(self, caplog):
        """
        Verify that attempting an invalid state transition emits a warning log.
        """
        manager = PeripheralStateManager(ADDRESS)

        with caplog.at_level("WARNING", logger="blesession.ble"):
            manager.transition_to(ConnectionState.CONNECTED)

        assert f"Invalid state transition for {ADDRESS}: discovered → connected" in caplog.text
