"""BLE connection state management."""

from enum import Enum
from threading import RLock
from typing import Dict, Set

from blesession.ble.constants import logger


class ConnectionState(Enum):
    """Enum for the connection lifecycle of a single peripheral."""

    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


# Define valid transitions based on connection lifecycle
VALID_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCOVERED: {
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTING,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.DISCONNECTING,
    },
    ConnectionState.DISCONNECTING: {
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.DISCONNECTED: {
        ConnectionState.CONNECTING,
    },
    ConnectionState.FAILED: {
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    },
}


class PeripheralStateManager:
    """Thread-safe state machine for one peripheral's connection.

    Only the connection state machine mutates it; the error behind a failing
    transition is kept on the registry record instead.
    """

    def __init__(self, peripheral_id: str):
        """Initialize the state manager in the DISCOVERED state."""
        self.peripheral_id = peripheral_id
        self._state_lock = RLock()
        self._state = ConnectionState.DISCOVERED

    @property
    def lock(self) -> RLock:
        """Expose the reentrant lock controlling state transitions."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        with self._state_lock:
            return self._state

    @property
    def can_connect(self) -> bool:
        """Check if a new connection attempt can be started."""
        return ConnectionState.CONNECTING in VALID_TRANSITIONS[self.state]

    def transition_to(self, new_state: ConnectionState) -> bool:
        """Thread-safe state transition with validation.

        Args:
        ----
            new_state: Target state to transition to

        Returns:
        -------
            True if transition was valid and applied, False otherwise

        """
        with self._state_lock:
            if not self._is_valid_transition(self._state, new_state):
                logger.warning(
                    "Invalid state transition for %s: %s → %s",
                    self.peripheral_id,
                    self._state.value,
                    new_state.value,
                )
                return False
            old_state = self._state
            self._state = new_state
            logger.debug(
                "State transition for %s: %s → %s",
                self.peripheral_id,
                old_state.value,
                new_state.value,
            )
            return True

    @staticmethod
    def _is_valid_transition(
        from_state: ConnectionState, to_state: ConnectionState
    ) -> bool:
        return to_state in VALID_TRANSITIONS.get(from_state, set())


__all__ = ["ConnectionState", "PeripheralStateManager", "VALID_TRANSITIONS"]
