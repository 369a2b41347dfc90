"""BLE constants and configuration."""

import logging
from typing import Optional

logger = logging.getLogger("blesession.ble")

# Event topic tree published through pypubsub
EVENT_ROOT_TOPIC = "blesession"
TOPIC_DEVICE_DISCOVERED = "blesession.device.discovered"
TOPIC_STATE_CHANGED = "blesession.state.changed"
TOPIC_SERVICES_DISCOVERED = "blesession.gatt.services"
TOPIC_CHARACTERISTIC_UPDATED = "blesession.gatt.value"
TOPIC_OPERATION_FAILED = "blesession.gatt.failed"
TOPIC_ADAPTER_POWERED_OFF = "blesession.adapter.off"
TOPIC_ADAPTER_POWERED_ON = "blesession.adapter.on"


class BLEConfig:
    """Configuration constants for BLE operations."""

    CONNECT_TIMEOUT = 10.0
    DISCONNECT_TIMEOUT = 5.0
    SCAN_DURATION = 5.0
    # ATT caps an attribute value at 512 bytes
    DEFAULT_MAX_WRITE_SIZE = 512
    RETRY_INITIAL_DELAY = 1.0
    RETRY_MAX_DELAY = 30.0
    RETRY_BACKOFF = 2.0
    RETRY_JITTER_RATIO = 0.15
    RETRY_MAX_ATTEMPTS: Optional[int] = 5
    FLUSH_TIMEOUT = 5.0
    EVENT_THREAD_JOIN_TIMEOUT = 2.0
    POWER_POLL_INTERVAL = 3.0


# Error message constants
ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_UNKNOWN_PERIPHERAL = "No peripheral with identifier '{0}' has been discovered"
ERROR_NOT_CONNECTED = "Peripheral {0} is not connected (state: {1})"
ERROR_UNKNOWN_CHARACTERISTIC = "Peripheral {0} has no discovered characteristic {1}"
ERROR_OPERATION_IN_PROGRESS = "A {0} of {1} on {2} is already in progress"
ERROR_PAYLOAD_TOO_LARGE = (
    "Payload of {0} bytes exceeds the {1}-byte maximum of characteristic {2}"
)
ERROR_MALFORMED_PAYLOAD = "Payload must be bytes-like, got {0}"
ERROR_WRITE_NOT_PERMITTED = "Characteristic {0} on {1} does not accept writes"
ERROR_ADAPTER_UNAVAILABLE = "Bluetooth adapter is powered off or unavailable"
ERROR_CONNECT_TIMEOUT = "Connection to {0} timed out after {1:.1f} seconds"
ERROR_CONNECT_FAILED = "Connection to {0} failed: {1}"
ERROR_LINK_LOST = "Link to {0} was lost"
ERROR_RETRY_LIMIT = "Retry limit reached for {0} after {1} attempts"
ERROR_ENGINE_CLOSED = "The session engine has been closed"

__all__ = [
    "BLEConfig",
    "EVENT_ROOT_TOPIC",
    "TOPIC_ADAPTER_POWERED_OFF",
    "TOPIC_ADAPTER_POWERED_ON",
    "TOPIC_CHARACTERISTIC_UPDATED",
    "TOPIC_DEVICE_DISCOVERED",
    "TOPIC_OPERATION_FAILED",
    "TOPIC_SERVICES_DISCOVERED",
    "TOPIC_STATE_CHANGED",
    "ERROR_ADAPTER_UNAVAILABLE",
    "ERROR_CONNECT_FAILED",
    "ERROR_CONNECT_TIMEOUT",
    "ERROR_ENGINE_CLOSED",
    "ERROR_LINK_LOST",
    "ERROR_MALFORMED_PAYLOAD",
    "ERROR_NOT_CONNECTED",
    "ERROR_OPERATION_IN_PROGRESS",
    "ERROR_PAYLOAD_TOO_LARGE",
    "ERROR_RETRY_LIMIT",
    "ERROR_TIMEOUT",
    "ERROR_UNKNOWN_CHARACTERISTIC",
    "ERROR_UNKNOWN_PERIPHERAL",
    "ERROR_WRITE_NOT_PERMITTED",
    "logger",
]
