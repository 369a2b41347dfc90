"""BLE central-role session engine."""

from blesession.ble.constants import BLEConfig, EVENT_ROOT_TOPIC, logger
from blesession.ble.state import *
from blesession.ble.errors import *
from blesession.ble.models import *
from blesession.ble.policies import *
from blesession.ble.registry import *
from blesession.ble.events import *
from blesession.ble.notifications import *
from blesession.ble.adapter import *
from blesession.ble.gatt import *
from blesession.ble.connection import *
from blesession.ble.engine import *
from blesession.ble.bleak_adapter import *
from blesession.ble.utils import _sleep, format_uuid, sanitize_address

__all__ = [
    # Core classes
    "BLEConfig",
    "BLECentralEngine",
    "BleakRadioAdapter",
    "RadioAdapter",
    "AdapterListener",
    "DeviceRegistry",
    "ConnectionStateMachine",
    "PeripheralConnection",
    "PeripheralStateManager",
    "ConnectionState",
    "GattSession",
    "NotificationManager",
    "EventBus",
    "BackoffPolicy",
    "RetryPolicy",
    "BLEErrorHandler",
    # Models
    "Advertisement",
    "CharacteristicInfo",
    "OperationKind",
    "PendingOperation",
    "PeripheralId",
    "PeripheralRecord",
    "ValueSource",
    # Events
    "Event",
    "DeviceDiscovered",
    "StateChanged",
    "ServicesDiscovered",
    "CharacteristicUpdated",
    "OperationFailed",
    "AdapterPoweredOff",
    "AdapterPoweredOn",
    "EVENT_TOPICS",
    "EVENT_ROOT_TOPIC",
    # Errors
    "BLEError",
    "AdapterUnavailable",
    "ConnectTimeout",
    "ConnectFailed",
    "LinkLost",
    "OperationInProgress",
    "PayloadTooLarge",
    "MalformedPayload",
    "WriteNotPermitted",
    "UnknownPeripheral",
    "UnknownCharacteristic",
    "NotConnected",
    "RetryLimitExceeded",
    "GattOperationError",
    # Constants/helpers
    "VALID_TRANSITIONS",
    "format_uuid",
    "is_unavailable_error",
    "sanitize_address",
    "_sleep",
    "logger",
]
