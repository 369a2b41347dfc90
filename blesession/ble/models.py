"""Data models shared by the registry, the GATT session and the radio adapter."""

import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from blesession.ble.errors import BLEError
from blesession.ble.state import ConnectionState

# Platform-stable peripheral identifier (MAC address on Linux/Windows, UUID on macOS)
PeripheralId = str


@dataclass(frozen=True)
class Advertisement:
    """A single advertisement sighting reported by the radio adapter."""

    address: PeripheralId
    name: Optional[str] = None
    rssi: Optional[int] = None
    service_uuids: Tuple[str, ...] = ()
    manufacturer_data: Dict[int, bytes] = field(default_factory=dict)
    seen_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PeripheralRecord:
    """Immutable snapshot of what the engine knows about one peripheral."""

    id: PeripheralId
    name: Optional[str]
    rssi: Optional[int]
    state: ConnectionState
    discovered_at: float
    last_seen: float
    service_uuids: Tuple[str, ...] = ()
    last_error: Optional[BLEError] = None


@dataclass(frozen=True)
class CharacteristicInfo:
    """A characteristic as reported by characteristic discovery."""

    uuid: str
    service_uuid: str
    properties: FrozenSet[str] = frozenset()
    # Limits for acknowledged writes and for write-without-response. None means the
    # adapter reported no limit; the engine then applies BLEConfig.DEFAULT_MAX_WRITE_SIZE
    max_write_size: Optional[int] = None
    max_write_without_response_size: Optional[int] = None


class OperationKind(Enum):
    """Kinds of GATT work tracked by the session."""

    READ = "read"
    WRITE = "write"
    SUBSCRIBE = "subscribe"
    DISCOVERY = "discovery"


class ValueSource(Enum):
    """Why a CharacteristicUpdated event was emitted."""

    READ = "read"
    WRITE = "write"
    NOTIFY = "notify"


@dataclass
class PendingOperation:
    """A GATT request submitted to the adapter and not yet completed."""

    characteristic: str
    kind: OperationKind
    future: "Future[Any]"
    submitted_at: float = field(default_factory=time.time)
    payload: Optional[bytes] = None
    enable: Optional[bool] = None
    adapter_future: Optional["Future[Any]"] = None


__all__ = [
    "Advertisement",
    "CharacteristicInfo",
    "OperationKind",
    "PendingOperation",
    "PeripheralId",
    "PeripheralRecord",
    "ValueSource",
]
