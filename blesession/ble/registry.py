"""Registry of discovered peripherals."""

import dataclasses
from threading import RLock
from typing import Dict, Optional, Tuple

from blesession.ble.constants import logger
from blesession.ble.errors import BLEError
from blesession.ble.models import Advertisement, PeripheralId, PeripheralRecord
from blesession.ble.state import ConnectionState
from blesession.ble.utils import sanitize_address


class DeviceRegistry:
    """
    Deduplicated set of discovered peripherals, kept in discovery order.

    Records are immutable snapshots that get replaced on every sighting or
    state change, so `list()` can hand out references without copying and a
    reader never observes a half-applied update. Records are never removed.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        # Keyed by sanitized address; dict order is discovery order
        self._records: Dict[str, PeripheralRecord] = {}

    def upsert(self, advertisement: Advertisement) -> Tuple[PeripheralId, bool]:
        """
        Insert a record for a first sighting or refresh an existing one.

        Parameters:
            advertisement (Advertisement): The sighting to apply.

        Returns:
            Tuple[PeripheralId, bool]: The peripheral id and whether the record is new.

        Raises:
            ValueError: If the advertisement has no usable address.
        """
        key = sanitize_address(advertisement.address)
        if key is None:
            raise ValueError("Advertisement has no peripheral address")
        with self._lock:
            existing = self._records.get(key)
            if existing is None:
                record = PeripheralRecord(
                    id=advertisement.address,
                    name=advertisement.name,
                    rssi=advertisement.rssi,
                    state=ConnectionState.DISCOVERED,
                    discovered_at=advertisement.seen_at,
                    last_seen=advertisement.seen_at,
                    service_uuids=tuple(advertisement.service_uuids),
                )
                self._records[key] = record
                logger.debug("Discovered %s (%s)", record.id, record.name or "unnamed")
                return record.id, True
            # Names are optional in advertisements; keep the last one we saw
            self._records[key] = dataclasses.replace(
                existing,
                name=advertisement.name if advertisement.name is not None else existing.name,
                rssi=advertisement.rssi if advertisement.rssi is not None else existing.rssi,
                last_seen=advertisement.seen_at,
                service_uuids=tuple(advertisement.service_uuids) or existing.service_uuids,
            )
            return existing.id, False

    def list(self) -> Tuple[PeripheralRecord, ...]:
        """Return a snapshot of every record in discovery order."""
        with self._lock:
            return tuple(self._records.values())

    def get(self, peripheral_id: Optional[str]) -> Optional[PeripheralRecord]:
        """Return the record for `peripheral_id`, or None if it is unknown."""
        key = sanitize_address(peripheral_id)
        if key is None:
            return None
        with self._lock:
            return self._records.get(key)

    def set_state(
        self,
        peripheral_id: PeripheralId,
        state: ConnectionState,
        error: Optional[BLEError] = None,
    ) -> Optional[PeripheralRecord]:
        """Record a connection state change. Called by the connection state machine only."""
        key = sanitize_address(peripheral_id)
        with self._lock:
            existing = self._records.get(key) if key else None
            if existing is None:
                return None
            updated = dataclasses.replace(existing, state=state, last_error=error)
            self._records[key] = updated
            return updated


__all__ = ["DeviceRegistry"]
