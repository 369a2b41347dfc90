"""Tests for the DeviceRegistry."""

import threading

import pytest

from blesession.ble import Advertisement, ConnectionState, DeviceRegistry, LinkLost


class TestDeviceRegistry:
    """Dedup, ordering and snapshot behaviour of the registry."""

    def test_first_sighting_creates_record(self):
        registry = DeviceRegistry()
        peripheral_id, is_new = registry.upsert(
            Advertisement(address="AA:BB:CC:DD:EE:01", name="Thermo", rssi=-70, seen_at=100.0)
        )

        assert is_new
        assert peripheral_id == "AA:BB:CC:DD:EE:01"
        record = registry.get(peripheral_id)
        assert record.name == "Thermo"
        assert record.rssi == -70
        assert record.state == ConnectionState.DISCOVERED
        assert record.discovered_at == record.last_seen == 100.0

    def test_repeated_sightings_keep_one_record_with_latest_values(self):
        registry = DeviceRegistry()
        for i, rssi in enumerate((-80, -72, -65)):
            registry.upsert(
                Advertisement(address="AA:BB:CC:DD:EE:01", name=f"Thermo {i}", rssi=rssi, seen_at=float(i))
            )

        records = registry.list()
        assert len(records) == 1
        assert records[0].rssi == -65
        assert records[0].name == "Thermo 2"
        assert records[0].discovered_at == 0.0
        assert records[0].last_seen == 2.0

    def test_sighting_without_name_keeps_last_known_name(self):
        registry = DeviceRegistry()
        registry.upsert(Advertisement(address="AA:BB:CC:DD:EE:01", name="Thermo", rssi=-70))
        registry.upsert(Advertisement(address="AA:BB:CC:DD:EE:01", name=None, rssi=-60))

        record = registry.get("AA:BB:CC:DD:EE:01")
        assert record.name == "Thermo"
        assert record.rssi == -60

    def test_dedup_key_is_address_not_name(self):
        registry = DeviceRegistry()
        registry.upsert(Advertisement(address="AA:BB:CC:DD:EE:01", name="Sensor"))
        registry.upsert(Advertisement(address="AA:BB:CC:DD:EE:02", name="Sensor"))

        assert len(registry.list()) == 2

    def test_address_formats_are_normalised(self):
        registry = DeviceRegistry()
        _, first = registry.upsert(Advertisement(address="AA:BB:CC:DD:EE:01"))
        peripheral_id, second = registry.upsert(Advertisement(address="aa-bb-cc-dd-ee-01"))

        assert first and not second
        assert peripheral_id == "AA:BB:CC:DD:EE:01"
        assert registry.get("aabbccddee01").id == "AA:BB:CC:DD:EE:01"
        assert registry.get("aa_bb_cc_dd_ee_01") is not None

    def test_list_is_in_discovery_order(self):
        registry = DeviceRegistry()
        addresses = ["AA:BB:CC:DD:EE:03", "AA:BB:CC:DD:EE:01", "AA:BB:CC:DD:EE:02"]
        for rssi, address in zip((-90, -40, -60), addresses):
            registry.upsert(Advertisement(address=address, rssi=rssi))
        # A later, stronger sighting must not reorder the list
        registry.upsert(Advertisement(address="AA:BB:CC:DD:EE:03", rssi=-10))

        assert [record.id for record in registry.list()] == addresses

    @pytest.mark.parametrize("address", [None, "", "   ", "AA:BB:CC:DD:EE:99"])
    def test_get_unknown_returns_none(self, address):
        registry = DeviceRegistry()
        assert registry.get(address) is None

    @pytest.mark.parametrize("address", ["", "  "])
    def test_upsert_without_address_rejected(self, address):
        registry = DeviceRegistry()
        with pytest.raises(ValueError):
            registry.upsert(Advertisement(address=address))
        assert registry.list() == []

    def test_set_state_replaces_record(self):
        registry = DeviceRegistry()
        peripheral_id, _ = registry.upsert(Advertisement(address="AA:BB:CC:DD:EE:01"))
        before = registry.get(peripheral_id)
        error = LinkLost("gone", peripheral_id)

        updated = registry.set_state(peripheral_id, ConnectionState.DISCONNECTED, error)

        assert updated.state == ConnectionState.DISCONNECTED
        assert updated.last_error is error
        # Snapshots handed out earlier are never mutated
        assert before.state == ConnectionState.DISCOVERED
        assert registry.set_state("AA:BB:CC:DD:EE:99", ConnectionState.CONNECTED) is None

    def test_concurrent_upserts(self):
        registry = DeviceRegistry()

        def worker(offset):
            for i in range(200):
                registry.upsert(
                    Advertisement(address=f"AA:BB:CC:DD:{(offset + i) % 50:02X}:00", rssi=-i)
                )

        threads = [threading.Thread(target=worker, args=(n * 7,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        records = registry.list()
        assert len(records) == 50
        assert len({record.id for record in records}) == 50
