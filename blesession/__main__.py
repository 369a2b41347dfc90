"""
Command line front end: scan for peripherals or inspect one peripheral's GATT catalog.

    python -m blesession scan [--duration S]
    python -m blesession inspect ADDRESS [--timeout S]
"""
import argparse
import logging
import sys
import threading
import time
from typing import List, Optional

from tabulate import tabulate

from blesession.ble import (
    BLECentralEngine,
    BleakRadioAdapter,
    BLEConfig,
    BLEError,
    ConnectionState,
    ServicesDiscovered,
    OperationFailed,
    _sleep,
    sanitize_address,
)

logger = logging.getLogger(__name__)


def showDevices(engine: BLECentralEngine) -> str:
    """Print every discovered peripheral as a table and return the table text."""
    rows = []
    for i, record in enumerate(engine.list_devices()):
        rows.append(
            {
                "N": i + 1,
                "Address": record.id,
                "Name": record.name,
                "RSSI": record.rssi,
                "State": record.state.value,
                "Services": len(record.service_uuids) or None,
                "Last seen": time.strftime("%H:%M:%S", time.localtime(record.last_seen)),
            }
        )
    table = tabulate(rows, headers="keys", missingval="N/A", tablefmt="fancy_grid")
    print(table)
    return table


def showCatalog(engine: BLECentralEngine, address: str) -> str:
    """Print the GATT catalog of a connected peripheral and return the table text."""
    rows = []
    for service, characteristics in engine.get_catalog(address).items():
        if not characteristics:
            rows.append({"Service": service, "Characteristic": None, "Properties": None})
        for uuid in characteristics:
            info = engine.get_characteristic(address, uuid)
            rows.append(
                {
                    "Service": service,
                    "Characteristic": uuid,
                    "Properties": ", ".join(sorted(info.properties)) if info else None,
                    "Max write": info.max_write_size if info else None,
                    "Max write (no response)": info.max_write_without_response_size if info else None,
                }
            )
    table = tabulate(rows, headers="keys", missingval="N/A", tablefmt="fancy_grid")
    print(table)
    return table


def scan(engine: BLECentralEngine, duration: float) -> None:
    engine.scan(True)
    _sleep(duration)
    engine.scan(False)
    engine.flush()
    showDevices(engine)


def inspect(engine: BLECentralEngine, address: str, duration: float, timeout: float) -> int:
    """Scan until `address` shows up, connect, wait for discovery and print the catalog."""
    target = sanitize_address(address)
    discovered = threading.Event()
    failure: List[Optional[BaseException]] = [None]

    def on_event(event):
        if sanitize_address(event.peripheral_id) != target:
            return
        if isinstance(event, ServicesDiscovered):
            discovered.set()
        elif isinstance(event, OperationFailed):
            failure[0] = event.error
            discovered.set()

    engine.subscribe(on_event)
    engine.scan(True)
    deadline = time.monotonic() + duration
    while engine.get_device(address) is None and time.monotonic() < deadline:
        _sleep(0.2)
    engine.scan(False)
    if engine.get_device(address) is None:
        logger.error("Peripheral %s was not seen within %.1f seconds", address, duration)
        return 1

    state = engine.connect(address).result(timeout + 1.0)
    if state != ConnectionState.CONNECTED:
        record = engine.get_device(address)
        logger.error("Could not connect to %s: %s", address, record.last_error if record else state)
        return 1
    if not discovered.wait(timeout):
        logger.error("Service discovery on %s did not finish within %.1f seconds", address, timeout)
        return 1
    if failure[0] is not None:
        logger.warning("Service discovery on %s was incomplete: %s", address, failure[0])
    showCatalog(engine, address)
    engine.disconnect(address).result(BLEConfig.DISCONNECT_TIMEOUT + 1.0)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="blesession", description="Scan for and inspect Bluetooth Low Energy peripherals."
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--adapter", help="Host Bluetooth adapter to use (Linux only, e.g. hci1).")
    sub = parser.add_subparsers(dest="command", required=True)

    scan_parser = sub.add_parser("scan", help="List advertising peripherals.")
    scan_parser.add_argument(
        "--duration",
        type=float,
        default=BLEConfig.SCAN_DURATION,
        help="Seconds to scan for (default: %(default)s).",
    )

    inspect_parser = sub.add_parser("inspect", help="Connect to a peripheral and print its GATT catalog.")
    inspect_parser.add_argument("address", help="Address (or platform identifier) of the peripheral.")
    inspect_parser.add_argument(
        "--duration",
        type=float,
        default=BLEConfig.SCAN_DURATION,
        help="Seconds to scan for the peripheral before giving up (default: %(default)s).",
    )
    inspect_parser.add_argument(
        "--timeout",
        type=float,
        default=BLEConfig.CONNECT_TIMEOUT,
        help="Connect and discovery timeout in seconds (default: %(default)s).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    adapter = BleakRadioAdapter(bluez_adapter=args.adapter)
    timeout = getattr(args, "timeout", None)
    try:
        with BLECentralEngine(adapter, connect_timeout=timeout) as engine:
            if args.command == "scan":
                scan(engine, args.duration)
                return 0
            return inspect(engine, args.address, args.duration, args.timeout)
    except BLEError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
