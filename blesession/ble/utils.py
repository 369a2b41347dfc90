"""Utility functions for BLE operations."""

import time
from concurrent.futures import Future, InvalidStateError
from typing import Any, Optional


def _sleep(delay: float) -> None:
    """
    Throttle execution for the given duration in seconds.

    Parameters:
        delay (float): Duration to sleep, in seconds.
    """
    time.sleep(delay)


def sanitize_address(address: Optional[str]) -> Optional[str]:
    """
    Normalize a BLE address by removing common separators and lowercasing the result.

    Parameters:
        address (Optional[str]): BLE address or platform identifier; may be None or only whitespace.

    Returns:
        Optional[str]: The address with "-", "_", ":", and spaces removed and converted to lowercase,
        or `None` if `address` is None or contains only whitespace.
    """
    if address is None or not address.strip():
        return None
    return (
        address.strip()
        .replace("-", "")
        .replace("_", "")
        .replace(":", "")
        .replace(" ", "")
        .lower()
    )


def format_uuid(uuid: str) -> str:
    """Lowercase a UUID string so characteristic lookups are case-insensitive."""
    return uuid.strip().lower()


def resolved_future(value: Any) -> "Future[Any]":
    """Return a future that has already completed with `value`."""
    future: "Future[Any]" = Future()
    future.set_result(value)
    return future


def settle_future(
    future: Optional["Future[Any]"],
    value: Any = None,
    error: Optional[BaseException] = None,
) -> bool:
    """
    Complete a caller-facing future unless it is already done.

    Callers may cancel the futures the engine hands out at any time, so the
    engine never assumes it still owns the right to complete one.

    Returns:
        bool: True if this call completed the future.
    """
    if future is None:
        return False
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(value)
    except InvalidStateError:
        return False
    return True
