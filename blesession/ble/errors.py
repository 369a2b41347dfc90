"""Error types and error handling utilities for BLE operations."""

from concurrent.futures import CancelledError
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

from bleak.exc import BleakDBusError, BleakError

from blesession.ble.constants import logger


class BLEError(Exception):
    """Base class for every error raised or reported by the session engine."""

    def __init__(self, message: str, peripheral_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.peripheral_id = peripheral_id


class AdapterUnavailable(BLEError):
    """The radio is powered off or not authorized."""


class ConnectTimeout(BLEError):
    """The adapter did not confirm a connection within the configured bound."""


class ConnectFailed(BLEError):
    """The adapter reported a failed connection attempt."""

    def __init__(
        self,
        message: str,
        peripheral_id: Optional[str] = None,
        adapter_reason: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, peripheral_id)
        self.adapter_reason = adapter_reason


class LinkLost(BLEError):
    """An established link dropped without a disconnect command."""


class OperationInProgress(BLEError):
    """An identical GATT operation is already pending."""


class PayloadTooLarge(BLEError):
    """A write payload exceeds the characteristic's reported maximum."""


class MalformedPayload(BLEError):
    """A write payload is not bytes-like."""


class WriteNotPermitted(BLEError):
    """The characteristic supports neither acknowledged writes nor write-without-response."""


class UnknownPeripheral(BLEError):
    """The peripheral identifier was never discovered."""


class UnknownCharacteristic(BLEError):
    """The characteristic is not part of the connected peripheral's catalog."""


class NotConnected(BLEError):
    """A GATT command was issued to a peripheral that is not connected."""


class RetryLimitExceeded(BLEError):
    """The retry policy for a peripheral has no attempts left."""


class GattOperationError(BLEError):
    """The adapter failed a read, write, subscribe or discovery request."""

    def __init__(
        self,
        message: str,
        peripheral_id: Optional[str] = None,
        adapter_reason: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, peripheral_id)
        self.adapter_reason = adapter_reason


class BLEErrorHandler:
    """
    Helper class for consistent error handling in BLE operations.

    Adapter callbacks and worker items run through these helpers so that a
    failing callback is logged instead of taking down the worker thread.
    """

    @staticmethod
    def safe_execute(
        func: Callable[[], Any],
        default_return: Any = None,
        log_error: bool = True,
        error_msg: str = "Error in operation",
        reraise: bool = False,
    ) -> Any:
        """
        Execute a zero-argument callable and return its result, falling back to a default on failure.

        Radio-level exceptions (BleakError, BleakDBusError, BLEError, FutureTimeoutError)
        are logged at debug level; anything else is logged with a traceback.

        Parameters:
            func (callable): A zero-argument callable to execute.
            default_return: Value to return if execution fails.
            log_error (bool): If True, log caught exceptions.
            error_msg (str): Message prefix used when logging errors.
            reraise (bool): If True, re-raise any caught exception instead of returning default_return.

        Returns:
            The value returned by `func()` on success, or `default_return` if execution failed.
        """
        try:
            return func()
        except (BleakError, BleakDBusError, BLEError, FutureTimeoutError) as e:
            if log_error:
                logger.debug("%s: %s", error_msg, e)
            if reraise:
                raise
            return default_return
        except Exception:
            if log_error:
                logger.exception("%s", error_msg)
            if reraise:
                raise
            return default_return

    @staticmethod
    def safe_cleanup(func: Callable[[], Any], cleanup_name: str = "cleanup operation") -> None:
        """Execute a cleanup callable and suppress any exception it raises."""
        try:
            func()
        except Exception as e:  # noqa: BLE001 - cleanup paths must not raise
            logger.debug("Error during %s: %s", cleanup_name, e)

    @staticmethod
    def future_error(future: Any) -> Optional[BaseException]:
        """
        Return the exception a finished future carries, treating cancellation as an error.

        Parameters:
            future: A completed concurrent.futures.Future.

        Returns:
            Optional[BaseException]: The future's exception, a CancelledError if it was cancelled, or None on success.
        """
        if future.cancelled():
            return CancelledError()
        return future.exception()


__all__ = [
    "AdapterUnavailable",
    "BLEError",
    "BLEErrorHandler",
    "ConnectFailed",
    "ConnectTimeout",
    "GattOperationError",
    "LinkLost",
    "MalformedPayload",
    "NotConnected",
    "OperationInProgress",
    "PayloadTooLarge",
    "RetryLimitExceeded",
    "UnknownCharacteristic",
    "UnknownPeripheral",
    "WriteNotPermitted",
]
