"""Exceptions raised by order submission, cancellation and broker plumbing."""

from __future__ import annotations


class FolioError(Exception):
    """Base class for folio errors."""


class NotConnectedError(FolioError, ConnectionError):
    """Raised when a broker command is attempted without a live connection."""


class OrderIdTimeoutError(FolioError, TimeoutError):
    """Raised when the broker does not hand out an order id in time."""


class CancelTimeoutError(FolioError, TimeoutError):
    """Raised when a cancel is not confirmed in time."""


class BrokerOrderError(FolioError, RuntimeError):
    """Unclassified broker error; the raw broker message is kept verbatim."""

    def __init__(self, message: str, order_id: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.code = code
