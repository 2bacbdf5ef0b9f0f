"""
Custom exceptions for ProxyPrint.

Exception Hierarchy:
    ProxyPrintError (base, carries an ErrorKind)
    ├── LayoutConfigError   - cards do not fit the printable area (before any network work)
    ├── AcquisitionError    - one image could not be fetched (recovered with a placeholder)
    │   ├── ImageTooSmallError - body below the plausible-image floor
    │   └── StrategyAbandoned  - a strategy gave up on a URL for good
    ├── EmbedError          - bytes could not be embedded as JPEG or PNG
    ├── PdfBuildError       - fatal; document serialization or total failure
    ├── DeliveryError       - a delivery method failed
    └── OperationAborted    - cooperative cancellation, never a failure

The kind is decided where the failure happens (classify_exception), not
guessed later from the message text.
"""

from enum import Enum
from typing import Optional, Dict, Any

import requests


class ErrorKind(Enum):
    NETWORK = "network"
    MEMORY = "memory"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


USER_MESSAGES = {
    ErrorKind.NETWORK: "Images could not be loaded. Check your internet connection.",
    ErrorKind.MEMORY: "Not enough memory. Try again with fewer cards.",
    ErrorKind.TIMEOUT: "Image loading timed out. Please try again.",
    ErrorKind.CANCELLED: "Generation was cancelled.",
    ErrorKind.UNKNOWN: "The PDF could not be created.",
}


class ProxyPrintError(Exception):
    """
    Base exception for all ProxyPrint errors.

    Args:
        message: Human-readable error message
        details: Optional dictionary with additional context for debugging
        kind: Discriminant used for user-facing classification
    """

    default_kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.kind = kind or self.default_kind

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class LayoutConfigError(ProxyPrintError):
    """The computed card block exceeds the printable area of the page."""

    def __init__(self, problems, details: Optional[Dict[str, Any]] = None):
        self.problems = list(problems)
        super().__init__("Layout does not fit the page: " + "; ".join(self.problems), details)


class AcquisitionError(ProxyPrintError):
    """A single strategy (or the whole chain) failed to produce image bytes."""
    default_kind = ErrorKind.NETWORK


class ImageTooSmallError(AcquisitionError):
    def __init__(self, url: str, size: int):
        super().__init__(f"Image data too small ({size} bytes)", {"url": url, "bytes": size})
        self.size = size


class StrategyAbandoned(AcquisitionError):
    """Raised when retrying the same strategy can never succeed for this URL."""


class EmbedError(ProxyPrintError):
    default_kind = ErrorKind.UNKNOWN


class PdfBuildError(ProxyPrintError):
    pass


class DeliveryError(ProxyPrintError):
    pass


class OperationAborted(ProxyPrintError):
    """Cooperative cancellation. Callers treat this as a clean stop."""
    default_kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Operation aborted"):
        super().__init__(message)


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map a low-level exception to an ErrorKind at the point it is caught."""
    if isinstance(exc, ProxyPrintError):
        return exc.kind
    if isinstance(exc, requests.exceptions.Timeout):
        return ErrorKind.TIMEOUT
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, requests.exceptions.RequestException):
        return ErrorKind.NETWORK
    if isinstance(exc, MemoryError):
        return ErrorKind.MEMORY
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def user_message(kind: ErrorKind) -> str:
    return USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.UNKNOWN])
