"""
Centralized error handling for PetWatch.

Provides the exception hierarchy, a transport error mapper for the delivery
layer, and structured error responses for the HTTP surface.

Only precondition violations on watch transitions propagate to callers.
Delivery failures are absorbed and reported as data.
"""

import uuid

from pydantic import BaseModel

from petwatch.core.logger import logger

# --- Exception Hierarchy ---


class PetWatchError(Exception):
    """Base exception for all PetWatch errors."""

    def __init__(self, message: str, retryable: bool = False, trace_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.trace_id = trace_id or str(uuid.uuid4())


class WatchStateError(PetWatchError):
    """A watch transition was requested from a state that does not allow it."""


class AlreadyArmedError(WatchStateError):
    """Arm requested while a watch window is already active."""

    def __init__(
        self,
        message: str = "A watch is already armed. Check in or cancel it first.",
        trace_id: str | None = None,
    ):
        super().__init__(message, retryable=False, trace_id=trace_id)


class NotArmedError(WatchStateError):
    """Check-in or cancel requested with no active watch window."""

    def __init__(self, message: str = "No watch is armed.", trace_id: str | None = None):
        super().__init__(message, retryable=False, trace_id=trace_id)


class NoRecipientsError(WatchStateError):
    """Arm requested without any emergency contact to alert."""

    def __init__(
        self,
        message: str = "At least one emergency contact is required to arm a watch.",
        trace_id: str | None = None,
    ):
        super().__init__(message, retryable=False, trace_id=trace_id)


class InvalidDurationError(WatchStateError):
    """Arm requested with a zero or negative duration."""

    def __init__(self, duration_minutes: int, trace_id: str | None = None):
        super().__init__(
            f"Watch duration must be a positive number of minutes (got {duration_minutes}).",
            retryable=False,
            trace_id=trace_id,
        )
        self.duration_minutes = duration_minutes


class DeliveryError(PetWatchError):
    """
    Transport failure talking to an SMS backend (never escapes the gateway chain).

    Always retryable: follow-ups retry every failed phone whatever the cause.
    """

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        status_code: int | None = None,
        trace_id: str | None = None,
    ):
        super().__init__(message, retryable=True, trace_id=trace_id)
        self.backend = backend
        self.status_code = status_code


# --- Error Mapping Utilities ---


def map_delivery_error(e: Exception, backend: str) -> DeliveryError:
    """
    Map a third-party HTTP client error to a DeliveryError.

    Args:
        e: The exception raised by the HTTP client
        backend: Name of the delivery backend

    Returns:
        DeliveryError with a sanitized message
    """
    if isinstance(e, DeliveryError):
        return e

    error_str = str(e).lower()
    error_type = type(e).__name__

    if "timeout" in error_str or "timed out" in error_str:
        logger.warning(f"{backend} delivery timed out: {e}")
        return DeliveryError(f"{backend} request timed out", backend=backend)

    if "401" in error_str or "403" in error_str or "authenticat" in error_str:
        logger.error(f"{backend} rejected credentials: {e}")
        return DeliveryError(
            f"{backend} authentication failed. Check the configured credentials.",
            backend=backend,
        )

    if "resolve" in error_str or "connect" in error_str:
        logger.warning(f"{backend} unreachable: {e}")
        return DeliveryError(f"{backend} is unreachable", backend=backend)

    logger.error(f"Unmapped {backend} delivery error ({error_type}): {e}", exc_info=True)
    return DeliveryError(f"{backend} delivery failed: {error_type}", backend=backend)


# --- Structured Error Response Models ---


class ErrorDetail(BaseModel):
    """Structured error information for API responses."""

    code: str
    message: str
    retryable: bool = False
    trace_id: str


class WatchResponse(BaseModel):
    """Standardized response envelope for watch operations."""

    success: bool
    data: dict | None = None
    error: ErrorDetail | None = None
    trace_id: str


def error_to_detail(error: PetWatchError) -> ErrorDetail:
    """
    Convert a PetWatchError to an ErrorDetail for API response.

    Args:
        error: The PetWatchError instance

    Returns:
        ErrorDetail Pydantic model
    """
    if isinstance(error, AlreadyArmedError):
        code = "ERR_ALREADY_ARMED"
    elif isinstance(error, NotArmedError):
        code = "ERR_NOT_ARMED"
    elif isinstance(error, NoRecipientsError):
        code = "ERR_NO_RECIPIENTS"
    elif isinstance(error, InvalidDurationError):
        code = "ERR_INVALID_DURATION"
    elif isinstance(error, DeliveryError):
        code = "ERR_DELIVERY"
    else:
        code = "ERR_UNKNOWN"

    return ErrorDetail(
        code=code,
        message=error.message,
        retryable=error.retryable,
        trace_id=error.trace_id,
    )
