"""Exception hierarchy for the checkout engine.

All checkout-specific exceptions inherit from CheckoutException, enabling:
- Consistent error handling across the verifier, ledger and worker
- HTTP status code mapping in the API layer
- Structured error responses with error codes

Usage:
    from craftlocal_checkout.exceptions import (
        CheckoutException,
        VerificationError,
        InsufficientInventory,
    )

    try:
        lines = await verifier.verify(cart)
    except VerificationError as e:
        return JSONResponse(status_code=e.http_status, content=e.to_dict())

All exceptions have:
- error_code: Machine-readable error code (e.g., "PRODUCT_NOT_FOUND")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Iterable, Optional


class CheckoutException(Exception):
    """Base exception for all checkout engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "CHECKOUT_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Cart verification errors (4xx, client-facing)
# =============================================================================

class VerificationError(CheckoutException):
    """A cart line failed re-pricing or inventory checks."""

    error_code = "VERIFICATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        listing_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if listing_id:
            details["listing_id"] = listing_id
        self.listing_id = listing_id
        super().__init__(message, details=details)


class ProductNotFound(VerificationError):
    """Requested listing is absent from the canonical pricing store."""

    error_code = "PRODUCT_NOT_FOUND"

    def __init__(self, listing_id: str) -> None:
        super().__init__(
            f"Listing '{listing_id}' not found or has been removed",
            listing_id=listing_id,
        )


class ProductUnavailable(VerificationError):
    """Listing exists but is not active."""

    error_code = "PRODUCT_UNAVAILABLE"

    def __init__(self, listing_id: str, status: str) -> None:
        super().__init__(
            f"Listing '{listing_id}' is {status} and cannot be purchased",
            listing_id=listing_id,
            details={"status": status},
        )


class InsufficientInventory(VerificationError):
    """Requested quantity exceeds the tracked inventory."""

    error_code = "INSUFFICIENT_INVENTORY"

    def __init__(self, listing_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Only {available} of listing '{listing_id}' available, {requested} requested",
            listing_id=listing_id,
            details={"requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available


class CheckoutValidationError(CheckoutException):
    """Checkout request is malformed or not allowed."""

    error_code = "INVALID_CHECKOUT"
    http_status = 400

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details)


# =============================================================================
# External processor errors
# =============================================================================

class ProcessorError(CheckoutException):
    """Payment processor call failed.

    Only the processor status code and error code are kept; the raw
    response body never reaches the caller.
    """

    error_code = "PROCESSOR_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str = "Payment processor request failed",
        status_code: Optional[int] = None,
        processor_code: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if processor_code:
            details["processor_code"] = processor_code
        self.status_code = status_code
        self.processor_code = processor_code
        super().__init__(message, details=details)


class WebhookSignatureError(CheckoutException):
    """Inbound webhook failed signature verification."""

    error_code = "INVALID_SIGNATURE"
    http_status = 400


class MetadataIntegrityError(CheckoutException):
    """Signed checkout metadata does not match its signature."""

    error_code = "METADATA_TAMPERED"
    http_status = 400


# =============================================================================
# Ledger and lookup errors (internal)
# =============================================================================

class StateConflictError(CheckoutException):
    """Escrow record is not in the state a transition expects.

    Internal races log it and treat the transition as a no-op. Canceling
    an escrow that is past cancellation surfaces it to the caller.
    """

    error_code = "STATE_CONFLICT"
    http_status = 409

    def __init__(
        self,
        order_id: str,
        expected: Iterable[Any],
        actual: Any,
    ) -> None:
        expected_values = sorted(getattr(s, "value", str(s)) for s in expected)
        actual_value = getattr(actual, "value", actual)
        super().__init__(
            f"Escrow '{order_id}' is {actual_value}, expected one of {expected_values}",
            details={"order_id": order_id, "expected": expected_values, "actual": actual_value},
        )
        self.order_id = order_id
        self.actual = actual


class RecordNotFound(CheckoutException):
    """Requested record not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ConfigurationError(CheckoutException):
    """Missing or invalid configuration. Fatal at startup."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


class EventInProgressError(CheckoutException):
    """Another worker is processing the same webhook event right now."""

    error_code = "EVENT_IN_PROGRESS"
    http_status = 409

    def __init__(self, event_id: str) -> None:
        super().__init__(
            f"Webhook event '{event_id}' is already being processed",
            details={"event_id": event_id},
        )
        self.event_id = event_id


class StateStoreUnavailable(CheckoutException):
    """The configured shared state store cannot be reached."""

    error_code = "STATE_STORE_UNAVAILABLE"
    http_status = 503
