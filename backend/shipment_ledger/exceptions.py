"""
Shipment Ledger - Exception Hierarchy

Structured, typed exceptions with error codes. Every ledger failure aborts the
enclosing transaction; only the transient class is safe for the caller to retry.

Usage:
    from shipment_ledger.exceptions import InsufficientStockError

    raise InsufficientStockError(product_id, requested=1000, available=40)
"""
from typing import Any, Dict, Optional


class LedgerException(Exception):
    """
    Base exception for all ledger errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "NOT_FOUND", "INSUFFICIENT_STOCK")
        category: validation, not_found, state, conflict, transient or integrity
        retryable: True only for lock/contention failures
        details: Additional context (numeric shortfalls, ids)
    """

    error_code: str = "LEDGER_ERROR"
    category: str = "internal"
    retryable: bool = False

    def __init__(
        self,
        message: str = "An unexpected ledger error occurred",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for the caller."""
        result = {
            "error": self.error_code,
            "category": self.category,
            "retryable": self.retryable,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# ===================
# Validation Errors
# ===================


class ValidationError(LedgerException):
    """Raised when input validation fails, before any lock is taken."""

    error_code = "VALIDATION_ERROR"
    category = "validation"

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details=details)


# ===================
# Not Found Errors
# ===================


class NotFoundError(LedgerException):
    """Raised when a resource is not found."""

    error_code = "NOT_FOUND"
    category = "not_found"

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Any = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["resource"] = resource
        if resource_id is not None:
            details["resource_id"] = str(resource_id)
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, details=details)


# ===================
# State Precondition Errors
# ===================


class InvalidStateError(LedgerException):
    """Raised when an operation is invalid for the current state."""

    error_code = "INVALID_STATE"
    category = "state"

    def __init__(
        self,
        message: str = "Operation not allowed in current state",
        *,
        current_state: Optional[str] = None,
        allowed_states: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if current_state:
            details["current_state"] = current_state
        if allowed_states:
            details["allowed_states"] = allowed_states
        super().__init__(message, details=details)


class AlreadySettledError(InvalidStateError):
    """Raised when settling a shipment that is already settled."""

    error_code = "ALREADY_SETTLED"

    def __init__(self, shipment_id: int):
        super().__init__(
            f"Shipment {shipment_id} is already settled",
            current_state="settled",
            details={"shipment_id": shipment_id},
        )


class TargetNotOpenError(InvalidStateError):
    """Raised when the carryover target shipment is not open."""

    error_code = "TARGET_NOT_OPEN"

    def __init__(self, shipment_id: int, status: str):
        super().__init__(
            f"Target shipment {shipment_id} must be open to receive carryover",
            current_state=status,
            allowed_states=["open"],
            details={"shipment_id": shipment_id},
        )


class SameShipmentError(InvalidStateError):
    """Raised when a shipment is nominated as its own carryover target."""

    error_code = "SAME_SHIPMENT"

    def __init__(self, shipment_id: int):
        super().__init__(
            f"Shipment {shipment_id} cannot carry over into itself",
            details={"shipment_id": shipment_id},
        )


class NotSettledError(InvalidStateError):
    """Raised when unsettling a shipment that is not settled."""

    error_code = "NOT_SETTLED"

    def __init__(self, shipment_id: int, status: str):
        super().__init__(
            f"Shipment {shipment_id} is not settled",
            current_state=status,
            allowed_states=["settled"],
            details={"shipment_id": shipment_id},
        )


class LaterShipmentSettledError(InvalidStateError):
    """Raised when a later shipment of the same supplier is already settled.

    The supplier balance chain must be built in fifo_sequence order, so neither
    settling nor unsettling may happen behind an already settled successor.
    """

    error_code = "LATER_SHIPMENT_SETTLED"

    def __init__(self, shipment_id: int, later_shipment_id: int):
        super().__init__(
            f"Shipment {later_shipment_id} of the same supplier is already settled; "
            f"unsettle it before changing shipment {shipment_id}",
            details={"shipment_id": shipment_id, "later_shipment_id": later_shipment_id},
        )


class ShipmentNotOpenError(InvalidStateError):
    """Raised when stock intake targets a shipment that is no longer open."""

    error_code = "SHIPMENT_NOT_OPEN"

    def __init__(self, shipment_id: int, status: str):
        super().__init__(
            f"Shipment {shipment_id} is not open",
            current_state=status,
            allowed_states=["open"],
            details={"shipment_id": shipment_id},
        )


class LineAlreadyReversedError(InvalidStateError):
    """Raised when an invoice line allocation was already reversed."""

    error_code = "LINE_ALREADY_REVERSED"

    def __init__(self, invoice_line_id: int):
        super().__init__(
            f"Invoice line {invoice_line_id} was already reversed",
            details={"invoice_line_id": invoice_line_id},
        )


class ImmutableFieldError(InvalidStateError):
    """Raised when an immutable column is changed after creation."""

    error_code = "IMMUTABLE_FIELD"

    def __init__(self, resource: str, field: str):
        super().__init__(
            f"{resource}.{field} is immutable",
            details={"resource": resource, "field": field},
        )


# ===================
# Resource Conflict Errors
# ===================


class ConflictError(LedgerException):
    """Raised when a business rule over stock quantities is violated."""

    error_code = "CONFLICT"
    category = "conflict"

    def __init__(
        self,
        message: str = "Resource conflict",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)


class InsufficientStockError(ConflictError):
    """Raised when eligible stock cannot cover an allocation."""

    error_code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: int,
        *,
        requested: int,
        available: int,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.requested = requested
        self.available = available
        details = details or {}
        details["product_id"] = product_id
        details["requested"] = requested
        details["available"] = available
        details["shortfall"] = requested - available
        message = (
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )
        super().__init__(message, details=details)


class ForwardedStockAlreadyConsumedError(ConflictError):
    """Raised when carried-over stock was sold or re-forwarded after settlement."""

    error_code = "FORWARDED_STOCK_ALREADY_CONSUMED"

    def __init__(
        self,
        carryover_id: int,
        *,
        forwarded: int,
        available: int,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.forwarded = forwarded
        self.available = available
        details = details or {}
        details["carryover_id"] = carryover_id
        details["forwarded"] = forwarded
        details["available"] = available
        details["consumed"] = forwarded - available
        message = (
            f"Carryover {carryover_id} cannot be pulled back: forwarded {forwarded}, "
            f"only {available} still unsold at the destination"
        )
        super().__init__(message, details=details)


class ReturnExceedsSaleError(ConflictError):
    """Raised when more cartons are returned than the invoice line sold."""

    error_code = "RETURN_EXCEEDS_SALE"

    def __init__(self, invoice_line_id: int, *, requested: int, returnable: int):
        super().__init__(
            f"Invoice line {invoice_line_id}: cannot return {requested}, "
            f"only {returnable} returnable",
            details={
                "invoice_line_id": invoice_line_id,
                "requested": requested,
                "returnable": returnable,
            },
        )


# ===================
# Transient Errors
# ===================


class ConcurrencyError(LedgerException):
    """Raised when concurrent modification is detected. Safe to retry."""

    error_code = "CONCURRENCY_ERROR"
    category = "transient"
    retryable = True

    def __init__(
        self,
        message: str = "Stock was modified by another transaction",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)


class LockTimeoutError(ConcurrencyError):
    """Raised when a row lock could not be acquired in time."""

    error_code = "LOCK_TIMEOUT"

    def __init__(
        self,
        message: str = "Timed out waiting for a stock row lock",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)


# ===================
# Integrity Errors
# ===================


class LedgerIntegrityError(LedgerException):
    """Raised when a write would break stock conservation."""

    error_code = "LEDGER_INTEGRITY"
    category = "integrity"

    def __init__(
        self,
        message: str = "Ledger invariant violated",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
