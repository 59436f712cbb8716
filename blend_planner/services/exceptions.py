"""Service layer exception classes for Blend Planner.

This module defines all custom exceptions used by the service layer to provide
consistent error handling across the application.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    │   └── InvalidSpecification
    ├── BatchNotFound
    ├── BatchNumberExists
    ├── BatchInUse
    ├── BlendNotFound
    ├── DuplicateLotId
    ├── BatchUnavailable
    ├── ExpiredWindow
    └── DatabaseError

"No feasible selection" is deliberately not an exception: the optimizer
returns an empty or partial proposal with diagnostics instead.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base exception for all service layer errors.

    All service-specific exceptions should inherit from this class.

    Attributes:
        message: Human-readable message (also str(error))
        correlation_id: Optional ID tying the error to a caller request
        context: Extra identifiers describing the failure
        http_status_code: Status a web caller should map the error to
    """

    http_status_code = 500

    def __init__(self, message: str = "", correlation_id: Optional[str] = None, **context: Any):
        self.message = message
        self.correlation_id = correlation_id
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for logs or API responses."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "http_status_code": self.http_status_code,
            "context": dict(self.context),
        }


class ValidationError(ServiceError):
    """Raised when data validation fails."""

    http_status_code = 400

    def __init__(self, errors: list):
        self.errors = errors
        error_msg = "; ".join(errors)
        super().__init__(f"Validation failed: {error_msg}")


class InvalidSpecification(ValidationError):
    """Raised when a target specification or unit request is malformed.

    Args:
        errors: List of human-readable problems

    Example:
        >>> raise InvalidSpecification(["bloom: min 260 is greater than max 240"])
        InvalidSpecification: Validation failed: bloom: min 260 is greater than max 240
    """

    pass


class BatchNotFound(ServiceError):
    """Raised when a batch cannot be found.

    Args:
        identifier: Batch ID, or a "provenance #number" description
    """

    http_status_code = 404

    def __init__(self, identifier):
        self.identifier = identifier
        super().__init__(f"Batch {identifier} not found")


class BatchNumberExists(ServiceError):
    """Raised when creating a batch whose number is already used in its pool.

    Example:
        >>> raise BatchNumberExists("internal", 42)
        BatchNumberExists: Batch number 42 already exists in the internal pool
    """

    http_status_code = 409

    def __init__(self, provenance: str, batch_number: int):
        self.provenance = provenance
        self.batch_number = batch_number
        super().__init__(
            f"Batch number {batch_number} already exists in the {provenance} pool"
        )


class BatchInUse(ServiceError):
    """Raised when an operation is not allowed on a consumed batch."""

    http_status_code = 409

    def __init__(self, batch_id: int, lot_number: Optional[str], action: str):
        self.batch_id = batch_id
        self.lot_number = lot_number
        self.action = action
        super().__init__(
            f"Cannot {action} batch {batch_id}: consumed by lot '{lot_number}'"
        )


class BlendNotFound(ServiceError):
    """Raised when a blend cannot be found by ID or lot number."""

    http_status_code = 404

    def __init__(self, identifier):
        self.identifier = identifier
        super().__init__(f"Blend {identifier} not found")


class DuplicateLotId(ServiceError):
    """Raised when committing a blend with a lot number that already exists.

    Example:
        >>> raise DuplicateLotId("HG-2510-MFI-19001-4")
        DuplicateLotId: Lot number 'HG-2510-MFI-19001-4' already exists
    """

    http_status_code = 409

    def __init__(self, lot_number: str):
        self.lot_number = lot_number
        super().__init__(f"Lot number '{lot_number}' already exists")


class BatchUnavailable(ServiceError):
    """Raised when a proposed batch is no longer available at commit time.

    The caller should re-run the optimizer against a fresh snapshot.

    Args:
        batch_numbers: Batch numbers that were held or consumed meanwhile
    """

    http_status_code = 409

    def __init__(self, batch_numbers: List[int]):
        self.batch_numbers = list(batch_numbers)
        numbers = ", ".join(f"#{n}" for n in self.batch_numbers)
        super().__init__(
            f"Batches no longer available: {numbers}. Re-run the selection."
        )


class ExpiredWindow(ServiceError):
    """Raised when a blend is older than the reversal window."""

    http_status_code = 409

    def __init__(self, blend_id, elapsed: timedelta, window: timedelta):
        self.blend_id = blend_id
        self.elapsed = elapsed
        self.window = window
        hours = elapsed.total_seconds() / 3600
        limit = window.total_seconds() / 3600
        super().__init__(
            f"Blend {blend_id} was created {hours:.1f} hours ago; "
            f"blends can only be deleted within {limit:g} hours"
        )


class DatabaseError(ServiceError):
    """Raised when a database operation fails."""

    http_status_code = 500

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(f"Database error: {message}")
