"""Unit tests for exception hierarchy.

Validates that all exceptions inherit from ServiceError and carry the
identifiers of the failure as attributes.
"""

import inspect
from datetime import timedelta

import pytest

from blend_planner.services import exceptions as exc_module
from blend_planner.services.exceptions import (
    BatchInUse,
    BatchNotFound,
    BatchNumberExists,
    BatchUnavailable,
    BlendNotFound,
    DatabaseError,
    DuplicateLotId,
    ExpiredWindow,
    InvalidSpecification,
    ServiceError,
    ValidationError,
)


def get_all_exception_classes():
    """Discover all exception classes defined in the exceptions module."""
    return [
        (name, obj)
        for name, obj in inspect.getmembers(exc_module, inspect.isclass)
        if issubclass(obj, Exception) and obj.__module__ == exc_module.__name__
    ]


class TestExceptionHierarchy:
    """Verify all exceptions inherit from ServiceError."""

    @pytest.fixture
    def all_exceptions(self):
        return get_all_exception_classes()

    def test_all_domain_exceptions_inherit_from_service_error(self, all_exceptions):
        """All domain exceptions must inherit from ServiceError."""
        failures = [
            f"{name} does not inherit from ServiceError"
            for name, exc_class in all_exceptions
            if not issubclass(exc_class, ServiceError)
        ]
        assert not failures, "\n".join(failures)

    def test_http_status_codes_are_valid(self, all_exceptions):
        """HTTP status codes must be valid (4xx or 5xx)."""
        valid_codes = [400, 404, 409, 422, 500]
        failures = [
            f"{name} has invalid http_status_code: {exc_class.http_status_code}"
            for name, exc_class in all_exceptions
            if exc_class.http_status_code not in valid_codes
        ]
        assert not failures, "\n".join(failures)

    def test_invalid_specification_is_validation_error(self):
        assert issubclass(InvalidSpecification, ValidationError)


class TestServiceErrorBase:
    """Test ServiceError base class functionality."""

    def test_correlation_id_support(self):
        error = ServiceError("test", correlation_id="abc-123")
        assert error.correlation_id == "abc-123"

    def test_context_support(self):
        error = ServiceError("test", blend_id=12, lot_number="HG-1")
        assert error.context == {"blend_id": 12, "lot_number": "HG-1"}

    def test_to_dict(self):
        error = ServiceError("test message", correlation_id="abc")
        d = error.to_dict()
        assert d["type"] == "ServiceError"
        assert d["message"] == "test message"
        assert d["correlation_id"] == "abc"
        assert d["http_status_code"] == 500

    def test_str_representation(self):
        assert str(ServiceError("error occurred")) == "error occurred"


class TestSpecificExceptions:
    """Test specific exception classes."""

    def test_validation_error(self):
        error = ValidationError(["Lot number is required", "Cannot commit an empty proposal"])
        assert "Lot number is required" in str(error)
        assert error.http_status_code == 400
        assert len(error.errors) == 2
        assert error.message == str(error)

    def test_batch_not_found(self):
        error = BatchNotFound(17)
        assert error.identifier == 17
        assert "17" in str(error)
        assert error.http_status_code == 404

    def test_batch_number_exists(self):
        error = BatchNumberExists("internal", 42)
        assert error.batch_number == 42
        assert "internal" in str(error)
        assert error.http_status_code == 409

    def test_batch_in_use(self):
        error = BatchInUse(3, "HG-2510-MFI-19001-4", "delete")
        assert error.lot_number == "HG-2510-MFI-19001-4"
        assert "delete" in str(error)

    def test_blend_not_found(self):
        error = BlendNotFound("LOT-9")
        assert "LOT-9" in str(error)
        assert error.http_status_code == 404

    def test_duplicate_lot_id(self):
        error = DuplicateLotId("LOT-1")
        assert error.lot_number == "LOT-1"
        assert error.http_status_code == 409

    def test_batch_unavailable(self):
        error = BatchUnavailable([4, 9])
        assert error.batch_numbers == [4, 9]
        assert "#4, #9" in str(error)

    def test_expired_window(self):
        error = ExpiredWindow(5, timedelta(hours=49, minutes=30), timedelta(hours=48))
        assert error.blend_id == 5
        assert "49.5 hours" in str(error)
        assert "48 hours" in str(error)

    def test_database_error(self):
        original = Exception("Connection lost")
        error = DatabaseError("Connection failed", original_error=original)
        assert error.http_status_code == 500
        assert error.original_error is original
