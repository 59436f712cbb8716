"""Services package - Business logic layer for Blend Planner.

This package contains the service modules that provide business logic and
database operations for batch blending.

Architecture:
- Services: Stateless functions organized by domain (batches, blends)
- Transactions: Managed via session_scope() context manager; every public
  function also accepts session= to join a caller's transaction
- Exceptions: Consistent error handling via ServiceError hierarchy
- Blending: Pure selection logic with no database access

Service Modules:
- batch_service: Batch store CRUD, holds, snapshots and statistics
- blend_service: Propose, commit, delete and query blends

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management and database utilities
- logging_utils: Structured operation logging
"""

from . import database, batch_service, blend_service

from .exceptions import (
    ServiceError,
    ValidationError,
    InvalidSpecification,
    BatchNotFound,
    BatchNumberExists,
    BatchInUse,
    BlendNotFound,
    DuplicateLotId,
    BatchUnavailable,
    ExpiredWindow,
    DatabaseError,
)

__all__ = [
    # Modules
    "database",
    "batch_service",
    "blend_service",
    # Exceptions
    "ServiceError",
    "ValidationError",
    "InvalidSpecification",
    "BatchNotFound",
    "BatchNumberExists",
    "BatchInUse",
    "BlendNotFound",
    "DuplicateLotId",
    "BatchUnavailable",
    "ExpiredWindow",
    "DatabaseError",
]
