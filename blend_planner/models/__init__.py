"""
Database models package.

This package contains all SQLAlchemy ORM models for the application.
"""

from .base import Base, BaseModel
from .enums import Provenance, UsageState, SelectionStrategy, BlendStatus
from .batch import Batch
from .blend import Blend, BlendBatch

__all__ = [
    "Base",
    "BaseModel",
    # Enums
    "Provenance",
    "UsageState",
    "SelectionStrategy",
    "BlendStatus",
    # Batch store
    "Batch",
    # Blend ledger
    "Blend",
    "BlendBatch",
]
