"""
Batch model for raw-material batches available for blending.

This module contains the Batch model which represents one lab-tested batch
of raw material, from either the internal production pool or an external
supplier pool. Provenance is a column on a single table rather than two
parallel tables, so every batch query dispatches on an enum value.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    DateTime,
    Index,
    UniqueConstraint,
    CheckConstraint,
    Enum as SQLEnum,
)

from .base import BaseModel
from .enums import Provenance, UsageState
from blend_planner.utils.constants import ALL_ATTRIBUTES


class Batch(BaseModel):
    """
    Batch model for lab-tested raw-material batches.

    Attributes:
        provenance: INTERNAL or EXTERNAL pool
        batch_number: Monotonic number within the provenance pool
        serial_number: Lab serial reference from the test report
        fiscal_year: Fiscal year tag (e.g. "2025-26") used to scope selection
        bloom: Gel strength, the primary blending attribute
        viscosity, percentage, ph, conductivity, moisture, h2o2, so2:
            Numeric secondary attributes
        color, clarity, odour: Categorical secondary attributes
        usage_state: AVAILABLE, HELD or CONSUMED
        consumed_by_lot: Lot number of the blend that consumed this batch
        consumed_at: When the batch was consumed
        source_report: Name of the lab report the batch was read from
        report_date: Date of the lab report
        notes: Free-form notes
    """

    __tablename__ = "batches"

    # Identity
    provenance = Column(SQLEnum(Provenance), nullable=False, default=Provenance.INTERNAL)
    batch_number = Column(Integer, nullable=False)
    serial_number = Column(String(50), nullable=True)
    fiscal_year = Column(String(20), nullable=True)

    # Quality attributes
    bloom = Column(Float, nullable=True)
    viscosity = Column(Float, nullable=True)
    percentage = Column(Float, nullable=True)
    ph = Column(Float, nullable=True)
    conductivity = Column(Float, nullable=True)
    moisture = Column(Float, nullable=True)
    h2o2 = Column(Float, nullable=True)
    so2 = Column(Float, nullable=True)
    color = Column(String(50), nullable=True)
    clarity = Column(String(50), nullable=True)
    odour = Column(String(50), nullable=True)

    # Usage state
    usage_state = Column(SQLEnum(UsageState), nullable=False, default=UsageState.AVAILABLE)
    consumed_by_lot = Column(String(100), nullable=True)
    consumed_at = Column(DateTime, nullable=True)

    # Provenance metadata
    source_report = Column(String(255), nullable=True)
    report_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("provenance", "batch_number", name="uq_batch_provenance_number"),
        Index("idx_batch_usage_state", "usage_state"),
        Index("idx_batch_fiscal_year", "fiscal_year"),
        Index("idx_batch_consumed_by_lot", "consumed_by_lot"),
        CheckConstraint("batch_number > 0", name="ck_batch_number_positive"),
    )

    @property
    def is_available(self) -> bool:
        """True when the batch can be picked by the optimizer."""
        return self.usage_state == UsageState.AVAILABLE

    @property
    def is_consumed(self) -> bool:
        """True when the batch belongs to a blend."""
        return self.usage_state == UsageState.CONSUMED

    def attributes(self) -> dict:
        """Return the quality attributes as a plain dict."""
        return {name: getattr(self, name) for name in ALL_ATTRIBUTES}

    def __repr__(self) -> str:
        """String representation of batch."""
        return (
            f"Batch(id={self.id}, provenance={self.provenance}, "
            f"batch_number={self.batch_number}, bloom={self.bloom}, "
            f"usage_state={self.usage_state})"
        )
