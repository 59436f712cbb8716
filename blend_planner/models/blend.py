"""
Blend and BlendBatch models for the blend ledger.

A Blend is the immutable record of a committed batch selection: the frozen
target it was planned against, the batches it consumed (with an attribute
snapshot taken at commit time) and the realized totals.
"""

import json
from typing import Any, Dict

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    DateTime,
    ForeignKey,
    Index,
    CheckConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import BlendStatus, Provenance, SelectionStrategy


def _load_json(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


class Blend(BaseModel):
    """
    Blend model for committed blend records.

    Attributes:
        serial_number: Sequential number assigned at commit (max + 1)
        lot_number: Caller-supplied unique lot identifier
        fiscal_year: Fiscal year tag the blend was planned in
        status: DRAFT, COMPLETED or APPROVED
        target_min / target_max / target_mean: Primary target at commit time
        strategy: Primary selection strategy
        secondary_targets: JSON text of the secondary target mapping
        total_units: Total bags in the blend
        total_weight_kg: Total weight in kilograms
        average_bloom: Unit-weighted bloom average
        averages: JSON text of every realized attribute average
        notes: Optional notes
        reviewed_by / reviewed_at: Review sign-off
    """

    __tablename__ = "blends"

    serial_number = Column(Integer, nullable=False, unique=True)
    lot_number = Column(String(100), nullable=False, unique=True)
    fiscal_year = Column(String(20), nullable=True)
    status = Column(SQLEnum(BlendStatus), nullable=False, default=BlendStatus.COMPLETED)

    # Frozen target
    target_min = Column(Float, nullable=False)
    target_max = Column(Float, nullable=False)
    target_mean = Column(Float, nullable=True)
    strategy = Column(
        SQLEnum(SelectionStrategy), nullable=False, default=SelectionStrategy.WITHIN_RANGE
    )
    secondary_targets = Column(Text, nullable=True)  # JSON

    # Totals
    total_units = Column(Integer, nullable=False, default=0)
    total_weight_kg = Column(Float, nullable=False, default=0.0)
    average_bloom = Column(Float, nullable=True)
    averages = Column(Text, nullable=True)  # JSON

    notes = Column(Text, nullable=True)
    reviewed_by = Column(String(100), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    lines = relationship(
        "BlendBatch",
        back_populates="blend",
        cascade="all, delete-orphan",
        order_by="BlendBatch.batch_number",
    )

    __table_args__ = (
        Index("idx_blend_fiscal_year", "fiscal_year"),
        Index("idx_blend_status", "status"),
        Index("idx_blend_created_at", "created_at"),
        CheckConstraint("serial_number > 0", name="ck_blend_serial_positive"),
        CheckConstraint("total_units >= 0", name="ck_blend_total_units_non_negative"),
    )

    def get_secondary_targets(self) -> Dict[str, Any]:
        """Parse the secondary target mapping from JSON."""
        return _load_json(self.secondary_targets)

    def get_averages(self) -> Dict[str, Any]:
        """Parse the realized attribute averages from JSON."""
        return _load_json(self.averages)

    def __repr__(self) -> str:
        """String representation of blend."""
        return (
            f"Blend(id={self.id}, serial_number={self.serial_number}, "
            f"lot_number='{self.lot_number}', total_units={self.total_units})"
        )


class BlendBatch(BaseModel):
    """
    One batch line of a blend, with its attributes frozen at commit time.

    batch_id is unique: a batch can belong to at most one blend at a time.
    It is nullable so the line survives if the batch row is ever removed.

    Attributes:
        blend_id: Parent blend
        batch_id: Referenced batch
        batch_number: Batch number at commit time
        provenance: Pool the batch came from
        units: Bags allocated from the batch
        bloom: Bloom at commit time
        attributes_data: JSON snapshot of every quality attribute
    """

    __tablename__ = "blend_batches"

    blend_id = Column(Integer, ForeignKey("blends.id", ondelete="CASCADE"), nullable=False)
    batch_id = Column(
        Integer, ForeignKey("batches.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    batch_number = Column(Integer, nullable=False)
    provenance = Column(SQLEnum(Provenance), nullable=False)
    units = Column(Integer, nullable=False)
    bloom = Column(Float, nullable=True)
    attributes_data = Column(Text, nullable=True)  # JSON

    blend = relationship("Blend", back_populates="lines")
    batch = relationship("Batch")

    __table_args__ = (
        Index("idx_blend_batch_blend", "blend_id"),
        CheckConstraint("units > 0", name="ck_blend_batch_units_positive"),
    )

    def get_attributes(self) -> Dict[str, Any]:
        """Parse the attribute snapshot from JSON."""
        return _load_json(self.attributes_data)

    def __repr__(self) -> str:
        """String representation of blend line."""
        return (
            f"BlendBatch(id={self.id}, blend_id={self.blend_id}, "
            f"batch_number={self.batch_number}, units={self.units})"
        )
