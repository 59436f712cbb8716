"""
Blending services module for batch selection.

This module provides:
- Target specification value objects and unit normalization
- The batch selection optimizer (pure, no database access)
- Diagnostics for realized averages and target checks
- The reversal window guard for committed blends

Usage:
    from blend_planner.services.blending import (
        TargetSpecification,
        PrimaryTarget,
        NumericTarget,
        CategoricalTarget,
        select,
        Proposal,
        check_reversal_window,
    )
"""

from .target_spec import (
    CategoricalTarget,
    NumericTarget,
    PrimaryTarget,
    TargetSpecification,
    normalize_units,
)
from .diagnostics import TargetCheck, compute_averages, weighted_average, weighted_consensus
from .optimizer import (
    BatchSnapshot,
    Proposal,
    ProposalLine,
    evaluate_selection,
    select,
)
from .reversal_guard import check_reversal_window, is_reversible, reversal_deadline

__all__ = [
    # Target specification
    "PrimaryTarget",
    "NumericTarget",
    "CategoricalTarget",
    "TargetSpecification",
    "normalize_units",
    # Diagnostics
    "TargetCheck",
    "compute_averages",
    "weighted_average",
    "weighted_consensus",
    # Optimizer
    "BatchSnapshot",
    "ProposalLine",
    "Proposal",
    "select",
    "evaluate_selection",
    # Reversal guard
    "check_reversal_window",
    "is_reversible",
    "reversal_deadline",
]
