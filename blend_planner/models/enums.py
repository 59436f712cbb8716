"""
Enumerations for batch and blend tracking.

This module contains enums used across blending-related models:
- Provenance: Which pool a batch came from
- UsageState: Tri-state usage flag of a batch
- SelectionStrategy: How the optimizer treats the primary target range
- BlendStatus: Review status of a committed blend
"""

from enum import Enum


class Provenance(str, Enum):
    """
    Origin of a raw-material batch.

    Values:
        INTERNAL: Produced in-house
        EXTERNAL: Sourced from an outside processor
    """

    INTERNAL = "internal"
    EXTERNAL = "external"


class UsageState(str, Enum):
    """
    Usage state of a batch.

    Values:
        AVAILABLE: Free to be selected into a blend
        HELD: Administratively excluded from optimization (not consumed)
        CONSUMED: Assigned to exactly one blend
    """

    AVAILABLE = "available"
    HELD = "held"
    CONSUMED = "consumed"


class SelectionStrategy(str, Enum):
    """
    Primary-target strategy for batch selection.

    Values:
        WITHIN_RANGE: Only batches whose bloom lies inside [min, max]
        OUTSIDE_RANGE: Only batches whose bloom lies strictly outside [min, max]
        UNCONSTRAINED_AVERAGE: Any batch; aim the weighted mean at the target
    """

    WITHIN_RANGE = "within-range"
    OUTSIDE_RANGE = "outside-range"
    UNCONSTRAINED_AVERAGE = "unconstrained-average"


class BlendStatus(str, Enum):
    """
    Review status of a blend record.

    Values:
        DRAFT: Recorded but not yet released
        COMPLETED: Committed; batches are consumed
        APPROVED: Reviewed and signed off
    """

    DRAFT = "draft"
    COMPLETED = "completed"
    APPROVED = "approved"
