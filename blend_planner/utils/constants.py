"""
Constants for the Blend Planner application.

This module defines all system-wide constants including:
- Quality attribute names and their kinds
- Allocation units (bags per batch, kg per bag)
- Optimizer tuning constants
- Ledger policy (reversal window, lot number format)
- Database file name
"""

from typing import Dict, Tuple

# ============================================================================
# Database
# ============================================================================

DATABASE_FILENAME = "blend_planner.db"

# ============================================================================
# Quality Attributes
# ============================================================================

# Primary blending attribute (gel strength)
PRIMARY_ATTRIBUTE = "bloom"

# Numeric secondary attributes, in default priority order
NUMERIC_ATTRIBUTES: Tuple[str, ...] = (
    "viscosity",
    "percentage",
    "ph",
    "conductivity",
    "moisture",
    "h2o2",
    "so2",
)

# Categorical secondary attributes (free-text lab grades)
CATEGORICAL_ATTRIBUTES: Tuple[str, ...] = (
    "color",
    "clarity",
    "odour",
)

SECONDARY_ATTRIBUTES: Tuple[str, ...] = NUMERIC_ATTRIBUTES + CATEGORICAL_ATTRIBUTES

ALL_ATTRIBUTES: Tuple[str, ...] = (PRIMARY_ATTRIBUTE,) + SECONDARY_ATTRIBUTES

ATTRIBUTE_LABELS: Dict[str, str] = {
    "bloom": "Bloom",
    "viscosity": "Viscosity",
    "percentage": "Percentage",
    "ph": "pH",
    "conductivity": "Conductivity",
    "moisture": "Moisture",
    "h2o2": "H2O2",
    "so2": "SO2",
    "color": "Color",
    "clarity": "Clarity",
    "odour": "Odour",
}

# ============================================================================
# Allocation Units
# ============================================================================

BAGS_PER_BATCH = 10  # Every selected batch contributes a fixed 10 bags
KG_PER_BAG = 25  # 25 kg per bag

# ============================================================================
# Optimizer Tuning
# ============================================================================

RANGE_PENALTY = 1000.0  # Added when a pick pushes the running mean off-range
SECONDARY_WEIGHT = 0.1  # Scale of the secondary objective vs. the primary axis
PRIORITY_STEP = 0.1  # Weight drop per rank on the secondary priority ladder
MIN_PRIORITY_WEIGHT = 0.1
CATEGORICAL_PENALTY = 1.0  # Flat penalty for a categorical mismatch
SWAP_WINDOW = 50  # Remaining candidates scanned per selected batch
FORCED_SUBSET_COMBINATION_CAP = 256  # Max forced-pick subsets evaluated
SECONDARY_TOLERANCE = 0.05  # Relative distance reported as a near miss

# ============================================================================
# Ledger Policy
# ============================================================================

REVERSAL_WINDOW_HOURS = 48
LOT_NUMBER_PREFIX = "HG"
LOT_NUMBER_SITE = "MFI"
MAX_LOT_NUMBER_LENGTH = 100
