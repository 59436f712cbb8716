"""
Aggregation and status reporting for batch selections.

Turns a list of proposal lines into unit-weighted attribute averages and the
human-readable status lines shown with every proposal. Lines are any objects
with ``batch`` (exposing ``get(attribute)``) and ``units`` attributes.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from blend_planner.models.enums import SelectionStrategy
from blend_planner.utils.constants import (
    ATTRIBUTE_LABELS,
    CATEGORICAL_ATTRIBUTES,
    NUMERIC_ATTRIBUTES,
    PRIMARY_ATTRIBUTE,
    SECONDARY_TOLERANCE,
)

from .target_spec import CategoricalTarget, NumericTarget, PrimaryTarget, TargetSpecification


STRATEGY_PHRASES = {
    SelectionStrategy.WITHIN_RANGE: "within range",
    SelectionStrategy.OUTSIDE_RANGE: "from outside range",
    SelectionStrategy.UNCONSTRAINED_AVERAGE: "for the unconstrained average",
}


@dataclass
class TargetCheck:
    """Outcome of checking one target against the realized averages.

    Attributes:
        attribute: Attribute name ("bloom" for the primary target)
        satisfied: True if the realized value meets the target
        message: Status line for display
        value: Realized average (or consensus for categoricals)
    """

    attribute: str
    satisfied: bool
    message: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribute": self.attribute,
            "satisfied": self.satisfied,
            "message": self.message,
            "value": self.value,
        }


def normalize_category(value: Optional[str]) -> Optional[str]:
    """Comparison key for categorical values (trimmed, case-folded)."""
    if value is None:
        return None
    key = str(value).strip().lower()
    return key or None


def weighted_average(lines: Iterable, attribute: str) -> Optional[float]:
    """Unit-weighted average of a numeric attribute.

    Lines whose batch has no value for the attribute carry zero weight.

    Returns:
        The average, or None when no line has a value
    """
    total = 0.0
    weight = 0
    for line in lines:
        value = line.batch.get(attribute)
        if value is None:
            continue
        total += value * line.units
        weight += line.units
    if weight == 0:
        return None
    return total / weight


def weighted_consensus(lines: Iterable, attribute: str) -> Optional[str]:
    """Most common categorical value by units, compared case-insensitively.

    Ties go to the value seen first. The spelling returned is the first one
    encountered for the winning value.
    """
    weights: "OrderedDict[str, int]" = OrderedDict()
    spelling: Dict[str, str] = {}
    for line in lines:
        value = line.batch.get(attribute)
        key = normalize_category(value)
        if key is None:
            continue
        weights[key] = weights.get(key, 0) + line.units
        spelling.setdefault(key, str(value).strip())
    if not weights:
        return None
    best_key = None
    best_weight = -1
    for key, weight in weights.items():
        if weight > best_weight:
            best_key, best_weight = key, weight
    return spelling[best_key]


def compute_averages(lines: List) -> Dict[str, Any]:
    """Realized value for every attribute: averages for numerics, consensus for categoricals."""
    averages: Dict[str, Any] = {PRIMARY_ATTRIBUTE: weighted_average(lines, PRIMARY_ATTRIBUTE)}
    for name in NUMERIC_ATTRIBUTES:
        averages[name] = weighted_average(lines, name)
    for name in CATEGORICAL_ATTRIBUTES:
        averages[name] = weighted_consensus(lines, name)
    return averages


def check_primary(average: Optional[float], primary: PrimaryTarget) -> TargetCheck:
    label = ATTRIBUTE_LABELS[PRIMARY_ATTRIBUTE]
    if average is None:
        return TargetCheck(
            PRIMARY_ATTRIBUTE, False, f"{label} average unavailable: no batches selected"
        )
    if primary.contains(average):
        message = f"{label} average {average:.1f} meets target range {primary.describe()}"
        return TargetCheck(PRIMARY_ATTRIBUTE, True, message, average)
    message = f"{label} average {average:.1f} is outside target range {primary.describe()}"
    return TargetCheck(PRIMARY_ATTRIBUTE, False, message, average)


def check_numeric(name: str, target: NumericTarget, average: Optional[float]) -> TargetCheck:
    label = ATTRIBUTE_LABELS.get(name, name)
    if average is None:
        return TargetCheck(name, False, f"{label}: no measured values in selection")
    if target.contains(average):
        message = f"{label} average {average:.2f} meets target {target.describe()}"
        return TargetCheck(name, True, message, average)

    if target.min_value is not None and average < target.min_value:
        bound = target.min_value
    else:
        bound = target.max_value
    ratio = abs(average - bound) / max(abs(bound), 1.0)
    message = f"{label} average {average:.2f} is outside target {target.describe()}"
    if ratio <= SECONDARY_TOLERANCE:
        message += f" (within {SECONDARY_TOLERANCE:.0%} tolerance)"
    return TargetCheck(name, False, message, average)


def check_categorical(
    name: str, target: CategoricalTarget, consensus: Optional[str]
) -> TargetCheck:
    label = ATTRIBUTE_LABELS.get(name, name)
    if consensus is None:
        return TargetCheck(name, False, f"{label}: no recorded values in selection")
    if target.matches(consensus):
        message = f"{label} '{consensus}' matches target '{target.match_value}'"
        return TargetCheck(name, True, message, consensus)
    message = f"{label} '{consensus}' does not match target '{target.match_value}'"
    return TargetCheck(name, False, message, consensus)


def build_checks(averages: Dict[str, Any], spec: TargetSpecification) -> List[TargetCheck]:
    """Primary check followed by one check per enabled secondary target, in priority order."""
    checks = [check_primary(averages.get(PRIMARY_ATTRIBUTE), spec.primary)]
    for name, target in spec.enabled_secondary():
        if isinstance(target, CategoricalTarget):
            checks.append(check_categorical(name, target, averages.get(name)))
        else:
            checks.append(check_numeric(name, target, averages.get(name)))
    return checks


def format_batch_numbers(batches: Iterable) -> str:
    """'#3, #7' for a list of batch snapshots."""
    return ", ".join(f"#{batch.batch_number}" for batch in batches)


def shortfall_notice(
    selected: int, batches_needed: int, strategy: SelectionStrategy, unit_size: int
) -> str:
    """Notice emitted when fewer batches were selected than requested."""
    phrase = STRATEGY_PHRASES[strategy]
    noun = "batch" if selected == 1 else "batches"
    return (
        f"Shortfall: no feasible selection of size {batches_needed} {phrase}; "
        f"selected {selected} {noun} ({selected * unit_size} of "
        f"{batches_needed * unit_size} units)"
    )
