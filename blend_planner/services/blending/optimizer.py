"""
Batch selection optimizer.

Chooses a subset of batches, each contributing a fixed unit allocation, whose
unit-weighted averages meet a TargetSpecification as closely as possible.

Transaction boundary: Pure computation (no database access). select() works
on an in-memory snapshot of the pool and never changes batch state; the
blend service commits the proposal separately.

Algorithm:
    1. Validate the specification and normalize the requested units
    2. Filter the pool (held/consumed, excluded, missing bloom, strategy)
    3. Seed forced picks that fit the strategy, reducing them when they make
       the target unreachable
    4. Greedy fill (within-range / unconstrained-average) or balanced random
       draws from both sides of the range (outside-range)
    5. Single-swap repair when the bloom average ended up off-range
    6. Aggregate averages and status lines
"""

import random
from collections import Counter
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from blend_planner.models.enums import Provenance, SelectionStrategy, UsageState
from blend_planner.utils.constants import (
    BAGS_PER_BATCH,
    CATEGORICAL_PENALTY,
    FORCED_SUBSET_COMBINATION_CAP,
    KG_PER_BAG,
    MIN_PRIORITY_WEIGHT,
    PRIMARY_ATTRIBUTE,
    PRIORITY_STEP,
    RANGE_PENALTY,
    SECONDARY_WEIGHT,
    SWAP_WINDOW,
)

from .diagnostics import (
    TargetCheck,
    build_checks,
    compute_averages,
    format_batch_numbers,
    normalize_category,
    shortfall_notice,
)
from .target_spec import (
    CategoricalTarget,
    PrimaryTarget,
    TargetSpecification,
    normalize_units,
)


@dataclass(frozen=True)
class BatchSnapshot:
    """Read-only view of a batch as the optimizer sees it.

    Attributes:
        id: Batch primary key
        batch_number: Number within the provenance pool
        provenance: INTERNAL or EXTERNAL
        bloom: Primary attribute, None when not measured
        attributes: Secondary attribute values by name
        usage_state: Usage state at snapshot time
        fiscal_year: Fiscal year tag
    """

    id: int
    batch_number: int
    bloom: Optional[float]
    provenance: Provenance = Provenance.INTERNAL
    attributes: Dict[str, Any] = field(default_factory=dict)
    usage_state: UsageState = UsageState.AVAILABLE
    fiscal_year: Optional[str] = None

    def get(self, attribute: str) -> Any:
        if attribute == PRIMARY_ATTRIBUTE:
            return self.bloom
        return self.attributes.get(attribute)

    @property
    def is_available(self) -> bool:
        return self.usage_state == UsageState.AVAILABLE

    @property
    def sort_key(self) -> Tuple[int, int, int]:
        """Lowest batch number first, internal before external, then id."""
        return (self.batch_number, 0 if self.provenance == Provenance.INTERNAL else 1, self.id)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "batch_number": self.batch_number,
            "provenance": self.provenance.value,
            "bloom": self.bloom,
            "usage_state": self.usage_state.value,
            "fiscal_year": self.fiscal_year,
        }
        result.update(self.attributes)
        return result


@dataclass
class ProposalLine:
    """One selected batch and the units it contributes."""

    batch: BatchSnapshot
    units: int


@dataclass
class Proposal:
    """Result of a selection run.

    Attributes:
        lines: Selected batches, sorted by batch number
        averages: Realized unit-weighted value per attribute
        checks: Primary check, then one per enabled secondary target
        notices: Advisory messages (exclusions, held batches, shortfall)
        excluded_forced_ids: Forced picks that were not included
        requested_units: Normalized unit request
        unit_size: Units contributed by each batch
        kg_per_unit: Weight of one unit in kilograms
        strategy: Primary selection strategy
        spec: Specification the proposal was built against
    """

    lines: List[ProposalLine]
    averages: Dict[str, Any]
    checks: List[TargetCheck]
    notices: List[str]
    excluded_forced_ids: List[int]
    requested_units: int
    unit_size: int = BAGS_PER_BATCH
    kg_per_unit: int = KG_PER_BAG
    strategy: SelectionStrategy = SelectionStrategy.WITHIN_RANGE
    spec: Optional[TargetSpecification] = None

    @property
    def total_units(self) -> int:
        return sum(line.units for line in self.lines)

    @property
    def total_weight_kg(self) -> float:
        return float(self.total_units * self.kg_per_unit)

    @property
    def batch_ids(self) -> List[int]:
        return [line.batch.id for line in self.lines]

    @property
    def primary_average(self) -> Optional[float]:
        return self.averages.get(PRIMARY_ATTRIBUTE)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def shortfall_units(self) -> int:
        return max(self.requested_units - self.total_units, 0)

    @property
    def is_satisfied(self) -> bool:
        """True when the request was filled and every check passed."""
        return (
            not self.is_empty
            and self.shortfall_units == 0
            and all(check.satisfied for check in self.checks)
        )

    @property
    def messages(self) -> List[str]:
        return [check.message for check in self.checks] + list(self.notices)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lines": [
                {**line.batch.to_dict(), "units": line.units} for line in self.lines
            ],
            "averages": dict(self.averages),
            "checks": [check.to_dict() for check in self.checks],
            "notices": list(self.notices),
            "excluded_forced_ids": list(self.excluded_forced_ids),
            "requested_units": self.requested_units,
            "total_units": self.total_units,
            "total_weight_kg": self.total_weight_kg,
            "strategy": self.strategy.value,
            "is_satisfied": self.is_satisfied,
        }


class _SelectionTotals:
    """Running sums over the current selection, used to score candidates."""

    def __init__(self, selected: Sequence[BatchSnapshot], spec: TargetSpecification):
        self.count = len(selected)
        self.bloom_sum = sum(batch.bloom for batch in selected)
        self.numeric: Dict[str, Tuple[float, int]] = {}
        self.consensus: Dict[str, Optional[str]] = {}

        for name, target in spec.enabled_secondary():
            if isinstance(target, CategoricalTarget):
                counts = Counter()
                order: List[str] = []
                for batch in selected:
                    key = normalize_category(batch.get(name))
                    if key is None:
                        continue
                    if key not in counts:
                        order.append(key)
                    counts[key] += 1
                # most common, ties to the earliest seen
                self.consensus[name] = (
                    max(order, key=lambda k: (counts[k], -order.index(k))) if order else None
                )
            else:
                values = [batch.get(name) for batch in selected if batch.get(name) is not None]
                self.numeric[name] = (sum(values), len(values))

    def bloom_average_with(self, candidate: BatchSnapshot) -> float:
        return (self.bloom_sum + candidate.bloom) / (self.count + 1)

    def numeric_average_with(self, name: str, candidate: BatchSnapshot) -> Optional[float]:
        total, count = self.numeric.get(name, (0.0, 0))
        value = candidate.get(name)
        if value is not None:
            total += value
            count += 1
        if count == 0:
            return None
        return total / count


def _priority_weight(rank: int) -> float:
    return max(1.0 - PRIORITY_STEP * rank, MIN_PRIORITY_WEIGHT)


def _secondary_score(
    candidate: BatchSnapshot, totals: _SelectionTotals, spec: TargetSpecification
) -> float:
    score = 0.0
    for rank, (name, target) in enumerate(spec.enabled_secondary()):
        weight = _priority_weight(rank)
        if isinstance(target, CategoricalTarget):
            value = normalize_category(candidate.get(name))
            if value is None:
                continue
            consensus = totals.consensus.get(name)
            if consensus is not None:
                mismatch = value != consensus
            else:
                mismatch = not target.matches(value)
            if mismatch:
                score += weight * CATEGORICAL_PENALTY
        else:
            score += weight * target.distance(totals.numeric_average_with(name, candidate))
    return score


def _candidate_score(
    candidate: BatchSnapshot, totals: _SelectionTotals, spec: TargetSpecification
) -> float:
    primary = spec.primary
    next_average = totals.bloom_average_with(candidate)
    score = abs(primary.target_mean - next_average)
    if primary.strategy == SelectionStrategy.WITHIN_RANGE and not primary.contains(next_average):
        score += RANGE_PENALTY
    if spec.secondary:
        score += SECONDARY_WEIGHT * _secondary_score(candidate, totals, spec)
    return score


def _greedy_fill(
    selected: List[BatchSnapshot],
    candidates: List[BatchSnapshot],
    batches_needed: int,
    spec: TargetSpecification,
) -> None:
    while len(selected) < batches_needed and candidates:
        totals = _SelectionTotals(selected, spec)
        best = min(
            candidates,
            key=lambda batch: (_candidate_score(batch, totals, spec), batch.sort_key),
        )
        selected.append(best)
        candidates.remove(best)


def _balanced_draw(
    selected: List[BatchSnapshot],
    candidates: List[BatchSnapshot],
    batches_needed: int,
    primary: PrimaryTarget,
    rng: random.Random,
) -> None:
    below = [batch for batch in candidates if batch.bloom < primary.min_value]
    above = [batch for batch in candidates if batch.bloom > primary.max_value]
    take_below = True
    while len(selected) < batches_needed and (below or above):
        if (take_below and below) or not above:
            group = below
        else:
            group = above
        pick = group.pop(rng.randrange(len(group)))
        selected.append(pick)
        candidates.remove(pick)
        take_below = not take_below


def _swap_repair(
    selected: List[BatchSnapshot],
    candidates: List[BatchSnapshot],
    forced_ids: set,
    primary: PrimaryTarget,
    swap_window: int,
) -> None:
    if not selected:
        return
    count = len(selected)
    total = sum(batch.bloom for batch in selected)
    if primary.contains(total / count):
        return

    target_mean = primary.target_mean
    for index in range(count):
        current = selected[index]
        if current.id in forced_ids:
            continue
        average = total / count
        for candidate in candidates[:swap_window]:
            new_average = (total - current.bloom + candidate.bloom) / count
            back_in_range = primary.contains(new_average) and not primary.contains(average)
            closer = abs(target_mean - new_average) < abs(target_mean - average)
            if back_in_range or closer:
                selected[index] = candidate
                candidates.remove(candidate)
                candidates.append(current)
                candidates.sort(key=lambda batch: batch.sort_key)
                total = total - current.bloom + candidate.bloom
                break
        if primary.contains(total / count):
            return


def _reachable(
    kept: Sequence[BatchSnapshot],
    candidates: Sequence[BatchSnapshot],
    batches_needed: int,
    primary: PrimaryTarget,
) -> bool:
    """True if some fill of the open slots could land the bloom average in range."""
    slots = min(max(batches_needed - len(kept), 0), len(candidates))
    count = len(kept) + slots
    if count == 0:
        return False
    values = sorted(batch.bloom for batch in candidates)
    kept_sum = sum(batch.bloom for batch in kept)
    lowest = (kept_sum + sum(values[:slots])) / count
    highest = (kept_sum + sum(values[len(values) - slots:])) / count
    return lowest <= primary.max_value and highest >= primary.min_value


def _reduce_forced(
    forced: List[BatchSnapshot],
    candidates: Sequence[BatchSnapshot],
    batches_needed: int,
    primary: PrimaryTarget,
) -> Tuple[List[BatchSnapshot], List[BatchSnapshot]]:
    """Drop the fewest forced picks that make the target reachable again.

    Returns:
        (kept, removed). When no subset within the combination cap works,
        every forced pick is kept.
    """
    if not forced or _reachable(forced, candidates, batches_needed, primary):
        return forced, []

    evaluated = 0
    for remove_count in range(1, len(forced) + 1):
        for removed_idx in combinations(range(len(forced)), remove_count):
            evaluated += 1
            if evaluated > FORCED_SUBSET_COMBINATION_CAP:
                return forced, []
            kept = [batch for i, batch in enumerate(forced) if i not in removed_idx]
            if _reachable(kept, candidates, batches_needed, primary):
                return kept, [forced[i] for i in removed_idx]
    return forced, []


def _build_proposal(
    selected: Iterable[BatchSnapshot],
    spec: TargetSpecification,
    requested_units: int,
    unit_size: int,
    kg_per_unit: int,
    notices: List[str],
    excluded_forced_ids: List[int],
) -> Proposal:
    lines = [
        ProposalLine(batch=batch, units=unit_size)
        for batch in sorted(selected, key=lambda batch: batch.sort_key)
    ]
    averages = compute_averages(lines)
    checks = build_checks(averages, spec)

    batches_needed = requested_units // unit_size
    if len(lines) < batches_needed:
        notices.append(shortfall_notice(len(lines), batches_needed, spec.strategy, unit_size))

    return Proposal(
        lines=lines,
        averages=averages,
        checks=checks,
        notices=notices,
        excluded_forced_ids=excluded_forced_ids,
        requested_units=requested_units,
        unit_size=unit_size,
        kg_per_unit=kg_per_unit,
        strategy=spec.strategy,
        spec=spec,
    )


def select(
    pool: Iterable[BatchSnapshot],
    spec: TargetSpecification,
    forced_include: Iterable[int] = (),
    forced_exclude: Iterable[int] = (),
    desired_units: Optional[int] = None,
    *,
    unit_size: int = BAGS_PER_BATCH,
    kg_per_unit: int = KG_PER_BAG,
    swap_window: int = SWAP_WINDOW,
    rng: Optional[random.Random] = None,
) -> Proposal:
    """Select batches for a blend.

    Transaction boundary: Pure computation (no database access).

    An infeasible request is not an error: the proposal comes back empty or
    short, with a shortfall notice.

    Args:
        pool: Batch snapshots to choose from (held and consumed are skipped)
        spec: Target specification
        forced_include: Batch ids that must be included when compatible
        forced_exclude: Batch ids that must not be included
        desired_units: Requested units, rounded to the allocation unit
        unit_size: Units contributed by each selected batch
        kg_per_unit: Weight of one unit
        swap_window: Remaining candidates scanned per selected batch during repair
        rng: Random source for the outside-range strategy

    Returns:
        Proposal with lines, averages, checks and notices

    Raises:
        InvalidSpecification: If the specification or unit request is malformed
    """
    spec.validate()
    requested_units = normalize_units(desired_units, unit_size)
    batches_needed = requested_units // unit_size
    primary = spec.primary
    rng = rng or random.Random()

    pool = sorted(pool, key=lambda batch: batch.sort_key)
    by_id = {batch.id: batch for batch in pool}
    exclude_ids = set(forced_exclude or ())
    notices: List[str] = []
    excluded_forced_ids: List[int] = []

    # Filter
    held = [batch for batch in pool if batch.usage_state == UsageState.HELD]
    if held:
        notices.append(f"Held batches excluded from selection: {format_batch_numbers(held)}")

    excluded = [batch for batch in pool if batch.id in exclude_ids]
    if excluded:
        notices.append(f"Batches excluded by request: {format_batch_numbers(excluded)}")

    eligible = [
        batch for batch in pool if batch.is_available and batch.id not in exclude_ids
    ]
    unmeasured = [batch for batch in eligible if batch.bloom is None]
    if unmeasured:
        notices.append(f"Batches without a bloom value skipped: {format_batch_numbers(unmeasured)}")
    eligible = [batch for batch in eligible if batch.bloom is not None]

    # Forced picks
    selected: List[BatchSnapshot] = []
    for batch_id in dict.fromkeys(forced_include or ()):
        batch = by_id.get(batch_id)
        if batch is None:
            notices.append(f"Forced batch id {batch_id} is not in the selectable pool")
        elif batch_id in exclude_ids:
            notices.append(f"Forced batch #{batch.batch_number} is also excluded and was left out")
        elif not batch.is_available:
            notices.append(
                f"Forced batch #{batch.batch_number} is {batch.usage_state.value} and was left out"
            )
        elif batch.bloom is None:
            notices.append(f"Forced batch #{batch.batch_number} has no bloom value and was left out")
        elif not primary.admits(batch.bloom):
            notices.append(
                f"Forced batch #{batch.batch_number} (bloom {batch.bloom:g}) is incompatible "
                f"with the {primary.strategy.value} strategy for {primary.describe()} "
                f"and was excluded"
            )
        else:
            selected.append(batch)
            continue
        excluded_forced_ids.append(batch_id)

    if len(selected) > batches_needed:
        dropped = selected[batches_needed:]
        selected = selected[:batches_needed]
        notices.append(
            f"Forced batches beyond the {batches_needed} needed were dropped: "
            f"{format_batch_numbers(dropped)}"
        )
        excluded_forced_ids.extend(batch.id for batch in dropped)

    selected_ids = {batch.id for batch in selected}
    candidates = [
        batch
        for batch in eligible
        if batch.id not in selected_ids and primary.admits(batch.bloom)
    ]

    if primary.strategy == SelectionStrategy.UNCONSTRAINED_AVERAGE and selected:
        selected, removed = _reduce_forced(selected, candidates, batches_needed, primary)
        if removed:
            notices.append(
                f"Forced batches removed to keep {primary.describe()} reachable: "
                f"{format_batch_numbers(removed)}"
            )
            excluded_forced_ids.extend(batch.id for batch in removed)

    if not candidates and not selected:
        notices.append(
            f"No candidate batches for the {primary.strategy.value} strategy "
            f"with target {primary.describe()}"
        )

    forced_ids = {batch.id for batch in selected}

    # Fill
    if primary.strategy == SelectionStrategy.OUTSIDE_RANGE:
        _balanced_draw(selected, candidates, batches_needed, primary, rng)
    else:
        _greedy_fill(selected, candidates, batches_needed, spec)
        _swap_repair(selected, candidates, forced_ids, primary, swap_window)

    return _build_proposal(
        selected,
        spec,
        requested_units,
        unit_size,
        kg_per_unit,
        notices,
        excluded_forced_ids,
    )


def evaluate_selection(
    batches: Iterable[BatchSnapshot],
    spec: TargetSpecification,
    *,
    unit_size: int = BAGS_PER_BATCH,
    kg_per_unit: int = KG_PER_BAG,
) -> Proposal:
    """Build a proposal from an explicit batch list (manual selection).

    Transaction boundary: Pure computation (no database access).

    Batches are taken as given, except that batches without a bloom value
    are left out; unavailable ones are reported in the notices and will be
    rejected at commit.

    Raises:
        InvalidSpecification: If the specification is malformed
    """
    spec.validate()
    unique = list({batch.id: batch for batch in batches}.values())

    notices: List[str] = []
    unmeasured = [batch for batch in unique if batch.bloom is None]
    if unmeasured:
        notices.append(f"Batches without a bloom value skipped: {format_batch_numbers(unmeasured)}")
    measured = [batch for batch in unique if batch.bloom is not None]

    unavailable = [batch for batch in measured if not batch.is_available]
    if unavailable:
        notices.append(f"Batches not available for blending: {format_batch_numbers(unavailable)}")

    return _build_proposal(
        measured,
        spec,
        len(unique) * unit_size,
        unit_size,
        kg_per_unit,
        notices,
        [],
    )
