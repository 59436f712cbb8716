"""
Blend Service for proposing, committing and reversing blends.

This module provides functions for:
- Proposing a blend from the current batch pool (optimizer run on a snapshot)
- Evaluating a manual batch selection
- Committing a proposal: recording the blend and consuming its batches in
  one transaction
- Deleting a blend inside its reversal window, releasing its batches
- Querying the blend ledger and the review/approval workflow
- Generating lot numbers

Commit uses a conditional UPDATE (only rows still AVAILABLE flip to
CONSUMED). If fewer rows flip than the proposal names, another commit got
there first: the transaction rolls back and BatchUnavailable is raised.
"""

import json
import logging
import random
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import joinedload

from blend_planner.models import Batch, Blend, BlendBatch, BlendStatus, UsageState
from blend_planner.services.batch_service import get_selectable_batches, to_snapshot
from blend_planner.services.blending.diagnostics import compute_averages
from blend_planner.services.blending.optimizer import (
    Proposal,
    ProposalLine,
    evaluate_selection,
    select,
)
from blend_planner.services.blending.reversal_guard import (
    check_reversal_window,
    is_reversible,
    reversal_deadline,
)
from blend_planner.services.blending.target_spec import TargetSpecification
from blend_planner.services.database import session_scope
from blend_planner.services.exceptions import (
    BatchNotFound,
    BatchUnavailable,
    BlendNotFound,
    DatabaseError,
    DuplicateLotId,
    ExpiredWindow,
    ValidationError,
)
from blend_planner.services.logging_utils import get_service_logger, log_operation
from blend_planner.utils.config import get_config
from blend_planner.utils.constants import MAX_LOT_NUMBER_LENGTH, PRIMARY_ATTRIBUTE
from blend_planner.utils.datetime_utils import ensure_utc, utc_now

logger = get_service_logger(__name__)

SpecLike = Union[TargetSpecification, Dict[str, Any]]


def _coerce_spec(spec: SpecLike) -> TargetSpecification:
    if isinstance(spec, TargetSpecification):
        return spec
    return TargetSpecification.from_dict(spec)


def _db_datetime(value: datetime) -> datetime:
    """Naive UTC datetime for comparisons against stored timestamps."""
    return ensure_utc(value).replace(tzinfo=None)


def _lock_blend_serials(session) -> None:
    """
    Serialize serial number assignment between concurrent commits.

    SQLite already holds the database write lock here (the batch UPDATE
    took it). PostgreSQL reads max(serial_number) under READ COMMITTED, so
    the blends table is locked against other writers until commit; plain
    reads are not blocked.
    """
    if session.get_bind().dialect.name == "postgresql":
        session.execute(text("LOCK TABLE blends IN SHARE ROW EXCLUSIVE MODE"))


def _release_batch(session, batch: Batch) -> None:
    batch.usage_state = UsageState.AVAILABLE
    batch.consumed_by_lot = None
    batch.consumed_at = None
    session.flush()


def _coerce_status(status) -> BlendStatus:
    try:
        return BlendStatus(status)
    except ValueError:
        raise ValidationError([f"Unknown blend status '{status}'"])


def _get_blend_or_raise(blend_id: int, session) -> Blend:
    blend = (
        session.query(Blend)
        .options(joinedload(Blend.lines))
        .filter(Blend.id == blend_id)
        .first()
    )
    if not blend:
        raise BlendNotFound(blend_id)
    return blend


# =============================================================================
# Proposals
# =============================================================================


def propose_blend(
    spec: SpecLike,
    *,
    desired_units: Optional[int] = None,
    forced_include: Optional[Iterable[int]] = None,
    forced_exclude: Optional[Iterable[int]] = None,
    fiscal_year: Optional[str] = None,
    include_external: bool = False,
    only_external: bool = False,
    rng: Optional[random.Random] = None,
    session=None,
) -> Proposal:
    """
    Run the optimizer against a snapshot of the non-consumed pool.

    Nothing is written: the proposal is reviewed by the caller and passed to
    commit_blend().

    Args:
        spec: TargetSpecification, or its dict form
        desired_units: Requested bags (rounded to the allocation unit)
        forced_include: Batch ids to include when compatible
        forced_exclude: Batch ids to leave out
        fiscal_year: Restrict the pool to one fiscal year
        include_external: Add the external supplier pool
        only_external: Use only the external supplier pool
        rng: Random source for the outside-range strategy
        session: Optional database session

    Returns:
        Proposal with diagnostics; empty or short when infeasible

    Raises:
        InvalidSpecification: If the specification or unit request is malformed
    """
    spec = _coerce_spec(spec)
    config = get_config()
    pool = get_selectable_batches(
        fiscal_year=fiscal_year,
        include_external=include_external,
        only_external=only_external,
        session=session,
    )

    proposal = select(
        pool,
        spec,
        forced_include or (),
        forced_exclude or (),
        desired_units,
        unit_size=config.bags_per_batch,
        kg_per_unit=config.kg_per_bag,
        rng=rng,
    )

    log_operation(
        logger,
        operation="propose_blend",
        outcome="satisfied" if proposal.is_satisfied else "unsatisfied",
        level=logging.DEBUG,
        pool_size=len(pool),
        batch_numbers=[line.batch.batch_number for line in proposal.lines],
        total_units=proposal.total_units,
    )
    return proposal


def propose_manual_blend(batch_ids: Iterable[int], spec: SpecLike, *, session=None) -> Proposal:
    """
    Build a proposal from a hand-picked list of batches.

    Raises:
        BatchNotFound: If any batch id doesn't exist
        InvalidSpecification: If the specification is malformed
    """
    spec = _coerce_spec(spec)
    config = get_config()
    batch_ids = list(dict.fromkeys(batch_ids))

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batches = session.query(Batch).filter(Batch.id.in_(batch_ids)).all()
        found = {batch.id: batch for batch in batches}
        for batch_id in batch_ids:
            if batch_id not in found:
                raise BatchNotFound(batch_id)
        snapshots = [to_snapshot(found[batch_id]) for batch_id in batch_ids]

    return evaluate_selection(
        snapshots,
        spec,
        unit_size=config.bags_per_batch,
        kg_per_unit=config.kg_per_bag,
    )


# =============================================================================
# Commit / Delete
# =============================================================================


def commit_blend(
    proposal: Proposal,
    lot_number: str,
    spec: Optional[SpecLike] = None,
    notes: Optional[str] = None,
    *,
    fiscal_year: Optional[str] = None,
    session=None,
) -> int:
    """
    Record a blend and consume its batches atomically.

    Either every batch in the proposal becomes CONSUMED and the blend record
    exists, or nothing changes.

    Args:
        proposal: Proposal from propose_blend() or propose_manual_blend()
        lot_number: Unique lot identifier for the blend
        spec: Target to freeze on the record (defaults to the proposal's)
        notes: Optional notes
        fiscal_year: Fiscal year tag for the record
        session: Optional database session. When given, a failure leaves the
            caller's transaction needing a rollback.

    Returns:
        ID of the new blend

    Raises:
        ValidationError: If the lot number is blank or too long, the proposal
            is empty or names a batch without a bloom value, or no
            specification is available
        DuplicateLotId: If the lot number is already used
        BatchUnavailable: If any batch was held or consumed since the proposal
        DatabaseError: If the database rejects the record
    """
    lot_number = (lot_number or "").strip()
    errors = []
    if not lot_number:
        errors.append("Lot number is required")
    elif len(lot_number) > MAX_LOT_NUMBER_LENGTH:
        errors.append(f"Lot number must be at most {MAX_LOT_NUMBER_LENGTH} characters")
    if proposal.is_empty:
        errors.append("Cannot commit an empty proposal")
    unmeasured = [line.batch.batch_number for line in proposal.lines if line.batch.bloom is None]
    if unmeasured:
        errors.append(
            "Batches without a bloom value cannot be blended: "
            + ", ".join(f"#{number}" for number in unmeasured)
        )
    spec = _coerce_spec(spec) if spec is not None else proposal.spec
    if spec is None:
        errors.append("A target specification is required")
    if errors:
        raise ValidationError(errors)

    batch_ids = proposal.batch_ids
    units_by_id = {line.batch.id: line.units for line in proposal.lines}

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        if session.query(Blend.id).filter(Blend.lot_number == lot_number).first():
            log_operation(
                logger,
                operation="commit_blend",
                outcome="duplicate_lot",
                level=logging.WARNING,
                lot_number=lot_number,
            )
            raise DuplicateLotId(lot_number)

        now = utc_now()
        flipped = (
            session.query(Batch)
            .filter(Batch.id.in_(batch_ids), Batch.usage_state == UsageState.AVAILABLE)
            .update(
                {
                    Batch.usage_state: UsageState.CONSUMED,
                    Batch.consumed_by_lot: lot_number,
                    Batch.consumed_at: now,
                },
                synchronize_session="fetch",
            )
        )

        rows = session.query(Batch).filter(Batch.id.in_(batch_ids)).all()
        if flipped != len(batch_ids):
            taken = {
                row.id
                for row in rows
                if row.usage_state == UsageState.CONSUMED and row.consumed_by_lot == lot_number
            }
            unavailable = [
                line.batch.batch_number for line in proposal.lines if line.batch.id not in taken
            ]
            log_operation(
                logger,
                operation="commit_blend",
                outcome="batch_unavailable",
                level=logging.WARNING,
                lot_number=lot_number,
                batch_numbers=unavailable,
            )
            raise BatchUnavailable(unavailable)

        cleared = sorted(row.batch_number for row in rows if row.bloom is None)
        if cleared:
            raise ValidationError(
                [
                    "Batches without a bloom value cannot be blended: "
                    + ", ".join(f"#{number}" for number in cleared)
                ]
            )

        rows.sort(key=lambda row: to_snapshot(row).sort_key)
        frozen_lines = [ProposalLine(to_snapshot(row), units_by_id[row.id]) for row in rows]
        averages = compute_averages(frozen_lines)
        total_units = sum(line.units for line in frozen_lines)

        _lock_blend_serials(session)
        serial = (session.query(func.max(Blend.serial_number)).scalar() or 0) + 1

        blend = Blend(
            serial_number=serial,
            lot_number=lot_number,
            fiscal_year=fiscal_year,
            status=BlendStatus.COMPLETED,
            target_min=spec.primary.min_value,
            target_max=spec.primary.max_value,
            target_mean=spec.primary.target_mean,
            strategy=spec.strategy,
            secondary_targets=json.dumps(spec.to_dict()["secondary"]),
            total_units=total_units,
            total_weight_kg=float(total_units * proposal.kg_per_unit),
            average_bloom=averages.get(PRIMARY_ATTRIBUTE),
            averages=json.dumps(averages),
            notes=notes,
        )
        for row in rows:
            blend.lines.append(
                BlendBatch(
                    batch_id=row.id,
                    batch_number=row.batch_number,
                    provenance=row.provenance,
                    units=units_by_id[row.id],
                    bloom=row.bloom,
                    attributes_data=json.dumps(row.attributes()),
                )
            )
        session.add(blend)

        try:
            session.flush()
        except IntegrityError as e:
            if "lot_number" in str(e.orig):
                raise DuplicateLotId(lot_number) from e
            raise DatabaseError(f"Failed to record blend '{lot_number}'", e) from e

        log_operation(
            logger,
            operation="commit_blend",
            outcome="success",
            blend_id=blend.id,
            serial_number=serial,
            lot_number=lot_number,
            batch_numbers=[row.batch_number for row in rows],
            total_units=total_units,
        )
        return blend.id


def delete_blend(blend_id: int, *, now: Optional[datetime] = None, session=None) -> Dict[str, Any]:
    """
    Delete a blend inside its reversal window and release its batches.

    Batches are released one at a time, each under its own savepoint; a
    batch that is missing, no longer consumed by this blend's lot, or whose
    update fails is logged and skipped. The record is deleted after the
    loop, in the same transaction.

    Args:
        blend_id: Blend to delete
        now: Current time (defaults to utc_now())
        session: Optional database session

    Returns:
        Dict with keys:
            - "blend_id" (int)
            - "lot_number" (str)
            - "released_batches" (List[int]): Batch numbers made available
            - "skipped_batches" (List[int]): Batch numbers left untouched

    Raises:
        BlendNotFound: If the blend doesn't exist
        ExpiredWindow: If the blend is older than the reversal window;
            its batches stay consumed
    """
    window = get_config().reversal_window

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        blend = _get_blend_or_raise(blend_id, session)
        lot_number = blend.lot_number

        try:
            check_reversal_window(blend.created_at, now=now, window=window, blend_id=blend.id)
        except ExpiredWindow as e:
            log_operation(
                logger,
                operation="delete_blend",
                outcome="expired_window",
                level=logging.WARNING,
                blend_id=blend.id,
                lot_number=lot_number,
                elapsed_hours=round(e.elapsed.total_seconds() / 3600, 2),
            )
            raise

        # pysqlite defers BEGIN to the first write; open the transaction
        # before the per-batch savepoints so releasing one cannot commit it.
        blend.updated_at = utc_now()
        session.flush()

        released: List[int] = []
        skipped: List[int] = []
        for line in blend.lines:
            batch = session.get(Batch, line.batch_id) if line.batch_id is not None else None
            if batch is None:
                log_operation(
                    logger,
                    operation="release_batch",
                    outcome="missing",
                    level=logging.WARNING,
                    blend_id=blend.id,
                    batch_number=line.batch_number,
                )
                skipped.append(line.batch_number)
                continue
            if batch.usage_state != UsageState.CONSUMED or batch.consumed_by_lot != lot_number:
                log_operation(
                    logger,
                    operation="release_batch",
                    outcome="reassigned",
                    level=logging.WARNING,
                    blend_id=blend.id,
                    batch_id=batch.id,
                    batch_number=batch.batch_number,
                    consumed_by_lot=batch.consumed_by_lot,
                )
                skipped.append(line.batch_number)
                continue

            try:
                with session.begin_nested():
                    _release_batch(session, batch)
            except SQLAlchemyError as e:
                log_operation(
                    logger,
                    operation="release_batch",
                    outcome="failed",
                    level=logging.ERROR,
                    blend_id=blend.id,
                    batch_id=batch.id,
                    batch_number=batch.batch_number,
                    error=str(e),
                )
                skipped.append(line.batch_number)
                continue
            released.append(batch.batch_number)

        session.delete(blend)
        session.flush()

        log_operation(
            logger,
            operation="delete_blend",
            outcome="success",
            blend_id=blend_id,
            lot_number=lot_number,
            released=released,
            skipped=skipped,
        )
        return {
            "blend_id": blend_id,
            "lot_number": lot_number,
            "released_batches": released,
            "skipped_batches": skipped,
        }


# =============================================================================
# Queries
# =============================================================================


def get_blend(blend_id: int, *, session=None) -> Dict[str, Any]:
    """
    Get a blend with its lines.

    Raises:
        BlendNotFound: If the blend doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return _blend_to_dict(_get_blend_or_raise(blend_id, session), include_lines=True)


def get_blend_by_lot(lot_number: str, *, session=None) -> Dict[str, Any]:
    """
    Get a blend by its lot number.

    Raises:
        BlendNotFound: If no blend has that lot number
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        blend = (
            session.query(Blend)
            .options(joinedload(Blend.lines))
            .filter(Blend.lot_number == (lot_number or "").strip())
            .first()
        )
        if not blend:
            raise BlendNotFound(lot_number)
        return _blend_to_dict(blend, include_lines=True)


def list_blends(
    *,
    fiscal_year: Optional[str] = None,
    status=None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
    include_lines: bool = False,
    session=None,
) -> List[Dict[str, Any]]:
    """
    Query the blend ledger, newest first.

    Args:
        fiscal_year: Optional fiscal year filter
        status: Optional BlendStatus filter
        start_date: Optional minimum created_at
        end_date: Optional maximum created_at
        limit: Maximum number of results (default 100)
        offset: Number of results to skip (for pagination)
        include_lines: If True, include the batch lines
        session: Optional database session

    Returns:
        List of blend dictionaries

    Raises:
        ValidationError: If status is not a BlendStatus value
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Blend)

        if fiscal_year:
            query = query.filter(Blend.fiscal_year == fiscal_year)
        if status is not None:
            query = query.filter(Blend.status == _coerce_status(status))
        if start_date:
            query = query.filter(Blend.created_at >= _db_datetime(start_date))
        if end_date:
            query = query.filter(Blend.created_at <= _db_datetime(end_date))
        if include_lines:
            query = query.options(joinedload(Blend.lines))

        query = query.order_by(Blend.created_at.desc(), Blend.serial_number.desc())
        query = query.offset(offset).limit(limit)

        return [_blend_to_dict(blend, include_lines) for blend in query.all()]


def update_blend_status(
    blend_id: int,
    status,
    *,
    reviewed_by: Optional[str] = None,
    notes: Optional[str] = None,
    session=None,
) -> Dict[str, Any]:
    """
    Move a blend through the review workflow.

    Approving stamps reviewed_at; other statuses clear it.

    Raises:
        BlendNotFound: If the blend doesn't exist
        ValidationError: If status is not a BlendStatus value
    """
    status = _coerce_status(status)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        blend = _get_blend_or_raise(blend_id, session)
        blend.status = status
        if reviewed_by is not None:
            blend.reviewed_by = reviewed_by
        blend.reviewed_at = utc_now() if status == BlendStatus.APPROVED else None
        if notes is not None:
            blend.notes = notes
        session.flush()

        log_operation(
            logger,
            operation="update_blend_status",
            outcome=status.value,
            blend_id=blend.id,
            reviewed_by=reviewed_by,
        )
        return _blend_to_dict(blend, include_lines=False)


def generate_lot_number(
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    session=None,
) -> str:
    """
    Suggest a lot number: {prefix}-{YYMM}-{site}-{DD}{NNN}-{R}.

    NNN is the number of blends created that UTC day plus one, R a random
    digit. The suggestion is not reserved; commit_blend() still checks it.

    Example:
        The first blend of 19 Oct 2025 gets something like HG-2510-MFI-19001-4.
    """
    config = get_config()
    now = ensure_utc(now) if now is not None else utc_now()
    rng = rng or random.Random()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        today = (
            session.query(func.count(Blend.id))
            .filter(
                Blend.created_at >= _db_datetime(day_start),
                Blend.created_at < _db_datetime(day_start + timedelta(days=1)),
            )
            .scalar()
        )

    sequence = (today or 0) + 1
    return (
        f"{config.lot_prefix}-{now:%y%m}-{config.lot_site}-"
        f"{now:%d}{sequence:03d}-{rng.randint(0, 9)}"
    )


def _blend_to_dict(blend: Blend, include_lines: bool = False) -> Dict[str, Any]:
    """Convert a Blend to a dictionary representation."""
    created_at = ensure_utc(blend.created_at)
    result = {
        "id": blend.id,
        "uuid": blend.uuid,
        "serial_number": blend.serial_number,
        "lot_number": blend.lot_number,
        "fiscal_year": blend.fiscal_year,
        "status": blend.status.value if blend.status else None,
        "target": {
            "min": blend.target_min,
            "max": blend.target_max,
            "mean": blend.target_mean,
            "strategy": blend.strategy.value if blend.strategy else None,
            "secondary": blend.get_secondary_targets(),
        },
        "total_units": blend.total_units,
        "total_weight_kg": blend.total_weight_kg,
        "average_bloom": blend.average_bloom,
        "averages": blend.get_averages(),
        "notes": blend.notes,
        "reviewed_by": blend.reviewed_by,
        "reviewed_at": ensure_utc(blend.reviewed_at).isoformat() if blend.reviewed_at else None,
        "created_at": created_at.isoformat() if created_at else None,
        "reversible_until": reversal_deadline(created_at).isoformat() if created_at else None,
        "is_reversible": is_reversible(created_at) if created_at else False,
    }

    if include_lines:
        result["lines"] = [
            {
                "batch_id": line.batch_id,
                "batch_number": line.batch_number,
                "provenance": line.provenance.value if line.provenance else None,
                "units": line.units,
                "bloom": line.bloom,
                "attributes": line.get_attributes(),
            }
            for line in blend.lines
        ]

    return result
