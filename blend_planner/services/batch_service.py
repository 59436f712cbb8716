"""
Batch Service for the raw-material batch store.

This module provides functions for:
- Creating, updating and deleting lab-tested batches, singly or per lab report
- Holding batches out of optimization without consuming them
- Listing batches (by pool, report or attribute range) and building
  optimizer snapshots
- Summary statistics for the available pool

Batches from both pools (internal production and external suppliers) live in
one table; provenance is an enum column and every query filters on it.
Usage state changes to CONSUMED only through blend_service.commit_blend.
"""

import logging
from contextlib import nullcontext
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from blend_planner.models import Batch, Provenance, UsageState
from blend_planner.services.blending.optimizer import BatchSnapshot
from blend_planner.services.database import session_scope
from blend_planner.services.exceptions import (
    BatchInUse,
    BatchNotFound,
    BatchNumberExists,
    DatabaseError,
    ValidationError,
)
from blend_planner.services.logging_utils import get_service_logger, log_operation
from blend_planner.utils.constants import (
    CATEGORICAL_ATTRIBUTES,
    NUMERIC_ATTRIBUTES,
    PRIMARY_ATTRIBUTE,
    SECONDARY_ATTRIBUTES,
)

logger = get_service_logger(__name__)

METADATA_FIELDS = ("serial_number", "fiscal_year", "source_report", "report_date", "notes")
EDITABLE_FIELDS = (PRIMARY_ATTRIBUTE,) + SECONDARY_ATTRIBUTES + METADATA_FIELDS


def _coerce_provenance(provenance) -> Provenance:
    try:
        return Provenance(provenance)
    except ValueError:
        raise ValidationError([f"Unknown provenance '{provenance}'"])


def _validate_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    """Check field names and coerce numeric attributes to float."""
    errors = []
    cleaned = {}
    for name, value in values.items():
        if name not in EDITABLE_FIELDS:
            errors.append(f"Unknown batch field '{name}'")
            continue
        if name == PRIMARY_ATTRIBUTE or name in NUMERIC_ATTRIBUTES:
            if value is None or value == "":
                cleaned[name] = None
                continue
            if isinstance(value, bool):
                errors.append(f"{name}: expected a number, got {value!r}")
                continue
            try:
                cleaned[name] = float(value)
            except (TypeError, ValueError):
                errors.append(f"{name}: expected a number, got {value!r}")
        elif name in CATEGORICAL_ATTRIBUTES:
            cleaned[name] = str(value).strip() if value not in (None, "") else None
        else:
            cleaned[name] = value
    if errors:
        raise ValidationError(errors)
    return cleaned


def _get_batch_or_raise(batch_id: int, session) -> Batch:
    batch = session.query(Batch).filter(Batch.id == batch_id).first()
    if not batch:
        raise BatchNotFound(batch_id)
    return batch


def next_batch_number(provenance=Provenance.INTERNAL, *, session=None) -> int:
    """
    Next unused batch number in a provenance pool (max + 1, starting at 1).

    Args:
        provenance: Pool to number within
        session: Optional database session

    Returns:
        Next batch number
    """
    provenance = _coerce_provenance(provenance)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        current = (
            session.query(func.max(Batch.batch_number))
            .filter(Batch.provenance == provenance)
            .scalar()
        )
        return (current or 0) + 1


def create_batch(provenance=Provenance.INTERNAL, *, batch_number=None, session=None, **attributes) -> Batch:
    """
    Create a new batch in the given pool.

    Args:
        provenance: INTERNAL or EXTERNAL
        batch_number: Batch number; auto-assigned when None
        session: Optional database session
        **attributes: Quality attributes and metadata (bloom, viscosity, color,
            serial_number, fiscal_year, source_report, report_date, notes, ...)

    Returns:
        Created Batch

    Raises:
        ValidationError: If a field is unknown, a numeric value is not a
            number, or batch_number is not positive
        BatchNumberExists: If the number is already used in the pool
    """
    provenance = _coerce_provenance(provenance)
    values = _validate_fields(attributes)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        if batch_number is None:
            batch_number = next_batch_number(provenance, session=session)
        elif isinstance(batch_number, bool) or not isinstance(batch_number, int) or batch_number <= 0:
            raise ValidationError([f"Batch number must be a positive integer, got {batch_number!r}"])
        else:
            existing = (
                session.query(Batch)
                .filter(Batch.provenance == provenance, Batch.batch_number == batch_number)
                .first()
            )
            if existing:
                raise BatchNumberExists(provenance.value, batch_number)

        batch = Batch(
            provenance=provenance,
            batch_number=batch_number,
            usage_state=UsageState.AVAILABLE,
            **values,
        )
        session.add(batch)
        try:
            session.flush()
        except IntegrityError as e:
            raise DatabaseError(f"Failed to create batch #{batch_number}", e) from e

        log_operation(
            logger,
            operation="create_batch",
            outcome="success",
            batch_id=batch.id,
            batch_number=batch_number,
            provenance=provenance.value,
        )
        return batch


def create_batches(
    rows: List[Dict[str, Any]],
    provenance=Provenance.INTERNAL,
    *,
    source_report: Optional[str] = None,
    session=None,
) -> List[Batch]:
    """
    Create batches in bulk, e.g. from the rows of a parsed lab report.

    Rows are validated before anything is written; any bad row rejects the
    whole import. A row may carry its own "batch_number"; rows without one
    are numbered sequentially after the highest number in the pool (or in
    the import, whichever is higher).

    Args:
        rows: One dict of attributes and metadata per batch
        provenance: INTERNAL or EXTERNAL
        source_report: Report name stamped on rows that don't set their own
        session: Optional database session

    Returns:
        Created batches, in row order

    Raises:
        ValidationError: If any row has an unknown field, a non-numeric value
            or an invalid batch number
        BatchNumberExists: If a row's number is already used in the pool or
            repeated within the import
    """
    provenance = _coerce_provenance(provenance)

    errors = []
    prepared = []
    for index, row in enumerate(rows, start=1):
        row = dict(row)
        number = row.pop("batch_number", None)
        if number is not None and (
            isinstance(number, bool) or not isinstance(number, int) or number <= 0
        ):
            errors.append(f"Row {index}: batch number must be a positive integer, got {number!r}")
        if source_report is not None:
            row.setdefault("source_report", source_report)
        try:
            values = _validate_fields(row)
        except ValidationError as e:
            errors.extend(f"Row {index}: {error}" for error in e.errors)
            continue
        prepared.append((number, values))
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        explicit = [number for number, _ in prepared if number is not None]
        seen = set()
        for number in explicit:
            if number in seen:
                raise BatchNumberExists(provenance.value, number)
            seen.add(number)
        if explicit:
            taken = (
                session.query(Batch.batch_number)
                .filter(Batch.provenance == provenance, Batch.batch_number.in_(explicit))
                .order_by(Batch.batch_number)
                .first()
            )
            if taken:
                raise BatchNumberExists(provenance.value, taken[0])

        next_number = max([next_batch_number(provenance, session=session)] + [n + 1 for n in explicit])
        batches = []
        for number, values in prepared:
            if number is None:
                number = next_number
                next_number += 1
            batch = Batch(
                provenance=provenance,
                batch_number=number,
                usage_state=UsageState.AVAILABLE,
                **values,
            )
            session.add(batch)
            batches.append(batch)
        try:
            session.flush()
        except IntegrityError as e:
            raise DatabaseError(f"Failed to import {len(batches)} batches", e) from e

        log_operation(
            logger,
            operation="create_batches",
            outcome="success",
            provenance=provenance.value,
            source_report=source_report,
            batch_numbers=[batch.batch_number for batch in batches],
        )
        return batches


def get_batch(batch_id: int, *, session=None) -> Batch:
    """
    Get a batch by ID.

    Raises:
        BatchNotFound: If the batch doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return _get_batch_or_raise(batch_id, session)


def get_batch_by_number(batch_number: int, provenance=Provenance.INTERNAL, *, session=None) -> Batch:
    """
    Get a batch by its number within a provenance pool.

    Raises:
        BatchNotFound: If no batch has that number in the pool
    """
    provenance = _coerce_provenance(provenance)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = (
            session.query(Batch)
            .filter(Batch.provenance == provenance, Batch.batch_number == batch_number)
            .first()
        )
        if not batch:
            raise BatchNotFound(f"{provenance.value} #{batch_number}")
        return batch


def update_batch(batch_id: int, updates: Dict[str, Any], *, session=None) -> Batch:
    """
    Update quality attributes and metadata of a batch.

    Identity (provenance, batch_number) and usage state cannot be changed
    here: use set_batch_hold() or the blend service for state.

    Args:
        batch_id: Batch to update
        updates: Field name to new value
        session: Optional database session

    Returns:
        Updated Batch

    Raises:
        BatchNotFound: If the batch doesn't exist
        ValidationError: If a field is unknown or a numeric value is not a number
    """
    values = _validate_fields(updates)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = _get_batch_or_raise(batch_id, session)
        for name, value in values.items():
            setattr(batch, name, value)
        session.flush()
        return batch


def set_batch_hold(batch_id: int, held: bool, *, session=None) -> Batch:
    """
    Put a batch on hold, or release it back to the available pool.

    Held batches are never selected by the optimizer but are not consumed.

    Raises:
        BatchNotFound: If the batch doesn't exist
        BatchInUse: If the batch is consumed by a blend
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = _get_batch_or_raise(batch_id, session)
        if batch.is_consumed:
            raise BatchInUse(batch.id, batch.consumed_by_lot, "hold" if held else "release")

        batch.usage_state = UsageState.HELD if held else UsageState.AVAILABLE
        session.flush()

        log_operation(
            logger,
            operation="set_batch_hold",
            outcome="held" if held else "released",
            batch_id=batch.id,
            batch_number=batch.batch_number,
        )
        return batch


def delete_batch(batch_id: int, *, session=None) -> None:
    """
    Delete a batch that is not part of any blend.

    Raises:
        BatchNotFound: If the batch doesn't exist
        BatchInUse: If the batch is consumed by a blend
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = _get_batch_or_raise(batch_id, session)
        if batch.is_consumed:
            raise BatchInUse(batch.id, batch.consumed_by_lot, "delete")
        session.delete(batch)
        session.flush()
        log_operation(logger, operation="delete_batch", outcome="success", batch_id=batch_id)


def _delete_unconsumed(batches: List[Batch], session) -> int:
    consumed = [batch for batch in batches if batch.is_consumed]
    if consumed:
        raise BatchInUse(consumed[0].id, consumed[0].consumed_by_lot, "delete")
    for batch in batches:
        session.delete(batch)
    session.flush()
    return len(batches)


def delete_batches(batch_ids: List[int], *, session=None) -> int:
    """
    Delete several batches at once.

    Unknown ids are logged and skipped. Nothing is deleted if any of the
    batches is consumed.

    Returns:
        Number of batches deleted

    Raises:
        BatchInUse: If a batch is consumed by a blend
    """
    batch_ids = list(dict.fromkeys(batch_ids))
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batches = session.query(Batch).filter(Batch.id.in_(batch_ids)).all()
        missing = sorted(set(batch_ids) - {batch.id for batch in batches})
        if missing:
            log_operation(
                logger,
                operation="delete_batches",
                outcome="missing",
                level=logging.WARNING,
                batch_ids=missing,
            )
        deleted = _delete_unconsumed(batches, session)
        log_operation(logger, operation="delete_batches", outcome="success", deleted=deleted)
        return deleted


def delete_batches_by_source_report(source_report: str, *, provenance=None, session=None) -> int:
    """
    Delete every batch imported from one lab report.

    Nothing is deleted if any batch from the report is consumed.

    Returns:
        Number of batches deleted

    Raises:
        ValidationError: If source_report is blank
        BatchInUse: If a batch from the report is consumed by a blend
    """
    if not source_report or not source_report.strip():
        raise ValidationError(["Source report is required"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Batch).filter(Batch.source_report == source_report)
        if provenance is not None:
            query = query.filter(Batch.provenance == _coerce_provenance(provenance))
        deleted = _delete_unconsumed(query.all(), session)
        log_operation(
            logger,
            operation="delete_batches_by_source_report",
            outcome="success",
            source_report=source_report,
            deleted=deleted,
        )
        return deleted


def list_batches(
    *,
    provenance=None,
    fiscal_year: Optional[str] = None,
    usage_state=None,
    source_report: Optional[str] = None,
    session=None,
) -> List[Batch]:
    """
    List batches ordered by provenance and batch number.

    Args:
        provenance: Optional pool filter
        fiscal_year: Optional fiscal year filter
        usage_state: Optional usage state filter
        source_report: Optional lab report filter
        session: Optional database session

    Returns:
        List of Batch objects
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Batch)
        if provenance is not None:
            query = query.filter(Batch.provenance == _coerce_provenance(provenance))
        if fiscal_year:
            query = query.filter(Batch.fiscal_year == fiscal_year)
        if usage_state is not None:
            query = query.filter(Batch.usage_state == UsageState(usage_state))
        if source_report:
            query = query.filter(Batch.source_report == source_report)
        return query.order_by(Batch.provenance, Batch.batch_number).all()


def list_batches_in_range(
    attribute: str,
    min_value: float,
    max_value: float,
    *,
    provenance=None,
    session=None,
) -> List[Batch]:
    """
    Available batches whose numeric attribute lies in [min_value, max_value].

    Args:
        attribute: "bloom" or a numeric secondary attribute (e.g. "viscosity")
        min_value: Lower bound, inclusive
        max_value: Upper bound, inclusive
        provenance: Optional pool filter
        session: Optional database session

    Returns:
        List of Batch objects ordered by batch number

    Raises:
        ValidationError: If the attribute is not numeric or the bounds are inverted
    """
    if attribute != PRIMARY_ATTRIBUTE and attribute not in NUMERIC_ATTRIBUTES:
        raise ValidationError([f"'{attribute}' is not a numeric batch attribute"])
    if min_value > max_value:
        raise ValidationError([f"Minimum {min_value} is greater than maximum {max_value}"])

    column = getattr(Batch, attribute)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Batch).filter(
            Batch.usage_state == UsageState.AVAILABLE,
            column >= min_value,
            column <= max_value,
        )
        if provenance is not None:
            query = query.filter(Batch.provenance == _coerce_provenance(provenance))
        return query.order_by(Batch.batch_number, Batch.provenance).all()


def to_snapshot(batch: Batch) -> BatchSnapshot:
    """Read-only optimizer view of a batch."""
    return BatchSnapshot(
        id=batch.id,
        batch_number=batch.batch_number,
        bloom=batch.bloom,
        provenance=batch.provenance,
        attributes={name: getattr(batch, name) for name in SECONDARY_ATTRIBUTES},
        usage_state=batch.usage_state,
        fiscal_year=batch.fiscal_year,
    )


def get_selectable_batches(
    *,
    fiscal_year: Optional[str] = None,
    include_external: bool = False,
    only_external: bool = False,
    session=None,
) -> List[BatchSnapshot]:
    """
    Snapshot of the non-consumed pool for the optimizer.

    Held batches are included so the optimizer can report them; it never
    selects them.

    Args:
        fiscal_year: Optional fiscal year filter
        include_external: Include the external supplier pool
        only_external: Use only the external supplier pool
        session: Optional database session

    Returns:
        List of BatchSnapshot
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Batch).filter(Batch.usage_state != UsageState.CONSUMED)
        if only_external:
            query = query.filter(Batch.provenance == Provenance.EXTERNAL)
        elif not include_external:
            query = query.filter(Batch.provenance == Provenance.INTERNAL)
        if fiscal_year:
            query = query.filter(Batch.fiscal_year == fiscal_year)
        batches = query.order_by(Batch.batch_number, Batch.provenance).all()
        return [to_snapshot(batch) for batch in batches]


def _value_range(low, high, average) -> Optional[Dict[str, float]]:
    if low is None:
        return None
    return {"min": low, "max": high, "average": float(average)}


def get_batch_statistics(
    *,
    provenance=None,
    fiscal_year: Optional[str] = None,
    session=None,
) -> Dict[str, Any]:
    """
    Summary of the batch store.

    Counts and ranges are aggregated in the database.

    Returns:
        Dict with keys:
            - "total" (int): Number of batches
            - "available", "held", "consumed" (int): Counts per usage state
            - "bloom", "viscosity", "ph" (dict or None): min/max/average over
              available batches with a value
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        filters = []
        if provenance is not None:
            filters.append(Batch.provenance == _coerce_provenance(provenance))
        if fiscal_year:
            filters.append(Batch.fiscal_year == fiscal_year)

        counts = {state.value: 0 for state in UsageState}
        rows = (
            session.query(Batch.usage_state, func.count(Batch.id))
            .filter(*filters)
            .group_by(Batch.usage_state)
            .all()
        )
        for state, count in rows:
            counts[state.value] = count

        result: Dict[str, Any] = {"total": sum(counts.values()), **counts}
        for name in ("bloom", "viscosity", "ph"):
            column = getattr(Batch, name)
            low, high, average = (
                session.query(func.min(column), func.max(column), func.avg(column))
                .filter(*filters, Batch.usage_state == UsageState.AVAILABLE, column.isnot(None))
                .one()
            )
            result[name] = _value_range(low, high, average)
        return result
