"""Tests for the blend ledger service.

Covers proposing from the stored pool, committing (atomic consumption,
lot uniqueness, batch exclusivity, racing commits), reversal inside and
outside the window, queries and the review workflow.
"""

import logging
import random
import re
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import scoped_session, sessionmaker

from blend_planner.models import Batch, Blend, BlendStatus, UsageState
from blend_planner.services import batch_service, blend_service
from blend_planner.services.blending import PrimaryTarget, TargetSpecification
from blend_planner.services.blending.optimizer import Proposal, ProposalLine
from blend_planner.services.blending.target_spec import NumericTarget
from blend_planner.services import database as db_module
from blend_planner.services.database import create_database_engine, init_database, session_scope
from blend_planner.services.exceptions import (
    BatchNotFound,
    BatchUnavailable,
    BlendNotFound,
    DuplicateLotId,
    ExpiredWindow,
    ValidationError,
)
from blend_planner.utils.config import reset_config
from blend_planner.utils.datetime_utils import ensure_utc, utc_now


@pytest.fixture
def spec():
    return TargetSpecification(primary=PrimaryTarget(240, 260))


def _commit(spec, lot_number, desired_units=20, **kwargs):
    proposal = blend_service.propose_blend(spec, desired_units=desired_units, **kwargs)
    return proposal, blend_service.commit_blend(proposal, lot_number)


def _created_at(blend_id):
    with session_scope() as session:
        return ensure_utc(session.get(Blend, blend_id).created_at)


class TestProposeBlend:
    """Tests for propose_blend() and propose_manual_blend()."""

    def test_three_batch_pool_shortfall(self, three_batch_pool, spec):
        proposal = blend_service.propose_blend(spec, desired_units=20)

        assert proposal.batch_ids == [three_batch_pool["B"].id]
        assert any("no feasible selection of size 2 within range" in m for m in proposal.messages)

    def test_forced_incompatible_batch_excluded(self, three_batch_pool, spec):
        batch_a = three_batch_pool["A"]

        proposal = blend_service.propose_blend(
            spec, desired_units=10, forced_include=[batch_a.id]
        )

        assert proposal.excluded_forced_ids == [batch_a.id]
        assert batch_a.id not in proposal.batch_ids

    def test_held_batches_skipped(self, mid_range_pool, spec):
        batch_service.set_batch_hold(mid_range_pool[3].id, True)

        proposal = blend_service.propose_blend(spec, desired_units=40)

        assert mid_range_pool[3].id not in proposal.batch_ids
        assert any("Held batches" in notice for notice in proposal.notices)

    def test_accepts_dict_specification(self, mid_range_pool):
        proposal = blend_service.propose_blend(
            {"primary": {"min": 240, "max": 260}}, desired_units=20
        )
        assert proposal.total_units == 20

    def test_fiscal_year_scope(self, make_batch, spec):
        make_batch(250, fiscal_year="2024-25")
        current = make_batch(251, fiscal_year="2025-26")

        proposal = blend_service.propose_blend(spec, desired_units=20, fiscal_year="2025-26")

        assert proposal.batch_ids == [current.id]

    def test_external_pool_opt_in(self, make_batch, spec):
        make_batch(250)
        external = make_batch(252, provenance="external")

        internal_only = blend_service.propose_blend(spec, desired_units=20)
        combined = blend_service.propose_blend(spec, desired_units=20, include_external=True)

        assert external.id not in internal_only.batch_ids
        assert external.id in combined.batch_ids

    def test_manual_selection(self, three_batch_pool, spec):
        ids = [three_batch_pool["A"].id, three_batch_pool["C"].id]

        proposal = blend_service.propose_manual_blend(ids, spec)

        assert proposal.primary_average == pytest.approx(250)
        assert proposal.total_units == 20

    def test_manual_selection_unknown_batch(self, three_batch_pool, spec):
        with pytest.raises(BatchNotFound):
            blend_service.propose_manual_blend([999], spec)

    def test_manual_selection_skips_batch_without_bloom(self, make_batch, spec):
        measured = make_batch(250)
        blank = make_batch(None, viscosity=3.5)

        proposal = blend_service.propose_manual_blend([measured.id, blank.id], spec)

        assert proposal.batch_ids == [measured.id]
        assert any("without a bloom value" in notice for notice in proposal.notices)


class TestCommitBlend:
    """Tests for commit_blend()."""

    def test_commit_consumes_batches(self, mid_range_pool, spec):
        proposal, blend_id = _commit(spec, "LOT-001")

        for batch_id in proposal.batch_ids:
            batch = batch_service.get_batch(batch_id)
            assert batch.usage_state == UsageState.CONSUMED
            assert batch.consumed_by_lot == "LOT-001"
            assert batch.consumed_at is not None

        blend = blend_service.get_blend(blend_id)
        assert blend["serial_number"] == 1
        assert blend["lot_number"] == "LOT-001"
        assert blend["status"] == "completed"
        assert blend["total_units"] == 20
        assert blend["total_weight_kg"] == 500.0
        assert blend["average_bloom"] == pytest.approx(proposal.primary_average)
        assert [line["batch_id"] for line in blend["lines"]] == proposal.batch_ids
        assert blend["target"]["min"] == 240
        assert blend["target"]["mean"] == 250

    def test_serial_numbers_increase(self, mid_range_pool, spec):
        _, first = _commit(spec, "LOT-001")
        _, second = _commit(spec, "LOT-002")

        assert blend_service.get_blend(first)["serial_number"] == 1
        assert blend_service.get_blend(second)["serial_number"] == 2

    def test_committed_blends_use_disjoint_batches(self, mid_range_pool, spec):
        first_proposal, _ = _commit(spec, "LOT-001")
        second_proposal, _ = _commit(spec, "LOT-002")

        assert set(first_proposal.batch_ids).isdisjoint(second_proposal.batch_ids)

    def test_duplicate_lot_rejected(self, mid_range_pool, spec):
        _commit(spec, "LOT-001")
        proposal = blend_service.propose_blend(spec, desired_units=20)

        with pytest.raises(DuplicateLotId) as exc_info:
            blend_service.commit_blend(proposal, "LOT-001")

        assert exc_info.value.lot_number == "LOT-001"
        for batch_id in proposal.batch_ids:
            assert batch_service.get_batch(batch_id).usage_state == UsageState.AVAILABLE

    def test_stale_proposal_rejected(self, mid_range_pool, spec):
        """The first commit wins; replaying its proposal fails without side effects."""
        proposal, _ = _commit(spec, "LOT-001")

        with pytest.raises(BatchUnavailable) as exc_info:
            blend_service.commit_blend(proposal, "LOT-002")

        assert sorted(exc_info.value.batch_numbers) == sorted(
            line.batch.batch_number for line in proposal.lines
        )
        assert len(blend_service.list_blends()) == 1

    def test_partial_conflict_rolls_back_everything(self, mid_range_pool, spec):
        proposal = blend_service.propose_blend(spec, desired_units=20)
        first_id, second_id = proposal.batch_ids
        batch_service.set_batch_hold(second_id, True)

        with pytest.raises(BatchUnavailable) as exc_info:
            blend_service.commit_blend(proposal, "LOT-001")

        assert exc_info.value.batch_numbers == [proposal.lines[1].batch.batch_number]
        first = batch_service.get_batch(first_id)
        assert first.usage_state == UsageState.AVAILABLE
        assert first.consumed_by_lot is None
        assert blend_service.list_blends() == []

    def test_blank_lot_number_rejected(self, mid_range_pool, spec):
        proposal = blend_service.propose_blend(spec, desired_units=20)
        with pytest.raises(ValidationError):
            blend_service.commit_blend(proposal, "   ")

    def test_empty_proposal_rejected(self, three_batch_pool):
        spec = TargetSpecification(primary=PrimaryTarget(500, 600))
        proposal = blend_service.propose_blend(spec, desired_units=10)

        assert proposal.is_empty
        with pytest.raises(ValidationError):
            blend_service.commit_blend(proposal, "LOT-001")

    def test_batch_without_bloom_never_consumed(self, make_batch, spec):
        measured = make_batch(250)
        blank = make_batch(None, viscosity=3.5)
        proposal = blend_service.propose_manual_blend([measured.id, blank.id], spec)

        blend_service.commit_blend(proposal, "LOT-X")

        assert batch_service.get_batch(measured.id).usage_state == UsageState.CONSUMED
        assert batch_service.get_batch(blank.id).usage_state == UsageState.AVAILABLE

    def test_hand_built_line_without_bloom_rejected(self, make_batch, spec):
        blank = make_batch(None, viscosity=3.5)
        proposal = Proposal(
            lines=[ProposalLine(batch_service.to_snapshot(blank), 10)],
            averages={},
            checks=[],
            notices=[],
            excluded_forced_ids=[],
            requested_units=10,
            spec=spec,
        )

        with pytest.raises(ValidationError) as exc_info:
            blend_service.commit_blend(proposal, "LOT-X")

        assert "#1" in str(exc_info.value)
        assert batch_service.get_batch(blank.id).usage_state == UsageState.AVAILABLE

    def test_bloom_cleared_after_proposal_rolls_back(self, make_batch, spec):
        batch = make_batch(250)
        proposal = blend_service.propose_manual_blend([batch.id], spec)
        batch_service.update_batch(batch.id, {"bloom": None})

        with pytest.raises(ValidationError):
            blend_service.commit_blend(proposal, "LOT-X")

        assert batch_service.get_batch(batch.id).usage_state == UsageState.AVAILABLE
        assert blend_service.list_blends() == []

    def test_postgresql_locks_blend_serials(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"

        blend_service._lock_blend_serials(session)

        statement = session.execute.call_args[0][0]
        assert "LOCK TABLE blends" in str(statement)

    def test_sqlite_takes_no_table_lock(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "sqlite"

        blend_service._lock_blend_serials(session)

        session.execute.assert_not_called()

    def test_attribute_snapshot_frozen(self, make_batch, spec):
        batch = make_batch(250, viscosity=3.5)
        _, blend_id = _commit(spec, "LOT-001", desired_units=10)

        batch_service.update_batch(batch.id, {"viscosity": 9.9})

        line = blend_service.get_blend(blend_id)["lines"][0]
        assert line["attributes"]["viscosity"] == 3.5
        assert blend_service.get_blend(blend_id)["averages"]["viscosity"] == 3.5

    def test_secondary_targets_stored(self, mid_range_pool):
        spec = TargetSpecification(
            primary=PrimaryTarget(240, 260),
            secondary={"viscosity": NumericTarget(min_value=3.0, max_value=4.0)},
        )
        _, blend_id = _commit(spec, "LOT-001")

        stored = blend_service.get_blend(blend_id)["target"]["secondary"]
        assert stored == {"viscosity": {"enabled": True, "min": 3.0, "max": 4.0}}

    def test_commit_in_caller_session(self, mid_range_pool, spec):
        proposal = blend_service.propose_blend(spec, desired_units=20)

        with session_scope() as session:
            blend_id = blend_service.commit_blend(proposal, "LOT-001", session=session)
            assert session.get(Blend, blend_id).lot_number == "LOT-001"

        assert blend_service.get_blend_by_lot("LOT-001")["id"] == blend_id


class TestDeleteBlend:
    """Tests for delete_blend() and the reversal window."""

    def test_round_trip_restores_batches(self, mid_range_pool, spec):
        proposal, blend_id = _commit(spec, "LOT-001")

        result = blend_service.delete_blend(blend_id)

        assert sorted(result["released_batches"]) == sorted(
            line.batch.batch_number for line in proposal.lines
        )
        assert result["skipped_batches"] == []
        for batch_id in proposal.batch_ids:
            batch = batch_service.get_batch(batch_id)
            assert batch.usage_state == UsageState.AVAILABLE
            assert batch.consumed_by_lot is None
            assert batch.consumed_at is None
        with pytest.raises(BlendNotFound):
            blend_service.get_blend(blend_id)

    def test_released_batches_can_be_reused(self, mid_range_pool, spec):
        proposal, blend_id = _commit(spec, "LOT-001")
        blend_service.delete_blend(blend_id)

        again = blend_service.commit_blend(proposal, "LOT-002")

        assert blend_service.get_blend(again)["lines"][0]["batch_id"] == proposal.batch_ids[0]

    def test_delete_after_window_raises(self, mid_range_pool, spec):
        """49 hours after commit the blend can no longer be reversed."""
        proposal, blend_id = _commit(spec, "LOT-001")
        later = _created_at(blend_id) + timedelta(hours=49)

        with pytest.raises(ExpiredWindow):
            blend_service.delete_blend(blend_id, now=later)

        for batch_id in proposal.batch_ids:
            assert batch_service.get_batch(batch_id).usage_state == UsageState.CONSUMED
        assert blend_service.get_blend(blend_id)["lot_number"] == "LOT-001"

    def test_delete_inside_window(self, mid_range_pool, spec):
        _, blend_id = _commit(spec, "LOT-001")
        later = _created_at(blend_id) + timedelta(hours=47)

        result = blend_service.delete_blend(blend_id, now=later)

        assert result["lot_number"] == "LOT-001"

    def test_delete_missing_blend(self, test_db):
        with pytest.raises(BlendNotFound):
            blend_service.delete_blend(42)

    def test_reassigned_batch_skipped(self, mid_range_pool, spec):
        proposal, blend_id = _commit(spec, "LOT-001")
        moved_id = proposal.batch_ids[0]
        with session_scope() as session:
            session.get(Batch, moved_id).consumed_by_lot = "LOT-OTHER"

        result = blend_service.delete_blend(blend_id)

        assert result["skipped_batches"] == [proposal.lines[0].batch.batch_number]
        assert batch_service.get_batch(moved_id).usage_state == UsageState.CONSUMED
        assert batch_service.get_batch(proposal.batch_ids[1]).usage_state == UsageState.AVAILABLE

    def test_deleted_batch_row_skipped(self, make_batch, spec):
        batch = make_batch(250)
        _, blend_id = _commit(spec, "LOT-001", desired_units=10)
        with session_scope() as session:
            session.delete(session.get(Batch, batch.id))

        result = blend_service.delete_blend(blend_id)

        assert result["released_batches"] == []
        assert result["skipped_batches"] == [batch.batch_number]

    def test_release_failure_skipped_and_logged(self, mid_range_pool, spec, monkeypatch, caplog):
        proposal, blend_id = _commit(spec, "LOT-001")
        failing_id, other_id = proposal.batch_ids
        release = blend_service._release_batch

        def flaky_release(session, batch):
            if batch.id == failing_id:
                raise OperationalError("UPDATE batches", {}, Exception("disk I/O error"))
            release(session, batch)

        monkeypatch.setattr(blend_service, "_release_batch", flaky_release)

        with caplog.at_level(logging.ERROR, logger="blend_planner.services"):
            result = blend_service.delete_blend(blend_id)

        failing = batch_service.get_batch(failing_id)
        other = batch_service.get_batch(other_id)
        assert result["skipped_batches"] == [failing.batch_number]
        assert result["released_batches"] == [other.batch_number]
        assert failing.usage_state == UsageState.CONSUMED
        assert other.usage_state == UsageState.AVAILABLE
        assert "release_batch: failed" in caplog.text
        with pytest.raises(BlendNotFound):
            blend_service.get_blend(blend_id)


class TestQueries:
    """Tests for get_blend_by_lot(), list_blends() and update_blend_status()."""

    def test_get_by_lot(self, mid_range_pool, spec):
        _, blend_id = _commit(spec, "LOT-001")
        assert blend_service.get_blend_by_lot("LOT-001")["id"] == blend_id

    def test_get_by_lot_missing(self, test_db):
        with pytest.raises(BlendNotFound):
            blend_service.get_blend_by_lot("NOPE")

    def test_list_newest_first(self, mid_range_pool, spec):
        _commit(spec, "LOT-001")
        _commit(spec, "LOT-002")

        lots = [blend["lot_number"] for blend in blend_service.list_blends()]

        assert lots == ["LOT-002", "LOT-001"]

    def test_list_filters(self, mid_range_pool, spec):
        proposal = blend_service.propose_blend(spec, desired_units=20)
        blend_service.commit_blend(proposal, "LOT-001", fiscal_year="2025-26")
        _, second = _commit(spec, "LOT-002")
        blend_service.update_blend_status(second, BlendStatus.APPROVED, reviewed_by="qa")

        assert [b["lot_number"] for b in blend_service.list_blends(fiscal_year="2025-26")] == ["LOT-001"]
        assert [b["lot_number"] for b in blend_service.list_blends(status="approved")] == ["LOT-002"]
        assert blend_service.list_blends(start_date=utc_now() + timedelta(days=1)) == []
        assert len(blend_service.list_blends(limit=1)) == 1

    def test_list_reports_reversibility(self, mid_range_pool, spec):
        _commit(spec, "LOT-001")
        blend = blend_service.list_blends()[0]
        assert blend["is_reversible"] is True
        assert blend["reversible_until"] is not None

    def test_approve_stamps_review(self, mid_range_pool, spec):
        _, blend_id = _commit(spec, "LOT-001")

        result = blend_service.update_blend_status(blend_id, "approved", reviewed_by="qa-lead")

        assert result["status"] == "approved"
        assert result["reviewed_by"] == "qa-lead"
        assert result["reviewed_at"] is not None

    def test_back_to_draft_clears_review_time(self, mid_range_pool, spec):
        _, blend_id = _commit(spec, "LOT-001")
        blend_service.update_blend_status(blend_id, "approved", reviewed_by="qa-lead")

        result = blend_service.update_blend_status(blend_id, BlendStatus.DRAFT, notes="recheck")

        assert result["status"] == "draft"
        assert result["reviewed_at"] is None
        assert result["notes"] == "recheck"

    def test_unknown_status_rejected(self, mid_range_pool, spec):
        _, blend_id = _commit(spec, "LOT-001")
        with pytest.raises(ValidationError):
            blend_service.update_blend_status(blend_id, "shipped")

    def test_list_unknown_status_rejected(self, test_db):
        with pytest.raises(ValidationError):
            blend_service.list_blends(status="shipped")


class TestGenerateLotNumber:
    """Tests for generate_lot_number()."""

    def test_format(self, test_db):
        now = utc_now().replace(year=2025, month=10, day=19)

        lot = blend_service.generate_lot_number(now=now, rng=random.Random(0))

        assert re.fullmatch(r"HG-2510-MFI-19001-\d", lot)

    def test_sequence_counts_todays_blends(self, mid_range_pool, spec):
        _commit(spec, "LOT-001")

        lot = blend_service.generate_lot_number(rng=random.Random(0))

        assert re.fullmatch(r"HG-\d{4}-MFI-\d{2}002-\d", lot)

    def test_configured_prefix_and_site(self, test_db, monkeypatch):
        monkeypatch.setenv("BLEND_PLANNER_LOT_PREFIX", "GX")
        monkeypatch.setenv("BLEND_PLANNER_LOT_SITE", "PLT")

        lot = blend_service.generate_lot_number(rng=random.Random(0))

        assert lot.startswith("GX-")
        assert "-PLT-" in lot


@pytest.fixture
def file_db(tmp_path, monkeypatch):
    """File-backed SQLite database shared by several threads."""
    from blend_planner.models import batch, blend  # noqa: F401

    reset_config()
    engine = create_database_engine(f"sqlite:///{tmp_path / 'blends.db'}")
    init_database(engine)
    Session = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))
    monkeypatch.setattr(db_module, "get_session_factory", lambda: Session)

    yield Session

    Session.remove()
    engine.dispose()
    reset_config()


def _commit_in_threads(session_registry, jobs):
    """Run commit_blend for each (proposal, lot) at the same moment; map lot -> id or error."""
    barrier = threading.Barrier(len(jobs))
    outcomes = {}

    def worker(proposal, lot_number):
        try:
            barrier.wait(timeout=10)
            outcomes[lot_number] = blend_service.commit_blend(proposal, lot_number)
        except Exception as e:
            outcomes[lot_number] = e
        finally:
            session_registry.remove()

    threads = [threading.Thread(target=worker, args=job) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


class TestConcurrentCommit:
    """Two commits racing for the database from separate threads."""

    def test_same_batches_one_winner(self, file_db, spec):
        for bloom in (245, 250, 255):
            batch_service.create_batch("internal", bloom=bloom)
        proposal = blend_service.propose_blend(spec, desired_units=20)

        outcomes = _commit_in_threads(file_db, [(proposal, "LOT-A"), (proposal, "LOT-B")])

        winners = [lot for lot, result in outcomes.items() if isinstance(result, int)]
        losers = [lot for lot, result in outcomes.items() if isinstance(result, BatchUnavailable)]
        assert len(winners) == 1, outcomes
        assert len(losers) == 1, outcomes
        for batch_id in proposal.batch_ids:
            batch = batch_service.get_batch(batch_id)
            assert batch.usage_state == UsageState.CONSUMED
            assert batch.consumed_by_lot == winners[0]
        assert [b["lot_number"] for b in blend_service.list_blends()] == winners

    def test_disjoint_batches_both_commit(self, file_db, spec):
        batches = [batch_service.create_batch("internal", bloom=b) for b in (245, 255, 248, 252)]
        first = blend_service.propose_manual_blend([batches[0].id, batches[1].id], spec)
        second = blend_service.propose_manual_blend([batches[2].id, batches[3].id], spec)

        outcomes = _commit_in_threads(file_db, [(first, "LOT-A"), (second, "LOT-B")])

        assert all(isinstance(result, int) for result in outcomes.values()), outcomes
        blends = blend_service.list_blends(include_lines=True)
        assert sorted(b["serial_number"] for b in blends) == [1, 2]
        line_sets = [{line["batch_id"] for line in b["lines"]} for b in blends]
        assert line_sets[0].isdisjoint(line_sets[1])
