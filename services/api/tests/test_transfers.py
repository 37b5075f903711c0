"""
Tests for bulk processing transfers and bulk pipeline actions.

Run with: pytest tests/test_transfers.py -v
"""
import asyncio
from datetime import datetime, timezone

import pytest
from fastapi import HTTPException

from core.bulk_actions import (
    DecisionItem,
    InterviewItem,
    OutcomeItem,
    change_status_sync,
    record_client_decisions,
    record_interview_outcomes,
    schedule_interviews,
)
from core.errors import AssignmentNotFound, DecisionReasonRequired, InvalidTransition
from core.transfers import TransferItem, transfer_to_processing
from models import PipelineStatus as S

SLOT = datetime(2024, 7, 2, 10, 30, tzinfo=timezone.utc)


class TestTransferToProcessing:
    """Passed candidates grouped by (assigned user, notes)."""

    def test_five_candidates_two_calls(self, storage, seed):
        for aid in "ABCDE":
            seed.assignment(aid, status=S.PASSED)
        calls = []
        original = storage.create_processing_transfers

        def spy(ids, assigned_user_id, notes=None, transferred_by=None):
            calls.append((tuple(ids), assigned_user_id))
            if assigned_user_id == "userY":
                raise HTTPException(status_code=503, detail="processing service unavailable")
            return original(ids, assigned_user_id, notes, transferred_by)

        storage.create_processing_transfers = spy
        items = [TransferItem(aid, "userX" if aid in "ABC" else "userY") for aid in "ABCDE"]

        result = asyncio.run(transfer_to_processing(storage, items, transferred_by="ops-1"))

        assert sorted(calls) == [(("A", "B", "C"), "userX"), (("D", "E"), "userY")]
        assert result.report.succeeded_ids == ["A", "B", "C"]
        assert result.report.failed_ids == ["D", "E"]
        assert result.report.failed[0].reason == "processing service unavailable"
        for aid in "ABC":
            assert storage.get_assignment(aid).status == S.TRANSFERRED_TO_PROCESSING
        for aid in "DE":
            assert storage.get_assignment(aid).status == S.PASSED

        out = result.to_dict()
        assert out["calls"] == 2
        assert out["failed"][0]["member_ids"] == ["D", "E"]

    def test_ineligible_excluded(self, storage, seed):
        seed.assignment("A", status=S.PASSED)
        seed.assignment("B", status=S.TRANSFERRED_TO_PROCESSING)
        seed.assignment("C", status=S.INTERVIEW_SCHEDULED)

        items = [TransferItem(aid, "userX") for aid in ["A", "B", "C", "Z"]]
        result = asyncio.run(transfer_to_processing(storage, items))

        assert result.report.succeeded_ids == ["A"]
        assert result.excluded["B"] == "already transferred to processing"
        assert "interview_scheduled" in result.excluded["C"]
        assert result.excluded["Z"] == "not found"

    def test_storage_partition_is_atomic(self, storage, seed):
        seed.assignment("A", status=S.PASSED)
        seed.assignment("B", status=S.SHORTLISTED)
        with pytest.raises(HTTPException) as exc:
            storage.create_processing_transfers(["A", "B"], "userX")
        assert exc.value.status_code == 409
        assert storage.get_assignment("A").status == S.PASSED

    def test_history_written(self, storage, seed):
        seed.assignment("A", status=S.PASSED)
        asyncio.run(transfer_to_processing(storage, [TransferItem("A", "userX", "start Monday")]))
        [entry] = storage.list_status_history("A")
        assert entry.from_status == S.PASSED
        assert entry.to_status == S.TRANSFERRED_TO_PROCESSING
        assert entry.reason == "start Monday"


class TestChangeStatus:
    """Single-assignment moves go through the state machine."""

    def test_legal(self, storage, seed):
        seed.assignment("A", status=S.DOCUMENTS_SUBMITTED)
        updated = change_status_sync(storage, "A", S.VERIFICATION_IN_PROGRESS, changed_by="ops-1")
        assert updated.status == S.VERIFICATION_IN_PROGRESS
        assert storage.list_status_history("A")[0].changed_by == "ops-1"

    def test_illegal_writes_nothing(self, storage, seed):
        seed.assignment("A", status=S.DOCUMENTS_SUBMITTED)
        with pytest.raises(InvalidTransition):
            change_status_sync(storage, "A", S.SENT_TO_CLIENT)
        assert storage.get_assignment("A").status == S.DOCUMENTS_SUBMITTED
        assert storage.list_status_history("A") == []

    def test_missing(self, storage):
        with pytest.raises(AssignmentNotFound):
            change_status_sync(storage, "nope", S.PASSED)


class TestBulkActions:
    """Decisions, interviews and outcomes."""

    def test_client_decisions_grouped(self, storage, seed):
        for aid in "ABC":
            seed.assignment(aid, status=S.SENT_TO_CLIENT)
        items = [
            DecisionItem("A", S.SHORTLISTED),
            DecisionItem("B", S.NOT_SHORTLISTED, "No offshore experience"),
            DecisionItem("C", S.SHORTLISTED),
        ]
        result = asyncio.run(record_client_decisions(storage, items, changed_by="ops-1"))

        assert result.report.call_count == 2
        assert storage.get_assignment("A").status == S.SHORTLISTED
        assert storage.get_assignment("B").status == S.NOT_SHORTLISTED
        assert storage.list_status_history("B")[-1].reason == "No offshore experience"

    def test_rejection_needs_reason(self, storage, seed):
        seed.assignment("A", status=S.SENT_TO_CLIENT)
        with pytest.raises(DecisionReasonRequired):
            asyncio.run(record_client_decisions(storage, [DecisionItem("A", S.NOT_SHORTLISTED, " ")]))
        assert storage.get_assignment("A").status == S.SENT_TO_CLIENT

    def test_decision_must_be_client_decision(self, storage, seed):
        seed.assignment("A", status=S.SENT_TO_CLIENT)
        with pytest.raises(InvalidTransition):
            asyncio.run(record_client_decisions(storage, [DecisionItem("A", S.PASSED)]))

    def test_schedule_interviews(self, storage, seed):
        seed.assignment("A", status=S.SHORTLISTED)
        seed.assignment("B", status=S.FAILED)
        seed.assignment("C", status=S.DOCUMENTS_VERIFIED)
        items = [InterviewItem(aid, SLOT, "Room 4") for aid in "ABC"]

        result = asyncio.run(schedule_interviews(storage, items))

        assert result.report.call_count == 1
        assert result.report.succeeded_ids == ["A", "B"]
        assert "C" in result.excluded
        a = storage.get_assignment("A")
        assert a.status == S.INTERVIEW_SCHEDULED
        assert a.is_in_interview is True
        assert a.interview_scheduled_at == SLOT

    def test_interview_outcomes(self, storage, seed):
        seed.assignment("A", status=S.INTERVIEW_SCHEDULED, is_in_interview=True, interview_scheduled_at=SLOT)
        seed.assignment("B", status=S.INTERVIEW_SCHEDULED, is_in_interview=True, interview_scheduled_at=SLOT)
        items = [OutcomeItem("A", S.PASSED), OutcomeItem("B", S.FAILED, "Failed weld test")]

        result = asyncio.run(record_interview_outcomes(storage, items))

        assert result.report.failed == []
        a = storage.get_assignment("A")
        assert a.status == S.PASSED
        assert a.is_in_interview is False
        assert a.interview_conducted_at is not None
        assert not a.is_interview_expired()
        assert storage.get_assignment("B").status == S.FAILED

    def test_outcome_reason_required(self, storage, seed):
        seed.assignment("A", status=S.INTERVIEW_SCHEDULED)
        with pytest.raises(DecisionReasonRequired):
            asyncio.run(record_interview_outcomes(storage, [OutcomeItem("A", S.FAILED)]))
