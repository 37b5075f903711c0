# services/api/routers/pipeline.py
from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from main import get_storage_adapter
from settings import get_settings
from core.bulk_actions import (
    DecisionItem,
    InterviewItem,
    OutcomeItem,
    change_status,
    record_client_decisions,
    record_interview_outcomes,
    schedule_interviews,
)
from core.errors import AssignmentNotFound
from core.pipeline import allowed_next
from core.transfers import BulkResult
from models import CandidateAssignment
from schemas.pipeline import (
    AssignmentOut,
    BulkOut,
    DecisionsCreate,
    InterviewsCreate,
    OutcomesCreate,
    StatusChange,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])

Storage = Annotated[object, Depends(get_storage_adapter)]


def _run_opts():
    settings = get_settings()
    return dict(max_parallel=settings.max_parallel_dispatches, timeout=settings.dispatch_timeout_seconds)


def _bulk_out(result: BulkResult) -> BulkOut:
    result.report.raise_for_failures()
    return BulkOut(**result.to_dict())


async def _assignment_out(storage, assignment: CandidateAssignment) -> AssignmentOut:
    history = await asyncio.to_thread(storage.list_status_history, assignment.assignment_id)
    return AssignmentOut(
        **assignment.model_dump(),
        interview_expired=assignment.is_interview_expired(),
        allowed_next=allowed_next(assignment.status),
        history=history,
    )


@router.get("/assignments/{assignment_id}", response_model=AssignmentOut)
async def get_assignment(assignment_id: str, storage: Storage):
    assignment = await asyncio.to_thread(storage.get_assignment, assignment_id)
    if assignment is None:
        raise AssignmentNotFound(assignment_id)
    return await _assignment_out(storage, assignment)


@router.patch("/assignments/{assignment_id}/status", response_model=AssignmentOut)
async def update_status(assignment_id: str, payload: StatusChange, storage: Storage):
    """Move one assignment along the pipeline. Illegal moves are refused with 409."""
    updated = await change_status(
        storage,
        assignment_id,
        payload.status,
        reason=payload.reason,
        changed_by=payload.changed_by,
    )
    return await _assignment_out(storage, updated)


@router.post("/decisions", response_model=BulkOut)
async def client_decisions(payload: DecisionsCreate, storage: Storage):
    """Record client shortlist / reject decisions, grouped by (decision, reason)."""
    result = await record_client_decisions(
        storage,
        [DecisionItem(i.assignment_id, i.decision, i.reason) for i in payload.items],
        changed_by=payload.changed_by,
        **_run_opts(),
    )
    return _bulk_out(result)


@router.post("/interviews", response_model=BulkOut)
async def interviews(payload: InterviewsCreate, storage: Storage):
    """Schedule interviews, grouped by (scheduled_at, notes)."""
    result = await schedule_interviews(
        storage,
        [InterviewItem(i.assignment_id, i.scheduled_at, i.notes) for i in payload.items],
        changed_by=payload.changed_by,
        **_run_opts(),
    )
    return _bulk_out(result)


@router.post("/outcomes", response_model=BulkOut)
async def interview_outcomes(payload: OutcomesCreate, storage: Storage):
    result = await record_interview_outcomes(
        storage,
        [OutcomeItem(i.assignment_id, i.outcome, i.reason) for i in payload.items],
        changed_by=payload.changed_by,
        **_run_opts(),
    )
    return _bulk_out(result)
