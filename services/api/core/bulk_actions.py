# services/api/core/bulk_actions.py
"""
Status-changing actions on one or many assignments.

Every change goes through core.pipeline.apply_transition, so an illegal jump
or a negative decision without a reason is refused before anything is
written. Bulk variants are partitioned by a typed grouping key and run
through the grouping dispatcher.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence

from core.errors import AssignmentNotFound, DecisionReasonRequired, InvalidTransition
from core.grouping import (
    DecisionGroupKey,
    InterviewGroupKey,
    OutcomeGroupKey,
    Partition,
    dispatch_partitions,
    partition,
)
from core.pipeline import (
    CLIENT_DECISIONS,
    INTERVIEW_OUTCOMES,
    apply_transition,
    gate,
    requires_reason,
    split_found,
)
from core.transfers import BulkResult
from models import CandidateAssignment, PipelineStatus, utcnow

logger = logging.getLogger(__name__)

# Fields apply_transition may change besides `status`
_FLAG_FIELDS = ("sub_status", "is_in_interview", "interview_scheduled_at", "interview_conducted_at")


def _transition_fields(
    assignment: CandidateAssignment,
    target: PipelineStatus,
    reason: Optional[str],
    extra: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    moved = apply_transition(assignment, target, reason=reason)
    fields = {k: getattr(moved, k) for k in _FLAG_FIELDS}
    fields.update(extra or {})
    return fields


def change_status_sync(
    storage,
    assignment_id: str,
    target: PipelineStatus,
    *,
    reason: Optional[str] = None,
    changed_by: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> CandidateAssignment:
    assignment = storage.get_assignment(assignment_id)
    if assignment is None:
        raise AssignmentNotFound(assignment_id)
    fields = _transition_fields(assignment, target, reason, extra)
    updated = storage.update_assignment_status(assignment_id, target, reason, changed_by, fields)
    logger.info("Assignment %s: %s -> %s", assignment_id, assignment.status.value, target.value)
    return updated


async def change_status(
    storage,
    assignment_id: str,
    target: PipelineStatus,
    *,
    reason: Optional[str] = None,
    changed_by: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> CandidateAssignment:
    return await asyncio.to_thread(
        change_status_sync,
        storage,
        assignment_id,
        target,
        reason=reason,
        changed_by=changed_by,
        extra=extra,
    )


def _apply_group_sync(
    storage,
    member_ids: Sequence[str],
    target: PipelineStatus,
    reason: Optional[str],
    changed_by: Optional[str],
    extra: Optional[Dict[str, Any]],
) -> List[CandidateAssignment]:
    """Check every member first, then write; one bad member fails the whole group."""
    planned = []
    for aid in member_ids:
        a = storage.get_assignment(aid)
        if a is None:
            raise AssignmentNotFound(aid)
        planned.append((aid, _transition_fields(a, target, reason, extra)))
    return [
        storage.update_assignment_status(aid, target, reason, changed_by, fields)
        for aid, fields in planned
    ]


# ---------- Bulk items --------------------------------------------------------

@dataclass(frozen=True)
class DecisionItem:
    assignment_id: str
    decision: PipelineStatus
    reason: Optional[str] = None

    @property
    def group_key(self) -> DecisionGroupKey:
        return DecisionGroupKey(self.decision.value, self.reason or "")


@dataclass(frozen=True)
class InterviewItem:
    assignment_id: str
    scheduled_at: datetime
    notes: Optional[str] = None

    @property
    def group_key(self) -> InterviewGroupKey:
        return InterviewGroupKey(self.scheduled_at, self.notes or "")


@dataclass(frozen=True)
class OutcomeItem:
    assignment_id: str
    outcome: PipelineStatus
    reason: Optional[str] = None

    @property
    def group_key(self) -> OutcomeGroupKey:
        return OutcomeGroupKey(self.outcome.value, self.reason or "")


async def _run_bulk(
    storage,
    items: Sequence[Any],
    *,
    purpose: str,
    target_of: Callable[[Hashable], PipelineStatus],
    reason_of: Callable[[Hashable], Optional[str]],
    extra_of: Callable[[Hashable], Optional[Dict[str, Any]]],
    changed_by: Optional[str],
    max_parallel: int,
    timeout: Optional[float],
) -> BulkResult:
    requested = [i.assignment_id for i in items]
    found = await asyncio.to_thread(storage.list_assignments, requested)
    ordered, missing = split_found(requested, found)
    gated = gate(ordered, purpose)

    eligible = set(gated.eligible_ids)
    to_send = [i for i in items if i.assignment_id in eligible]
    partitions = partition(to_send, lambda i: i.group_key, lambda i: i.assignment_id)

    async def call(p: Partition) -> List[CandidateAssignment]:
        return await asyncio.to_thread(
            _apply_group_sync,
            storage,
            p.member_ids,
            target_of(p.key),
            reason_of(p.key),
            changed_by,
            extra_of(p.key),
        )

    report = await dispatch_partitions(partitions, call, max_parallel=max_parallel, timeout=timeout)
    return BulkResult(report=report, excluded={**missing, **gated.excluded})


def _require_reasons(items: Sequence[Any], target_attr: str, reason_attr: str) -> None:
    for i in items:
        target = getattr(i, target_attr)
        if requires_reason(target) and not (getattr(i, reason_attr) or "").strip():
            raise DecisionReasonRequired(target.value)


async def record_client_decisions(
    storage,
    items: Sequence[DecisionItem],
    *,
    changed_by: Optional[str] = None,
    max_parallel: int = 8,
    timeout: Optional[float] = 60.0,
) -> BulkResult:
    """sent_to_client -> shortlisted | not_shortlisted; a rejection needs a reason."""
    for i in items:
        if i.decision not in CLIENT_DECISIONS:
            raise InvalidTransition(PipelineStatus.SENT_TO_CLIENT.value, i.decision.value, assignment_id=i.assignment_id)
    _require_reasons(items, "decision", "reason")
    return await _run_bulk(
        storage,
        items,
        purpose="decision",
        target_of=lambda k: PipelineStatus(k.decision),
        reason_of=lambda k: k.reason or None,
        extra_of=lambda k: None,
        changed_by=changed_by,
        max_parallel=max_parallel,
        timeout=timeout,
    )


async def schedule_interviews(
    storage,
    items: Sequence[InterviewItem],
    *,
    changed_by: Optional[str] = None,
    max_parallel: int = 8,
    timeout: Optional[float] = 60.0,
) -> BulkResult:
    """shortlisted -> interview_scheduled; marks the candidate as in interview."""
    return await _run_bulk(
        storage,
        items,
        purpose="interview",
        target_of=lambda k: PipelineStatus.INTERVIEW_SCHEDULED,
        reason_of=lambda k: k.notes or None,
        extra_of=lambda k: {"interview_scheduled_at": k.scheduled_at, "is_in_interview": True},
        changed_by=changed_by,
        max_parallel=max_parallel,
        timeout=timeout,
    )


async def record_interview_outcomes(
    storage,
    items: Sequence[OutcomeItem],
    *,
    changed_by: Optional[str] = None,
    max_parallel: int = 8,
    timeout: Optional[float] = 60.0,
) -> BulkResult:
    """interview_scheduled -> passed | failed; clears the in-interview flag."""
    for i in items:
        if i.outcome not in INTERVIEW_OUTCOMES:
            raise InvalidTransition(PipelineStatus.INTERVIEW_SCHEDULED.value, i.outcome.value, assignment_id=i.assignment_id)
    _require_reasons(items, "outcome", "reason")
    conducted_at = utcnow()
    return await _run_bulk(
        storage,
        items,
        purpose="outcome",
        target_of=lambda k: PipelineStatus(k.outcome),
        reason_of=lambda k: k.reason or None,
        extra_of=lambda k: {"interview_conducted_at": conducted_at, "is_in_interview": False},
        changed_by=changed_by,
        max_parallel=max_parallel,
        timeout=timeout,
    )
