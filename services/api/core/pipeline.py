# services/api/core/pipeline.py
"""
Pipeline state machine for candidate assignments.

    documents_submitted -> verification_in_progress
        -> documents_verified | rejected_documents
    documents_verified -> screening_approved | sent_to_client
    screening_approved -> sent_to_client
    sent_to_client -> shortlisted | not_shortlisted
    shortlisted -> interview_scheduled
    interview_scheduled -> passed | failed
    passed -> transferred_to_processing

Retry branches: rejected_documents -> documents_submitted (resubmission),
failed -> interview_scheduled (re-interview).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from core.errors import DecisionReasonRequired, InvalidTransition
from models import CandidateAssignment, PipelineStatus

logger = logging.getLogger(__name__)

S = PipelineStatus

TRANSITIONS: Dict[PipelineStatus, FrozenSet[PipelineStatus]] = {
    S.DOCUMENTS_SUBMITTED: frozenset({S.VERIFICATION_IN_PROGRESS}),
    S.VERIFICATION_IN_PROGRESS: frozenset({S.DOCUMENTS_VERIFIED, S.REJECTED_DOCUMENTS}),
    S.DOCUMENTS_VERIFIED: frozenset({S.SCREENING_APPROVED, S.SENT_TO_CLIENT}),
    S.SCREENING_APPROVED: frozenset({S.SENT_TO_CLIENT}),
    S.SENT_TO_CLIENT: frozenset({S.SHORTLISTED, S.NOT_SHORTLISTED}),
    S.SHORTLISTED: frozenset({S.INTERVIEW_SCHEDULED}),
    S.INTERVIEW_SCHEDULED: frozenset({S.PASSED, S.FAILED}),
    S.PASSED: frozenset({S.TRANSFERRED_TO_PROCESSING}),
    # retry branches
    S.REJECTED_DOCUMENTS: frozenset({S.DOCUMENTS_SUBMITTED}),
    S.FAILED: frozenset({S.INTERVIEW_SCHEDULED}),
    # terminal
    S.NOT_SHORTLISTED: frozenset(),
    S.TRANSFERRED_TO_PROCESSING: frozenset(),
}

# Negative human decisions; each needs a non-blank reason.
NEGATIVE_DECISIONS: FrozenSet[PipelineStatus] = frozenset(
    {S.REJECTED_DOCUMENTS, S.NOT_SHORTLISTED, S.FAILED}
)

FORWARDABLE: FrozenSet[PipelineStatus] = frozenset({S.DOCUMENTS_VERIFIED, S.SCREENING_APPROVED})
TRANSFERABLE: FrozenSet[PipelineStatus] = frozenset({S.PASSED})

CLIENT_DECISIONS: FrozenSet[PipelineStatus] = frozenset({S.SHORTLISTED, S.NOT_SHORTLISTED})
INTERVIEW_OUTCOMES: FrozenSet[PipelineStatus] = frozenset({S.PASSED, S.FAILED})


def coerce_status(value) -> PipelineStatus:
    """Parse a raw status value; unknown values raise ValueError."""
    if isinstance(value, PipelineStatus):
        return value
    try:
        return PipelineStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown pipeline status: {value!r}")


def allowed_next(current: PipelineStatus) -> List[PipelineStatus]:
    return sorted(TRANSITIONS.get(current, frozenset()), key=lambda s: s.value)


def can_transition(current: PipelineStatus, target: PipelineStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def requires_reason(target: PipelineStatus) -> bool:
    return target in NEGATIVE_DECISIONS


def check_transition(
    current: PipelineStatus,
    target: PipelineStatus,
    *,
    reason: Optional[str] = None,
    assignment_id: Optional[str] = None,
) -> None:
    """Raise InvalidTransition / DecisionReasonRequired unless current -> target is legal."""
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value, assignment_id=assignment_id)
    if requires_reason(target) and not (reason and reason.strip()):
        raise DecisionReasonRequired(target.value)


def apply_transition(
    assignment: CandidateAssignment,
    target: PipelineStatus,
    *,
    reason: Optional[str] = None,
) -> CandidateAssignment:
    """
    Return a copy of `assignment` moved to `target`, with the interview flags
    that go with the move. The input is not mutated.
    """
    check_transition(assignment.status, target, reason=reason, assignment_id=assignment.assignment_id)

    updates = {"status": target, "sub_status": None}
    if target == S.INTERVIEW_SCHEDULED:
        updates["is_in_interview"] = True
        updates["interview_conducted_at"] = None
    elif target in INTERVIEW_OUTCOMES:
        updates["is_in_interview"] = False
    return assignment.model_copy(update=updates)


# ---------- Gating ------------------------------------------------------------

@dataclass(frozen=True)
class GateResult:
    eligible: List[CandidateAssignment]
    excluded: Dict[str, str]

    @property
    def eligible_ids(self) -> List[str]:
        return [a.assignment_id for a in self.eligible]


def forward_exclusion_reason(assignment: CandidateAssignment) -> Optional[str]:
    if assignment.archived:
        return "archived"
    if assignment.status not in FORWARDABLE:
        return f"status {assignment.status.value} cannot be sent to client"
    if assignment.is_in_interview:
        return "candidate has an unresolved interview"
    return None


def transfer_exclusion_reason(assignment: CandidateAssignment) -> Optional[str]:
    if assignment.archived:
        return "archived"
    if assignment.status == S.TRANSFERRED_TO_PROCESSING:
        return "already transferred to processing"
    if assignment.status not in TRANSFERABLE:
        return f"status {assignment.status.value} cannot be transferred to processing"
    return None


def _status_exclusion(*required: PipelineStatus):
    names = " or ".join(s.value for s in required)

    def reason(assignment: CandidateAssignment) -> Optional[str]:
        if assignment.archived:
            return "archived"
        if assignment.status not in required:
            return f"status {assignment.status.value} is not {names}"
        return None
    return reason


GATES = {
    "forward": forward_exclusion_reason,
    "transfer": transfer_exclusion_reason,
    "decision": _status_exclusion(S.SENT_TO_CLIENT),
    "interview": _status_exclusion(S.SHORTLISTED, S.FAILED),
    "outcome": _status_exclusion(S.INTERVIEW_SCHEDULED),
}


def gate(assignments: Iterable[CandidateAssignment], purpose: str) -> GateResult:
    """Split assignments into those a `purpose` bulk action may touch and the rest (with why)."""
    try:
        reason_for = GATES[purpose]
    except KeyError:
        raise ValueError(f"Unknown bulk purpose: {purpose!r}")

    eligible: List[CandidateAssignment] = []
    excluded: Dict[str, str] = {}
    for a in assignments:
        why = reason_for(a)
        if why is None:
            eligible.append(a)
        else:
            excluded[a.assignment_id] = why
    if excluded:
        logger.info("Gate %s excluded %d assignment(s)", purpose, len(excluded))
    return GateResult(eligible=eligible, excluded=excluded)


def split_found(
    requested_ids: Iterable[str],
    found: Iterable[CandidateAssignment],
) -> Tuple[List[CandidateAssignment], Dict[str, str]]:
    """Order `found` like `requested_ids` and report ids that do not exist."""
    by_id = {a.assignment_id: a for a in found}
    ordered: List[CandidateAssignment] = []
    missing: Dict[str, str] = {}
    for aid in requested_ids:
        if aid in by_id:
            ordered.append(by_id[aid])
        else:
            missing[aid] = "not found"
    return ordered, missing
