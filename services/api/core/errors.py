"""
Error taxonomy for selection, merge, dispatch and pipeline operations.

Every error carries enough detail for the caller to act on it (counts, ids,
computed totals). `main.py` renders them as JSON with their status code.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class DispatchError(Exception):
    """Base class for all domain errors raised by core/."""

    status_code: int = 400
    code: str = "DISPATCH_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class SelectionInvariantViolation(DispatchError):
    """A selection holds the merged sentinel and individual documents at the same time."""

    status_code = 500
    code = "SELECTION_INVARIANT_VIOLATION"

    def __init__(self, assignment_id: Optional[str] = None):
        super().__init__(
            f"Selection for {assignment_id or 'candidate'} mixes merged and individual documents"
        )
        self.assignment_id = assignment_id

    def detail(self) -> Dict[str, Any]:
        return {**super().detail(), "assignment_id": self.assignment_id}


class IncompleteSelection(DispatchError):
    status_code = 422
    code = "INCOMPLETE_SELECTION"

    def __init__(self, missing_ids: Sequence[str]):
        self.missing_ids = list(missing_ids)
        self.missing_count = len(self.missing_ids)
        super().__init__(
            f"Please select documents for all candidates. "
            f"{self.missing_count} candidate(s) still need selection."
        )

    def detail(self) -> Dict[str, Any]:
        return {
            **super().detail(),
            "missing_count": self.missing_count,
            "missing_ids": self.missing_ids,
        }


class RecipientInvalid(DispatchError):
    status_code = 422
    code = "RECIPIENT_INVALID"

    def __init__(self, message: str, *, assignment_ids: Sequence[str] = (), address: Optional[str] = None):
        super().__init__(message)
        self.assignment_ids = list(assignment_ids)
        self.address = address

    def detail(self) -> Dict[str, Any]:
        return {
            **super().detail(),
            "assignment_ids": self.assignment_ids,
            "address": self.address,
        }


class PayloadTooLarge(DispatchError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"

    def __init__(self, total_bytes: int, limit_bytes: int):
        self.total_bytes = total_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Total document size ({total_bytes / (1024 * 1024):.2f}MB) exceeds the "
            f"{limit_bytes / (1024 * 1024):.0f}MB limit. Please remove some documents."
        )

    def detail(self) -> Dict[str, Any]:
        return {
            **super().detail(),
            "total_bytes": self.total_bytes,
            "limit_bytes": self.limit_bytes,
        }


class MergeInputInvalid(DispatchError):
    status_code = 422
    code = "MERGE_INPUT_INVALID"


class MergeFailed(DispatchError):
    """The merge backend could not produce an artifact. Any prior artifact is untouched."""

    status_code = 502
    code = "MERGE_FAILED"

    def __init__(self, message: str, *, assignment_id: Optional[str] = None):
        super().__init__(message)
        self.assignment_id = assignment_id

    def detail(self) -> Dict[str, Any]:
        return {**super().detail(), "assignment_id": self.assignment_id}


class MergeUnavailable(DispatchError):
    status_code = 409
    code = "MERGE_UNAVAILABLE"

    def __init__(self, assignment_id: str):
        super().__init__(
            f"No merged document found for {assignment_id}. Please generate it first."
        )
        self.assignment_id = assignment_id

    def detail(self) -> Dict[str, Any]:
        return {**super().detail(), "assignment_id": self.assignment_id}


class DispatchPartialFailure(DispatchError):
    """
    Some grouped partitions failed. Succeeded partitions keep their state change;
    `failed` lists each failed partition with its member ids and reason.
    """

    status_code = 207
    code = "DISPATCH_PARTIAL_FAILURE"

    def __init__(self, failed: List[Dict[str, Any]], succeeded_ids: Sequence[str] = ()):
        self.failed = failed
        self.succeeded_ids = list(succeeded_ids)
        failed_count = sum(len(p.get("member_ids", [])) for p in failed)
        super().__init__(
            f"{failed_count} candidate(s) in {len(failed)} group(s) failed; "
            f"{len(self.succeeded_ids)} succeeded."
        )

    def detail(self) -> Dict[str, Any]:
        return {
            **super().detail(),
            "failed": self.failed,
            "succeeded_ids": self.succeeded_ids,
        }


class LedgerWriteFailed(DispatchError):
    status_code = 500
    code = "LEDGER_WRITE_FAILED"

    def __init__(self, message: str, *, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id

    def detail(self) -> Dict[str, Any]:
        return {**super().detail(), "record_id": self.record_id}


class InvalidTransition(DispatchError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, *, assignment_id: Optional[str] = None):
        super().__init__(f"Cannot move {assignment_id or 'assignment'} from {current} to {target}")
        self.current = current
        self.target = target
        self.assignment_id = assignment_id

    def detail(self) -> Dict[str, Any]:
        return {
            **super().detail(),
            "from": self.current,
            "to": self.target,
            "assignment_id": self.assignment_id,
        }


class DecisionReasonRequired(DispatchError):
    status_code = 422
    code = "DECISION_REASON_REQUIRED"

    def __init__(self, target: str):
        super().__init__(f"A reason is required to move a candidate to {target}")
        self.target = target


class AssignmentNotFound(DispatchError):
    status_code = 404
    code = "ASSIGNMENT_NOT_FOUND"

    def __init__(self, assignment_id: str):
        super().__init__(f"ASSIGNMENT_NOT_FOUND: {assignment_id}")
        self.assignment_id = assignment_id


class BatchNotFound(DispatchError):
    status_code = 404
    code = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        super().__init__(f"BATCH_NOT_FOUND: {batch_id}")
        self.batch_id = batch_id


class NoEligibleCandidates(DispatchError):
    """Every candidate in the batch failed the status gate; nothing was sent."""

    status_code = 409
    code = "NO_ELIGIBLE_CANDIDATES"

    def __init__(self, excluded: Dict[str, str]):
        self.excluded = dict(excluded)
        super().__init__(
            f"None of the {len(self.excluded)} candidate(s) can be forwarded in their current status"
        )

    def detail(self) -> Dict[str, Any]:
        return {**super().detail(), "excluded": self.excluded}
