"""
Pydantic schemas for pipeline status changes and bulk actions.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from models import CandidateAssignment, PipelineStatus, StatusHistoryEntry


class BulkItems(BaseModel):
    """Base for bulk bodies: every item names a distinct assignment."""

    @field_validator("items", check_fields=False)
    @classmethod
    def unique_assignments(cls, v: List[Any]) -> List[Any]:
        seen = set()
        dupes = set()
        for item in v:
            if item.assignment_id in seen:
                dupes.add(item.assignment_id)
            seen.add(item.assignment_id)
        if dupes:
            raise ValueError(f"Duplicate assignment_id in items: {', '.join(sorted(dupes))}")
        return v


class StatusChange(BaseModel):
    status: PipelineStatus
    reason: Optional[str] = Field(None, max_length=2000)
    changed_by: Optional[str] = None


class AssignmentOut(CandidateAssignment):
    """Assignment plus read-only derived fields."""
    interview_expired: bool = False
    allowed_next: List[PipelineStatus] = Field(default_factory=list)
    history: List[StatusHistoryEntry] = Field(default_factory=list)


class DecisionIn(BaseModel):
    assignment_id: str = Field(..., min_length=1)
    decision: PipelineStatus
    reason: Optional[str] = None


class DecisionsCreate(BulkItems):
    items: List[DecisionIn] = Field(..., min_length=1)
    changed_by: Optional[str] = None


class InterviewIn(BaseModel):
    assignment_id: str = Field(..., min_length=1)
    scheduled_at: datetime
    notes: Optional[str] = None


class InterviewsCreate(BulkItems):
    items: List[InterviewIn] = Field(..., min_length=1)
    changed_by: Optional[str] = None


class OutcomeIn(BaseModel):
    assignment_id: str = Field(..., min_length=1)
    outcome: PipelineStatus
    reason: Optional[str] = None


class OutcomesCreate(BulkItems):
    items: List[OutcomeIn] = Field(..., min_length=1)
    changed_by: Optional[str] = None


class TransferIn(BaseModel):
    assignment_id: str = Field(..., min_length=1)
    assigned_user_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class TransfersCreate(BulkItems):
    items: List[TransferIn] = Field(..., min_length=1)
    transferred_by: Optional[str] = None


class BulkOut(BaseModel):
    """Per-partition outcome of a bulk action."""
    calls: int
    succeeded_ids: List[str] = Field(default_factory=list)
    failed: List[Dict[str, Any]] = Field(default_factory=list)
    excluded: Dict[str, str] = Field(default_factory=dict)
