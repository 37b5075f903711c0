from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineStatus(str, Enum):
    """
    Candidate-project lifecycle. No other values are permitted.
    Transitions live in core/pipeline.py.
    """
    DOCUMENTS_SUBMITTED = "documents_submitted"
    VERIFICATION_IN_PROGRESS = "verification_in_progress"
    DOCUMENTS_VERIFIED = "documents_verified"
    REJECTED_DOCUMENTS = "rejected_documents"
    SCREENING_APPROVED = "screening_approved"
    SENT_TO_CLIENT = "sent_to_client"
    SHORTLISTED = "shortlisted"
    NOT_SHORTLISTED = "not_shortlisted"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    PASSED = "passed"
    FAILED = "failed"
    TRANSFERRED_TO_PROCESSING = "transferred_to_processing"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class DeliveryMethod(str, Enum):
    SEPARATE = "separate"
    COMBINED = "combined"
    DRIVE_LINK = "drive-link"


class SendType(str, Enum):
    MERGED = "merged"
    INDIVIDUAL = "individual"


class ForwardStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class CandidateAssignment(BaseModel):
    """
    A candidate's attachment to one project/role, carrying pipeline status.
    """
    assignment_id: str
    candidate_id: str
    project_id: str
    role_id: Optional[str] = None

    # Display snapshots used for file names, mail bodies and error messages
    candidate_name: str = ""
    project_title: str = ""
    role_label: str = ""
    client_email: Optional[str] = None

    status: PipelineStatus = PipelineStatus.DOCUMENTS_SUBMITTED
    sub_status: Optional[str] = None

    # An interview has been scheduled and not yet resolved
    is_in_interview: bool = False
    interview_scheduled_at: Optional[datetime] = None
    interview_conducted_at: Optional[datetime] = None

    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_interview_expired(self, now: Optional[datetime] = None) -> bool:
        """Scheduled time has passed and nothing was recorded. Derived, never stored."""
        if self.interview_scheduled_at is None or self.interview_conducted_at is not None:
            return False
        now = now or utcnow()
        scheduled = self.interview_scheduled_at
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=timezone.utc)
        return scheduled < now


class DocumentRecord(BaseModel):
    """
    An uploaded file owned by a CandidateAssignment.
    Only `verified` records are eligible for merge/dispatch.
    """
    document_id: str
    assignment_id: str
    file_name: str
    file_size: int = Field(0, ge=0, description="Size in bytes")
    file_url: str
    doc_type: str = ""
    mime_type: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED


class MergedArtifact(BaseModel):
    """
    Single merged PDF per assignment (candidate, project, role).

    `source_document_ids` is the ordered merge input; `verified_document_ids`
    is the verified set observed when the artifact was generated. Staleness is
    computed from these by core.merge.is_artifact_stale, never stored.
    """
    artifact_id: str
    assignment_id: str
    candidate_id: str
    project_id: str
    role_id: Optional[str] = None

    file_name: str
    file_url: str
    file_size: int = Field(0, ge=0)
    mime_type: str = "application/pdf"

    source_document_ids: List[str] = Field(default_factory=list)
    verified_document_ids: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


class ForwardingRecord(BaseModel):
    """
    Append-only ledger entry: one per candidate per dispatch attempt.
    Settled once from `queued` to `sent`/`failed`; corrections are new records.
    """
    record_id: str
    assignment_id: str
    candidate_id: str
    project_id: str
    role_id: Optional[str] = None

    recipient_email: str
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)

    send_type: SendType
    delivery_method: DeliveryMethod
    status: ForwardStatus = ForwardStatus.QUEUED
    is_bulk: bool = False

    document_ids: List[str] = Field(default_factory=list)
    file_names: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    error: Optional[str] = None

    # Records written by the same dispatch call share this id
    dispatch_id: Optional[str] = None
    corrects_record_id: Optional[str] = None
    sender_id: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None

    @property
    def effective_time(self) -> datetime:
        return self.sent_at or self.created_at


class ProcessingTransfer(BaseModel):
    transfer_id: str
    assignment_id: str
    assigned_user_id: str
    notes: Optional[str] = None
    transferred_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class StatusHistoryEntry(BaseModel):
    history_id: str
    assignment_id: str
    from_status: Optional[PipelineStatus] = None
    to_status: PipelineStatus
    reason: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=utcnow)
