"""
Pydantic schemas for forward-to-client dispatch and ledger queries.
"""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from models import DeliveryMethod, ForwardingRecord


class ForwardCreate(BaseModel):
    """Send the selected documents of every candidate in a batch."""
    delivery_method: DeliveryMethod = Field(DeliveryMethod.SEPARATE)
    recipient_email: Optional[str] = Field(None, description="Shared recipient for every candidate")
    recipients: Dict[str, str] = Field(default_factory=dict, description="assignment_id -> recipient override")
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=5000)
    subject: Optional[str] = Field(None, max_length=300)
    include_summary: bool = Field(False, description="Attach an Excel summary (combined only)")
    sender_id: Optional[str] = None

    @field_validator("cc_emails", "bcc_emails")
    @classmethod
    def drop_blank(cls, v: List[str]) -> List[str]:
        return [s.strip() for s in v if s and s.strip()]


class ForwardOut(BaseModel):
    dispatch_id: str
    records: List[ForwardingRecord]
    sent_ids: List[str] = Field(default_factory=list)
    failed_ids: List[str] = Field(default_factory=list)
    excluded: Dict[str, str] = Field(default_factory=dict)
    total_bytes: int = 0


class HistoryMeta(BaseModel):
    total: int
    page: int
    limit: int
    totalPages: int


class HistoryOut(BaseModel):
    items: List[ForwardingRecord]
    meta: HistoryMeta


class CorrectionCreate(BaseModel):
    status: str = Field(..., pattern="^(sent|failed)$")
    error: Optional[str] = None
    notes: Optional[str] = None
    sender_id: Optional[str] = None
