"""
Pydantic schemas for dispatch batches (the bulk selection working set).
"""

from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator


class BatchOpen(BaseModel):
    """Request to open a batch for a set of assignments."""
    assignment_ids: List[str] = Field(..., min_length=1, description="Assignments to include, in display order")
    purpose: Literal["forward", "transfer"] = Field("forward", description="Bulk action this batch feeds")
    page_size: Optional[int] = Field(None, gt=0, le=200, description="Candidates per page")

    @field_validator("assignment_ids")
    @classmethod
    def strip_ids(cls, v: List[str]) -> List[str]:
        return [s.strip() for s in v if s and s.strip()]


class ToggleRequest(BaseModel):
    """Toggle one document id, or the literal "merged", for one assignment."""
    assignment_id: str = Field(..., min_length=1)
    document_id: str = Field(..., min_length=1, description='Document id or "merged"')


class NotesUpdate(BaseModel):
    assignment_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)


class PageUpdate(BaseModel):
    page: int = Field(..., ge=1)


class SelectionOut(BaseModel):
    merged: bool = False
    document_ids: List[str] = Field(default_factory=list)
    send_type: Optional[str] = None


class BatchOut(BaseModel):
    """Current state of a batch."""
    batch_id: str
    purpose: str
    closed: bool = False
    assignment_ids: List[str]
    page_items: List[str] = Field(default_factory=list, description="Assignment ids on the current page")
    current_page: int
    total_pages: int
    page_size: int
    selections: Dict[str, SelectionOut] = Field(default_factory=dict)
    notes: Dict[str, str] = Field(default_factory=dict)
    excluded: Dict[str, str] = Field(default_factory=dict, description="assignment_id -> reason it was left out")


class RemovalOut(BaseModel):
    closed: bool
    current_page: int
    remaining: int
