"""
Pydantic schemas for merging verified documents.
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from models import DocumentRecord, MergedArtifact


class MergeRequest(BaseModel):
    """Ordered subset of verified document ids to merge."""
    document_ids: List[str] = Field(..., description="Verified document ids in merge order")


class MergeViewOut(BaseModel):
    assignment_id: str
    verified_documents: List[DocumentRecord]
    proposed_order: List[str]
    artifact: Optional[MergedArtifact] = None
    stale: bool = Field(False, description="Existing artifact no longer matches the verified documents")
