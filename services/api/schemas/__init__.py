"""
Pydantic schemas for API request/response validation.
"""
from .batch import (
    BatchOpen,
    BatchOut,
    NotesUpdate,
    PageUpdate,
    RemovalOut,
    SelectionOut,
    ToggleRequest,
)
from .forwarding import CorrectionCreate, ForwardCreate, ForwardOut, HistoryMeta, HistoryOut
from .merge import MergeRequest, MergeViewOut
from .pipeline import (
    AssignmentOut,
    BulkOut,
    DecisionIn,
    DecisionsCreate,
    InterviewIn,
    InterviewsCreate,
    OutcomeIn,
    OutcomesCreate,
    StatusChange,
    TransferIn,
    TransfersCreate,
)

__all__ = [
    # Batches
    "BatchOpen",
    "BatchOut",
    "NotesUpdate",
    "PageUpdate",
    "RemovalOut",
    "SelectionOut",
    "ToggleRequest",
    # Forwarding
    "CorrectionCreate",
    "ForwardCreate",
    "ForwardOut",
    "HistoryMeta",
    "HistoryOut",
    # Merge
    "MergeRequest",
    "MergeViewOut",
    # Pipeline
    "AssignmentOut",
    "BulkOut",
    "DecisionIn",
    "DecisionsCreate",
    "InterviewIn",
    "InterviewsCreate",
    "OutcomeIn",
    "OutcomesCreate",
    "StatusChange",
    "TransferIn",
    "TransfersCreate",
]
