"""
Storage adapter interface for the dispatch service.
Defines the contract that all storage backends must implement.
"""

from typing import Protocol, List, Dict, Any, Optional, Sequence

from models import (
    CandidateAssignment,
    DocumentRecord,
    ForwardStatus,
    ForwardingRecord,
    MergedArtifact,
    PipelineStatus,
    ProcessingTransfer,
    StatusHistoryEntry,
)


class StorageAdapter(Protocol):
    """
    Protocol defining the interface for all storage adapters.

    This allows swapping between SQLite and the JSON file store without
    changing the router or business logic code. Adapters are synchronous;
    async callers push them off the event loop with asyncio.to_thread.
    """

    # ========== Assignments ==========

    def get_assignment(self, assignment_id: str) -> Optional[CandidateAssignment]:
        """Return the assignment, or None if not found."""
        ...

    def list_assignments(
        self,
        ids: Optional[Sequence[str]] = None,
        project_id: Optional[str] = None,
        status: Optional[PipelineStatus] = None,
    ) -> List[CandidateAssignment]:
        """
        List assignments, optionally restricted to `ids`, a project, or a status.
        Unknown ids are silently absent from the result.
        """
        ...

    def create_assignment(self, assignment: CandidateAssignment) -> str:
        """
        Insert a new assignment.

        Raises:
            HTTPException 409 if the assignment id already exists.
        """
        ...

    def update_assignment(self, assignment_id: str, updates: Dict[str, Any]) -> CandidateAssignment:
        """
        Overwrite only the provided keys and bump `updated_at`.

        `status` must not be changed through this method; use
        update_assignment_status so the change is written to history.

        Raises:
            HTTPException 404 if not found.
        """
        ...

    # ========== Status ==========

    def update_assignment_status(
        self,
        assignment_id: str,
        new_status: PipelineStatus,
        reason: Optional[str] = None,
        changed_by: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> CandidateAssignment:
        """
        Write the new status (plus any `extra` field updates) and one
        status-history row in the same unit of work.

        The caller is responsible for checking that the move is legal.
        """
        ...

    def list_status_history(self, assignment_id: str) -> List[StatusHistoryEntry]:
        """History rows for an assignment, oldest first."""
        ...

    # ========== Documents ==========

    def create_document(self, document: DocumentRecord) -> str:
        ...

    def list_documents(self, assignment_id: str) -> List[DocumentRecord]:
        """All documents of an assignment in upload order."""
        ...

    def list_verified_documents(self, assignment_id: str) -> List[DocumentRecord]:
        """
        Verified documents of an assignment, in verification order
        (verified_at, then created_at).
        """
        ...

    # ========== Merged artifacts ==========

    def get_merged_artifact(self, assignment_id: str) -> Optional[MergedArtifact]:
        ...

    def save_merged_artifact(self, artifact: MergedArtifact) -> MergedArtifact:
        """
        Store the artifact in the assignment's single slot, replacing any
        previous one. Last completed save wins.
        """
        ...

    # ========== Forwarding ledger ==========

    def append_forwarding_record(self, record: ForwardingRecord) -> str:
        """
        Append a ledger record. Records are never deleted.

        Raises:
            LedgerWriteFailed if the record id already exists.
        """
        ...

    def settle_forwarding_record(
        self,
        record_id: str,
        status: ForwardStatus,
        error: Optional[str] = None,
        sent_at: Optional[Any] = None,
    ) -> ForwardingRecord:
        """
        Move a `queued` record to `sent` or `failed`.

        Raises:
            LedgerWriteFailed if the record is missing or already settled.
        """
        ...

    def get_forwarding_record(self, record_id: str) -> Optional[ForwardingRecord]:
        ...

    def list_forwarding_records(
        self,
        candidate_id: Optional[str] = None,
        project_id: Optional[str] = None,
        role_id: Optional[str] = None,
    ) -> List[ForwardingRecord]:
        """
        Records matching every given filter, in no particular order.
        Ordering, search and paging happen in core/ledger.py.
        """
        ...

    # ========== Processing transfers ==========

    def create_processing_transfers(
        self,
        assignment_ids: Sequence[str],
        assigned_user_id: str,
        notes: Optional[str] = None,
        transferred_by: Optional[str] = None,
    ) -> List[ProcessingTransfer]:
        """
        One backend call for a whole transfer group: writes a transfer row per
        assignment and moves each to `transferred_to_processing`, all or nothing.

        Raises:
            HTTPException 404 if any assignment is missing.
            HTTPException 409 if any assignment is not in `passed`.
        """
        ...
