"""
JSON file storage adapter for the dispatch service.
Simple file-based storage for quick demos and testing.
Not production-ready: one process only, whole-file rewrites on every change.
"""
import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException

from core.errors import LedgerWriteFailed
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
from models.converters import (
    artifact_from_row,
    assignment_from_row,
    document_from_row,
    forwarding_from_row,
    history_from_row,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json")


class JsonAdapter:
    """
    JSON file-based storage adapter.
    Stores data in separate JSON files under the data directory.
    Uses atomic file operations for basic consistency; a process-wide lock
    serialises read-modify-write cycles coming from worker threads.
    """

    def __init__(self, data_dir: str = "data"):
        """
        Initialize the JSON adapter.

        Args:
            data_dir: Directory to store JSON files
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        # File paths
        self.assignments_file = self.data_dir / "assignments.json"
        self.history_file = self.data_dir / "status_history.json"
        self.documents_file = self.data_dir / "documents.json"
        self.artifacts_file = self.data_dir / "merged_artifacts.json"
        self.forwarding_file = self.data_dir / "forwarding_records.json"
        self.transfers_file = self.data_dir / "processing_transfers.json"

        # Initialize files if they don't exist
        for file in [
            self.assignments_file,
            self.history_file,
            self.documents_file,
            self.artifacts_file,
            self.forwarding_file,
            self.transfers_file,
        ]:
            if not file.exists():
                self._write_file(file, [])

    def _read_file(self, filepath: Path) -> List[Dict[str, Any]]:
        """Read and parse a JSON file."""
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return []

    def _write_file(self, filepath: Path, data: List[Dict[str, Any]]) -> None:
        """Write data to a JSON file atomically."""
        # Write to temporary file first
        tmp_file = filepath.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)

        # Atomic rename
        tmp_file.replace(filepath)

    # ========== Assignments ==========

    def get_assignment(self, assignment_id: str) -> Optional[CandidateAssignment]:
        rows = self._read_file(self.assignments_file)
        row = next((r for r in rows if r["assignment_id"] == assignment_id), None)
        return assignment_from_row(row) if row else None

    def list_assignments(
        self,
        ids: Optional[Sequence[str]] = None,
        project_id: Optional[str] = None,
        status: Optional[PipelineStatus] = None,
    ) -> List[CandidateAssignment]:
        rows = self._read_file(self.assignments_file)
        if ids is not None:
            wanted = set(ids)
            rows = [r for r in rows if r["assignment_id"] in wanted]
        if project_id:
            rows = [r for r in rows if r.get("project_id") == project_id]
        if status is not None:
            rows = [r for r in rows if r.get("status") == PipelineStatus(status).value]
        return [assignment_from_row(r) for r in rows]

    def create_assignment(self, assignment: CandidateAssignment) -> str:
        with self._lock:
            rows = self._read_file(self.assignments_file)
            if any(r["assignment_id"] == assignment.assignment_id for r in rows):
                raise HTTPException(status_code=409, detail="Assignment already exists")
            now = _now()
            row = _dump(assignment.model_copy(update={
                "created_at": assignment.created_at or now,
                "updated_at": now,
            }))
            rows.append(row)
            self._write_file(self.assignments_file, rows)
        return assignment.assignment_id

    def update_assignment(self, assignment_id: str, updates: Dict[str, Any]) -> CandidateAssignment:
        with self._lock:
            rows = self._read_file(self.assignments_file)
            row = next((r for r in rows if r["assignment_id"] == assignment_id), None)
            if row is None:
                raise HTTPException(status_code=404, detail="Assignment not found")
            current = assignment_from_row(row)
            allowed = {k: v for k, v in updates.items()
                       if k in CandidateAssignment.model_fields and k not in ("assignment_id", "status")}
            allowed["updated_at"] = _now()
            updated = current.model_copy(update=allowed)
            row.clear()
            row.update(_dump(updated))
            self._write_file(self.assignments_file, rows)
        return updated

    # ========== Status ==========

    def _write_status(
        self,
        rows: List[Dict[str, Any]],
        history: List[Dict[str, Any]],
        assignment_id: str,
        new_status: PipelineStatus,
        reason: Optional[str],
        changed_by: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> CandidateAssignment:
        row = next((r for r in rows if r["assignment_id"] == assignment_id), None)
        if row is None:
            raise HTTPException(status_code=404, detail="Assignment not found")
        current = assignment_from_row(row)
        now = _now()
        updates = {k: v for k, v in (extra or {}).items()
                   if k in CandidateAssignment.model_fields and k != "assignment_id"}
        updates.update(status=PipelineStatus(new_status), updated_at=now)
        updated = current.model_copy(update=updates)
        row.clear()
        row.update(_dump(updated))
        history.append(_dump(StatusHistoryEntry(
            history_id=str(uuid.uuid4()),
            assignment_id=assignment_id,
            from_status=current.status,
            to_status=PipelineStatus(new_status),
            reason=reason,
            changed_by=changed_by,
            changed_at=now,
        )))
        return updated

    def update_assignment_status(
        self,
        assignment_id: str,
        new_status: PipelineStatus,
        reason: Optional[str] = None,
        changed_by: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> CandidateAssignment:
        with self._lock:
            rows = self._read_file(self.assignments_file)
            history = self._read_file(self.history_file)
            updated = self._write_status(rows, history, assignment_id, new_status, reason, changed_by, extra)
            self._write_file(self.assignments_file, rows)
            self._write_file(self.history_file, history)
        return updated

    def list_status_history(self, assignment_id: str) -> List[StatusHistoryEntry]:
        # file order is append order
        history = self._read_file(self.history_file)
        return [history_from_row(h) for h in history if h["assignment_id"] == assignment_id]

    # ========== Documents ==========

    def create_document(self, document: DocumentRecord) -> str:
        with self._lock:
            if self.get_assignment(document.assignment_id) is None:
                raise HTTPException(status_code=404, detail="Assignment not found")
            rows = self._read_file(self.documents_file)
            rows.append(_dump(document.model_copy(update={"created_at": document.created_at or _now()})))
            self._write_file(self.documents_file, rows)
        return document.document_id

    def list_documents(self, assignment_id: str) -> List[DocumentRecord]:
        rows = self._read_file(self.documents_file)
        return [document_from_row(r) for r in rows if r["assignment_id"] == assignment_id]

    def list_verified_documents(self, assignment_id: str) -> List[DocumentRecord]:
        docs = [d for d in self.list_documents(assignment_id) if d.is_verified]
        # stable: documents verified at the same instant keep upload order
        floor = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(docs, key=lambda d: d.verified_at or d.created_at or floor)

    # ========== Merged artifacts ==========

    def get_merged_artifact(self, assignment_id: str) -> Optional[MergedArtifact]:
        rows = self._read_file(self.artifacts_file)
        row = next((r for r in rows if r["assignment_id"] == assignment_id), None)
        return artifact_from_row(row) if row else None

    def save_merged_artifact(self, artifact: MergedArtifact) -> MergedArtifact:
        with self._lock:
            rows = [r for r in self._read_file(self.artifacts_file)
                    if r["assignment_id"] != artifact.assignment_id]
            rows.append(_dump(artifact))
            self._write_file(self.artifacts_file, rows)
        return artifact

    # ========== Forwarding ledger ==========

    def append_forwarding_record(self, record: ForwardingRecord) -> str:
        with self._lock:
            rows = self._read_file(self.forwarding_file)
            if any(r["record_id"] == record.record_id for r in rows):
                raise LedgerWriteFailed("Forwarding record already exists", record_id=record.record_id)
            rows.append(_dump(record))
            self._write_file(self.forwarding_file, rows)
        return record.record_id

    def settle_forwarding_record(
        self,
        record_id: str,
        status: ForwardStatus,
        error: Optional[str] = None,
        sent_at: Optional[datetime] = None,
    ) -> ForwardingRecord:
        status = ForwardStatus(status)
        if status == ForwardStatus.QUEUED:
            raise LedgerWriteFailed("Records can only be settled to sent or failed", record_id=record_id)
        with self._lock:
            rows = self._read_file(self.forwarding_file)
            row = next((r for r in rows if r["record_id"] == record_id), None)
            if row is None or row.get("status") != ForwardStatus.QUEUED.value:
                raise LedgerWriteFailed("Record missing or already settled", record_id=record_id)
            settled = forwarding_from_row(row).model_copy(
                update={"status": status, "error": error, "sent_at": sent_at}
            )
            row.clear()
            row.update(_dump(settled))
            self._write_file(self.forwarding_file, rows)
        return settled

    def get_forwarding_record(self, record_id: str) -> Optional[ForwardingRecord]:
        rows = self._read_file(self.forwarding_file)
        row = next((r for r in rows if r["record_id"] == record_id), None)
        return forwarding_from_row(row) if row else None

    def list_forwarding_records(
        self,
        candidate_id: Optional[str] = None,
        project_id: Optional[str] = None,
        role_id: Optional[str] = None,
    ) -> List[ForwardingRecord]:
        rows = self._read_file(self.forwarding_file)
        if candidate_id:
            rows = [r for r in rows if r.get("candidate_id") == candidate_id]
        if project_id:
            rows = [r for r in rows if r.get("project_id") == project_id]
        if role_id:
            rows = [r for r in rows if r.get("role_id") == role_id]
        return [forwarding_from_row(r) for r in rows]

    # ========== Processing transfers ==========

    def create_processing_transfers(
        self,
        assignment_ids: Sequence[str],
        assigned_user_id: str,
        notes: Optional[str] = None,
        transferred_by: Optional[str] = None,
    ) -> List[ProcessingTransfer]:
        with self._lock:
            rows = self._read_file(self.assignments_file)
            by_id = {r["assignment_id"]: r for r in rows}
            missing = [a for a in assignment_ids if a not in by_id]
            if missing:
                raise HTTPException(status_code=404, detail=f"Assignments not found: {', '.join(missing)}")
            not_passed = [a for a in assignment_ids if by_id[a].get("status") != PipelineStatus.PASSED.value]
            if not_passed:
                raise HTTPException(status_code=409, detail=f"Not in passed status: {', '.join(not_passed)}")

            history = self._read_file(self.history_file)
            transfers = self._read_file(self.transfers_file)
            created: List[ProcessingTransfer] = []
            for aid in assignment_ids:
                transfer = ProcessingTransfer(
                    transfer_id=str(uuid.uuid4()),
                    assignment_id=aid,
                    assigned_user_id=assigned_user_id,
                    notes=notes,
                    transferred_by=transferred_by,
                )
                transfers.append(_dump(transfer))
                self._write_status(
                    rows, history, aid, PipelineStatus.TRANSFERRED_TO_PROCESSING, notes, transferred_by
                )
                created.append(transfer)

            self._write_file(self.transfers_file, transfers)
            self._write_file(self.assignments_file, rows)
            self._write_file(self.history_file, history)
        return created
