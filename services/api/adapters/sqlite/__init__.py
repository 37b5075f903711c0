# services/api/adapters/sqlite/__init__.py
from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from fastapi import HTTPException
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

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
    VerificationStatus,
)
from models.converters import (
    artifact_from_row,
    assignment_from_row,
    document_from_row,
    forwarding_from_row,
    history_from_row,
    to_row,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---- Engine (SQLite) with WAL & pragmas -------------------------------------

def _ensure_dir(path: str):
    d = os.path.dirname(path)
    if d and not os.path.isdir(d):
        os.makedirs(d, exist_ok=True)

def make_engine(db_url: str) -> Engine:
    # Create data dir if sqlite file
    if db_url.startswith("sqlite:///"):
        file_path = db_url.replace("sqlite:///", "", 1)
        _ensure_dir(file_path)

    engine = create_engine(db_url, future=True, pool_pre_ping=True)

    # Apply pragmas per-connection
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore
        if isinstance(dbapi_connection, sqlite3.Connection):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA temp_store=MEMORY;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    return engine

# ---- Schema via SQLAlchemy Core ---------------------------------------------

metadata = MetaData()

assignments = Table(
    "assignments",
    metadata,
    Column("assignment_id", String, primary_key=True),
    Column("candidate_id", String, nullable=False),
    Column("project_id", String, nullable=False),
    Column("role_id", String),
    Column("candidate_name", String, nullable=False, default=""),
    Column("project_title", String, nullable=False, default=""),
    Column("role_label", String, nullable=False, default=""),
    Column("client_email", String),
    Column("status", String, nullable=False),
    Column("sub_status", String),
    Column("is_in_interview", Boolean, nullable=False, default=False),
    Column("interview_scheduled_at", DateTime),
    Column("interview_conducted_at", DateTime),
    Column("archived", Boolean, nullable=False, default=False),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

status_history = Table(
    "status_history",
    metadata,
    Column("history_id", String, primary_key=True),
    Column("assignment_id", String, ForeignKey("assignments.assignment_id", ondelete="CASCADE"), nullable=False),
    Column("from_status", String),
    Column("to_status", String, nullable=False),
    Column("reason", Text),
    Column("changed_by", String),
    Column("changed_at", DateTime, nullable=False),
    # insertion order tiebreak for rows written within the same clock tick
    Column("seq", Integer, nullable=False, default=0),
)

documents = Table(
    "documents",
    metadata,
    Column("document_id", String, primary_key=True),
    Column("assignment_id", String, ForeignKey("assignments.assignment_id", ondelete="CASCADE"), nullable=False),
    Column("file_name", String, nullable=False),
    Column("file_size", Integer, nullable=False, default=0),
    Column("file_url", Text, nullable=False),
    Column("doc_type", String, nullable=False, default=""),
    Column("mime_type", String),
    Column("verification_status", String, nullable=False, default="pending"),
    Column("verified_at", DateTime),
    Column("created_at", DateTime),
)

merged_artifacts = Table(
    "merged_artifacts",
    metadata,
    # one slot per assignment
    Column("assignment_id", String, ForeignKey("assignments.assignment_id", ondelete="CASCADE"), primary_key=True),
    Column("artifact_id", String, nullable=False),
    Column("candidate_id", String, nullable=False),
    Column("project_id", String, nullable=False),
    Column("role_id", String),
    Column("file_name", String, nullable=False),
    Column("file_url", Text, nullable=False),
    Column("file_size", Integer, nullable=False, default=0),
    Column("mime_type", String, nullable=False, default="application/pdf"),
    Column("source_document_ids", Text, nullable=False, default="[]"),
    Column("verified_document_ids", Text, nullable=False, default="[]"),
    Column("generated_at", DateTime, nullable=False),
)

forwarding_records = Table(
    "forwarding_records",
    metadata,
    Column("record_id", String, primary_key=True),
    Column("assignment_id", String, nullable=False),
    Column("candidate_id", String, nullable=False),
    Column("project_id", String, nullable=False),
    Column("role_id", String),
    Column("recipient_email", String, nullable=False),
    Column("cc_emails", Text, nullable=False, default="[]"),
    Column("bcc_emails", Text, nullable=False, default="[]"),
    Column("send_type", String, nullable=False),
    Column("delivery_method", String, nullable=False),
    Column("status", String, nullable=False, default="queued"),
    Column("is_bulk", Boolean, nullable=False, default=False),
    Column("document_ids", Text, nullable=False, default="[]"),
    Column("file_names", Text, nullable=False, default="[]"),
    Column("notes", Text),
    Column("error", Text),
    Column("dispatch_id", String),
    Column("corrects_record_id", String),
    Column("sender_id", String),
    Column("created_at", DateTime, nullable=False),
    Column("sent_at", DateTime),
)

processing_transfers = Table(
    "processing_transfers",
    metadata,
    Column("transfer_id", String, primary_key=True),
    Column("assignment_id", String, ForeignKey("assignments.assignment_id", ondelete="CASCADE"), nullable=False),
    Column("assigned_user_id", String, nullable=False),
    Column("notes", Text),
    Column("transferred_by", String),
    Column("created_at", DateTime, nullable=False),
)

Index("idx_assignments_project", assignments.c.project_id)
Index("idx_assignments_status", assignments.c.status)
Index("idx_history_assignment", status_history.c.assignment_id)
Index("idx_documents_assignment", documents.c.assignment_id)
Index("idx_forwarding_candidate", forwarding_records.c.candidate_id)
Index("idx_forwarding_project", forwarding_records.c.project_id)
Index("idx_transfers_assignment", processing_transfers.c.assignment_id)

_ASSIGNMENT_FIELDS = {c.name for c in assignments.columns}

# ---- Adapter implementation --------------------------------------------------

@dataclass(frozen=True)
class SqliteAdapter:
    engine: Engine

    @classmethod
    def from_url(cls, db_url: str = "sqlite:///data/dispatch.db") -> "SqliteAdapter":
        eng = make_engine(db_url)
        metadata.create_all(eng)
        return cls(engine=eng)

    # Assignments
    def get_assignment(self, assignment_id: str) -> Optional[CandidateAssignment]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(assignments).where(assignments.c.assignment_id == assignment_id)
            ).mappings().first()
        return assignment_from_row(dict(row)) if row else None

    def list_assignments(
        self,
        ids: Optional[Sequence[str]] = None,
        project_id: Optional[str] = None,
        status: Optional[PipelineStatus] = None,
    ) -> List[CandidateAssignment]:
        q = select(assignments)
        if ids is not None:
            q = q.where(assignments.c.assignment_id.in_(list(ids)))
        if project_id:
            q = q.where(assignments.c.project_id == project_id)
        if status is not None:
            q = q.where(assignments.c.status == PipelineStatus(status).value)
        with self.engine.begin() as conn:
            rows = conn.execute(q.order_by(assignments.c.created_at.asc())).mappings().all()
        return [assignment_from_row(dict(r)) for r in rows]

    def create_assignment(self, assignment: CandidateAssignment) -> str:
        now = _now()
        row = to_row(assignment)
        row["created_at"] = row.get("created_at") or now
        row["updated_at"] = now
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(assignments).values(**row))
        except IntegrityError as e:
            raise HTTPException(status_code=409, detail="Assignment already exists") from e
        return assignment.assignment_id

    def update_assignment(self, assignment_id: str, updates: Dict[str, Any]) -> CandidateAssignment:
        allowed = {k: v for k, v in updates.items() if k in _ASSIGNMENT_FIELDS and k not in ("assignment_id", "status")}
        allowed["updated_at"] = _now()
        with self.engine.begin() as conn:
            res = conn.execute(
                update(assignments).where(assignments.c.assignment_id == assignment_id).values(**allowed)
            )
            if res.rowcount == 0:
                raise HTTPException(status_code=404, detail="Assignment not found")
            row = conn.execute(
                select(assignments).where(assignments.c.assignment_id == assignment_id)
            ).mappings().first()
        return assignment_from_row(dict(row))

    # Status (+ history row, atomic)
    def _write_status(
        self,
        conn: Connection,
        assignment_id: str,
        new_status: PipelineStatus,
        reason: Optional[str],
        changed_by: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        row = conn.execute(
            select(assignments.c.status).where(assignments.c.assignment_id == assignment_id)
        ).first()
        if not row:
            raise HTTPException(status_code=404, detail="Assignment not found")
        now = _now()
        values = {k: v for k, v in (extra or {}).items() if k in _ASSIGNMENT_FIELDS and k != "assignment_id"}
        values.update(status=PipelineStatus(new_status).value, updated_at=now)
        conn.execute(
            update(assignments).where(assignments.c.assignment_id == assignment_id).values(**values)
        )
        seq = conn.execute(
            select(status_history.c.seq)
            .where(status_history.c.assignment_id == assignment_id)
            .order_by(status_history.c.seq.desc())
        ).scalar() or 0
        conn.execute(
            insert(status_history).values(
                history_id=str(uuid4()),
                assignment_id=assignment_id,
                from_status=row.status,
                to_status=PipelineStatus(new_status).value,
                reason=reason,
                changed_by=changed_by,
                changed_at=now,
                seq=seq + 1,
            )
        )

    def update_assignment_status(
        self,
        assignment_id: str,
        new_status: PipelineStatus,
        reason: Optional[str] = None,
        changed_by: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> CandidateAssignment:
        with self.engine.begin() as conn:
            self._write_status(conn, assignment_id, new_status, reason, changed_by, extra)
        return self.get_assignment(assignment_id)

    def list_status_history(self, assignment_id: str) -> List[StatusHistoryEntry]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(status_history)
                .where(status_history.c.assignment_id == assignment_id)
                .order_by(status_history.c.seq.asc())
            ).mappings().all()
        return [history_from_row({k: v for k, v in r.items() if k != "seq"}) for r in rows]

    # Documents
    def create_document(self, document: DocumentRecord) -> str:
        row = to_row(document)
        row["created_at"] = row.get("created_at") or _now()
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(assignments.c.assignment_id).where(assignments.c.assignment_id == document.assignment_id)
            ).first()
            if not exists:
                raise HTTPException(status_code=404, detail="Assignment not found")
            conn.execute(insert(documents).values(**row))
        return document.document_id

    def list_documents(self, assignment_id: str) -> List[DocumentRecord]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(documents)
                .where(documents.c.assignment_id == assignment_id)
                .order_by(documents.c.created_at.asc())
            ).mappings().all()
        return [document_from_row(dict(r)) for r in rows]

    def list_verified_documents(self, assignment_id: str) -> List[DocumentRecord]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(documents)
                .where(
                    documents.c.assignment_id == assignment_id,
                    documents.c.verification_status == VerificationStatus.VERIFIED.value,
                )
                .order_by(documents.c.verified_at.asc(), documents.c.created_at.asc())
            ).mappings().all()
        return [document_from_row(dict(r)) for r in rows]

    # Merged artifacts (single slot)
    def get_merged_artifact(self, assignment_id: str) -> Optional[MergedArtifact]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(merged_artifacts).where(merged_artifacts.c.assignment_id == assignment_id)
            ).mappings().first()
        return artifact_from_row(dict(row)) if row else None

    def save_merged_artifact(self, artifact: MergedArtifact) -> MergedArtifact:
        row = to_row(artifact)
        with self.engine.begin() as conn:
            conn.execute(delete(merged_artifacts).where(merged_artifacts.c.assignment_id == artifact.assignment_id))
            conn.execute(insert(merged_artifacts).values(**row))
        return artifact

    # Forwarding ledger (append + settle only)
    def append_forwarding_record(self, record: ForwardingRecord) -> str:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(forwarding_records).values(**to_row(record)))
        except IntegrityError as e:
            raise LedgerWriteFailed("Forwarding record already exists", record_id=record.record_id) from e
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
        with self.engine.begin() as conn:
            res = conn.execute(
                update(forwarding_records)
                .where(
                    forwarding_records.c.record_id == record_id,
                    forwarding_records.c.status == ForwardStatus.QUEUED.value,
                )
                .values(status=status.value, error=error, sent_at=sent_at)
            )
            if res.rowcount == 0:
                raise LedgerWriteFailed("Record missing or already settled", record_id=record_id)
            row = conn.execute(
                select(forwarding_records).where(forwarding_records.c.record_id == record_id)
            ).mappings().first()
        return forwarding_from_row(dict(row))

    def get_forwarding_record(self, record_id: str) -> Optional[ForwardingRecord]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(forwarding_records).where(forwarding_records.c.record_id == record_id)
            ).mappings().first()
        return forwarding_from_row(dict(row)) if row else None

    def list_forwarding_records(
        self,
        candidate_id: Optional[str] = None,
        project_id: Optional[str] = None,
        role_id: Optional[str] = None,
    ) -> List[ForwardingRecord]:
        q = select(forwarding_records)
        if candidate_id:
            q = q.where(forwarding_records.c.candidate_id == candidate_id)
        if project_id:
            q = q.where(forwarding_records.c.project_id == project_id)
        if role_id:
            q = q.where(forwarding_records.c.role_id == role_id)
        with self.engine.begin() as conn:
            rows = conn.execute(q).mappings().all()
        return [forwarding_from_row(dict(r)) for r in rows]

    # Processing transfers (one group = one transaction)
    def create_processing_transfers(
        self,
        assignment_ids: Sequence[str],
        assigned_user_id: str,
        notes: Optional[str] = None,
        transferred_by: Optional[str] = None,
    ) -> List[ProcessingTransfer]:
        created: List[ProcessingTransfer] = []
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(assignments.c.assignment_id, assignments.c.status)
                .where(assignments.c.assignment_id.in_(list(assignment_ids)))
            ).all()
            by_id = {r.assignment_id: r.status for r in rows}
            missing = [a for a in assignment_ids if a not in by_id]
            if missing:
                raise HTTPException(status_code=404, detail=f"Assignments not found: {', '.join(missing)}")
            not_passed = [a for a in assignment_ids if by_id[a] != PipelineStatus.PASSED.value]
            if not_passed:
                raise HTTPException(status_code=409, detail=f"Not in passed status: {', '.join(not_passed)}")

            for aid in assignment_ids:
                transfer = ProcessingTransfer(
                    transfer_id=str(uuid4()),
                    assignment_id=aid,
                    assigned_user_id=assigned_user_id,
                    notes=notes,
                    transferred_by=transferred_by,
                )
                conn.execute(insert(processing_transfers).values(**to_row(transfer)))
                self._write_status(
                    conn,
                    aid,
                    PipelineStatus.TRANSFERRED_TO_PROCESSING,
                    notes,
                    transferred_by,
                )
                created.append(transfer)
        return created
