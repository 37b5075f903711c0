# services/api/core/ledger.py
"""
Forwarding Ledger: one append-only record per candidate per dispatch attempt.

Records are written `queued` before delivery and settled exactly once to
`sent` or `failed`. Nothing is deleted or overwritten; a correction is a new
record pointing at the one it corrects.
"""
from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.errors import LedgerWriteFailed
from models import ForwardStatus, ForwardingRecord, utcnow

logger = logging.getLogger(__name__)


def new_record_id() -> str:
    return f"fwd-{uuid.uuid4().hex}"


def append_queued(storage, records: Iterable[ForwardingRecord]) -> List[ForwardingRecord]:
    """
    Write the records as `queued`. If a write fails, the records already
    written are settled to `failed` with the ledger error before the
    failure is raised, so none is left queued.
    """
    written: List[ForwardingRecord] = []
    for rec in records:
        rec = rec.model_copy(update={"status": ForwardStatus.QUEUED, "sent_at": None, "error": None})
        try:
            storage.append_forwarding_record(rec)
        except Exception as e:
            failure = e if isinstance(e, LedgerWriteFailed) else LedgerWriteFailed(str(e), record_id=rec.record_id)
            _fail_written(storage, written, f"Ledger write failed: {failure.message}")
            if failure is e:
                raise
            raise failure from e
        written.append(rec)
    if written:
        logger.info("Queued %d forwarding record(s) (dispatch %s)", len(written), written[0].dispatch_id)
    return written


def _fail_written(storage, written: List[ForwardingRecord], reason: str) -> None:
    for rec in written:
        try:
            settle(storage, rec.record_id, ok=False, error=reason)
        except LedgerWriteFailed as e:
            logger.error("Could not settle %s after a failed append: %s", rec.record_id, e.message)
    if written:
        logger.warning("Settled %d queued record(s) to failed after a ledger write error", len(written))


def settle(
    storage,
    record_id: str,
    *,
    ok: bool,
    error: Optional[str] = None,
    when: Optional[datetime] = None,
) -> ForwardingRecord:
    """Settle a queued record to `sent` (with sent_at) or `failed` (with error)."""
    if ok:
        return storage.settle_forwarding_record(record_id, ForwardStatus.SENT, None, when or utcnow())
    return storage.settle_forwarding_record(record_id, ForwardStatus.FAILED, error or "unknown error", None)


def append_correction(
    storage,
    original_id: str,
    *,
    status: ForwardStatus,
    error: Optional[str] = None,
    notes: Optional[str] = None,
    sender_id: Optional[str] = None,
) -> ForwardingRecord:
    """
    Record a corrected outcome for an already-settled record as a new
    record; the original stays untouched.
    """
    original = storage.get_forwarding_record(original_id)
    if original is None:
        raise LedgerWriteFailed("Cannot correct a record that does not exist", record_id=original_id)
    if ForwardStatus(status) == ForwardStatus.QUEUED:
        raise LedgerWriteFailed("A correction must carry a final status", record_id=original_id)

    correction = original.model_copy(update={
        "record_id": new_record_id(),
        "status": ForwardStatus.QUEUED,
        "error": None,
        "sent_at": None,
        "notes": notes if notes is not None else original.notes,
        "corrects_record_id": original.record_id,
        "sender_id": sender_id or original.sender_id,
        "created_at": utcnow(),
    })
    storage.append_forwarding_record(correction)
    settled = settle(storage, correction.record_id, ok=status == ForwardStatus.SENT, error=error)
    logger.info("Recorded correction %s for %s (%s)", settled.record_id, original_id, settled.status.value)
    return settled


# ---------- Read path ---------------------------------------------------------

def _newest_first(records: Iterable[ForwardingRecord]) -> List[ForwardingRecord]:
    return sorted(records, key=lambda r: (r.effective_time, r.created_at), reverse=True)


def _matches(record: ForwardingRecord, term: str) -> bool:
    return term in (record.recipient_email or "").lower() or term in (record.notes or "").lower()


def query_history(
    storage,
    *,
    candidate_id: Optional[str] = None,
    project_id: Optional[str] = None,
    role_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    """
    Newest-first, filtered, case-insensitive search over recipient and notes.
    Returns {"items": [...], "meta": {total, page, limit, totalPages}}.
    """
    page = max(1, int(page))
    limit = max(1, int(limit))

    records = storage.list_forwarding_records(candidate_id=candidate_id, project_id=project_id, role_id=role_id)
    term = (search or "").strip().lower()
    if term:
        records = [r for r in records if _matches(r, term)]

    ordered = _newest_first(records)
    total = len(ordered)
    start = (page - 1) * limit
    return {
        "items": ordered[start:start + limit],
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }


def latest_forwarding(
    storage,
    candidate_id: str,
    *,
    project_id: Optional[str] = None,
    role_id: Optional[str] = None,
) -> Optional[ForwardingRecord]:
    """Greatest sent_at (falling back to created_at) among the candidate's records."""
    records = storage.list_forwarding_records(candidate_id=candidate_id, project_id=project_id, role_id=role_id)
    if not records:
        return None
    return max(records, key=lambda r: (r.effective_time, r.created_at))


def latest_by_candidate(storage, project_id: str) -> Dict[str, ForwardingRecord]:
    """Latest record per candidate across a project."""
    latest: Dict[str, ForwardingRecord] = {}
    for r in storage.list_forwarding_records(project_id=project_id):
        cur = latest.get(r.candidate_id)
        if cur is None or (r.effective_time, r.created_at) > (cur.effective_time, cur.created_at):
            latest[r.candidate_id] = r
    return latest
