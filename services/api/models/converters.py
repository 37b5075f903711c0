from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List

from . import (
    CandidateAssignment,
    DocumentRecord,
    ForwardingRecord,
    MergedArtifact,
    ProcessingTransfer,
    StatusHistoryEntry,
)

# List-valued fields kept as JSON text in flat storage rows
_LIST_FIELDS = {
    "cc_emails",
    "bcc_emails",
    "document_ids",
    "file_names",
    "source_document_ids",
    "verified_document_ids",
}
_BOOL_FIELDS = {"is_in_interview", "archived", "is_bulk"}


def _bool_from_row(v: Any) -> bool:
    """
    Convert stored booleans to Python bool.
    Accepts: True/False, 1/0, "true"/"false", yes/no (case-insensitive).
    """
    if v is None:
        return False
    if isinstance(v, bool):
        return v
    s = str(v).strip().upper()
    return s in ("TRUE", "1", "YES", "Y")


def _list_from_row(v: Any) -> List[str]:
    if v is None or v == "":
        return []
    if isinstance(v, list):
        return [str(x) for x in v]
    try:
        parsed = json.loads(v)
    except (TypeError, ValueError):
        return [s.strip() for s in str(v).split(",") if s.strip()]
    return [str(x) for x in parsed] if isinstance(parsed, list) else []


def _clean(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    for k in _LIST_FIELDS & out.keys():
        out[k] = _list_from_row(out[k])
    for k in _BOOL_FIELDS & out.keys():
        out[k] = _bool_from_row(out[k])
    for k, v in out.items():
        # SQLite DateTime columns come back naive; everything is stored in UTC
        if isinstance(v, datetime) and v.tzinfo is None:
            out[k] = v.replace(tzinfo=timezone.utc)
    return out


def to_row(model, *, json_lists: bool = True) -> Dict[str, Any]:
    """
    Flatten a model for storage. Enums become their values; list fields become
    JSON text unless `json_lists` is False.
    """
    row = model.model_dump(mode="python")
    for k, v in list(row.items()):
        if hasattr(v, "value"):
            row[k] = v.value
        elif k in _LIST_FIELDS and json_lists:
            row[k] = json.dumps(list(v or []))
    return row


def assignment_from_row(row: Dict[str, Any]) -> CandidateAssignment:
    return CandidateAssignment.model_validate(_clean(row))


def document_from_row(row: Dict[str, Any]) -> DocumentRecord:
    return DocumentRecord.model_validate(_clean(row))


def artifact_from_row(row: Dict[str, Any]) -> MergedArtifact:
    return MergedArtifact.model_validate(_clean(row))


def forwarding_from_row(row: Dict[str, Any]) -> ForwardingRecord:
    return ForwardingRecord.model_validate(_clean(row))


def transfer_from_row(row: Dict[str, Any]) -> ProcessingTransfer:
    return ProcessingTransfer.model_validate(_clean(row))


def history_from_row(row: Dict[str, Any]) -> StatusHistoryEntry:
    return StatusHistoryEntry.model_validate(_clean(row))
