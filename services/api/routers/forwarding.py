# services/api/routers/forwarding.py
from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from main import get_storage_adapter
from settings import get_settings
from core.ledger import append_correction, latest_by_candidate, latest_forwarding, query_history
from models import ForwardStatus, ForwardingRecord
from schemas.forwarding import CorrectionCreate, HistoryOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/forwarding", tags=["forwarding"])

Storage = Annotated[object, Depends(get_storage_adapter)]


@router.get("/history", response_model=HistoryOut)
async def forwarding_history(
    storage: Storage,
    candidate_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    role_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Matches recipient or notes"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=200),
):
    """Newest-first forwarding history with pagination meta."""
    return await asyncio.to_thread(
        query_history,
        storage,
        candidate_id=candidate_id,
        project_id=project_id,
        role_id=role_id,
        search=search,
        page=page,
        limit=limit or get_settings().history_default_limit,
    )


@router.get("/latest", response_model=Optional[ForwardingRecord])
async def latest_for_candidate(
    storage: Storage,
    candidate_id: str = Query(..., min_length=1),
    project_id: Optional[str] = Query(None),
    role_id: Optional[str] = Query(None),
):
    """Most recent record for a candidate (by sent_at, else created_at); null if none."""
    return await asyncio.to_thread(
        latest_forwarding, storage, candidate_id, project_id=project_id, role_id=role_id
    )


@router.get("/projects/{project_id}/latest", response_model=Dict[str, ForwardingRecord])
async def latest_for_project(project_id: str, storage: Storage):
    return await asyncio.to_thread(latest_by_candidate, storage, project_id)


@router.post(
    "/records/{record_id}/corrections",
    response_model=ForwardingRecord,
    status_code=status.HTTP_201_CREATED,
)
async def correct_record(record_id: str, payload: CorrectionCreate, storage: Storage):
    """
    Record a corrected outcome for a settled record. The original stays as
    it was; the correction is a new record pointing at it.
    """
    original = await asyncio.to_thread(storage.get_forwarding_record, record_id)
    if original is None:
        raise HTTPException(status_code=404, detail=f"Forwarding record {record_id} not found")
    if original.status == ForwardStatus.QUEUED:
        raise HTTPException(status_code=409, detail="Record is still queued and cannot be corrected yet")

    return await asyncio.to_thread(
        append_correction,
        storage,
        record_id,
        status=ForwardStatus(payload.status),
        error=payload.error,
        notes=payload.notes,
        sender_id=payload.sender_id,
    )
