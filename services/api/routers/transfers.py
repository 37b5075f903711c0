# services/api/routers/transfers.py
from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from main import get_storage_adapter
from settings import get_settings
from core.transfers import TransferItem, transfer_to_processing
from schemas.pipeline import BulkOut, TransfersCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/processing", tags=["processing"])

Storage = Annotated[object, Depends(get_storage_adapter)]


@router.post("/transfers", response_model=BulkOut)
async def create_transfers(payload: TransfersCreate, storage: Storage):
    """
    Hand passed candidates over to processing. Candidates with the same
    assignee and notes go out together; each group succeeds or fails as a whole.
    """
    settings = get_settings()
    result = await transfer_to_processing(
        storage,
        [TransferItem(i.assignment_id, i.assigned_user_id, i.notes) for i in payload.items],
        transferred_by=payload.transferred_by,
        max_parallel=settings.max_parallel_dispatches,
        timeout=settings.dispatch_timeout_seconds,
    )
    result.report.raise_for_failures()
    return BulkOut(**result.to_dict())
