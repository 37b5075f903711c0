# services/api/routers/merge.py
from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from main import get_artifact_store, get_batch_registry, get_storage_adapter
from settings import get_settings
from core.merge import merge_view, request_merge
from core.selection import BatchRegistry
from models import MergedArtifact
from schemas.merge import MergeRequest, MergeViewOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/merge", tags=["merge"])

Storage = Annotated[object, Depends(get_storage_adapter)]
Registry = Annotated[BatchRegistry, Depends(get_batch_registry)]
Store = Annotated[object, Depends(get_artifact_store)]


@router.get("/{assignment_id}", response_model=MergeViewOut)
async def get_merge_view(assignment_id: str, storage: Storage):
    """Verified documents, proposed order, current artifact and whether it is stale."""
    return MergeViewOut(**await merge_view(storage, assignment_id))


@router.post("/{assignment_id}", response_model=MergedArtifact)
async def create_merge(
    assignment_id: str,
    payload: MergeRequest,
    storage: Storage,
    registry: Registry,
    store: Store,
):
    """Merge the given verified documents, in order, into one PDF (replaces the previous one)."""
    return await request_merge(
        storage,
        store,
        assignment_id,
        payload.document_ids,
        registry=registry,
        timeout=get_settings().merge_fetch_timeout,
    )
