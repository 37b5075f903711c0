# services/api/routers/batches.py
from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from main import get_artifact_store, get_batch_registry, get_storage_adapter
from settings import get_settings
from core.errors import DispatchPartialFailure
from core.forwarding import ForwardRequest, forward_batch
from core.pipeline import gate, split_found
from core.selection import BatchRegistry, DispatchBatch
from schemas.batch import (
    BatchOpen,
    BatchOut,
    NotesUpdate,
    PageUpdate,
    RemovalOut,
    SelectionOut,
    ToggleRequest,
)
from schemas.forwarding import ForwardCreate, ForwardOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["batches"])

# ---- DI aliases (no default value allowed) ----
Storage = Annotated[object, Depends(get_storage_adapter)]
Registry = Annotated[BatchRegistry, Depends(get_batch_registry)]
Store = Annotated[object, Depends(get_artifact_store)]


def _batch_out(batch: DispatchBatch) -> BatchOut:
    return BatchOut(
        batch_id=batch.batch_id,
        purpose=batch.purpose,
        closed=batch.closed,
        assignment_ids=list(batch.assignment_ids),
        page_items=batch.page_items(),
        current_page=batch.current_page,
        total_pages=batch.total_pages,
        page_size=batch.page_size,
        selections={aid: SelectionOut(**sel.to_dict()) for aid, sel in batch.selections.items()},
        notes=dict(batch.notes),
        excluded=dict(batch.excluded),
    )


@router.post("", response_model=BatchOut, status_code=status.HTTP_201_CREATED)
async def open_batch(payload: BatchOpen, storage: Storage, registry: Registry):
    """
    Open a bulk working set. Only candidates the action may touch become
    visible; the rest come back in `excluded` with the reason.
    """
    found = await asyncio.to_thread(storage.list_assignments, payload.assignment_ids)
    ordered, missing = split_found(payload.assignment_ids, found)
    gated = gate(ordered, payload.purpose)

    batch = registry.open(
        gated.eligible_ids,
        purpose=payload.purpose,
        page_size=payload.page_size or get_settings().bulk_page_size,
        excluded={**missing, **gated.excluded},
    )
    return _batch_out(batch)


@router.get("/{batch_id}", response_model=BatchOut)
async def get_batch(batch_id: str, registry: Registry):
    return _batch_out(registry.get(batch_id))


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_batch(batch_id: str, registry: Registry):
    registry.get(batch_id)
    registry.close(batch_id)


@router.post("/{batch_id}/toggle", response_model=BatchOut)
async def toggle_document(batch_id: str, payload: ToggleRequest, storage: Storage, registry: Registry):
    """Toggle one document (or "merged") for one candidate in the batch."""
    batch = registry.get(batch_id)
    if not batch.contains(payload.assignment_id):
        raise HTTPException(status_code=404, detail=f"Assignment {payload.assignment_id} is not in this batch")

    artifact, verified = await asyncio.gather(
        asyncio.to_thread(storage.get_merged_artifact, payload.assignment_id),
        asyncio.to_thread(storage.list_verified_documents, payload.assignment_id),
    )
    batch.toggle(
        payload.assignment_id,
        payload.document_id,
        merged_available=artifact is not None,
        verified_ids=[d.document_id for d in verified],
    )
    return _batch_out(batch)


@router.put("/{batch_id}/notes", response_model=BatchOut)
async def set_notes(batch_id: str, payload: NotesUpdate, registry: Registry):
    batch = registry.get(batch_id)
    try:
        batch.set_notes(payload.assignment_id, payload.notes)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Assignment {payload.assignment_id} is not in this batch")
    return _batch_out(batch)


@router.put("/{batch_id}/page", response_model=BatchOut)
async def set_page(batch_id: str, payload: PageUpdate, registry: Registry):
    batch = registry.get(batch_id)
    batch.set_page(payload.page)
    return _batch_out(batch)


@router.delete("/{batch_id}/candidates/{assignment_id}", response_model=RemovalOut)
async def remove_candidate(batch_id: str, assignment_id: str, registry: Registry):
    """Removing the last candidate closes the batch."""
    result = registry.remove_candidate(batch_id, assignment_id)
    return RemovalOut(closed=result.closed, current_page=result.current_page, remaining=result.remaining)


@router.post("/{batch_id}/forward", response_model=ForwardOut)
async def forward(batch_id: str, payload: ForwardCreate, storage: Storage, registry: Registry, store: Store):
    """
    Forward every visible candidate's selection to the client.

    Full success closes the batch. On a partial failure the delivered and
    ineligible candidates are removed so a resubmit only carries the rest.
    """
    batch = registry.get(batch_id)
    if batch.purpose != "forward":
        raise HTTPException(status_code=409, detail=f"Batch {batch_id} was opened for {batch.purpose}")
    if batch.visible_count == 0:
        raise HTTPException(status_code=400, detail="Batch has no candidates")

    req = ForwardRequest(
        delivery_method=payload.delivery_method,
        recipient=payload.recipient_email,
        recipients=payload.recipients,
        cc=payload.cc_emails,
        bcc=payload.bcc_emails,
        notes=payload.notes,
        subject=payload.subject,
        include_summary=payload.include_summary,
        sender_id=payload.sender_id,
    )
    result = await forward_batch(storage, store, batch, req, settings=get_settings())

    if result.report.failed:
        for aid in result.sent_ids + list(result.excluded):
            batch.remove_candidate(aid)
        raise DispatchPartialFailure(
            failed=[o.to_dict() for o in result.report.failed],
            succeeded_ids=result.sent_ids,
        )

    registry.close(batch_id)
    return ForwardOut(
        dispatch_id=result.dispatch_id,
        records=result.records,
        sent_ids=result.sent_ids,
        failed_ids=result.failed_ids,
        excluded=result.excluded,
        total_bytes=result.total_bytes,
    )
