# services/api/core/merge.py
"""
Document Merge Orchestrator.

Builds one merged PDF from an ordered subset of an assignment's verified
documents and answers "is the current artifact stale?" by comparing id sets.

Flow for request_merge():
  1) validate ids against the verified set (MergeInputInvalid)
  2) drop merged-sentinel selections for the assignment in open batches
  3) fetch each source over HTTP (or from the local artifact store)
  4) merge with pypdfium2; PNG/JPEG pages go through Pillow first
  5) store bytes, then replace the assignment's single artifact slot
Any failure in 3-5 raises MergeFailed and leaves the previous artifact alone.
"""
from __future__ import annotations

import asyncio
import io
import logging
import re
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
import pypdfium2 as pdfium
from PIL import Image

from core.artifact_store import LocalArtifactStore
from core.errors import AssignmentNotFound, MergeFailed, MergeInputInvalid
from models import CandidateAssignment, DocumentRecord, MergedArtifact, utcnow

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


# ---------- Ordering ----------------------------------------------------------

def propose_order(verified_docs: Sequence[DocumentRecord]) -> List[str]:
    """Initial merge order: verification order as returned by storage."""
    return [d.document_id for d in verified_docs]


def move_to_position(order: Sequence[str], doc_id: str, position: int) -> List[str]:
    """
    Move `doc_id` to 0-based `position` (clamped to the list bounds).
    Returns a new list; raises ValueError if the id is not in `order`.
    """
    items = list(order)
    if doc_id not in items:
        raise ValueError(f"{doc_id} is not part of the merge order")
    items.remove(doc_id)
    position = max(0, min(position, len(items)))
    items.insert(position, doc_id)
    return items


def validate_merge_input(
    ordered_ids: Sequence[str],
    verified_docs: Sequence[DocumentRecord],
) -> List[DocumentRecord]:
    """Return the documents in requested order, or raise MergeInputInvalid."""
    if not ordered_ids:
        raise MergeInputInvalid("Select at least one verified document to merge")

    seen = set()
    dupes = [i for i in ordered_ids if i in seen or seen.add(i)]
    if dupes:
        raise MergeInputInvalid(f"Duplicate document ids in merge order: {', '.join(sorted(set(dupes)))}")

    by_id = {d.document_id: d for d in verified_docs}
    unknown = [i for i in ordered_ids if i not in by_id]
    if unknown:
        raise MergeInputInvalid(
            f"Documents are not verified for this candidate: {', '.join(unknown)}"
        )
    return [by_id[i] for i in ordered_ids]


# ---------- Staleness ---------------------------------------------------------

def is_stale(input_ids: Iterable[str], current_verified_ids: Iterable[str]) -> bool:
    """True when the verified id set differs from the set the artifact was built from."""
    return set(input_ids) != set(current_verified_ids)


def is_artifact_stale(
    artifact: MergedArtifact,
    current_verified_ids: Iterable[str],
    requested_order: Optional[Sequence[str]] = None,
) -> bool:
    """
    Stale if the verified set changed since generation, a merged source is no
    longer verified, or the caller asks for a different order.
    """
    current = set(current_verified_ids)
    if is_stale(artifact.verified_document_ids, current):
        return True
    if not set(artifact.source_document_ids) <= current:
        return True
    if requested_order is not None and list(requested_order) != list(artifact.source_document_ids):
        return True
    return False


# ---------- Naming ------------------------------------------------------------

def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", value or "").strip("_")


def merged_file_name(assignment: CandidateAssignment, when: Optional[datetime] = None) -> str:
    when = when or utcnow()
    parts = [
        _slug(assignment.candidate_name) or _slug(assignment.candidate_id),
        _slug(assignment.role_label) or _slug(assignment.project_title),
        "Merged",
        when.strftime("%Y%m%d_%H%M%S"),
    ]
    return "_".join(p for p in parts if p) + ".pdf"


# ---------- Bytes -------------------------------------------------------------

async def fetch_document_bytes(
    url: str,
    *,
    timeout: float = 30.0,
    store: Optional[LocalArtifactStore] = None,
) -> bytes:
    if store is not None:
        local = store.local_path(url)
        if local is not None:
            return await asyncio.to_thread(local.read_bytes)

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        r = await client.get(url)
        r.raise_for_status()
        return r.content


def _image_to_pdf(data: bytes) -> bytes:
    with Image.open(io.BytesIO(data)) as img:
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        buf = io.BytesIO()
        img.save(buf, format="PDF", resolution=150.0)
        return buf.getvalue()


def build_merged_pdf(sources: Sequence[Tuple[str, bytes]]) -> bytes:
    """
    Concatenate (name, bytes) sources into one PDF, in order.
    PDFs keep their pages; PNG/JPEG images become one page each.
    """
    merged = pdfium.PdfDocument.new()
    try:
        for name, data in sources:
            if not data.lstrip()[:4].startswith(PDF_MAGIC):
                try:
                    data = _image_to_pdf(data)
                except OSError:
                    raise MergeFailed(f"Unsupported document format: {name}")
            try:
                src = pdfium.PdfDocument(data)
            except pdfium.PdfiumError as e:
                raise MergeFailed(f"Could not read {name}: {e}")
            try:
                merged.import_pages(src)
            finally:
                src.close()

        buf = io.BytesIO()
        merged.save(buf)
        return buf.getvalue()
    finally:
        merged.close()


# ---------- Orchestration -----------------------------------------------------

async def merge_view(storage, assignment_id: str) -> Dict[str, Any]:
    """What the merge dialog needs on every open: docs, default order, artifact, stale flag."""
    assignment = await asyncio.to_thread(storage.get_assignment, assignment_id)
    if assignment is None:
        raise AssignmentNotFound(assignment_id)

    verified = await asyncio.to_thread(storage.list_verified_documents, assignment_id)
    artifact = await asyncio.to_thread(storage.get_merged_artifact, assignment_id)
    verified_ids = [d.document_id for d in verified]
    return {
        "assignment_id": assignment_id,
        "verified_documents": verified,
        "proposed_order": propose_order(verified),
        "artifact": artifact,
        "stale": is_artifact_stale(artifact, verified_ids) if artifact else False,
    }


async def request_merge(
    storage,
    store: LocalArtifactStore,
    assignment_id: str,
    ordered_ids: Sequence[str],
    *,
    registry=None,
    timeout: float = 30.0,
) -> MergedArtifact:
    assignment = await asyncio.to_thread(storage.get_assignment, assignment_id)
    if assignment is None:
        raise AssignmentNotFound(assignment_id)

    verified = await asyncio.to_thread(storage.list_verified_documents, assignment_id)
    docs = validate_merge_input(list(ordered_ids), verified)

    # a cached merged choice is unsafe from the moment a new merge is requested
    if registry is not None:
        registry.clear_merged_selections(assignment_id)

    try:
        payloads = await asyncio.gather(
            *(fetch_document_bytes(d.file_url, timeout=timeout, store=store) for d in docs)
        )
    except httpx.HTTPError as e:
        logger.error("Merge fetch failed for %s: %s", assignment_id, e)
        raise MergeFailed(f"Could not fetch source document: {e}", assignment_id=assignment_id) from e

    try:
        pdf_bytes = await asyncio.to_thread(
            build_merged_pdf, [(d.file_name, data) for d, data in zip(docs, payloads)]
        )
    except MergeFailed as e:
        e.assignment_id = assignment_id
        logger.error("Merge failed for %s: %s", assignment_id, e.message)
        raise

    generated_at = utcnow()
    file_name = merged_file_name(assignment, generated_at)
    try:
        file_url, size = await asyncio.to_thread(store.save, file_name, pdf_bytes)
    except OSError as e:
        raise MergeFailed(f"Could not store merged document: {e}", assignment_id=assignment_id) from e

    artifact = MergedArtifact(
        artifact_id=str(uuid.uuid4()),
        assignment_id=assignment.assignment_id,
        candidate_id=assignment.candidate_id,
        project_id=assignment.project_id,
        role_id=assignment.role_id,
        file_name=file_name,
        file_url=file_url,
        file_size=size,
        source_document_ids=[d.document_id for d in docs],
        verified_document_ids=[d.document_id for d in verified],
        generated_at=generated_at,
    )
    await asyncio.to_thread(storage.save_merged_artifact, artifact)
    logger.info(
        "Merged %d document(s) for %s into %s (%d bytes)",
        len(docs), assignment_id, file_name, size,
    )
    return artifact
