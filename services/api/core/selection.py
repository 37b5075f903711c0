# services/api/core/selection.py
"""
Selection Store: the live set of candidates inside one bulk operation and
each candidate's document selection.

All mutations go through this module so that exclusivity (merged XOR
individual documents) and page clamping are enforced in one place.
"""
from __future__ import annotations

import logging
import math
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from cachetools import TTLCache

from core.errors import BatchNotFound
from models.selection import MERGED, Selection

logger = logging.getLogger(__name__)


# ---------- Pure selection logic ---------------------------------------------

def toggle_document(
    selection: Selection,
    doc_id: str,
    *,
    merged_available: bool,
    verified_ids: Optional[Iterable[str]] = None,
) -> Selection:
    """
    Return the selection that results from toggling `doc_id` (or the merged sentinel).

    - "merged": deselects when already chosen; otherwise replaces every individual
      pick with the sentinel. No-op when no merged artifact exists.
    - individual id: strips the merged sentinel first, then adds/removes the id.
      An id outside `verified_ids` is never added.
    """
    if doc_id == MERGED:
        if selection.merged:
            result = Selection.empty()
        elif merged_available:
            result = Selection.merged_only()
        else:
            result = selection
        result.validate()
        return result

    current = set() if selection.merged else set(selection.document_ids)
    if doc_id in current:
        current.discard(doc_id)
    elif verified_ids is None or doc_id in set(verified_ids):
        current.add(doc_id)

    result = Selection.of(current)
    result.validate()
    return result


def total_pages(count: int, page_size: int) -> int:
    return max(1, math.ceil(count / page_size))


def clamp_page(page: int, count: int, page_size: int) -> int:
    return max(1, min(page, total_pages(count, page_size)))


# ---------- Batch -------------------------------------------------------------

@dataclass
class RemovalResult:
    closed: bool
    current_page: int
    remaining: int


@dataclass
class DispatchBatch:
    """
    Ephemeral working set of one bulk modal: visible assignments (in opening
    order), their selections and notes, and the current page.
    """

    batch_id: str
    purpose: str
    assignment_ids: List[str]
    page_size: int = 16
    current_page: int = 1
    selections: Dict[str, Selection] = field(default_factory=dict)
    notes: Dict[str, str] = field(default_factory=dict)
    excluded: Dict[str, str] = field(default_factory=dict)
    closed: bool = False

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError("page_size must be > 0")
        seen: Set[str] = set()
        ordered: List[str] = []
        for aid in self.assignment_ids:
            if aid and aid not in seen:
                seen.add(aid)
                ordered.append(aid)
        self.assignment_ids = ordered
        self.current_page = clamp_page(self.current_page, len(ordered), self.page_size)

    # ------------ reads ------------

    @property
    def visible_count(self) -> int:
        return len(self.assignment_ids)

    @property
    def total_pages(self) -> int:
        return total_pages(self.visible_count, self.page_size)

    def contains(self, assignment_id: str) -> bool:
        return assignment_id in self.assignment_ids

    def selection_for(self, assignment_id: str) -> Selection:
        return self.selections.get(assignment_id, Selection.empty())

    def page_items(self) -> List[str]:
        start = (self.current_page - 1) * self.page_size
        return self.assignment_ids[start:start + self.page_size]

    # ------------ mutations ------------

    def remove_candidate(self, assignment_id: str) -> RemovalResult:
        """
        Drop one candidate and its selection/notes. Removing the last candidate
        closes the batch. Repeated removal of the same id changes nothing.
        """
        if assignment_id in self.assignment_ids:
            self.assignment_ids = [a for a in self.assignment_ids if a != assignment_id]
        self.selections.pop(assignment_id, None)
        self.notes.pop(assignment_id, None)

        remaining = len(self.assignment_ids)
        if remaining == 0:
            self.closed = True
            return RemovalResult(closed=True, current_page=1, remaining=0)

        self.current_page = clamp_page(self.current_page, remaining, self.page_size)
        return RemovalResult(closed=False, current_page=self.current_page, remaining=remaining)

    def set_page(self, page: int) -> int:
        self.current_page = clamp_page(page, self.visible_count, self.page_size)
        return self.current_page

    def toggle(
        self,
        assignment_id: str,
        doc_id: str,
        *,
        merged_available: bool,
        verified_ids: Optional[Iterable[str]] = None,
    ) -> Selection:
        if not self.contains(assignment_id):
            raise KeyError(assignment_id)
        updated = toggle_document(
            self.selection_for(assignment_id),
            doc_id,
            merged_available=merged_available,
            verified_ids=verified_ids,
        )
        updated.validate(assignment_id)
        if updated.is_empty:
            self.selections.pop(assignment_id, None)
        else:
            self.selections[assignment_id] = updated
        return updated

    def set_notes(self, assignment_id: str, notes: Optional[str]) -> None:
        if not self.contains(assignment_id):
            raise KeyError(assignment_id)
        if notes:
            self.notes[assignment_id] = notes
        else:
            self.notes.pop(assignment_id, None)

    def clear_merged(self, assignment_id: str) -> bool:
        """Forget a merged-sentinel choice whose artifact was replaced or lost."""
        sel = self.selections.get(assignment_id)
        if sel is not None and sel.merged:
            del self.selections[assignment_id]
            return True
        return False

    def visible_selections(self) -> Dict[str, Selection]:
        return {aid: self.selection_for(aid) for aid in self.assignment_ids}


# ---------- Registry ----------------------------------------------------------

class BatchRegistry:
    """
    Open batches keyed by id. Idle batches expire (TTLCache); every read or
    write refreshes the entry. Last write wins when two operators share a batch.
    """

    def __init__(self, *, maxsize: int = 512, ttl: int = 3600):
        self._batches: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def open(
        self,
        assignment_ids: Iterable[str],
        *,
        purpose: str,
        page_size: int,
        excluded: Optional[Dict[str, str]] = None,
    ) -> DispatchBatch:
        batch = DispatchBatch(
            batch_id=f"b-{uuid.uuid4().hex[:12]}",
            purpose=purpose,
            assignment_ids=list(assignment_ids),
            page_size=page_size,
            excluded=dict(excluded or {}),
        )
        if batch.visible_count == 0:
            batch.closed = True
        with self._lock:
            self._batches[batch.batch_id] = batch
        logger.info(
            "Opened %s batch %s with %d candidates (%d excluded)",
            purpose, batch.batch_id, batch.visible_count, len(batch.excluded),
        )
        return batch

    def get(self, batch_id: str) -> DispatchBatch:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise BatchNotFound(batch_id)
            # re-insert to refresh TTL
            self._batches[batch_id] = batch
            return batch

    def close(self, batch_id: str) -> None:
        with self._lock:
            batch = self._batches.pop(batch_id, None)
        if batch is not None:
            batch.closed = True
            logger.info("Closed batch %s", batch_id)

    def remove_candidate(self, batch_id: str, assignment_id: str) -> RemovalResult:
        batch = self.get(batch_id)
        result = batch.remove_candidate(assignment_id)
        if result.closed:
            self.close(batch_id)
        return result

    def clear_merged_selections(self, assignment_id: str) -> int:
        """Drop merged-sentinel selections for `assignment_id` in every open batch."""
        cleared = 0
        with self._lock:
            batches = list(self._batches.values())
        for batch in batches:
            if batch.clear_merged(assignment_id):
                cleared += 1
        if cleared:
            logger.info("Cleared merged selection for %s in %d open batch(es)", assignment_id, cleared)
        return cleared

    def __len__(self) -> int:
        with self._lock:
            return len(self._batches)
