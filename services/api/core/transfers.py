# services/api/core/transfers.py
"""
Bulk hand-off of passed candidates to processing.

Candidates sharing (assigned user, notes) go out in one backend call; each
call writes its transfer rows and status changes atomically, and calls are
independent of each other.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.grouping import (
    DispatchReport,
    Partition,
    TransferGroupKey,
    dispatch_partitions,
    partition,
)
from core.pipeline import gate, split_found

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferItem:
    assignment_id: str
    assigned_user_id: str
    notes: Optional[str] = None

    @property
    def group_key(self) -> TransferGroupKey:
        return TransferGroupKey(self.assigned_user_id, self.notes or "")


@dataclass
class BulkResult:
    """Outcome of a bulk action: per-partition report plus who was never eligible."""
    report: DispatchReport
    excluded: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calls": self.report.call_count,
            "succeeded_ids": self.report.succeeded_ids,
            "failed": [o.to_dict() for o in self.report.failed],
            "excluded": self.excluded,
        }


async def transfer_to_processing(
    storage,
    items: Sequence[TransferItem],
    *,
    transferred_by: Optional[str] = None,
    max_parallel: int = 8,
    timeout: Optional[float] = 60.0,
) -> BulkResult:
    requested = [i.assignment_id for i in items]
    found = await asyncio.to_thread(storage.list_assignments, requested)
    ordered, missing = split_found(requested, found)
    gated = gate(ordered, "transfer")

    eligible = set(gated.eligible_ids)
    to_send = [i for i in items if i.assignment_id in eligible]
    partitions = partition(to_send, lambda i: i.group_key, lambda i: i.assignment_id)

    async def call(p: Partition[TransferGroupKey]) -> List[Any]:
        return await asyncio.to_thread(
            storage.create_processing_transfers,
            list(p.member_ids),
            p.key.assigned_user_id,
            p.key.notes or None,
            transferred_by,
        )

    report = await dispatch_partitions(partitions, call, max_parallel=max_parallel, timeout=timeout)
    logger.info(
        "Processing transfer: %d candidate(s) in %d call(s), %d failed, %d excluded",
        len(to_send), report.call_count, len(report.failed_ids), len(missing) + len(gated.excluded),
    )
    return BulkResult(report=report, excluded={**missing, **gated.excluded})
