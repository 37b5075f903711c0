# services/api/core/grouping.py
"""
Batch Grouping Dispatcher.

Collapses per-candidate operations whose parameters are identical into one
backend call per partition, runs the partitions concurrently and reports
each partition's outcome on its own. Nothing is rolled back across
partitions; a retry resubmits only the partitions that failed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from fastapi import HTTPException

from core.errors import DispatchError, DispatchPartialFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


# ---------- Grouping keys -----------------------------------------------------
# Tuples, not joined strings: a delimiter inside free-text notes can never
# make two different keys collide. Notes compare by exact text.

class TransferGroupKey(NamedTuple):
    assigned_user_id: str
    notes: str


class InterviewGroupKey(NamedTuple):
    scheduled_at: datetime
    notes: str


class DecisionGroupKey(NamedTuple):
    decision: str
    reason: str


class OutcomeGroupKey(NamedTuple):
    outcome: str
    reason: str


# ---------- Partitioning ------------------------------------------------------

@dataclass(frozen=True)
class Partition(Generic[K]):
    key: K
    member_ids: Tuple[str, ...]


def partition(
    items: Sequence[T],
    key_fn: Callable[[T], K],
    id_fn: Callable[[T], str],
) -> List[Partition[K]]:
    """
    Group `items` by exact key equality. Partitions come out in first-seen
    key order and members keep their input order.

    Raises:
        ValueError if the same member id appears twice
    """
    groups: Dict[K, List[str]] = {}
    seen = set()
    for item in items:
        member_id = id_fn(item)
        if member_id in seen:
            raise ValueError(f"Duplicate member id in dispatch request: {member_id}")
        seen.add(member_id)
        groups.setdefault(key_fn(item), []).append(member_id)

    partitions = [Partition(key=k, member_ids=tuple(ids)) for k, ids in groups.items()]
    ensure_complete([id_fn(i) for i in items], partitions)
    return partitions


def ensure_complete(original_ids: Sequence[str], partitions: Iterable[Partition]) -> None:
    """The flattened partitions must hold every original id exactly once."""
    flattened = [m for p in partitions for m in p.member_ids]
    if len(flattened) != len(original_ids) or set(flattened) != set(original_ids):
        lost = set(original_ids) - set(flattened)
        extra = len(flattened) - len(set(flattened))
        raise RuntimeError(
            f"Grouping is not a partition of the request (lost={sorted(lost)}, duplicates={extra})"
        )


# ---------- Execution ---------------------------------------------------------

@dataclass
class PartitionOutcome(Generic[K]):
    key: K
    member_ids: Tuple[str, ...]
    ok: bool
    reason: Optional[str] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        key = self.key._asdict() if hasattr(self.key, "_asdict") else self.key
        return {
            "key": key,
            "member_ids": list(self.member_ids),
            "ok": self.ok,
            "reason": self.reason,
        }


@dataclass
class DispatchReport(Generic[K]):
    succeeded: List[PartitionOutcome[K]] = field(default_factory=list)
    failed: List[PartitionOutcome[K]] = field(default_factory=list)

    @property
    def call_count(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def succeeded_ids(self) -> List[str]:
        return [m for o in self.succeeded for m in o.member_ids]

    @property
    def failed_ids(self) -> List[str]:
        return [m for o in self.failed for m in o.member_ids]

    @property
    def failed_partitions(self) -> List[Partition[K]]:
        return [Partition(key=o.key, member_ids=o.member_ids) for o in self.failed]

    def raise_for_failures(self) -> None:
        if self.failed:
            raise DispatchPartialFailure(
                failed=[o.to_dict() for o in self.failed],
                succeeded_ids=self.succeeded_ids,
            )


PartitionCall = Callable[[Partition[K]], Awaitable[Any]]


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, DispatchError):
        return exc.message
    if isinstance(exc, HTTPException):
        return str(exc.detail)
    return str(exc) or exc.__class__.__name__


async def dispatch_partitions(
    partitions: Sequence[Partition[K]],
    call: PartitionCall,
    *,
    max_parallel: int = 8,
    timeout: Optional[float] = 60.0,
) -> DispatchReport[K]:
    """
    Issue `call(partition)` for every partition concurrently (at most
    `max_parallel` in flight). A timeout is a failed partition with reason
    "timeout"; the backend call itself may still complete.
    """
    sem = asyncio.Semaphore(max(1, max_parallel))

    async def run(p: Partition[K]) -> PartitionOutcome[K]:
        async with sem:
            try:
                result = await asyncio.wait_for(call(p), timeout)
            except asyncio.TimeoutError:
                logger.warning("Partition %s (%d members) timed out", p.key, len(p.member_ids))
                return PartitionOutcome(p.key, p.member_ids, ok=False, reason="timeout")
            except (DispatchError, HTTPException) as e:
                logger.warning("Partition %s failed: %s", p.key, _failure_reason(e))
                return PartitionOutcome(p.key, p.member_ids, ok=False, reason=_failure_reason(e))
            except Exception as e:
                logger.exception("Partition %s failed unexpectedly", p.key)
                return PartitionOutcome(p.key, p.member_ids, ok=False, reason=_failure_reason(e))
            return PartitionOutcome(p.key, p.member_ids, ok=True, result=result)

    outcomes = await asyncio.gather(*(run(p) for p in partitions))

    report: DispatchReport[K] = DispatchReport()
    for o in outcomes:
        (report.succeeded if o.ok else report.failed).append(o)

    logger.info(
        "Dispatched %d partition(s): %d succeeded, %d failed",
        len(outcomes), len(report.succeeded), len(report.failed),
    )
    return report


async def retry_failed(
    report: DispatchReport[K],
    call: PartitionCall,
    *,
    max_parallel: int = 8,
    timeout: Optional[float] = 60.0,
) -> DispatchReport[K]:
    """Resubmit only the failed partitions; earlier successes carry over."""
    retried = await dispatch_partitions(
        report.failed_partitions, call, max_parallel=max_parallel, timeout=timeout
    )
    return DispatchReport(
        succeeded=list(report.succeeded) + retried.succeeded,
        failed=retried.failed,
    )
