"""
Tests for the batch grouping dispatcher.

Run with: pytest tests/test_grouping.py -v
"""
import asyncio

import pytest
from fastapi import HTTPException

from core.errors import DispatchPartialFailure
from core.grouping import (
    Partition,
    TransferGroupKey,
    dispatch_partitions,
    ensure_complete,
    partition,
    retry_failed,
)
from core.transfers import TransferItem

ITEMS = [
    TransferItem("A", "userX"),
    TransferItem("B", "userX"),
    TransferItem("D", "userY"),
    TransferItem("C", "userX"),
    TransferItem("E", "userY"),
]


def _partitions(items=ITEMS):
    return partition(items, lambda i: i.group_key, lambda i: i.assignment_id)


class TestPartition:
    """Grouping by exact key equality."""

    def test_two_groups(self):
        parts = _partitions()
        assert len(parts) == 2
        assert parts[0].key == TransferGroupKey("userX", "")
        assert parts[0].member_ids == ("A", "B", "C")
        assert parts[1].key == TransferGroupKey("userY", "")
        assert parts[1].member_ids == ("D", "E")

    def test_notes_split_groups(self):
        parts = _partitions([
            TransferItem("A", "userX", "night shift"),
            TransferItem("B", "userX", "night shift"),
            TransferItem("C", "userX", "day shift"),
        ])
        assert [p.member_ids for p in parts] == [("A", "B"), ("C",)]

    def test_whitespace_differs(self):
        """Notes are compared as typed; no normalisation."""
        parts = _partitions([
            TransferItem("A", "userX", "urgent"),
            TransferItem("B", "userX", "urgent "),
        ])
        assert len(parts) == 2

    def test_delimiter_in_notes_cannot_collide(self):
        parts = _partitions([
            TransferItem("A", "u1|x", "y"),
            TransferItem("B", "u1", "x|y"),
        ])
        assert len(parts) == 2

    def test_duplicate_member(self):
        with pytest.raises(ValueError):
            _partitions([TransferItem("A", "userX"), TransferItem("A", "userY")])

    def test_ensure_complete(self):
        ensure_complete(["A", "B"], [Partition("k", ("A",)), Partition("j", ("B",))])
        with pytest.raises(RuntimeError):
            ensure_complete(["A", "B"], [Partition("k", ("A",))])
        with pytest.raises(RuntimeError):
            ensure_complete(["A"], [Partition("k", ("A",)), Partition("j", ("A",))])


class TestDispatchPartitions:
    """One call per partition; failures stay inside their partition."""

    def test_one_group_fails(self):
        calls = []

        async def call(p):
            calls.append(p.member_ids)
            if p.key.assigned_user_id == "userY":
                raise HTTPException(status_code=409, detail="userY is not accepting transfers")
            return len(p.member_ids)

        report = asyncio.run(dispatch_partitions(_partitions(), call))

        assert report.call_count == 2
        assert len(calls) == 2
        assert report.succeeded_ids == ["A", "B", "C"]
        assert report.failed_ids == ["D", "E"]
        assert report.failed[0].reason == "userY is not accepting transfers"
        assert report.succeeded[0].result == 3

        with pytest.raises(DispatchPartialFailure) as exc:
            report.raise_for_failures()
        assert exc.value.status_code == 207
        assert exc.value.failed[0]["member_ids"] == ["D", "E"]
        assert exc.value.failed[0]["key"] == {"assigned_user_id": "userY", "notes": ""}
        assert exc.value.succeeded_ids == ["A", "B", "C"]

    def test_timeout(self):
        async def call(p):
            if p.key.assigned_user_id == "userY":
                await asyncio.sleep(5)
            return True

        report = asyncio.run(dispatch_partitions(_partitions(), call, timeout=0.05))
        assert report.failed_ids == ["D", "E"]
        assert report.failed[0].reason == "timeout"

    def test_unexpected_error(self):
        async def call(p):
            raise RuntimeError("connection reset")

        report = asyncio.run(dispatch_partitions(_partitions(), call))
        assert report.succeeded == []
        assert {o.reason for o in report.failed} == {"connection reset"}

    def test_parallelism_bounded(self):
        in_flight = 0
        peak = 0

        async def call(p):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        parts = [Partition(i, (str(i),)) for i in range(10)]
        asyncio.run(dispatch_partitions(parts, call, max_parallel=3))
        assert peak <= 3

    def test_empty(self):
        async def call(p):
            raise AssertionError("never called")

        report = asyncio.run(dispatch_partitions([], call))
        assert report.call_count == 0
        report.raise_for_failures()

    def test_retry_only_failed(self):
        attempts = []

        async def flaky(p):
            attempts.append(p.member_ids)
            if p.key.assigned_user_id == "userY" and len(attempts) <= 2:
                raise RuntimeError("temporary")
            return True

        async def run():
            first = await dispatch_partitions(_partitions(), flaky)
            return first, await retry_failed(first, flaky)

        first, second = asyncio.run(run())
        assert first.failed_ids == ["D", "E"]
        assert attempts[-1] == ("D", "E")
        assert len(attempts) == 3
        assert second.failed == []
        assert sorted(second.succeeded_ids) == ["A", "B", "C", "D", "E"]
