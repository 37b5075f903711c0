"""
Tests for the selection store: merged/individual exclusivity, batch paging
and candidate removal.

Run with: pytest tests/test_selection.py -v
"""
import pytest

from core.errors import BatchNotFound, SelectionInvariantViolation
from core.selection import BatchRegistry, DispatchBatch, clamp_page, toggle_document, total_pages
from models import SendType
from models.selection import MERGED, Selection


class TestToggleDocument:
    """Toggling keeps a selection either merged-only or individual-only."""

    def test_merged_replaces_individual(self):
        sel = Selection.of(["d1", "d2"])
        result = toggle_document(sel, MERGED, merged_available=True)
        assert result.merged is True
        assert result.document_ids == frozenset()
        assert result.send_type == SendType.MERGED

    def test_individual_strips_merged(self):
        sel = Selection.merged_only()
        result = toggle_document(sel, "d1", merged_available=True, verified_ids=["d1", "d2"])
        assert result.merged is False
        assert result.document_ids == frozenset({"d1"})
        assert result.send_type == SendType.INDIVIDUAL

    def test_merged_toggled_twice_is_empty(self):
        sel = toggle_document(Selection.empty(), MERGED, merged_available=True)
        sel = toggle_document(sel, MERGED, merged_available=True)
        assert sel.is_empty
        assert sel.send_type is None

    def test_merged_without_artifact_is_noop(self):
        sel = Selection.of(["d1"])
        assert toggle_document(sel, MERGED, merged_available=False) == sel

    def test_individual_toggle_off(self):
        sel = Selection.of(["d1", "d2"])
        result = toggle_document(sel, "d1", merged_available=False, verified_ids=["d1", "d2"])
        assert result.document_ids == frozenset({"d2"})

    def test_unverified_id_not_added(self):
        result = toggle_document(Selection.empty(), "d9", merged_available=False, verified_ids=["d1"])
        assert result.is_empty

    def test_any_sequence_never_mixes(self):
        sel = Selection.empty()
        for doc_id in ["d1", MERGED, "d2", MERGED, MERGED, "d1", "d3", MERGED]:
            sel = toggle_document(sel, doc_id, merged_available=True, verified_ids=["d1", "d2", "d3"])
            assert not (sel.merged and sel.document_ids)


class TestSelectionWireForm:
    """The list-with-sentinel form used over the API."""

    def test_mixed_list_rejected(self):
        with pytest.raises(SelectionInvariantViolation) as exc:
            Selection.from_api([MERGED, "d1"])
        assert exc.value.status_code == 500

    def test_to_api(self):
        assert Selection.merged_only().to_api() == [MERGED]
        assert Selection.of(["b", "a"]).to_api() == ["a", "b"]

    def test_validate_catches_direct_construction(self):
        with pytest.raises(SelectionInvariantViolation):
            Selection(merged=True, document_ids=frozenset({"d1"})).validate("a-1")


class TestPaging:
    """Page math for the bulk grid."""

    def test_total_pages(self):
        assert total_pages(0, 16) == 1
        assert total_pages(16, 16) == 1
        assert total_pages(17, 16) == 2

    def test_clamp(self):
        assert clamp_page(0, 17, 16) == 1
        assert clamp_page(5, 17, 16) == 2
        assert clamp_page(2, 17, 16) == 2


def _batch(n=17, page_size=16):
    return DispatchBatch(
        batch_id="b-1",
        purpose="forward",
        assignment_ids=[f"a{i}" for i in range(1, n + 1)],
        page_size=page_size,
    )


class TestDispatchBatch:
    """Working set behaviour."""

    def test_duplicate_ids_collapse(self):
        batch = DispatchBatch(batch_id="b", purpose="forward", assignment_ids=["a1", "a2", "a1", ""])
        assert batch.assignment_ids == ["a1", "a2"]

    def test_page_items(self):
        batch = _batch()
        assert len(batch.page_items()) == 16
        assert batch.set_page(2) == 2
        assert batch.page_items() == ["a17"]

    def test_set_page_clamped(self):
        batch = _batch()
        assert batch.set_page(99) == 2
        assert batch.set_page(-3) == 1

    def test_removing_last_on_page_clamps(self):
        """17 candidates on page 2; removing the only one there lands on page 1."""
        batch = _batch()
        batch.set_page(2)
        result = batch.remove_candidate("a17")
        assert result.closed is False
        assert result.current_page == 1
        assert result.remaining == 16
        assert batch.total_pages == 1

    def test_remove_drops_selection_and_notes(self):
        batch = _batch(n=2)
        batch.toggle("a1", "d1", merged_available=False, verified_ids=["d1"])
        batch.set_notes("a1", "urgent")
        batch.remove_candidate("a1")
        assert "a1" not in batch.selections
        assert "a1" not in batch.notes

    def test_remove_is_idempotent(self):
        batch = _batch(n=3)
        first = batch.remove_candidate("a2")
        second = batch.remove_candidate("a2")
        assert first.remaining == second.remaining == 2
        assert batch.assignment_ids == ["a1", "a3"]

    def test_remove_last_closes(self):
        batch = _batch(n=1)
        result = batch.remove_candidate("a1")
        assert result.closed is True
        assert batch.closed is True

    def test_toggle_unknown_assignment(self):
        batch = _batch(n=1)
        with pytest.raises(KeyError):
            batch.toggle("zz", "d1", merged_available=False)

    def test_empty_selection_not_stored(self):
        batch = _batch(n=1)
        batch.toggle("a1", "d1", merged_available=False, verified_ids=["d1"])
        batch.toggle("a1", "d1", merged_available=False, verified_ids=["d1"])
        assert batch.selections == {}
        assert batch.visible_selections()["a1"].is_empty

    def test_invalid_page_size(self):
        with pytest.raises(ValueError):
            _batch(page_size=0)


class TestBatchRegistry:
    """Open batches held in memory."""

    def test_open_and_get(self, registry):
        batch = registry.open(["a1", "a2"], purpose="forward", page_size=16, excluded={"a3": "archived"})
        assert registry.get(batch.batch_id) is batch
        assert batch.excluded == {"a3": "archived"}
        assert len(registry) == 1

    def test_unknown_batch(self, registry):
        with pytest.raises(BatchNotFound) as exc:
            registry.get("nope")
        assert exc.value.status_code == 404

    def test_remove_last_candidate_drops_batch(self, registry):
        batch = registry.open(["a1"], purpose="forward", page_size=16)
        result = registry.remove_candidate(batch.batch_id, "a1")
        assert result.closed is True
        with pytest.raises(BatchNotFound):
            registry.get(batch.batch_id)

    def test_clear_merged_selections(self, registry):
        b1 = registry.open(["a1", "a2"], purpose="forward", page_size=16)
        b2 = registry.open(["a1"], purpose="forward", page_size=16)
        b1.toggle("a1", MERGED, merged_available=True)
        b1.toggle("a2", MERGED, merged_available=True)
        b2.toggle("a1", MERGED, merged_available=True)

        assert registry.clear_merged_selections("a1") == 2
        assert "a1" not in b1.selections
        assert "a1" not in b2.selections
        assert b1.selections["a2"].merged is True

    def test_ttl_expiry(self):
        registry = BatchRegistry(maxsize=4, ttl=0)
        batch = registry.open(["a1"], purpose="forward", page_size=16)
        with pytest.raises(BatchNotFound):
            registry.get(batch.batch_id)
