"""
Tests for the forward-to-client flow: validation, ledger writes, delivery
partitioning and the status move to sent_to_client.

Run with: pytest tests/test_forwarding.py -v
"""
import asyncio
from io import BytesIO

import pytest
from openpyxl import load_workbook

from core import drive_client, email_sender
from core.errors import IncompleteSelection, LedgerWriteFailed, NoEligibleCandidates, PayloadTooLarge
from core.forwarding import ForwardRequest, forward_batch
from core.summary_excel import SUMMARY_FILE_NAME
from models import DeliveryMethod, ForwardStatus, PipelineStatus, SendType
from models.selection import MERGED
from settings import Settings

MiB = 1024 * 1024


@pytest.fixture
def settings():
    return Settings(
        smtp_from_email="dispatch@agency.com",
        smtp_always_cc="",
        smtp_always_bcc="",
        dispatch_timeout_seconds=5,
    )


def _open(registry, seed, ids, docs_per=1, size=1000):
    for aid in ids:
        seed.assignment(aid)
        for n in range(docs_per):
            seed.document(aid, f"{aid}-d{n}", size=size, order=n)
    batch = registry.open(ids, purpose="forward", page_size=16)
    for aid in ids:
        for n in range(docs_per):
            batch.toggle(aid, f"{aid}-d{n}", merged_available=False)
    return batch


def _run(storage, store, batch, settings, **req):
    req.setdefault("recipient", "hr@client.com")
    return asyncio.run(forward_batch(storage, store, batch, ForwardRequest(**req), settings=settings))


def _summary_names(message):
    [data] = [a["data"] for a in message["attachments"] if a["filename"] == SUMMARY_FILE_NAME]
    ws = load_workbook(BytesIO(data)).active
    return [row[1] for row in ws.iter_rows(min_row=2, values_only=True)]


class TestSeparate:
    """One email per candidate."""

    def test_three_candidates(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2", "a3"], docs_per=2)
        result = _run(storage, store, batch, settings, delivery_method=DeliveryMethod.SEPARATE)

        assert len(outbox) == 3
        assert sorted(result.sent_ids) == ["a1", "a2", "a3"]
        assert result.failed_ids == []
        assert all(len(m["attachments"]) == 2 for m in outbox)
        assert all(m["to_email"] == "hr@client.com" for m in outbox)

        for rec in result.records:
            assert rec.status == ForwardStatus.SENT
            assert rec.sent_at is not None
            assert rec.is_bulk is True
            assert rec.dispatch_id == result.dispatch_id
            assert rec.send_type == SendType.INDIVIDUAL
        assert storage.get_assignment("a1").status == PipelineStatus.SENT_TO_CLIENT
        assert storage.list_status_history("a1")[-1].to_status == PipelineStatus.SENT_TO_CLIENT

    def test_one_failure_is_recorded(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2"])
        outbox.failing.add("bounce@client.com")

        result = _run(
            storage, store, batch, settings,
            delivery_method=DeliveryMethod.SEPARATE,
            recipients={"a2": "bounce@client.com"},
        )

        assert result.sent_ids == ["a1"]
        assert result.failed_ids == ["a2"]
        failed = next(r for r in result.records if r.assignment_id == "a2")
        assert failed.status == ForwardStatus.FAILED
        assert "bounce@client.com" in failed.error
        assert storage.get_assignment("a2").status == PipelineStatus.DOCUMENTS_VERIFIED
        assert storage.get_assignment("a1").status == PipelineStatus.SENT_TO_CLIENT

    def test_single_candidate_not_bulk(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1"])
        result = _run(storage, store, batch, settings, delivery_method=DeliveryMethod.SEPARATE)
        assert result.records[0].is_bulk is False


class TestCombined:
    """One email per recipient carrying every candidate's files."""

    def test_single_email_with_summary(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2", "a3"])
        batch.set_notes("a2", "Available from June")

        result = _run(
            storage, store, batch, settings,
            delivery_method=DeliveryMethod.COMBINED,
            include_summary=True,
            cc=["lead@agency.com"],
        )

        assert len(outbox) == 1
        names = [a["filename"] for a in outbox[0]["attachments"]]
        assert names == ["a1-d0.pdf", "a2-d0.pdf", "a3-d0.pdf", SUMMARY_FILE_NAME]
        assert outbox[0]["cc_emails"] == ["lead@agency.com"]
        assert "Available from June" in outbox[0]["body_html"]
        assert len(result.records) == 3
        assert result.total_bytes > 3000

    def test_recipients_split_emails(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2", "a3"])
        _run(
            storage, store, batch, settings,
            delivery_method=DeliveryMethod.COMBINED,
            recipients={"a3": "other@client.com"},
        )
        assert sorted(m["to_email"] for m in outbox) == ["hr@client.com", "other@client.com"]

    def test_summary_per_recipient(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2", "a3"])

        _run(
            storage, store, batch, settings,
            recipient="x@client-a.com",
            delivery_method=DeliveryMethod.COMBINED,
            recipients={"a2": "y@client-b.com"},
            include_summary=True,
        )

        by_recipient = {m["to_email"]: m for m in outbox}
        assert _summary_names(by_recipient["x@client-a.com"]) == ["Candidate a1", "Candidate a3"]
        assert _summary_names(by_recipient["y@client-b.com"]) == ["Candidate a2"]

    def test_attachments_keep_mime_type(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1"])
        _run(storage, store, batch, settings, delivery_method=DeliveryMethod.COMBINED)
        [attachment] = outbox[0]["attachments"]
        assert attachment["mime_type"] == "application/pdf"

    def test_over_limit_sends_nothing(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2"], size=10 * MiB)
        seed.document("a2", "a2-extra", size=1, order=5)
        batch.toggle("a2", "a2-extra", merged_available=False)

        with pytest.raises(PayloadTooLarge) as exc:
            _run(storage, store, batch, settings, delivery_method=DeliveryMethod.COMBINED)
        assert exc.value.total_bytes == 20 * MiB + 1
        assert outbox == []
        assert storage.list_forwarding_records() == []

    def test_merged_selection(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1"])
        artifact = seed.artifact("a1", ["a1-d0"])
        batch.toggle("a1", MERGED, merged_available=True)

        result = _run(storage, store, batch, settings, delivery_method=DeliveryMethod.COMBINED)

        assert fake_fetch == [artifact.file_url]
        assert result.records[0].send_type == SendType.MERGED
        assert result.records[0].file_names == [artifact.file_name]
        assert result.records[0].document_ids == []


class TestDriveLink:
    """Upload per candidate, then one email of links."""

    def test_links_emailed(self, monkeypatch, storage, store, registry, seed, settings, outbox, fake_fetch):
        uploads = []

        def upload(*, files, project_label, candidate_label):
            uploads.append(candidate_label)
            if candidate_label == "Candidate a2":
                return None
            return [{"file_name": f["filename"], "url": f"https://drive.example.com/{f['filename']}"} for f in files]

        monkeypatch.setattr(drive_client, "upload_candidate_files", upload)
        batch = _open(registry, seed, ["a1", "a2", "a3"])

        result = _run(storage, store, batch, settings, delivery_method=DeliveryMethod.DRIVE_LINK)

        assert sorted(uploads) == ["Candidate a1", "Candidate a2", "Candidate a3"]
        assert len(outbox) == 1
        assert outbox[0]["attachments"] == []
        assert "https://drive.example.com/a1-d0.pdf" in outbox[0]["body_html"]
        assert "a2-d0.pdf" not in outbox[0]["body_html"]
        assert sorted(result.sent_ids) == ["a1", "a3"]
        assert result.failed_ids == ["a2"]


class TestGuards:
    """Nothing is written when the batch is not ready."""

    def test_incomplete_selection(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2"])
        batch.toggle("a2", "a2-d0", merged_available=False)  # deselect

        with pytest.raises(IncompleteSelection) as exc:
            _run(storage, store, batch, settings, delivery_method=DeliveryMethod.SEPARATE)
        assert exc.value.missing_count == 1
        assert outbox == []
        assert storage.list_forwarding_records() == []

    def test_status_changed_since_open(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2"])
        storage.update_assignment_status("a2", PipelineStatus.SENT_TO_CLIENT)

        result = _run(storage, store, batch, settings, delivery_method=DeliveryMethod.SEPARATE)

        assert result.sent_ids == ["a1"]
        assert "a2" in result.excluded
        assert [r.assignment_id for r in result.records] == ["a1"]

    def test_settle_conflict_surfaces(self, monkeypatch, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1"])

        def refuse(*args, **kwargs):
            raise LedgerWriteFailed("disk full", record_id="x")

        monkeypatch.setattr(storage, "settle_forwarding_record", refuse)
        with pytest.raises(LedgerWriteFailed):
            _run(storage, store, batch, settings, delivery_method=DeliveryMethod.SEPARATE)
        assert len(outbox) == 1

    def test_nobody_eligible(self, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2"])
        for aid in ["a1", "a2"]:
            storage.update_assignment_status(aid, PipelineStatus.SENT_TO_CLIENT)

        with pytest.raises(NoEligibleCandidates) as exc:
            _run(storage, store, batch, settings, delivery_method=DeliveryMethod.SEPARATE)
        assert set(exc.value.excluded) == {"a1", "a2"}
        assert outbox == []
        assert storage.list_forwarding_records() == []

    def test_ledger_failure_before_delivery(self, monkeypatch, storage, store, registry, seed, settings, outbox, fake_fetch):
        batch = _open(registry, seed, ["a1", "a2"])
        original = storage.append_forwarding_record

        def append(rec):
            if rec.assignment_id == "a2":
                raise LedgerWriteFailed("disk full", record_id=rec.record_id)
            return original(rec)

        monkeypatch.setattr(storage, "append_forwarding_record", append)

        with pytest.raises(LedgerWriteFailed):
            _run(storage, store, batch, settings, delivery_method=DeliveryMethod.SEPARATE)

        assert outbox == []
        [record] = storage.list_forwarding_records()
        assert record.assignment_id == "a1"
        assert record.status == ForwardStatus.FAILED
        assert storage.get_assignment("a1").status == PipelineStatus.DOCUMENTS_VERIFIED


class TestEmailMessage:
    """MIME building in the email sender."""

    def test_explicit_mime_type_wins(self):
        msg = email_sender.build_message(
            to_email="hr@client.com",
            subject="Docs",
            body_html="<p>hi</p>",
            attachments=[
                {"filename": "scan", "data": b"\x89PNG", "mime_type": "image/png"},
                {"filename": "cv.pdf", "data": b"%PDF"},
            ],
            from_email="dispatch@agency.com",
            from_name="Dispatch",
            cc_emails=[],
        )
        parts = [p for p in msg.walk() if p.get_filename()]
        assert [(p.get_filename(), p.get_content_subtype()) for p in parts] == [("scan", "png"), ("cv.pdf", "pdf")]
