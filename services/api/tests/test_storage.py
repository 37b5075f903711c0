"""
Contract tests run against both storage backends.

Run with: pytest tests/test_storage.py -v
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from adapters.json import JsonAdapter
from adapters.sqlite import SqliteAdapter
from core.errors import LedgerWriteFailed
from models import (
    CandidateAssignment,
    DeliveryMethod,
    DocumentRecord,
    ForwardStatus,
    ForwardingRecord,
    MergedArtifact,
    PipelineStatus as S,
    SendType,
    VerificationStatus,
)

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["json", "sqlite"])
def backend(request, tmp_path):
    if request.param == "json":
        return JsonAdapter(data_dir=str(tmp_path / "data"))
    return SqliteAdapter.from_url(f"sqlite:///{tmp_path / 'dispatch.db'}")


def _assignment(aid="a1", status=S.DOCUMENTS_VERIFIED):
    return CandidateAssignment(assignment_id=aid, candidate_id="c1", project_id="p1", role_id="r1", status=status)


def _document(doc_id, minutes, verified=True):
    return DocumentRecord(
        document_id=doc_id,
        assignment_id="a1",
        file_name=f"{doc_id}.pdf",
        file_size=100,
        file_url=f"https://files.example.com/{doc_id}.pdf",
        verification_status=VerificationStatus.VERIFIED if verified else VerificationStatus.REJECTED,
        verified_at=BASE_TIME + timedelta(minutes=minutes) if verified else None,
    )


def _artifact(artifact_id, sources):
    return MergedArtifact(
        artifact_id=artifact_id,
        assignment_id="a1",
        candidate_id="c1",
        project_id="p1",
        role_id="r1",
        file_name=f"{artifact_id}.pdf",
        file_url=f"http://testserver/artifacts/{artifact_id}.pdf",
        file_size=10,
        source_document_ids=sources,
        verified_document_ids=sources,
    )


class TestAssignments:
    def test_round_trip(self, backend):
        backend.create_assignment(_assignment())
        a = backend.get_assignment("a1")
        assert a.status == S.DOCUMENTS_VERIFIED
        assert a.created_at is not None
        assert backend.get_assignment("zz") is None

    def test_duplicate(self, backend):
        backend.create_assignment(_assignment())
        with pytest.raises(HTTPException) as exc:
            backend.create_assignment(_assignment())
        assert exc.value.status_code == 409

    def test_list_filters(self, backend):
        backend.create_assignment(_assignment("a1"))
        backend.create_assignment(_assignment("a2", status=S.PASSED))
        assert [a.assignment_id for a in backend.list_assignments(status=S.PASSED)] == ["a2"]
        assert {a.assignment_id for a in backend.list_assignments(ids=["a1", "zz"])} == {"a1"}
        assert backend.list_assignments(ids=[]) == []

    def test_update_ignores_status(self, backend):
        backend.create_assignment(_assignment())
        updated = backend.update_assignment("a1", {"candidate_name": "Lena", "status": "passed"})
        assert updated.candidate_name == "Lena"
        assert updated.status == S.DOCUMENTS_VERIFIED

    def test_status_writes_history(self, backend):
        backend.create_assignment(_assignment())
        backend.update_assignment_status("a1", S.SENT_TO_CLIENT, None, "ops-1")
        backend.update_assignment_status("a1", S.SHORTLISTED, None, "ops-1")
        history = backend.list_status_history("a1")
        assert [(h.from_status, h.to_status) for h in history] == [
            (S.DOCUMENTS_VERIFIED, S.SENT_TO_CLIENT),
            (S.SENT_TO_CLIENT, S.SHORTLISTED),
        ]


class TestDocumentsAndArtifacts:
    def test_verified_in_verification_order(self, backend):
        backend.create_assignment(_assignment())
        backend.create_document(_document("late", 30))
        backend.create_document(_document("early", 5))
        backend.create_document(_document("rejected", 0, verified=False))
        assert [d.document_id for d in backend.list_verified_documents("a1")] == ["early", "late"]
        assert len(backend.list_documents("a1")) == 3

    def test_document_needs_assignment(self, backend):
        with pytest.raises(HTTPException):
            backend.create_document(_document("d1", 0))

    def test_single_artifact_slot(self, backend):
        backend.create_assignment(_assignment())
        backend.save_merged_artifact(_artifact("first", ["d1"]))
        backend.save_merged_artifact(_artifact("second", ["d2", "d1"]))
        artifact = backend.get_merged_artifact("a1")
        assert artifact.artifact_id == "second"
        assert artifact.source_document_ids == ["d2", "d1"]


class TestLedger:
    def _record(self, record_id="fwd-1"):
        return ForwardingRecord(
            record_id=record_id,
            assignment_id="a1",
            candidate_id="c1",
            project_id="p1",
            recipient_email="hr@client.com",
            cc_emails=["lead@agency.com"],
            send_type=SendType.INDIVIDUAL,
            delivery_method=DeliveryMethod.COMBINED,
            document_ids=["d1", "d2"],
            file_names=["d1.pdf", "d2.pdf"],
        )

    def test_append_and_settle_once(self, backend):
        backend.append_forwarding_record(self._record())
        settled = backend.settle_forwarding_record("fwd-1", ForwardStatus.SENT, None, BASE_TIME)
        assert settled.status == ForwardStatus.SENT
        assert settled.cc_emails == ["lead@agency.com"]
        assert settled.document_ids == ["d1", "d2"]
        with pytest.raises(LedgerWriteFailed):
            backend.settle_forwarding_record("fwd-1", ForwardStatus.FAILED, "late", None)

    def test_cannot_settle_to_queued(self, backend):
        backend.append_forwarding_record(self._record())
        with pytest.raises(LedgerWriteFailed):
            backend.settle_forwarding_record("fwd-1", ForwardStatus.QUEUED)

    def test_duplicate_record(self, backend):
        backend.append_forwarding_record(self._record())
        with pytest.raises(LedgerWriteFailed):
            backend.append_forwarding_record(self._record())


class TestProcessingTransfers:
    def test_group_is_all_or_nothing(self, backend):
        backend.create_assignment(_assignment("a1", status=S.PASSED))
        backend.create_assignment(_assignment("a2", status=S.FAILED))
        with pytest.raises(HTTPException) as exc:
            backend.create_processing_transfers(["a1", "a2"], "userX")
        assert exc.value.status_code == 409
        assert backend.get_assignment("a1").status == S.PASSED
        assert backend.list_status_history("a1") == []

    def test_missing_assignment(self, backend):
        backend.create_assignment(_assignment("a1", status=S.PASSED))
        with pytest.raises(HTTPException) as exc:
            backend.create_processing_transfers(["a1", "zz"], "userX")
        assert exc.value.status_code == 404

    def test_transfer(self, backend):
        backend.create_assignment(_assignment("a1", status=S.PASSED))
        [transfer] = backend.create_processing_transfers(["a1"], "userX", "start Monday", "ops-1")
        assert transfer.assigned_user_id == "userX"
        assert backend.get_assignment("a1").status == S.TRANSFERRED_TO_PROCESSING
