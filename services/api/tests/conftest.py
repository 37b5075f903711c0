"""
Shared fixtures.

The app is imported with the JSON backend pointed at a throwaway directory;
each test then swaps in its own adapter, batch registry and artifact store.
"""
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_TMP = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["STORAGE_BACKEND"] = "json"
os.environ["DATA_DIR"] = os.path.join(_TMP, "data")
os.environ["ARTIFACT_DIR"] = os.path.join(_TMP, "artifacts")
os.environ["PUBLIC_BASE_URL"] = "http://testserver"

from settings import reset_settings  # noqa: E402

reset_settings()

from adapters.json import JsonAdapter  # noqa: E402
from core.artifact_store import LocalArtifactStore  # noqa: E402
from core.selection import BatchRegistry  # noqa: E402
from models import (  # noqa: E402
    CandidateAssignment,
    DocumentRecord,
    MergedArtifact,
    PipelineStatus,
    VerificationStatus,
)

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class Seed:
    """Writes fixture rows through the storage adapter under test."""

    def __init__(self, storage, store):
        self.storage = storage
        self.store = store

    def assignment(self, assignment_id, status=PipelineStatus.DOCUMENTS_VERIFIED, **fields):
        data = dict(
            assignment_id=assignment_id,
            candidate_id=fields.pop("candidate_id", f"cand-{assignment_id}"),
            project_id=fields.pop("project_id", "proj-1"),
            role_id=fields.pop("role_id", "role-1"),
            candidate_name=fields.pop("candidate_name", f"Candidate {assignment_id}"),
            project_title=fields.pop("project_title", "Harbour Expansion"),
            role_label=fields.pop("role_label", "Welder"),
            status=status,
        )
        data.update(fields)
        a = CandidateAssignment(**data)
        self.storage.create_assignment(a)
        return a

    def document(self, assignment_id, document_id, *, size=1000, verified=True, order=0, file_name=None):
        doc = DocumentRecord(
            document_id=document_id,
            assignment_id=assignment_id,
            file_name=file_name or f"{document_id}.pdf",
            file_size=size,
            file_url=f"https://files.example.com/{document_id}.pdf",
            verification_status=VerificationStatus.VERIFIED if verified else VerificationStatus.PENDING,
            verified_at=BASE_TIME + timedelta(minutes=order) if verified else None,
        )
        self.storage.create_document(doc)
        return doc

    def artifact(self, assignment_id, source_ids, *, verified_ids=None, size=2000):
        a = self.storage.get_assignment(assignment_id)
        artifact = MergedArtifact(
            artifact_id=f"art-{assignment_id}",
            assignment_id=assignment_id,
            candidate_id=a.candidate_id,
            project_id=a.project_id,
            role_id=a.role_id,
            file_name=f"{assignment_id}_Merged.pdf",
            file_url=self.store.url_for(f"{assignment_id}_Merged.pdf"),
            file_size=size,
            source_document_ids=list(source_ids),
            verified_document_ids=list(verified_ids if verified_ids is not None else source_ids),
        )
        self.storage.save_merged_artifact(artifact)
        return artifact


@pytest.fixture
def storage(tmp_path):
    return JsonAdapter(data_dir=str(tmp_path / "data"))


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(str(tmp_path / "artifacts"), "http://testserver")


@pytest.fixture
def registry():
    return BatchRegistry(maxsize=16, ttl=600)


@pytest.fixture
def seed(storage, store):
    return Seed(storage, store)


@pytest.fixture
def fake_fetch(monkeypatch):
    """Replace HTTP document fetches with deterministic bytes; records the URLs asked for."""
    from core import merge

    fetched = []

    async def fetch(url, *, timeout=30.0, store=None):
        fetched.append(url)
        return b"%PDF-fake " + url.encode()

    monkeypatch.setattr(merge, "fetch_document_bytes", fetch)
    return fetched


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing emails. Mail to any address in `outbox.failing` is reported as failed."""
    from core import email_sender

    class Outbox(list):
        failing = set()

    sent = Outbox()

    async def send(**kwargs):
        sent.append(kwargs)
        return kwargs["to_email"] not in sent.failing

    monkeypatch.setattr(email_sender, "send_email_with_attachments", send)
    return sent


@pytest.fixture
def client(monkeypatch, storage, store, registry):
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setattr(main, "storage_adapter", storage)
    monkeypatch.setattr(main, "batch_registry", registry)
    monkeypatch.setattr(main, "artifact_store", store)
    with TestClient(main.app) as c:
        yield c
