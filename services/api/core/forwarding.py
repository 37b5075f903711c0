# services/api/core/forwarding.py
"""
Forward-to-client flow for one dispatch batch.

  1) re-gate the batch's candidates against their current status
  2) validate (all-selected, recipients, merged availability, combined size)
  3) write one `queued` ledger record per candidate
  4) deliver, partitioned by recipient:
       separate   -> one email per candidate
       combined   -> one email per recipient carrying every candidate's files
       drive-link -> per-candidate Drive upload, then one email of links per recipient
  5) settle each record to `sent` / `failed`
  6) move delivered candidates to `sent_to_client` (best effort)
"""
from __future__ import annotations

import asyncio
import html
import logging
import mimetypes
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from core import drive_client, email_sender, merge
from core.artifact_store import LocalArtifactStore
from core.bulk_actions import change_status_sync
from core.errors import LedgerWriteFailed, NoEligibleCandidates
from core.grouping import (
    DispatchReport,
    Partition,
    dispatch_partitions,
    partition,
)
from core.ledger import append_queued, new_record_id, settle
from core.pipeline import gate, split_found
from core.selection import DispatchBatch
from core.summary_excel import SUMMARY_FILE_NAME, build_summary_xlsx
from core.validation import (
    ResolvedSelection,
    ensure_combined_size,
    validate_forward,
)
from models import (
    CandidateAssignment,
    DeliveryMethod,
    ForwardingRecord,
    PipelineStatus,
)

logger = logging.getLogger(__name__)


class ForwardGroupKey(NamedTuple):
    recipient: str
    # assignment id for `separate` (never shared), "" otherwise
    scope: str


@dataclass
class ForwardRequest:
    delivery_method: DeliveryMethod
    recipient: Optional[str] = None
    recipients: Dict[str, str] = field(default_factory=dict)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    subject: Optional[str] = None
    include_summary: bool = False
    sender_id: Optional[str] = None


@dataclass
class ForwardResult:
    dispatch_id: str
    records: List[ForwardingRecord]
    report: DispatchReport
    excluded: Dict[str, str] = field(default_factory=dict)
    total_bytes: int = 0

    @property
    def sent_ids(self) -> List[str]:
        return self.report.succeeded_ids

    @property
    def failed_ids(self) -> List[str]:
        return self.report.failed_ids


# ---------- Helpers -----------------------------------------------------------

def _label(a: CandidateAssignment) -> str:
    return a.candidate_name or a.candidate_id


def _subject(req: ForwardRequest, assignments: Sequence[CandidateAssignment]) -> str:
    if req.subject:
        return req.subject
    projects = sorted({a.project_title for a in assignments if a.project_title})
    suffix = f" - {projects[0]}" if len(projects) == 1 else ""
    if len(assignments) == 1:
        return f"Candidate documents: {_label(assignments[0])}{suffix}"
    return f"Candidate documents ({len(assignments)} candidates){suffix}"


def _body_html(
    entries: Sequence[Dict[str, Any]],
    notes: Optional[str],
) -> str:
    """entries: {"assignment", "file_names" or "links", "notes"}"""
    parts = ["<p>Hello,</p>", "<p>Please find the candidate documents below.</p>"]
    if notes:
        parts.append(f"<p>{html.escape(notes)}</p>")
    parts.append("<ul>")
    for e in entries:
        a: CandidateAssignment = e["assignment"]
        title = html.escape(_label(a))
        if a.role_label:
            title += f" &ndash; {html.escape(a.role_label)}"
        items = ""
        if e.get("links"):
            items = "".join(
                f'<li><a href="{html.escape(l["url"])}">{html.escape(l["file_name"])}</a></li>'
                for l in e["links"]
            )
        elif e.get("file_names"):
            items = "".join(f"<li>{html.escape(n)}</li>" for n in e["file_names"])
        extra = f"<br/><em>{html.escape(e['notes'])}</em>" if e.get("notes") else ""
        parts.append(f"<li><strong>{title}</strong>{extra}<ul>{items}</ul></li>")
    parts.append("</ul>")
    return "".join(parts)


async def _fetch_files(
    resolved: ResolvedSelection,
    *,
    store: LocalArtifactStore,
    timeout: float,
) -> List[Dict[str, Any]]:
    payloads = await asyncio.gather(
        *(merge.fetch_document_bytes(a.file_url, timeout=timeout, store=store) for a in resolved.attachments)
    )
    return [
        {
            "filename": a.file_name,
            "data": data,
            "mime_type": mimetypes.guess_type(a.file_name)[0] or "application/octet-stream",
        }
        for a, data in zip(resolved.attachments, payloads)
    ]


class DeliveryFailed(Exception):
    pass


# ---------- Flow --------------------------------------------------------------

async def forward_batch(
    storage,
    store: LocalArtifactStore,
    batch: DispatchBatch,
    req: ForwardRequest,
    *,
    settings,
) -> ForwardResult:
    dispatch_id = f"dsp-{uuid.uuid4().hex[:12]}"
    method = DeliveryMethod(req.delivery_method)

    # 1) gate against current status
    found = await asyncio.to_thread(storage.list_assignments, batch.assignment_ids)
    ordered, missing = split_found(batch.assignment_ids, found)
    gated = gate(ordered, "forward")
    excluded = {**missing, **gated.excluded}
    assignments = {a.assignment_id: a for a in gated.eligible}
    visible = [aid for aid in batch.assignment_ids if aid in assignments]
    if not visible:
        raise NoEligibleCandidates(excluded)

    # 2) validate
    verified_lists = await asyncio.gather(
        *(asyncio.to_thread(storage.list_verified_documents, aid) for aid in visible)
    )
    artifact_list = await asyncio.gather(
        *(asyncio.to_thread(storage.get_merged_artifact, aid) for aid in visible)
    )
    limit = settings.combined_size_limit_bytes
    result = validate_forward(
        visible_ids=visible,
        selections=batch.visible_selections(),
        recipient=req.recipient,
        per_candidate_recipients=req.recipients,
        cc=req.cc,
        bcc=req.bcc,
        delivery_method=method,
        verified_docs=dict(zip(visible, verified_lists)),
        artifacts=dict(zip(visible, artifact_list)),
        limit_bytes=limit,
    )

    def key_fn(r: ResolvedSelection) -> ForwardGroupKey:
        scope = r.assignment_id if method == DeliveryMethod.SEPARATE else ""
        return ForwardGroupKey(r.recipient, scope)

    partitions = partition(result.resolved, key_fn, lambda r: r.assignment_id)
    resolved_by_id = {r.assignment_id: r for r in result.resolved}

    # one workbook per recipient, listing only that recipient's candidates
    summaries: Dict[ForwardGroupKey, bytes] = {}
    if method == DeliveryMethod.COMBINED and req.include_summary:
        for p in partitions:
            summaries[p.key] = build_summary_xlsx([
                {
                    "candidate_name": _label(assignments[aid]),
                    "project_title": assignments[aid].project_title,
                    "role_label": assignments[aid].role_label,
                    "send_type": resolved_by_id[aid].send_type.value,
                    "file_names": resolved_by_id[aid].file_names,
                    "notes": batch.notes.get(aid) or "",
                }
                for aid in p.member_ids
            ])
    total_bytes = result.total_bytes + sum(len(s) for s in summaries.values())
    if summaries:
        ensure_combined_size(method, total_bytes, limit)

    # 3) ledger: queued
    is_bulk = len(result.resolved) > 1
    cc = list(req.cc)
    bcc = list(req.bcc)
    queued = [
        ForwardingRecord(
            record_id=new_record_id(),
            assignment_id=r.assignment_id,
            candidate_id=assignments[r.assignment_id].candidate_id,
            project_id=assignments[r.assignment_id].project_id,
            role_id=assignments[r.assignment_id].role_id,
            recipient_email=r.recipient,
            cc_emails=cc,
            bcc_emails=bcc,
            send_type=r.send_type,
            delivery_method=method,
            is_bulk=is_bulk,
            document_ids=r.document_ids,
            file_names=r.file_names,
            notes=batch.notes.get(r.assignment_id) or req.notes,
            dispatch_id=dispatch_id,
            sender_id=req.sender_id,
        )
        for r in result.resolved
    ]
    records = await asyncio.to_thread(append_queued, storage, queued)
    record_by_aid = {rec.assignment_id: rec for rec in records}

    # 4) deliver
    all_cc = settings.always_cc_list() + cc
    all_bcc = settings.always_bcc_list() + bcc
    timeout = settings.merge_fetch_timeout

    async def send(to: str, subject: str, body: str, attachments: List[Dict[str, Any]]) -> None:
        ok = await email_sender.send_email_with_attachments(
            to_email=to,
            subject=subject,
            body_html=body,
            attachments=attachments,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
            cc_emails=all_cc,
            bcc_emails=all_bcc,
            retry_attempts=settings.email_retry_attempts,
        )
        if not ok:
            raise DeliveryFailed(f"Email delivery to {to} failed")

    def entry(aid: str, **extra) -> Dict[str, Any]:
        return {"assignment": assignments[aid], "notes": batch.notes.get(aid), **extra}

    async def deliver_email(p: Partition[ForwardGroupKey]) -> None:
        members = [resolved_by_id[aid] for aid in p.member_ids]
        files: List[Dict[str, Any]] = []
        for r in members:
            files.extend(await _fetch_files(r, store=store, timeout=timeout))
        if p.key in summaries:
            files.append({"filename": SUMMARY_FILE_NAME, "data": summaries[p.key]})
        body = _body_html([entry(r.assignment_id, file_names=r.file_names) for r in members], req.notes)
        await send(p.key.recipient, _subject(req, [assignments[aid] for aid in p.member_ids]), body, files)

    run = dict(max_parallel=settings.max_parallel_dispatches, timeout=settings.dispatch_timeout_seconds)
    if method == DeliveryMethod.DRIVE_LINK:
        report = await _deliver_drive_links(
            partitions, resolved_by_id, assignments, store, req, send, entry, timeout, run
        )
    else:
        report = await dispatch_partitions(partitions, deliver_email, **run)

    # 5) settle
    settle_errors: List[LedgerWriteFailed] = []

    def settle_all() -> List[ForwardingRecord]:
        settled = []
        for o in report.succeeded + report.failed:
            for aid in o.member_ids:
                try:
                    settled.append(settle(storage, record_by_aid[aid].record_id, ok=o.ok, error=o.reason))
                except LedgerWriteFailed as e:
                    logger.error("Could not settle %s: %s", e.record_id, e.message)
                    settle_errors.append(e)
        return settled

    settled = await asyncio.to_thread(settle_all)

    # 6) status, best effort
    def mark_sent() -> None:
        for aid in report.succeeded_ids:
            try:
                change_status_sync(
                    storage,
                    aid,
                    PipelineStatus.SENT_TO_CLIENT,
                    changed_by=req.sender_id,
                    reason=f"Forwarded to client ({method.value})",
                )
            except Exception as e:
                logger.warning("Status update after forwarding failed for %s: %s", aid, e)

    await asyncio.to_thread(mark_sent)

    logger.info(
        "Forward %s (%s): %d sent, %d failed, %d excluded, %d bytes",
        dispatch_id, method.value, len(report.succeeded_ids), len(report.failed_ids),
        len(excluded), total_bytes,
    )
    if settle_errors:
        raise settle_errors[0]

    return ForwardResult(
        dispatch_id=dispatch_id,
        records=settled,
        report=report,
        excluded=excluded,
        total_bytes=total_bytes,
    )


async def _deliver_drive_links(
    partitions: Sequence[Partition[ForwardGroupKey]],
    resolved_by_id: Dict[str, ResolvedSelection],
    assignments: Dict[str, CandidateAssignment],
    store: LocalArtifactStore,
    req: ForwardRequest,
    send,
    entry,
    timeout: float,
    run: Dict[str, Any],
) -> DispatchReport:
    """
    Upload each candidate's files on their own, then send one email of links
    per recipient. Candidates whose upload failed are reported and left out
    of the email.
    """
    uploads = [
        Partition(key=ForwardGroupKey(p.key.recipient, aid), member_ids=(aid,))
        for p in partitions
        for aid in p.member_ids
    ]

    async def upload(p: Partition[ForwardGroupKey]) -> List[Dict[str, str]]:
        aid = p.member_ids[0]
        a = assignments[aid]
        files = await _fetch_files(resolved_by_id[aid], store=store, timeout=timeout)
        links = await asyncio.to_thread(
            drive_client.upload_candidate_files,
            files=files,
            project_label=a.project_title or a.project_id,
            candidate_label=_label(a),
        )
        if links is None:
            raise DeliveryFailed("Drive upload failed")
        return links

    uploaded = await dispatch_partitions(uploads, upload, **run)
    links_by_aid = {o.member_ids[0]: o.result for o in uploaded.succeeded}

    email_parts = []
    for p in partitions:
        ready = tuple(aid for aid in p.member_ids if aid in links_by_aid)
        if ready:
            email_parts.append(Partition(key=p.key, member_ids=ready))

    async def deliver_links(p: Partition[ForwardGroupKey]) -> None:
        body = _body_html([entry(aid, links=links_by_aid[aid]) for aid in p.member_ids], req.notes)
        await send(p.key.recipient, _subject(req, [assignments[aid] for aid in p.member_ids]), body, [])

    emailed = await dispatch_partitions(email_parts, deliver_links, **run)
    return DispatchReport(
        succeeded=emailed.succeeded,
        failed=list(uploaded.failed) + list(emailed.failed),
    )
