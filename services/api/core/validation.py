"""
Dispatch validation.
Blocks a batch from submission when it breaks a completeness or size rule,
naming the unmet condition. Nothing here is cached: callers re-run it on
every submit since selections change between opens.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from core.errors import (
    IncompleteSelection,
    MergeUnavailable,
    PayloadTooLarge,
    RecipientInvalid,
)
from models import DeliveryMethod, DocumentRecord, MergedArtifact, SendType
from models.selection import Selection

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

COMBINED_LIMIT_BYTES = 20 * 1024 * 1024


@dataclass
class ResolvedAttachment:
    file_name: str
    file_url: str
    file_size: int
    document_id: Optional[str] = None


@dataclass
class ResolvedSelection:
    """A candidate's selection turned into concrete files."""
    assignment_id: str
    send_type: SendType
    recipient: str
    attachments: List[ResolvedAttachment] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(a.file_size for a in self.attachments)

    @property
    def document_ids(self) -> List[str]:
        return [a.document_id for a in self.attachments if a.document_id]

    @property
    def file_names(self) -> List[str]:
        return [a.file_name for a in self.attachments]


@dataclass
class ValidationResult:
    resolved: List[ResolvedSelection]
    total_bytes: int


def is_valid_email(address: Optional[str]) -> bool:
    return bool(address) and EMAIL_RE.match(address.strip()) is not None


def ensure_all_selected(visible_ids: Sequence[str], selections: Mapping[str, Selection]) -> None:
    """
    Every visible candidate needs a non-empty selection.

    Raises:
        IncompleteSelection naming how many are missing
    """
    missing = [aid for aid in visible_ids if selections.get(aid, Selection.empty()).is_empty]
    if missing:
        raise IncompleteSelection(missing)


def resolve_recipients(
    visible_ids: Sequence[str],
    shared: Optional[str],
    per_candidate: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    One recipient per candidate: a per-candidate address wins over the shared one.

    Raises:
        RecipientInvalid listing candidates with no address or a malformed one
    """
    per_candidate = per_candidate or {}
    resolved: Dict[str, str] = {}
    missing: List[str] = []
    invalid: List[str] = []
    bad_address = None

    for aid in visible_ids:
        address = (per_candidate.get(aid) or shared or "").strip()
        if not address:
            missing.append(aid)
        elif not is_valid_email(address):
            invalid.append(aid)
            bad_address = bad_address or address
        else:
            resolved[aid] = address

    if missing:
        raise RecipientInvalid(
            f"Recipient email is required. {len(missing)} candidate(s) have no recipient.",
            assignment_ids=missing,
        )
    if invalid:
        raise RecipientInvalid(
            f"Please enter a valid email address ({bad_address}).",
            assignment_ids=invalid,
            address=bad_address,
        )
    return resolved


def ensure_valid_copies(addresses: Iterable[str], label: str = "CC") -> List[str]:
    """Validate optional cc/bcc lists; blanks are dropped."""
    cleaned = [a.strip() for a in addresses if a and a.strip()]
    for a in cleaned:
        if not is_valid_email(a):
            raise RecipientInvalid(f"Invalid {label} email address: {a}", address=a)
    return cleaned


def resolve_selection(
    assignment_id: str,
    selection: Selection,
    verified_docs: Sequence[DocumentRecord],
    artifact: Optional[MergedArtifact],
) -> List[ResolvedAttachment]:
    """
    Files for one selection. Individual ids that are no longer verified are
    dropped; a merged choice with no artifact raises MergeUnavailable.
    """
    if selection.merged:
        if artifact is None:
            raise MergeUnavailable(assignment_id)
        return [ResolvedAttachment(
            file_name=artifact.file_name,
            file_url=artifact.file_url,
            file_size=artifact.file_size,
        )]

    by_id = {d.document_id: d for d in verified_docs}
    dropped = [d for d in selection.document_ids if d not in by_id]
    if dropped:
        logger.warning(
            "Ignoring %d no-longer-verified document(s) selected for %s", len(dropped), assignment_id
        )
    # keep verification order for attachments
    return [
        ResolvedAttachment(
            file_name=d.file_name,
            file_url=d.file_url,
            file_size=d.file_size,
            document_id=d.document_id,
        )
        for d in verified_docs
        if d.document_id in selection.document_ids
    ]


def ensure_combined_size(
    delivery_method: DeliveryMethod,
    total_bytes: int,
    limit_bytes: int = COMBINED_LIMIT_BYTES,
) -> None:
    """Only `combined` delivery is size-limited; exactly `limit_bytes` still passes."""
    if delivery_method == DeliveryMethod.COMBINED and total_bytes > limit_bytes:
        raise PayloadTooLarge(total_bytes, limit_bytes)


def validate_forward(
    *,
    visible_ids: Sequence[str],
    selections: Mapping[str, Selection],
    recipient: Optional[str],
    delivery_method: DeliveryMethod,
    verified_docs: Mapping[str, Sequence[DocumentRecord]],
    artifacts: Mapping[str, Optional[MergedArtifact]],
    per_candidate_recipients: Optional[Mapping[str, str]] = None,
    cc: Iterable[str] = (),
    bcc: Iterable[str] = (),
    summary_size: int = 0,
    limit_bytes: int = COMBINED_LIMIT_BYTES,
) -> ValidationResult:
    """
    Run every forward-to-client rule, in order: all-selected, recipients,
    merged availability, combined size (summary file included).
    """
    ensure_all_selected(visible_ids, selections)
    recipients = resolve_recipients(visible_ids, recipient, per_candidate_recipients)
    ensure_valid_copies(cc, "CC")
    ensure_valid_copies(bcc, "BCC")

    resolved: List[ResolvedSelection] = []
    emptied: List[str] = []
    for aid in visible_ids:
        sel = selections[aid]
        attachments = resolve_selection(aid, sel, verified_docs.get(aid, ()), artifacts.get(aid))
        if not attachments:
            emptied.append(aid)
            continue
        resolved.append(ResolvedSelection(
            assignment_id=aid,
            send_type=sel.send_type,
            recipient=recipients[aid],
            attachments=attachments,
        ))
    if emptied:
        raise IncompleteSelection(emptied)

    total = sum(r.total_bytes for r in resolved) + max(0, summary_size)
    ensure_combined_size(delivery_method, total, limit_bytes)
    return ValidationResult(resolved=resolved, total_bytes=total)
