# services/api/models/selection.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from core.errors import SelectionInvariantViolation
from models import SendType

MERGED = "merged"


@dataclass(frozen=True)
class Selection:
  """
  Per-assignment choice of what to dispatch: the merged artifact alone,
  or zero-or-more individual verified document ids. Never both.
  """

  merged: bool = False
  document_ids: FrozenSet[str] = field(default_factory=frozenset)

  # --------------------
  # Validation
  # --------------------
  def validate(self, assignment_id: Optional[str] = None) -> None:
    if self.merged and self.document_ids:
      raise SelectionInvariantViolation(assignment_id)
    if any(not d for d in self.document_ids):
      raise ValueError("document_ids must not contain empty IDs")

  @property
  def is_empty(self) -> bool:
    return not self.merged and not self.document_ids

  @property
  def send_type(self) -> Optional[SendType]:
    if self.merged:
      return SendType.MERGED
    if self.document_ids:
      return SendType.INDIVIDUAL
    return None

  # ------------ constructors ------------

  @classmethod
  def empty(cls) -> "Selection":
    return cls()

  @classmethod
  def merged_only(cls) -> "Selection":
    return cls(merged=True)

  @classmethod
  def of(cls, document_ids: Iterable[str]) -> "Selection":
    return cls(document_ids=frozenset(str(d) for d in document_ids if d))

  # ------------ API layer ------------

  @classmethod
  def from_api(cls, raw: Iterable[str]) -> "Selection":
    """
    Accepts the wire form: a list of ids where "merged" is the sentinel.
    A list carrying both forms is rejected rather than silently resolved.
    """
    ids = [str(x) for x in raw if x]
    sel = cls(merged=MERGED in ids, document_ids=frozenset(i for i in ids if i != MERGED))
    sel.validate()
    return sel

  def to_api(self) -> List[str]:
    self.validate()
    if self.merged:
      return [MERGED]
    return sorted(self.document_ids)

  def to_dict(self) -> Dict[str, Any]:
    return {
      "merged": self.merged,
      "document_ids": sorted(self.document_ids),
      "send_type": self.send_type.value if self.send_type else None,
    }
