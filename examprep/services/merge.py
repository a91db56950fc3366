"""
Diff/merge of a question set against a fresh batch from the authoring system.

Everything here is pure: the caller hands in snapshots of the stored state and
the parsed source items, and gets back one ``ItemOutcome`` per position that
needs attention. Questions are matched by source position only.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from examprep.models.orm import ARCHIVED_SOURCE_REMOVED
from examprep.models.payloads import SourceItem
from examprep.services.fingerprint import item_fingerprints

logger = logging.getLogger(__name__)


class OutcomeKind(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    ARCHIVED = "archived"
    RESTORED = "restored"


@dataclass(frozen=True)
class VersionSnapshot:
    version_id: int
    version_number: int
    fingerprint: str
    content_hash: str
    uses_static_explanation: bool = False


@dataclass(frozen=True)
class QuestionSnapshot:
    question_id: int
    source_position: int
    loid: str
    is_archived: bool
    archived_reason: Optional[str]
    active: VersionSnapshot


@dataclass
class ItemError:
    message: str
    position: Optional[int] = None
    loid: Optional[str] = None
    question_set_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "loid": self.loid,
            "message": self.message,
            "question_set_id": self.question_set_id,
        }


@dataclass
class ItemOutcome:
    kind: OutcomeKind
    position: int
    question_id: Optional[int] = None
    item: Optional[SourceItem] = None
    fingerprint: Optional[str] = None
    content_hash: Optional[str] = None
    new_version: bool = False
    carry_explanation: bool = False
    previous_version_number: Optional[int] = None
    loid_changed: bool = False

    @property
    def writes(self) -> bool:
        return self.kind is not OutcomeKind.UNCHANGED or self.loid_changed


def _error_text(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def _position(value: Any) -> Optional[int]:
    # Same coercion as the model's lax int: whole numbers and digit strings.
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_source_items(raw_records: Iterable[Dict[str, Any]]) -> Tuple[List[SourceItem], List[ItemError], Set[int]]:
    """Validate raw source records.

    Returns the valid items, the per-item failures, and the set of positions
    that were present in the batch but failed (those must not be archived).
    """
    items: List[SourceItem] = []
    failures: List[ItemError] = []
    failed_positions: Set[int] = set()
    seen: Set[int] = set()

    for index, raw in enumerate(raw_records):
        if not isinstance(raw, dict):
            failures.append(ItemError(f"record {index + 1} is not an object"))
            continue
        record = dict(raw)
        if not record.get("question_number"):
            record["question_number"] = index + 1
        loid = record.get("loid")
        try:
            item = SourceItem.model_validate(record)
        except ValidationError as exc:
            position = _position(record["question_number"])
            failures.append(ItemError(_error_text(exc), position=position, loid=loid))
            if position is not None:
                failed_positions.add(position)
            continue
        if item.question_number in seen:
            failures.append(ItemError("duplicate question_number in source batch", position=item.question_number, loid=loid))
            continue
        seen.add(item.question_number)
        items.append(item)

    return items, failures, failed_positions


def reconcile(
    existing: Sequence[QuestionSnapshot],
    incoming: Sequence[SourceItem],
    skip_positions: Iterable[int] = (),
) -> List[ItemOutcome]:
    by_position = {q.source_position: q for q in existing}
    skip = set(skip_positions)
    outcomes: List[ItemOutcome] = []

    for item in incoming:
        position = item.question_number
        fingerprint, content_hash = item_fingerprints(item)
        current = by_position.get(position)

        if current is None:
            outcomes.append(ItemOutcome(
                kind=OutcomeKind.CREATED, position=position, item=item,
                fingerprint=fingerprint, content_hash=content_hash, new_version=True,
            ))
            continue

        active = current.active
        changed = fingerprint != active.fingerprint
        restore = current.is_archived and current.archived_reason == ARCHIVED_SOURCE_REMOVED
        if restore:
            kind = OutcomeKind.RESTORED
        elif changed:
            kind = OutcomeKind.UPDATED
        else:
            kind = OutcomeKind.UNCHANGED

        loid_changed = current.loid != item.loid
        if loid_changed:
            logger.warning(
                f"LOID changed at position {position} (question {current.question_id}): "
                f"{current.loid} -> {item.loid}"
            )

        outcomes.append(ItemOutcome(
            kind=kind, position=position, question_id=current.question_id, item=item,
            fingerprint=fingerprint, content_hash=content_hash, new_version=changed,
            carry_explanation=changed and content_hash == active.content_hash,
            previous_version_number=active.version_number, loid_changed=loid_changed,
        ))

    present = {item.question_number for item in incoming} | skip
    for current in existing:
        if current.source_position in present or current.is_archived:
            continue
        outcomes.append(ItemOutcome(
            kind=OutcomeKind.ARCHIVED, position=current.source_position,
            question_id=current.question_id,
            previous_version_number=current.active.version_number,
        ))

    outcomes.sort(key=lambda o: o.position)
    return outcomes
