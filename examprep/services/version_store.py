"""
Persistence for questions and their versions.

Every write path keeps exactly one active version per question: the previous
active row is deactivated and flushed before the new one is inserted, inside
the caller's transaction, and the partial unique index on
``question_versions(question_id) WHERE is_active`` rejects anything else.
Committing (one item per transaction) is left to the caller.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from examprep.core.errors import InvariantViolationError
from examprep.models.orm import (
    ARCHIVED_BY_ADMIN, Question, QuestionSet, QuestionVersion, utcnow,
)
from examprep.models.payloads import SourceItem
from examprep.services.fingerprint import item_fingerprints
from examprep.services.merge import QuestionSnapshot, VersionSnapshot

logger = logging.getLogger(__name__)

SYNC_AUTHOR = "sync"


class VersionStore:
    def __init__(self, db: Session):
        self.db = db

    # ---- reads ----

    def get_question(self, question_id: int) -> Question:
        q = self.db.get(Question, question_id)
        if q is None:
            raise LookupError(f"Question {question_id} not found")
        return q

    def questions(self, question_set_id: int) -> List[Question]:
        return list(self.db.scalars(
            select(Question).where(Question.question_set_id == question_set_id).order_by(Question.source_position)
        ))

    def active_version(self, question_id: int) -> QuestionVersion:
        rows = list(self.db.scalars(
            select(QuestionVersion).where(QuestionVersion.question_id == question_id, QuestionVersion.is_active.is_(True))
        ))
        if len(rows) != 1:
            logger.error(f"Question {question_id} has {len(rows)} active versions")
            raise InvariantViolationError([question_id])
        return rows[0]

    def versions(self, question_id: int) -> List[QuestionVersion]:
        return list(self.db.scalars(
            select(QuestionVersion).where(QuestionVersion.question_id == question_id).order_by(QuestionVersion.version_number)
        ))

    def find_invariant_violations(self, question_set_id: Optional[int] = None) -> List[int]:
        """Ids of questions with zero or several active versions."""
        n_active = func.coalesce(func.sum(case((QuestionVersion.is_active.is_(True), 1), else_=0)), 0)
        stmt = (
            select(Question.id, n_active)
            .outerjoin(QuestionVersion, QuestionVersion.question_id == Question.id)
            .group_by(Question.id)
        )
        if question_set_id is not None:
            stmt = stmt.where(Question.question_set_id == question_set_id)
        return sorted(qid for qid, n in self.db.execute(stmt).all() if n != 1)

    def load_set_state(self, question_set_id: int) -> List[QuestionSnapshot]:
        """Snapshot every question of a set together with its active version."""
        questions = self.questions(question_set_id)
        if not questions:
            return []
        active_rows = self.db.scalars(
            select(QuestionVersion)
            .join(Question, Question.id == QuestionVersion.question_id)
            .where(Question.question_set_id == question_set_id, QuestionVersion.is_active.is_(True))
        )
        active: Dict[int, List[QuestionVersion]] = defaultdict(list)
        for v in active_rows:
            active[v.question_id].append(v)

        broken = [q.id for q in questions if len(active.get(q.id, [])) != 1]
        if broken:
            logger.error(f"Active-version invariant violated in set {question_set_id}: {broken}")
            raise InvariantViolationError(broken)

        snapshots = []
        for q in questions:
            v = active[q.id][0]
            snapshots.append(QuestionSnapshot(
                question_id=q.id, source_position=q.source_position, loid=q.loid,
                is_archived=q.is_archived, archived_reason=q.archived_reason,
                active=VersionSnapshot(
                    version_id=v.id, version_number=v.version_number, fingerprint=v.fingerprint,
                    content_hash=v.content_hash, uses_static_explanation=v.uses_static_explanation,
                ),
            ))
        return snapshots

    # ---- writes ----

    def _version_row(self, question_id: int, version_number: int, item: SourceItem,
                     fingerprint: str, content_hash: str, created_by: str) -> QuestionVersion:
        return QuestionVersion(
            question_id=question_id, version_number=version_number,
            fingerprint=fingerprint, content_hash=content_hash,
            question_type=item.question_type, topic_focus=item.topic_focus,
            question_text=item.question_text, payload=item.content_dict(),
            is_active=True, uses_static_explanation=False, static_explanation=None,
            created_by=created_by,
        )

    def create_question(self, question_set_id: int, item: SourceItem, fingerprint: str, content_hash: str,
                        created_by: str = SYNC_AUTHOR) -> Question:
        """Insert a question at ``item.question_number`` with version 1 active."""
        q = Question(
            question_set_id=question_set_id, source_position=item.question_number, loid=item.loid,
            display_order=item.question_number, display_order_manual=False,
            is_archived=False, archived_reason=None, last_modified=utcnow(),
        )
        self.db.add(q); self.db.flush()
        self.db.add(self._version_row(q.id, 1, item, fingerprint, content_hash, created_by))
        self.db.flush()
        return q

    def add_version(self, question_id: int, item: SourceItem, fingerprint: str, content_hash: str,
                    carry_explanation: bool = False, created_by: str = SYNC_AUTHOR) -> QuestionVersion:
        """Supersede the active version of a question with new content."""
        q = self.get_question(question_id)
        current = self.active_version(question_id)
        next_number = (self.db.scalar(
            select(func.max(QuestionVersion.version_number)).where(QuestionVersion.question_id == question_id)
        ) or 0) + 1

        current.is_active = False
        self.db.flush()

        new = self._version_row(question_id, next_number, item, fingerprint, content_hash, created_by)
        if carry_explanation and current.uses_static_explanation:
            new.uses_static_explanation = True
            new.static_explanation = current.static_explanation
        self.db.add(new)
        q.loid = item.loid
        q.last_modified = utcnow()
        self.db.flush()
        return new

    def update_loid(self, question_id: int, loid: str) -> None:
        q = self.get_question(question_id)
        q.loid = loid
        q.last_modified = utcnow()
        self.db.flush()

    def archive_question(self, question_id: int, reason: str = ARCHIVED_BY_ADMIN) -> Question:
        q = self.get_question(question_id)
        if not q.is_archived:
            q.is_archived = True
            q.archived_reason = reason
            q.last_modified = utcnow()
            self.db.flush()
        return q

    def restore_question(self, question_id: int) -> Question:
        q = self.get_question(question_id)
        if q.is_archived:
            q.is_archived = False
            q.archived_reason = None
            q.last_modified = utcnow()
            self.db.flush()
        return q

    def reorder(self, question_set_id: int, ordered_question_ids: Sequence[int]) -> List[Question]:
        """Manual reorder: the given questions get display order 1..n and are marked manual."""
        if len(set(ordered_question_ids)) != len(ordered_question_ids):
            raise ValueError("Duplicate question ids in order")
        by_id = {q.id: q for q in self.questions(question_set_id)}
        unknown = [qid for qid in ordered_question_ids if qid not in by_id]
        if unknown:
            raise ValueError(f"Questions {unknown} do not belong to set {question_set_id}")
        archived = [qid for qid in ordered_question_ids if by_id[qid].is_archived]
        if archived:
            raise ValueError(f"Archived questions cannot be reordered: {archived}")

        now = utcnow()
        result = []
        for i, qid in enumerate(ordered_question_ids, start=1):
            q = by_id[qid]
            q.display_order = i
            q.display_order_manual = True
            q.last_modified = now
            result.append(q)
        self.db.flush()
        return result

    def set_static_explanation(self, question_id: int, explanation: Optional[str]) -> QuestionVersion:
        v = self.active_version(question_id)
        v.static_explanation = explanation or None
        v.uses_static_explanation = bool(explanation)
        self.db.flush()
        return v

    def revise(self, question_id: int, content: dict, created_by: str) -> QuestionVersion:
        """Administrator edit. ``content`` is a flat source-format record (position and loid default to the question's)."""
        q = self.get_question(question_id)
        current = self.active_version(question_id)
        record = dict(content)
        record["question_number"] = q.source_position
        record.setdefault("loid", q.loid)
        item = SourceItem.model_validate(record)
        fingerprint, content_hash = item_fingerprints(item)
        if fingerprint == current.fingerprint:
            return current
        return self.add_version(
            question_id, item, fingerprint, content_hash,
            carry_explanation=content_hash == current.content_hash, created_by=created_by,
        )

    def refresh_question_count(self, question_set_id: int) -> int:
        count = self.db.scalar(
            select(func.count(Question.id)).where(Question.question_set_id == question_set_id, Question.is_archived.is_(False))
        ) or 0
        self.db.execute(update(QuestionSet).where(QuestionSet.id == question_set_id).values(question_count=count))
        return count


def active_versions(db: Session, question_ids: Iterable[int]) -> Dict[int, QuestionVersion]:
    ids = list(question_ids)
    if not ids:
        return {}
    rows = db.scalars(
        select(QuestionVersion).where(QuestionVersion.question_id.in_(ids), QuestionVersion.is_active.is_(True))
    )
    return {v.question_id: v for v in rows}
