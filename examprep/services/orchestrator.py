"""
Entry point for content synchronization.

A run takes the global sync lock, fetches the set from the content source,
reconciles it against the stored questions, writes each outcome in its own
transaction, repairs display order and releases the lock on every exit path.
"""
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from examprep.core.database import SessionLocal
from examprep.core.errors import (
    InvariantViolationError, ItemMergeError, QuestionSetNotFoundError, SourceFetchError,
)
from examprep.models.orm import ARCHIVED_SOURCE_REMOVED, QuestionSet, SyncRun, utcnow
from examprep.services.content_source import ContentSource, HttpContentSource
from examprep.services.merge import ItemError, ItemOutcome, OutcomeKind, parse_source_items, reconcile
from examprep.services.positions import reconcile_positions
from examprep.services.sync_lock import SyncLockGuard
from examprep.services.version_store import VersionStore

logger = logging.getLogger(__name__)

RUN_SINGLE = "single"
RUN_ALL = "all"
RUN_FINAL = "final"


@dataclass
class SyncReport:
    question_set_id: int
    run_id: Optional[str] = None
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    archived: int = 0
    restored: int = 0
    new_versions: int = 0
    reordered: int = 0
    errors: List[ItemError] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> int:
        return len(self.errors)

    def summary(self) -> str:
        return (f"completed, {self.created} created / {self.updated} updated / "
                f"{self.archived} archived / {self.failed} errors")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_set_id": self.question_set_id,
            "run_id": self.run_id,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "archived": self.archived,
            "restored": self.restored,
            "new_versions": self.new_versions,
            "reordered": self.reordered,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "summary": self.summary(),
        }


@dataclass
class BulkSyncReport:
    final: bool = False
    finalized: bool = False
    reports: List[SyncReport] = field(default_factory=list)
    fetch_failures: List[ItemError] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        totals = Counter()
        for r in self.reports:
            totals.update({"created": r.created, "updated": r.updated, "unchanged": r.unchanged,
                           "archived": r.archived, "restored": r.restored, "failed": r.failed})
        return {
            "final": self.final,
            "finalized": self.finalized,
            "sets_synchronized": len(self.reports),
            "sets_failed": len(self.fetch_failures),
            "totals": dict(totals),
            "reports": [r.to_dict() for r in self.reports],
            "fetch_failures": [e.to_dict() for e in self.fetch_failures],
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass
class SyncPlan:
    question_set_id: int
    outcomes: List[ItemOutcome] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        c = Counter(o.kind.value for o in self.outcomes)
        return {k.value: c.get(k.value, 0) for k in OutcomeKind}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_set_id": self.question_set_id,
            "counts": self.counts(),
            "items": [
                {
                    "position": o.position,
                    "kind": o.kind.value,
                    "question_id": o.question_id,
                    "loid": o.item.loid if o.item else None,
                    "new_version": o.new_version,
                    "carry_explanation": o.carry_explanation,
                    "loid_changed": o.loid_changed,
                }
                for o in self.outcomes
            ],
            "errors": [e.to_dict() for e in self.errors],
        }


class SyncOrchestrator:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 source: Optional[ContentSource] = None, lock: Optional[SyncLockGuard] = None):
        self.session_factory = session_factory
        self._source = source
        self.lock = lock or SyncLockGuard(session_factory)

    @property
    def source(self) -> ContentSource:
        if self._source is None:
            self._source = HttpContentSource()
        return self._source

    # ---- public operations ----

    def synchronize(self, question_set_id: int, source_items: Optional[Sequence[Dict[str, Any]]] = None) -> SyncReport:
        with self.lock.hold():
            return self._synchronize_set(question_set_id, source_items, RUN_SINGLE)

    def synchronize_all(self, final: bool = False) -> BulkSyncReport:
        """Synchronize every set that has an external id, under one lock.

        With ``final`` the permanent ratchet is set at the end, but only when
        every set was fetched successfully.
        """
        started = time.perf_counter()
        bulk = BulkSyncReport(final=final)
        kind = RUN_FINAL if final else RUN_ALL
        with self.lock.hold() as token:
            with self.session_factory() as db:
                set_ids = list(db.scalars(
                    select(QuestionSet.id).where(QuestionSet.external_id.is_not(None)).order_by(QuestionSet.id)
                ))
            logger.info(f"Starting {kind} synchronization of {len(set_ids)} question sets")
            for set_id in set_ids:
                try:
                    bulk.reports.append(self._synchronize_set(set_id, None, kind))
                except SourceFetchError as e:
                    bulk.fetch_failures.append(ItemError(str(e), question_set_id=set_id))

            if final and not bulk.fetch_failures:
                self.lock.mark_finalized(token)
                bulk.finalized = True
            elif final:
                logger.error(f"Final refresh not recorded: {len(bulk.fetch_failures)} question sets failed to fetch")
        bulk.elapsed_seconds = time.perf_counter() - started
        logger.info(f"Finished {kind} synchronization in {bulk.elapsed_seconds:.1f}s")
        return bulk

    def preview(self, question_set_id: int, source_items: Optional[Sequence[Dict[str, Any]]] = None) -> SyncPlan:
        """What a synchronization would do right now. Takes no lock and writes nothing."""
        with self.session_factory() as db:
            qs = self._get_set(db, question_set_id)
            raw = source_items if source_items is not None else self._fetch(qs)
            items, failures, failed_positions = parse_source_items(raw)
            existing = VersionStore(db).load_set_state(qs.id)
            outcomes = reconcile(existing, items, skip_positions=failed_positions)
            db.rollback()
        for f in failures:
            f.question_set_id = question_set_id
        return SyncPlan(question_set_id=question_set_id, outcomes=outcomes, errors=failures)

    # ---- internals ----

    def _get_set(self, db: Session, question_set_id: int) -> QuestionSet:
        qs = db.get(QuestionSet, question_set_id)
        if qs is None:
            raise QuestionSetNotFoundError(question_set_id)
        return qs

    def _fetch(self, qs: QuestionSet) -> List[Dict[str, Any]]:
        if not qs.external_id:
            raise SourceFetchError(f"Question set {qs.id} has no external id")
        return self.source.fetch_question_set(qs.external_id)

    def _synchronize_set(self, question_set_id: int, source_items, kind: str) -> SyncReport:
        started = time.perf_counter()
        with self.session_factory() as db:
            qs = self._get_set(db, question_set_id)
            # a failed fetch aborts before anything is written, run record included
            try:
                raw = source_items if source_items is not None else self._fetch(qs)
            except SourceFetchError as e:
                logger.error(f"Sync of question set {qs.id} aborted: {e}")
                raise

            run = SyncRun(id=str(uuid.uuid4()), question_set_id=qs.id, kind=kind, status="running",
                          errors=[], started_at=utcnow())
            db.add(run); db.commit()
            logger.info(f"Sync run {run.id} started for question set {qs.id} ({kind})")
            report = SyncReport(question_set_id=qs.id, run_id=run.id)
            try:
                self._apply(db, qs.id, raw, report)
            except Exception as e:
                logger.exception(f"Sync run {run.id} aborted")
                db.rollback()
                report.elapsed_seconds = time.perf_counter() - started
                try:
                    self._finish_run(db, run.id, report, status="failed", error=str(e))
                except SQLAlchemyError:
                    logger.exception(f"Could not record the failure of sync run {run.id}")
                raise
            report.elapsed_seconds = time.perf_counter() - started
            self._finish_run(db, run.id, report, status="done")
        logger.info(f"Sync run {report.run_id} for question set {question_set_id}: {report.summary()} "
                    f"in {report.elapsed_seconds:.2f}s")
        return report

    def _apply(self, db: Session, question_set_id: int, raw, report: SyncReport) -> None:
        store = VersionStore(db)
        items, failures, failed_positions = parse_source_items(raw)
        for f in failures:
            f.question_set_id = question_set_id
            logger.warning(f"Skipping source item at position {f.position} in set {question_set_id}: {f.message}")
        report.errors.extend(failures)

        existing = store.load_set_state(question_set_id)
        outcomes = reconcile(existing, items, skip_positions=failed_positions)
        counts = Counter()
        for outcome in outcomes:
            if not outcome.writes:
                counts[outcome.kind] += 1
                continue
            try:
                self._write_outcome(db, store, question_set_id, outcome)
            except ItemMergeError as e:
                logger.warning(f"Failed to apply {outcome.kind.value} at position {e.position} "
                               f"in set {question_set_id}: {e}")
                report.errors.append(ItemError(str(e), position=e.position, loid=e.loid,
                                               question_set_id=question_set_id))
                continue
            counts[outcome.kind] += 1
            if outcome.new_version:
                report.new_versions += 1

        report.created = counts[OutcomeKind.CREATED]
        report.updated = counts[OutcomeKind.UPDATED]
        report.unchanged = counts[OutcomeKind.UNCHANGED]
        report.archived = counts[OutcomeKind.ARCHIVED]
        report.restored = counts[OutcomeKind.RESTORED]

        report.reordered = len(reconcile_positions(store.questions(question_set_id)))
        store.refresh_question_count(question_set_id)
        db.commit()

        violations = store.find_invariant_violations(question_set_id)
        if violations:
            raise InvariantViolationError(violations)

    def _write_outcome(self, db: Session, store: VersionStore, question_set_id: int, o: ItemOutcome) -> None:
        """Apply one outcome in its own transaction."""
        try:
            self._apply_outcome(store, question_set_id, o)
            db.commit()
        except InvariantViolationError:
            db.rollback()
            raise
        except (SQLAlchemyError, ValueError, LookupError) as e:
            db.rollback()
            raise ItemMergeError(str(e), position=o.position, loid=o.item.loid if o.item else None) from e

    def _apply_outcome(self, store: VersionStore, question_set_id: int, o: ItemOutcome) -> None:
        if o.kind is OutcomeKind.CREATED:
            store.create_question(question_set_id, o.item, o.fingerprint, o.content_hash)
        elif o.kind is OutcomeKind.ARCHIVED:
            store.archive_question(o.question_id, ARCHIVED_SOURCE_REMOVED)
        else:
            if o.kind is OutcomeKind.RESTORED:
                store.restore_question(o.question_id)
            if o.new_version:
                store.add_version(o.question_id, o.item, o.fingerprint, o.content_hash,
                                  carry_explanation=o.carry_explanation)
            elif o.loid_changed:
                store.update_loid(o.question_id, o.item.loid)

    def _finish_run(self, db: Session, run_id: str, report: SyncReport, status: str, error: Optional[str] = None):
        run = db.get(SyncRun, run_id)
        run.status = status
        run.created = report.created
        run.updated = report.updated
        run.unchanged = report.unchanged
        run.archived = report.archived
        run.restored = report.restored
        run.failed = report.failed
        run.errors = [e.to_dict() for e in report.errors]
        run.error = error
        run.finished_at = utcnow()
        run.elapsed_seconds = report.elapsed_seconds
        db.commit()
