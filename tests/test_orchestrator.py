import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import object_session

from examprep.core.errors import (
    InvariantViolationError, LockConflictError, QuestionSetNotFoundError, SourceFetchError, SyncFinalizedError,
)
from examprep.models.orm import ARCHIVED_SOURCE_REMOVED, Question, QuestionSet, QuestionVersion, SyncRun
from examprep.services import orchestrator as orchestrator_module
from examprep.services.sync_lock import LockState
from examprep.services.version_store import VersionStore


def count(session_factory, model):
    with session_factory() as s:
        return s.scalar(select(func.count()).select_from(model))


def questions(session_factory, set_id):
    with session_factory() as s:
        return [(q.source_position, q.display_order, q.is_archived, q.archived_reason, q.loid)
                for q in VersionStore(s).questions(set_id)]


def active(session_factory, set_id, position):
    with session_factory() as s:
        q = s.scalar(select(Question).where(Question.question_set_id == set_id, Question.source_position == position))
        v = VersionStore(s).active_version(q.id)
        return v.version_number, v.uses_static_explanation, v.static_explanation


def explain(session_factory, set_id, position, text):
    with session_factory() as s:
        q = s.scalar(select(Question).where(Question.question_set_id == set_id, Question.source_position == position))
        VersionStore(s).set_static_explanation(q.id, text)
        s.commit()


@pytest.fixture
def set_id(make_set):
    return make_set()


def test_first_sync_creates_questions_in_source_order(orchestrator, session_factory, set_id, make_item):
    report = orchestrator.synchronize(set_id, [make_item(p) for p in (1, 2, 3)])
    assert (report.created, report.updated, report.unchanged, report.archived) == (3, 0, 0, 0)
    assert report.errors == []
    assert report.summary() == "completed, 3 created / 0 updated / 0 archived / 0 errors"
    assert [(pos, order) for pos, order, *_ in questions(session_factory, set_id)] == [(1, 1), (2, 2), (3, 3)]
    with session_factory() as s:
        assert s.get(QuestionSet, set_id).question_count == 3
        assert VersionStore(s).find_invariant_violations() == []


def test_repeated_sync_is_idempotent(orchestrator, session_factory, set_id, make_item):
    batch = [make_item(p) for p in (1, 2)]
    orchestrator.synchronize(set_id, batch)
    versions_before = count(session_factory, QuestionVersion)
    report = orchestrator.synchronize(set_id, batch)
    assert (report.created, report.updated, report.archived, report.unchanged) == (0, 0, 0, 2)
    assert report.new_versions == 0
    assert count(session_factory, QuestionVersion) == versions_before


def test_unchanged_item(orchestrator, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1)])
    report = orchestrator.synchronize(set_id, [make_item(1)])
    assert (report.created, report.updated, report.unchanged) == (0, 0, 1)


def test_cosmetic_change_carries_explanation(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1, text="Which statement is correct?")])
    explain(session_factory, set_id, 1, "Hand-written rationale")

    report = orchestrator.synchronize(set_id, [make_item(1, text="Which  statement is correct? ")])
    assert report.updated == 1
    assert active(session_factory, set_id, 1) == (2, True, "Hand-written rationale")
    with session_factory() as s:
        rows = s.execute(select(QuestionVersion.version_number, QuestionVersion.is_active)
                         .order_by(QuestionVersion.version_number)).all()
    assert rows == [(1, False), (2, True)]


def test_answer_change_drops_explanation(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1, correct="B")])
    explain(session_factory, set_id, 1, "Hand-written rationale")
    report = orchestrator.synchronize(set_id, [make_item(1, correct="C")])
    assert report.updated == 1
    assert active(session_factory, set_id, 1) == (2, False, None)


def test_omitted_item_is_archived_without_new_version(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1), make_item(2)])
    report = orchestrator.synchronize(set_id, [make_item(2)])
    assert report.archived == 1
    rows = questions(session_factory, set_id)
    assert rows[0][2:4] == (True, ARCHIVED_SOURCE_REMOVED)
    assert active(session_factory, set_id, 1)[0] == 1
    with session_factory() as s:
        assert s.get(QuestionSet, set_id).question_count == 1


def test_reappearing_item_is_restored(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1), make_item(2)])
    orchestrator.synchronize(set_id, [make_item(2)])
    report = orchestrator.synchronize(set_id, [make_item(1, correct="C"), make_item(2)])
    assert report.restored == 1 and report.new_versions == 1
    assert questions(session_factory, set_id)[0][2] is False
    assert active(session_factory, set_id, 1)[0] == 2


def test_sync_while_locked_is_rejected_without_writes(orchestrator, lock, session_factory, set_id, make_item):
    with lock.hold():
        with pytest.raises(LockConflictError):
            orchestrator.synchronize(set_id, [make_item(1)])
    assert count(session_factory, Question) == 0
    assert count(session_factory, SyncRun) == 0


def test_concurrent_sync_of_another_set_is_rejected(orchestrator, source, session_factory, make_set, make_item):
    first = make_set(title="A", external_id="qs-a")
    second = make_set(title="B", external_id="qs-b")
    source.sets["qs-a"] = [make_item(1)]
    rejected = []

    def start_second(external_id):
        if external_id == "qs-a":
            try:
                orchestrator.synchronize(second, [make_item(1)])
            except LockConflictError as e:
                rejected.append(e)

    source.on_fetch = start_second
    report = orchestrator.synchronize(first)
    assert report.created == 1
    assert len(rejected) == 1
    assert [q[0] for q in questions(session_factory, second)] == []


def test_finalized_rejects_sync(orchestrator, lock, session_factory, set_id, make_item):
    lock.mark_finalized()
    with pytest.raises(SyncFinalizedError):
        orchestrator.synchronize(set_id, [make_item(1)])
    assert count(session_factory, Question) == 0


def test_fetch_failure_aborts_and_releases_lock(orchestrator, source, lock, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1)])
    source.sets["qs-ethics"] = SourceFetchError("HTTP 503", status_code=503)
    with pytest.raises(SourceFetchError):
        orchestrator.synchronize(set_id)
    assert lock.status().state is LockState.IDLE
    assert questions(session_factory, set_id)[0][2] is False
    with session_factory() as s:
        assert [r.status for r in s.scalars(select(SyncRun))] == ["done"]


def test_unknown_set(orchestrator, lock):
    with pytest.raises(QuestionSetNotFoundError):
        orchestrator.synchronize(999, [])
    assert lock.status().state is LockState.IDLE


def test_malformed_item_is_skipped_and_not_archived(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1), make_item(2)])
    report = orchestrator.synchronize(set_id, [make_item(1, correct=""), make_item(2), make_item(3)])
    assert report.created == 1 and report.archived == 0
    assert report.failed == 1
    assert report.errors[0].position == 1 and report.errors[0].question_set_id == set_id
    assert [q[2] for q in questions(session_factory, set_id)] == [False, False, False]
    with session_factory() as s:
        run = s.get(SyncRun, report.run_id)
        assert run.status == "done" and run.failed == 1 and run.errors[0]["position"] == 1


def test_malformed_item_with_string_position_is_not_archived(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1), make_item(2)])
    report = orchestrator.synchronize(set_id, [make_item(1), make_item("2", correct="")])
    assert report.archived == 0 and report.failed == 1
    assert report.errors[0].position == 2
    assert [q[2] for q in questions(session_factory, set_id)] == [False, False]
    assert active(session_factory, set_id, 2)[0] == 1


def test_failed_item_write_is_skipped_and_run_continues(orchestrator, lock, session_factory, set_id, make_item, monkeypatch):
    orchestrator.synchronize(set_id, [make_item(p) for p in (1, 2, 3)])
    add_version = VersionStore.add_version

    def failing_add_version(self, question_id, item, *args, **kwargs):
        if item.question_number == 2:
            raise ValueError("payload rejected by store")
        return add_version(self, question_id, item, *args, **kwargs)

    monkeypatch.setattr(VersionStore, "add_version", failing_add_version)
    report = orchestrator.synchronize(set_id, [make_item(p, correct="C") for p in (1, 2, 3)])

    assert report.updated == 2 and report.new_versions == 2
    assert [(e.position, e.loid, e.message) for e in report.errors] == [(2, "LO-2", "payload rejected by store")]
    assert [active(session_factory, set_id, p)[0] for p in (1, 2, 3)] == [2, 1, 2]
    assert lock.status().state is LockState.IDLE
    with session_factory() as s:
        assert VersionStore(s).find_invariant_violations(set_id) == []
        run = s.get(SyncRun, report.run_id)
        assert run.status == "done" and run.failed == 1


def test_invariant_violation_after_writes_is_surfaced(orchestrator, lock, session_factory, set_id, make_item, monkeypatch):
    orchestrator.synchronize(set_id, [make_item(1), make_item(2)])

    def deactivate_first(qs):
        object_session(qs[0]).execute(
            update(QuestionVersion).where(QuestionVersion.question_id == qs[0].id).values(is_active=False)
        )
        return []

    monkeypatch.setattr(orchestrator_module, "reconcile_positions", deactivate_first)
    with pytest.raises(InvariantViolationError) as exc:
        orchestrator.synchronize(set_id, [make_item(1), make_item(2)])

    with session_factory() as s:
        broken = s.scalar(select(Question.id).where(Question.source_position == 1))
        assert exc.value.question_ids == [broken]
        assert s.scalars(select(SyncRun.status).order_by(SyncRun.started_at)).all() == ["done", "failed"]
    assert lock.status().state is LockState.IDLE


def test_failure_to_record_run_keeps_original_error(orchestrator, lock, set_id, make_item, monkeypatch):
    def broken_positions(qs):
        raise RuntimeError("position repair failed")

    finish_run = orchestrator._finish_run

    def failing_finish_run(db, run_id, report, status, error=None):
        if status == "failed":
            raise OperationalError("UPDATE sync_runs", {}, Exception("connection lost"))
        return finish_run(db, run_id, report, status, error)

    monkeypatch.setattr(orchestrator_module, "reconcile_positions", broken_positions)
    monkeypatch.setattr(orchestrator, "_finish_run", failing_finish_run)
    with pytest.raises(RuntimeError, match="position repair failed"):
        orchestrator.synchronize(set_id, [make_item(1)])
    assert lock.status().state is LockState.IDLE


def test_manual_order_survives_sync(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(p) for p in (1, 2, 3)])
    with session_factory() as s:
        store = VersionStore(s)
        ids = [q.id for q in store.questions(set_id)]
        store.reorder(set_id, [ids[2], ids[0], ids[1]])
        s.commit()

    report = orchestrator.synchronize(set_id, [make_item(p, correct="C") for p in (1, 2, 3, 4)])
    assert report.updated == 3 and report.created == 1 and report.reordered == 0
    assert [(pos, order) for pos, order, *_ in questions(session_factory, set_id)] == [(1, 2), (2, 3), (3, 1), (4, 4)]


def test_loid_change_is_versioned_and_keeps_explanation(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1, loid="LO-A")])
    explain(session_factory, set_id, 1, "Rationale")
    report = orchestrator.synchronize(set_id, [make_item(1, loid="LO-B")])
    assert report.updated == 1
    assert questions(session_factory, set_id)[0][4] == "LO-B"
    assert active(session_factory, set_id, 1) == (2, True, "Rationale")


def test_items_are_fetched_from_source(orchestrator, source, session_factory, set_id, make_item):
    source.sets["qs-ethics"] = [make_item(1), make_item(2)]
    report = orchestrator.synchronize(set_id)
    assert report.created == 2
    assert source.calls == ["qs-ethics"]


def test_set_without_external_id_cannot_fetch(orchestrator, make_set):
    set_id = make_set(title="Local", external_id=None)
    with pytest.raises(SourceFetchError):
        orchestrator.synchronize(set_id)


def test_preview_writes_nothing(orchestrator, session_factory, set_id, make_item):
    orchestrator.synchronize(set_id, [make_item(1), make_item(2)])
    plan = orchestrator.preview(set_id, [make_item(1, correct="C"), make_item(3)])
    assert plan.counts() == {"created": 1, "updated": 1, "unchanged": 0, "archived": 1, "restored": 0}
    assert count(session_factory, QuestionVersion) == 2
    assert [q[2] for q in questions(session_factory, set_id)] == [False, False]


def test_final_refresh_disables_further_syncs(orchestrator, source, lock, make_set, make_item):
    make_set(title="A", external_id="qs-a")
    make_set(title="B", external_id="qs-b")
    make_set(title="Local", external_id=None)
    source.sets["qs-a"] = [make_item(1)]
    source.sets["qs-b"] = [make_item(1), make_item(2)]

    bulk = orchestrator.synchronize_all(final=True)
    assert bulk.finalized
    assert [r.created for r in bulk.reports] == [1, 2]
    assert lock.status().state is LockState.FINALIZED
    with pytest.raises(SyncFinalizedError):
        orchestrator.synchronize_all(final=True)


def test_final_refresh_not_recorded_when_a_set_fails(orchestrator, source, lock, make_set, make_item):
    make_set(title="A", external_id="qs-a")
    b = make_set(title="B", external_id="qs-b")
    source.sets["qs-a"] = [make_item(1)]

    bulk = orchestrator.synchronize_all(final=True)
    assert not bulk.finalized
    assert [f.question_set_id for f in bulk.fetch_failures] == [b]
    assert len(bulk.reports) == 1
    assert lock.status().state is LockState.IDLE
    assert bulk.to_dict()["totals"]["created"] == 1
