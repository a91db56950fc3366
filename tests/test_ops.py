import json

from examprep import ops
from examprep.services.sync_lock import LockState, SyncLockGuard
from examprep.services.version_store import VersionStore


def run(capsys, session_factory, *argv):
    code = ops.main(list(argv), session_factory=session_factory)
    return code, json.loads(capsys.readouterr().out or "null")


def test_status_and_clear_lock(capsys, session_factory):
    guard = SyncLockGuard(session_factory, stale_after_seconds=0)
    guard.acquire()
    code, out = run(capsys, session_factory, "status")
    assert code == 0 and out["state"] == "in_progress"
    code, out = run(capsys, session_factory, "clear-lock")
    assert out == {"released": True}
    assert guard.status().state is LockState.IDLE


def test_reset_final_requires_confirmation(capsys, session_factory):
    guard = SyncLockGuard(session_factory, stale_after_seconds=0)
    guard.mark_finalized()
    code, out = run(capsys, session_factory, "reset-final")
    assert code == 2 and out is None
    assert guard.status().finalized
    code, out = run(capsys, session_factory, "reset-final", "--yes")
    assert code == 0 and out == {"reset": True}
    assert guard.status().state is LockState.IDLE


def test_check_invariant(capsys, session_factory, orchestrator, make_set, make_item):
    set_id = make_set()
    orchestrator.synchronize(set_id, [make_item(1), make_item(2)])
    code, out = run(capsys, session_factory, "check-invariant")
    assert code == 0 and out == {"violations": []}

    with session_factory() as s:
        store = VersionStore(s)
        q = store.questions(set_id)[0]
        store.active_version(q.id).is_active = False
        s.commit()
        broken = q.id
    code, out = run(capsys, session_factory, "check-invariant", "--question-set", str(set_id))
    assert code == 1 and out == {"violations": [broken]}
