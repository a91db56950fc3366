import logging
from rq import get_current_job
from examprep.core.errors import LockConflictError, SyncFinalizedError
from examprep.services.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def _update_meta(job, **meta):
    if job is None:
        return
    job.meta.update(meta); job.save_meta()


def sync_question_set_job(question_set_id, orchestrator=None):
    job = get_current_job()
    _update_meta(job, state="running", question_set_id=question_set_id)
    orchestrator = orchestrator or SyncOrchestrator()
    try:
        report = orchestrator.synchronize(question_set_id)
    except LockConflictError:
        _update_meta(job, state="locked")
        logger.warning(f"Sync job for question set {question_set_id} rejected: lock held")
        return {"state": "locked"}
    except SyncFinalizedError:
        _update_meta(job, state="finalized")
        return {"state": "finalized"}
    except Exception as e:
        _update_meta(job, state="failed", error=str(e))
        raise
    result = report.to_dict()
    _update_meta(job, state="done", run_id=report.run_id, summary=report.summary())
    return result


def sync_all_job(final=False, orchestrator=None):
    job = get_current_job()
    _update_meta(job, state="running", final=final)
    orchestrator = orchestrator or SyncOrchestrator()
    try:
        bulk = orchestrator.synchronize_all(final=final)
    except LockConflictError:
        _update_meta(job, state="locked")
        return {"state": "locked"}
    except SyncFinalizedError:
        _update_meta(job, state="finalized")
        return {"state": "finalized"}
    except Exception as e:
        _update_meta(job, state="failed", error=str(e))
        raise
    result = bulk.to_dict()
    _update_meta(job, state="done", finalized=bulk.finalized, sets_failed=len(bulk.fetch_failures))
    return result
