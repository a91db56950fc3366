from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select
from rq.job import Job
from rq.exceptions import NoSuchJobError
from examprep.core.auth import require_roles, ADMIN
from examprep.core.config import settings
from examprep.core.database import get_db
from examprep.core.errors import SyncError
from examprep.jobs.queue import get_queue, redis
from examprep.jobs.sync_job import sync_all_job, sync_question_set_job
from examprep.models.orm import SyncRun
from examprep.services.orchestrator import SyncOrchestrator

router = APIRouter(dependencies=[Depends(require_roles(ADMIN))])


def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator()


def http_error(e: SyncError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail={"reason": e.reason, "message": str(e)})


class SyncRequest(BaseModel):
    questions: Optional[List[Dict[str, Any]]] = None


class RunRow(BaseModel):
    id: str; question_set_id: Optional[int] = None; kind: str; status: str
    created: int; updated: int; unchanged: int; archived: int; restored: int; failed: int
    errors: list = []; error: Optional[str] = None
    started_at: str; finished_at: Optional[str] = None; elapsed_seconds: Optional[float] = None


def _run_row(r: SyncRun) -> RunRow:
    return RunRow(
        id=r.id, question_set_id=r.question_set_id, kind=r.kind, status=r.status,
        created=r.created or 0, updated=r.updated or 0, unchanged=r.unchanged or 0,
        archived=r.archived or 0, restored=r.restored or 0, failed=r.failed or 0,
        errors=r.errors or [], error=r.error,
        started_at=r.started_at.isoformat(), finished_at=r.finished_at.isoformat() if r.finished_at else None,
        elapsed_seconds=r.elapsed_seconds,
    )


@router.post("/sync/question-sets/{question_set_id}")
def trigger_sync(question_set_id: int, payload: Optional[SyncRequest] = None,
                 orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    items = payload.questions if payload else None
    try:
        report = orchestrator.synchronize(question_set_id, items)
    except SyncError as e:
        raise http_error(e)
    return report.to_dict()


@router.get("/sync/question-sets/{question_set_id}/preview")
def preview_sync(question_set_id: int, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        plan = orchestrator.preview(question_set_id)
    except SyncError as e:
        raise http_error(e)
    return plan.to_dict()


@router.post("/sync/question-sets/{question_set_id}/start")
def start_sync(question_set_id: int, queue=Depends(get_queue)):
    job = queue.enqueue(sync_question_set_job, question_set_id, job_timeout=settings.SYNC_JOB_TIMEOUT)
    return {"job_id": job.get_id(), "question_set_id": question_set_id}


class JobStatus(BaseModel):
    state: str
    question_set_id: Optional[int] = None
    run_id: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    final: Optional[bool] = None
    finalized: Optional[bool] = None
    result: Optional[dict] = None


@router.get("/sync/jobs/{job_id}", response_model=JobStatus)
def job_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError:
        raise HTTPException(404, "Job not found")
    meta = job.meta or {}
    state = meta.get("state") or job.get_status()
    return JobStatus(
        state=getattr(state, "value", state), question_set_id=meta.get("question_set_id"), run_id=meta.get("run_id"),
        summary=meta.get("summary"), error=meta.get("error"),
        final=meta.get("final"), finalized=meta.get("finalized"),
        result=job.result if state == "done" else None,
    )


@router.post("/sync/all")
def sync_all(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.synchronize_all(final=False).to_dict()
    except SyncError as e:
        raise http_error(e)


@router.post("/sync/final")
def run_final_refresh(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.synchronize_all(final=True).to_dict()
    except SyncError as e:
        raise http_error(e)


@router.post("/sync/all/start")
def start_sync_all(queue=Depends(get_queue)):
    job = queue.enqueue(sync_all_job, False, job_timeout=settings.SYNC_JOB_TIMEOUT)
    return {"job_id": job.get_id(), "final": False}


@router.post("/sync/final/start")
def start_final_refresh(queue=Depends(get_queue)):
    job = queue.enqueue(sync_all_job, True, job_timeout=settings.SYNC_JOB_TIMEOUT)
    return {"job_id": job.get_id(), "final": True}


@router.get("/sync/status")
def sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator), db: Session = Depends(get_db)):
    status = orchestrator.lock.status().to_dict()
    last = db.scalars(select(SyncRun).order_by(SyncRun.started_at.desc()).limit(1)).first()
    status["last_run"] = _run_row(last).model_dump() if last else None
    return status


@router.get("/sync/runs", response_model=List[RunRow])
def list_runs(question_set_id: Optional[int] = None, page: int = Query(1, ge=1),
              page_size: int = Query(25, ge=1, le=200), db: Session = Depends(get_db)):
    stmt = select(SyncRun)
    if question_set_id is not None:
        stmt = stmt.where(SyncRun.question_set_id == question_set_id)
    stmt = stmt.order_by(SyncRun.started_at.desc()).limit(page_size).offset((page - 1) * page_size)
    return [_run_row(r) for r in db.scalars(stmt)]
