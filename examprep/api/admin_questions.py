from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from examprep.core.auth import require_roles, TokenData, ADMIN
from examprep.core.database import get_db
from examprep.core.errors import SyncError
from examprep.models.orm import ARCHIVED_BY_ADMIN, QuestionSet, QuestionVersion
from examprep.services.positions import active_order
from examprep.services.version_store import VersionStore, active_versions

router = APIRouter(dependencies=[Depends(require_roles(ADMIN))])


class QuestionSetIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    external_id: Optional[str] = None


class QuestionSetOut(BaseModel):
    id: int; title: str; description: Optional[str] = None; external_id: Optional[str] = None; question_count: int


class QuestionRow(BaseModel):
    id: int; source_position: int; display_order: int; display_order_manual: bool
    loid: str; is_archived: bool; archived_reason: Optional[str] = None
    version_number: Optional[int] = None; question_type: Optional[str] = None; question_text: Optional[str] = None


class VersionRow(BaseModel):
    id: int; version_number: int; is_active: bool; question_type: str; question_text: str
    topic_focus: Optional[str] = None; payload: dict; fingerprint: str; content_hash: str
    uses_static_explanation: bool; static_explanation: Optional[str] = None; created_by: str; created_at: str


class OrderIn(BaseModel):
    question_ids: List[int] = Field(min_length=1)


class ExplanationIn(BaseModel):
    static_explanation: Optional[str] = None


def _set_out(qs: QuestionSet) -> QuestionSetOut:
    return QuestionSetOut(id=qs.id, title=qs.title, description=qs.description,
                          external_id=qs.external_id, question_count=qs.question_count or 0)


def _version_row(v: QuestionVersion) -> VersionRow:
    return VersionRow(
        id=v.id, version_number=v.version_number, is_active=v.is_active, question_type=v.question_type,
        question_text=v.question_text, topic_focus=v.topic_focus, payload=v.payload or {},
        fingerprint=v.fingerprint, content_hash=v.content_hash,
        uses_static_explanation=v.uses_static_explanation, static_explanation=v.static_explanation,
        created_by=v.created_by, created_at=v.created_at.isoformat(),
    )


def _store(db: Session, question_id: int) -> VersionStore:
    store = VersionStore(db)
    try:
        store.get_question(question_id)
    except LookupError:
        raise HTTPException(404, "Question not found")
    return store


@router.post("/question-sets", response_model=QuestionSetOut)
def create_question_set(payload: QuestionSetIn, db: Session = Depends(get_db)):
    qs = QuestionSet(title=payload.title, description=payload.description,
                     external_id=payload.external_id, question_count=0)
    db.add(qs)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(409, "A question set with this external_id already exists")
    return _set_out(qs)


@router.get("/question-sets", response_model=List[QuestionSetOut])
def list_question_sets(db: Session = Depends(get_db)):
    return [_set_out(qs) for qs in db.scalars(select(QuestionSet).order_by(QuestionSet.id))]


@router.get("/question-sets/{question_set_id}/questions", response_model=List[QuestionRow])
def list_questions(question_set_id: int, include_archived: bool = True, db: Session = Depends(get_db)):
    if db.get(QuestionSet, question_set_id) is None:
        raise HTTPException(404, "Question set not found")
    store = VersionStore(db)
    questions = store.questions(question_set_id)
    if not include_archived:
        questions = active_order(questions)
    current = active_versions(db, [q.id for q in questions])
    rows = []
    for q in questions:
        v = current.get(q.id)
        rows.append(QuestionRow(
            id=q.id, source_position=q.source_position, display_order=q.display_order,
            display_order_manual=q.display_order_manual, loid=q.loid, is_archived=q.is_archived,
            archived_reason=q.archived_reason, version_number=v.version_number if v else None,
            question_type=v.question_type if v else None, question_text=v.question_text if v else None,
        ))
    return rows


@router.put("/question-sets/{question_set_id}/order")
def reorder_questions(question_set_id: int, payload: OrderIn, db: Session = Depends(get_db)):
    if db.get(QuestionSet, question_set_id) is None:
        raise HTTPException(404, "Question set not found")
    try:
        questions = VersionStore(db).reorder(question_set_id, payload.question_ids)
    except ValueError as e:
        db.rollback()
        raise HTTPException(400, str(e))
    db.commit()
    return {"ok": True, "order": [{"question_id": q.id, "display_order": q.display_order} for q in questions]}


@router.post("/questions/{question_id}/archive")
def archive_question(question_id: int, db: Session = Depends(get_db)):
    store = _store(db, question_id)
    q = store.archive_question(question_id, ARCHIVED_BY_ADMIN)
    store.refresh_question_count(q.question_set_id)
    db.commit()
    return {"question_id": q.id, "is_archived": q.is_archived, "archived_reason": q.archived_reason}


@router.post("/questions/{question_id}/restore")
def restore_question(question_id: int, db: Session = Depends(get_db)):
    store = _store(db, question_id)
    q = store.restore_question(question_id)
    store.refresh_question_count(q.question_set_id)
    db.commit()
    return {"question_id": q.id, "is_archived": q.is_archived}


@router.put("/questions/{question_id}/explanation", response_model=VersionRow)
def set_explanation(question_id: int, payload: ExplanationIn, db: Session = Depends(get_db)):
    store = _store(db, question_id)
    try:
        v = store.set_static_explanation(question_id, payload.static_explanation)
    except SyncError as e:
        raise HTTPException(e.http_status, str(e))
    db.commit()
    return _version_row(v)


@router.put("/questions/{question_id}", response_model=VersionRow)
def revise_question(question_id: int, content: Dict[str, Any],
                    user: TokenData = Depends(require_roles(ADMIN)), db: Session = Depends(get_db)):
    store = _store(db, question_id)
    try:
        v = store.revise(question_id, content, created_by=user.sub)
    except ValidationError as e:
        db.rollback()
        raise HTTPException(422, e.errors(include_url=False, include_context=False))
    except SyncError as e:
        db.rollback()
        raise HTTPException(e.http_status, str(e))
    db.commit()
    return _version_row(v)


@router.get("/questions/{question_id}/versions", response_model=List[VersionRow])
def list_versions(question_id: int, db: Session = Depends(get_db)):
    store = _store(db, question_id)
    return [_version_row(v) for v in store.versions(question_id)]
