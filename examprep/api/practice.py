from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional
from sqlalchemy.orm import Session
from examprep.core.auth import require_roles, ADMIN, STUDENT
from examprep.core.database import get_db
from examprep.models.orm import Question, QuestionSet
from examprep.services.answer_validation import check_version_answer
from examprep.services.positions import active_order
from examprep.services.version_store import VersionStore, active_versions

router = APIRouter(dependencies=[Depends(require_roles(STUDENT, ADMIN))])

_HIDDEN = ("correct_answer", "acceptable_answers")


class PracticeQuestion(BaseModel):
    id: int; display_order: int; loid: str; version_number: int
    question_type: str; question_text: str; topic_focus: Optional[str] = None; payload: dict


class AnswerIn(BaseModel):
    question_id: int
    answer: str


class AnswerOut(BaseModel):
    question_id: int; version_number: int; correct: bool; static_explanation: Optional[str] = None


def _public_payload(payload: dict) -> dict:
    out = {k: v for k, v in payload.items() if k not in _HIDDEN}
    if "blanks" in out:
        out["blanks"] = [{k: v for k, v in b.items() if k != "correct_answer"} for b in out["blanks"]]
    return out


def _require_set(db: Session, question_set_id: int) -> None:
    if db.get(QuestionSet, question_set_id) is None:
        raise HTTPException(404, "Question set not found")


@router.get("/question-sets/{question_set_id}/questions", response_model=List[PracticeQuestion])
def practice_questions(question_set_id: int, db: Session = Depends(get_db)):
    _require_set(db, question_set_id)
    questions = active_order(VersionStore(db).questions(question_set_id))
    current = active_versions(db, [q.id for q in questions])
    return [
        PracticeQuestion(
            id=q.id, display_order=q.display_order, loid=q.loid, version_number=current[q.id].version_number,
            question_type=current[q.id].question_type, question_text=current[q.id].question_text,
            topic_focus=current[q.id].topic_focus, payload=_public_payload(current[q.id].payload or {}),
        )
        for q in questions if q.id in current
    ]


@router.post("/question-sets/{question_set_id}/answers", response_model=AnswerOut)
def submit_answer(question_set_id: int, payload: AnswerIn, db: Session = Depends(get_db)):
    _require_set(db, question_set_id)
    q = db.get(Question, payload.question_id)
    if q is None or q.question_set_id != question_set_id or q.is_archived:
        raise HTTPException(404, "Question not found")
    v = VersionStore(db).active_version(q.id)
    correct = check_version_answer(v, payload.answer)
    return AnswerOut(
        question_id=q.id, version_number=v.version_number, correct=correct,
        static_explanation=v.static_explanation if v.uses_static_explanation else None,
    )
