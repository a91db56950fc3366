"""
Source question records and their type-specific payloads.

A payload is a tagged union keyed by ``question_type``; each variant carries
only the fields its question type uses.
"""
import enum
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class QuestionType(str, enum.Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    NUMERICAL_ENTRY = "numerical_entry"
    SHORT_ANSWER = "short_answer"
    SELECT_FROM_LIST = "select_from_list"
    DRAG_AND_DROP = "drag_and_drop"
    MULTIPLE_RESPONSE = "multiple_response"
    EITHER_OR = "either_or"


def _decode_json(v: Any) -> Any:
    # The authoring system sends structured answers either inline or as JSON text.
    if isinstance(v, str) and v.strip()[:1] in ("{", "["):
        try:
            return json.loads(v)
        except ValueError:
            raise ValueError("correct_answer is not valid JSON")
    return v


def _as_text(v: Any) -> Any:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    if isinstance(v, list):
        return [_as_text(i) for i in v]
    return v


class Blank(BaseModel):
    blank_id: int
    answer_choices: List[str] = Field(default_factory=list)
    correct_answer: str


class DropZone(BaseModel):
    zone_id: int
    zone_label: str


class MultipleChoicePayload(BaseModel):
    question_type: Literal["multiple_choice"] = "multiple_choice"
    answer_choices: List[str] = Field(default_factory=list)
    correct_answer: str = Field(min_length=1)

    @field_validator("answer_choices", "correct_answer", mode="before")
    @classmethod
    def coerce_text(cls, v):
        return _as_text(v)


class NumericalEntryPayload(BaseModel):
    question_type: Literal["numerical_entry"] = "numerical_entry"
    correct_answer: str = Field(min_length=1)
    acceptable_answers: List[str] = Field(default_factory=list)

    @field_validator("correct_answer", "acceptable_answers", mode="before")
    @classmethod
    def coerce_text(cls, v):
        return _as_text(v)


class ShortAnswerPayload(BaseModel):
    question_type: Literal["short_answer"] = "short_answer"
    correct_answer: str = Field(min_length=1)
    acceptable_answers: List[str] = Field(default_factory=list)
    case_sensitive: bool = False

    @field_validator("correct_answer", "acceptable_answers", mode="before")
    @classmethod
    def coerce_text(cls, v):
        return _as_text(v)


class SelectFromListPayload(BaseModel):
    question_type: Literal["select_from_list"] = "select_from_list"
    blanks: List[Blank] = Field(min_length=1)
    correct_answer: str = ""


class DragAndDropPayload(BaseModel):
    question_type: Literal["drag_and_drop"] = "drag_and_drop"
    answer_choices: List[str] = Field(default_factory=list)
    drop_zones: List[DropZone] = Field(min_length=1)
    correct_answer: Dict[str, List[str]]

    @field_validator("correct_answer", mode="before")
    @classmethod
    def decode_answer(cls, v):
        return _decode_json(v)


class MultipleResponsePayload(BaseModel):
    question_type: Literal["multiple_response"] = "multiple_response"
    answer_choices: List[str] = Field(default_factory=list)
    correct_answer: List[str] = Field(min_length=1)

    @field_validator("correct_answer", mode="before")
    @classmethod
    def decode_answer(cls, v):
        return _as_text(_decode_json(v))


class EitherOrPayload(BaseModel):
    question_type: Literal["either_or"] = "either_or"
    answer_choices: List[str] = Field(min_length=2, max_length=2)
    correct_answer: str = Field(min_length=1)


QuestionPayload = Annotated[
    Union[
        MultipleChoicePayload,
        NumericalEntryPayload,
        ShortAnswerPayload,
        SelectFromListPayload,
        DragAndDropPayload,
        MultipleResponsePayload,
        EitherOrPayload,
    ],
    Field(discriminator="question_type"),
]


class SourceItem(BaseModel):
    """One question as delivered by the authoring system."""

    question_number: int = Field(ge=1)
    loid: str = Field(min_length=1)
    topic_focus: Optional[str] = None
    question_text: str
    payload: QuestionPayload

    @model_validator(mode="before")
    @classmethod
    def split_payload(cls, data: Any) -> Any:
        """Accept the flat source record and move type-specific fields into ``payload``."""
        if not isinstance(data, dict) or "payload" in data:
            return data
        record = dict(data)
        qtype = record.pop("question_type", None) or record.pop("type", None) or QuestionType.MULTIPLE_CHOICE.value
        record.pop("type", None)
        payload = {"question_type": qtype}
        for key in ("answer_choices", "correct_answer", "acceptable_answers", "case_sensitive", "blanks", "drop_zones"):
            if key in record:
                value = record.pop(key)
                if value is not None:
                    payload[key] = value
        return {
            "question_number": record.get("question_number"),
            "loid": record.get("loid"),
            "topic_focus": record.get("topic_focus"),
            "question_text": record.get("question_text") or "",
            "payload": payload,
        }

    @property
    def question_type(self) -> str:
        return self.payload.question_type

    def content_dict(self) -> Dict[str, Any]:
        return self.payload.model_dump(mode="json")
