"""
Answer checking for every question type.

``validate_answer`` never raises: composite answers arrive as JSON text from
the practice client, and anything that cannot be decoded is simply wrong.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from examprep.models.payloads import QuestionType

logger = logging.getLogger(__name__)

NUMERIC_TOLERANCE = 1e-4
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


@dataclass
class ValidationOptions:
    case_sensitive: bool = False
    acceptable_answers: List[str] = field(default_factory=list)
    blanks: List[Dict[str, Any]] = field(default_factory=list)
    drop_zones: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ValidationOptions":
        return cls(
            case_sensitive=bool(payload.get("case_sensitive", False)),
            acceptable_answers=list(payload.get("acceptable_answers") or []),
            blanks=list(payload.get("blanks") or []),
            drop_zones=list(payload.get("drop_zones") or []),
        )


def _norm(value: Any, case_sensitive: bool = False) -> str:
    if value is None:
        return ""
    s = str(value).strip()
    return s if case_sensitive else s.lower()


def _loads(value: Any, default: Any) -> Any:
    if not isinstance(value, str):
        return value if value is not None else default
    try:
        return json.loads(value)
    except ValueError:
        return default


def _parse_number(value: str) -> Optional[float]:
    m = _NUMBER_RE.match(value.strip())
    return float(m.group(0)) if m else None


def _same_set(a: Any, b: Any, case_sensitive: bool = False) -> bool:
    if not isinstance(a, list) or not isinstance(b, list) or len(a) != len(b):
        return False
    return {_norm(x, case_sensitive) for x in a} == {_norm(x, case_sensitive) for x in b}


def _multiple_choice(user: str, correct: Any, opts: ValidationOptions) -> bool:
    return _norm(user) == _norm(correct)


def _numerical_entry(user: str, correct: Any, opts: ValidationOptions) -> bool:
    if _norm(user) == _norm(correct):
        return True
    if opts.acceptable_answers:
        return any(_norm(a) == _norm(user) for a in opts.acceptable_answers)
    u, c = _parse_number(user), _parse_number(str(correct))
    if u is None or c is None:
        return False
    return abs(u - c) < NUMERIC_TOLERANCE


def _short_answer(user: str, correct: Any, opts: ValidationOptions) -> bool:
    cs = opts.case_sensitive
    answer = _norm(user, cs)
    if user.startswith("{"):
        blanks = _loads(user, {})
        if isinstance(blanks, dict) and blanks:
            answer = ", ".join(_norm(v, cs) for v in blanks.values())
    if answer == _norm(correct, cs):
        return True
    return any(_norm(a, cs) == answer for a in opts.acceptable_answers)


def _select_from_list(user: str, correct: Any, opts: ValidationOptions) -> bool:
    if opts.blanks:
        if user.startswith("{"):
            chosen = _loads(user, {})
            if not isinstance(chosen, dict):
                return False
            return all(chosen.get(str(b["blank_id"])) == b["correct_answer"] for b in opts.blanks)
        if len(opts.blanks) == 1:
            return user == opts.blanks[0]["correct_answer"]
    return user == correct


def _zone_key(key: str) -> str:
    key = str(key)
    return key if key.startswith("zone_") else f"zone_{key}"


def _zones(value: Any) -> Dict[str, list]:
    if not isinstance(value, dict):
        return {}
    return {_zone_key(k): (v if isinstance(v, list) else []) for k, v in value.items()}


def _drag_and_drop(user: str, correct: Any, opts: ValidationOptions) -> bool:
    if not isinstance(correct, (str, dict)):
        logger.error(f"Invalid drag and drop correct answer: {correct!r}")
        return False
    user_zones = _zones(_loads(user, {}))
    correct_zones = _zones(_loads(correct, {}))
    for zone in set(user_zones) | set(correct_zones):
        if not _same_set(user_zones.get(zone, []), correct_zones.get(zone, [])):
            logger.debug(f"Zone mismatch in {zone}")
            return False
    return True


def _multiple_response(user: str, correct: Any, opts: ValidationOptions) -> bool:
    selected = _loads(user, [])
    if isinstance(correct, str):
        expected = _loads(correct, []) if correct.startswith("[") else [correct]
    elif isinstance(correct, list):
        expected = correct
    else:
        logger.error(f"Invalid multiple response correct answer: {correct!r}")
        return False
    return _same_set(selected, expected)


_VALIDATORS: Dict[str, Callable[[str, Any, ValidationOptions], bool]] = {
    QuestionType.MULTIPLE_CHOICE.value: _multiple_choice,
    QuestionType.NUMERICAL_ENTRY.value: _numerical_entry,
    QuestionType.SHORT_ANSWER.value: _short_answer,
    QuestionType.SELECT_FROM_LIST.value: _select_from_list,
    QuestionType.DRAG_AND_DROP.value: _drag_and_drop,
    QuestionType.MULTIPLE_RESPONSE.value: _multiple_response,
    QuestionType.EITHER_OR.value: _multiple_choice,
}


def validate_answer(user_answer: Optional[str], correct_answer: Any, question_type: str,
                    options: Optional[ValidationOptions] = None) -> bool:
    if not isinstance(user_answer, str) or not user_answer.strip():
        return False
    opts = options or ValidationOptions()
    validator = _VALIDATORS.get(question_type)
    if validator is None:
        logger.debug(f"Unknown question type {question_type!r}, using exact comparison")
        return user_answer == correct_answer
    try:
        return validator(user_answer, correct_answer, opts)
    except (TypeError, KeyError, AttributeError, ValueError) as e:
        logger.warning(f"Answer validation failed for {question_type}: {e}")
        return False


def check_version_answer(version, user_answer: Optional[str]) -> bool:
    """Validate ``user_answer`` against a stored question version."""
    payload = version.payload or {}
    return validate_answer(
        user_answer, payload.get("correct_answer"), version.question_type,
        ValidationOptions.from_payload(payload),
    )
