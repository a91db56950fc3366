"""
Content fingerprints for question versions.

Two hashes are kept per version:

* the *source fingerprint* covers every field exactly as the authoring system
  sent it, and decides whether a new version is needed at all;
* the *content hash* covers only the normalized, answer-bearing fields, and
  decides whether a hand-written explanation still applies to a new version.
"""
import hashlib
import html
import json
import re
import unicodedata
from typing import Any, Dict, Optional

from examprep.models.payloads import SourceItem

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")
_PUNCT = str.maketrans({
    "‘": "'", "’": "'", "“": '"', "”": '"',
    "–": "-", "—": "-", "…": "...",
})


def normalize_text(text: Optional[str]) -> str:
    """Strip markup and typographic noise so cosmetic edits hash identically.

    Case is kept: for case-sensitive short answers it is part of the content.
    """
    if not text:
        return ""
    normalized = unicodedata.normalize("NFKC", str(text))
    normalized = html.unescape(normalized)
    normalized = _TAG_RE.sub("", normalized)
    normalized = normalized.translate(_PUNCT)
    return _WS_RE.sub(" ", normalized).strip()


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return normalize_text(value)
    if isinstance(value, list):
        return [_normalize_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _normalize_value(v) for k, v in value.items()}
    return value


def _digest(data: Any) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def content_fingerprint(question_type: str, question_text: str, payload: Dict[str, Any]) -> str:
    content = {k: v for k, v in payload.items() if k != "question_type"}
    return _digest({
        "question_type": question_type,
        "question_text": normalize_text(question_text),
        "content": _normalize_value(content),
    })


def source_fingerprint(item: SourceItem) -> str:
    return _digest({
        "loid": item.loid,
        "topic_focus": item.topic_focus,
        "question_text": item.question_text,
        "payload": item.content_dict(),
    })


def item_fingerprints(item: SourceItem):
    """Return ``(source_fingerprint, content_hash)`` for a source item."""
    return (
        source_fingerprint(item),
        content_fingerprint(item.question_type, item.question_text, item.content_dict()),
    )
