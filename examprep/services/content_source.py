"""
Client for the external authoring system that owns question content.

Question sets are read from ``GET {base}/obj/question_set/{external_id}``.
The record's ``content`` field holds the set's questions, usually as a JSON
encoded string.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from examprep.core.config import settings
from examprep.core.errors import SourceFetchError

logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    def fetch_question_set(self, external_id: str) -> List[Dict[str, Any]]: ...


class HttpContentSource:
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, retries: Optional[int] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        if api_key is None and settings.CONTENT_SOURCE_API_KEY is not None:
            api_key = settings.CONTENT_SOURCE_API_KEY.get_secret_value()
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.retries = retries if retries is not None else settings.CONTENT_SOURCE_RETRIES
        self.client = httpx.Client(
            base_url=(base_url or settings.CONTENT_SOURCE_URL).rstrip("/"),
            headers=headers,
            timeout=timeout if timeout is not None else settings.CONTENT_SOURCE_TIMEOUT,
            transport=transport,
        )

    def close(self):
        self.client.close()

    def _get(self, path: str) -> httpx.Response:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.retries)),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                n = attempt.retry_state.attempt_number
                if n > 1:
                    logger.warning(f"Retrying content source request {path} (attempt {n})")
                return self.client.get(path)

    def fetch_question_set(self, external_id: str) -> List[Dict[str, Any]]:
        path = f"/obj/question_set/{external_id}"
        try:
            resp = self._get(path)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            logger.error(f"Content source returned {code} for question set {external_id}")
            raise SourceFetchError(f"Content source returned HTTP {code} for question set {external_id}", status_code=code) from e
        except httpx.HTTPError as e:
            logger.error(f"Content source unreachable for question set {external_id}: {e}")
            raise SourceFetchError(f"Content source unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError as e:
            raise SourceFetchError(f"Content source sent invalid JSON for question set {external_id}") from e
        questions = extract_questions(body)
        if questions is None:
            raise SourceFetchError(f"Question set {external_id} has no question content")
        logger.info(f"Fetched {len(questions)} questions for question set {external_id}")
        return questions


def extract_questions(body: Any) -> Optional[List[Dict[str, Any]]]:
    """Pull the ``questions`` list out of a question-set record, or None if it has none."""
    if not isinstance(body, dict):
        return None
    record = body.get("response", body)
    if not isinstance(record, dict):
        return None
    content = record.get("content")
    if isinstance(content, str):
        try:
            content = json.loads(content)
        except ValueError:
            return None
    if isinstance(content, list):
        return content
    if isinstance(content, dict) and isinstance(content.get("questions"), list):
        return content["questions"]
    return None
