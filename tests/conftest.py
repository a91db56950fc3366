import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from examprep.core.errors import SourceFetchError
from examprep.models.orm import Base, QuestionSet
from examprep.services.orchestrator import SyncOrchestrator
from examprep.services.sync_lock import SyncLockGuard


class FakeSource:
    """In-memory content source keyed by external id."""

    def __init__(self):
        self.sets = {}
        self.calls = []
        self.on_fetch = None

    def fetch_question_set(self, external_id):
        self.calls.append(external_id)
        if self.on_fetch:
            self.on_fetch(external_id)
        data = self.sets.get(external_id)
        if isinstance(data, Exception):
            raise data
        if data is None:
            raise SourceFetchError(f"unknown question set {external_id}", status_code=404)
        return [dict(d) for d in data]


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'sync.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def lock(session_factory):
    return SyncLockGuard(session_factory, stale_after_seconds=0)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def orchestrator(session_factory, source, lock):
    return SyncOrchestrator(session_factory, source=source, lock=lock)


@pytest.fixture
def make_set(session_factory):
    def _make(title="Ethics", external_id="qs-ethics"):
        with session_factory() as s:
            qs = QuestionSet(title=title, external_id=external_id, question_count=0)
            s.add(qs); s.commit()
            return qs.id
    return _make


@pytest.fixture
def make_item():
    def _make(position, text=None, correct="B", loid=None, **extra):
        item = {
            "question_number": position,
            "loid": loid or f"LO-{position}",
            "topic_focus": "Professional standards",
            "question_type": "multiple_choice",
            "question_text": text or f"Question {position}: which statement is correct?",
            "answer_choices": ["A. First", "B. Second", "C. Third"],
            "correct_answer": correct,
        }
        item.update(extra)
        return item
    return _make
