from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    BigInteger, Integer, String, Text, Boolean, ForeignKey, JSON, Float, DateTime,
    Index, UniqueConstraint, text,
)

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
PK = BigInteger().with_variant(Integer(), "sqlite")

SYNC_STATE_ID = 1
ARCHIVED_SOURCE_REMOVED = "source_removed"
ARCHIVED_BY_ADMIN = "admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase): pass


class QuestionSet(Base):
    __tablename__ = "question_sets"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    question_count: Mapped[int] = mapped_column(Integer, default=0)

    questions: Mapped[List["Question"]] = relationship(back_populates="question_set")


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        UniqueConstraint("question_set_id", "source_position", name="uq_questions_set_position"),
        Index("idx_questions_set", "question_set_id"),
    )
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    question_set_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("question_sets.id"))
    source_position: Mapped[int] = mapped_column(Integer)
    loid: Mapped[str] = mapped_column(String(100))
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    display_order_manual: Mapped[bool] = mapped_column(Boolean, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_modified: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    question_set: Mapped["QuestionSet"] = relationship(back_populates="questions")
    versions: Mapped[List["QuestionVersion"]] = relationship(
        back_populates="question", order_by="QuestionVersion.version_number"
    )


class QuestionVersion(Base):
    __tablename__ = "question_versions"
    __table_args__ = (
        UniqueConstraint("question_id", "version_number", name="uq_question_version"),
        # At most one active version per question, enforced by the database.
        Index(
            "uq_question_versions_one_active", "question_id", unique=True,
            postgresql_where=text("is_active"), sqlite_where=text("is_active = 1"),
        ),
        Index("idx_qv_question", "question_id"),
    )
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("questions.id"))
    version_number: Mapped[int] = mapped_column(Integer)
    fingerprint: Mapped[str] = mapped_column(String(64))
    content_hash: Mapped[str] = mapped_column(String(64))
    question_type: Mapped[str] = mapped_column(String(32))
    topic_focus: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    question_text: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    uses_static_explanation: Mapped[bool] = mapped_column(Boolean, default=False)
    static_explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), default="sync")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    question: Mapped["Question"] = relationship(back_populates="versions")


class SyncState(Base):
    __tablename__ = "sync_state"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    in_progress: Mapped[bool] = mapped_column(Boolean, default=False)
    finalized: Mapped[bool] = mapped_column(Boolean, default=False)
    lock_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    acquired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("idx_sr_question_set", "question_set_id"),
        Index("idx_sr_started", "started_at"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    question_set_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    kind: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16))
    created: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    unchanged: Mapped[int] = mapped_column(Integer, default=0)
    archived: Mapped[int] = mapped_column(Integer, default=0)
    restored: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    elapsed_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
