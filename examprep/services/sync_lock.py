"""
Process-wide synchronization lock and the one-time final-refresh ratchet.

State lives in the single ``sync_state`` row so it survives restarts and is
shared by every API process and worker. Acquisition is a compare-and-set
``UPDATE ... WHERE in_progress = false AND finalized = false``; the database
decides which of two simultaneous callers wins. Callers never wait: a busy or
finalized lock is reported immediately.
"""
import enum
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from examprep.core.config import settings
from examprep.core.database import SessionLocal
from examprep.core.errors import LockConflictError, SyncFinalizedError
from examprep.models.orm import SYNC_STATE_ID, SyncState, utcnow

logger = logging.getLogger(__name__)


class LockState(str, enum.Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    FINALIZED = "finalized"


@dataclass
class LockStatus:
    state: LockState
    in_progress: bool
    finalized: bool
    acquired_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "in_progress": self.in_progress,
            "finalized": self.finalized,
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back without tzinfo.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SyncLockGuard:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 stale_after_seconds: Optional[int] = None):
        self.session_factory = session_factory
        if stale_after_seconds is None:
            stale_after_seconds = settings.SYNC_LOCK_STALE_AFTER_SECONDS
        self.stale_after_seconds = stale_after_seconds

    def _state(self, db: Session) -> SyncState:
        state = db.get(SyncState, SYNC_STATE_ID)
        if state is None:
            db.add(SyncState(id=SYNC_STATE_ID, in_progress=False, finalized=False, updated_at=utcnow()))
            try:
                db.commit()
            except IntegrityError:
                # another process created it first
                db.rollback()
            state = db.get(SyncState, SYNC_STATE_ID)
        return state

    def acquire(self) -> str:
        token = uuid.uuid4().hex
        with self.session_factory() as db:
            self._state(db)
            now = utcnow()
            res = db.execute(
                update(SyncState)
                .where(SyncState.id == SYNC_STATE_ID, SyncState.in_progress.is_(False), SyncState.finalized.is_(False))
                .values(in_progress=True, lock_token=token, acquired_at=now, updated_at=now)
            )
            if res.rowcount == 1:
                db.commit()
                logger.info(f"Sync lock acquired ({token[:8]})")
                return token
            db.rollback()

            state = db.get(SyncState, SYNC_STATE_ID)
            db.refresh(state)
            if state.finalized:
                raise SyncFinalizedError()
            if self._is_stale(state, now):
                res = db.execute(
                    update(SyncState)
                    .where(SyncState.id == SYNC_STATE_ID, SyncState.in_progress.is_(True),
                           SyncState.finalized.is_(False), SyncState.lock_token == state.lock_token)
                    .values(lock_token=token, acquired_at=now, updated_at=now)
                )
                if res.rowcount == 1:
                    db.commit()
                    logger.warning(f"Took over stale sync lock acquired at {state.acquired_at}")
                    return token
                db.rollback()
            raise LockConflictError()

    def _is_stale(self, state: SyncState, now: datetime) -> bool:
        if not self.stale_after_seconds or state.acquired_at is None:
            return False
        return now - _aware(state.acquired_at) > timedelta(seconds=self.stale_after_seconds)

    def release(self, token: str) -> bool:
        with self.session_factory() as db:
            res = db.execute(
                update(SyncState)
                .where(SyncState.id == SYNC_STATE_ID, SyncState.lock_token == token)
                .values(in_progress=False, lock_token=None, updated_at=utcnow())
            )
            db.commit()
        if res.rowcount != 1:
            logger.warning(f"Sync lock {token[:8]} was no longer held at release")
            return False
        logger.info(f"Sync lock released ({token[:8]})")
        return True

    def mark_finalized(self, token: Optional[str] = None) -> None:
        """Set the permanent ratchet.

        With the holder's token the current run is finalized and the lock is
        still released normally afterwards. Without one the lock must be idle.
        """
        now = utcnow()
        with self.session_factory() as db:
            self._state(db)
            stmt = update(SyncState).where(SyncState.id == SYNC_STATE_ID, SyncState.finalized.is_(False))
            if token is not None:
                stmt = stmt.where(SyncState.lock_token == token, SyncState.in_progress.is_(True))
            else:
                stmt = stmt.where(SyncState.in_progress.is_(False))
            res = db.execute(stmt.values(finalized=True, finalized_at=now, updated_at=now))
            if res.rowcount == 1:
                db.commit()
                logger.info("Final refresh recorded; synchronization is now disabled")
                return
            db.rollback()
            state = db.get(SyncState, SYNC_STATE_ID)
            db.refresh(state)
            if state.finalized:
                raise SyncFinalizedError()
            raise LockConflictError("Cannot finalize while another synchronization holds the lock")

    @contextmanager
    def hold(self) -> Iterator[str]:
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def status(self) -> LockStatus:
        with self.session_factory() as db:
            s = self._state(db)
            if s.finalized:
                state = LockState.FINALIZED
            elif s.in_progress:
                state = LockState.IN_PROGRESS
            else:
                state = LockState.IDLE
            return LockStatus(
                state=state, in_progress=s.in_progress, finalized=s.finalized,
                acquired_at=_aware(s.acquired_at), finalized_at=_aware(s.finalized_at),
            )

    # ---- operator-only ----

    def force_release(self) -> bool:
        """Clear a lock left behind by a crashed run. Returns whether one was held."""
        with self.session_factory() as db:
            res = db.execute(
                update(SyncState)
                .where(SyncState.id == SYNC_STATE_ID, SyncState.in_progress.is_(True))
                .values(in_progress=False, lock_token=None, updated_at=utcnow())
            )
            db.commit()
        if res.rowcount:
            logger.warning("Sync lock force-released by operator")
        return bool(res.rowcount)

    def reset_finalized(self) -> bool:
        with self.session_factory() as db:
            res = db.execute(
                update(SyncState)
                .where(SyncState.id == SYNC_STATE_ID, SyncState.finalized.is_(True))
                .values(finalized=False, finalized_at=None, updated_at=utcnow())
            )
            db.commit()
        if res.rowcount:
            logger.warning("Final-refresh flag reset by operator")
        return bool(res.rowcount)
