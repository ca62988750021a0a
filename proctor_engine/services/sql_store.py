"""
SQL Session Store - SQLAlchemy async implementation of SessionStore

Atomicity comes from the database, not from the caller:
- violations: UPDATE ... SET violation_count = violation_count + 1 ... RETURNING,
  in the same transaction as the ledger INSERT
- status: UPDATE ... WHERE status = <observed> (compare-and-set)
- answers: INSERT ... ON CONFLICT (session_id, question_id) DO UPDATE
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..models.orm import Answer, StudentSession, Violation
from ..models.session import (
    NON_TERMINAL_STATUSES,
    AnswerRecord,
    SessionRecord,
    SessionStatus,
    SubmissionType,
    ViolationRecord,
    ViolationResult,
)
from .database import create_engine, create_session_factory, init_models
from .errors import SessionNotActive, SessionNotFound, StoreUnavailable
from .session_store import SessionStore

logger = logging.getLogger(__name__)

_LIVE_VALUES = [status.value for status in NON_TERMINAL_STATUSES]

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class SqlSessionStore(SessionStore):
    """
    Session store backed by PostgreSQL (asyncpg) or SQLite (aiosqlite).

    Every primitive runs in its own short transaction; SQLAlchemy errors
    are logged and re-raised as StoreUnavailable.
    """

    def __init__(self, db_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_engine(db_url)
        self._session_factory = create_session_factory(self.engine)

    async def start(self) -> None:
        await init_models(self.engine)

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("[DB] Engine disposed")

    @staticmethod
    async def _raise_missing_or_inactive(db, session_id: str):
        status = await db.scalar(
            select(StudentSession.status).where(StudentSession.id == session_id)
        )
        if status is None:
            raise SessionNotFound(session_id)
        raise SessionNotActive(session_id, status)

    # ========================================================================
    # Sessions
    # ========================================================================

    async def open_session(
        self,
        user_id: str,
        exam_id: str,
        max_violations: int,
        time_remaining_seconds: int,
        client_address: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> SessionRecord:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    existing = await self._find_live(db, user_id, exam_id)
                    if existing is not None:
                        return existing.to_record()

                    row = StudentSession(
                        user_id=user_id,
                        exam_id=exam_id,
                        status=SessionStatus.ACTIVE.value,
                        violation_count=0,
                        max_violations=max_violations,
                        time_remaining_seconds=time_remaining_seconds,
                        start_time=datetime.utcnow(),
                        client_address=client_address,
                    )
                    if session_id:
                        row.id = session_id
                    db.add(row)
                    await db.flush()
                    logger.info(f"[DB] Opened session {row.id} user={user_id} exam={exam_id}")
                    return row.to_record()
        except IntegrityError as e:
            # A concurrent open won the live-session index; hand back its row.
            winner = await self._load_live(user_id, exam_id)
            if winner is None:
                logger.error(f"[DB] Failed to open session: {e}")
                raise StoreUnavailable(str(e)) from e
            logger.info(f"[DB] Reusing live session {winner.id} user={user_id} exam={exam_id}")
            return winner
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to open session: {e}")
            raise StoreUnavailable(str(e)) from e

    @staticmethod
    async def _find_live(db, user_id: str, exam_id: str) -> Optional[StudentSession]:
        return await db.scalar(
            select(StudentSession)
            .where(
                StudentSession.user_id == user_id,
                StudentSession.exam_id == exam_id,
                StudentSession.status.in_(_LIVE_VALUES),
            )
            .with_for_update()
        )

    async def _load_live(self, user_id: str, exam_id: str) -> Optional[SessionRecord]:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    row = await self._find_live(db, user_id, exam_id)
                    return row.to_record() if row else None
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to load live session for user={user_id} exam={exam_id}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        try:
            async with self._session_factory() as db:
                row = await db.get(StudentSession, session_id)
                return row.to_record() if row else None
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to load session {session_id}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def list_live_sessions(self, exam_id: Optional[str] = None) -> List[SessionRecord]:
        query = select(StudentSession).where(StudentSession.status.in_(_LIVE_VALUES))
        if exam_id:
            query = query.where(StudentSession.exam_id == exam_id)
        query = query.order_by(StudentSession.start_time.desc())
        try:
            async with self._session_factory() as db:
                rows = (await db.scalars(query)).all()
                return [row.to_record() for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to list live sessions: {e}")
            raise StoreUnavailable(str(e)) from e

    # ========================================================================
    # Violation ledger
    # ========================================================================

    async def record_violation(
        self,
        session_id: str,
        event_type: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> ViolationResult:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    row = (await db.execute(
                        update(StudentSession)
                        .where(
                            StudentSession.id == session_id,
                            StudentSession.status.in_(_LIVE_VALUES),
                        )
                        .values(
                            violation_count=StudentSession.violation_count + 1,
                            updated_at=datetime.utcnow(),
                        )
                        .returning(StudentSession.violation_count, StudentSession.max_violations)
                        .execution_options(synchronize_session=False)
                    )).first()

                    if row is None:
                        await self._raise_missing_or_inactive(db, session_id)

                    db.add(Violation(
                        session_id=session_id,
                        event_type=event_type,
                        description=description,
                        metadata_json=metadata,
                        timestamp=datetime.utcnow(),
                    ))
                return ViolationResult(violation_count=row[0], max_violations=row[1])
        except SQLAlchemyError as e:
            logger.error(f"[DB] Violation write failed for {session_id}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def list_violations(self, session_id: str) -> List[ViolationRecord]:
        try:
            async with self._session_factory() as db:
                rows = (await db.scalars(
                    select(Violation)
                    .where(Violation.session_id == session_id)
                    .order_by(Violation.id)
                )).all()
                return [row.to_record() for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to list violations for {session_id}: {e}")
            raise StoreUnavailable(str(e)) from e

    # ========================================================================
    # Status / timer
    # ========================================================================

    async def transition_status(
        self,
        session_id: str,
        target: SessionStatus,
        expected: Iterable[SessionStatus],
        submission_type: Optional[SubmissionType] = None
    ) -> Optional[Tuple[SessionStatus, SessionRecord]]:
        expected = frozenset(expected)
        now = datetime.utcnow()
        values = {"status": target.value, "updated_at": now}
        if target.is_terminal:
            values["end_time"] = now
        if target == SessionStatus.SUBMITTED:
            values["submission_type"] = (submission_type or SubmissionType.MANUAL).value

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    current = await db.scalar(
                        select(StudentSession.status)
                        .where(StudentSession.id == session_id)
                        .with_for_update()
                    )
                    if current is None:
                        raise SessionNotFound(session_id)
                    previous = SessionStatus(current)
                    if previous not in expected:
                        return None

                    result = await db.execute(
                        update(StudentSession)
                        .where(
                            StudentSession.id == session_id,
                            StudentSession.status == previous.value,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        return None

                    row = await db.get(StudentSession, session_id)
                    return previous, row.to_record()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Status write {target.value} failed for {session_id}: {e}")
            raise StoreUnavailable(str(e)) from e

    async def update_time_remaining(self, session_id: str, seconds: int) -> SessionRecord:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(StudentSession)
                        .where(
                            StudentSession.id == session_id,
                            StudentSession.status.in_(_LIVE_VALUES),
                        )
                        .values(time_remaining_seconds=seconds, updated_at=datetime.utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        await self._raise_missing_or_inactive(db, session_id)

                    row = await db.get(StudentSession, session_id)
                    return row.to_record()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Timer write failed for {session_id}: {e}")
            raise StoreUnavailable(str(e)) from e

    # ========================================================================
    # Answers
    # ========================================================================

    async def upsert_answer(
        self,
        session_id: str,
        question_id: str,
        selected_answer: Optional[str]
    ) -> AnswerRecord:
        now = datetime.utcnow()
        insert_fn = _UPSERT_DIALECTS.get(self.engine.dialect.name)
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    status = await db.scalar(
                        select(StudentSession.status)
                        .where(StudentSession.id == session_id)
                        .with_for_update()
                    )
                    if status is None:
                        raise SessionNotFound(session_id)
                    if status != SessionStatus.ACTIVE.value:
                        raise SessionNotActive(session_id, status)

                    if insert_fn is not None:
                        stmt = insert_fn(Answer).values(
                            session_id=session_id,
                            question_id=question_id,
                            selected_answer=selected_answer,
                            saved_at=now,
                        )
                        stmt = stmt.on_conflict_do_update(
                            index_elements=["session_id", "question_id"],
                            set_={
                                "selected_answer": stmt.excluded.selected_answer,
                                "saved_at": stmt.excluded.saved_at,
                            },
                            where=Answer.selected_answer.is_distinct_from(stmt.excluded.selected_answer),
                        )
                        await db.execute(stmt)
                    else:
                        await self._upsert_answer_generic(db, session_id, question_id, selected_answer, now)

                    row = await db.scalar(
                        select(Answer)
                        .where(Answer.session_id == session_id, Answer.question_id == question_id)
                        .execution_options(populate_existing=True)
                    )
                    return row.to_record()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Answer upsert failed for {session_id}/{question_id}: {e}")
            raise StoreUnavailable(str(e)) from e

    @staticmethod
    async def _upsert_answer_generic(db, session_id, question_id, selected_answer, now):
        # Dialects without ON CONFLICT; the session row lock serializes writers
        row = await db.scalar(
            select(Answer).where(Answer.session_id == session_id, Answer.question_id == question_id)
        )
        if row is None:
            db.add(Answer(
                session_id=session_id,
                question_id=question_id,
                selected_answer=selected_answer,
                saved_at=now,
            ))
        elif row.selected_answer != selected_answer:
            row.selected_answer = selected_answer
            row.saved_at = now
        await db.flush()

    async def get_answers(self, session_id: str) -> List[AnswerRecord]:
        try:
            async with self._session_factory() as db:
                rows = (await db.scalars(
                    select(Answer)
                    .where(Answer.session_id == session_id)
                    .order_by(Answer.id)
                )).all()
                return [row.to_record() for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to load answers for {session_id}: {e}")
            raise StoreUnavailable(str(e)) from e
