"""
Answer Autosave Store

Latest value per (session, question); last arrival wins and replaying an
identical value changes nothing. Writes are only accepted while the
session is ACTIVE.
"""
import logging
from typing import Iterable, List, Optional, Tuple

from ..models.events import AnswerSaved
from ..models.session import AnswerRecord, to_ms
from .connection_registry import ConnectionHandle
from .session_locks import SessionLocks
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class AnswerAutosave:

    def __init__(self, store: SessionStore, locks: SessionLocks):
        self.store = store
        self.locks = locks

    async def save_answer(
        self,
        session_id: str,
        question_id: str,
        value: Optional[str],
        origin: Optional[ConnectionHandle] = None
    ) -> AnswerRecord:
        """
        Upsert one answer and acknowledge it to origin.

        Raises:
            SessionNotFound, SessionNotActive, StoreUnavailable
        """
        async with self.locks.hold(session_id):
            answer = await self.store.upsert_answer(session_id, question_id, value)
            if origin is not None:
                origin.enqueue(AnswerSaved(
                    question_id=answer.question_id,
                    saved_at=to_ms(answer.saved_at),
                ).to_wire())
            return answer

    async def save_answers(
        self,
        session_id: str,
        answers: Iterable[Tuple[str, Optional[str]]]
    ) -> List[AnswerRecord]:
        """Upsert several answers under one hold of the session lock"""
        saved = []
        async with self.locks.hold(session_id):
            for question_id, value in answers:
                saved.append(await self.store.upsert_answer(session_id, question_id, value))
        logger.info(f"[AUTOSAVE] {session_id}: saved {len(saved)} answer(s)")
        return saved

    async def get_answers(self, session_id: str) -> List[AnswerRecord]:
        return await self.store.get_answers(session_id)
