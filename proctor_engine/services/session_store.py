"""
Session Store - persistence contract for exam sessions

The engine only talks to the store through the primitives below. Two of
them carry the consistency guarantees everything else relies on:

- record_violation: append + increment-and-return in one atomic unit
- transition_status: conditional status write (compare-and-set on status)

InMemorySessionStore implements the contract in-process and is used for
development and tests; SqlSessionStore (sql_store.py) is the production store.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.session import (
    NON_TERMINAL_STATUSES,
    AnswerRecord,
    SessionRecord,
    SessionStatus,
    SubmissionType,
    ViolationRecord,
    ViolationResult,
)
from .errors import SessionNotActive, SessionNotFound

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Atomic key/row store for sessions, violations and answers."""

    async def start(self) -> None:
        """Prepare connections / schema"""

    async def close(self) -> None:
        """Release connections"""

    @abstractmethod
    async def open_session(
        self,
        user_id: str,
        exam_id: str,
        max_violations: int,
        time_remaining_seconds: int,
        client_address: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> SessionRecord:
        """Return the non-terminal session for (user, exam), creating an ACTIVE one if none exists."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        ...

    @abstractmethod
    async def record_violation(
        self,
        session_id: str,
        event_type: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> ViolationResult:
        """
        Append a violation and increment the session counter atomically.

        Raises:
            SessionNotFound: unknown session
            SessionNotActive: session is in a terminal status
            StoreUnavailable: the write failed; nothing was recorded
        """

    @abstractmethod
    async def transition_status(
        self,
        session_id: str,
        target: SessionStatus,
        expected: Iterable[SessionStatus],
        submission_type: Optional[SubmissionType] = None
    ) -> Optional[Tuple[SessionStatus, SessionRecord]]:
        """
        Set status to target only if the current status is in expected.

        Terminal targets stamp end_time. Returns (previous status, updated
        record) when applied, None when the current status did not match.

        Raises:
            SessionNotFound: unknown session
        """

    @abstractmethod
    async def update_time_remaining(self, session_id: str, seconds: int) -> SessionRecord:
        """
        Overwrite time_remaining_seconds on a non-terminal session.

        Raises:
            SessionNotFound, SessionNotActive
        """

    @abstractmethod
    async def upsert_answer(
        self,
        session_id: str,
        question_id: str,
        selected_answer: Optional[str]
    ) -> AnswerRecord:
        """
        Create or overwrite the answer row for (session, question).

        The session must be ACTIVE. Re-saving an identical value leaves
        the row unchanged.

        Raises:
            SessionNotFound, SessionNotActive
        """

    @abstractmethod
    async def list_violations(self, session_id: str) -> List[ViolationRecord]:
        ...

    @abstractmethod
    async def get_answers(self, session_id: str) -> List[AnswerRecord]:
        ...

    @abstractmethod
    async def list_live_sessions(self, exam_id: Optional[str] = None) -> List[SessionRecord]:
        """Non-terminal sessions, newest first"""


# ============================================================================
# In-memory implementation
# ============================================================================

class InMemorySessionStore(SessionStore):
    """
    Process-local store.

    A single asyncio lock makes every primitive atomic with respect to
    the others; records are copied on the way out so callers never hold
    live references into the store.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._sessions: Dict[str, SessionRecord] = {}
        self._violations: Dict[str, List[ViolationRecord]] = {}
        self._answers: Dict[Tuple[str, str], AnswerRecord] = {}
        self._next_violation_id = 1

    @staticmethod
    def _copy(record: SessionRecord) -> SessionRecord:
        return SessionRecord(**record.__dict__)

    def _require(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    async def open_session(
        self,
        user_id: str,
        exam_id: str,
        max_violations: int,
        time_remaining_seconds: int,
        client_address: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> SessionRecord:
        async with self._lock:
            for record in self._sessions.values():
                if (record.user_id == user_id and record.exam_id == exam_id
                        and record.status in NON_TERMINAL_STATUSES):
                    return self._copy(record)

            record = SessionRecord(
                id=session_id or str(uuid.uuid4()),
                user_id=user_id,
                exam_id=exam_id,
                max_violations=max_violations,
                time_remaining_seconds=time_remaining_seconds,
                client_address=client_address,
            )
            self._sessions[record.id] = record
            self._violations[record.id] = []
            logger.info(f"[STORE] Opened session {record.id} user={user_id} exam={exam_id}")
            return self._copy(record)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self._sessions.get(session_id)
        return self._copy(record) if record else None

    async def record_violation(
        self,
        session_id: str,
        event_type: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> ViolationResult:
        async with self._lock:
            record = self._require(session_id)
            if record.is_terminal:
                raise SessionNotActive(session_id, record.status.value)

            self._violations[session_id].append(ViolationRecord(
                id=self._next_violation_id,
                session_id=session_id,
                event_type=event_type,
                description=description,
                metadata=metadata,
            ))
            self._next_violation_id += 1
            record.violation_count += 1
            return ViolationResult(record.violation_count, record.max_violations)

    async def transition_status(
        self,
        session_id: str,
        target: SessionStatus,
        expected: Iterable[SessionStatus],
        submission_type: Optional[SubmissionType] = None
    ) -> Optional[Tuple[SessionStatus, SessionRecord]]:
        expected = frozenset(expected)
        async with self._lock:
            record = self._require(session_id)
            if record.status not in expected:
                return None

            previous = record.status
            record.status = target
            if target.is_terminal:
                record.end_time = datetime.utcnow()
            if target == SessionStatus.SUBMITTED:
                record.submission_type = submission_type or SubmissionType.MANUAL
            return previous, self._copy(record)

    async def update_time_remaining(self, session_id: str, seconds: int) -> SessionRecord:
        async with self._lock:
            record = self._require(session_id)
            if record.is_terminal:
                raise SessionNotActive(session_id, record.status.value)
            record.time_remaining_seconds = seconds
            return self._copy(record)

    async def upsert_answer(
        self,
        session_id: str,
        question_id: str,
        selected_answer: Optional[str]
    ) -> AnswerRecord:
        async with self._lock:
            record = self._require(session_id)
            if record.status != SessionStatus.ACTIVE:
                raise SessionNotActive(session_id, record.status.value)

            key = (session_id, question_id)
            existing = self._answers.get(key)
            if existing is None or existing.selected_answer != selected_answer:
                existing = AnswerRecord(session_id, question_id, selected_answer)
                self._answers[key] = existing
            return AnswerRecord(**existing.__dict__)

    async def list_violations(self, session_id: str) -> List[ViolationRecord]:
        return list(self._violations.get(session_id, []))

    async def get_answers(self, session_id: str) -> List[AnswerRecord]:
        return [
            AnswerRecord(**answer.__dict__)
            for (sid, _), answer in self._answers.items()
            if sid == session_id
        ]

    async def list_live_sessions(self, exam_id: Optional[str] = None) -> List[SessionRecord]:
        live = [
            self._copy(record)
            for record in self._sessions.values()
            if record.status in NON_TERMINAL_STATUSES
            and (exam_id is None or record.exam_id == exam_id)
        ]
        return sorted(live, key=lambda r: r.start_time, reverse=True)
