"""
SQLAlchemy models for exam sessions, the violation ledger and autosaved answers
"""
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase

from .session import (
    NON_TERMINAL_STATUSES,
    AnswerRecord,
    SessionRecord,
    SessionStatus,
    SubmissionType,
    ViolationRecord,
)


class Base(DeclarativeBase):
    pass


class StudentSession(Base):
    """
    One student's attempt at one exam.

    max_violations is copied from the exam configuration when the session opens.
    """
    __tablename__ = "student_sessions"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    exam_id = Column(String(64), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=SessionStatus.ACTIVE.value, index=True)
    violation_count = Column(Integer, nullable=False, default=0)
    max_violations = Column(Integer, nullable=False, default=3)
    time_remaining_seconds = Column(Integer, nullable=False, default=0)

    start_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    end_time = Column(DateTime, nullable=True)
    client_address = Column(String(45), nullable=True)
    submission_type = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<StudentSession {self.id} user={self.user_id} status={self.status}>"

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            id=self.id,
            user_id=self.user_id,
            exam_id=self.exam_id,
            status=SessionStatus(self.status),
            violation_count=self.violation_count,
            max_violations=self.max_violations,
            time_remaining_seconds=self.time_remaining_seconds,
            start_time=self.start_time,
            end_time=self.end_time,
            client_address=self.client_address,
            submission_type=SubmissionType(self.submission_type) if self.submission_type else None,
        )


_LIVE_STATUS_VALUES = sorted(status.value for status in NON_TERMINAL_STATUSES)

# At most one live session per (user, exam); terminal rows are unconstrained.
Index(
    "uq_student_sessions_live",
    StudentSession.user_id,
    StudentSession.exam_id,
    unique=True,
    postgresql_where=StudentSession.status.in_(_LIVE_STATUS_VALUES),
    sqlite_where=StudentSession.status.in_(_LIVE_STATUS_VALUES),
)


class Violation(Base):
    """Append-only integrity violation log"""
    __tablename__ = "violations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), ForeignKey("student_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_record(self) -> ViolationRecord:
        return ViolationRecord(
            id=self.id,
            session_id=self.session_id,
            event_type=self.event_type,
            description=self.description or "",
            metadata=self.metadata_json,
            timestamp=self.timestamp,
        )


class Answer(Base):
    """Latest autosaved answer per (session, question)"""
    __tablename__ = "answers"
    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_answers_session_question"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), ForeignKey("student_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(String(64), nullable=False)
    selected_answer = Column(Text, nullable=True)
    saved_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_record(self) -> AnswerRecord:
        return AnswerRecord(
            session_id=self.session_id,
            question_id=self.question_id,
            selected_answer=self.selected_answer,
            saved_at=self.saved_at,
        )
