"""
Session domain types, SQLAlchemy tables and realtime wire events
"""
from .session import (
    AnswerRecord,
    SessionRecord,
    SessionStatus,
    SubmissionType,
    ViolationRecord,
    ViolationResult,
)
