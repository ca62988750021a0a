"""
Session domain types shared by the stores and the engine
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class SessionStatus(str, Enum):
    """Lifecycle status of an exam session"""
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"
    SUBMITTED = "SUBMITTED"
    DISQUALIFIED = "DISQUALIFIED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class SubmissionType(str, Enum):
    """How a session reached SUBMITTED"""
    MANUAL = "MANUAL"
    AUTO_TIME = "AUTO_TIME"
    AUTO_VIOLATION = "AUTO_VIOLATION"
    FORCE_SUBMIT = "FORCE_SUBMIT"


TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.SUBMITTED,
    SessionStatus.DISQUALIFIED,
    SessionStatus.EXPIRED,
})

NON_TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.ACTIVE,
    SessionStatus.DISCONNECTED,
})


def now_ms() -> int:
    """Epoch milliseconds, the timestamp unit used on the wire"""
    return int(time.time() * 1000)


def to_ms(value: datetime) -> int:
    """Naive UTC datetime -> epoch milliseconds"""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


@dataclass
class SessionRecord:
    """Snapshot of one student's exam session"""
    id: str
    user_id: str
    exam_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    violation_count: int = 0
    max_violations: int = 3
    time_remaining_seconds: int = 0
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    client_address: Optional[str] = None
    submission_type: Optional[SubmissionType] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.id,
            "userId": self.user_id,
            "examId": self.exam_id,
            "status": self.status.value,
            "violationCount": self.violation_count,
            "maxViolations": self.max_violations,
            "timeRemainingSeconds": self.time_remaining_seconds,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "clientAddress": self.client_address,
            "submissionType": self.submission_type.value if self.submission_type else None,
        }


@dataclass(frozen=True)
class ViolationResult:
    """Counter state returned by an atomic increment"""
    violation_count: int
    max_violations: int

    @property
    def threshold_reached(self) -> bool:
        return self.violation_count >= self.max_violations


@dataclass
class ViolationRecord:
    """One appended ledger entry"""
    session_id: str
    event_type: str
    description: str = ""
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "eventType": self.event_type,
            "description": self.description,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AnswerRecord:
    """Latest autosaved value for one (session, question)"""
    session_id: str
    question_id: str
    selected_answer: Optional[str]
    saved_at: datetime = field(default_factory=datetime.utcnow)
