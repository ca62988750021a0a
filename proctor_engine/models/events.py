"""
Realtime wire events

Every frame on the socket is a JSON envelope: {"event": <name>, "data": {...}}.
Payload keys are camelCase on the wire and snake_case in Python.

Inbound frames are parsed into one typed message class per event name;
outbound events are typed models serialized with to_wire().
"""
from typing import Annotated, Any, ClassVar, Dict, Optional, Type

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..services.errors import InvalidEvent
from .session import now_ms


def _as_str(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


# Clients send numeric ids for questions and sessions; keys are strings here
IdStr = Annotated[str, BeforeValidator(_as_str)]


# ============== Inbound (client -> server) ==============

class InboundMessage(BaseModel):
    """Base for messages received from a connection"""
    event: ClassVar[str]
    supervisor_only: ClassVar[bool] = False

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ViolationReport(InboundMessage):
    event: ClassVar[str] = "violation"

    event_type: str = Field(..., min_length=1, max_length=50)
    description: str = ""
    metadata: Optional[Dict[str, Any]] = None


class AnswerSave(InboundMessage):
    event: ClassVar[str] = "answer:save"

    question_id: IdStr = Field(..., min_length=1, max_length=64)
    selected_answer: Optional[str] = None


class HeartbeatReport(InboundMessage):
    event: ClassVar[str] = "heartbeat"

    time_remaining: int = Field(..., ge=0)


class SnapshotFrame(InboundMessage):
    event: ClassVar[str] = "snapshot"

    image: str
    timestamp: Optional[int] = None


class AdminWarn(InboundMessage):
    event: ClassVar[str] = "admin:warn"
    supervisor_only: ClassVar[bool] = True

    target_session_id: IdStr = Field(..., min_length=1)
    message: Optional[str] = None


class AdminForceSubmit(InboundMessage):
    event: ClassVar[str] = "admin:forceSubmit"
    supervisor_only: ClassVar[bool] = True

    target_session_id: IdStr = Field(..., min_length=1)


class AdminDisqualify(InboundMessage):
    event: ClassVar[str] = "admin:disqualify"
    supervisor_only: ClassVar[bool] = True

    target_session_id: IdStr = Field(..., min_length=1)
    reason: Optional[str] = None


INBOUND_MESSAGES: Dict[str, Type[InboundMessage]] = {
    cls.event: cls
    for cls in (
        ViolationReport,
        AnswerSave,
        HeartbeatReport,
        SnapshotFrame,
        AdminWarn,
        AdminForceSubmit,
        AdminDisqualify,
    )
}


def parse_inbound(frame: Any) -> InboundMessage:
    """
    Parse a raw envelope into its typed message.

    Raises:
        InvalidEvent: frame is not an envelope, names an unknown event,
            or its payload fails validation
    """
    if not isinstance(frame, dict):
        raise InvalidEvent("Frame must be a JSON object")

    name = frame.get("event")
    message_cls = INBOUND_MESSAGES.get(name)
    if message_cls is None:
        raise InvalidEvent(f"Unknown event: {name!r}")

    data = frame.get("data") or {}
    try:
        return message_cls.model_validate(data)
    except ValidationError as e:
        raise InvalidEvent(f"Invalid payload for {name}: {e.error_count()} error(s)") from e


# ============== Outbound (server -> client) ==============

class OutboundEvent(BaseModel):
    """Base for events sent to connections"""
    event: ClassVar[str]

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.model_dump(by_alias=True)}


class ViolationAck(OutboundEvent):
    event: ClassVar[str] = "violation:ack"

    violation_count: int
    max_violations: int


class ViolationNew(OutboundEvent):
    event: ClassVar[str] = "violation:new"

    session_id: str
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    event_type: str
    description: str = ""
    violation_count: int
    max_violations: int
    timestamp: int = Field(default_factory=now_ms)


class StudentConnected(OutboundEvent):
    event: ClassVar[str] = "student:connected"

    session_id: str
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    status: str
    timestamp: int = Field(default_factory=now_ms)


class StudentDisconnected(OutboundEvent):
    event: ClassVar[str] = "student:disconnected"

    session_id: str
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    status: str
    timestamp: int = Field(default_factory=now_ms)


class StudentHeartbeat(OutboundEvent):
    event: ClassVar[str] = "student:heartbeat"

    session_id: str
    student_id: Optional[str] = None
    time_remaining: int
    is_online: bool = True
    timestamp: int = Field(default_factory=now_ms)


class StudentDisqualified(OutboundEvent):
    event: ClassVar[str] = "student:disqualified"

    session_id: str
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    reason: str
    timestamp: int = Field(default_factory=now_ms)


class StudentSnapshot(OutboundEvent):
    event: ClassVar[str] = "student:snapshot"

    session_id: str
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    image: str
    timestamp: Optional[int] = None


class SessionWarning(OutboundEvent):
    event: ClassVar[str] = "warning"

    message: str
    timestamp: int = Field(default_factory=now_ms)


class ForceSubmit(OutboundEvent):
    event: ClassVar[str] = "force:submit"

    reason: str
    timestamp: int = Field(default_factory=now_ms)


class Disqualified(OutboundEvent):
    event: ClassVar[str] = "disqualified"

    reason: str
    timestamp: int = Field(default_factory=now_ms)


class AnswerSaved(OutboundEvent):
    event: ClassVar[str] = "answer:saved"

    question_id: str
    saved_at: int


class ActionFailed(OutboundEvent):
    """Declined or failed action, sent to the originating connection only"""
    event: ClassVar[str] = "action:failed"

    action: Optional[str] = None
    code: str
    message: str
    timestamp: int = Field(default_factory=now_ms)

