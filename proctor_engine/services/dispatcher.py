"""
Event Dispatcher - routes typed inbound messages to their component

Each message is handled in isolation: domain errors become an
action:failed frame for the sending connection, unexpected errors are
logged with traceback, and neither affects any other connection.
"""
import logging
from typing import Awaitable, Callable, Dict, Optional, Type

from ..models.events import (
    ActionFailed,
    AdminDisqualify,
    AdminForceSubmit,
    AdminWarn,
    AnswerSave,
    ForceSubmit,
    HeartbeatReport,
    InboundMessage,
    SessionWarning,
    SnapshotFrame,
    StudentSnapshot,
    ViolationReport,
)
from ..utils.logging import log_command_rejected, log_proctor_event
from .autosave import AnswerAutosave
from .broadcast_router import BroadcastRouter
from .connection_registry import ConnectionHandle
from .disqualification import DisqualificationEngine
from .errors import NoSession, ProctorError, RateLimited, Unauthorized
from .heartbeat import HeartbeatTracker
from .rate_limiter import EventRateLimiter
from .violation_ledger import ViolationLedger

logger = logging.getLogger(__name__)

DEFAULT_WARNING = "You have received a warning from the administrator."
FORCE_SUBMIT_REASON = "Administrator has force-submitted your exam."

Handler = Callable[[ConnectionHandle, InboundMessage], Awaitable[None]]


def _bound_session(handle: ConnectionHandle) -> str:
    if not handle.session_id:
        raise NoSession("This connection is not bound to an exam session")
    return handle.session_id


class EventDispatcher:

    def __init__(
        self,
        ledger: ViolationLedger,
        disqualification: DisqualificationEngine,
        heartbeat: HeartbeatTracker,
        autosave: AnswerAutosave,
        router: BroadcastRouter,
        rate_limiter: Optional[EventRateLimiter] = None
    ):
        self.ledger = ledger
        self.disqualification = disqualification
        self.heartbeat = heartbeat
        self.autosave = autosave
        self.router = router
        self.rate_limiter = rate_limiter

        self._handlers: Dict[Type[InboundMessage], Handler] = {
            ViolationReport: self._on_violation,
            AnswerSave: self._on_answer_save,
            HeartbeatReport: self._on_heartbeat,
            SnapshotFrame: self._on_snapshot,
            AdminWarn: self._on_warn,
            AdminForceSubmit: self._on_force_submit,
            AdminDisqualify: self._on_disqualify,
        }

    async def dispatch(self, handle: ConnectionHandle, message: InboundMessage) -> None:
        principal = handle.principal

        if message.supervisor_only and not principal.is_supervisor:
            log_command_rejected(
                principal.user_id, principal.role, message.event,
                getattr(message, "target_session_id", None)
            )
            return

        handler = self._handlers.get(type(message))
        if handler is None:
            logger.warning(f"[DISPATCH] No handler for {message.event}")
            return

        try:
            if self.rate_limiter is not None and self.rate_limiter.is_limited_event(message.event):
                if not await self.rate_limiter.allow(principal.user_id, message.event):
                    raise RateLimited(f"Too many {message.event} events")
            await handler(handle, message)
        except Unauthorized:
            # Dropped silently; already audit-logged
            return
        except ProctorError as e:
            logger.info(f"[DISPATCH] {message.event} from {principal.user_id} declined: {e.code} {e}")
            self.fail(handle, message.event, e.code, str(e))
        except Exception:
            logger.exception(f"[DISPATCH] {message.event} from {principal.user_id} failed")

    @staticmethod
    def fail(handle: ConnectionHandle, action: Optional[str], code: str, message: str) -> None:
        handle.enqueue(ActionFailed(action=action, code=code, message=message).to_wire())

    # ========================================================================
    # Student events
    # ========================================================================

    async def _on_violation(self, handle: ConnectionHandle, message: ViolationReport) -> None:
        await self.ledger.record_violation(
            _bound_session(handle),
            message.event_type,
            message.description,
            message.metadata,
            origin=handle,
        )

    async def _on_answer_save(self, handle: ConnectionHandle, message: AnswerSave) -> None:
        await self.autosave.save_answer(
            _bound_session(handle),
            message.question_id,
            message.selected_answer,
            origin=handle,
        )

    async def _on_heartbeat(self, handle: ConnectionHandle, message: HeartbeatReport) -> None:
        await self.heartbeat.record_heartbeat(handle, message.time_remaining)

    async def _on_snapshot(self, handle: ConnectionHandle, message: SnapshotFrame) -> None:
        session_id = _bound_session(handle)
        principal = handle.principal
        self.router.broadcast_to_supervisors(StudentSnapshot(
            session_id=session_id,
            student_id=principal.student_id or principal.user_id,
            student_name=principal.name,
            image=message.image,
            timestamp=message.timestamp,
        ))

    # ========================================================================
    # Supervisor commands
    # ========================================================================

    async def _on_warn(self, handle: ConnectionHandle, message: AdminWarn) -> None:
        text = message.message or DEFAULT_WARNING
        delivered = self.router.send_to_session(message.target_session_id, SessionWarning(message=text))
        log_proctor_event(message.target_session_id, "warning", {
            "by": handle.principal.user_id,
            "delivered": delivered,
        })

    async def _on_force_submit(self, handle: ConnectionHandle, message: AdminForceSubmit) -> None:
        # The client submits through the HTTP boundary; status is not changed here
        delivered = self.router.send_to_session(
            message.target_session_id, ForceSubmit(reason=FORCE_SUBMIT_REASON)
        )
        log_proctor_event(message.target_session_id, "force_submit", {
            "by": handle.principal.user_id,
            "delivered": delivered,
        })

    async def _on_disqualify(self, handle: ConnectionHandle, message: AdminDisqualify) -> None:
        await self.disqualification.disqualify(
            handle.principal, message.target_session_id, message.reason
        )
