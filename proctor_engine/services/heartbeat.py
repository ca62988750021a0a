"""
Heartbeat / Timer Tracker

Keeps the authoritative time_remaining_seconds current and tracks
presence. The core never expires a session on its own; expiry arrives
through the HTTP boundary (see api/routes/sessions.py).
"""
import logging
from typing import Optional

from ..models.events import StudentConnected, StudentDisconnected, StudentHeartbeat
from ..models.session import SessionRecord, SessionStatus
from .broadcast_router import BroadcastRouter
from .connection_registry import ConnectionHandle, ConnectionRegistry
from .disqualification import DisqualificationEngine
from .errors import NoSession
from .session_locks import SessionLocks
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class HeartbeatTracker:

    def __init__(
        self,
        store: SessionStore,
        router: BroadcastRouter,
        registry: ConnectionRegistry,
        locks: SessionLocks,
        disqualification: DisqualificationEngine
    ):
        self.store = store
        self.router = router
        self.registry = registry
        self.locks = locks
        self.disqualification = disqualification

    def announce_presence(self, record: SessionRecord, online: bool, handle: Optional[ConnectionHandle] = None) -> None:
        """student:connected / student:disconnected to supervisors"""
        if handle is not None:
            principal = handle.principal
            student_id, student_name = principal.student_id or principal.user_id, principal.name
        else:
            student_id, student_name = self.registry.identity_for(record.id, record.user_id)

        event_cls = StudentConnected if online else StudentDisconnected
        self.router.broadcast_to_supervisors(event_cls(
            session_id=record.id,
            student_id=student_id,
            student_name=student_name,
            status=record.status.value,
        ))

    async def record_heartbeat(self, handle: ConnectionHandle, time_remaining: int) -> SessionRecord:
        """
        Store the client's remaining time and refresh presence.

        A heartbeat from a DISCONNECTED session reconnects it.

        Raises:
            NoSession: connection is not bound to a session
            SessionNotFound, SessionNotActive, StoreUnavailable
        """
        session_id = handle.session_id
        if not session_id:
            raise NoSession("Heartbeat requires a session-bound connection")

        async with self.locks.hold(session_id):
            record = await self.store.update_time_remaining(session_id, time_remaining)
            came_online = self.registry.touch(session_id, handle)

            if record.status == SessionStatus.DISCONNECTED:
                reconnected = await self.disqualification.mark_reconnected(session_id)
                if reconnected is not None:
                    record = reconnected
                    came_online = True

            if came_online:
                self.announce_presence(record, online=True, handle=handle)

            student_id, _ = self.registry.identity_for(session_id, record.user_id)
            self.router.broadcast_to_supervisors(StudentHeartbeat(
                session_id=session_id,
                student_id=student_id,
                time_remaining=time_remaining,
                is_online=True,
            ))
            return record
