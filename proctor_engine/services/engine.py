"""
Proctor Engine - wires the components together and owns their lifetime

Created once in the application lifespan; nothing in here is a module
global, so tests build as many independent engines as they need.
"""
import logging
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..models.session import SessionRecord, SessionStatus
from ..utils.logging import log_connection
from .autosave import AnswerAutosave
from .broadcast_router import BroadcastRouter
from .connection_registry import ConnectionHandle, ConnectionRegistry
from .disqualification import DisqualificationEngine
from .dispatcher import EventDispatcher
from .errors import NoSession, ProctorError, SessionNotFound, Unauthorized
from .heartbeat import HeartbeatTracker
from .identity import Principal
from .rate_limiter import EventRateLimiter
from .session_locks import SessionLocks
from .session_store import InMemorySessionStore, SessionStore
from .sql_store import SqlSessionStore
from .violation_ledger import ViolationLedger

logger = logging.getLogger(__name__)


class ProctorEngine:

    def __init__(
        self,
        store: SessionStore,
        rate_limiter: Optional[EventRateLimiter] = None,
        outbox_max_size: int = 256,
        default_max_violations: int = 3,
        default_duration_seconds: int = 3600
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.outbox_max_size = outbox_max_size
        self.default_max_violations = default_max_violations
        self.default_duration_seconds = default_duration_seconds

        self.router = BroadcastRouter()
        self.registry = ConnectionRegistry(self.router)
        self.locks = SessionLocks()
        self.disqualification = DisqualificationEngine(store, self.router, self.registry, self.locks)
        self.ledger = ViolationLedger(store, self.router, self.registry, self.locks, self.disqualification)
        self.heartbeat = HeartbeatTracker(store, self.router, self.registry, self.locks, self.disqualification)
        self.autosave = AnswerAutosave(store, self.locks)
        self.dispatcher = EventDispatcher(
            self.ledger,
            self.disqualification,
            self.heartbeat,
            self.autosave,
            self.router,
            rate_limiter,
        )

    async def start(self) -> None:
        await self.store.start()
        if self.rate_limiter is not None:
            await self.rate_limiter.start()
        logger.info(f"[ENGINE] Started with {type(self.store).__name__}")

    async def close(self) -> None:
        self.registry.close()
        if self.rate_limiter is not None:
            await self.rate_limiter.close()
        await self.store.close()
        logger.info("[ENGINE] Stopped")

    # ========================================================================
    # Sessions
    # ========================================================================

    async def open_session(
        self,
        user_id: str,
        exam_id: str,
        max_violations: Optional[int] = None,
        duration_seconds: Optional[int] = None,
        client_address: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> SessionRecord:
        return await self.store.open_session(
            user_id,
            exam_id,
            max_violations or self.default_max_violations,
            self.default_duration_seconds if duration_seconds is None else duration_seconds,
            client_address=client_address,
            session_id=session_id,
        )

    async def live_sessions(self, exam_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sessions = []
        for record in await self.store.list_live_sessions(exam_id):
            data = record.to_dict()
            data["isOnline"] = self.registry.is_online(record.id)
            last_seen = self.registry.last_seen(record.id)
            data["lastSeen"] = int(last_seen * 1000) if last_seen is not None else None
            sessions.append(data)
        return sessions

    async def session_detail(self, session_id: str) -> Dict[str, Any]:
        record = await self.store.get_session(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        data = record.to_dict()
        data["isOnline"] = self.registry.is_online(session_id)
        data["violations"] = [v.to_dict() for v in await self.store.list_violations(session_id)]
        return data

    # ========================================================================
    # Connections
    # ========================================================================

    async def connect(self, principal: Principal) -> ConnectionHandle:
        """
        Register a new connection for an authenticated principal.

        Supervisors join the supervisor topic. Students join their session's
        topic; the first live connection of a DISCONNECTED session
        reconnects it.

        Raises:
            NoSession: student token without a session
            SessionNotFound: token names an unknown session
            Unauthorized: session belongs to another user
        """
        handle = ConnectionHandle(principal, max_size=self.outbox_max_size)

        if principal.is_supervisor:
            self.registry.register_connection(None, handle)
            log_connection(None, principal.user_id, principal.role, connected=True)
            return handle

        session_id = principal.session_id
        if not session_id:
            raise NoSession("Token is not bound to an exam session")

        async with self.locks.hold(session_id):
            record = await self.store.get_session(session_id)
            if record is None:
                raise SessionNotFound(session_id)
            if record.user_id != principal.user_id:
                raise Unauthorized(f"Session {session_id} belongs to another user")

            # Store writes first: a failure here must leave nothing registered.
            if record.status == SessionStatus.DISCONNECTED:
                reconnected = await self.disqualification.mark_reconnected(session_id)
                if reconnected is not None:
                    record = reconnected

            came_online = self.registry.register_connection(session_id, handle)
            log_connection(session_id, principal.user_id, principal.role, connected=True)
            if came_online:
                self.heartbeat.announce_presence(record, online=True, handle=handle)
        return handle

    async def disconnect(self, handle: ConnectionHandle) -> None:
        """
        Drop a connection; the last one of an ACTIVE session marks it DISCONNECTED.

        The transport calls this only after the connection's in-flight
        messages have been applied.
        """
        session_id = handle.session_id
        principal = handle.principal
        went_offline = self.registry.remove_connection(session_id, handle)
        handle.close()
        log_connection(session_id, principal.user_id, principal.role, connected=False)

        if not went_offline:
            return

        try:
            async with self.locks.hold(session_id):
                # A new connection may have arrived while waiting for the lock
                if self.registry.is_online(session_id):
                    return
                record = await self.disqualification.mark_disconnected(session_id)
                if record is None:
                    record = await self.store.get_session(session_id)
                if record is not None:
                    self.heartbeat.announce_presence(record, online=False, handle=handle)
        except ProctorError as e:
            logger.error(f"[ENGINE] Disconnect handling failed for {session_id}: {e}")

    async def dispatch(self, handle: ConnectionHandle, message) -> None:
        await self.dispatcher.dispatch(handle, message)


def build_engine(settings: Settings) -> ProctorEngine:
    """Engine configured from settings (store backend, rate limiting, limits)"""
    if settings.SESSION_STORE == "memory":
        store = InMemorySessionStore()
    else:
        store = SqlSessionStore(settings.DATABASE_URL)

    rate_limiter = EventRateLimiter(
        redis_url=settings.REDIS_URL,
        enabled=settings.RATE_LIMIT_ENABLED,
        limits=settings.EVENT_RATE_LIMITS,
    ) if settings.RATE_LIMIT_ENABLED else None

    return ProctorEngine(
        store,
        rate_limiter=rate_limiter,
        outbox_max_size=settings.OUTBOX_MAX_SIZE,
        default_max_violations=settings.DEFAULT_MAX_VIOLATIONS,
        default_duration_seconds=settings.DEFAULT_DURATION_SECONDS,
    )
