"""
Connection Registry - live connections per exam session

Owned by the engine (created at startup, closed at shutdown); nothing here
is persisted. A session is online while at least one handle bound to it
is registered.
"""
import asyncio
import itertools
import logging
import time
from typing import Any, Dict, Optional, Set, Tuple

from .broadcast_router import SUPERVISOR_TOPIC, BroadcastRouter, session_topic
from .identity import Principal

logger = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


class ConnectionHandle:
    """
    One transport connection.

    Frames are queued on a bounded outbox and written to the socket by the
    connection's writer task. close() queues a None sentinel that stops it.
    """

    def __init__(self, principal: Principal, session_id: Optional[str] = None, max_size: int = 256):
        self.id = next(_handle_ids)
        self.principal = principal
        self.session_id = session_id
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self.last_seen = time.time()
        self.dropped = 0
        self.closed = False

    @property
    def is_supervisor(self) -> bool:
        return self.principal.is_supervisor

    def enqueue(self, frame: Dict[str, Any]) -> bool:
        """Queue a frame without waiting; drops it when the outbox is full"""
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"[REGISTRY] Outbox full for connection {self.id} "
                f"(user={self.principal.user_id}), dropped {frame.get('event')}"
            )
            return False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.outbox.put_nowait(None)
        except asyncio.QueueFull:
            # Writer is behind; make room for the sentinel
            self.outbox.get_nowait()
            self.outbox.put_nowait(None)

    def __repr__(self):
        return f"<ConnectionHandle {self.id} user={self.principal.user_id} session={self.session_id}>"


class ConnectionRegistry:
    """session id -> live handles, plus supervisor handles"""

    def __init__(self, router: BroadcastRouter):
        self.router = router
        self._sessions: Dict[str, Set[ConnectionHandle]] = {}
        self._supervisors: Set[ConnectionHandle] = set()

    def register_connection(self, session_id: Optional[str], handle: ConnectionHandle) -> bool:
        """
        Register a handle and subscribe it to its topics.

        Returns:
            True when this handle brought the session from offline to online
        """
        if handle.is_supervisor:
            self._supervisors.add(handle)
            self.router.subscribe(SUPERVISOR_TOPIC, handle)

        if not session_id:
            return False

        handle.session_id = session_id
        handles = self._sessions.setdefault(session_id, set())
        came_online = not handles
        handles.add(handle)
        self.router.subscribe(session_topic(session_id), handle)
        return came_online

    def remove_connection(self, session_id: Optional[str], handle: Optional[ConnectionHandle] = None) -> bool:
        """
        Remove one handle (or every handle of the session when handle is None).

        Returns:
            True when the session went from online to offline
        """
        if handle is not None:
            self._supervisors.discard(handle)
            self.router.unsubscribe_all(handle)

        if not session_id or session_id not in self._sessions:
            return False

        handles = self._sessions[session_id]
        if handle is None:
            for h in list(handles):
                self.router.unsubscribe_all(h)
            handles.clear()
        else:
            handles.discard(handle)

        if handles:
            return False
        del self._sessions[session_id]
        return True

    def is_online(self, session_id: str) -> bool:
        return bool(self._sessions.get(session_id))

    def list_online(self) -> Set[str]:
        return {sid for sid, handles in self._sessions.items() if handles}

    def touch(self, session_id: str, handle: ConnectionHandle) -> bool:
        """Refresh a heartbeating handle; re-registers it if it was dropped. Returns True if it came online."""
        handle.last_seen = time.time()
        if handle in self._sessions.get(session_id, ()):
            return False
        return self.register_connection(session_id, handle)

    def last_seen(self, session_id: str) -> Optional[float]:
        """Most recent connect or heartbeat time (epoch seconds) across the session's handles"""
        handles = self._sessions.get(session_id)
        if not handles:
            return None
        return max(handle.last_seen for handle in handles)

    def principal_for(self, session_id: str) -> Optional[Principal]:
        for handle in self._sessions.get(session_id, ()):
            return handle.principal
        return None

    def identity_for(self, session_id: str, user_id: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
        """(student id, display name) for events; falls back to user_id once the student is offline"""
        principal = self.principal_for(session_id)
        if principal is None:
            return user_id, None
        return principal.student_id or principal.user_id, principal.name

    @property
    def supervisor_count(self) -> int:
        return len(self._supervisors)

    def close(self) -> None:
        """Close every handle (shutdown)"""
        handles = set(self._supervisors)
        for session_handles in self._sessions.values():
            handles.update(session_handles)
        for handle in handles:
            self.router.unsubscribe_all(handle)
            handle.close()
        self._sessions.clear()
        self._supervisors.clear()
        logger.info(f"[REGISTRY] Closed {len(handles)} connection(s)")
