"""
Disqualification Engine - session status state machine

    ACTIVE       -> DISCONNECTED | SUBMITTED | DISQUALIFIED | EXPIRED
    DISCONNECTED -> ACTIVE | SUBMITTED | DISQUALIFIED | EXPIRED
    SUBMITTED, DISQUALIFIED, EXPIRED are terminal

Every transition goes through the store's conditional write with the set
of statuses that may reach the target, so a transition attempted from any
other status is a no-op and terminal statuses stay terminal.

Methods named mark_* and apply_threshold expect the caller to hold the
session lock; submit, expire and disqualify take it themselves.
"""
import logging
from typing import Dict, FrozenSet, Optional

from ..models.events import Disqualified, StudentDisqualified
from ..models.session import SessionRecord, SessionStatus, SubmissionType
from ..utils.logging import log_command_rejected, log_status_transition
from .broadcast_router import BroadcastRouter
from .connection_registry import ConnectionRegistry
from .errors import Unauthorized
from .identity import Principal
from .session_locks import SessionLocks
from .session_store import SessionStore

logger = logging.getLogger(__name__)

THRESHOLD_REASON = "threshold exceeded"
DEFAULT_ADMIN_REASON = "You have been disqualified by the administrator."

ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({
        SessionStatus.DISCONNECTED,
        SessionStatus.SUBMITTED,
        SessionStatus.DISQUALIFIED,
        SessionStatus.EXPIRED,
    }),
    SessionStatus.DISCONNECTED: frozenset({
        SessionStatus.ACTIVE,
        SessionStatus.SUBMITTED,
        SessionStatus.DISQUALIFIED,
        SessionStatus.EXPIRED,
    }),
    SessionStatus.SUBMITTED: frozenset(),
    SessionStatus.DISQUALIFIED: frozenset(),
    SessionStatus.EXPIRED: frozenset(),
}


def sources_for(target: SessionStatus) -> FrozenSet[SessionStatus]:
    """Statuses from which target can be reached"""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


class DisqualificationEngine:
    """Applies status transitions and announces disqualifications"""

    def __init__(
        self,
        store: SessionStore,
        router: BroadcastRouter,
        registry: ConnectionRegistry,
        locks: SessionLocks
    ):
        self.store = store
        self.router = router
        self.registry = registry
        self.locks = locks

    async def _transition(
        self,
        session_id: str,
        target: SessionStatus,
        reason: Optional[str] = None,
        submission_type: Optional[SubmissionType] = None
    ) -> Optional[SessionRecord]:
        result = await self.store.transition_status(
            session_id, target, sources_for(target), submission_type
        )
        if result is None:
            logger.debug(f"[STATE] {session_id}: transition to {target.value} not applicable")
            return None

        previous, record = result
        log_status_transition(session_id, previous.value, record.status.value, reason)
        return record

    def _announce_disqualified(self, record: SessionRecord, reason: str) -> None:
        student_id, student_name = self.registry.identity_for(record.id, record.user_id)
        self.router.send_to_session(record.id, Disqualified(reason=reason))
        self.router.broadcast_to_supervisors(StudentDisqualified(
            session_id=record.id,
            student_id=student_id,
            student_name=student_name,
            reason=reason,
        ))

    # ========================================================================
    # Caller holds the session lock
    # ========================================================================

    async def apply_threshold(self, session_id: str, violation_count: int, max_violations: int) -> bool:
        """
        Disqualify when count >= max_violations.

        Uses the count returned by the increment, never a re-read. Returns
        True only for the call that actually moved the session.
        """
        if violation_count < max_violations:
            return False

        record = await self._transition(session_id, SessionStatus.DISQUALIFIED, THRESHOLD_REASON)
        if record is None:
            return False
        self._announce_disqualified(record, THRESHOLD_REASON)
        return True

    async def mark_disconnected(self, session_id: str) -> Optional[SessionRecord]:
        """ACTIVE -> DISCONNECTED (counters and remaining time untouched)"""
        result = await self.store.transition_status(
            session_id, SessionStatus.DISCONNECTED, {SessionStatus.ACTIVE}
        )
        if result is None:
            return None
        previous, record = result
        log_status_transition(session_id, previous.value, record.status.value, "connection lost")
        return record

    async def mark_reconnected(self, session_id: str) -> Optional[SessionRecord]:
        """DISCONNECTED -> ACTIVE"""
        result = await self.store.transition_status(
            session_id, SessionStatus.ACTIVE, {SessionStatus.DISCONNECTED}
        )
        if result is None:
            return None
        previous, record = result
        log_status_transition(session_id, previous.value, record.status.value, "reconnected")
        return record

    # ========================================================================
    # Entry points that take the session lock
    # ========================================================================

    async def disqualify(self, principal: Principal, session_id: str, reason: Optional[str] = None) -> bool:
        """
        Supervisor disqualification.

        Raises:
            Unauthorized: principal is not a supervisor (nothing changes)
            SessionNotFound: unknown session
        """
        if not principal.is_supervisor:
            log_command_rejected(principal.user_id, principal.role, "admin:disqualify", session_id)
            raise Unauthorized("Supervisor role required")

        reason = (reason or "").strip() or DEFAULT_ADMIN_REASON
        async with self.locks.hold(session_id):
            record = await self._transition(session_id, SessionStatus.DISQUALIFIED, reason)
            if record is None:
                return False
            self._announce_disqualified(record, reason)
            return True

    async def submit(
        self,
        session_id: str,
        submission_type: SubmissionType = SubmissionType.MANUAL
    ) -> Optional[SessionRecord]:
        """Move to SUBMITTED; None when the session is already terminal"""
        async with self.locks.hold(session_id):
            return await self._transition(
                session_id, SessionStatus.SUBMITTED, submission_type.value, submission_type
            )

    async def expire(self, session_id: str) -> Optional[SessionRecord]:
        """Move to EXPIRED; None when the session is already terminal"""
        async with self.locks.hold(session_id):
            return await self._transition(session_id, SessionStatus.EXPIRED, "time expired")
