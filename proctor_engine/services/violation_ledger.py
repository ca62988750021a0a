"""
Violation Ledger - append, count, and hand off to the threshold check

The append and the counter increment are a single store primitive; the
count it returns is the only value the threshold check ever sees.
"""
import logging
from typing import Any, Dict, Optional

from ..models.events import ViolationAck, ViolationNew
from ..models.session import ViolationResult
from ..utils.logging import log_violation_recorded
from .broadcast_router import BroadcastRouter
from .connection_registry import ConnectionHandle, ConnectionRegistry
from .disqualification import DisqualificationEngine
from .errors import StoreUnavailable
from .session_locks import SessionLocks
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class ViolationLedger:

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

    async def record_violation(
        self,
        session_id: str,
        event_type: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        origin: Optional[ConnectionHandle] = None
    ) -> ViolationResult:
        """
        Record one violation for a session.

        Emits, in order: violation:new to supervisors, violation:ack to the
        originating connection, then the disqualification check.

        Raises:
            SessionNotFound: unknown session
            SessionNotActive: session is terminal; nothing recorded
            StoreUnavailable: append/increment failed; nothing recorded
        """
        async with self.locks.hold(session_id):
            result = await self.store.record_violation(session_id, event_type, description, metadata)
            log_violation_recorded(session_id, event_type, result.violation_count, result.max_violations)

            student_id, student_name = self.registry.identity_for(session_id)
            self.router.broadcast_to_supervisors(ViolationNew(
                session_id=session_id,
                student_id=student_id,
                student_name=student_name,
                event_type=event_type,
                description=description,
                violation_count=result.violation_count,
                max_violations=result.max_violations,
            ))

            if origin is not None:
                origin.enqueue(ViolationAck(
                    violation_count=result.violation_count,
                    max_violations=result.max_violations,
                ).to_wire())

            if result.threshold_reached:
                try:
                    await self.disqualification.apply_threshold(
                        session_id, result.violation_count, result.max_violations
                    )
                except StoreUnavailable as e:
                    # Not announced; the next violation re-runs the >= check
                    logger.error(f"[LEDGER] Disqualification write failed for {session_id}: {e}")

            return result
