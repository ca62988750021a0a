"""
Broadcast Router - topic subscriptions and fan-out

Topics:
- "supervisors": every connected supervisor
- "session:<id>": every live connection bound to that session

publish() enqueues onto each subscriber's outbox without awaiting the
socket, so one slow connection never delays another. Events for topics
with no subscribers are dropped.
"""
import logging
from typing import TYPE_CHECKING, Dict, Set

from ..models.events import OutboundEvent

if TYPE_CHECKING:
    from .connection_registry import ConnectionHandle

logger = logging.getLogger(__name__)

SUPERVISOR_TOPIC = "supervisors"


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


class BroadcastRouter:
    """Topic -> subscribed connection handles"""

    def __init__(self):
        self._topics: Dict[str, Set["ConnectionHandle"]] = {}

    def subscribe(self, topic: str, handle: "ConnectionHandle") -> None:
        self._topics.setdefault(topic, set()).add(handle)

    def unsubscribe(self, topic: str, handle: "ConnectionHandle") -> None:
        members = self._topics.get(topic)
        if not members:
            return
        members.discard(handle)
        if not members:
            del self._topics[topic]

    def unsubscribe_all(self, handle: "ConnectionHandle") -> None:
        for topic in [t for t, members in self._topics.items() if handle in members]:
            self.unsubscribe(topic, handle)

    def subscribers(self, topic: str) -> Set["ConnectionHandle"]:
        return set(self._topics.get(topic, ()))

    def publish(self, topic: str, event: OutboundEvent) -> int:
        """Enqueue event for every subscriber of topic; returns how many accepted it"""
        members = self._topics.get(topic)
        if not members:
            logger.debug(f"[ROUTER] No subscribers for {topic}, dropped {event.event}")
            return 0

        frame = event.to_wire()
        delivered = 0
        for handle in list(members):
            if handle.enqueue(frame):
                delivered += 1
        return delivered

    def broadcast_to_supervisors(self, event: OutboundEvent) -> int:
        return self.publish(SUPERVISOR_TOPIC, event)

    def send_to_session(self, session_id: str, event: OutboundEvent) -> int:
        return self.publish(session_topic(session_id), event)
