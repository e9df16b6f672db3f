"""Typed live-update broadcast for debates.

Spectators subscribe per debate and receive events on their own
``asyncio.Queue``. Publishing never blocks and never raises: a slow or
broken subscriber loses events, the orchestrator keeps going.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DebateEventType(str, Enum):
    PHASE_TRANSITION = "phase_transition"
    PHASE_START = "phase_start"
    PHASE_COMPLETE = "phase_complete"
    UTTERANCE = "utterance"
    DEBATE_PAUSED = "debate_paused"
    DEBATE_RESUMED = "debate_resumed"
    DEBATE_COMPLETE = "debate_complete"
    DEBATE_ERROR = "debate_error"
    DEBATE_STOPPED = "debate_stopped"
    INTERVENTION_RESPONSE = "intervention_response"
    AWAITING_CONTINUE = "awaiting_continue"


# Events after which a debate produces nothing more
TERMINAL_EVENTS = frozenset((
    DebateEventType.DEBATE_COMPLETE.value,
    DebateEventType.DEBATE_ERROR.value,
    DebateEventType.DEBATE_STOPPED.value,
))


class DebateBroadcaster:
    """Fan-out publisher keyed by debate id."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, debate_id: str) -> asyncio.Queue:
        """Register a new subscriber queue for a debate."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(debate_id, []).append(queue)
        logger.debug(f"New subscriber for debate {debate_id} ({len(self._subscribers[debate_id])} total)")
        return queue

    def unsubscribe(self, debate_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(debate_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[debate_id]

    def subscriber_count(self, debate_id: str) -> int:
        return len(self._subscribers.get(debate_id, []))

    def publish(
        self,
        debate_id: str,
        event_type: DebateEventType,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Deliver an event to every subscriber of a debate.

        Args:
            debate_id: Debate the event belongs to
            event_type: Typed event name
            payload: JSON-serializable event fields

        Returns:
            Number of subscribers the event was delivered to
        """
        event = {"type": DebateEventType(event_type).value, "debate_id": debate_id, **(payload or {})}
        delivered = 0
        for queue in list(self._subscribers.get(debate_id, [])):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full for debate {debate_id}, dropping {event['type']} event")
            except Exception as e:
                logger.warning(f"Failed to deliver {event['type']} event for debate {debate_id}: {e}")
        logger.debug(f"Broadcast {event['type']} for debate {debate_id} to {delivered} subscriber(s)")
        return delivered
