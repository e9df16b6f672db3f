"""Registry of orchestrators for debates that are currently running."""

import logging
from typing import Dict, List, Optional

from .orchestrator import DebateOrchestrator

logger = logging.getLogger(__name__)


class OrchestratorRegistry:
    """Maps debate ids to their live orchestrators.

    Owned by the supervisor; there is no process-wide instance.
    """

    def __init__(self):
        self._orchestrators: Dict[str, DebateOrchestrator] = {}

    def register(self, debate_id: str, orchestrator: DebateOrchestrator) -> None:
        if debate_id in self._orchestrators:
            logger.warning(f"Replacing registered orchestrator for debate {debate_id}")
        self._orchestrators[debate_id] = orchestrator
        logger.info(f"Registered orchestrator for debate {debate_id} ({len(self._orchestrators)} running)")

    def unregister(self, debate_id: str) -> bool:
        """Remove a debate. Returns False if it was not registered."""
        removed = self._orchestrators.pop(debate_id, None) is not None
        if removed:
            logger.info(f"Unregistered orchestrator for debate {debate_id}")
        return removed

    def get(self, debate_id: str) -> Optional[DebateOrchestrator]:
        return self._orchestrators.get(debate_id)

    def has(self, debate_id: str) -> bool:
        return debate_id in self._orchestrators

    def count(self) -> int:
        return len(self._orchestrators)

    def running_debate_ids(self) -> List[str]:
        return list(self._orchestrators)

    async def stop_all(self, reason: str = "Server shutdown") -> int:
        """Stop every registered debate.

        Returns:
            Number of debates a stop was issued to
        """
        orchestrators = list(self._orchestrators.items())
        logger.info(f"Stopping {len(orchestrators)} running debate(s): {reason}")
        for debate_id, orchestrator in orchestrators:
            try:
                await orchestrator.stop(reason)
            except Exception as e:
                logger.error(f"Failed to stop debate {debate_id}: {e}")
        return len(orchestrators)
