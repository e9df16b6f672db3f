"""Debate service interface and supervisor implementation.

The supervisor owns storage, the broadcaster and the orchestrator registry.
Each started debate runs as a background asyncio task; HTTP handlers only
talk to the supervisor.
"""

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from .agents import AgentGateway
from .errors import InvalidProposition
from .events import TERMINAL_EVENTS, DebateBroadcaster, DebateEventType
from .normalizer import PropositionNormalizer
from .orchestrator import DebateOrchestrator, Sleep
from .persistence import DebateStorage
from .registry import OrchestratorRegistry
from .schemas import OrchestratorConfig
from .state import (
    DebatePhase,
    DebateSession,
    DebateStatus,
    DebateTranscript,
    FlowMode,
    Intervention,
    InterventionType,
    Speaker,
)
from .state_machine import Clock

logger = logging.getLogger(__name__)

AgentFactory = Callable[[DebateSession], AgentGateway]


class DebateService(Protocol):
    """Service interface used by the HTTP layer."""

    async def create_debate(
        self,
        proposition: str,
        proposition_context: Optional[Dict[str, Any]] = None,
        flow_mode: Optional[FlowMode] = None,
    ) -> DebateSession:
        ...

    async def start_debate(self, debate_id: str) -> DebateOrchestrator:
        ...

    async def get_session(self, debate_id: str) -> DebateSession:
        ...

    async def pause(self, debate_id: str) -> DebateSession:
        ...

    async def resume(self, debate_id: str) -> DebateSession:
        ...

    async def stop(self, debate_id: str, reason: Optional[str] = None) -> DebateSession:
        ...

    def continue_debate(self, debate_id: str) -> bool:
        ...

    async def submit_intervention(
        self,
        debate_id: str,
        intervention_type: InterventionType,
        content: str,
        directed_to: Optional[Speaker] = None,
    ) -> Intervention:
        ...

    async def get_transcript(self, debate_id: str) -> DebateTranscript:
        ...

    def stream_events(self, debate_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield live events until the debate finishes.

        Yields:
            Event dicts with a "type" field
        """
        ...

    def running_debate_ids(self) -> List[str]:
        ...


class DebateSupervisor:
    """Runs debates in the background and routes control requests to them."""

    def __init__(
        self,
        storage: DebateStorage,
        agent_factory: AgentFactory,
        broadcaster: Optional[DebateBroadcaster] = None,
        config: Optional[OrchestratorConfig] = None,
        normalizer: Optional[PropositionNormalizer] = None,
        registry: Optional[OrchestratorRegistry] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Optional[Clock] = None,
        event_timeout: float = 60,
    ):
        """Initialize the supervisor.

        Args:
            storage: DebateStorage implementation
            agent_factory: Builds the agent gateway for a debate session
            broadcaster: Live-update channel shared by all debates
            config: Default orchestrator settings
            normalizer: Proposition normalizer handed to each orchestrator
            registry: Orchestrator registry (created if omitted)
            sleep: Retry sleep handed to each orchestrator
            clock: Millisecond clock handed to each orchestrator
            event_timeout: Seconds of stream silence before giving up
        """
        self.storage = storage
        self.agent_factory = agent_factory
        self.broadcaster = broadcaster or DebateBroadcaster()
        self.config = config or OrchestratorConfig()
        self.normalizer = normalizer
        self.registry = registry or OrchestratorRegistry()
        self.event_timeout = event_timeout
        self._sleep = sleep
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    async def create_debate(
        self,
        proposition: str,
        proposition_context: Optional[Dict[str, Any]] = None,
        flow_mode: Optional[FlowMode] = None,
    ) -> DebateSession:
        """Persist a new INITIALIZING session.

        Raises:
            InvalidProposition: If the proposition is empty or too short
        """
        text = (proposition or "").strip()
        if len(text) < self.config.min_proposition_length:
            raise InvalidProposition(
                f"proposition must be at least {self.config.min_proposition_length} characters"
            )

        session: DebateSession = {
            "id": str(uuid.uuid4()),
            "proposition": text,
            "proposition_context": proposition_context,
            "current_phase": DebatePhase.INITIALIZING.value,
            "status": DebateStatus.INITIALIZING.value,
            "current_speaker": Speaker.SYSTEM.value,
            "started_at": None,
            "completed_at": None,
            "total_elapsed_ms": 0,
            "paused_phase": None,
            "error": None,
            "flow_mode": flow_mode or self.config.flow_mode,
            "awaiting_continue": False,
        }
        created = await self.storage.create_session(session)
        logger.info(f"Created debate {created['id']} (flow mode: {created['flow_mode']})")
        return created

    async def start_debate(self, debate_id: str) -> DebateOrchestrator:
        """Launch the debate loop as a background task.

        Raises:
            ValueError: Unknown debate, or one that is running or already ran
        """
        if self.registry.has(debate_id):
            raise ValueError(f"Debate {debate_id} is already running")
        session = await self.storage.get_session(debate_id)
        if session.get("status") != DebateStatus.INITIALIZING.value:
            raise ValueError(f"Debate {debate_id} has already been started (status: {session.get('status')})")

        config = self.config.model_copy(update={"flow_mode": session.get("flow_mode") or self.config.flow_mode})
        orchestrator = DebateOrchestrator(
            debate_id,
            self.storage,
            self.agent_factory(session),
            broadcaster=self.broadcaster,
            config=config,
            normalizer=self.normalizer,
            sleep=self._sleep,
            clock=self._clock,
        )
        self.registry.register(debate_id, orchestrator)
        self._tasks[debate_id] = asyncio.create_task(self._run(orchestrator, session))
        return orchestrator

    async def _run(self, orchestrator: DebateOrchestrator, session: DebateSession) -> None:
        debate_id = orchestrator.debate_id
        try:
            await orchestrator.start_debate(session["proposition"], session.get("proposition_context"))
        except InvalidProposition as e:
            logger.warning(f"Debate {debate_id} rejected its proposition: {e.reason}")
            self.broadcaster.publish(
                debate_id,
                DebateEventType.DEBATE_ERROR,
                {"error": str(e), "invalid_proposition": True},
            )
        except Exception:
            # The orchestrator has already persisted and broadcast the failure
            logger.exception(f"Debate {debate_id} ended with an error")
        finally:
            self.registry.unregister(debate_id)
            self._tasks.pop(debate_id, None)

    async def wait_until_finished(self, debate_id: str) -> None:
        """Block until the background task of a debate has ended."""
        task = self._tasks.get(debate_id)
        if task is not None:
            await asyncio.shield(task)

    def _require_running(self, debate_id: str) -> DebateOrchestrator:
        orchestrator = self.registry.get(debate_id)
        if orchestrator is None:
            raise ValueError(f"No running debate found for {debate_id}")
        return orchestrator

    async def get_session(self, debate_id: str) -> DebateSession:
        return await self.storage.get_session(debate_id)

    async def pause(self, debate_id: str) -> DebateSession:
        await self._require_running(debate_id).pause()
        return await self.storage.get_session(debate_id)

    async def resume(self, debate_id: str) -> DebateSession:
        await self._require_running(debate_id).resume()
        return await self.storage.get_session(debate_id)

    async def stop(self, debate_id: str, reason: Optional[str] = None) -> DebateSession:
        await self._require_running(debate_id).stop(reason)
        return await self.storage.get_session(debate_id)

    def continue_debate(self, debate_id: str) -> bool:
        return self._require_running(debate_id).continue_debate()

    async def submit_intervention(
        self,
        debate_id: str,
        intervention_type: InterventionType,
        content: str,
        directed_to: Optional[Speaker] = None,
    ) -> Intervention:
        orchestrator = self._require_running(debate_id)
        return await orchestrator.handle_intervention(intervention_type, content, directed_to)

    async def stop_all(self, reason: str = "Server shutdown") -> int:
        return await self.registry.stop_all(reason)

    def running_debate_ids(self) -> List[str]:
        return self.registry.running_debate_ids()

    async def get_transcript(self, debate_id: str) -> DebateTranscript:
        """Return the saved transcript, or build one from what is stored.

        Raises:
            ValueError: If the debate does not exist
        """
        session = await self.storage.get_session(debate_id)
        if session.get("transcript"):
            return session["transcript"]

        orchestrator = self.registry.get(debate_id)
        if orchestrator is None:
            orchestrator = DebateOrchestrator(debate_id, self.storage, self.agent_factory(session))
        return await orchestrator.build_final_transcript()

    async def stream_events(self, debate_id: str) -> AsyncIterator[Dict[str, Any]]:
        queue = self.broadcaster.subscribe(debate_id)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.event_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Debate event stream timeout for {debate_id}")
                    yield {"type": "error", "debate_id": debate_id, "message": "Debate event stream timeout"}
                    break

                yield event

                if event.get("type") in TERMINAL_EVENTS:
                    break
        finally:
            self.broadcaster.unsubscribe(debate_id, queue)
