"""Debate orchestrator.

Drives one debate from INITIALIZING to COMPLETED: advances the phase state
machine, pulls turns from the scheduler, calls agents with retry and
timeout, persists utterances, answers user interventions and builds the
final transcript.

Control flow is explicit and sequential. Pause and stop are only honoured
between turns; an in-flight agent call always finishes (or times out)
first.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .agents import AgentGateway
from .errors import AgentCallFailed, InvalidProposition, InvalidTransition, NonRetryableAgentError
from .events import DebateBroadcaster, DebateEventType
from .normalizer import BasicPropositionNormalizer, PropositionNormalizer
from .persistence import DebateStorage
from .protocol import PHASE_ORDER, get_next_phase, is_speaker_allowed_in_phase, storage_speaker
from .schemas import NormalizedProposition, OrchestratorConfig
from .state import (
    AgentContext,
    DebatePhase,
    DebateTranscript,
    Intervention,
    InterventionType,
    OrchestratorStatus,
    PhaseSummary,
    Speaker,
    Turn,
    Utterance,
)
from .state_machine import Clock, DebateStateMachine, monotonic_ms
from .turns import TurnScheduler

logger = logging.getLogger(__name__)

TRANSCRIPT_SCHEMA_VERSION = "2.0.0"

Sleep = Callable[[float], Awaitable[Any]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DebateOrchestrator:
    """Coordinator for a single debate.

    Run-loop states: idle -> running -> paused <-> running -> completed,
    with errored reachable from anywhere.

    One orchestrator drives exactly one debate. At most one agent call is
    in flight at a time; scheduled turns and intervention answers share
    a lock.
    """

    def __init__(
        self,
        debate_id: str,
        storage: DebateStorage,
        agents: AgentGateway,
        broadcaster: Optional[DebateBroadcaster] = None,
        config: Optional[OrchestratorConfig] = None,
        normalizer: Optional[PropositionNormalizer] = None,
        state_machine: Optional[DebateStateMachine] = None,
        scheduler: Optional[TurnScheduler] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Optional[Clock] = None,
    ):
        """Wire the orchestrator to its collaborators.

        Args:
            debate_id: Debate this orchestrator drives
            storage: DebateStorage implementation
            agents: AgentGateway producing utterance text
            broadcaster: Optional live-update channel
            config: Retry, timeout and flow settings
            normalizer: Proposition normalizer (basic normalizer by default)
            state_machine: Phase state machine (created if omitted)
            scheduler: Turn scheduler (created if omitted)
            sleep: Awaitable sleep used between retries, in seconds
            clock: Millisecond clock shared with the state machine
        """
        self.debate_id = debate_id
        self.storage = storage
        self.agents = agents
        self.broadcaster = broadcaster
        self.config = config or OrchestratorConfig()
        self.normalizer = normalizer or BasicPropositionNormalizer()
        self.clock = clock or monotonic_ms
        self.state_machine = state_machine or DebateStateMachine(debate_id, clock=self.clock)
        self.scheduler = scheduler or TurnScheduler()
        self._sleep = sleep

        self.status = OrchestratorStatus.IDLE
        self.proposition: Optional[str] = None
        self._start_ms: Optional[float] = None
        self._paused = False
        self._stopped = False
        self._awaiting_continue = False

        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._continue_event = asyncio.Event()
        self._agent_lock = asyncio.Lock()

        self.state_machine.add_listener(self._on_state_event)
        logger.info(f"Debate orchestrator created for {debate_id}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def is_awaiting_continue(self) -> bool:
        return self._awaiting_continue

    def elapsed_ms(self) -> int:
        """Wall time since the debate started, in milliseconds."""
        if self._start_ms is None:
            return 0
        return int(self.clock() - self._start_ms)

    def _broadcast(self, event_type: DebateEventType, **payload: Any) -> None:
        if self.config.broadcast_events and self.broadcaster is not None:
            self.broadcaster.publish(self.debate_id, event_type, payload)

    def _on_state_event(self, event: str, payload: Dict[str, Any]) -> None:
        # Pause, resume, completion and errors are announced by the
        # orchestrator itself with richer payloads
        if event == "phase_transition":
            self._broadcast(DebateEventType.PHASE_TRANSITION, **payload)

    async def _persist_state(self, **extra: Any) -> None:
        """Write the state machine snapshot (plus extra columns) to storage."""
        snapshot = self.state_machine.snapshot()
        snapshot.pop("id", None)
        await self.storage.update_session(self.debate_id, **snapshot, **extra)

    def _ensure_not_stopped(self, target: str) -> None:
        if self._stopped:
            raise InvalidTransition(self.state_machine.current_phase.value, target, "debate has been stopped")

    async def _should_exit(self) -> bool:
        """Checkpoint between turns: block while paused, report stop."""
        if self._stopped:
            return True
        if self._paused:
            logger.info(f"Debate {self.debate_id} paused, waiting for resume")
            await self._resume_event.wait()
        return self._stopped

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_debate(
        self,
        raw_proposition: str,
        proposition_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[DebateTranscript]:
        """Run the whole debate and return its transcript.

        Returns None if the debate was stopped before completion.

        Raises:
            InvalidProposition: Bad input; the session stays INITIALIZING
            AgentCallFailed: An agent kept failing; the debate is in ERROR
        """
        logger.info(f"Starting debate {self.debate_id}")
        normalized = await self.normalize_proposition(raw_proposition, proposition_context)
        self.proposition = normalized.normalized_question
        logger.info(f"Proposition normalized (confidence {normalized.confidence}): {self.proposition}")

        try:
            if await self._should_exit():
                return None
            self._start_ms = self.clock()
            self.status = OrchestratorStatus.RUNNING
            self.state_machine.initialize()
            self.scheduler.set_phase(self.state_machine.current_phase)
            await self._persist_state(started_at=_now_iso())

            await self.execute_all_phases(self.proposition)
            if self._stopped:
                logger.info(f"Debate {self.debate_id} stopped before completion")
                return None

            transcript = await self.complete_debate()
            logger.info(f"Debate {self.debate_id} completed successfully")
            return transcript
        except Exception as e:
            if self._stopped:
                logger.info(f"Debate {self.debate_id} stopped while a turn was failing: {e}")
                return None
            logger.error(f"Debate {self.debate_id} execution failed: {e}")
            await self.fail(str(e) or type(e).__name__)
            raise

    async def normalize_proposition(
        self,
        raw_input: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> NormalizedProposition:
        """Validate and restate a free-text proposition.

        Raises:
            InvalidProposition: Empty, too short, or judged not debatable
        """
        text = (raw_input or "").strip()
        if not text:
            raise InvalidProposition("proposition is empty")
        if len(text) < self.config.min_proposition_length:
            raise InvalidProposition(
                f"proposition must be at least {self.config.min_proposition_length} characters"
            )

        normalized = await self.normalizer.normalize(text, context)
        valid, reason = await self.normalizer.validate(normalized.normalized_question)
        if not valid:
            raise InvalidProposition(reason or "proposition is not debatable")
        return normalized

    async def execute_all_phases(self, proposition: str) -> None:
        """Run PHASE_1 through PHASE_6, transitioning after each."""
        for phase in PHASE_ORDER:
            if await self._should_exit():
                return

            logger.info(f"Debate {self.debate_id}: executing {phase.value}")
            await self.execute_phase(phase, proposition)

            if await self._should_exit():
                return

            next_phase = get_next_phase(phase)
            if next_phase is not None:
                self.state_machine.transition(next_phase)
                self.scheduler.set_phase(next_phase)
                await self._persist_state()

    async def execute_phase(self, phase: DebatePhase, proposition: str) -> int:
        """Execute every scheduled turn of one phase.

        Returns:
            Number of turns executed
        """
        plan = self.scheduler.get_phase_execution_plan(phase)
        self._broadcast(
            DebateEventType.PHASE_START,
            phase=phase.value,
            phase_name=plan.name,
            turn_count=len(plan.turns),
            expected_duration_ms=plan.expected_duration_ms,
        )

        turns_executed = 0
        while self.scheduler.has_next_turn(phase):
            if await self._should_exit():
                return turns_executed
            turn = self.scheduler.next_turn(phase)
            await self.execute_turn(turn, proposition, phase=phase)
            turns_executed += 1

        if not self._stopped:
            self._broadcast(
                DebateEventType.PHASE_COMPLETE,
                phase=phase.value,
                phase_name=plan.name,
                turns_executed=turns_executed,
            )
        logger.info(f"Debate {self.debate_id}: {phase.value} complete ({turns_executed} turns)")
        return turns_executed

    async def execute_turn(
        self,
        turn: Turn,
        proposition: str,
        phase: Optional[DebatePhase] = None,
    ) -> Utterance:
        """Produce, persist and broadcast the utterance for one turn."""
        phase = phase or self.state_machine.current_phase
        logger.debug(f"Debate {self.debate_id}: turn {turn.turn_number} {turn.speaker.value} {turn.prompt_type}")

        started = self.clock()
        context = await self.build_agent_context(turn.speaker, proposition, phase=phase)
        content = await self.call_agent(turn.speaker, turn.prompt_type, proposition, context)

        utterance: Utterance = {
            "debate_id": self.debate_id,
            "timestamp_ms": self.elapsed_ms(),
            "phase": phase.value,
            "speaker": storage_speaker(turn.speaker).value,
            "content": content,
            "metadata": {
                "prompt_type": turn.prompt_type,
                "turn_number": turn.turn_number,
                "generation_time_ms": int(self.clock() - started),
                "model": self.agents.get_metadata(turn.speaker).get("model", "unknown"),
            },
        }
        return await self.record_utterance(utterance)

    async def build_agent_context(
        self,
        speaker: Speaker,
        proposition: Optional[str] = None,
        phase: Optional[DebatePhase] = None,
        intervention: Optional[Dict[str, Any]] = None,
    ) -> AgentContext:
        """Assemble what an agent sees: the proposition and all prior utterances."""
        utterances = await self.storage.list_utterances(self.debate_id)
        session = await self.storage.get_session(self.debate_id)
        context: AgentContext = {
            "debate_id": self.debate_id,
            "speaker": storage_speaker(speaker).value,
            "proposition": proposition or self.proposition or session.get("proposition", ""),
            "previous_utterances": utterances,
            "current_phase": (phase or self._active_phase()).value,
            "proposition_context": session.get("proposition_context"),
        }
        if intervention is not None:
            context["intervention"] = intervention
        return context

    def _active_phase(self) -> DebatePhase:
        """The debate phase in play, looking through a pause."""
        return self.state_machine.paused_phase or self.state_machine.current_phase

    async def call_agent(
        self,
        speaker: Speaker,
        prompt_type: str,
        proposition: str,
        context: AgentContext,
    ) -> str:
        """Call an agent with bounded retries.

        Makes up to ``max_retries`` attempts, sleeping ``retry_delay_ms``
        between them. ``NonRetryableAgentError`` ends the loop at once.

        Raises:
            AgentCallFailed: After the last failed attempt
        """
        logger.debug(f"Calling {speaker.value} agent for {prompt_type}")
        last_error: Optional[BaseException] = None
        attempts = 0

        async with self._agent_lock:
            for attempt in range(1, self.config.max_retries + 1):
                attempts = attempt
                try:
                    return await self._call_agent_internal(speaker, prompt_type, context)
                except NonRetryableAgentError as e:
                    last_error = e
                    logger.error(f"{speaker.value} agent rejected {prompt_type} (not retryable): {e}")
                    break
                except Exception as e:
                    last_error = e
                    if self._stopped:
                        logger.info(f"Debate {self.debate_id} stopped, not retrying {speaker.value} {prompt_type}")
                        break
                    if attempt < self.config.max_retries:
                        logger.warning(
                            f"{speaker.value} agent failed on {prompt_type} "
                            f"(attempt {attempt}/{self.config.max_retries}): {e!r}, retrying"
                        )
                        await self._sleep(self.config.retry_delay_ms / 1000)

        logger.error(f"{speaker.value} agent failed on {prompt_type} after {attempts} attempt(s): {last_error!r}")
        raise AgentCallFailed(storage_speaker(speaker).value, prompt_type, last_error, attempts)

    async def _call_agent_internal(self, speaker: Speaker, prompt_type: str, context: AgentContext) -> str:
        """One gateway call bounded by ``agent_timeout_ms``."""
        return await asyncio.wait_for(
            self.agents.generate(storage_speaker(speaker), prompt_type, context),
            timeout=self.config.agent_timeout_ms / 1000,
        )

    async def record_utterance(self, utterance: Utterance) -> Utterance:
        """Validate (best-effort), persist and broadcast an utterance.

        Persistence failures propagate immediately.
        """
        if self.config.validate_utterances:
            warnings = self._validate_utterance(utterance)
            if warnings:
                logger.warning(f"Utterance validation warnings for debate {self.debate_id}: {warnings}")
                utterance["metadata"]["warnings"] = warnings

        persisted = await self.storage.create_utterance(utterance)
        logger.info(f"Utterance {persisted['id']} persisted for debate {self.debate_id}")

        self._broadcast(
            DebateEventType.UTTERANCE,
            id=persisted["id"],
            timestamp_ms=persisted["timestamp_ms"],
            phase=persisted["phase"],
            speaker=persisted["speaker"],
            content=persisted["content"],
            metadata=persisted.get("metadata", {}),
        )

        if self.config.flow_mode == "step" and not self._stopped:
            await self._wait_for_continue(persisted["phase"], persisted["speaker"])
        return persisted

    @staticmethod
    def _validate_utterance(utterance: Utterance) -> List[str]:
        warnings: List[str] = []
        if not utterance.get("content", "").strip():
            warnings.append("content is empty")
        phase = DebatePhase(utterance["phase"])
        if not is_speaker_allowed_in_phase(Speaker(utterance["speaker"]), phase):
            warnings.append(f"speaker {utterance['speaker']} is not allowed in {phase.value}")
        return warnings

    async def _wait_for_continue(self, phase: str, speaker: str) -> None:
        """Step mode: hold the loop until ``continue_debate()`` or ``stop()``."""
        logger.info(f"Debate {self.debate_id}: step mode, waiting for continue")
        self._continue_event.clear()
        self._awaiting_continue = True
        await self.storage.update_session(self.debate_id, awaiting_continue=True)
        self._broadcast(
            DebateEventType.AWAITING_CONTINUE,
            current_phase=phase,
            current_speaker=speaker,
            timestamp=_now_iso(),
        )

        await self._continue_event.wait()
        self._awaiting_continue = False
        if not self._stopped:
            await self.storage.update_session(self.debate_id, awaiting_continue=False)

    def continue_debate(self) -> bool:
        """Release a step-mode wait. Returns False if nothing was waiting."""
        if not self._awaiting_continue:
            logger.warning(f"Continue requested for debate {self.debate_id} but it is not waiting")
            return False
        self._continue_event.set()
        return True

    async def pause(self) -> None:
        """Pause the debate; takes effect before the next turn starts.

        Raises:
            InvalidTransition: If already paused, stopped or terminal
        """
        self._ensure_not_stopped(DebatePhase.PAUSED.value)
        logger.info(f"Pausing debate {self.debate_id}")
        self.state_machine.pause()
        self._paused = True
        self._resume_event.clear()
        self.status = OrchestratorStatus.PAUSED

        await self._persist_state()
        self._broadcast(
            DebateEventType.DEBATE_PAUSED,
            phase=self.state_machine.paused_phase.value,
            total_elapsed_ms=self.state_machine.total_elapsed_ms,
            paused_at=_now_iso(),
        )

    async def resume(self) -> None:
        """Resume a paused debate.

        Raises:
            InvalidTransition: If the debate is not paused or was stopped
        """
        self._ensure_not_stopped("RESUME")
        logger.info(f"Resuming debate {self.debate_id}")
        self.state_machine.resume()
        self._paused = False
        self.status = OrchestratorStatus.RUNNING if self._start_ms is not None else OrchestratorStatus.IDLE
        self._resume_event.set()

        await self._persist_state()
        self._broadcast(
            DebateEventType.DEBATE_RESUMED,
            phase=self.state_machine.current_phase.value,
            total_elapsed_ms=self.state_machine.total_elapsed_ms,
            resumed_at=_now_iso(),
        )

    async def stop(self, reason: Optional[str] = None) -> None:
        """Stop the debate at the next checkpoint.

        The in-flight agent call, if any, is not cancelled. The session is
        marked completed and ``debate_stopped`` is broadcast.
        """
        if self._stopped or self.state_machine.is_terminal:
            logger.info(f"Debate {self.debate_id} already finished, ignoring stop")
            return

        reason = reason or "User stopped debate"
        logger.info(f"Stopping debate {self.debate_id}: {reason}")
        self._stopped = True
        self._paused = False
        self.status = OrchestratorStatus.COMPLETED
        self._resume_event.set()
        self._continue_event.set()

        await self.storage.update_session(
            self.debate_id,
            status="completed",
            paused_phase=None,
            awaiting_continue=False,
            completed_at=_now_iso(),
            total_elapsed_ms=self.state_machine.total_elapsed_ms,
        )
        self._broadcast(
            DebateEventType.DEBATE_STOPPED,
            stopped_at=_now_iso(),
            reason=reason,
            total_duration_ms=self.elapsed_ms(),
        )

    async def fail(self, reason: str) -> None:
        """Move the debate to ERROR, keeping everything recorded so far."""
        self.status = OrchestratorStatus.ERRORED
        self._paused = False
        self._resume_event.set()
        if self.state_machine.is_terminal:
            return

        self.state_machine.error(reason)
        try:
            await self._persist_state(awaiting_continue=False)
        except Exception as e:
            logger.error(f"Failed to persist error state for debate {self.debate_id}: {e}")
        self._broadcast(DebateEventType.DEBATE_ERROR, error=reason, total_duration_ms=self.elapsed_ms())

    # ------------------------------------------------------------------
    # Interventions
    # ------------------------------------------------------------------

    async def handle_intervention(
        self,
        intervention_type: InterventionType,
        content: str,
        directed_to: Optional[Speaker] = None,
    ) -> Intervention:
        """Record a user intervention and act on it.

        Pause and resume requests drive the state machine. Questions,
        challenges and evidence are answered by the addressed agent (the
        moderator when undirected) and the answer is written onto the same
        intervention. The turn cursor is never touched.

        Returns:
            The stored intervention, including the response if one was made
        """
        intervention_type = InterventionType(intervention_type)
        target = storage_speaker(Speaker(directed_to)) if directed_to else None
        logger.info(f"Handling {intervention_type.value} intervention for debate {self.debate_id}")

        record = await self.storage.create_intervention({
            "debate_id": self.debate_id,
            "timestamp_ms": self.elapsed_ms(),
            "type": intervention_type.value,
            "content": content,
            "directed_to": target.value if target else None,
        })

        if intervention_type == InterventionType.PAUSE_REQUEST:
            if self._paused:
                logger.info(f"Debate {self.debate_id} already paused, pause request recorded only")
            else:
                await self.pause()
            return record

        if intervention_type == InterventionType.RESUME_REQUEST:
            if not self._paused:
                logger.info(f"Debate {self.debate_id} is not paused, resume request recorded only")
            else:
                await self.resume()
            return record

        speaker = target or Speaker.MODERATOR
        context = await self.build_agent_context(
            speaker,
            intervention={"id": record["id"], "type": intervention_type.value, "content": content},
        )
        response = await self.call_agent(speaker, "intervention_response", context["proposition"], context)
        updated = await self.storage.update_intervention_response(record["id"], response, self.elapsed_ms())

        self._broadcast(
            DebateEventType.INTERVENTION_RESPONSE,
            intervention_id=updated["id"],
            intervention_type=updated["type"],
            directed_to=speaker.value,
            response=response,
            timestamp_ms=updated["response_timestamp_ms"],
        )
        logger.info(f"Intervention {updated['id']} answered by {speaker.value}")
        return updated

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_debate(self) -> DebateTranscript:
        """Complete the state machine, then build and save the transcript."""
        logger.info(f"Completing debate {self.debate_id}")
        self.state_machine.complete()
        await self._persist_state(completed_at=_now_iso(), awaiting_continue=False)

        transcript = await self.build_final_transcript()
        await self.storage.save_transcript(self.debate_id, transcript)
        self.status = OrchestratorStatus.COMPLETED

        self._broadcast(
            DebateEventType.DEBATE_COMPLETE,
            completed_at=transcript["meta"]["completed_at"],
            total_duration_ms=transcript["meta"]["total_duration_ms"],
            utterance_count=transcript["meta"]["utterance_count"],
        )
        return transcript

    async def build_final_transcript(self) -> DebateTranscript:
        """Assemble the export document from storage.

        Raises:
            ValueError: If the debate session does not exist
        """
        session = await self.storage.get_session(self.debate_id)
        utterances = await self.storage.list_utterances(self.debate_id)
        interventions = await self.storage.list_interventions(self.debate_id)

        if self._start_ms is not None:
            total_ms = self.state_machine.total_elapsed_ms
            status = self.state_machine.status.value
        else:
            total_ms = session.get("total_elapsed_ms") or 0
            status = session.get("status", "initializing")

        return {
            "meta": {
                "schema_version": TRANSCRIPT_SCHEMA_VERSION,
                "debate_id": self.debate_id,
                "proposition": session.get("proposition", ""),
                "proposition_context": session.get("proposition_context"),
                "status": status,
                "started_at": session.get("started_at"),
                "completed_at": session.get("completed_at") or _now_iso(),
                "total_duration_ms": total_ms,
                "total_duration_seconds": total_ms / 1000,
                "utterance_count": len(utterances),
                "intervention_count": len(interventions),
                "agents": {
                    speaker.value: self.agents.get_metadata(speaker)
                    for speaker in (Speaker.PRO, Speaker.CON, Speaker.MODERATOR)
                },
            },
            "utterances": utterances,
            "interventions": interventions,
            "phases": self.build_phase_summary(utterances),
        }

    @staticmethod
    def build_phase_summary(utterances: List[Utterance]) -> List[PhaseSummary]:
        """Group utterances by phase in first-seen order."""
        grouped: Dict[str, Dict[str, Any]] = {}
        for utterance in utterances:
            data = grouped.setdefault(utterance["phase"], {
                "started_at_ms": utterance["timestamp_ms"],
                "ended_at_ms": utterance["timestamp_ms"],
                "count": 0,
                "speakers": [],
            })
            data["started_at_ms"] = min(data["started_at_ms"], utterance["timestamp_ms"])
            data["ended_at_ms"] = max(data["ended_at_ms"], utterance["timestamp_ms"])
            data["count"] += 1
            if utterance["speaker"] not in data["speakers"]:
                data["speakers"].append(utterance["speaker"])

        return [
            {
                "phase": phase,
                "started_at_ms": data["started_at_ms"],
                "ended_at_ms": data["ended_at_ms"],
                "duration_ms": data["ended_at_ms"] - data["started_at_ms"],
                "utterance_count": data["count"],
                "speakers": data["speakers"],
            }
            for phase, data in grouped.items()
        ]
