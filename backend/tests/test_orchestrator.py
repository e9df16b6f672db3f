"""Tests for the debate orchestrator."""

import asyncio

import pytest

from debate.errors import (
    AgentCallFailed,
    AgentUnavailableError,
    InvalidProposition,
    InvalidTransition,
    NonRetryableAgentError,
)
from debate.events import DebateBroadcaster
from debate.orchestrator import DebateOrchestrator
from debate.schemas import OrchestratorConfig
from debate.state import DebatePhase, InterventionType, OrchestratorStatus, Speaker, Turn

PROPOSITION = "Should cities ban private cars downtown?"

# 2 + 4 + 4 + 4 + 2 + 1 scheduled turns
TOTAL_TURNS = 17


async def wait_until(predicate, attempts: int = 1000) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def broadcaster():
    return DebateBroadcaster()


@pytest.fixture
def make_orchestrator(storage, fake_clock, recording_sleep, broadcaster):
    def _make(agents, debate_id: str = "debate-1", **config):
        return DebateOrchestrator(
            debate_id,
            storage,
            agents,
            broadcaster=broadcaster,
            config=OrchestratorConfig(**config),
            sleep=recording_sleep,
            clock=fake_clock,
        )

    return _make


class TestCallAgent:
    """Retry and timeout behaviour of agent calls."""

    @pytest.mark.asyncio
    async def test_always_failing_agent_gets_three_attempts(self, make_session, make_gateway, make_orchestrator, recording_sleep):
        await make_session()
        gateway = make_gateway(failures=[AgentUnavailableError("down")] * 5)
        orchestrator = make_orchestrator(gateway, max_retries=3, retry_delay_ms=1000)

        with pytest.raises(AgentCallFailed) as exc_info:
            await orchestrator.call_agent(Speaker.PRO, "opening_statement", PROPOSITION, {"proposition": PROPOSITION})

        assert len(gateway.calls) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.speaker == "pro"
        assert isinstance(exc_info.value.last_error, AgentUnavailableError)
        # No sleep after the final attempt
        assert recording_sleep.calls == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_fail_once_then_succeed(self, make_session, make_gateway, make_orchestrator, recording_sleep):
        await make_session()
        gateway = make_gateway(failures=[RuntimeError("rate limited")])
        orchestrator = make_orchestrator(gateway, max_retries=3, retry_delay_ms=250)

        result = await orchestrator.call_agent(Speaker.CON, "rebuttal", PROPOSITION, {"proposition": PROPOSITION})

        assert result == "con rebuttal #2"
        assert len(gateway.calls) == 2
        assert recording_sleep.calls == [0.25]

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_at_once(self, make_session, make_gateway, make_orchestrator, recording_sleep):
        await make_session()
        gateway = make_gateway(failures=[NonRetryableAgentError("bad input")])
        orchestrator = make_orchestrator(gateway, max_retries=3)

        with pytest.raises(AgentCallFailed) as exc_info:
            await orchestrator.call_agent(Speaker.PRO, "opening_statement", PROPOSITION, {"proposition": PROPOSITION})

        assert len(gateway.calls) == 1
        assert exc_info.value.attempts == 1
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self, make_session, make_orchestrator):
        await make_session()

        class SlowGateway:
            def __init__(self):
                self.calls = 0

            async def generate(self, speaker, prompt_type, context):
                self.calls += 1
                await asyncio.sleep(10)
                return "too late"

            def get_metadata(self, speaker):
                return {"model": "slow"}

        gateway = SlowGateway()
        orchestrator = make_orchestrator(gateway, max_retries=2, agent_timeout_ms=10)

        with pytest.raises(AgentCallFailed) as exc_info:
            await orchestrator.call_agent(Speaker.PRO, "opening_statement", PROPOSITION, {"proposition": PROPOSITION})

        assert gateway.calls == 2
        assert isinstance(exc_info.value.last_error, asyncio.TimeoutError)
        # A bare TimeoutError has no message, so the type name is reported
        assert str(exc_info.value).endswith(": TimeoutError")

    @pytest.mark.asyncio
    async def test_system_speaker_is_routed_to_moderator(self, make_session, make_gateway, make_orchestrator):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)

        await orchestrator.call_agent(Speaker.SYSTEM, "synthesis", PROPOSITION, {"proposition": PROPOSITION})

        assert gateway.calls[0]["speaker"] == Speaker.MODERATOR


class TestNormalizeProposition:
    @pytest.mark.asyncio
    async def test_empty_and_short_input_rejected(self, make_gateway, make_orchestrator):
        orchestrator = make_orchestrator(make_gateway())

        with pytest.raises(InvalidProposition):
            await orchestrator.normalize_proposition("   ")
        with pytest.raises(InvalidProposition):
            await orchestrator.normalize_proposition("Cars?")

    @pytest.mark.asyncio
    async def test_normalizes_into_question(self, make_gateway, make_orchestrator):
        orchestrator = make_orchestrator(make_gateway())

        result = await orchestrator.normalize_proposition("  remote work   improves productivity ", {"source": "user"})

        assert result.normalized_question == "Remote work improves productivity?"
        assert result.context == {"source": "user"}
        assert 0 <= result.confidence <= 1

    @pytest.mark.asyncio
    async def test_invalid_proposition_leaves_session_initializing(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        orchestrator = make_orchestrator(make_gateway())

        with pytest.raises(InvalidProposition):
            await orchestrator.start_debate("no")

        session = await storage.get_session("debate-1")
        assert session["status"] == "initializing"
        assert orchestrator.state_machine.current_phase == DebatePhase.INITIALIZING
        assert orchestrator.status == OrchestratorStatus.IDLE


class TestTurns:
    @pytest.mark.asyncio
    async def test_execute_turn_persists_and_broadcasts(self, storage, make_session, make_gateway, make_orchestrator, broadcaster, fake_clock):
        await make_session()
        gateway = make_gateway(clock=fake_clock)
        orchestrator = make_orchestrator(gateway)
        orchestrator.state_machine.initialize()
        queue = broadcaster.subscribe("debate-1")

        turn = Turn(turn_number=1, speaker=Speaker.PRO, prompt_type="opening_statement")
        utterance = await orchestrator.execute_turn(turn, PROPOSITION)

        assert utterance["id"] == 1
        assert utterance["phase"] == "PHASE_1_OPENING"
        assert utterance["speaker"] == "pro"
        assert utterance["content"] == "pro opening_statement #1"
        assert utterance["metadata"]["prompt_type"] == "opening_statement"
        assert utterance["metadata"]["turn_number"] == 1
        assert utterance["metadata"]["generation_time_ms"] == 1000
        assert utterance["metadata"]["model"] == "fake-pro"
        assert "warnings" not in utterance["metadata"]

        assert await storage.list_utterances("debate-1") == [utterance]
        events = drain(queue)
        assert [e["type"] for e in events] == ["utterance"]
        assert events[0]["content"] == utterance["content"]

    @pytest.mark.asyncio
    async def test_agent_sees_previous_utterances(self, make_session, make_gateway, make_orchestrator):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)
        orchestrator.state_machine.initialize()

        await orchestrator.execute_turn(Turn(1, Speaker.PRO, "opening_statement"), PROPOSITION)
        await orchestrator.execute_turn(Turn(2, Speaker.CON, "opening_statement"), PROPOSITION)

        context = gateway.calls[1]["context"]
        assert context["proposition"] == PROPOSITION
        assert context["current_phase"] == "PHASE_1_OPENING"
        assert [u["speaker"] for u in context["previous_utterances"]] == ["pro"]

    @pytest.mark.asyncio
    async def test_validation_warnings_do_not_reject(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        orchestrator = make_orchestrator(make_gateway())

        stored = await orchestrator.record_utterance({
            "debate_id": "debate-1",
            "timestamp_ms": 0,
            "phase": "PHASE_6_SYNTHESIS",
            "speaker": "pro",
            "content": "",
            "metadata": {"prompt_type": "synthesis", "turn_number": 1},
        })

        assert len(stored["metadata"]["warnings"]) == 2
        assert len(await storage.list_utterances("debate-1")) == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_propagates(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        orchestrator = make_orchestrator(make_gateway())
        orchestrator.state_machine.initialize()

        async def broken(utterance):
            raise ConnectionError("database unavailable")

        storage.create_utterance = broken

        with pytest.raises(ConnectionError):
            await orchestrator.execute_turn(Turn(1, Speaker.PRO, "opening_statement"), PROPOSITION)


class TestInterventions:
    @pytest.mark.asyncio
    async def test_pause_request_pauses_without_utterance(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)
        orchestrator.state_machine.initialize()

        record = await orchestrator.handle_intervention(InterventionType.PAUSE_REQUEST, "hold on")

        assert orchestrator.is_paused
        assert orchestrator.status == OrchestratorStatus.PAUSED
        assert record["type"] == "pause_request"
        assert record["response"] is None
        assert await storage.list_utterances("debate-1") == []
        assert gateway.calls == []

        session = await storage.get_session("debate-1")
        assert session["status"] == "paused"
        assert session["paused_phase"] == "PHASE_1_OPENING"

    @pytest.mark.asyncio
    async def test_pause_request_when_paused_is_recorded_only(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        orchestrator = make_orchestrator(make_gateway())
        orchestrator.state_machine.initialize()

        await orchestrator.handle_intervention(InterventionType.PAUSE_REQUEST, "pause")
        await orchestrator.handle_intervention(InterventionType.PAUSE_REQUEST, "pause again")

        assert orchestrator.is_paused
        assert len(await storage.list_interventions("debate-1")) == 2

    @pytest.mark.asyncio
    async def test_resume_request(self, make_session, make_gateway, make_orchestrator):
        await make_session()
        orchestrator = make_orchestrator(make_gateway())
        orchestrator.state_machine.initialize()

        # Not paused: logged no-op
        await orchestrator.handle_intervention(InterventionType.RESUME_REQUEST, "go")
        assert not orchestrator.is_paused

        await orchestrator.handle_intervention(InterventionType.PAUSE_REQUEST, "stop a second")
        await orchestrator.handle_intervention(InterventionType.RESUME_REQUEST, "go on")
        assert not orchestrator.is_paused
        assert orchestrator.state_machine.current_phase == DebatePhase.PHASE_1_OPENING

    @pytest.mark.asyncio
    async def test_question_while_paused_sees_paused_phase(self, make_session, make_gateway, make_orchestrator):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)
        orchestrator.state_machine.initialize()
        await orchestrator.pause()

        await orchestrator.handle_intervention(InterventionType.QUESTION, "What about buses?")

        assert gateway.calls[-1]["context"]["current_phase"] == "PHASE_1_OPENING"
        assert orchestrator.is_paused

    @pytest.mark.asyncio
    async def test_directed_question_is_answered_by_target(self, storage, make_session, make_gateway, make_orchestrator, broadcaster):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)
        orchestrator.state_machine.initialize()
        orchestrator.scheduler.set_phase(DebatePhase.PHASE_1_OPENING)
        orchestrator.scheduler.next_turn(DebatePhase.PHASE_1_OPENING)
        queue = broadcaster.subscribe("debate-1")

        result = await orchestrator.handle_intervention(InterventionType.QUESTION, "What about buses?", Speaker.PRO)

        call = gateway.calls[0]
        assert call["speaker"] == Speaker.PRO
        assert call["prompt_type"] == "intervention_response"
        assert call["context"]["intervention"]["content"] == "What about buses?"

        assert result["response"] == "pro intervention_response #1"
        assert result["directed_to"] == "pro"
        assert result["response_timestamp_ms"] is not None
        assert (await storage.list_interventions("debate-1"))[0]["response"] == result["response"]
        assert await storage.list_utterances("debate-1") == []
        # The turn cursor is untouched
        assert orchestrator.scheduler.current_index == 1

        events = drain(queue)
        assert events[-1]["type"] == "intervention_response"
        assert events[-1]["intervention_id"] == result["id"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("directed_to", [None, Speaker.SYSTEM])
    async def test_undirected_question_goes_to_moderator(self, make_session, make_gateway, make_orchestrator, directed_to):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)
        orchestrator.state_machine.initialize()

        result = await orchestrator.handle_intervention(InterventionType.CHALLENGE, "Is that true?", directed_to)

        assert gateway.calls[0]["speaker"] == Speaker.MODERATOR
        assert result["response"].startswith("moderator intervention_response")

    @pytest.mark.asyncio
    async def test_pause_after_error_raises(self, make_session, make_gateway, make_orchestrator):
        await make_session()
        orchestrator = make_orchestrator(make_gateway())
        orchestrator.state_machine.initialize()
        orchestrator.state_machine.error("boom")

        with pytest.raises(InvalidTransition):
            await orchestrator.pause()


class TestTranscript:
    @pytest.mark.asyncio
    async def test_transcript_from_stored_utterances(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        for timestamp, phase, speaker in [
            (0, "PHASE_1_OPENING", "moderator"),
            (1000, "PHASE_1_OPENING", "pro"),
            (2500, "PHASE_2_CONSTRUCTIVE", "con"),
        ]:
            await storage.create_utterance({
                "debate_id": "debate-1",
                "timestamp_ms": timestamp,
                "phase": phase,
                "speaker": speaker,
                "content": f"{speaker} speaks",
                "metadata": {},
            })
        orchestrator = make_orchestrator(make_gateway())

        transcript = await orchestrator.build_final_transcript()

        assert [u["speaker"] for u in transcript["utterances"]] == ["moderator", "pro", "con"]
        assert transcript["interventions"] == []
        assert transcript["meta"]["schema_version"] == "2.0.0"
        assert transcript["meta"]["proposition"] == PROPOSITION
        assert transcript["meta"]["utterance_count"] == 3
        assert transcript["meta"]["agents"]["pro"]["model"] == "fake-pro"
        assert transcript["phases"] == [
            {
                "phase": "PHASE_1_OPENING",
                "started_at_ms": 0,
                "ended_at_ms": 1000,
                "duration_ms": 1000,
                "utterance_count": 2,
                "speakers": ["moderator", "pro"],
            },
            {
                "phase": "PHASE_2_CONSTRUCTIVE",
                "started_at_ms": 2500,
                "ended_at_ms": 2500,
                "duration_ms": 0,
                "utterance_count": 1,
                "speakers": ["con"],
            },
        ]

    @pytest.mark.asyncio
    async def test_unknown_debate_raises(self, make_gateway, make_orchestrator):
        orchestrator = make_orchestrator(make_gateway(), debate_id="missing")
        with pytest.raises(ValueError, match="No debate session found"):
            await orchestrator.build_final_transcript()


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_full_debate(self, storage, make_session, make_gateway, make_orchestrator, broadcaster, fake_clock):
        await make_session()
        gateway = make_gateway(clock=fake_clock)
        orchestrator = make_orchestrator(gateway)
        queue = broadcaster.subscribe("debate-1")

        transcript = await orchestrator.start_debate(PROPOSITION)

        assert len(gateway.calls) == TOTAL_TURNS
        assert transcript["meta"]["utterance_count"] == TOTAL_TURNS
        assert transcript["meta"]["status"] == "completed"
        assert transcript["meta"]["total_duration_ms"] == TOTAL_TURNS * 1000
        assert [p["phase"] for p in transcript["phases"]] == [
            "PHASE_1_OPENING",
            "PHASE_2_CONSTRUCTIVE",
            "PHASE_3_CROSSEXAM",
            "PHASE_4_REBUTTAL",
            "PHASE_5_CLOSING",
            "PHASE_6_SYNTHESIS",
        ]
        assert transcript["utterances"][-1]["speaker"] == "moderator"
        assert orchestrator.status == OrchestratorStatus.COMPLETED

        session = await storage.get_session("debate-1")
        assert session["status"] == "completed"
        assert session["current_phase"] == "COMPLETED"
        assert session["started_at"] is not None
        assert session["transcript"]["meta"]["debate_id"] == "debate-1"

        events = drain(queue)
        types = [e["type"] for e in events]
        assert types[0] == "phase_transition"
        assert types[1] == "phase_start"
        assert types.count("utterance") == TOTAL_TURNS
        assert types.count("phase_transition") == 6
        assert types.count("phase_complete") == 6
        assert types[-1] == "debate_complete"

    @pytest.mark.asyncio
    async def test_cross_exam_answer_sees_question(self, make_session, make_gateway, make_orchestrator):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)

        await orchestrator.start_debate(PROPOSITION)

        answer = next(c for c in gateway.calls if c["prompt_type"] == "cross_exam_response")
        last = answer["context"]["previous_utterances"][-1]
        assert last["speaker"] == "pro"
        assert last["metadata"]["prompt_type"] == "cross_exam_question"

    @pytest.mark.asyncio
    async def test_agent_failure_errors_debate(self, storage, make_session, make_orchestrator, broadcaster):
        await make_session()

        class BreaksAfterTwo:
            def __init__(self):
                self.calls = 0

            async def generate(self, speaker, prompt_type, context):
                self.calls += 1
                if self.calls > 2:
                    raise AgentUnavailableError("provider outage")
                return f"{speaker.value} says something"

            def get_metadata(self, speaker):
                return {"model": "flaky"}

        gateway = BreaksAfterTwo()
        orchestrator = make_orchestrator(gateway, max_retries=3)
        queue = broadcaster.subscribe("debate-1")

        with pytest.raises(AgentCallFailed):
            await orchestrator.start_debate(PROPOSITION)

        assert gateway.calls == 5
        assert orchestrator.status == OrchestratorStatus.ERRORED
        session = await storage.get_session("debate-1")
        assert session["status"] == "error"
        assert session["current_phase"] == "ERROR"
        assert "provider outage" in session["error"]
        # Utterances recorded before the failure are kept
        assert len(await storage.list_utterances("debate-1")) == 2
        assert drain(queue)[-1]["type"] == "debate_error"

    @pytest.mark.asyncio
    async def test_pause_takes_effect_between_turns(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)
        original_generate = gateway.generate

        async def pausing_generate(speaker, prompt_type, context):
            if not gateway.calls:
                await orchestrator.pause()
            return await original_generate(speaker, prompt_type, context)

        gateway.generate = pausing_generate

        task = asyncio.create_task(orchestrator.start_debate(PROPOSITION))
        await wait_until(lambda: len(storage.utterances["debate-1"]) == 1)
        for _ in range(20):
            await asyncio.sleep(0)

        # The in-flight turn finished, nothing else started
        assert len(gateway.calls) == 1
        assert orchestrator.status == OrchestratorStatus.PAUSED
        assert (await storage.get_session("debate-1"))["status"] == "paused"
        assert not task.done()

        await orchestrator.resume()
        transcript = await task

        assert transcript["meta"]["utterance_count"] == TOTAL_TURNS
        # The first utterance keeps the phase it was scheduled in
        assert transcript["utterances"][0]["phase"] == "PHASE_1_OPENING"

    @pytest.mark.asyncio
    async def test_stop_ends_loop_without_completing(self, storage, make_session, make_gateway, make_orchestrator, broadcaster):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway)
        original_generate = gateway.generate
        queue = broadcaster.subscribe("debate-1")

        async def stopping_generate(speaker, prompt_type, context):
            if len(gateway.calls) == 2:
                await orchestrator.stop("enough")
            return await original_generate(speaker, prompt_type, context)

        gateway.generate = stopping_generate

        result = await orchestrator.start_debate(PROPOSITION)

        assert result is None
        assert len(gateway.calls) == 3
        assert orchestrator.state_machine.current_phase != DebatePhase.COMPLETED
        session = await storage.get_session("debate-1")
        assert session["status"] == "completed"
        stopped = [e for e in drain(queue) if e["type"] == "debate_stopped"]
        assert stopped[0]["reason"] == "enough"

    @pytest.mark.asyncio
    async def test_stop_during_failing_call_skips_retries(
        self, storage, make_session, make_gateway, make_orchestrator, broadcaster, recording_sleep
    ):
        await make_session()
        gateway = make_gateway(failures=[AgentUnavailableError("down")] * 5)
        orchestrator = make_orchestrator(gateway, max_retries=3)
        original_generate = gateway.generate
        queue = broadcaster.subscribe("debate-1")

        async def stopping_generate(speaker, prompt_type, context):
            if not gateway.calls:
                await orchestrator.stop("user stop")
            return await original_generate(speaker, prompt_type, context)

        gateway.generate = stopping_generate

        result = await orchestrator.start_debate(PROPOSITION)

        assert result is None
        assert len(gateway.calls) == 1
        assert recording_sleep.calls == []
        assert orchestrator.status == OrchestratorStatus.COMPLETED
        session = await storage.get_session("debate-1")
        assert session["status"] == "completed"
        assert session["current_phase"] != "ERROR"
        event_types = [e["type"] for e in drain(queue)]
        assert "debate_error" not in event_types
        assert event_types[-1] == "debate_stopped"

    @pytest.mark.asyncio
    async def test_stop_while_paused_releases_loop(self, make_session, make_gateway, make_orchestrator):
        await make_session()
        orchestrator = make_orchestrator(make_gateway())
        await orchestrator.pause()

        task = asyncio.create_task(orchestrator.start_debate(PROPOSITION))
        for _ in range(20):
            await asyncio.sleep(0)
        assert not task.done()

        await orchestrator.stop()
        assert await task is None

    @pytest.mark.asyncio
    async def test_step_mode_waits_for_continue(self, storage, make_session, make_gateway, make_orchestrator):
        await make_session()
        gateway = make_gateway()
        orchestrator = make_orchestrator(gateway, flow_mode="step")
        assert orchestrator.continue_debate() is False

        task = asyncio.create_task(orchestrator.start_debate(PROPOSITION))
        await wait_until(lambda: orchestrator.is_awaiting_continue)

        assert len(gateway.calls) == 1
        assert (await storage.get_session("debate-1"))["awaiting_continue"] is True

        assert orchestrator.continue_debate() is True
        await wait_until(lambda: len(gateway.calls) == 2 and orchestrator.is_awaiting_continue)

        await orchestrator.stop()
        assert await task is None
        assert len(gateway.calls) == 2
