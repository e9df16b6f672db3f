"""Debate state models.

Enums and record shapes shared by the state machine, the turn scheduler,
the orchestrator and the storage backends. Records are plain TypedDicts so
they can be dumped to JSON (and JSONB) without conversion.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TypedDict, Literal, Optional, Dict, List, Any


class DebatePhase(str, Enum):
    """All states of the phase state machine."""

    INITIALIZING = "INITIALIZING"
    PHASE_1_OPENING = "PHASE_1_OPENING"
    PHASE_2_CONSTRUCTIVE = "PHASE_2_CONSTRUCTIVE"
    PHASE_3_CROSSEXAM = "PHASE_3_CROSSEXAM"
    PHASE_4_REBUTTAL = "PHASE_4_REBUTTAL"
    PHASE_5_CLOSING = "PHASE_5_CLOSING"
    PHASE_6_SYNTHESIS = "PHASE_6_SYNTHESIS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class Speaker(str, Enum):
    PRO = "pro"
    CON = "con"
    MODERATOR = "moderator"
    SYSTEM = "system"  # storage compatibility only, routed as moderator


class DebateStatus(str, Enum):
    """Session status, always derived from the current phase."""

    INITIALIZING = "initializing"
    LIVE = "live"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class InterventionType(str, Enum):
    QUESTION = "question"
    CHALLENGE = "challenge"
    EVIDENCE = "evidence"
    PAUSE_REQUEST = "pause_request"
    RESUME_REQUEST = "resume_request"


class OrchestratorStatus(str, Enum):
    """Run-loop state of one orchestrator."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERRORED = "errored"


# Flow mode controls how turns follow each other
# - auto: turns run back to back
# - step: wait for an explicit continue after every utterance
FlowMode = Literal["auto", "step"]


@dataclass(frozen=True)
class Turn:
    """One scheduled unit of work inside a phase. Never persisted."""

    turn_number: int
    speaker: Speaker
    prompt_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class DebateSession(TypedDict, total=False):
    """Persisted debate row.

    Phase, status and elapsed-time fields are only ever written from a
    state machine snapshot.
    """
    id: str
    proposition: str
    proposition_context: Optional[Dict[str, Any]]

    current_phase: str
    status: str
    current_speaker: str
    started_at: Optional[str]  # ISO-8601
    completed_at: Optional[str]
    total_elapsed_ms: int
    paused_phase: Optional[str]  # set only while paused
    error: Optional[str]

    flow_mode: FlowMode
    awaiting_continue: bool
    transcript: Optional[Dict[str, Any]]


class UtteranceMetadata(TypedDict, total=False):
    prompt_type: str
    turn_number: int
    generation_time_ms: int
    model: str
    warnings: List[str]


class Utterance(TypedDict, total=False):
    """Append-only record of one agent contribution."""
    id: int
    debate_id: str
    timestamp_ms: int  # relative to debate start
    phase: str
    speaker: str
    content: str
    metadata: UtteranceMetadata


class Intervention(TypedDict, total=False):
    """Human-originated action. Response fields are written exactly once."""
    id: int
    debate_id: str
    timestamp_ms: int
    type: str
    content: str
    directed_to: Optional[str]
    response: Optional[str]
    response_timestamp_ms: Optional[int]


class AgentContext(TypedDict, total=False):
    """Everything an agent sees when asked to speak."""
    debate_id: str
    speaker: str
    proposition: str
    previous_utterances: List[Utterance]
    current_phase: str
    proposition_context: Optional[Dict[str, Any]]
    intervention: Optional[Dict[str, Any]]


class PhaseSummary(TypedDict):
    phase: str
    started_at_ms: int
    ended_at_ms: int
    duration_ms: int
    utterance_count: int
    speakers: List[str]


class TranscriptMeta(TypedDict, total=False):
    schema_version: str
    debate_id: str
    proposition: str
    proposition_context: Optional[Dict[str, Any]]
    status: str
    started_at: Optional[str]
    completed_at: Optional[str]
    total_duration_ms: int
    total_duration_seconds: float
    utterance_count: int
    intervention_count: int
    agents: Dict[str, Dict[str, Any]]


class DebateTranscript(TypedDict):
    """Durable export artifact produced when a debate completes."""
    meta: TranscriptMeta
    utterances: List[Utterance]
    interventions: List[Intervention]
    phases: List[PhaseSummary]
