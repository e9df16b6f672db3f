"""Timed multi-party debate orchestration.

A moderator and two advocates (pro and con) work through six fixed phases.
The state machine owns phase and timing, the scheduler owns turn order, and
the orchestrator calls agents, records utterances and answers user
interventions.
"""

from .agents import AG2AgentGateway, AgentGateway
from .errors import (
    AgentCallFailed,
    AgentUnavailableError,
    DebateError,
    InvalidProposition,
    InvalidTransition,
    NonRetryableAgentError,
)
from .events import DebateBroadcaster, DebateEventType
from .normalizer import AG2PropositionNormalizer, BasicPropositionNormalizer, PropositionNormalizer
from .orchestrator import DebateOrchestrator
from .persistence import DebateStorage, InMemoryDebateStorage, PostgresDebateStorage
from .registry import OrchestratorRegistry
from .schemas import NormalizedProposition, OrchestratorConfig
from .service import DebateService, DebateSupervisor
from .state import DebatePhase, DebateStatus, InterventionType, OrchestratorStatus, Speaker, Turn
from .state_machine import DebateStateMachine
from .turns import PhaseExecutionPlan, TurnScheduler

__all__ = [
    "AG2AgentGateway",
    "AG2PropositionNormalizer",
    "AgentCallFailed",
    "AgentGateway",
    "AgentUnavailableError",
    "BasicPropositionNormalizer",
    "DebateBroadcaster",
    "DebateError",
    "DebateEventType",
    "DebateOrchestrator",
    "DebatePhase",
    "DebateService",
    "DebateStateMachine",
    "DebateStatus",
    "DebateStorage",
    "DebateSupervisor",
    "InMemoryDebateStorage",
    "InterventionType",
    "InvalidProposition",
    "InvalidTransition",
    "NonRetryableAgentError",
    "NormalizedProposition",
    "OrchestratorConfig",
    "OrchestratorRegistry",
    "OrchestratorStatus",
    "PhaseExecutionPlan",
    "PostgresDebateStorage",
    "PropositionNormalizer",
    "Speaker",
    "Turn",
    "TurnScheduler",
]
