"""Turn scheduling for debate phases.

Each phase's plan is its turn pattern repeated ``rounds`` times. The
scheduler also keeps a cursor into the current phase's plan; exhausting it
is what tells the orchestrator to move on to the next phase.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .protocol import get_phase_config
from .state import DebatePhase, Speaker, Turn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseExecutionPlan:
    phase: DebatePhase
    name: str
    turns: Tuple[Turn, ...]
    expected_duration_ms: int
    allowed_speakers: Tuple[Speaker, ...] = field(default=(Speaker.SYSTEM,))


def build_phase_plan(phase: DebatePhase) -> PhaseExecutionPlan:
    """Build the ordered turn list for a phase.

    Non-debate states (INITIALIZING, PAUSED, COMPLETED, ERROR) have an
    empty plan.
    """
    config = get_phase_config(phase)
    if config is None:
        return PhaseExecutionPlan(phase=phase, name=phase.value, turns=(), expected_duration_ms=0)

    turns: List[Turn] = []
    turn_number = 1
    for _ in range(config.rounds):
        for position, (speaker, prompt_type) in enumerate(config.turn_pattern):
            metadata: Dict[str, Any] = {"expected_duration_ms": config.expected_turn_ms[position]}
            if prompt_type == "cross_exam_response":
                # Answers the question asked in the turn just before
                metadata["responds_to"] = turn_number - 1
            turns.append(Turn(turn_number=turn_number, speaker=speaker, prompt_type=prompt_type, metadata=metadata))
            turn_number += 1

    return PhaseExecutionPlan(
        phase=phase,
        name=config.name,
        turns=tuple(turns),
        expected_duration_ms=config.duration_ms,
        allowed_speakers=config.allowed_speakers,
    )


class TurnScheduler:
    """Produces turns for a phase and tracks progress through them."""

    def __init__(self):
        self._plans: Dict[DebatePhase, PhaseExecutionPlan] = {}
        self._phase = DebatePhase.INITIALIZING
        self._index = 0

    def get_phase_execution_plan(self, phase: DebatePhase) -> PhaseExecutionPlan:
        if phase not in self._plans:
            self._plans[phase] = build_phase_plan(phase)
        return self._plans[phase]

    def turn_at(self, phase: DebatePhase, index: int) -> Turn:
        """Pure lookup of the ``index``-th (0-based) turn of a phase."""
        return self.get_phase_execution_plan(phase).turns[index]

    @property
    def current_phase(self) -> DebatePhase:
        return self._phase

    @property
    def current_index(self) -> int:
        return self._index

    def set_phase(self, phase: DebatePhase) -> None:
        """Point the cursor at the start of ``phase``."""
        self._phase = phase
        self._index = 0
        logger.debug(f"Turn cursor reset to {phase.value}")

    def _sync(self, phase: DebatePhase) -> None:
        if phase != self._phase:
            self.set_phase(phase)

    def has_next_turn(self, phase: DebatePhase) -> bool:
        self._sync(phase)
        return self._index < len(self.get_phase_execution_plan(phase).turns)

    def next_turn(self, phase: DebatePhase) -> Turn:
        """Return the turn under the cursor and advance past it.

        Raises:
            IndexError: If the phase has no turns left
        """
        self._sync(phase)
        turns = self.get_phase_execution_plan(phase).turns
        if self._index >= len(turns):
            raise IndexError(f"No turns left in {phase.value}")
        turn = turns[self._index]
        self._index += 1
        return turn

    def is_phase_complete(self) -> bool:
        return self._index >= len(self.get_phase_execution_plan(self._phase).turns)

    def progress(self) -> Dict[str, Any]:
        total = len(self.get_phase_execution_plan(self._phase).turns)
        return {
            "phase": self._phase.value,
            "current_turn_index": self._index,
            "total_turns": total,
            "is_complete": self._index >= total,
        }

    def reset(self) -> None:
        self.set_phase(DebatePhase.INITIALIZING)
