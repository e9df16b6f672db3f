"""Phase state machine for a single debate.

Owns the current phase, the legality of moves between phases and the
elapsed-time accounting. It knows nothing about agents, content or storage:
callers persist ``snapshot()`` after every successful operation.

Elapsed time is the sum of active intervals only. The clock stops on
``pause()`` and restarts on ``resume()``, so paused time never accumulates.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .errors import InvalidTransition
from .protocol import (
    ACTIVE_PHASES,
    PHASE_ORDER,
    TERMINAL_PHASES,
    get_default_speaker,
    get_next_phase,
    status_for_phase,
)
from .state import DebatePhase, DebateSession, DebateStatus, Speaker

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Listener = Callable[[str, Dict[str, Any]], None]


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class DebateStateMachine:
    """Deterministic phase control for one debate.

    States: INITIALIZING -> PHASE_1 ... PHASE_6 -> COMPLETED, with PAUSED
    reachable from any active state and ERROR from any non-terminal state.

    Events emitted to listeners: ``phase_transition``, ``paused``,
    ``resumed``, ``completed`` and ``error``.
    """

    def __init__(self, debate_id: str, clock: Optional[Clock] = None):
        """Create a machine in INITIALIZING.

        Args:
            debate_id: Debate this machine controls
            clock: Millisecond clock; injected in tests for exact timing
        """
        self.debate_id = debate_id
        self._clock = clock or monotonic_ms
        self._listeners: List[Listener] = []

        self._phase = DebatePhase.INITIALIZING
        self._previous_phase: Optional[DebatePhase] = None
        self._paused_phase: Optional[DebatePhase] = None
        self._error: Optional[str] = None

        # Active-time bookkeeping
        self._total_ms = 0.0
        self._phase_ms = 0.0
        self._interval_start: Optional[float] = self._clock()

        logger.info(f"State machine created for debate {debate_id}")

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: str, **payload: Any) -> None:
        payload = {"debate_id": self.debate_id, **payload}
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as e:
                logger.warning(f"State machine listener failed on {event} for debate {self.debate_id}: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_phase(self) -> DebatePhase:
        return self._phase

    @property
    def previous_phase(self) -> Optional[DebatePhase]:
        return self._previous_phase

    @property
    def paused_phase(self) -> Optional[DebatePhase]:
        return self._paused_phase

    @property
    def current_speaker(self) -> Speaker:
        return get_default_speaker(self._phase)

    @property
    def status(self) -> DebateStatus:
        return status_for_phase(self._phase)

    @property
    def is_paused(self) -> bool:
        return self._phase == DebatePhase.PAUSED

    @property
    def is_terminal(self) -> bool:
        return self._phase in TERMINAL_PHASES

    @property
    def error_message(self) -> Optional[str]:
        return self._error

    def _running_ms(self) -> float:
        if self._interval_start is None:
            return 0.0
        return self._clock() - self._interval_start

    @property
    def total_elapsed_ms(self) -> int:
        """Active time across the whole debate, pauses excluded."""
        return int(self._total_ms + self._running_ms())

    @property
    def phase_elapsed_ms(self) -> int:
        """Active time spent in the current phase, pauses excluded."""
        return int(self._phase_ms + self._running_ms())

    def is_valid_transition(self, from_phase: DebatePhase, to_phase: DebatePhase) -> bool:
        """Check whether ``transition(to_phase)`` is legal from ``from_phase``.

        Only the immediate successor of an active phase is legal. PAUSED and
        terminal states accept no ``transition()`` at all.
        """
        if from_phase not in ACTIVE_PHASES:
            return False
        return get_next_phase(from_phase) == to_phase

    def snapshot(self) -> DebateSession:
        """Return the phase/status/elapsed portion of the session row."""
        return {
            "id": self.debate_id,
            "current_phase": self._phase.value,
            "status": self.status.value,
            "current_speaker": self.current_speaker.value,
            "total_elapsed_ms": self.total_elapsed_ms,
            "paused_phase": self._paused_phase.value if self._paused_phase else None,
            "error": self._error,
        }

    # ------------------------------------------------------------------
    # Clock helpers
    # ------------------------------------------------------------------

    def _stop_clock(self) -> None:
        """Fold the running interval into the totals and stop the clock."""
        running = self._running_ms()
        self._total_ms += running
        self._phase_ms += running
        self._interval_start = None

    def _start_clock(self) -> None:
        self._interval_start = self._clock()

    def _ensure_not_terminal(self, target: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(self._phase.value, target, "debate is in a terminal state")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """INITIALIZING -> PHASE_1_OPENING."""
        if self._phase != DebatePhase.INITIALIZING:
            raise InvalidTransition(
                self._phase.value, DebatePhase.PHASE_1_OPENING.value, "debate has already been initialized"
            )
        logger.info(f"Initializing debate {self.debate_id}")
        self.transition(DebatePhase.PHASE_1_OPENING)

    def transition(self, target: DebatePhase) -> None:
        """Move to the immediate successor of the current phase.

        Args:
            target: The phase to enter

        Raises:
            InvalidTransition: If ``target`` is not the immediate successor,
                or the machine is paused or terminal
        """
        from_phase = self._phase
        try:
            target = DebatePhase(target)
        except ValueError:
            raise InvalidTransition(from_phase.value, str(target), "unknown phase") from None
        self._ensure_not_terminal(target.value)
        if not self.is_valid_transition(from_phase, target):
            logger.error(f"Invalid transition from {from_phase.value} to {target.value} for debate {self.debate_id}")
            raise InvalidTransition(from_phase.value, target.value)

        self._stop_clock()
        phase_elapsed_ms = int(self._phase_ms)

        self._previous_phase = from_phase
        self._phase = target
        self._phase_ms = 0.0
        self._start_clock()

        logger.info(
            f"Debate {self.debate_id}: {from_phase.value} -> {self._phase.value} "
            f"(phase {phase_elapsed_ms}ms, total {self.total_elapsed_ms}ms)"
        )
        self._emit(
            "phase_transition",
            from_phase=from_phase.value,
            to_phase=self._phase.value,
            speaker=self.current_speaker.value,
            phase_elapsed_ms=phase_elapsed_ms,
            total_elapsed_ms=self.total_elapsed_ms,
        )

    def pause(self) -> None:
        """Suspend the active phase and stop the clock."""
        if self._phase == DebatePhase.PAUSED:
            raise InvalidTransition(self._phase.value, DebatePhase.PAUSED.value, "debate is already paused")
        self._ensure_not_terminal(DebatePhase.PAUSED.value)

        self._stop_clock()
        self._paused_phase = self._phase
        self._previous_phase = self._phase
        self._phase = DebatePhase.PAUSED

        logger.info(f"Debate {self.debate_id} paused in {self._paused_phase.value}")
        self._emit("paused", phase=self._paused_phase.value, total_elapsed_ms=self.total_elapsed_ms)

    def resume(self) -> None:
        """Return to the phase that was active at ``pause()``."""
        if self._phase != DebatePhase.PAUSED or self._paused_phase is None:
            raise InvalidTransition(self._phase.value, "RESUME", "debate is not paused")

        resume_to = self._paused_phase
        self._paused_phase = None
        self._previous_phase = DebatePhase.PAUSED
        self._phase = resume_to
        self._start_clock()

        logger.info(f"Debate {self.debate_id} resumed into {resume_to.value}")
        self._emit("resumed", phase=resume_to.value, total_elapsed_ms=self.total_elapsed_ms)

    def complete(self) -> None:
        """PHASE_6_SYNTHESIS -> COMPLETED (terminal)."""
        if self._phase != PHASE_ORDER[-1]:
            raise InvalidTransition(
                self._phase.value, DebatePhase.COMPLETED.value, "can only complete from PHASE_6_SYNTHESIS"
            )
        self._stop_clock()
        self._previous_phase = self._phase
        self._phase = DebatePhase.COMPLETED

        logger.info(f"Debate {self.debate_id} completed after {self.total_elapsed_ms}ms")
        self._emit("completed", total_elapsed_ms=self.total_elapsed_ms)

    def error(self, reason: str) -> None:
        """Move to ERROR (terminal) from any non-terminal state."""
        self._ensure_not_terminal(DebatePhase.ERROR.value)

        self._stop_clock()
        self._previous_phase = self._phase
        self._paused_phase = None
        self._phase = DebatePhase.ERROR
        self._error = reason

        logger.error(f"Debate {self.debate_id} moved to ERROR from {self._previous_phase.value}: {reason}")
        self._emit("error", from_phase=self._previous_phase.value, error=reason)
