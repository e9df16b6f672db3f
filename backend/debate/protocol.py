"""Fixed six-phase debate protocol.

Durations are scheduling guidance for the scheduler and the UI. Nothing
enforces a minimum dwell time in a phase.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .state import DebatePhase, DebateStatus, Speaker

PHASE_ORDER: Tuple[DebatePhase, ...] = (
    DebatePhase.PHASE_1_OPENING,
    DebatePhase.PHASE_2_CONSTRUCTIVE,
    DebatePhase.PHASE_3_CROSSEXAM,
    DebatePhase.PHASE_4_REBUTTAL,
    DebatePhase.PHASE_5_CLOSING,
    DebatePhase.PHASE_6_SYNTHESIS,
)

ACTIVE_PHASES = frozenset((DebatePhase.INITIALIZING, *PHASE_ORDER))
TERMINAL_PHASES = frozenset((DebatePhase.COMPLETED, DebatePhase.ERROR))

_DEBATERS = (Speaker.PRO, Speaker.CON, Speaker.MODERATOR)


@dataclass(frozen=True)
class PhaseConfig:
    """Static configuration of one debate phase.

    ``turn_pattern`` is the round-robin order of (speaker, prompt type)
    pairs; it is repeated ``rounds`` times to build the phase plan.
    """

    phase: DebatePhase
    name: str
    duration_minutes: int
    allowed_speakers: Tuple[Speaker, ...]
    turns_per_speaker: int
    turn_pattern: Tuple[Tuple[Speaker, str], ...]
    rounds: int
    expected_turn_ms: Tuple[int, ...]

    @property
    def duration_ms(self) -> int:
        return self.duration_minutes * 60 * 1000


PHASE_CONFIG: Dict[DebatePhase, PhaseConfig] = {
    DebatePhase.PHASE_1_OPENING: PhaseConfig(
        phase=DebatePhase.PHASE_1_OPENING,
        name="Opening Statements",
        duration_minutes=4,
        allowed_speakers=_DEBATERS,
        turns_per_speaker=1,
        turn_pattern=((Speaker.PRO, "opening_statement"), (Speaker.CON, "opening_statement")),
        rounds=1,
        expected_turn_ms=(120000, 120000),
    ),
    DebatePhase.PHASE_2_CONSTRUCTIVE: PhaseConfig(
        phase=DebatePhase.PHASE_2_CONSTRUCTIVE,
        name="Constructive Arguments",
        duration_minutes=6,
        allowed_speakers=_DEBATERS,
        turns_per_speaker=2,
        turn_pattern=((Speaker.PRO, "constructive_argument"), (Speaker.CON, "constructive_argument")),
        rounds=2,
        expected_turn_ms=(90000, 90000),
    ),
    # Pro questions and Con answers, then the sides swap
    DebatePhase.PHASE_3_CROSSEXAM: PhaseConfig(
        phase=DebatePhase.PHASE_3_CROSSEXAM,
        name="Cross-Examination",
        duration_minutes=6,
        allowed_speakers=_DEBATERS,
        turns_per_speaker=3,
        turn_pattern=(
            (Speaker.PRO, "cross_exam_question"),
            (Speaker.CON, "cross_exam_response"),
            (Speaker.CON, "cross_exam_question"),
            (Speaker.PRO, "cross_exam_response"),
        ),
        rounds=3 // 2,
        expected_turn_ms=(45000, 60000, 45000, 60000),
    ),
    # Con rebuts first
    DebatePhase.PHASE_4_REBUTTAL: PhaseConfig(
        phase=DebatePhase.PHASE_4_REBUTTAL,
        name="Rebuttals",
        duration_minutes=4,
        allowed_speakers=_DEBATERS,
        turns_per_speaker=2,
        turn_pattern=((Speaker.CON, "rebuttal"), (Speaker.PRO, "rebuttal")),
        rounds=2,
        expected_turn_ms=(60000, 60000),
    ),
    # Pro gets the last word
    DebatePhase.PHASE_5_CLOSING: PhaseConfig(
        phase=DebatePhase.PHASE_5_CLOSING,
        name="Closing Statements",
        duration_minutes=4,
        allowed_speakers=_DEBATERS,
        turns_per_speaker=1,
        turn_pattern=((Speaker.CON, "closing_statement"), (Speaker.PRO, "closing_statement")),
        rounds=1,
        expected_turn_ms=(120000, 120000),
    ),
    DebatePhase.PHASE_6_SYNTHESIS: PhaseConfig(
        phase=DebatePhase.PHASE_6_SYNTHESIS,
        name="Moderator Synthesis",
        duration_minutes=3,
        allowed_speakers=(Speaker.MODERATOR,),
        turns_per_speaker=1,
        turn_pattern=((Speaker.MODERATOR, "synthesis"),),
        rounds=1,
        expected_turn_ms=(180000,),
    ),
}


def get_phase_config(phase: DebatePhase) -> Optional[PhaseConfig]:
    """Return the config for a debate phase, or None for special states."""
    return PHASE_CONFIG.get(phase)


def get_next_phase(phase: DebatePhase) -> Optional[DebatePhase]:
    """Return the immediate successor of ``phase`` in the fixed order.

    INITIALIZING leads to the first phase; the last phase and every
    non-debate state have no successor.
    """
    if phase == DebatePhase.INITIALIZING:
        return PHASE_ORDER[0]
    if phase not in PHASE_ORDER:
        return None
    index = PHASE_ORDER.index(phase)
    if index + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[index + 1]


def get_phase_duration_ms(phase: DebatePhase) -> int:
    config = PHASE_CONFIG.get(phase)
    return config.duration_ms if config else 0


def get_total_debate_duration_ms() -> int:
    return sum(get_phase_duration_ms(phase) for phase in PHASE_ORDER)


def is_speaker_allowed_in_phase(speaker: Speaker, phase: DebatePhase) -> bool:
    """Check speaker eligibility; outside debate phases only SYSTEM speaks."""
    config = PHASE_CONFIG.get(phase)
    if config is None:
        return speaker == Speaker.SYSTEM
    return speaker in config.allowed_speakers


def get_default_speaker(phase: DebatePhase) -> Speaker:
    """Return the first speaker of the phase, or SYSTEM for special states."""
    config = PHASE_CONFIG.get(phase)
    if config is None:
        return Speaker.SYSTEM
    return config.turn_pattern[0][0]


def status_for_phase(phase: DebatePhase) -> DebateStatus:
    if phase == DebatePhase.INITIALIZING:
        return DebateStatus.INITIALIZING
    if phase == DebatePhase.PAUSED:
        return DebateStatus.PAUSED
    if phase == DebatePhase.COMPLETED:
        return DebateStatus.COMPLETED
    if phase == DebatePhase.ERROR:
        return DebateStatus.ERROR
    return DebateStatus.LIVE


def storage_speaker(speaker: Speaker) -> Speaker:
    """Map a speaker to the value stored and routed (SYSTEM becomes MODERATOR)."""
    return Speaker.MODERATOR if speaker == Speaker.SYSTEM else speaker
