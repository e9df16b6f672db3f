"""Exception taxonomy for debate orchestration."""

from typing import Optional


class DebateError(Exception):
    """Base class for all orchestration errors."""


class InvalidTransition(DebateError):
    """Raised when the state machine is asked for an illegal move.

    This is a programming error on the caller's side and must never be
    silently ignored.
    """

    def __init__(self, from_phase: str, to_phase: str, reason: Optional[str] = None):
        self.from_phase = from_phase
        self.to_phase = to_phase
        self.reason = reason
        message = f"Invalid transition from {from_phase} to {to_phase}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidProposition(DebateError):
    """Raised for empty, too short or undebatable propositions."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid proposition: {reason}")


class AgentUnavailableError(DebateError):
    """Transient agent failure (network, rate limit, empty reply)."""


class NonRetryableAgentError(DebateError):
    """Agent failure that another attempt cannot fix (e.g. invalid input)."""


class AgentCallFailed(DebateError):
    """Raised once every attempt of an agent call has failed."""

    def __init__(self, speaker: str, prompt_type: str, last_error: BaseException, attempts: int):
        self.speaker = speaker
        self.prompt_type = prompt_type
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Agent call failed for {speaker} ({prompt_type}) after {attempts} attempt(s): "
            f"{str(last_error) or type(last_error).__name__}"
        )
