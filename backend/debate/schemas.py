"""Pydantic models for orchestrator configuration and proposition handling."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class OrchestratorConfig(BaseModel):
    """Tunables for one orchestrator instance."""

    max_retries: int = Field(default=3, ge=1, description="Total attempts per agent call")
    retry_delay_ms: int = Field(default=1000, ge=0)
    agent_timeout_ms: int = Field(default=30000, gt=0)
    validate_utterances: bool = True
    broadcast_events: bool = True
    flow_mode: Literal["auto", "step"] = "auto"
    min_proposition_length: int = Field(default=10, ge=1)


class NormalizedProposition(BaseModel):
    """A restated, debatable question derived from raw user input."""

    normalized_question: str = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0, le=1)


class PropositionVerdict(BaseModel):
    """Output of a normalizer's debatability check."""

    valid: bool
    reason: str | None = None
