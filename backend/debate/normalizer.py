"""Proposition normalizers.

Turn free-text user input into a debatable question. The orchestrator
performs the basic length checks itself and delegates the restatement to
one of these implementations.
"""

import json
import logging
import re
from typing import Any, Dict, Optional, Protocol, Tuple

from autogen import AssistantAgent
from pydantic import ValidationError

from config import get_agent_model_configs

from .agents import create_debate_agent, resolve_api_key
from .schemas import NormalizedProposition, PropositionVerdict
from .state import Speaker

logger = logging.getLogger(__name__)


class PropositionNormalizer(Protocol):
    async def normalize(self, raw_input: str, context: Optional[Dict[str, Any]] = None) -> NormalizedProposition:
        ...

    async def validate(self, question: str) -> Tuple[bool, Optional[str]]:
        """Return (valid, reason) for a normalized question."""
        ...


_QUESTION_WORDS = ("should", "is", "are", "does", "do", "can", "will", "would", "has", "have")


class BasicPropositionNormalizer:
    """Deterministic normalizer with no model calls.

    Collapses whitespace, capitalizes, and turns the input into a question.
    Confidence grows with length and is higher when the input already reads
    as a yes/no question.
    """

    async def normalize(self, raw_input: str, context: Optional[Dict[str, Any]] = None) -> NormalizedProposition:
        text = re.sub(r"\s+", " ", raw_input).strip()
        text = text.rstrip(".!")
        is_question = text.lower().startswith(_QUESTION_WORDS)
        if not text.endswith("?"):
            text = f"{text}?"
        question = text[0].upper() + text[1:]

        word_count = len(question.split())
        confidence = min(1.0, 0.4 + 0.05 * word_count)
        if not is_question:
            confidence *= 0.8

        return NormalizedProposition(
            normalized_question=question,
            context=dict(context or {}),
            confidence=round(confidence, 2),
        )

    async def validate(self, question: str) -> Tuple[bool, Optional[str]]:
        if len(question.split()) < 3:
            return False, "proposition needs at least three words"
        return True, None


NORMALIZE_PROMPT = """Restate the following user input as a single, neutral, debatable yes/no proposition.

User input:
{raw_input}

Additional context (may be empty):
{context}

Respond with JSON only, exactly in this shape:
{{"normalized_question": "...", "context": {{"background": "..."}}, "confidence": 0.0}}

confidence is between 0 and 1 and reflects how clearly the input maps to a debatable proposition."""

VALIDATE_PROMPT = """Is the following proposition suitable for a two-sided formal debate?

Proposition: {question}

Respond with JSON only: {{"valid": true|false, "reason": "..."}}"""


def _extract_json(reply: Any) -> Dict[str, Any]:
    """Pull the first JSON object out of an AG2 reply."""
    text = reply.get("content", "") if isinstance(reply, dict) else str(reply or "")
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise ValueError(f"No JSON object in normalizer reply: {text[:100]}")
    return json.loads(match.group(0))


class AG2PropositionNormalizer:
    """Normalizer that asks an AG2 agent and parses its JSON answer."""

    def __init__(self, agent: AssistantAgent, fallback: Optional[PropositionNormalizer] = None):
        """
        Args:
            agent: AG2 agent used for restatement (usually the moderator)
            fallback: Used when the agent's reply cannot be parsed
        """
        self.agent = agent
        self.fallback = fallback or BasicPropositionNormalizer()

    async def normalize(self, raw_input: str, context: Optional[Dict[str, Any]] = None) -> NormalizedProposition:
        prompt = NORMALIZE_PROMPT.format(raw_input=raw_input, context=json.dumps(context or {}))
        reply = await self.agent.a_generate_reply(messages=[{"role": "user", "content": prompt}], sender=None)
        try:
            return NormalizedProposition(**_extract_json(reply))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Could not parse normalizer reply, using basic normalizer: {e}")
            return await self.fallback.normalize(raw_input, context)

    async def validate(self, question: str) -> Tuple[bool, Optional[str]]:
        prompt = VALIDATE_PROMPT.format(question=question)
        reply = await self.agent.a_generate_reply(messages=[{"role": "user", "content": prompt}], sender=None)
        try:
            verdict = PropositionVerdict(**_extract_json(reply))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Could not parse validation reply, using basic check: {e}")
            return await self.fallback.validate(question)
        return verdict.valid, verdict.reason


def build_ag2_normalizer(
    model_config: Optional[Dict[str, Any]] = None,
    provider_keys: Optional[Dict[str, str]] = None,
) -> AG2PropositionNormalizer:
    """Create an AG2 normalizer on a moderator-configured agent.

    Args:
        model_config: {"provider", "model"}; defaults to the moderator's env config
        provider_keys: Optional provider -> API key overrides
    """
    model_config = model_config or get_agent_model_configs()["moderator"]
    api_key = resolve_api_key(model_config.get("provider", "openai"), provider_keys)
    agent = create_debate_agent(Speaker.MODERATOR, model_config, api_key)
    logger.info(f"Using AG2 proposition normalizer (model: {model_config.get('model')})")
    return AG2PropositionNormalizer(agent)
