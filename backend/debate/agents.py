"""Agent gateway for debate participants.

The orchestrator only sees the ``AgentGateway`` protocol. The AG2-backed
implementation creates one AssistantAgent per role (pro, con, moderator)
and renders a prompt per turn purpose.
"""

from typing import Any, Dict, List, Optional, Protocol
import logging

from autogen import AssistantAgent

from config import (
    get_agent_model_configs,
    get_claude_api_key,
    get_gemini_api_key,
    get_grok_api_key,
    get_openai_api_key,
)
from .errors import AgentUnavailableError, NonRetryableAgentError
from .protocol import storage_speaker
from .state import AgentContext, Speaker

logger = logging.getLogger(__name__)


class AgentGateway(Protocol):
    """Capability interface implemented per deployment.

    Implementations raise ``NonRetryableAgentError`` for failures another
    attempt cannot fix; anything else is treated as transient.
    """

    async def generate(self, speaker: Speaker, prompt_type: str, context: AgentContext) -> str:
        """Produce the text of one utterance (or intervention answer)."""
        ...

    def get_metadata(self, speaker: Speaker) -> Dict[str, Any]:
        """Return attribution metadata (at least ``model``) for a role."""
        ...


# Provider -> extra AG2 config_list entries
_PROVIDER_API_TYPES: Dict[str, Dict[str, str]] = {
    "openai": {"api_type": "openai"},
    "google": {"api_type": "google"},
    "gemini": {"api_type": "google"},
    "anthropic": {"api_type": "anthropic"},
    "claude": {"api_type": "anthropic"},
    "xai": {"api_type": "openai", "base_url": "https://api.x.ai/v1"},
    "grok": {"api_type": "openai", "base_url": "https://api.x.ai/v1"},
}

ROLE_SYSTEM_MESSAGES: Dict[Speaker, str] = {
    Speaker.PRO: """You are the PRO advocate in a formal, timed debate.

You MUST argue FOR the proposition in every turn:
1. Build the strongest possible case for your side
2. Support claims with evidence and reasoning
3. Engage directly with the opposing advocate's points
4. Never concede the core proposition

Keep each contribution focused: 2-3 paragraphs.""",
    Speaker.CON: """You are the CON advocate in a formal, timed debate.

You MUST argue AGAINST the proposition in every turn:
1. Build the strongest possible case against it
2. Support claims with evidence and reasoning
3. Engage directly with the opposing advocate's points
4. Never concede the core proposition

Keep each contribution focused: 2-3 paragraphs.""",
    Speaker.MODERATOR: """You are the neutral moderator of a formal, timed debate.

Your responsibilities are:
1. Introduce the proposition and the format
2. Answer audience questions fairly, without taking sides
3. Synthesize the debate: strongest arguments, points of clash, open questions

Be objective and analytical. Never declare a winner.""",
}

PROMPT_TEMPLATES: Dict[str, str] = {
    "introduction": "Introduce the debate on the proposition: {proposition}\nExplain the six-phase format briefly.",
    "opening_statement": "PROPOSITION: {proposition}\n\nDeliver your opening statement. State your position and preview your main arguments.",
    "constructive_argument": "PROPOSITION: {proposition}\n\nPresent a new constructive argument for your side. Do not repeat earlier points.",
    "cross_exam_question": "PROPOSITION: {proposition}\n\nAsk your opponent one pointed cross-examination question that exposes a weakness in their case.",
    "cross_exam_response": "PROPOSITION: {proposition}\n\nYour opponent asked:\n\"{last_question}\"\n\nAnswer the question directly, then defend your position.",
    "rebuttal": "PROPOSITION: {proposition}\n\nRebut the strongest arguments your opponent has made so far.",
    "closing_statement": "PROPOSITION: {proposition}\n\nDeliver your closing statement. Summarize why your side should prevail.",
    "synthesis": "PROPOSITION: {proposition}\n\nProvide a neutral synthesis of the whole debate: key arguments from each side, where they clashed, and what remains unresolved.",
    "intervention_response": "PROPOSITION: {proposition}\n\nAn audience member submitted a {intervention_type}:\n\"{intervention_content}\"\n\nRespond to it directly and concisely in the context of the debate.",
}


def resolve_api_key(provider: str, provider_keys: Optional[Dict[str, str]] = None) -> str:
    """Pick the API key for a provider, preferring explicitly passed keys."""
    provider_keys = provider_keys or {}
    if provider_keys.get(provider):
        return provider_keys[provider]
    if provider == "openai":
        return get_openai_api_key()
    if provider in {"gemini", "google"}:
        return get_gemini_api_key()
    if provider in {"claude", "anthropic"}:
        return get_claude_api_key()
    if provider in {"xai", "grok"}:
        return get_grok_api_key()
    logger.warning(f"Unknown provider '{provider}', falling back to OpenAI API key")
    return get_openai_api_key()


def create_debate_agent(speaker: Speaker, model_config: Dict[str, Any], api_key: str) -> AssistantAgent:
    """Create the AG2 agent that speaks for one debate role.

    Args:
        speaker: Role the agent plays (PRO, CON or MODERATOR)
        model_config: Dict with ``provider``, ``model`` and optional ``temperature``
        api_key: API key for the provider

    Returns:
        AG2 AssistantAgent configured for the role
    """
    provider = model_config.get("provider", "openai")
    llm_config = {
        "config_list": [
            {
                "model": model_config.get("model", "gpt-4o-mini"),
                "api_key": api_key,
                **_PROVIDER_API_TYPES.get(provider, {"api_type": "openai"}),
            }
        ],
        # Advocates argue, the moderator summarizes
        "temperature": model_config.get("temperature", 0.1 if speaker == Speaker.MODERATOR else 0.4),
    }

    return AssistantAgent(
        name=f"{speaker.value.capitalize()}Agent",
        system_message=ROLE_SYSTEM_MESSAGES[speaker],
        llm_config=llm_config,
        human_input_mode="NEVER",  # Programmatic only
    )


def render_prompt(prompt_type: str, context: AgentContext) -> str:
    """Render the user message for a turn purpose.

    Unknown prompt types fall back to a generic instruction.
    """
    previous = context.get("previous_utterances") or []
    intervention = context.get("intervention") or {}
    template = PROMPT_TEMPLATES.get(prompt_type, "PROPOSITION: {proposition}\n\nExecute: " + prompt_type)
    return template.format(
        proposition=context.get("proposition", ""),
        last_question=previous[-1]["content"] if previous else "",
        intervention_type=intervention.get("type", "question"),
        intervention_content=intervention.get("content", ""),
    )


def build_messages(prompt_type: str, context: AgentContext, max_history: int = 20) -> List[Dict[str, str]]:
    """Turn the debate so far plus the turn prompt into chat messages."""
    messages: List[Dict[str, str]] = []
    for utterance in (context.get("previous_utterances") or [])[-max_history:]:
        messages.append({
            "role": "user",
            "name": utterance["speaker"],
            "content": f"[{utterance['phase']}] {utterance['speaker'].upper()}: {utterance['content']}",
        })
    messages.append({"role": "user", "content": render_prompt(prompt_type, context)})
    return messages


def _reply_text(reply: Any) -> str:
    """AG2 replies may be a string, a message dict or None."""
    if reply is None:
        return ""
    if isinstance(reply, dict):
        return str(reply.get("content") or "")
    return str(reply)


class AG2AgentGateway:
    """AgentGateway backed by one AG2 AssistantAgent per role."""

    def __init__(
        self,
        model_configs: Optional[Dict[str, Dict[str, Any]]] = None,
        provider_keys: Optional[Dict[str, str]] = None,
    ):
        """Create agents for every role up front.

        Args:
            model_configs: role name -> {"provider", "model"}; defaults from env
            provider_keys: Optional provider -> API key overrides
        """
        self.model_configs = model_configs or get_agent_model_configs()
        self.agents: Dict[Speaker, AssistantAgent] = {}
        for speaker in (Speaker.PRO, Speaker.CON, Speaker.MODERATOR):
            config = self.model_configs.get(speaker.value, {})
            api_key = resolve_api_key(config.get("provider", "openai"), provider_keys)
            self.agents[speaker] = create_debate_agent(speaker, config, api_key)
            logger.info(f"Created {speaker.value} agent (provider: {config.get('provider', 'openai')}, model: {config.get('model')})")

    def get_metadata(self, speaker: Speaker) -> Dict[str, Any]:
        config = self.model_configs.get(storage_speaker(speaker).value, {})
        return {
            "role": storage_speaker(speaker).value,
            "provider": config.get("provider", "openai"),
            "model": config.get("model", "unknown"),
        }

    async def generate(self, speaker: Speaker, prompt_type: str, context: AgentContext) -> str:
        if prompt_type not in PROMPT_TEMPLATES:
            logger.warning(f"No template for prompt type '{prompt_type}', using generic prompt")
        if not context.get("proposition"):
            raise NonRetryableAgentError(f"Cannot generate {prompt_type} without a proposition")

        agent = self.agents[storage_speaker(speaker)]
        reply = await agent.a_generate_reply(messages=build_messages(prompt_type, context), sender=None)
        text = _reply_text(reply).strip()
        if not text:
            raise AgentUnavailableError(f"{speaker.value} agent returned an empty reply for {prompt_type}")
        return text
