import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


# Ensure backend modules (e.g. config.py, debate/) are importable even when running pytest from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

# Avoid requiring real credentials / services during import-time initialization.
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("USE_IN_MEMORY_STORAGE", "1")

from debate.persistence import InMemoryDebateStorage  # noqa: E402
from debate.state import Speaker  # noqa: E402


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeAgentGateway:
    """Scripted AgentGateway.

    Replies "<speaker> <prompt_type> #<n>" unless ``failures`` still holds
    exceptions to raise first.
    """

    def __init__(self, failures: Optional[List[BaseException]] = None, clock: Optional[FakeClock] = None):
        self.failures = list(failures or [])
        self.calls: List[Dict[str, Any]] = []
        self.clock = clock

    async def generate(self, speaker: Speaker, prompt_type: str, context: Dict[str, Any]) -> str:
        self.calls.append({"speaker": speaker, "prompt_type": prompt_type, "context": context})
        if self.clock is not None:
            self.clock.advance(1000)
        if self.failures:
            raise self.failures.pop(0)
        return f"{speaker.value} {prompt_type} #{len(self.calls)}"

    def get_metadata(self, speaker: Speaker) -> Dict[str, Any]:
        return {"role": speaker.value, "provider": "fake", "model": f"fake-{speaker.value}"}


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def storage() -> InMemoryDebateStorage:
    return InMemoryDebateStorage()


@pytest.fixture
def make_session(storage):
    """Return a coroutine that stores an INITIALIZING session."""

    async def _make(debate_id: str = "debate-1", proposition: str = "Should cities ban private cars downtown?", **fields):
        session = {
            "id": debate_id,
            "proposition": proposition,
            "proposition_context": None,
            "current_phase": "INITIALIZING",
            "status": "initializing",
            "current_speaker": "system",
            "started_at": None,
            "completed_at": None,
            "total_elapsed_ms": 0,
            "paused_phase": None,
            "error": None,
            "flow_mode": "auto",
            "awaiting_continue": False,
            **fields,
        }
        return await storage.create_session(session)

    return _make


@pytest.fixture
def make_gateway():
    """Return a factory for scripted agent gateways."""
    return FakeAgentGateway
