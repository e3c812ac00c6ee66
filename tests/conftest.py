"""
Shared test fixtures for the Horae test suite.

Provides:
- MockLLMProvider: deterministic LLM stub (no endpoint needed)
- Chat fixtures: InMemoryChatHost transcripts with tagged messages
- Settings fixtures: an isolated SettingsStore under tmp_path
"""

import asyncio
import os
from collections import deque
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

# Keep the environment from leaking a real endpoint into tests
os.environ.setdefault("HORAE_API_KEY", "")
os.environ.setdefault("DEBUG", "false")

from horae.core.delta import MessageDelta
from horae.core.host import ChatMessage, InMemoryChatHost
from horae.core.session import HoraeSession
from horae.llm.provider import LLMProvider, LLMResponse
from horae.prompts import reset_registry
from horae.settings import HoraeSettings, SettingsStore, reset_settings_store

# ---------------------------------------------------------------------------
# MockLLMProvider: deterministic stub
# ---------------------------------------------------------------------------

class MockLLMProvider(LLMProvider):
    """LLM provider that returns canned responses from a queue.

    Usage:
        provider = MockLLMProvider()
        provider.queue_response("Hello world")
        resp = await provider.complete(messages=[...])
        assert resp.content == "Hello world"
    """

    def __init__(self):
        super().__init__(api_key="mock-key", default_model="mock-model")
        self._response_queue: deque[LLMResponse] = deque()
        self._call_history: list[dict[str, Any]] = []
        self.delay: float = 0.0
        self.error: Optional[Exception] = None

    # --- Queue helpers ---

    def queue_response(self, content: str = "", **kwargs):
        """Queue a text response."""
        self._response_queue.append(
            LLMResponse(content=content, model="mock-model", **kwargs)
        )

    @property
    def call_history(self) -> list[dict[str, Any]]:
        return self._call_history

    # --- LLMProvider interface ---

    @property
    def name(self) -> str:
        return "mock"

    def get_default_model(self) -> str:
        return "mock-model"

    async def complete(
        self,
        messages,
        system=None,
        model=None,
        max_tokens=1024,
        temperature=0.7,
    ) -> LLMResponse:
        self._call_history.append({
            "method": "complete",
            "messages": messages,
            "system": system,
            "model": model,
            "temperature": temperature,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self._response_queue:
            return self._response_queue.popleft()
        return LLMResponse(content="mock response", model="mock-model")


# ---------------------------------------------------------------------------
# Transcript helpers
# ---------------------------------------------------------------------------

def tagged(state: str = "", events: str = "", body: str = "Story text.") -> str:
    """Message text with Horae blocks, one tag line per list entry."""
    parts = [body]
    if state:
        parts.append(f"<horae>\n{state}\n</horae>")
    if events:
        parts.append(f"<horaeevent>\n{events}\n</horaeevent>")
    return "\n".join(parts)


def make_host(*contents: str, **kwargs) -> InMemoryChatHost:
    """Host whose message 0 is the greeting and the rest alternate user/AI as given."""
    messages = [ChatMessage(content="Greeting.", name="Character")]
    for content in contents:
        is_user = content.startswith("USER:")
        messages.append(ChatMessage(
            content=content.removeprefix("USER:"),
            is_user=is_user,
            name="User" if is_user else "Character",
        ))
    return InMemoryChatHost(messages=messages, **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_globals():
    """Fresh prompt registry and settings store for every test."""
    reset_registry()
    reset_settings_store()
    yield
    reset_registry()
    reset_settings_store()


@pytest.fixture
def mock_provider():
    """Fresh MockLLMProvider instance."""
    return MockLLMProvider()


@pytest.fixture
def mock_llm_manager(mock_provider):
    """LLMManager stand-in that always hands out the mock provider."""
    manager = MagicMock()
    manager.get_provider.return_value = mock_provider
    manager.get_provider_and_model.return_value = (mock_provider, "mock-model")
    return manager


@pytest.fixture
def settings_store(tmp_path):
    """SettingsStore writing to a temporary file."""
    return SettingsStore(tmp_path / "settings.json")


@pytest.fixture
def settings(settings_store) -> HoraeSettings:
    return settings_store.load()


@pytest.fixture
def host():
    return make_host()


@pytest.fixture
def session_for(settings_store, mock_llm_manager):
    """Factory for HoraeSessions whose agents talk to the mock provider."""
    def factory(chat_host: InMemoryChatHost) -> HoraeSession:
        s = HoraeSession(chat_host, settings_store=settings_store)
        s.summarizer._manager = mock_llm_manager
        s.analyzer._manager = mock_llm_manager
        return s
    return factory


@pytest.fixture
def session(host, session_for):
    return session_for(host)


@pytest.fixture
def empty_delta():
    return MessageDelta.empty()
