"""Tests for LLMProvider retry logic, the concrete providers and LLMManager.

Covers provider resolution (host connection versus direct endpoint),
caching, the host adapter and stream collection in OpenAIProvider.
"""

from types import SimpleNamespace

import pytest

from horae.config import Config
from horae.llm import HostProvider, LLMManager, LLMProvider, LLMResponse, OpenAIProvider

from conftest import make_host


@pytest.fixture(autouse=True)
def _no_env_endpoint(monkeypatch):
    monkeypatch.setattr(Config, "HORAE_API_URL", "")
    monkeypatch.setattr(Config, "HORAE_API_KEY", "")
    monkeypatch.setattr(Config, "HORAE_MODEL", "")


def configure_endpoint(settings_store, use_direct: bool = True):
    endpoint = settings_store.load().endpoint
    endpoint.use_direct = use_direct
    endpoint.url = "https://example.test/v1/"
    endpoint.model = "story-model"
    settings_store.set_api_key("sk-test-1234567890")


# ---------------------------------------------------------------------------
# Tests: LLMResponse / retry
# ---------------------------------------------------------------------------

class TestLLMResponse:
    def test_defaults(self):
        resp = LLMResponse(content="Hello")
        assert resp.model == ""
        assert resp.usage == {}
        assert resp.content == "Hello"


class TestRetry:
    def test_status_429_retryable(self):
        exc = Exception("rate limited")
        exc.status_code = 429
        assert LLMProvider._is_retryable(exc) is True

    def test_rate_limit_by_name(self):
        class RateLimitError(Exception):
            pass
        assert LLMProvider._is_retryable(RateLimitError()) is True

    def test_normal_error_not_retryable(self):
        assert LLMProvider._is_retryable(ValueError("bad value")) is False

    async def test_retries_transient_errors(self, mock_provider):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                exc = Exception("busy")
                exc.status_code = 529
                raise exc
            return "ok"

        assert await mock_provider._call_with_retry(flaky, base_delay=0) == "ok"
        assert len(attempts) == 3

    async def test_gives_up_after_max_retries(self, mock_provider):
        attempts = []

        async def always_busy():
            attempts.append(1)
            exc = Exception("busy")
            exc.status_code = 429
            raise exc

        with pytest.raises(Exception, match="busy"):
            await mock_provider._call_with_retry(always_busy, max_retries=2, base_delay=0)
        assert len(attempts) == 3

    async def test_other_errors_raise_immediately(self, mock_provider):
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            await mock_provider._call_with_retry(broken, base_delay=0)
        assert len(attempts) == 1


# ---------------------------------------------------------------------------
# Tests: HostProvider
# ---------------------------------------------------------------------------

class TestHostProvider:
    async def test_joins_messages(self):
        host = make_host(replies=["A summary."])
        provider = HostProvider(host)
        resp = await provider.complete(
            messages=[{"role": "user", "content": "first"}, {"role": "user", "content": "second"}],
            system="Be brief.",
        )
        assert resp.content == "A summary."
        assert resp.model == "host"
        assert host.prompts == ["first\n\nsecond"]

    async def test_host_without_backend(self):
        provider = HostProvider(make_host())
        with pytest.raises(RuntimeError):
            await provider.complete(messages=[{"role": "user", "content": "x"}])


# ---------------------------------------------------------------------------
# Tests: OpenAIProvider
# ---------------------------------------------------------------------------

def chunk(text=None, usage=None):
    choices = [SimpleNamespace(delta=SimpleNamespace(content=text))] if text is not None else []
    return SimpleNamespace(choices=choices, usage=usage)


class FakeCompletions:
    def __init__(self, chunks=None, error=None):
        self.chunks = chunks or []
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error

        async def stream():
            for c in self.chunks:
                yield c

        return stream()


def provider_with(completions) -> OpenAIProvider:
    provider = OpenAIProvider(api_key="sk-test", default_model="story-model", base_url="https://example.test/v1/")
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return provider


class TestOpenAIProvider:
    async def test_collects_stream(self):
        usage = SimpleNamespace(prompt_tokens=12, completion_tokens=3, total_tokens=15)
        completions = FakeCompletions([chunk("They "), chunk("fought."), chunk(usage=usage)])
        provider = provider_with(completions)

        resp = await provider.complete(
            messages=[{"role": "user", "content": "Summarize"}], system="Be brief.", temperature=0.3,
        )

        assert resp.content == "They fought."
        assert resp.usage == {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}
        sent = completions.calls[0]
        assert sent["model"] == "story-model"
        assert sent["stream"] is True
        assert sent["temperature"] == 0.3
        assert sent["messages"][0] == {"role": "system", "content": "Be brief."}

    def test_base_url_normalised(self):
        provider = OpenAIProvider(api_key="k", base_url="https://example.test/v1/")
        assert provider.base_url == "https://example.test/v1"
        assert provider.default_model == "gpt-4o-mini"

    async def test_errors_wrapped(self):
        provider = provider_with(FakeCompletions(error=ValueError("bad request")))
        with pytest.raises(RuntimeError, match="Completion failed for story-model"):
            await provider.complete(messages=[{"role": "user", "content": "x"}])


# ---------------------------------------------------------------------------
# Tests: LLMManager
# ---------------------------------------------------------------------------

class TestLLMManager:
    def test_host_by_default(self, settings_store):
        manager = LLMManager(host=make_host(), settings_store=settings_store)
        provider, model = manager.get_provider_and_model()
        assert isinstance(provider, HostProvider)
        assert model == "host"
        assert manager.get_provider() is provider

    def test_no_backend(self, settings_store):
        manager = LLMManager(settings_store=settings_store)
        with pytest.raises(ValueError, match="No generation backend"):
            manager.get_provider()

    def test_direct_endpoint(self, settings_store):
        configure_endpoint(settings_store)
        manager = LLMManager(host=make_host(), settings_store=settings_store)

        provider = manager.get_provider()
        assert isinstance(provider, OpenAIProvider)
        assert provider.api_key == "sk-test-1234567890"
        assert provider.default_model == "story-model"
        assert provider.base_url == "https://example.test/v1"
        assert manager.get_provider() is provider

        manager.clear_cache()
        assert manager.get_provider() is not provider

    def test_configured_but_not_enabled(self, settings_store):
        configure_endpoint(settings_store, use_direct=False)
        manager = LLMManager(host=make_host(), settings_store=settings_store)
        assert isinstance(manager.get_provider(), HostProvider)

    def test_incomplete_endpoint_falls_back(self, settings_store, caplog):
        settings_store.load().endpoint.use_direct = True
        manager = LLMManager(host=make_host(), settings_store=settings_store)
        assert isinstance(manager.get_provider(), HostProvider)
        assert "incomplete" in caplog.text

    def test_changing_host_drops_adapter(self, settings_store):
        manager = LLMManager(host=make_host(), settings_store=settings_store)
        first = manager.get_provider()
        manager.host = make_host()
        assert manager.get_provider() is not first
