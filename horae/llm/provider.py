"""Model backends for the summarizer and analyzer requests.

A provider answers one chat completion at a time. The host adapter routes
through the conversation's own generator; the OpenAI-compatible provider
talks to the endpoint configured in the settings.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LLMResponse:
    """Reply to a summary or analysis request."""

    content: str
    """Summary prose or tag text, before any local parsing."""

    model: str = ""
    """Model that answered; "host" when the chat's own generator did."""

    usage: Dict[str, int] = field(default_factory=dict)
    """Token counts reported by the endpoint, when it reports any."""


class LLMProvider(ABC):
    """Backend that answers Horae's model requests.

    Horae only needs plain text completion: summaries and annotations come
    back as prose or tag text and are parsed locally.
    """

    def __init__(self, api_key: str = "", default_model: Optional[str] = None):
        """
        Args:
            api_key: decrypted endpoint key (unused by the host adapter)
            default_model: model to request when a call names none
        """
        self.api_key = api_key
        self.default_model = default_model or self.get_default_model()
        self._client = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Short name used in log lines ('openai', 'host')."""
        pass

    @abstractmethod
    def get_default_model(self) -> str:
        pass

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Answer one summary or analysis request.

        Args:
            messages: the request as [{role, content}] dicts
            system: the agent's rendered system prompt
            model: overrides the provider's default model
            max_tokens: reply budget
            temperature: sampling temperature from the prompt template

        Returns:
            The reply text wrapped in an LLMResponse
        """
        pass

    # ── Retry helper ──────────────────────────────────────────────

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        """True for rate-limit and overload errors worth another attempt.

        Works on the OpenAI SDK's RateLimitError and APIStatusError without
        importing it here.
        """
        if type(exc).__name__ in ("OverloadedError", "RateLimitError"):
            return True
        status = getattr(exc, "status_code", None)
        return status in (429, 529)

    async def _call_with_retry(
        self,
        fn: Callable[..., T],
        *args,
        max_retries: int = 3,
        base_delay: float = 2.0,
        **kwargs,
    ) -> T:
        """Await ``fn``, backing off and retrying while the endpoint is busy.

        A summary request that hits a rate limit waits 2s, 4s, 8s before
        giving up; any other error is raised at once.
        """
        last_exc = None
        for attempt in range(max_retries + 1):
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                if not self._is_retryable(exc) or attempt == max_retries:
                    raise
                last_exc = exc
                delay = base_delay * (2 ** attempt)
                logger.warning(f"[{self.name}] {type(exc).__name__}, retrying in {delay:.0f}s "
                               f"(attempt {attempt + 1}/{max_retries})")
                await asyncio.sleep(delay)
        raise last_exc

    # ── Client lifecycle ─────────────────────────────────────────

    def _ensure_client(self):
        """Create the HTTP client on first use."""
        if self._client is None:
            self._init_client()

    def _init_client(self):
        """Build the client; the host adapter has none."""
        return None
