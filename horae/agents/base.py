"""Base agent class for Horae's model-backed helpers."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..llm import LLMManager, LLMProvider, LLMResponse
from ..prompts import PromptRegistry, get_registry

logger = logging.getLogger(__name__)


class BaseAgent(ABC):
    """Base class for agents that make one free-form completion.

    The provider comes from the session's LLMManager on every call, so a
    change of endpoint settings takes effect immediately.
    """

    agent_name: str = "unknown"

    # Sampling defaults; a template's frontmatter ``temperature`` wins
    temperature: float = 0.7
    max_tokens: int = 1024

    def __init__(self, manager: LLMManager, registry: Optional[PromptRegistry] = None):
        self._manager = manager
        self._registry = registry

    @property
    def registry(self) -> PromptRegistry:
        return self._registry or get_registry()

    def _get_provider_and_model(self) -> tuple[LLMProvider, str]:
        return self._manager.get_provider_and_model()

    @property
    @abstractmethod
    def system_prompt(self) -> str:
        """The system prompt for this agent."""
        pass

    def _temperature(self, template: str) -> float:
        try:
            return float(self.registry.get(template).metadata.get("temperature", self.temperature))
        except (KeyError, TypeError, ValueError):
            return self.temperature

    async def _complete(self, user_message: str, template: str) -> LLMResponse:
        provider, model = self._get_provider_and_model()
        logger.debug(f"[{self.agent_name}] {provider.name}/{model}, {len(user_message)} chars")
        return await provider.complete(
            messages=[{"role": "user", "content": user_message}],
            system=self.system_prompt,
            model=model,
            max_tokens=self.max_tokens,
            temperature=self._temperature(template),
        )
