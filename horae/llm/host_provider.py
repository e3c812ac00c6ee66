"""Provider that generates through the chat host's own connection."""

import logging
from typing import Dict, List, Optional

from ..core.host import ChatHost
from .provider import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


class HostProvider(LLMProvider):
    """Adapter over ``ChatHost.generate``.

    The host decides model and sampling; ``max_tokens`` and
    ``temperature`` are accepted for interface compatibility only.
    """

    def __init__(self, host: ChatHost):
        self._host = host
        super().__init__(api_key="", default_model="host")

    @property
    def name(self) -> str:
        return "host"

    def get_default_model(self) -> str:
        return "host"

    async def complete(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> LLMResponse:
        prompt = "\n\n".join(m.get("content", "") for m in messages if m.get("content"))
        logger.debug("Generating through host connection (%d prompt chars)", len(prompt))
        content = await self._host.generate(prompt, system=system)
        return LLMResponse(content=content or "", model="host")
