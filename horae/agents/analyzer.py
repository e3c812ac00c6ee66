"""Analyzer Agent - annotates old messages that were written without tags."""

import logging
from typing import Optional

from .base import BaseAgent
from ..core.delta import MessageDelta
from ..core.parser import parse_message, strip_tags

logger = logging.getLogger(__name__)


class AnalyzerAgent(BaseAgent):
    """Asks the model to write Horae tags for one message and parses them."""

    agent_name = "analyzer"
    temperature = 0.2

    def __init__(self, *args, user_name: str = "User", char_name: str = "Character", **kwargs):
        super().__init__(*args, **kwargs)
        self.user_name = user_name
        self.char_name = char_name

    @property
    def system_prompt(self) -> str:
        content = self.registry.get_content("analyzer")
        return content.replace("{{user}}", self.user_name).replace("{{char}}", self.char_name)

    async def analyze(self, text: str) -> Optional[MessageDelta]:
        """Return the delta the model reads out of ``text``, or None."""
        body = strip_tags(text or "").strip()
        if not body:
            return None
        response = await self._complete(body, "analyzer")
        delta = parse_message(response.content)
        if delta is None:
            logger.warning("Analyzer reply contained no usable tags")
        return delta
