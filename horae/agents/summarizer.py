"""Summarizer Agent - condenses events or messages for compression."""

from .base import BaseAgent
from ..enums import SummaryMode


class SummarizerAgent(BaseAgent):
    """Writes the text of a Summary Entry.

    Input is either a list of timeline events or the tag-stripped text of
    the covered messages; output is plain prose capped at ``max_words``.
    """

    agent_name = "summarizer"
    temperature = 0.3

    def __init__(self, *args, max_words: int = 300, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_words = max_words

    @property
    def system_prompt(self) -> str:
        return self.registry.get_composed("summarizer", max_words=str(self.max_words)).content

    async def summarize(self, text: str, mode: SummaryMode = SummaryMode.EVENTS) -> str:
        """Summarize ``text`` (event lines or a transcript).

        Returns:
            The summary, or "" for empty input or an empty reply.
        """
        if not text.strip():
            return ""

        if mode == SummaryMode.FULLTEXT:
            template, fragment = "summary_fulltext", "transcript"
        else:
            template, fragment = "summary_events", "events"
        user_message = self.registry.get_composed(
            template, **{fragment: text, "max_words": str(self.max_words)}
        ).content

        response = await self._complete(user_message, "summarizer")
        return self.cap_words(response.content.strip(), self.max_words)

    @staticmethod
    def cap_words(text: str, max_words: int) -> str:
        """Cut ``text`` to ``max_words``, ending on a sentence where possible.

        Text without spaces (CJK) is capped by characters instead, at
        twice the word budget.
        """
        words = text.split()
        if len(words) > 1 and len(words) > max_words:
            result = " ".join(words[:max_words])
        elif len(words) <= 1 and len(text) > max_words * 2:
            result = text[:max_words * 2]
        else:
            return text

        last_stop = max(result.rfind("."), result.rfind("。"))
        if last_stop > len(result) // 2:
            result = result[:last_stop + 1]
        return result
