"""
Interface to the chat application Horae runs inside.

The host owns the transcript, persistence and the generation backend. The
engine only talks to it through ``ChatHost``; ``InMemoryChatHost`` is a
complete implementation backed by a Python list, used by the command-line
tool and the test-suite.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .delta import MessageDelta

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    """One transcript row as seen by the engine."""
    content: str = ""
    is_user: bool = False
    name: str = ""
    hidden: bool = False
    meta: Optional[MessageDelta] = Field(default=None, description="Attached Horae delta")


class ChatHost(ABC):
    """What the engine needs from the chat application."""

    @property
    @abstractmethod
    def messages(self) -> list[ChatMessage]:
        """The live transcript, index 0 being the anchor message."""
        pass

    @property
    def card_id(self) -> str:
        """Identifier of the character card the conversation belongs to."""
        return "default"

    @property
    def user_name(self) -> str:
        return "User"

    @property
    def char_name(self) -> str:
        return "Character"

    @abstractmethod
    async def save_chat(self) -> None:
        """Persist the transcript including every message's delta."""
        pass

    @abstractmethod
    async def set_messages_hidden(self, indices: list[int], hidden: bool) -> None:
        """Hide or reveal transcript rows from display and generation."""
        pass

    @abstractmethod
    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        """Run one generation on the host's active connection."""
        pass

    def stop_generation(self) -> None:
        """Ask the host to abort any generation in flight."""
        return None


class InMemoryChatHost(ChatHost):
    """Transcript held in memory, optionally mirrored to a JSON file."""

    def __init__(
        self,
        messages: Optional[list[ChatMessage]] = None,
        card_id: str = "default",
        user_name: str = "User",
        char_name: str = "Character",
        path: Optional[Path] = None,
        replies: Optional[list[str]] = None,
    ):
        self._messages = list(messages or [])
        self._card_id = card_id
        self._user_name = user_name
        self._char_name = char_name
        self._path = path
        self._replies = list(replies or [])
        self.save_count = 0
        self.stop_requests = 0
        self.prompts: list[str] = []

    @property
    def messages(self) -> list[ChatMessage]:
        return self._messages

    @property
    def card_id(self) -> str:
        return self._card_id

    @property
    def user_name(self) -> str:
        return self._user_name

    @property
    def char_name(self) -> str:
        return self._char_name

    def append(self, content: str, is_user: bool = False) -> int:
        """Add a message and return its index."""
        name = self._user_name if is_user else self._char_name
        self._messages.append(ChatMessage(content=content, is_user=is_user, name=name))
        return len(self._messages) - 1

    async def save_chat(self) -> None:
        self.save_count += 1
        if self._path is None:
            return
        payload = {
            "card_id": self._card_id,
            "messages": [m.model_dump(mode="json") for m in self._messages],
        }
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.debug("Saved %d messages to %s", len(self._messages), self._path)

    async def set_messages_hidden(self, indices: list[int], hidden: bool) -> None:
        for index in indices:
            if 0 <= index < len(self._messages):
                self._messages[index].hidden = hidden

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        if not self._replies:
            raise RuntimeError("No generation backend attached to this chat")
        return self._replies.pop(0)

    def stop_generation(self) -> None:
        self.stop_requests += 1

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryChatHost":
        """Load ``{"messages": [...]}`` as written by ``save_chat``."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        messages = [ChatMessage.model_validate(m) for m in data.get("messages", [])]
        return cls(messages=messages, card_id=data.get("card_id", "default"), path=Path(path))
