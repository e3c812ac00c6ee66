"""
Delta store: the per-message deltas attached to the host transcript.

This is the only persisted Horae state. Everything the engine shows or
sends is recomputed from it, so rebuilds can always be re-run after an
interruption.
"""

import logging
from datetime import datetime
from typing import Iterator, Optional

from .delta import MessageDelta, SummaryEntry, TimelineEvent, carry_over, merge_delta
from .host import ChatHost, ChatMessage
from .parser import inject_tags, parse_message

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class DeltaStore:
    """Reads and writes deltas on the host's messages."""

    def __init__(self, host: ChatHost):
        self._host = host

    @property
    def host(self) -> ChatHost:
        return self._host

    @property
    def messages(self) -> list[ChatMessage]:
        return self._host.messages

    def __len__(self) -> int:
        return len(self._host.messages)

    # ── Access ─────────────────────────────────────────────────────────

    def get(self, index: int) -> Optional[MessageDelta]:
        if 0 <= index < len(self.messages):
            return self.messages[index].meta
        return None

    def set(self, index: int, delta: Optional[MessageDelta]) -> None:
        if not 0 <= index < len(self.messages):
            raise IndexError(f"Message {index} does not exist")
        self.messages[index].meta = delta

    def deltas(self) -> list[Optional[MessageDelta]]:
        """Deltas in transcript order; None where a message has none."""
        return [m.meta for m in self.messages]

    def anchor(self) -> MessageDelta:
        """Delta of message 0, created empty on first use."""
        if not self.messages:
            raise IndexError("The transcript is empty")
        if self.messages[0].meta is None:
            self.messages[0].meta = MessageDelta.empty()
        return self.messages[0].meta

    def peek_anchor(self) -> Optional[MessageDelta]:
        """Anchor delta without creating it (for read-only callers)."""
        return self.messages[0].meta if self.messages else None

    def summaries(self) -> list[SummaryEntry]:
        anchor = self.peek_anchor()
        return anchor.auto_summaries if anchor else []

    def iter_events(self) -> Iterator[tuple[int, int, TimelineEvent]]:
        for msg_idx, message in enumerate(self.messages):
            if message.meta is None:
                continue
            for evt_idx, event in enumerate(message.meta.events):
                yield msg_idx, evt_idx, event

    # ── Parsing into the store ─────────────────────────────────────────

    def process_message(self, index: int) -> Optional[MessageDelta]:
        """First-render parse: merge the message's tags into its delta.

        Returns the parsed delta, or None when the text carried no tags.
        A failed parse never wipes an existing delta.
        """
        message = self.messages[index]
        parsed = parse_message(message.content)
        if parsed is None:
            if message.meta is None:
                message.meta = MessageDelta.empty()
            return None

        merged = merge_delta(message.meta, parsed)
        merged.timestamp.absolute = _now()
        message.meta = merged
        return parsed

    def reparse_message(self, index: int) -> Optional[MessageDelta]:
        """Replace a message's delta after its text changed.

        Engine-owned state (compression markers, user table edits, anchor
        side tables) is carried over from the old delta.
        """
        message = self.messages[index]
        parsed = parse_message(message.content)
        if parsed is None:
            logger.debug("Message %d has no tags after edit; keeping its delta", index)
            return None
        replaced = carry_over(message.meta, parsed, anchor=index == 0)
        replaced.timestamp.absolute = _now()
        message.meta = replaced
        return replaced

    def save_manual_edit(self, index: int, delta: MessageDelta) -> MessageDelta:
        """Store a panel-edited delta and rewrite the message's tags to match."""
        message = self.messages[index]
        stored = carry_over(message.meta, delta, anchor=index == 0)
        if not stored.timestamp.absolute:
            stored.timestamp.absolute = _now()
        message.meta = stored
        message.content = inject_tags(message.content, stored)
        return stored

    def clear_all(self) -> None:
        for message in self.messages:
            message.meta = None

    async def save(self) -> None:
        await self._host.save_chat()
