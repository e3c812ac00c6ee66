"""
Reversible event compression.

A Summary Entry replaces a run of timeline events with one summary while
keeping a verbatim backup of every event it hides:

- compressing marks the events ``compressed_by`` the summary, appends a
  placeholder event (``summary_id``) to the earliest affected message and
  hides the covered messages on the host;
- deactivating restores the backed-up events and reveals the messages,
  activating marks and hides them again;
- deleting restores everything and removes the placeholder.

The commit happens only after the summary text is in hand, so a failed or
cancelled generation leaves no trace.
"""

import asyncio
import logging
import math
import re
from datetime import datetime
from typing import Optional

from ..agents.summarizer import SummarizerAgent
from ..enums import EventLevel, SummaryMode, ThresholdUnit
from ..settings.models import HoraeSettings
from .delta import EventBackup, MessageDelta, StoryTimestamp, SummaryEntry, TimelineEvent
from .folder import fold
from .parser import strip_tags
from .store import DeltaStore

logger = logging.getLogger(__name__)

_CJK = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff]")

EventRef = tuple[int, int]


class CompressionError(RuntimeError):
    """Summary generation failed; nothing was committed."""


def estimate_tokens(text: str) -> int:
    """Rough token count: CJK glyphs weigh 1.5, other characters 0.4."""
    if not text:
        return 0
    cjk = len(_CJK.findall(text))
    return math.ceil(cjk * 1.5 + (len(text) - cjk) * 0.4)


class CompressionEngine:
    """Creates, toggles and deletes Summary Entries for one conversation."""

    def __init__(self, store: DeltaStore, summarizer: SummarizerAgent, settings: HoraeSettings):
        self._store = store
        self._summarizer = summarizer
        self._settings = settings
        self._busy = False
        self._cancel_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def settings(self) -> HoraeSettings:
        return self._settings

    @settings.setter
    def settings(self, value: HoraeSettings) -> None:
        self._settings = value

    @property
    def busy(self) -> bool:
        return self._busy

    def reset(self) -> None:
        """Forget in-flight state after the host switched conversations."""
        self.cancel()
        self._busy = False
        self._cancel_event = None
        self._task = None

    # ── Inputs ─────────────────────────────────────────────────────────

    def _live_refs(self, refs: list[EventRef]) -> dict[EventRef, tuple[TimelineEvent, str, str]]:
        """Requested events still visible on the timeline, with their clock."""
        wanted = set(refs)
        found = {}
        for entry in fold(self._store.deltas()).events:
            ref = (entry.message_index, entry.event_index)
            if ref in wanted and not entry.event.summary_id:
                found[ref] = (entry.event, entry.timestamp.story_date, entry.timestamp.story_time)
        return found

    @staticmethod
    def _events_text(live: dict[EventRef, tuple[TimelineEvent, str, str]]) -> str:
        lines = []
        for ref in sorted(live):
            event, date, time = live[ref]
            when = " ".join(p for p in (date, time) if p) or "unknown time"
            lines.append(f"[{event.level.value}] {when}: {event.summary}")
        return "\n".join(lines)

    def _fulltext(self, first: int, last: int) -> str:
        parts = []
        for index in range(first, last + 1):
            message = self._store.messages[index]
            body = strip_tags(message.content).strip()
            if body:
                speaker = message.name or ("User" if message.is_user else "Character")
                parts.append(f"[{speaker}]: {body}")
        return "\n\n".join(parts)

    # ── Generation ─────────────────────────────────────────────────────

    async def _generate(self, text: str, mode: SummaryMode) -> Optional[str]:
        """Run the summarizer, racing it against ``cancel()``.

        Returns None when cancelled.
        """
        self._summarizer.max_words = self._settings.summary.max_words
        self._task = asyncio.ensure_future(self._summarizer.summarize(text, mode))
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({self._task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if self._cancel_event.is_set():
            self._task.cancel()
            return None
        try:
            return self._task.result()
        except asyncio.CancelledError:
            return None
        except Exception as e:
            logger.error(f"Summary generation failed: {e}")
            raise CompressionError(f"Summary generation failed: {e}") from e

    def cancel(self) -> bool:
        """Abort the compression in flight; returns False when idle."""
        if not self._busy or self._cancel_event is None:
            return False
        logger.info("Cancelling compression")
        self._cancel_event.set()
        self._store.host.stop_generation()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    # ── Compress ───────────────────────────────────────────────────────

    async def compress(
        self,
        refs: list[EventRef],
        mode: Optional[SummaryMode] = None,
        auto: bool = False,
        span: Optional[tuple[int, int]] = None,
    ) -> Optional[SummaryEntry]:
        """Summarize the referenced events and commit the result.

        Args:
            refs: (message index, event index) pairs to hide
            mode: events or full text; defaults to the configured mode
            auto: marks entries created by the automatic path
            span: message range to summarize and hide; defaults to the
                range of ``refs``

        Returns:
            The new entry, or None when cancelled or refused as busy.

        Raises:
            CompressionError: nothing to compress or generation failed
        """
        if self._busy:
            logger.warning("A compression is already running; request ignored")
            return None

        self._busy = True
        self._cancel_event = asyncio.Event()
        try:
            mode = mode or self._settings.summary.default_mode
            live = self._live_refs(refs)
            if span is None:
                if not live:
                    raise CompressionError("None of the selected events can be compressed")
                span = (min(r[0] for r in live), max(r[0] for r in live))
            first, last = span

            if mode == SummaryMode.FULLTEXT:
                text = self._fulltext(first, last)
            else:
                text = self._events_text(live)
            if not text.strip():
                raise CompressionError("Selected range has no text to summarize")

            logger.info(f"Compressing messages {first}-{last} ({len(live)} events, {mode.value})")
            summary_text = await self._generate(text, mode)
            if summary_text is None:
                logger.info("Compression cancelled; nothing committed")
                return None
            if not summary_text.strip():
                raise CompressionError("The model returned an empty summary")

            entry = self._commit(live, summary_text.strip(), first, last, auto)
            await self._store.host.set_messages_hidden(list(range(first, last + 1)), True)
            await self._store.save()
            return entry
        finally:
            self._busy = False
            self._cancel_event = None
            self._task = None

    def _commit(
        self,
        live: dict[EventRef, tuple[TimelineEvent, str, str]],
        summary_text: str,
        first: int,
        last: int,
        auto: bool,
    ) -> SummaryEntry:
        entry = SummaryEntry(
            range=(first, last),
            summary_text=summary_text,
            created_at=datetime.now().isoformat(timespec="seconds"),
            auto=auto,
        )
        entry.hidden_before = self._hidden_elsewhere(first, last, entry.id)
        for (msg_idx, evt_idx), (_, date, time) in sorted(live.items()):
            event = self._store.get(msg_idx).events[evt_idx]
            entry.original_events.append(EventBackup(
                msg_idx=msg_idx,
                evt_idx=evt_idx,
                event=event.model_copy(deep=True),
                timestamp=StoryTimestamp(story_date=date, story_time=time),
            ))
            event.compressed_by = entry.id

        host_delta = self._store.get(first)
        if host_delta is None:
            host_delta = MessageDelta.empty()
            self._store.set(first, host_delta)
        host_delta.events.append(TimelineEvent(
            level=EventLevel.SUMMARY,
            summary=summary_text,
            is_summary=True,
            summary_id=entry.id,
        ))
        self._store.anchor().auto_summaries.append(entry)
        logger.info(f"Created summary {entry.id} covering messages {first}-{last}")
        return entry

    # ── Automatic path ─────────────────────────────────────────────────

    def auto_buffer(self) -> list[int]:
        """First contiguous run of unsummarised, visible messages.

        Starts after the anchor and stops before the ``keep_recent`` most
        recent messages.
        """
        messages = self._store.messages
        limit = len(messages) - max(0, self._settings.summary.keep_recent)
        covered = set()
        for entry in self._store.summaries():
            covered.update(range(entry.range[0], entry.range[1] + 1))

        buffer: list[int] = []
        for index in range(1, max(1, limit)):
            if index in covered or messages[index].hidden:
                if buffer:
                    break
                continue
            buffer.append(index)
        return buffer

    def buffer_size(self, buffer: list[int]) -> int:
        if self._settings.summary.threshold_unit == ThresholdUnit.TOKENS:
            return sum(estimate_tokens(strip_tags(self._store.messages[i].content)) for i in buffer)
        return len(buffer)

    async def maybe_auto_compress(self) -> Optional[SummaryEntry]:
        """Compress the oldest buffer once it passes the threshold."""
        summary = self._settings.summary
        if not summary.auto_enabled or self._busy:
            return None
        buffer = self.auto_buffer()
        if not buffer:
            return None
        size = self.buffer_size(buffer)
        if size <= summary.threshold:
            return None

        refs = [
            (index, evt_idx)
            for index in buffer
            for evt_idx, event in enumerate((self._store.get(index) or MessageDelta()).events)
            if not event.summary_id and not event.compressed_by
        ]
        logger.info(f"Auto compression: {size} {summary.threshold_unit.value} over threshold {summary.threshold}")
        try:
            return await self.compress(refs, SummaryMode.FULLTEXT, auto=True, span=(buffer[0], buffer[-1]))
        except CompressionError as e:
            logger.error(f"Automatic compression failed: {e}")
            return None

    # ── Lifecycle ──────────────────────────────────────────────────────

    def _find(self, summary_id: str) -> Optional[SummaryEntry]:
        anchor = self._store.peek_anchor()
        return anchor.find_summary(summary_id) if anchor else None

    def _restore(self, entry: SummaryEntry) -> None:
        """Put the backed-up events back and clear every marker of ``entry``."""
        for backup in entry.original_events:
            delta = self._store.get(backup.msg_idx)
            if delta is None:
                continue
            position = None
            events = delta.events
            if backup.evt_idx < len(events) and events[backup.evt_idx].compressed_by == entry.id:
                position = backup.evt_idx
            else:
                position = next(
                    (i for i, e in enumerate(events)
                     if e.compressed_by == entry.id and e.summary == backup.event.summary),
                    None,
                )
            if position is not None:
                events[position] = backup.event.model_copy(deep=True)
        for _, _, event in self._store.iter_events():
            if event.compressed_by == entry.id:
                event.compressed_by = None

    def _remark(self, entry: SummaryEntry) -> None:
        for backup in entry.original_events:
            delta = self._store.get(backup.msg_idx)
            if delta is None:
                continue
            events = delta.events

            def free(i: int) -> bool:
                e = events[i]
                return not e.summary_id and not e.compressed_by and e.summary == backup.event.summary

            if backup.evt_idx < len(events) and free(backup.evt_idx):
                events[backup.evt_idx].compressed_by = entry.id
                continue
            position = next((i for i in range(len(events)) if free(i)), None)
            if position is None:
                logger.debug(f"Event {backup.msg_idx}:{backup.evt_idx} of {entry.id} no longer exists")
            else:
                events[position].compressed_by = entry.id

    def _still_covered(self, excluding: str) -> set[int]:
        covered = set()
        for other in self._store.summaries():
            if other.active and other.id != excluding:
                covered.update(range(other.range[0], other.range[1] + 1))
        return covered

    def _hidden_elsewhere(self, first: int, last: int, excluding: str) -> list[int]:
        covered = self._still_covered(excluding)
        messages = self._store.messages
        return [
            i for i in range(first, min(last, len(messages) - 1) + 1)
            if messages[i].hidden and i not in covered
        ]

    async def _reveal(self, entry: SummaryEntry) -> None:
        keep_hidden = self._still_covered(entry.id) | set(entry.hidden_before)
        indices = [
            i for i in range(entry.range[0], entry.range[1] + 1)
            if i not in keep_hidden and i < len(self._store)
        ]
        if indices:
            await self._store.host.set_messages_hidden(indices, False)

    async def toggle_summary(self, summary_id: str, active: bool) -> bool:
        """Activate or deactivate a summary; False for an unknown id."""
        entry = self._find(summary_id)
        if entry is None:
            logger.warning(f"Summary {summary_id} not found")
            return False
        if entry.active == active:
            return True

        if active:
            self._remark(entry)
            entry.active = True
            entry.hidden_before = self._hidden_elsewhere(entry.range[0], entry.range[1], entry.id)
            indices = [i for i in range(entry.range[0], entry.range[1] + 1) if i < len(self._store)]
            await self._store.host.set_messages_hidden(indices, True)
        else:
            self._restore(entry)
            entry.active = False
            await self._reveal(entry)
        await self._store.save()
        logger.info(f"Summary {summary_id} {'activated' if active else 'deactivated'}")
        return True

    def _drop(self, entry: SummaryEntry) -> None:
        self._restore(entry)
        for delta in self._store.deltas():
            if delta is not None:
                delta.events = [e for e in delta.events if e.summary_id != entry.id]
        anchor = self._store.peek_anchor()
        if anchor is not None:
            anchor.auto_summaries = [s for s in anchor.auto_summaries if s.id != entry.id]

    async def delete_summary(self, summary_id: str) -> bool:
        """Remove a summary for good, restoring every event it touched."""
        entry = self._find(summary_id)
        if entry is None:
            logger.warning(f"Summary {summary_id} not found")
            return False
        self._drop(entry)
        await self._reveal(entry)
        await self._store.save()
        logger.info(f"Deleted summary {summary_id}")
        return True

    def shift_after_delete(self, index: int) -> None:
        """Renumber summary ranges and backups after message ``index`` was removed."""
        for entry in self._store.summaries():
            first, last = entry.range
            if first > index:
                first -= 1
            if last >= index:
                last -= 1
            entry.range = (first, max(first, last))
            entry.original_events = [
                b.model_copy(update={"msg_idx": b.msg_idx - 1 if b.msg_idx > index else b.msg_idx})
                for b in entry.original_events if b.msg_idx != index
            ]
            entry.hidden_before = [i - 1 if i > index else i for i in entry.hidden_before if i != index]

    async def prune_orphans(self) -> list[str]:
        """Drop summaries whose placeholder event no longer exists."""
        placeholders = {e.summary_id for _, _, e in self._store.iter_events() if e.summary_id}
        orphans = [s for s in list(self._store.summaries()) if s.id not in placeholders]
        for entry in orphans:
            self._drop(entry)
            await self._reveal(entry)
            logger.info(f"Pruned summary {entry.id}: its placeholder was deleted")
        return [s.id for s in orphans]

    async def sync_hidden(self) -> None:
        """Make the host's hidden flags agree with the stored summaries.

        Ranges of active summaries are hidden; ranges only inactive ones
        cover are shown again, except messages hidden before the summary.
        """
        covered: set[int] = set()
        released: set[int] = set()
        for entry in self._store.summaries():
            span = set(range(entry.range[0], entry.range[1] + 1))
            if entry.active:
                covered |= span
            else:
                released |= span - set(entry.hidden_before)
        size = len(self._store)
        hide = sorted(i for i in covered if i < size)
        show = sorted(i for i in released - covered if i < size)
        if hide:
            await self._store.host.set_messages_hidden(hide, True)
        if show:
            await self._store.host.set_messages_hidden(show, False)
        logger.debug(f"Synced hidden flags: {len(hide)} hidden, {len(show)} shown")
