"""
Horae session: one conversation's engines plus the host event handlers.

The host calls the ``on_*`` handlers as its transcript changes; each one
updates the delta store, keeps the side tables (custom tables,
relationship graph, location memory) consistent and persists the chat.
Everything else the panel offers goes through the session's operations.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..agents import AnalyzerAgent, SummarizerAgent
from ..enums import AgendaSource, SummaryMode
from ..llm import LLMManager
from ..prompts import PromptRegistry
from ..settings import HoraeSettings, SettingsStore, get_settings_store
from ..utils import safe_create_task
from . import session_export
from .compression import CompressionEngine, CompressionError, EventRef
from .delta import AgendaItem, MessageDelta, SummaryEntry, merge_delta
from .folder import (
    AggregateState,
    append_location_memory,
    append_relationships,
    fold,
    rebuild_location_memory,
    rebuild_relationships,
)
from .host import ChatHost
from .prompt_builder import PromptCompactor
from .store import DeltaStore
from .tables import TableEngine

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]


@dataclass
class ScanResult:
    """Outcome of a history scan."""
    processed: int = 0
    analyzed: int = 0
    skipped: int = 0
    failed: int = 0


class HoraeSession:
    """Everything Horae keeps for the conversation open in ``host``."""

    def __init__(
        self,
        host: ChatHost,
        settings_store: Optional[SettingsStore] = None,
        registry: Optional[PromptRegistry] = None,
    ):
        self._host = host
        self._settings_store = settings_store or get_settings_store()
        settings = self._settings_store.load()

        self.store = DeltaStore(host)
        self.tables = TableEngine(self.store, settings, card_id=host.card_id)
        self.llm = LLMManager(host=host, settings_store=self._settings_store)
        self.summarizer = SummarizerAgent(self.llm, registry, max_words=settings.summary.max_words)
        self.analyzer = AnalyzerAgent(
            self.llm, registry, user_name=host.user_name, char_name=host.char_name
        )
        self.compression = CompressionEngine(self.store, self.summarizer, settings)
        self.compactor = PromptCompactor(self.store, settings, self.tables, registry)
        self._selection: set[EventRef] = set()

    @property
    def host(self) -> ChatHost:
        return self._host

    @property
    def settings(self) -> HoraeSettings:
        return self._settings_store.load()

    @property
    def selection(self) -> list[EventRef]:
        return sorted(self._selection)

    def state(self, cursor: Optional[int] = None, skip_tail: int = 0) -> AggregateState:
        return fold(self.store.deltas(), cursor=cursor, skip_tail=skip_tail)

    def reload_settings(self) -> HoraeSettings:
        """Re-read settings from disk and hand them to every engine."""
        settings = self._settings_store.reload()
        self.tables.settings = settings
        self.compression.settings = settings
        self.compactor.settings = settings
        self.llm.clear_cache()
        return settings

    def save_settings(self) -> None:
        self._settings_store.save()

    async def _persist(self) -> None:
        """Save the chat, and the settings too while global tables exist.

        Global table data lives in the settings, so a rebuild or a new
        contribution has to reach the settings file as well.
        """
        await self.store.save()
        if self.settings.global_tables:
            self.save_settings()

    # ── Rebuilds ───────────────────────────────────────────────────────

    def rebuild_all(self) -> None:
        """Recompute the side tables from every stored delta."""
        if not self.store.messages:
            return
        deltas = self.store.deltas()
        anchor = self.store.anchor()
        anchor.relationship_graph = rebuild_relationships(deltas)
        anchor.location_memory = rebuild_location_memory(deltas)
        self.tables.rebuild_table_data()

    def _record_side_tables(self, index: int, parsed: MessageDelta) -> None:
        delta = self.store.get(index)
        if parsed.table_contributions:
            applied = self.tables.apply_contributions(parsed.table_contributions)
            owned = [c for c in delta.table_contributions if c.engine_owned]
            delta.table_contributions = [c for c in applied if not c.engine_owned] + owned

        anchor = self.store.anchor()
        if parsed.relationships:
            anchor.relationship_graph = append_relationships(anchor.relationship_graph, parsed)
        if parsed.scene_desc:
            anchor.location_memory = append_location_memory(self.store.deltas(), index)

    def _refilter_tables(self, index: int) -> None:
        """Run a re-parsed message's table writes through the lock checks.

        The writes are replayed against the data without them, and only
        what the table accepts is stored on the message.
        """
        delta = self.store.get(index)
        fresh = [c for c in delta.table_contributions if not c.engine_owned]
        if not fresh:
            return
        owned = [c for c in delta.table_contributions if c.engine_owned]
        delta.table_contributions = owned
        self.tables.rebuild_table_data()
        applied = self.tables.apply_contributions(fresh)
        delta.table_contributions = [c for c in applied if not c.engine_owned] + owned

    # ── Host events ────────────────────────────────────────────────────

    async def on_message_received(self, index: int) -> Optional[MessageDelta]:
        """A new AI message was rendered for the first time.

        Returns:
            The parsed delta, or None when the message had no tags or was
            skipped.
        """
        settings = self.settings
        if not settings.enabled or not settings.auto_parse:
            return None
        message = self.store.messages[index] if 0 <= index < len(self.store) else None
        if message is None or message.is_user:
            return None

        parsed = self.store.process_message(index)
        if parsed is not None:
            logger.debug(f"Parsed state from message #{index}")
            self._record_side_tables(index, parsed)

        await self._persist()
        if settings.summary.auto_enabled:
            safe_create_task(self.compression.maybe_auto_compress(), name="horae-auto-compress")
        return parsed

    async def on_message_edited(self, index: int) -> Optional[MessageDelta]:
        """The text of message ``index`` changed; re-parse it and rebuild."""
        if not self.settings.enabled:
            return None
        message = self.store.messages[index] if 0 <= index < len(self.store) else None
        if message is None or message.is_user:
            return None

        logger.info(f"Message #{index} edited; re-parsing")
        replaced = self.store.reparse_message(index)
        if replaced is not None:
            self._refilter_tables(index)
        self.rebuild_all()
        await self._persist()
        return replaced

    async def on_message_swiped(self, index: int) -> Optional[MessageDelta]:
        """A different variant of message ``index`` is now shown."""
        return await self.on_message_edited(index)

    async def on_message_deleted(self, index: Optional[int] = None) -> None:
        """The host removed a message (``index`` is where it was, if known)."""
        if not self.settings.enabled:
            return
        if index is not None:
            self.compression.shift_after_delete(index)
            self._selection = {
                (m - 1 if m > index else m, e) for m, e in self._selection if m != index
            }
        pruned = await self.compression.prune_orphans()
        if pruned:
            logger.info(f"Removed {len(pruned)} summaries orphaned by the deletion")
        logger.info("Message deleted; rebuilding side tables")
        self.rebuild_all()
        await self._persist()

    def on_prompt_ready(self, chat: list[Dict[str, Any]], is_regenerate: bool = False) -> bool:
        """Inject the state block into an outgoing prompt.

        Args:
            chat: the prompt messages (``{"role", "content"}`` dicts), edited in place
            is_regenerate: the last message is being regenerated, so its
                own delta must not feed the prompt

        Returns:
            True when something was injected.
        """
        settings = self.settings
        if not settings.enabled or not settings.inject_context:
            return False

        skip_tail = 1 if is_regenerate else 0
        content = (
            f"{self.compactor.generate_compact_prompt(skip_tail=skip_tail)}\n"
            f"{self.compactor.generate_system_prompt_addition()}"
        )
        entry = {"role": "system", "content": content}
        position = settings.injection_position
        if position <= 0:
            chat.append(entry)
        else:
            chat.insert(max(0, len(chat) - position), entry)
        logger.debug(f"Injected state block at depth {position}")
        return True

    def on_chat_changed(self) -> None:
        """The host switched to another conversation."""
        self._selection.clear()
        self.compression.reset()
        self.tables = TableEngine(self.store, self.settings, card_id=self._host.card_id)
        self.compactor = PromptCompactor(self.store, self.settings, self.tables, self.compactor.registry)
        self.analyzer.user_name = self._host.user_name
        self.analyzer.char_name = self._host.char_name

    # ── Panel edits ────────────────────────────────────────────────────

    async def save_manual_edit(self, index: int, delta: MessageDelta) -> MessageDelta:
        """Store a delta edited by hand and rewrite the message's tags."""
        stored = self.store.save_manual_edit(index, delta)
        self.rebuild_all()
        await self._persist()
        return stored

    async def scan_history(
        self,
        analyze: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> ScanResult:
        """Parse every AI message that has no delta yet.

        With ``analyze`` set, messages without tags are annotated by the
        analyzer agent instead of being skipped.
        """
        result = ScanResult()
        messages = self.store.messages
        total = len(messages)
        for index, message in enumerate(messages):
            existing = message.meta
            if message.is_user or (existing is not None and existing.has_content()):
                result.skipped += 1
            elif self.store.process_message(index) is not None:
                self._refilter_tables(index)
                result.processed += 1
            elif analyze:
                await self._analyze_message(index, result)
            else:
                result.skipped += 1
            if progress:
                progress(round((index + 1) / total * 100), index + 1, total)

        self.rebuild_all()
        await self._persist()
        logger.info(
            f"History scan: {result.processed} parsed, {result.analyzed} analyzed, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    async def _analyze_message(self, index: int, result: ScanResult) -> None:
        try:
            analyzed = await self.analyzer.analyze(self.store.messages[index].content)
        except (RuntimeError, ValueError) as e:
            logger.error(f"Analysis of message #{index} failed: {e}")
            result.failed += 1
            return
        if analyzed is None:
            result.skipped += 1
            return
        self.store.set(index, merge_delta(self.store.get(index), analyzed))
        self._refilter_tables(index)
        result.analyzed += 1

    # ── Agenda ─────────────────────────────────────────────────────────

    async def add_user_agenda(self, text: str, date: str = "") -> AgendaItem:
        text = text.strip()
        if not text:
            raise ValueError("Agenda text must not be empty")
        item = AgendaItem(text=text, date=date.strip(), source=AgendaSource.USER)
        self.store.anchor().agenda.append(item)
        await self.store.save()
        return item

    def _agenda_hits(self, text: str) -> list[tuple[MessageDelta, int]]:
        hits = []
        for delta in self.store.deltas():
            if delta is None:
                continue
            for position, item in enumerate(delta.agenda):
                if item.text == text:
                    hits.append((delta, position))
        return hits

    async def set_agenda_done(self, text: str, done: bool = True) -> bool:
        hits = self._agenda_hits(text)
        if not hits:
            logger.warning(f"Agenda item '{text}' not found")
            return False
        for delta, position in hits:
            delta.agenda[position].done = done
        await self.store.save()
        return True

    async def delete_agenda(self, text: str) -> bool:
        hits = self._agenda_hits(text)
        if not hits:
            logger.warning(f"Agenda item '{text}' not found")
            return False
        for delta, position in reversed(hits):
            del delta.agenda[position]
        await self.store.save()
        return True

    # ── Event selection and compression ────────────────────────────────

    def toggle_event_selection(self, message_index: int, event_index: int) -> bool:
        """Flip one event in the multi-selection; returns whether it is now selected."""
        ref = (message_index, event_index)
        if ref in self._selection:
            self._selection.discard(ref)
            return False
        self._selection.add(ref)
        return True

    def clear_selection(self) -> None:
        self._selection.clear()

    async def compress_selection(self, mode: Optional[SummaryMode] = None) -> Optional[SummaryEntry]:
        """Compress the selected events into one summary.

        Raises:
            CompressionError: nothing is selected or generation failed
        """
        if not self._selection:
            raise CompressionError("No events selected")
        entry = await self.compression.compress(self.selection, mode=mode)
        if entry is not None:
            self._selection.clear()
        return entry

    async def toggle_summary(self, summary_id: str, active: bool) -> bool:
        return await self.compression.toggle_summary(summary_id, active)

    async def delete_summary(self, summary_id: str) -> bool:
        return await self.compression.delete_summary(summary_id)

    def cancel_compression(self) -> bool:
        return self.compression.cancel()

    # ── Bulk data ──────────────────────────────────────────────────────

    async def clear_all_data(self) -> None:
        """Remove every delta from the conversation."""
        self.compression.reset()
        self._selection.clear()
        hidden = sorted({
            i for s in self.store.summaries() for i in range(s.range[0], s.range[1] + 1)
        })
        self.store.clear_all()
        if hidden:
            await self._host.set_messages_hidden(hidden, False)
        await self.store.save()
        logger.info("Cleared all Horae data for this conversation")

    def export_state(self) -> Dict[str, Any]:
        return session_export.export_state(self.store)

    async def import_state(self, payload: Dict[str, Any]) -> int:
        """Replay an export onto the transcript, then rebuild and save.

        Messages covered by an active summary in the export are hidden on
        the host again.
        """
        written = session_export.import_state(self.store, payload)
        self.rebuild_all()
        await self.compression.sync_hidden()
        await self._persist()
        return written

