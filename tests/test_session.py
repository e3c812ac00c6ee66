"""Tests for HoraeSession: host event handlers and panel operations."""

import asyncio
import json

import pytest

from horae.core.compression import CompressionError
from horae.enums import AgendaSource

from conftest import make_host, tagged


async def receive(session, state: str = "", events: str = "") -> int:
    index = session.host.append(tagged(state, events))
    await session.on_message_received(index)
    return index


# ---------------------------------------------------------------------------
# Tests: on_message_received
# ---------------------------------------------------------------------------

class TestMessageReceived:
    async def test_parses_and_saves(self, session):
        index = session.host.append(tagged("location:Tavern", "event:normal|Arrived"))
        parsed = await session.on_message_received(index)

        assert parsed.scene.location == "Tavern"
        assert session.store.get(index).scene.location == "Tavern"
        assert session.store.get(index).timestamp.absolute
        assert session.host.save_count == 1
        assert session.state().scene.location == "Tavern"

    async def test_user_message_skipped(self, session):
        index = session.host.append(tagged("location:Tavern"), is_user=True)
        assert await session.on_message_received(index) is None
        assert session.store.get(index) is None

    async def test_disabled(self, session):
        session.settings.enabled = False
        index = session.host.append(tagged("location:Tavern"))
        assert await session.on_message_received(index) is None
        assert session.store.get(index) is None

    async def test_auto_parse_off(self, session):
        session.settings.auto_parse = False
        index = session.host.append(tagged("location:Tavern"))
        assert await session.on_message_received(index) is None

    async def test_untagged_message_gets_empty_delta(self, session):
        index = session.host.append("Only prose here.")
        assert await session.on_message_received(index) is None
        assert session.store.get(index) is not None
        assert not session.store.get(index).has_content()

    async def test_side_tables_recorded(self, session):
        await receive(session, "location:Tavern\nscene_desc:Smoky\nrel:Alice>Bob=friends")
        anchor = session.store.anchor()
        assert anchor.location_memory["Tavern"].desc == "Smoky"
        assert [(r.from_name, r.to_name) for r in anchor.relationship_graph] == [("Alice", "Bob")]

    async def test_schedules_auto_compression(self, session, mock_provider):
        for i in range(1, 5):
            await receive(session, f"time:2026/2/{i}", f"event:normal|Event {i}")
        summary = session.settings.summary
        summary.auto_enabled = True
        summary.threshold = 2
        summary.keep_recent = 1

        await receive(session, "time:2026/2/5", "event:normal|Event 5")
        for _ in range(20):
            if session.store.summaries():
                break
            await asyncio.sleep(0.01)

        entries = session.store.summaries()
        assert len(entries) == 1
        assert entries[0].auto is True
        assert entries[0].range == (1, 4)


# ---------------------------------------------------------------------------
# Tests: edits, swipes and deletions
# ---------------------------------------------------------------------------

class TestEdits:
    async def test_edit_replaces_delta(self, session):
        index = await receive(session, "location:Tavern\nrel:Alice>Bob=friends", "event:normal|Old")
        session.host.messages[index].content = tagged("location:Dock", "event:normal|New")

        replaced = await session.on_message_edited(index)

        assert replaced.scene.location == "Dock"
        assert [e.summary for e in session.store.get(index).events] == ["New"]
        assert session.store.anchor().relationship_graph == []
        assert session.state().scene.location == "Dock"

    async def test_edit_without_tags_keeps_delta(self, session):
        index = await receive(session, "location:Tavern")
        session.host.messages[index].content = "Rewritten prose."
        assert await session.on_message_edited(index) is None
        assert session.store.get(index).scene.location == "Tavern"

    async def test_swipe_reparses(self, session):
        index = await receive(session, "location:Tavern")
        session.host.messages[index].content = tagged("location:Garden")
        await session.on_message_swiped(index)
        assert session.state().scene.location == "Garden"

    async def test_user_message_edit_ignored(self, session):
        index = session.host.append(tagged("location:Tavern"), is_user=True)
        assert await session.on_message_edited(index) is None

    async def test_delete_rebuilds_and_shifts_selection(self, session):
        for i in range(1, 4):
            await receive(session, f"location:Place {i}", f"event:normal|Event {i}")
        session.toggle_event_selection(1, 0)
        session.toggle_event_selection(3, 0)

        session.host.messages.pop(1)
        await session.on_message_deleted(1)

        assert session.selection == [(2, 0)]
        assert [e.event.summary for e in session.state().events] == ["Event 2", "Event 3"]

    async def test_manual_edit_rewrites_tags(self, session):
        index = await receive(session, "location:Tavern")
        edited = session.store.get(index).model_copy(deep=True)
        edited.scene.location = "Harbor"

        await session.save_manual_edit(index, edited)

        assert "location:Harbor" in session.host.messages[index].content
        assert "location:Tavern" not in session.host.messages[index].content
        assert session.state().scene.location == "Harbor"

    async def test_chat_changed_resets(self, session):
        session.toggle_event_selection(1, 0)
        old_tables = session.tables
        session.on_chat_changed()
        assert session.selection == []
        assert session.tables is not old_tables
        assert session.compactor.registry is not None


# ---------------------------------------------------------------------------
# Tests: prompt injection
# ---------------------------------------------------------------------------

class TestPromptReady:
    def _chat(self) -> list[dict]:
        return [
            {"role": "system", "content": "card"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    async def test_inserts_at_depth(self, session):
        await receive(session, "location:Tavern")
        chat = self._chat()
        assert session.on_prompt_ready(chat) is True
        assert len(chat) == 4
        injected = chat[2]
        assert injected["role"] == "system"
        assert "[Scene|Tavern]" in injected["content"]
        assert "<horae>" in injected["content"]

    async def test_position_zero_appends(self, session):
        session.settings.injection_position = 0
        chat = self._chat()
        session.on_prompt_ready(chat)
        assert chat[-1]["role"] == "system"
        assert chat[-1]["content"].startswith("[Current state snapshot")

    async def test_deep_position_clamps_to_start(self, session):
        session.settings.injection_position = 10
        chat = self._chat()
        session.on_prompt_ready(chat)
        assert chat[0]["content"].startswith("[Current state snapshot")

    async def test_regenerate_skips_last_delta(self, session):
        await receive(session, "location:Tavern")
        await receive(session, "location:Dock")
        chat = self._chat()
        session.on_prompt_ready(chat, is_regenerate=True)
        assert "[Scene|Tavern]" in chat[2]["content"]

    def test_disabled_injects_nothing(self, session):
        session.settings.inject_context = False
        chat = self._chat()
        assert session.on_prompt_ready(chat) is False
        assert chat == self._chat()


# ---------------------------------------------------------------------------
# Tests: history scan
# ---------------------------------------------------------------------------

class TestScanHistory:
    @pytest.fixture
    def history(self, session_for):
        return session_for(make_host(tagged("location:Tavern"), "USER:hi", "Plain prose."))

    async def test_parses_untouched_messages(self, history):
        progress = []
        result = await history.scan_history(progress=lambda *args: progress.append(args))

        assert (result.processed, result.analyzed, result.skipped, result.failed) == (1, 0, 3, 0)
        assert history.state().scene.location == "Tavern"
        assert progress[-1] == (100, 4, 4)
        assert len(progress) == 4

    async def test_second_scan_skips_parsed(self, history):
        await history.scan_history()
        result = await history.scan_history()
        assert result.processed == 0

    async def test_analyze_untagged(self, history, mock_provider):
        mock_provider.queue_response("nothing useful")
        mock_provider.queue_response("<horae>\nlocation:Library\n</horae>")

        result = await history.scan_history(analyze=True)

        assert (result.processed, result.analyzed, result.skipped, result.failed) == (1, 1, 2, 0)
        assert history.store.get(3).scene.location == "Library"
        assert history.state().scene.location == "Library"

    async def test_analysis_failure_counted(self, history, mock_provider):
        mock_provider.error = RuntimeError("endpoint down")
        result = await history.scan_history(analyze=True)
        assert result.failed == 2
        assert result.processed == 1


# ---------------------------------------------------------------------------
# Tests: agenda
# ---------------------------------------------------------------------------

class TestAgenda:
    async def test_add_user_item(self, session):
        item = await session.add_user_agenda("  Buy bread ", "2/5")
        assert (item.text, item.date, item.source) == ("Buy bread", "2/5", AgendaSource.USER)
        assert session.store.anchor().agenda == [item]
        assert [a.text for a in session.state().agenda] == ["Buy bread"]

    async def test_empty_text_rejected(self, session):
        with pytest.raises(ValueError):
            await session.add_user_agenda("   ")

    async def test_mark_done_and_reopen(self, session):
        await receive(session, "agenda:Return the key")
        assert await session.set_agenda_done("Return the key") is True
        assert session.state().agenda[0].done is True
        assert await session.set_agenda_done("Return the key", done=False) is True
        assert session.state().agenda[0].done is False

    async def test_delete_from_message(self, session):
        index = await receive(session, "agenda:Return the key")
        assert await session.delete_agenda("Return the key") is True
        assert session.store.get(index).agenda == []
        assert session.state().agenda == []

    async def test_unknown_item(self, session):
        assert await session.set_agenda_done("missing") is False
        assert await session.delete_agenda("missing") is False


# ---------------------------------------------------------------------------
# Tests: selection and compression
# ---------------------------------------------------------------------------

class TestSelection:
    async def test_toggle(self, session):
        assert session.toggle_event_selection(2, 0) is True
        assert session.toggle_event_selection(1, 0) is True
        assert session.selection == [(1, 0), (2, 0)]
        assert session.toggle_event_selection(2, 0) is False
        session.clear_selection()
        assert session.selection == []

    async def test_compress_selection(self, session, mock_provider):
        for i in range(1, 4):
            await receive(session, f"time:2026/2/{i}", f"event:normal|Event {i}")
        session.toggle_event_selection(1, 0)
        session.toggle_event_selection(2, 0)
        mock_provider.queue_response("The first days.")

        entry = await session.compress_selection()

        assert entry.range == (1, 2)
        assert entry.summary_text == "The first days."
        assert session.selection == []

    async def test_empty_selection_rejected(self, session):
        with pytest.raises(CompressionError):
            await session.compress_selection()


# ---------------------------------------------------------------------------
# Tests: bulk data
# ---------------------------------------------------------------------------

class TestBulkData:
    async def test_export_import_round_trip(self, session, session_for):
        texts = [
            tagged("time:2026/2/4\nlocation:Tavern\nitem:Sword=Bob", "event:normal|Arrived"),
            tagged("affection:Bob=5\nrel:Alice>Bob=friends"),
        ]
        for text in texts:
            index = session.host.append(text)
            await session.on_message_received(index)
        session.tables.add_table("Quests", prompt="track")
        payload = json.loads(json.dumps(session.export_state(), ensure_ascii=False))

        assert payload["version"] == "1.0"
        assert [entry["index"] for entry in payload["data"]] == [0, 1, 2]

        restored = session_for(make_host(*texts))
        written = await restored.import_state(payload)

        assert written == 3
        assert restored.state().model_dump() == session.state().model_dump()
        assert restored.tables.find("Quests") is not None

    async def test_import_rejects_malformed(self, session):
        with pytest.raises(ValueError):
            await session.import_state({"version": "1.0"})
        with pytest.raises(ValueError):
            await session.import_state({"data": [{"index": "x"}]})
        with pytest.raises(ValueError):
            await session.import_state({"data": [{"index": 0, "delta": {"events": "bad"}}]})

    async def test_import_skips_out_of_range(self, session):
        assert await session.import_state({"version": "1.0", "data": [{"index": 99, "delta": {}}]}) == 0

    async def test_import_restores_hidden_flags(self, session, session_for, mock_provider):
        texts = [tagged(f"time:2026/2/{i}", f"event:normal|Event {i}") for i in range(1, 5)]
        for text in texts:
            await session.on_message_received(session.host.append(text))
        active = await session.compression.compress([(2, 0), (3, 0)])
        inactive = await session.compression.compress([(4, 0)])
        await session.toggle_summary(inactive.id, False)
        payload = session.export_state()

        restored = session_for(make_host(*texts))
        await restored.host.set_messages_hidden([4], True)
        await restored.import_state(payload)

        assert [s.active for s in restored.store.summaries()] == [True, False]
        assert restored.store.summaries()[0].id == active.id
        assert [m.hidden for m in restored.host.messages] == [False, False, True, True, False]

    async def test_clear_all_data(self, session, mock_provider):
        for i in range(1, 4):
            await receive(session, f"time:2026/2/{i}", f"event:normal|Event {i}")
        await session.compression.compress([(1, 0), (2, 0)])
        assert session.host.messages[1].hidden

        await session.clear_all_data()

        assert all(d is None for d in session.store.deltas())
        assert not any(m.hidden for m in session.host.messages)
        assert session.state().events == []
