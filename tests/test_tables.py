"""Tests for the custom table engine.

Tables are driven through a real HoraeSession so contributions land on
messages exactly as they do when the host reports new replies.
"""

import logging

import pytest

from horae.core.delta import TableContribution, TableOverlay
from horae.core.tables import TableEngine
from horae.enums import TableScope
from horae.settings import SettingsStore


async def receive(session, cells: str, table: str = "Quests") -> int:
    """Append an AI reply writing ``cells`` to ``table`` and report it."""
    index = session.host.append(f"Story.\n<horaetable:{table}>\n{cells}\n</horaetable>")
    await session.on_message_received(index)
    return index


@pytest.fixture
def quests(session):
    return session.tables.add_table(
        "Quests", rows=4, cols=3, headers={"0-1": "Quest", "0-2": "Status"}, prompt="Open quests",
    )


# ---------------------------------------------------------------------------
# Tests: AI contributions
# ---------------------------------------------------------------------------

class TestContributions:
    async def test_write_lands_on_message(self, session, quests):
        index = await receive(session, "1,1:Find the key|1,2:open")
        assert session.tables.find("Quests").data["1-1"] == "Find the key"
        stored = session.store.get(index).table_contributions
        assert stored == [TableContribution(
            table_name="Quests", cell_updates={"1-1": "Find the key", "1-2": "open"},
        )]

    async def test_table_grows(self, session, quests):
        await receive(session, "6,1:late entry")
        assert session.tables.find("Quests").rows == 7

    async def test_filled_header_protected(self, session):
        session.tables.add_table("Loot", headers={"0-1": "Item"})
        await receive(session, "0,1:Hacked|0,2:Owner", table="Loot")
        data = session.tables.find("Loot").data
        assert data["0-1"] == "Item"
        assert data["0-2"] == "Owner"

    async def test_locked_cell_refused(self, session, quests):
        assert session.tables.toggle_lock_cell("Quests", 1, 1) is True
        index = await receive(session, "1,1:A|1,2:B")
        data = session.tables.find("Quests").data
        assert "1-1" not in data
        assert data["1-2"] == "B"
        assert session.store.get(index).table_contributions[0].cell_updates == {"1-2": "B"}

    async def test_locked_column_refused(self, session, quests):
        session.tables.toggle_lock_col("Quests", 2)
        await receive(session, "1,2:X")
        assert "1-2" not in session.tables.find("Quests").data

    def test_toggle_lock_flips(self, session, quests):
        assert session.tables.toggle_lock_row("Quests", 1) is True
        assert session.tables.toggle_lock_row("Quests", 1) is False
        assert session.tables.toggle_lock_row("Nope", 1) is None

    def test_unknown_table_kept_with_warning(self, session, caplog):
        contribution = TableContribution(table_name="Nope", cell_updates={"1-1": "x"})
        with caplog.at_level(logging.WARNING):
            applied = session.tables.apply_contributions([contribution])
        assert applied == [contribution]
        assert "does not exist" in caplog.text

    async def test_locks_hold_after_message_edit(self, session, quests):
        session.tables.toggle_lock_cell("Quests", 1, 1)
        index = await receive(session, "1,1:A|1,2:B")
        session.host.messages[index].content = "Story.\n<horaetable:Quests>\n1,1:C|1,2:D\n</horaetable>"
        await session.on_message_edited(index)

        data = session.tables.find("Quests").data
        assert "1-1" not in data
        assert data["1-2"] == "D"
        assert session.store.get(index).table_contributions[0].cell_updates == {"1-2": "D"}

        session.rebuild_all()
        assert "1-1" not in session.tables.find("Quests").data

    async def test_user_cell_holds_after_message_edit(self, session, quests):
        index = await receive(session, "1,2:open")
        session.tables.edit_cell("Quests", 1, 1, "Mine")
        session.host.messages[index].content = "Story.\n<horaetable:Quests>\n1,1:Theirs|1,2:done\n</horaetable>"
        await session.on_message_edited(index)

        session.rebuild_all()
        data = session.tables.find("Quests").data
        assert data["1-1"] == "Mine"
        assert data["1-2"] == "done"
        stored = [c for c in session.store.get(index).table_contributions if not c.engine_owned]
        assert stored[0].cell_updates == {"1-2": "done"}

    async def test_history_scan_respects_locks(self, session, quests):
        session.tables.toggle_lock_row("Quests", 1)
        index = session.host.append("Story.\n<horaetable:Quests>\n1,1:A|2,1:B\n</horaetable>")
        await session.scan_history()

        data = session.tables.find("Quests").data
        assert "1-1" not in data
        assert data["2-1"] == "B"
        assert session.store.get(index).table_contributions[0].cell_updates == {"2-1": "B"}


# ---------------------------------------------------------------------------
# Tests: user edits and rebuild
# ---------------------------------------------------------------------------

class TestUserEdits:
    async def test_user_edit_beats_later_ai_write(self, session, quests):
        await receive(session, "1,1:A")
        assert session.tables.edit_cell("Quests", 1, 1, "B") is True
        later = await receive(session, "1,1:C|1,2:open")

        data = session.tables.find("Quests").data
        assert data["1-1"] == "B"
        assert data["1-2"] == "open"
        assert session.store.get(later).table_contributions[0].cell_updates == {"1-2": "open"}

    async def test_rebuild_is_idempotent(self, session, quests):
        await receive(session, "1,1:A|2,1:X")
        session.tables.edit_cell("Quests", 1, 1, "B")
        await receive(session, "1,1:C")

        before = dict(session.tables.find("Quests").data)
        session.rebuild_all()
        once = dict(session.tables.find("Quests").data)
        session.rebuild_all()
        assert once == before
        assert session.tables.find("Quests").data == once

    async def test_edit_consolidates_ai_values_into_baseline(self, session, quests):
        first = await receive(session, "1,1:A|2,1:X")
        session.tables.edit_cell("Quests", 1, 1, "B")

        assert session.store.get(first).table_contributions == []
        anchor = session.store.anchor()
        assert anchor.table_contributions[0].is_baseline
        assert anchor.table_contributions[0].cell_updates == {"2-1": "X"}

        # The AI value survives even once its message is gone
        session.host.messages.pop(first)
        await session.on_message_deleted(first)
        data = session.tables.find("Quests").data
        assert data["2-1"] == "X"
        assert data["1-1"] == "B"

    async def test_empty_user_value_clears_cell(self, session, quests):
        await receive(session, "1,1:A")
        session.tables.edit_cell("Quests", 1, 1, "")
        session.rebuild_all()
        assert "1-1" not in session.tables.find("Quests").data

    async def test_header_edit_is_structure(self, session, quests):
        session.tables.edit_cell("Quests", 0, 1, "Task")
        session.rebuild_all()
        table = session.tables.find("Quests")
        assert table.data["0-1"] == "Task"
        assert table.base_data["0-1"] == "Task"

    def test_edit_unknown_table(self, session):
        assert session.tables.edit_cell("Nope", 1, 1, "x") is False

    async def test_message_edit_rebuilds(self, session, quests):
        index = await receive(session, "1,1:A")
        session.host.messages[index].content = "Story.\n<horaetable:Quests>\n1,1:Z\n</horaetable>"
        await session.on_message_edited(index)
        assert session.tables.find("Quests").data["1-1"] == "Z"


# ---------------------------------------------------------------------------
# Tests: structure
# ---------------------------------------------------------------------------

class TestStructure:
    async def test_delete_row_rekeys_contributions(self, session, quests):
        first = await receive(session, "1,1:a|2,1:b")
        second = await receive(session, "3,1:c")

        assert session.tables.delete_row("Quests", 2) is True
        table = session.tables.find("Quests")
        assert table.rows == 3
        assert table.data["1-1"] == "a"
        assert table.data["2-1"] == "c"
        assert session.store.get(first).table_contributions[0].cell_updates == {"1-1": "a"}
        assert session.store.get(second).table_contributions[0].cell_updates == {"2-1": "c"}

        session.rebuild_all()
        rebuilt = session.tables.find("Quests")
        assert rebuilt.data == table.data
        assert rebuilt.rows == 3

    async def test_insert_row_shifts_down(self, session, quests):
        index = await receive(session, "1,1:a")
        assert session.tables.insert_row("Quests", 1) is True
        assert session.tables.find("Quests").data.get("2-1") == "a"
        assert session.store.get(index).table_contributions[0].cell_updates == {"2-1": "a"}

    def test_insert_col_moves_headers(self, session, quests):
        session.tables.insert_col("Quests", 1)
        table = session.tables.find("Quests")
        assert table.cols == 4
        assert table.data["0-2"] == "Quest"
        assert table.base_data["0-3"] == "Status"

    def test_delete_col_shifts_left(self, session, quests):
        assert session.tables.delete_col("Quests", 1) is True
        table = session.tables.find("Quests")
        assert table.cols == 2
        assert table.data["0-1"] == "Status"
        assert table.base_data == {"0-1": "Status"}

    def test_locks_follow_rows(self, session, quests):
        session.tables.toggle_lock_row("Quests", 2)
        session.tables.insert_row("Quests", 1)
        assert session.tables.find("Quests").locked_rows == [3]

    def test_delete_refused_at_minimum(self, session):
        session.tables.add_table("Tiny")
        assert session.tables.delete_row("Tiny", 1) is False
        assert session.tables.delete_col("Tiny", 0) is False


# ---------------------------------------------------------------------------
# Tests: management and scope
# ---------------------------------------------------------------------------

class TestManagement:
    def test_duplicate_name_rejected(self, session, quests):
        with pytest.raises(ValueError, match="already exists"):
            session.tables.add_table("Quests")

    def test_empty_name_rejected(self, session):
        with pytest.raises(ValueError):
            session.tables.add_table("  ")

    def test_delete_table(self, session, quests):
        assert session.tables.delete_table("Quests") is True
        assert session.tables.find("Quests") is None
        assert session.tables.delete_table("Quests") is False

    async def test_global_data_per_card(self, session):
        session.tables.add_table("World", headers={"0-1": "Fact"}, scope=TableScope.GLOBAL)
        await receive(session, "1,1:dragons", table="World")

        settings = session.settings
        assert settings.global_tables[0].data == {"0-1": "Fact"}
        assert settings.global_table_data["default"]["World"].data == {"1-1": "dragons"}
        assert session.tables.find("World").data["1-1"] == "dragons"

        other = TableEngine(session.store, settings, card_id="other-card")
        assert other.find("World").data == {"0-1": "Fact"}

    async def test_set_scope_moves_data(self, session, quests):
        await receive(session, "1,1:A")
        assert session.tables.set_scope("Quests", TableScope.GLOBAL) is True
        assert session.store.anchor().custom_tables == []
        assert session.settings.global_tables[0].name == "Quests"
        assert session.tables.find("Quests").data["1-1"] == "A"

        assert session.tables.set_scope("Quests", TableScope.LOCAL) is True
        assert session.settings.global_tables == []
        assert session.tables.find("Quests").data["1-1"] == "A"

    async def test_global_data_reaches_settings_file(self, session, settings_store):
        session.tables.add_table("World", headers={"0-1": "Fact"}, scope=TableScope.GLOBAL)
        index = await receive(session, "1,1:dragons", table="World")

        saved = SettingsStore(settings_store.path).load()
        assert saved.global_tables[0].name == "World"
        assert saved.global_table_data["default"]["World"].data == {"1-1": "dragons"}

        session.host.messages[index].content = "Story.\n<horaetable:World>\n1,1:giants\n</horaetable>"
        await session.on_message_edited(index)
        saved = SettingsStore(settings_store.path).load()
        assert saved.global_table_data["default"]["World"].data == {"1-1": "giants"}

    async def test_set_scope_local_keeps_other_cards(self, session):
        session.tables.add_table("World", headers={"0-1": "Fact"}, scope=TableScope.GLOBAL)
        await receive(session, "1,1:dragons", table="World")
        settings = session.settings
        settings.global_table_data["other-card"] = {"World": TableOverlay(data={"1-1": "elves"})}

        assert session.tables.set_scope("World", TableScope.LOCAL) is True
        assert "World" not in settings.global_table_data["default"]
        assert settings.global_table_data["other-card"]["World"].data == {"1-1": "elves"}
        assert session.tables.find("World").data["1-1"] == "dragons"

    async def test_export_import(self, session, quests):
        await receive(session, "1,1:A")
        exported = session.tables.export_table("Quests")
        assert exported["data"]["1-1"] == "A"
        assert exported["prompt"] == "Open quests"

        session.tables.delete_table("Quests")
        table = session.tables.import_table(exported)
        assert table.name == "Quests"
        assert session.tables.find("Quests").data["1-1"] == "A"
        assert session.store.anchor().table_contributions[0].is_baseline

        session.rebuild_all()
        assert session.tables.find("Quests").data["1-1"] == "A"

    def test_import_rejects_bad_payload(self, session):
        with pytest.raises(ValueError):
            session.tables.import_table({"data": {}})
        with pytest.raises(ValueError):
            session.tables.import_table("not a table")
        with pytest.raises(ValueError):
            session.tables.import_table({"name": "X", "data": ["a"]})
