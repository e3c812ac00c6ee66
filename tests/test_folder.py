"""Tests for the state folder and the anchor side tables."""

from horae.core.delta import (
    LocationMemoryEntry,
    MessageDelta,
    Relationship,
    SummaryEntry,
    TimelineEvent,
)
from horae.core.folder import (
    NpcRecord,
    agenda_matches,
    append_location_memory,
    append_relationships,
    apply_one,
    calc_current_age,
    fold,
    get_events,
    rebuild_location_memory,
    rebuild_relationships,
)
from horae.core.parser import parse_tags
from horae.enums import EventLevel

from conftest import tagged


def d(state: str = "", events: str = "") -> MessageDelta:
    return parse_tags(tagged(state, events))


def story() -> list:
    return [
        MessageDelta.empty(),
        d("time:2026/2/4 09:00\nlocation:Tavern\ncharacters:Alice,Bob\naffection:Bob=10\nitem:苹果=Alice",
          "event:normal|Alice arrives"),
        None,
        d("time:2026/2/4 12:00\naffection:Bob+5\nitem:Sword=Bob@armory\nagenda:Return the key to Bob",
          "event:critical|The alarm sounds"),
        d("location:Dock\nitem:苹果(已消耗)=Alice\nagenda-:Return the key\nmood:Alice=tired"),
    ]


# ---------------------------------------------------------------------------
# Tests: fold / apply_one
# ---------------------------------------------------------------------------

class TestFold:
    def test_incremental_equals_full_fold(self):
        deltas = story()
        for index in range(1, len(deltas)):
            stepped = apply_one(fold(deltas, cursor=index - 1), deltas[index], index)
            assert stepped.model_dump() == fold(deltas, cursor=index).model_dump()

    def test_apply_one_leaves_input_untouched(self):
        deltas = story()
        before = fold(deltas, cursor=1)
        snapshot = before.model_dump()
        apply_one(before, deltas[3], 3)
        assert before.model_dump() == snapshot

    def test_fold_does_not_write_deltas(self):
        deltas = story()
        snapshot = [x.model_dump() if x else None for x in deltas]
        fold(deltas)
        assert [x.model_dump() if x else None for x in deltas] == snapshot

    def test_affection_absolute_then_relative(self):
        deltas = story()
        assert fold(deltas, cursor=1).affection["Bob"] == 10
        assert fold(deltas, cursor=3).affection["Bob"] == 15
        assert fold(deltas).affection["Bob"] == 15

    def test_scalars_carry_forward(self):
        state = fold(story())
        assert state.scene.location == "Dock"
        assert state.scene.characters_present == ["Alice", "Bob"]
        assert state.timestamp.story_date == "2026/2/4"
        assert state.timestamp.story_time == "12:00"
        assert state.mood == {"Alice": "tired"}

    def test_cursor_and_skip_tail(self):
        deltas = story()
        assert fold(deltas, skip_tail=1).model_dump() == fold(deltas, cursor=3).model_dump()
        assert fold(deltas, cursor=3).cursor == 3

    def test_events_carry_their_timestamp(self):
        events = fold(story()).events
        assert [(e.message_index, e.event.summary) for e in events] == [
            (1, "Alice arrives"), (3, "The alarm sounds"),
        ]
        assert events[1].timestamp.story_time == "12:00"
        assert events[1].event.level == EventLevel.CRITICAL

    def test_get_events_by_level(self):
        state = fold(story())
        assert len(get_events(state)) == 2
        critical = get_events(state, {EventLevel.CRITICAL})
        assert [e.event.summary for e in critical] == ["The alarm sounds"]

    def test_empty_input(self):
        state = fold([])
        assert state.cursor == -1
        assert state.items == {}


class TestItems:
    def test_ids_assigned_in_order(self):
        state = fold(story(), cursor=3)
        assert state.items["苹果"].item_id == "001"
        assert state.items["Sword"].item_id == "002"
        assert state.items["Sword"].location == "armory"

    def test_consumed_item_removed(self):
        assert "苹果" not in fold(story()).items

    def test_zero_quantity_removes(self):
        deltas = [MessageDelta.empty(), d("item:面粉(5kg)=Alice"), d("item:面粉(0kg)=Alice")]
        assert fold(deltas).items == {}

    def test_holder_overwritten_id_kept(self):
        deltas = story() + [d("item:Sword=Carol@armory")]
        sword = fold(deltas).items["Sword"]
        assert sword.holder == "Carol"
        assert sword.item_id == "002"

    def test_explicit_removal(self):
        deltas = story() + [d("item-:Sword")]
        assert "Sword" not in fold(deltas).items


class TestNpcs:
    def test_protected_fields_not_overwritten(self):
        deltas = [
            MessageDelta.empty(),
            d("time:2026/2/4\nnpc:Bob|tall=grumpy@innkeeper~gender:male~age:40"),
            d("npc:Bob~gender:female~job:smith"),
        ]
        bob = fold(deltas).npcs["Bob"]
        assert bob.npc_id == "001"
        assert bob.gender == "male"
        assert bob.job == "smith"
        assert bob.appearance == "tall"
        assert bob.age_ref_date == "2026/2/4"

    def test_current_age(self):
        npc = NpcRecord(age="40", age_ref_date="2026/2/4")
        assert calc_current_age(npc, "2028/3/1") == "42"
        assert calc_current_age(npc, "2028/1/1") == "41"
        assert calc_current_age(npc, "霜月第三日") == "40"


class TestAgenda:
    def test_completion_by_containment(self):
        agenda = fold(story()).agenda
        assert len(agenda) == 1
        assert agenda[0].done is True

    def test_matches(self):
        assert agenda_matches("Return the key to Bob", "Return the key")
        assert agenda_matches("key", "Return the key")
        assert not agenda_matches("Buy bread", "Return the key")
        assert not agenda_matches("", "x")


class TestCompressedEvents:
    def _deltas(self, active: bool) -> list:
        anchor = MessageDelta(auto_summaries=[
            SummaryEntry(id="s1", range=(1, 1), summary_text="digest", active=active),
        ])
        message = MessageDelta(events=[
            TimelineEvent(summary="raw", compressed_by="s1" if active else None),
            TimelineEvent(level=EventLevel.SUMMARY, summary="digest", is_summary=True, summary_id="s1"),
        ])
        return [anchor, message]

    def test_active_summary_hides_originals(self):
        events = fold(self._deltas(active=True)).events
        assert [e.event.summary for e in events] == ["digest"]

    def test_inactive_summary_hides_placeholder(self):
        events = fold(self._deltas(active=False)).events
        assert [e.event.summary for e in events] == ["raw"]


# ---------------------------------------------------------------------------
# Tests: side tables
# ---------------------------------------------------------------------------

class TestRelationships:
    def test_rebuild_keeps_user_edges_and_removals(self):
        anchor = MessageDelta(relationship_graph=[
            Relationship(from_name="Alice", to_name="Bob", type="rivals", user_edited=True),
        ])
        deltas = [
            anchor,
            d("rel:Alice>Bob=friends"),
            d("rel:Bob>Carol=allies"),
            d("rel:Bob>Carol=none"),
        ]
        graph = rebuild_relationships(deltas)
        assert [(r.from_name, r.to_name, r.type) for r in graph] == [("Alice", "Bob", "rivals")]

    def test_append_updates_edge(self):
        graph = append_relationships([], d("rel:Alice>Bob=friends"))
        graph = append_relationships(graph, d("rel:Alice>Bob=lovers|after the ball"))
        assert len(graph) == 1
        assert (graph[0].type, graph[0].note) == ("lovers", "after the ball")

    def test_fold_copies_anchor_graph(self):
        anchor = MessageDelta(relationship_graph=[Relationship(from_name="A", to_name="B", type="kin")])
        assert fold([anchor]).relationships[0].type == "kin"


class TestLocationMemory:
    def _deltas(self) -> list:
        return [
            MessageDelta.empty(),
            d("time:2026/2/4\nlocation:Tavern\nscene_desc:Smoky"),
            d("location:Dock"),
            d("scene_desc:Wet planks"),
        ]

    def test_rebuild_uses_carried_location(self):
        memory = rebuild_location_memory(self._deltas())
        assert memory["Tavern"].desc == "Smoky"
        assert memory["Dock"].desc == "Wet planks"
        assert memory["Dock"].first_seen == "2026/2/4"

    def test_append_one(self):
        memory = append_location_memory(self._deltas(), 3)
        assert list(memory) == ["Dock"]

    def test_user_edit_survives_rebuild(self):
        deltas = self._deltas()
        deltas[0].location_memory = {"Tavern": LocationMemoryEntry(desc="Mine", user_edited=True)}
        assert rebuild_location_memory(deltas)["Tavern"].desc == "Mine"
