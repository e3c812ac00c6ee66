"""
State folder: ordered deltas -> aggregate world state.

``fold`` walks the deltas left to right and ``apply_one`` advances an
existing state by one delta; folding a prefix and then applying the next
delta gives exactly the fold of the longer prefix. The folder never writes
to a delta. ``apply_one`` returns a fresh snapshot, and ``fold`` mutates
only its own scratch state.

Relationships and location memory are side tables materialised on the
anchor message. The fold copies them; ``rebuild_*`` and ``append_*``
recompute them and return the new value for the caller to store.
"""

import logging
import re
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from ..enums import AffectionKind, EventLevel, ItemImportance
from .chrono import parse_story_date
from .delta import (
    AgendaItem,
    ItemInfo,
    LocationMemoryEntry,
    MessageDelta,
    Relationship,
    Scene,
    StoryTimestamp,
    TimelineEvent,
)
from .parser import item_base_name, normalize_item_name

logger = logging.getLogger(__name__)

_CONSUMED = re.compile(r"[(（](已消耗|已用完|已销毁|消耗殆尽|消耗|用尽)[)）]")
_CONSUMED_HOLDER = re.compile(r"^(消耗|已消耗|已用完|消耗殆尽|用尽|无)$")
_ZERO_QUANTITY = re.compile(r"[(（]0[a-zA-Z一-鿿]*[)）]$")
_LEADING_NUMBER = re.compile(r"^(\d+)")

NPC_UPDATABLE = ("appearance", "personality", "relationship", "age", "job", "note")
NPC_PROTECTED = ("gender", "race")
_EDGE_REMOVAL = {"", "-", "无", "none", "removed"}


# ── Aggregate records ──────────────────────────────────────────────────

class ItemRecord(ItemInfo):
    item_id: str = ""


class NpcRecord(BaseModel):
    npc_id: str = ""
    appearance: str = ""
    personality: str = ""
    relationship: str = ""
    gender: str = ""
    age: str = ""
    race: str = ""
    job: str = ""
    note: str = ""
    age_ref_date: str = ""
    first_seen: str = ""
    last_seen: str = ""


class TimelineEntry(BaseModel):
    message_index: int
    event_index: int
    timestamp: StoryTimestamp
    event: TimelineEvent


class AggregateState(BaseModel):
    """The world as of ``cursor`` (index of the last delta applied)."""
    cursor: int = -1
    timestamp: StoryTimestamp = Field(default_factory=StoryTimestamp)
    scene: Scene = Field(default_factory=Scene)
    costumes: dict[str, str] = Field(default_factory=dict)
    items: dict[str, ItemRecord] = Field(default_factory=dict)
    affection: dict[str, float] = Field(default_factory=dict)
    mood: dict[str, str] = Field(default_factory=dict)
    npcs: dict[str, NpcRecord] = Field(default_factory=dict)
    agenda: list[AgendaItem] = Field(default_factory=list)
    events: list[TimelineEntry] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    location_memory: dict[str, LocationMemoryEntry] = Field(default_factory=dict)
    active_summaries: list[str] = Field(default_factory=list)
    next_item_id: int = 1
    next_npc_id: int = 1


# ── Items ──────────────────────────────────────────────────────────────

def _find_item(items: dict[str, ItemRecord], name: str) -> Optional[str]:
    if name in items:
        return name
    base = item_base_name(name).lower()
    for key in items:
        if item_base_name(key).lower() == base:
            return key
    return None


def _drop_items(items: dict[str, ItemRecord], name: str) -> None:
    base = item_base_name(name).lower()
    for key in [k for k in items if k.lower() == name.lower() or item_base_name(k).lower() == base]:
        logger.debug("Item removed: %s", key)
        del items[key]


def _merge_items(state: AggregateState, incoming: dict[str, ItemInfo]) -> None:
    for raw_name, info in incoming.items():
        name = normalize_item_name(raw_name)
        if _ZERO_QUANTITY.search(name):
            _drop_items(state.items, name)
            continue
        if _CONSUMED.search(name) or _CONSUMED_HOLDER.match(info.holder or ""):
            _drop_items(state.items, _CONSUMED.sub("", name).strip() or name)
            continue

        existing_key = _find_item(state.items, name)
        if existing_key is None:
            state.items[name] = ItemRecord(**info.model_dump(), item_id=f"{state.next_item_id:03d}")
            state.next_item_id += 1
            continue

        merged = state.items.pop(existing_key) if existing_key != name else state.items[name]
        if info.icon:
            merged.icon = info.icon
        if info.importance != ItemImportance.NONE:
            merged.importance = info.importance
        merged.holder = info.holder
        merged.location = info.location
        if info.description and info.description.strip():
            merged.description = info.description
        state.items[name] = merged


# ── NPCs ───────────────────────────────────────────────────────────────

def _age_number(age: str) -> Optional[int]:
    match = _LEADING_NUMBER.match(age or "")
    return int(match.group(1)) if match else None


def _merge_npcs(state: AggregateState, incoming: dict) -> None:
    today = state.timestamp.story_date
    for name, info in incoming.items():
        existing = state.npcs.get(name)
        if existing is None:
            record = NpcRecord(
                npc_id=f"{state.next_npc_id:03d}",
                **{f: getattr(info, f) or "" for f in NPC_UPDATABLE + NPC_PROTECTED},
                age_ref_date=info.age_ref_date or (today if info.age else ""),
                first_seen=today,
                last_seen=today,
            )
            state.npcs[name] = record
            state.next_npc_id += 1
            continue

        old_age = existing.age
        for field in NPC_UPDATABLE:
            value = getattr(info, field)
            if value is not None:
                setattr(existing, field, value)
        if info.age_ref_date:
            existing.age_ref_date = info.age_ref_date
        elif info.age:
            old_num, new_num = _age_number(old_age), _age_number(info.age)
            if not existing.age_ref_date or (old_num is not None and new_num is not None and old_num != new_num):
                existing.age_ref_date = today
        for field in NPC_PROTECTED:
            value = getattr(info, field)
            if value is not None and not getattr(existing, field):
                setattr(existing, field, value)
        existing.last_seen = today


def calc_current_age(npc: NpcRecord, current_date: str) -> str:
    """Age adjusted for story time elapsed since the age was recorded.

    Needs a numeric age and two standard dates with years; otherwise the
    recorded age is returned unchanged.
    """
    age = (npc.age or "").strip()
    match = _LEADING_NUMBER.match(age)
    if not match or not npc.age_ref_date or not current_date:
        return age
    ref = parse_story_date(npc.age_ref_date)
    now = parse_story_date(current_date)
    if not (ref and now and ref.is_standard and now.is_standard and ref.year and now.year):
        return age
    years = now.year - ref.year
    if (now.month, now.day) < (ref.month, ref.day):
        years -= 1
    if years <= 0:
        return age
    return f"{int(match.group(1)) + years}{age[match.end():]}"


# ── Agenda ─────────────────────────────────────────────────────────────

def agenda_matches(text: str, keyword: str) -> bool:
    """Exact match, or either text contains the other (tolerates paraphrase)."""
    if not text or not keyword:
        return False
    return text == keyword or keyword in text or text in keyword


def _merge_agenda(state: AggregateState, delta: MessageDelta) -> None:
    known = {item.text for item in state.agenda}
    for item in delta.agenda:
        if item.text in known:
            continue
        state.agenda.append(item.model_copy())
        known.add(item.text)
    for keyword in delta.completed_agenda:
        for item in state.agenda:
            if agenda_matches(item.text, keyword):
                item.done = True


# ── Fold ───────────────────────────────────────────────────────────────

def _apply(state: AggregateState, delta: Optional[MessageDelta], index: int) -> None:
    state.cursor = index
    if delta is None:
        return

    if index == 0:
        state.active_summaries = [s.id for s in delta.auto_summaries if s.active]
        state.relationships = [r.model_copy() for r in delta.relationship_graph]
        state.location_memory = {k: v.model_copy() for k, v in delta.location_memory.items()}

    stamp = delta.timestamp
    if stamp.story_date:
        state.timestamp.story_date = stamp.story_date
    if stamp.story_time:
        state.timestamp.story_time = stamp.story_time
    if stamp.absolute:
        state.timestamp.absolute = stamp.absolute

    if delta.scene.location:
        state.scene.location = delta.scene.location
    if delta.scene.atmosphere:
        state.scene.atmosphere = delta.scene.atmosphere
    if delta.scene.characters_present:
        state.scene.characters_present = list(delta.scene.characters_present)

    state.costumes.update(delta.costumes)
    state.mood.update(delta.mood)

    _merge_items(state, delta.items)
    for name in delta.deleted_items:
        _drop_items(state.items, name)

    for name, aff in delta.affection.items():
        if aff.type == AffectionKind.ABSOLUTE:
            state.affection[name] = aff.value
        else:
            state.affection[name] = state.affection.get(name, 0) + aff.value

    _merge_npcs(state, delta.npcs)
    _merge_agenda(state, delta)

    active = set(state.active_summaries)
    for evt_idx, event in enumerate(delta.events):
        if event.summary_id:
            if event.summary_id not in active:
                continue
        elif event.compressed_by and event.compressed_by in active:
            continue
        state.events.append(TimelineEntry(
            message_index=index,
            event_index=evt_idx,
            timestamp=state.timestamp.model_copy(),
            event=event.model_copy(),
        ))


def apply_one(state: AggregateState, delta: Optional[MessageDelta], index: int) -> AggregateState:
    """Return ``state`` advanced by one delta; ``state`` itself is untouched."""
    scratch = state.model_copy(deep=True)
    _apply(scratch, delta, index)
    return scratch


def fold(
    deltas: Sequence[Optional[MessageDelta]],
    cursor: Optional[int] = None,
    skip_tail: int = 0,
) -> AggregateState:
    """Fold ``deltas[0..cursor]`` (inclusive), minus the last ``skip_tail``.

    ``skip_tail`` keeps a message that is being regenerated from feeding
    its own stale delta back into the prompt.
    """
    end = len(deltas) if cursor is None else min(cursor + 1, len(deltas))
    end = max(0, end - max(0, skip_tail))
    state = AggregateState()
    for index in range(end):
        _apply(state, deltas[index], index)
    return state


def get_events(
    state: AggregateState,
    levels: Optional[set[EventLevel]] = None,
) -> list[TimelineEntry]:
    if not levels:
        return list(state.events)
    return [entry for entry in state.events if entry.event.level in levels]


# ── Relationship graph ─────────────────────────────────────────────────

def _apply_relationship(graph: list[Relationship], rel: Relationship) -> None:
    for position, edge in enumerate(graph):
        if edge.from_name == rel.from_name and edge.to_name == rel.to_name:
            if edge.user_edited:
                return
            if rel.type.strip().lower() in _EDGE_REMOVAL:
                del graph[position]
            else:
                graph[position] = rel.model_copy()
            return
    if rel.type.strip().lower() not in _EDGE_REMOVAL:
        graph.append(rel.model_copy())


def append_relationships(graph: list[Relationship], delta: MessageDelta) -> list[Relationship]:
    """Graph after one more message's ``rel:`` lines."""
    updated = [r.model_copy() for r in graph]
    for rel in delta.relationships:
        _apply_relationship(updated, rel)
    return updated


def rebuild_relationships(deltas: Sequence[Optional[MessageDelta]]) -> list[Relationship]:
    """Recompute the graph from every delta, keeping user-edited edges."""
    anchor = deltas[0] if deltas else None
    graph = [r.model_copy() for r in anchor.relationship_graph if r.user_edited] if anchor else []
    for delta in deltas:
        if delta is not None:
            for rel in delta.relationships:
                _apply_relationship(graph, rel)
    return graph


# ── Location memory ────────────────────────────────────────────────────

def _record_location(
    memory: dict[str, LocationMemoryEntry], desc: Optional[str], location: str, date: str,
) -> None:
    if not desc or not location:
        return
    entry = memory.get(location)
    if entry is None:
        memory[location] = LocationMemoryEntry(desc=desc, first_seen=date, last_updated=date)
    elif not entry.user_edited:
        entry.desc = desc
        entry.last_updated = date


def carried_scene(deltas: Sequence[Optional[MessageDelta]], index: int) -> tuple[str, str]:
    """(location, story_date) in force at ``index``, searching backwards."""
    location = date = ""
    for delta in reversed(deltas[:index + 1]):
        if delta is None:
            continue
        location = location or delta.scene.location
        date = date or delta.timestamp.story_date
        if location and date:
            break
    return location, date


def append_location_memory(
    deltas: Sequence[Optional[MessageDelta]], index: int,
) -> dict[str, LocationMemoryEntry]:
    """Location memory after recording message ``index``'s ``scene_desc``."""
    anchor = deltas[0]
    memory = {k: v.model_copy() for k, v in anchor.location_memory.items()} if anchor else {}
    delta = deltas[index]
    if delta is not None and delta.scene_desc:
        location, date = carried_scene(deltas, index)
        _record_location(memory, delta.scene_desc, location, date)
    return memory


def rebuild_location_memory(deltas: Sequence[Optional[MessageDelta]]) -> dict[str, LocationMemoryEntry]:
    """Recompute location memory from every delta, keeping user edits."""
    anchor = deltas[0] if deltas else None
    memory = {
        k: v.model_copy() for k, v in anchor.location_memory.items() if v.user_edited
    } if anchor else {}
    location = date = ""
    for delta in deltas:
        if delta is None:
            continue
        location = delta.scene.location or location
        date = delta.timestamp.story_date or date
        _record_location(memory, delta.scene_desc, location, date)
    return memory
