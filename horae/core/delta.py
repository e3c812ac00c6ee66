"""
Per-message delta records and the persisted side records they carry.

A MessageDelta is the only durable state: everything else (the aggregate
world state, the prompt block) is derived from the ordered list of deltas.
Optional scalars default to ``None`` meaning "not mentioned in this
message", so carry-forward is decided by type rather than by guessing.
"""

import copy
import uuid
from typing import Optional

from pydantic import BaseModel, Field

from ..enums import (
    AffectionKind,
    AgendaSource,
    EventLevel,
    ItemImportance,
    TableScope,
)


# ── Delta fields ───────────────────────────────────────────────────────

class StoryTimestamp(BaseModel):
    """In-story clock plus the wall-clock instant the delta was captured."""
    story_date: str = ""
    story_time: str = ""
    absolute: str = ""


class Scene(BaseModel):
    location: str = ""
    atmosphere: str = ""
    characters_present: list[str] = Field(default_factory=list)


class ItemInfo(BaseModel):
    """One inventory entry. ``None`` fields were not stated by the message."""
    icon: Optional[str] = None
    importance: ItemImportance = ItemImportance.NONE
    holder: Optional[str] = None
    location: str = ""
    description: Optional[str] = None


class TimelineEvent(BaseModel):
    level: EventLevel = EventLevel.NORMAL
    summary: str = ""
    is_summary: bool = False
    compressed_by: Optional[str] = Field(
        default=None, description="Id of the active summary hiding this event"
    )
    summary_id: Optional[str] = Field(
        default=None, description="Set when this event is a summary placeholder"
    )


class AffectionValue(BaseModel):
    type: AffectionKind
    value: float


class NpcInfo(BaseModel):
    appearance: Optional[str] = None
    personality: Optional[str] = None
    relationship: Optional[str] = None
    gender: Optional[str] = None
    age: Optional[str] = None
    race: Optional[str] = None
    job: Optional[str] = None
    note: Optional[str] = None
    age_ref_date: Optional[str] = None


class AgendaItem(BaseModel):
    text: str
    date: str = ""
    source: AgendaSource = AgendaSource.AI
    done: bool = False


class Relationship(BaseModel):
    from_name: str
    to_name: str
    type: str = ""
    note: str = ""
    user_edited: bool = False


class LocationMemoryEntry(BaseModel):
    desc: str = ""
    first_seen: str = ""
    last_updated: str = ""
    user_edited: bool = False


class TableContribution(BaseModel):
    """Cell writes one message made to one table, keyed "row-col"."""
    table_name: str
    cell_updates: dict[str, str] = Field(default_factory=dict)
    is_user_edit: bool = False
    is_baseline: bool = Field(
        default=False,
        description="AI values consolidated onto the anchor when a user edit purged their messages",
    )

    @property
    def engine_owned(self) -> bool:
        """Written by the engine rather than parsed from message text."""
        return self.is_user_edit or self.is_baseline


# ── Compression ────────────────────────────────────────────────────────

class EventBackup(BaseModel):
    """Verbatim copy of an event taken before it was compressed."""
    msg_idx: int
    evt_idx: int
    event: TimelineEvent
    timestamp: StoryTimestamp = Field(default_factory=StoryTimestamp)


def new_summary_id() -> str:
    return f"summary_{uuid.uuid4().hex[:12]}"


class SummaryEntry(BaseModel):
    id: str = Field(default_factory=new_summary_id)
    range: tuple[int, int]
    summary_text: str
    original_events: list[EventBackup] = Field(default_factory=list)
    active: bool = True
    created_at: str = ""
    auto: bool = False
    # messages in the range the host already hid before the summary did
    hidden_before: list[int] = Field(default_factory=list)

    def covers(self, message_index: int) -> bool:
        return self.range[0] <= message_index <= self.range[1]


# ── Tables ─────────────────────────────────────────────────────────────

def cell_key(row: int, col: int) -> str:
    return f"{row}-{col}"


def split_cell_key(key: str) -> Optional[tuple[int, int]]:
    row, sep, col = key.partition("-")
    if not sep or not row.isdigit() or not col.isdigit():
        return None
    return int(row), int(col)


class CustomTable(BaseModel):
    """A free-form table. Row 0 and column 0 hold headers."""
    id: str = Field(default_factory=lambda: f"table_{uuid.uuid4().hex[:8]}")
    name: str
    rows: int = 2
    cols: int = 2
    data: dict[str, str] = Field(default_factory=dict)
    base_data: Optional[dict[str, str]] = None
    base_rows: Optional[int] = None
    base_cols: Optional[int] = None
    locked_rows: list[int] = Field(default_factory=list)
    locked_cols: list[int] = Field(default_factory=list)
    locked_cells: list[str] = Field(default_factory=list)
    prompt: str = ""
    scope: TableScope = TableScope.LOCAL

    def is_locked(self, row: int, col: int) -> bool:
        return (
            row in self.locked_rows
            or col in self.locked_cols
            or cell_key(row, col) in self.locked_cells
        )


class TableOverlay(BaseModel):
    """Per-card data region of a global table."""
    data: dict[str, str] = Field(default_factory=dict)
    rows: int = 2
    cols: int = 2


# ── The delta itself ───────────────────────────────────────────────────

ANCHOR_FIELDS = ("location_memory", "relationship_graph", "auto_summaries", "custom_tables")


class MessageDelta(BaseModel):
    """Structured state change carried by one transcript message.

    The four anchor-only fields are populated on message 0 and hold the
    side tables that cannot be folded from a window of deltas.
    """
    timestamp: StoryTimestamp = Field(default_factory=StoryTimestamp)
    scene: Scene = Field(default_factory=Scene)
    costumes: dict[str, str] = Field(default_factory=dict)
    items: dict[str, ItemInfo] = Field(default_factory=dict)
    deleted_items: list[str] = Field(default_factory=list)
    events: list[TimelineEvent] = Field(default_factory=list)
    affection: dict[str, AffectionValue] = Field(default_factory=dict)
    npcs: dict[str, NpcInfo] = Field(default_factory=dict)
    agenda: list[AgendaItem] = Field(default_factory=list)
    completed_agenda: list[str] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    scene_desc: Optional[str] = None
    mood: dict[str, str] = Field(default_factory=dict)
    table_contributions: list[TableContribution] = Field(default_factory=list)

    # Anchor-only
    location_memory: dict[str, LocationMemoryEntry] = Field(default_factory=dict)
    relationship_graph: list[Relationship] = Field(default_factory=list)
    auto_summaries: list[SummaryEntry] = Field(default_factory=list)
    custom_tables: list[CustomTable] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "MessageDelta":
        return cls()

    def has_content(self) -> bool:
        """True when the message states anything beyond the capture instant."""
        stamp = self.timestamp
        return bool(
            stamp.story_date or stamp.story_time
            or self.scene.location or self.scene.atmosphere or self.scene.characters_present
            or self.costumes or self.items or self.deleted_items or self.events
            or self.affection or self.npcs or self.agenda or self.completed_agenda
            or self.relationships or self.scene_desc or self.mood or self.table_contributions
        )

    def find_summary(self, summary_id: str) -> Optional[SummaryEntry]:
        for entry in self.auto_summaries:
            if entry.id == summary_id:
                return entry
        return None


def merge_delta(base: Optional[MessageDelta], parsed: MessageDelta) -> MessageDelta:
    """Fold a freshly parsed delta into the one already on a message.

    Scalars are overwritten only when the parse stated them; maps are
    updated per key; events and table contributions come from the parse
    when it has any. Returns a new record.
    """
    if base is None:
        return parsed.model_copy(deep=True)

    merged = base.model_copy(deep=True)
    incoming = parsed.model_copy(deep=True)

    if incoming.timestamp.story_date:
        merged.timestamp.story_date = incoming.timestamp.story_date
    if incoming.timestamp.story_time:
        merged.timestamp.story_time = incoming.timestamp.story_time
    if incoming.timestamp.absolute:
        merged.timestamp.absolute = incoming.timestamp.absolute

    if incoming.scene.location:
        merged.scene.location = incoming.scene.location
    if incoming.scene.atmosphere:
        merged.scene.atmosphere = incoming.scene.atmosphere
    if incoming.scene.characters_present:
        merged.scene.characters_present = incoming.scene.characters_present

    merged.costumes.update(incoming.costumes)
    merged.items.update(incoming.items)
    merged.affection.update(incoming.affection)
    merged.npcs.update(incoming.npcs)
    merged.mood.update(incoming.mood)

    for name in incoming.deleted_items:
        if name not in merged.deleted_items:
            merged.deleted_items.append(name)
    for keyword in incoming.completed_agenda:
        if keyword not in merged.completed_agenda:
            merged.completed_agenda.append(keyword)

    if incoming.events:
        placeholders = [e for e in merged.events if e.summary_id]
        merged.events = incoming.events + placeholders

    known = {item.text for item in merged.agenda}
    for item in incoming.agenda:
        if item.text not in known:
            merged.agenda.append(item)
            known.add(item.text)

    merged.relationships.extend(incoming.relationships)
    if incoming.scene_desc:
        merged.scene_desc = incoming.scene_desc
    if incoming.table_contributions:
        owned = [c for c in merged.table_contributions if c.engine_owned]
        merged.table_contributions = incoming.table_contributions + owned
    return merged


def carry_over(old: Optional[MessageDelta], new: MessageDelta, anchor: bool = False) -> MessageDelta:
    """Keep engine-owned state when a message's delta is re-parsed.

    Compression markers, summary placeholders and user table edits belong to
    the engine rather than to the message text, so a re-parse must not
    drop them. On the anchor the side tables and user agenda survive too.
    """
    result = new.model_copy(deep=True)
    if old is None:
        return result

    raw_events = [e for e in result.events if not e.summary_id]
    placeholders = {e.summary_id for e in result.events if e.summary_id}
    position = 0
    for event in old.events:
        if event.summary_id:
            if event.summary_id not in placeholders:
                result.events.append(event.model_copy(deep=True))
            continue
        if event.compressed_by and position < len(raw_events):
            raw_events[position].compressed_by = event.compressed_by
        position += 1

    owned = {(c.table_name, c.is_user_edit) for c in result.table_contributions if c.engine_owned}
    result.table_contributions.extend(
        c.model_copy(deep=True) for c in old.table_contributions
        if c.engine_owned and (c.table_name, c.is_user_edit) not in owned
    )

    if anchor:
        for name in ANCHOR_FIELDS:
            if not getattr(result, name):
                setattr(result, name, copy.deepcopy(getattr(old, name)))
        user_agenda = [a for a in old.agenda if a.source == AgendaSource.USER]
        texts = {a.text for a in result.agenda}
        result.agenda = [a for a in user_agenda if a.text not in texts] + result.agenda
    return result
