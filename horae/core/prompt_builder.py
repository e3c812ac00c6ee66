"""
Prompt compactor: aggregate state -> compact context block.

Two pure projections of the current state:

- ``generate_compact_prompt`` renders the world state in a terse form
  that mirrors the tag grammar, so the model can compare the next turn
  against it and write only what changed;
- ``generate_system_prompt_addition`` renders the grammar instructions.
"""

import logging
from typing import Optional

from ..enums import EventLevel, ItemImportance
from ..prompts import PromptRegistry, get_registry
from ..settings.models import HoraeSettings
from .chrono import format_full_datetime, relative_time, time_reference
from .delta import CustomTable, cell_key
from .folder import AggregateState, TimelineEntry, calc_current_age, fold
from .parser import format_number
from .store import DeltaStore
from .tables import TableEngine

logger = logging.getLogger(__name__)

LEVEL_MARKS = {
    EventLevel.CRITICAL: "★",
    EventLevel.IMPORTANT: "●",
    EventLevel.NORMAL: "○",
    EventLevel.SUMMARY: "◆",
}
LOCK_MARK = "🔒"


def _costume_for(name: str, costumes: dict[str, str]) -> str:
    """Costume of ``name``, tolerating short/long forms of the same name."""
    if costumes.get(name):
        return costumes[name]
    for key, value in costumes.items():
        if value and (key in name or name in key):
            return value
    return ""


def select_timeline(events: list[TimelineEntry], depth: int) -> list[TimelineEntry]:
    """Critical, important and summary events, plus the last ``depth`` normal ones."""
    always = {EventLevel.CRITICAL, EventLevel.IMPORTANT, EventLevel.SUMMARY}
    normal = [e for e in events if e.event.level not in always]
    recent = normal[-depth:] if depth > 0 else []
    keep = {id(e) for e in recent}
    return [e for e in events if e.event.level in always or id(e) in keep]


def render_table(table: CustomTable) -> list[str]:
    """Render a table, hiding empty data columns and trailing empty rows."""
    data = table.data

    def filled(r: int, c: int) -> bool:
        return bool(data.get(cell_key(r, c), "").strip())

    active_cols = [0] + [c for c in range(1, table.cols) if any(filled(r, c) for r in range(1, table.rows))]
    empty_cols = [c for c in range(1, table.cols) if c not in active_cols]
    last_row = max(
        (r for r in range(1, table.rows) if any(filled(r, c) for c in range(1, table.cols))),
        default=1,
    )

    lines = [f"[{table.name}]"]
    if table.prompt.strip():
        lines.append(f"(instructions: {table.prompt.strip()})")

    header = []
    for c in active_cols:
        label = data.get(cell_key(0, c)) or ("header" if c == 0 else f"col{c}")
        header.append(f"{label}{LOCK_MARK}" if c in table.locked_cols else label)
    lines.append(" | ".join(header))

    for r in range(1, last_row + 1):
        row = []
        for c in active_cols:
            if c == 0:
                label = data.get(cell_key(r, 0)) or str(r)
                row.append(f"{label}{LOCK_MARK}" if r in table.locked_rows else label)
                continue
            value = data.get(cell_key(r, c)) or "-"
            row.append(f"{value}{LOCK_MARK}" if cell_key(r, c) in table.locked_cells else value)
        lines.append(" | ".join(row))

    if last_row < table.rows - 1:
        lines.append(f"({table.rows - 1} rows; rows {last_row + 1}-{table.rows - 1} are still empty)")
    if empty_cols:
        names = ", ".join(data.get(cell_key(0, c)) or f"col{c}" for c in empty_cols)
        lines.append(f"({names}: no data yet; leave empty until the story fills them)")
    return lines


class PromptCompactor:
    """Builds the text Horae injects into the model's context."""

    def __init__(
        self,
        store: DeltaStore,
        settings: HoraeSettings,
        tables: TableEngine,
        registry: Optional[PromptRegistry] = None,
    ):
        self._store = store
        self._settings = settings
        self._tables = tables
        self._registry = registry

    @property
    def settings(self) -> HoraeSettings:
        return self._settings

    @settings.setter
    def settings(self, value: HoraeSettings) -> None:
        self._settings = value

    @property
    def registry(self) -> PromptRegistry:
        return self._registry or get_registry()

    def state(self, skip_tail: int = 0) -> AggregateState:
        return fold(self._store.deltas(), skip_tail=skip_tail)

    # ── Compact state block ────────────────────────────────────────────

    def generate_compact_prompt(self, skip_tail: int = 0) -> str:
        """Serialise the folded state, excluding the last ``skip_tail`` deltas."""
        settings = self._settings
        state = self.state(skip_tail)
        lines = ["[Current state snapshot: compare with this turn and write only changed fields in <horae>]"]

        self._clock(state, lines)
        self._scene(state, lines)
        if settings.send_characters:
            self._characters(state, lines)
        if settings.send_mood and state.mood:
            lines.append("[Mood|" + "|".join(f"{k}:{v}" for k, v in state.mood.items()) + "]")
        if settings.send_items:
            self._items(state, lines)
        if settings.send_characters:
            self._affection(state, lines)
            self._npcs(state, lines)
        if settings.send_relationships and state.relationships:
            lines.append("\n[Relationships]")
            for rel in state.relationships:
                note = f"|{rel.note}" if rel.note else ""
                lines.append(f"{rel.from_name}>{rel.to_name}={rel.type}{note}")
        self._agenda(state, lines)
        self._tables_block(lines)
        if settings.send_timeline:
            self._timeline(state, lines)
        return "\n".join(lines)

    def _clock(self, state: AggregateState, lines: list[str]) -> None:
        stamp = state.timestamp
        if not stamp.story_date:
            return
        lines.append(f"[Time|{format_full_datetime(stamp.story_date, stamp.story_time)}]")
        reference = time_reference(stamp.story_date)
        if reference and reference["type"] == "standard":
            lines.append(
                f"[Time reference|yesterday={reference['yesterday']}"
                f"|day before={reference['day_before']}|3 days ago={reference['three_days_ago']}]"
            )
        elif reference:
            lines.append("[Time reference|story calendar; see relative marks on the timeline]")

    def _scene(self, state: AggregateState, lines: list[str]) -> None:
        scene = state.scene
        if not scene.location:
            return
        lines.append(f"[Scene|{scene.location}" + (f"|{scene.atmosphere}" if scene.atmosphere else "") + "]")
        if self._settings.send_location_memory:
            memory = state.location_memory.get(scene.location)
            if memory and memory.desc:
                lines.append(f"[Place|{memory.desc}]")

    def _characters(self, state: AggregateState, lines: list[str]) -> None:
        present = state.scene.characters_present
        if not present:
            return
        parts = []
        for name in present:
            costume = _costume_for(name, state.costumes)
            parts.append(f"{name}({costume})" if costume else name)
        lines.append("[Present|" + "|".join(parts) + "]")

    def _items(self, state: AggregateState, lines: list[str]) -> None:
        if not state.items:
            lines.append("\n[Items] (none)")
            return
        lines.append("\n[Items]")
        marks = {ItemImportance.CRITICAL: "[key]", ItemImportance.IMPORTANT: "[important]"}
        for name, item in state.items.items():
            desc = f" | {item.description}" if item.description else ""
            where = f"@{item.location}" if item.location else ""
            lines.append(
                f"#{item.item_id} {item.icon or ''}{name}{marks.get(item.importance, '')}"
                f"{desc} = {item.holder or ''}{where}"
            )

    def _affection(self, state: AggregateState, lines: list[str]) -> None:
        scores = [(k, v) for k, v in state.affection.items() if v != 0]
        if scores:
            rendered = "|".join(f"{k}:{'+' if v > 0 else ''}{format_number(v)}" for k, v in scores)
            lines.append(f"[Affection|{rendered}]")

    def _npcs(self, state: AggregateState, lines: list[str]) -> None:
        if not state.npcs:
            return
        lines.append("\n[Known NPCs]")
        today = state.timestamp.story_date
        for name, npc in state.npcs.items():
            text = f"N{npc.npc_id} {name}"
            if npc.appearance or npc.personality or npc.relationship:
                text += f"|{npc.appearance}={npc.personality}@{npc.relationship}"
            extras = []
            if npc.gender:
                extras.append(f"gender:{npc.gender}")
            if npc.age:
                extras.append(f"age:{calc_current_age(npc, today)}")
            if npc.race:
                extras.append(f"race:{npc.race}")
            if npc.job:
                extras.append(f"job:{npc.job}")
            if npc.note:
                extras.append(f"note:{npc.note}")
            if extras:
                text += "~" + "~".join(extras)
            lines.append(text)

    def _agenda(self, state: AggregateState, lines: list[str]) -> None:
        open_items = [a for a in state.agenda if not a.done]
        if not open_items:
            return
        lines.append("\n[Agenda]")
        for item in open_items:
            lines.append(f"· {item.date + ' ' if item.date else ''}{item.text}")

    def _tables_block(self, lines: list[str]) -> None:
        for table in self._tables.tables():
            has_content = any(v.strip() for v in table.data.values())
            if not has_content and not table.prompt.strip():
                continue
            lines.append("")
            lines.extend(render_table(table))

    def _timeline(self, state: AggregateState, lines: list[str]) -> None:
        shown = select_timeline(state.events, self._settings.context_depth)
        if not shown:
            return
        lines.append("\n[Timeline]")
        current = state.timestamp.story_date
        for entry in shown:
            stamp = entry.timestamp
            when = " ".join(p for p in (stamp.story_date or "?", stamp.story_time) if p)
            relative = ""
            if stamp.story_date and current:
                rel = relative_time(stamp.story_date, current)
                if rel.relation == "exact" and rel.label:
                    relative = f"({rel.label})"
            mark = LEVEL_MARKS.get(entry.event.level, "○")
            lines.append(f"{mark} #{entry.message_index} {when}{relative}: {entry.event.summary}")

    # ── System prompt addition ─────────────────────────────────────────

    def _substitute(self, text: str) -> str:
        host = self._store.host
        return text.replace("{{user}}", host.user_name).replace("{{char}}", host.char_name)

    def generate_tables_rules(self) -> str:
        tables = self._tables.tables()
        if not tables:
            return ""
        listing = []
        for table in tables:
            prompt = f": {table.prompt.strip()}" if table.prompt.strip() else ""
            listing.append(f"- {table.name}{prompt}")
        custom = self._settings.custom_tables_prompt.strip()
        if custom:
            return custom + "\n" + "\n".join(listing)
        return self.registry.get_composed("tables_rules", table_list="\n".join(listing)).content

    def generate_system_prompt_addition(self) -> str:
        """Grammar instructions, from the user's template when one is set."""
        rules = self.generate_tables_rules()
        custom = self._settings.custom_system_prompt.strip()
        if custom:
            text = custom + ("\n\n" + rules if rules else "")
        else:
            text = self.registry.get_composed("system_addition", tables_rules=rules).content
        return self._substitute(text)
