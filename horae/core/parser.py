"""
Tag parser: message text -> MessageDelta.

A message carries up to three kinds of blocks:

    <horae> ... </horae>                 state lines (also <!--horae ... -->)
    <horaeevent> ... </horaeevent>       event lines (also <!--horaeevent ... -->)
    <horaetable:Name> ... </horaetable>  table cells, "row,col:value" separated by |

Each state/event line is ``keyword:value``. Every keyword has its own
production function registered in ``PRODUCTIONS``; adding a tag kind means
adding one function and one registry entry. Unknown lines are ignored.

Parsing is pure. It never reads the clock or any store, so the same text
always yields the same delta.
"""

import logging
import re
from typing import Callable, Optional

from ..enums import AffectionKind, AgendaSource, EventLevel, ItemImportance
from .delta import (
    AffectionValue,
    AgendaItem,
    ItemInfo,
    MessageDelta,
    NpcInfo,
    Relationship,
    TableContribution,
    TimelineEvent,
)

logger = logging.getLogger(__name__)

_STATE_BLOCK = re.compile(r"<horae>([\s\S]*?)</horae>", re.IGNORECASE)
_STATE_COMMENT = re.compile(r"<!--horae(?!event)([\s\S]*?)-->", re.IGNORECASE)
_EVENT_BLOCK = re.compile(r"<horaeevent>([\s\S]*?)</horaeevent>", re.IGNORECASE)
_EVENT_COMMENT = re.compile(r"<!--horaeevent([\s\S]*?)-->", re.IGNORECASE)
_TABLE_BLOCK = re.compile(r"<horaetable[:：]\s*(.+?)>([\s\S]*?)</horaetable>", re.IGNORECASE)
_ALL_BLOCKS = (_STATE_BLOCK, _STATE_COMMENT, _EVENT_BLOCK, _EVENT_COMMENT, _TABLE_BLOCK)

_TAG_LINE = re.compile(r"^([A-Za-z_]+(?:!{1,2}|-)?)\s*[:：]\s*(.*)$")
_BULLET = re.compile(r"^[\s\-*•·>#]+")
_CLOCK_SUFFIX = re.compile(r"(?<!\d)(\d{1,2}:\d{2})\s*$")
_TABLE_CELL = re.compile(r"^(\d+)[,\-](\d+)[:：]\s*(.*)$")
_EMPTY_CELL = re.compile(r"^[(（]?空[)）]?$|^[-\u2014]+$")
_ABSOLUTE_AFFECTION = re.compile(r"^(.+?)=\s*([+\-]?\d+(?:\.\d+)?)")
_RELATIVE_AFFECTION = re.compile(r"^(.+?)([+\-]\d+(?:\.\d+)?)")
_NPC_EXTRA = re.compile(r"^\s*([^:：]+?)\s*[:：](.*)$")

COUNTING_CLASSIFIERS = "个把条块张根口份枚只颗支件套双对碗杯盘盆串束扎"
_QTY_ONE = re.compile(r"[(（]1[)）]$")
_QTY_ONE_CLASSIFIER = re.compile(rf"[(（]1[{COUNTING_CLASSIFIERS}][)）]$")
_QTY_CLASSIFIER = re.compile(rf"[(（][{COUNTING_CLASSIFIERS}][)）]$")
_QTY_SUFFIX = re.compile(r"[(（][^()（）]*[)）]$")

_EMOJI_RANGES = (
    (0x1F1E0, 0x1F1FF), (0x1F300, 0x1FAFF), (0x2600, 0x27BF),
    (0x231A, 0x231B), (0x23E9, 0x23F3), (0x23F8, 0x23FA), (0x25AA, 0x25AB),
    (0x25B6, 0x25B6), (0x25C0, 0x25C0), (0x25FB, 0x25FE), (0x2934, 0x2935),
    (0x2B05, 0x2B07), (0x2B1B, 0x2B1C), (0x2B50, 0x2B50), (0x2B55, 0x2B55),
    (0x3030, 0x3030), (0x303D, 0x303D), (0x3297, 0x3297), (0x3299, 0x3299),
)
_VARIATION_SELECTOR = "\ufe0f"

_NPC_KEYS = {
    "gender": ("性别", "gender", "sex"),
    "age": ("年龄", "age", "年纪"),
    "race": ("种族", "race", "族裔", "族群"),
    "job": ("职业", "job", "class", "职务", "身份"),
    "note": ("补充", "note", "备注", "其他"),
}

_EVENT_LEVELS = {
    "关键": EventLevel.CRITICAL, "critical": EventLevel.CRITICAL,
    "重要": EventLevel.IMPORTANT, "important": EventLevel.IMPORTANT,
    "摘要": EventLevel.SUMMARY, "summary": EventLevel.SUMMARY,
}


# ── Item name helpers (shared with the folder) ─────────────────────────

def normalize_item_name(name: str) -> str:
    """Drop meaningless quantity marks: (1), (1个), (个)."""
    name = _QTY_ONE.sub("", name.strip()).strip()
    name = _QTY_ONE_CLASSIFIER.sub("", name).strip()
    return _QTY_CLASSIFIER.sub("", name).strip()


def item_base_name(name: str) -> str:
    """Name without any trailing parenthesised quantity."""
    return _QTY_SUFFIX.sub("", name.strip()).strip()


def _is_emoji(char: str) -> bool:
    point = ord(char)
    return any(low <= point <= high for low, high in _EMOJI_RANGES)


def split_leading_emoji(text: str) -> tuple[Optional[str], str]:
    """Split an icon emoji off the front of an item name."""
    if not text or not _is_emoji(text[0]):
        return None, text
    end = 1
    if len(text) > 1 and text[1] == _VARIATION_SELECTOR:
        end = 2
    return text[:end], text[end:].strip()


# ── Productions ────────────────────────────────────────────────────────

Production = Callable[[str, MessageDelta], bool]


def _time(value: str, delta: MessageDelta) -> bool:
    if not value:
        return False
    clock = _CLOCK_SUFFIX.search(value)
    if clock:
        delta.timestamp.story_time = clock.group(1)
        delta.timestamp.story_date = value[:clock.start()].strip()
    else:
        delta.timestamp.story_date = value
        delta.timestamp.story_time = ""
    return True


def _location(value: str, delta: MessageDelta) -> bool:
    if not value:
        return False
    delta.scene.location = value
    return True


def _atmosphere(value: str, delta: MessageDelta) -> bool:
    if not value:
        return False
    delta.scene.atmosphere = value
    return True


def _characters(value: str, delta: MessageDelta) -> bool:
    names = [n.strip() for n in re.split(r"[,，]", value) if n.strip()]
    if not names:
        return False
    delta.scene.characters_present = names
    return True


def _costume(value: str, delta: MessageDelta) -> bool:
    name, sep, outfit = value.partition("=")
    if not sep or not name.strip():
        return False
    delta.costumes[name.strip()] = outfit.strip()
    return True


def _item_production(importance: ItemImportance) -> Production:
    def production(value: str, delta: MessageDelta) -> bool:
        name_part, sep, rest = value.partition("=")
        if not sep or not name_part.strip():
            return False
        icon, name_part = split_leading_emoji(name_part.strip())
        name, _, description = name_part.partition("|")
        name = normalize_item_name(name)
        if not name:
            return False
        holder, at, location = rest.strip().partition("@")
        delta.items[name] = ItemInfo(
            icon=icon,
            importance=importance,
            holder=holder.strip() or None,
            location=location.strip() if at else "",
            description=description.strip() or None,
        )
        return True
    return production


def _item_removed(value: str, delta: MessageDelta) -> bool:
    _, name = split_leading_emoji(value)
    name = name.strip()
    if not name:
        return False
    if name not in delta.deleted_items:
        delta.deleted_items.append(name)
    return True


def _affection(value: str, delta: MessageDelta) -> bool:
    # Trailing annotations such as "=18(+0)|noticed ..." are tolerated
    match = _ABSOLUTE_AFFECTION.match(value)
    if match:
        delta.affection[match.group(1).strip()] = AffectionValue(
            type=AffectionKind.ABSOLUTE, value=float(match.group(2))
        )
        return True
    match = _RELATIVE_AFFECTION.match(value)
    if match:
        delta.affection[match.group(1).strip()] = AffectionValue(
            type=AffectionKind.RELATIVE, value=float(match.group(2))
        )
        return True
    return False


def _npc_key(key: str) -> Optional[str]:
    lowered = key.strip().lower()
    for field, synonyms in _NPC_KEYS.items():
        if lowered in synonyms:
            return field
    return None


def parse_npc_fields(text: str) -> tuple[str, NpcInfo]:
    """Parse ``name|appearance=personality@relationship~key:value~...``.

    The older pipe-only form ``name|appearance|personality|relationship``
    is still accepted.
    """
    info = NpcInfo()
    main, *extras = text.split("~")
    for pair in extras:
        match = _NPC_EXTRA.match(pair)
        if not match:
            continue
        field = _npc_key(match.group(1))
        if field and match.group(2).strip():
            setattr(info, field, match.group(2).strip())

    name, pipe, desc = main.partition("|")
    name = name.strip()
    if not pipe:
        return name, info

    desc = desc.strip()
    if "=" in desc or "@" in desc:
        before_at, _, relationship = desc.partition("@")
        appearance, _, personality = before_at.partition("=")
        info.appearance = appearance.strip() or None
        info.personality = personality.strip() or None
        info.relationship = relationship.strip() or None
    else:
        parts = [p.strip() for p in desc.split("|")]
        for field, part in zip(("appearance", "personality", "relationship"), parts):
            if part:
                setattr(info, field, part)
    return name, info


def _npc(value: str, delta: MessageDelta) -> bool:
    name, info = parse_npc_fields(value)
    if not name:
        return False
    delta.npcs[name] = info
    return True


def _agenda(value: str, delta: MessageDelta) -> bool:
    date, pipe, text = value.partition("|")
    if pipe and date.strip():
        text = text.strip()
        date = date.strip()
    else:
        text, date = value.strip(), ""
    if not text:
        return False
    if all(item.text != text for item in delta.agenda):
        delta.agenda.append(AgendaItem(text=text, date=date, source=AgendaSource.AI))
    return True


def _agenda_done(value: str, delta: MessageDelta) -> bool:
    head, pipe, tail = value.partition("|")
    text = tail.strip() if pipe and head.strip() else value.strip()
    if not text:
        return False
    if text not in delta.completed_agenda:
        delta.completed_agenda.append(text)
    return True


def _rel(value: str, delta: MessageDelta) -> bool:
    head, eq, tail = value.partition("=")
    source, gt, target = head.partition(">")
    if not eq or not gt or not source.strip() or not target.strip():
        return False
    rel_type, _, note = tail.partition("|")
    delta.relationships.append(Relationship(
        from_name=source.strip(), to_name=target.strip(),
        type=rel_type.strip(), note=note.strip(),
    ))
    return True


def _scene_desc(value: str, delta: MessageDelta) -> bool:
    if not value:
        return False
    delta.scene_desc = value
    return True


def _mood(value: str, delta: MessageDelta) -> bool:
    name, sep, emotion = value.partition("=")
    if not sep or not name.strip() or not emotion.strip():
        return False
    delta.mood[name.strip()] = emotion.strip()
    return True


def parse_event_level(text: str) -> EventLevel:
    return _EVENT_LEVELS.get(text.strip().lower(), EventLevel.NORMAL)


def _event(value: str, delta: MessageDelta) -> bool:
    level_text, pipe, summary = value.partition("|")
    summary = summary.strip()
    if not pipe or not summary:
        return False
    level = parse_event_level(level_text)
    delta.events.append(TimelineEvent(
        level=level, summary=summary, is_summary=level == EventLevel.SUMMARY,
    ))
    return True


PRODUCTIONS: dict[str, Production] = {
    "time": _time,
    "location": _location,
    "atmosphere": _atmosphere,
    "characters": _characters,
    "costume": _costume,
    "item": _item_production(ItemImportance.NONE),
    "item!": _item_production(ItemImportance.IMPORTANT),
    "item!!": _item_production(ItemImportance.CRITICAL),
    "item-": _item_removed,
    "affection": _affection,
    "npc": _npc,
    "agenda": _agenda,
    "agenda-": _agenda_done,
    "rel": _rel,
    "scene_desc": _scene_desc,
    "mood": _mood,
    "event": _event,
}

_LOOSE_KEYWORD = re.compile(
    r"(?<![A-Za-z_])("
    + "|".join(re.escape(k) for k in sorted(PRODUCTIONS, key=len, reverse=True))
    + r")\s*[:：]\s*(.*)$",
    re.IGNORECASE,
)


def _apply_line(line: str, delta: MessageDelta) -> bool:
    match = _TAG_LINE.match(line.strip())
    if not match:
        return False
    production = PRODUCTIONS.get(match.group(1).lower())
    if production is None:
        return False
    return production(match.group(2).strip(), delta)


# ── Tables ─────────────────────────────────────────────────────────────

def parse_table_cells(text: str) -> dict[str, str]:
    """Parse ``row,col:value`` cells, one per line or several joined by |."""
    updates: dict[str, str] = {}
    for line in text.splitlines():
        for segment in re.split(r"\s*[|｜]\s*", line.strip()):
            match = _TABLE_CELL.match(segment.strip())
            if not match:
                continue
            value = match.group(3).strip()
            if value and not _EMPTY_CELL.match(value):
                updates[f"{int(match.group(1))}-{int(match.group(2))}"] = value
    return updates


def _parse_tables(text: str, delta: MessageDelta) -> int:
    count = 0
    for match in _TABLE_BLOCK.finditer(text):
        updates = parse_table_cells(match.group(2))
        if updates:
            delta.table_contributions.append(
                TableContribution(table_name=match.group(1).strip(), cell_updates=updates)
            )
            count += 1
    return count


# ── Entry points ───────────────────────────────────────────────────────

def parse_tags(text: Optional[str]) -> Optional[MessageDelta]:
    """Strict parse of the wrapped tag blocks.

    Returns None when the message has no Horae block at all. A block with
    no recognised lines yields an empty delta.
    """
    if not text:
        return None

    state = _STATE_BLOCK.search(text) or _STATE_COMMENT.search(text)
    events = _EVENT_BLOCK.search(text) or _EVENT_COMMENT.search(text)
    has_tables = _TABLE_BLOCK.search(text) is not None
    if not state and not events and not has_tables:
        return None

    delta = MessageDelta.empty()
    lines: list[str] = []
    if state:
        lines.extend(state.group(1).splitlines())
    if events:
        lines.extend(events.group(1).splitlines())
    for line in lines:
        if line.strip():
            _apply_line(line, delta)
    _parse_tables(text, delta)
    return delta


def parse_loose(text: Optional[str]) -> Optional[MessageDelta]:
    """Tolerant parse for output that forgot the wrapper tags.

    Any line containing ``keyword:`` for a known keyword is applied,
    including bullet-prefixed lines and keywords mid-line. Returns None
    when nothing was recognised.
    """
    if not text:
        return None

    delta = MessageDelta.empty()
    recognised = _parse_tables(text, delta)
    body = _TABLE_BLOCK.sub("", text)
    for raw in body.splitlines():
        line = _BULLET.sub("", raw).strip().strip("*").strip()
        if not line:
            continue
        if _apply_line(line, delta):
            recognised += 1
            continue
        match = _LOOSE_KEYWORD.search(line)
        if match:
            production = PRODUCTIONS[match.group(1).lower()]
            if production(match.group(2).strip(), delta):
                recognised += 1
    if not recognised:
        return None
    logger.debug("Loose parse recovered %d tag lines", recognised)
    return delta


def parse_message(text: Optional[str]) -> Optional[MessageDelta]:
    """Strict parse with a loose fallback; None only when nothing matched."""
    delta = parse_tags(text)
    if delta is not None:
        return delta
    return parse_loose(text)


def strip_tags(text: str) -> str:
    """Remove every Horae block, leaving only the narrative."""
    for pattern in _ALL_BLOCKS:
        text = pattern.sub("", text)
    return text.strip()


# ── Writing tags back ──────────────────────────────────────────────────

def format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def _item_prefix(importance: ItemImportance) -> str:
    return {
        ItemImportance.IMPORTANT: "item!",
        ItemImportance.CRITICAL: "item!!",
    }.get(importance, "item")


def build_state_lines(delta: MessageDelta) -> list[str]:
    lines: list[str] = []
    stamp = delta.timestamp
    if stamp.story_date or stamp.story_time:
        lines.append(f"time:{' '.join(p for p in (stamp.story_date, stamp.story_time) if p)}")
    if delta.scene.location:
        lines.append(f"location:{delta.scene.location}")
    if delta.scene.atmosphere:
        lines.append(f"atmosphere:{delta.scene.atmosphere}")
    if delta.scene.characters_present:
        lines.append(f"characters:{','.join(delta.scene.characters_present)}")
    for name, outfit in delta.costumes.items():
        lines.append(f"costume:{name}={outfit}")

    for name, info in delta.items.items():
        label = f"{info.icon or ''}{name}"
        if info.description:
            label += f"|{info.description}"
        place = info.holder or ""
        if info.location:
            place += f"@{info.location}"
        lines.append(f"{_item_prefix(info.importance)}:{label}={place}")
    for name in delta.deleted_items:
        lines.append(f"item-:{name}")

    for name, aff in delta.affection.items():
        if aff.type == AffectionKind.ABSOLUTE:
            lines.append(f"affection:{name}={format_number(aff.value)}")
        else:
            sign = "+" if aff.value >= 0 else "-"
            lines.append(f"affection:{name}{sign}{format_number(abs(aff.value))}")

    for name, npc in delta.npcs.items():
        line = f"npc:{name}"
        if npc.appearance or npc.personality or npc.relationship:
            line += f"|{npc.appearance or ''}={npc.personality or ''}@{npc.relationship or ''}"
        for field in ("gender", "age", "race", "job", "note"):
            value = getattr(npc, field)
            if value:
                line += f"~{field}:{value}"
        lines.append(line)

    for item in delta.agenda:
        lines.append(f"agenda:{item.date}|{item.text}" if item.date else f"agenda:{item.text}")
    for keyword in delta.completed_agenda:
        lines.append(f"agenda-:{keyword}")
    for rel in delta.relationships:
        line = f"rel:{rel.from_name}>{rel.to_name}={rel.type}"
        if rel.note:
            line += f"|{rel.note}"
        lines.append(line)
    if delta.scene_desc:
        lines.append(f"scene_desc:{delta.scene_desc}")
    for name, emotion in delta.mood.items():
        lines.append(f"mood:{name}={emotion}")
    return lines


def build_tag_text(delta: MessageDelta) -> str:
    """Render the state block for a delta ("" when there is nothing to say)."""
    lines = build_state_lines(delta)
    if not lines:
        return ""
    return "<horae>\n" + "\n".join(lines) + "\n</horae>"


def build_event_text(delta: MessageDelta) -> str:
    """Render the event block. Summary placeholders are engine-owned and skipped."""
    lines = [
        f"event:{event.level.value}|{event.summary}"
        for event in delta.events
        if not event.summary_id
    ]
    if not lines:
        return ""
    return "<horaeevent>\n" + "\n".join(lines) + "\n</horaeevent>"


def build_table_text(delta: MessageDelta) -> str:
    blocks = []
    for contribution in delta.table_contributions:
        if contribution.engine_owned or not contribution.cell_updates:
            continue
        cells = "\n".join(
            f"{key.replace('-', ',', 1)}:{value}"
            for key, value in contribution.cell_updates.items()
        )
        blocks.append(f"<horaetable:{contribution.table_name}>\n{cells}\n</horaetable>")
    return "\n".join(blocks)


def inject_tags(text: str, delta: MessageDelta) -> str:
    """Replace (or append) the Horae blocks in a message with ``delta``'s."""
    body = text or ""
    for pattern in _ALL_BLOCKS:
        body = pattern.sub("", body)
    body = body.rstrip()
    blocks = [b for b in (build_tag_text(delta), build_event_text(delta), build_table_text(delta)) if b]
    if not blocks:
        return body
    return (body + "\n\n" if body else "") + "\n".join(blocks)
