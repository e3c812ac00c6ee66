"""
Canonical string enumerations for Horae.

StrEnum values serialize as plain strings, so exported deltas and
settings files stay readable JSON and compare equal to raw literals.
"""

from enum import StrEnum


# ── Timeline ───────────────────────────────────────────────────────────

class EventLevel(StrEnum):
    """Importance of a timeline event."""
    NORMAL = "normal"
    IMPORTANT = "important"
    CRITICAL = "critical"
    SUMMARY = "summary"          # Placeholder produced by compression


class ItemImportance(StrEnum):
    """Importance tier of an inventory item (item / item! / item!!)."""
    NONE = "none"
    IMPORTANT = "important"
    CRITICAL = "critical"


# ── Character state ────────────────────────────────────────────────────

class AffectionKind(StrEnum):
    """How an affection value combines with the running total."""
    ABSOLUTE = "absolute"
    RELATIVE = "relative"


class AgendaSource(StrEnum):
    """Who created an agenda item."""
    USER = "user"
    AI = "ai"


# ── Calendar ───────────────────────────────────────────────────────────

class CalendarType(StrEnum):
    """Date dialect recognised by the calendar module."""
    STANDARD = "standard"
    FREEFORM = "freeform"


# ── Tables ─────────────────────────────────────────────────────────────

class TableScope(StrEnum):
    """Where a custom table's data lives."""
    LOCAL = "local"              # Stored on the conversation's anchor message
    GLOBAL = "global"            # Structure in settings, data per card


# ── Compression ────────────────────────────────────────────────────────

class SummaryMode(StrEnum):
    """Which text is fed to the summarizer."""
    EVENTS = "events"            # Selected events' level/date/summary
    FULLTEXT = "fulltext"        # Raw message bodies across the range


class ThresholdUnit(StrEnum):
    """Unit of the automatic summary buffer threshold."""
    MESSAGES = "messages"
    TOKENS = "tokens"
