"""Pydantic models for Horae settings."""

from typing import Optional

from pydantic import BaseModel, Field

from ..core.delta import CustomTable, TableOverlay
from ..enums import SummaryMode, ThresholdUnit


class EndpointSettings(BaseModel):
    """Optional OpenAI-compatible endpoint used instead of the host connection."""

    use_direct: bool = Field(
        default=False,
        description="Send summary/analysis requests to the endpoint below"
    )
    url: str = Field(
        default="",
        description="Base URL, e.g. 'https://api.openai.com/v1'"
    )
    api_key: str = Field(
        default="",
        description="Encrypted bearer key (see settings.crypto)"
    )
    model: str = Field(
        default="",
        description="Model name sent with each request"
    )


class SummarySettings(BaseModel):
    """Event compression behaviour."""

    auto_enabled: bool = Field(
        default=False,
        description="Compress old messages automatically once the buffer threshold is passed"
    )
    default_mode: SummaryMode = Field(
        default=SummaryMode.EVENTS,
        description="Input used for manual compression"
    )
    threshold_unit: ThresholdUnit = ThresholdUnit.MESSAGES
    threshold: int = Field(
        default=20,
        description="Buffer size (messages or estimated tokens) that triggers auto compression"
    )
    keep_recent: int = Field(
        default=10,
        description="Most recent messages never auto-compressed"
    )
    max_words: int = Field(
        default=300,
        description="Hard cap on summary length"
    )


class HoraeSettings(BaseModel):
    """Complete Horae settings.

    Persisted to a JSON file by SettingsStore. Global tables live here
    because they are shared by every conversation; their per-card data
    overlays sit in ``global_table_data[card_id][table_name]``.
    """

    enabled: bool = True
    auto_parse: bool = True
    inject_context: bool = True
    injection_position: int = Field(
        default=1,
        description="Chat depth at which the compact state block is inserted"
    )
    context_depth: int = Field(
        default=15,
        description="Number of recent normal-level events sent to the model"
    )

    # What the compact prompt includes
    send_timeline: bool = True
    send_characters: bool = True
    send_items: bool = True
    send_relationships: bool = True
    send_mood: bool = True
    send_location_memory: bool = True

    custom_system_prompt: str = Field(
        default="",
        description="Replaces the built-in grammar instructions when set"
    )
    custom_tables_prompt: str = ""

    global_tables: list[CustomTable] = Field(default_factory=list)
    global_table_data: dict[str, dict[str, TableOverlay]] = Field(default_factory=dict)

    favorite_npcs: list[str] = Field(default_factory=list)
    pinned_npcs: list[str] = Field(default_factory=list)

    summary: SummarySettings = Field(default_factory=SummarySettings)
    endpoint: EndpointSettings = Field(default_factory=EndpointSettings)

    debug_mode: bool = False
    last_card_id: Optional[str] = None
