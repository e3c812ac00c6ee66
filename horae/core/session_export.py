"""
State Export/Import for Horae.

Saves every message delta of a conversation to a portable JSON document
and replays one onto a transcript.
"""

import logging
from datetime import datetime
from typing import Any, Dict

from pydantic import ValidationError

from .delta import MessageDelta
from .store import DeltaStore

logger = logging.getLogger(__name__)


EXPORT_VERSION = "1.0"


def export_state(store: DeltaStore) -> Dict[str, Any]:
    """Export every stored delta.

    Args:
        store: The conversation's delta store

    Returns:
        ``{version, exportTime, data: [{index, delta}]}``; messages
        without a delta are left out.
    """
    data = []
    for index, delta in enumerate(store.deltas()):
        if delta is None:
            continue
        data.append({"index": index, "delta": delta.model_dump(mode="json")})

    return {
        "version": EXPORT_VERSION,
        "exportTime": datetime.now().isoformat(),
        "data": data,
    }


def import_state(store: DeltaStore, payload: Dict[str, Any]) -> int:
    """Replay an export onto the transcript by message index.

    Entries whose index is outside the transcript are skipped.

    Returns:
        The number of deltas written.

    Raises:
        ValueError: If the payload is not an export document.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise ValueError("Invalid export file: missing data list")

    version = payload.get("version")
    if version != EXPORT_VERSION:
        logger.warning(f"Importing export version {version!r} (current: {EXPORT_VERSION})")

    parsed: list[tuple[int, MessageDelta]] = []
    for entry in payload["data"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("index"), int):
            raise ValueError(f"Invalid export entry: {entry!r}")
        try:
            delta = MessageDelta.model_validate(entry.get("delta") or {})
        except ValidationError as exc:
            raise ValueError(f"Invalid delta for message {entry['index']}: {exc}") from exc
        parsed.append((entry["index"], delta))

    written = 0
    for index, delta in parsed:
        if not 0 <= index < len(store):
            logger.warning(f"Skipping delta for message {index}: transcript has {len(store)} messages")
            continue
        store.set(index, delta)
        written += 1

    logger.info(f"Imported {written} deltas")
    return written
