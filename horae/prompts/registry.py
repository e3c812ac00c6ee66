"""Prompt registry for Horae.

Every instruction text Horae sends to a model lives as a markdown file in
``horae/prompts/templates``. The registry discovers them, fingerprints
each with a content hash and fills ``{placeholder}`` fragments.

Usage:
    from horae.prompts import get_registry

    registry = get_registry()
    prompt = registry.get_composed("summarizer", max_words="300")
    print(prompt.content)
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..config import Config

logger = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).parent / "templates"


@dataclass(frozen=True)
class PromptVersion:
    """An immutable, versioned snapshot of a prompt.

    Attributes:
        name: Prompt identifier (e.g., "summarizer")
        content: Raw prompt text (after frontmatter stripped)
        content_hash: SHA-256 hex digest of content
        source: Origin path or identifier
        metadata: Parsed frontmatter (if present)
        loaded_at: When this version was loaded
    """

    name: str
    content: str
    content_hash: str
    source: str
    metadata: dict[str, Any] = field(default_factory=dict)
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        """Token-rough estimate: word count."""
        return len(self.content.split())


def _compute_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _parse_frontmatter(raw: str) -> tuple[dict[str, Any], str]:
    """Parse optional frontmatter from a markdown prompt.

    Format:
        ---
        name: summarizer
        temperature: 0.3
        ---
        Actual prompt content...

    Returns:
        (metadata_dict, content_without_frontmatter)
    """
    if not raw.startswith("---"):
        return {}, raw.strip()

    end = raw.find("---", 3)
    if end == -1:
        return {}, raw.strip()

    frontmatter_text = raw[3:end].strip()
    content = raw[end + 3:].strip()

    metadata: dict[str, Any] = {}
    for line in frontmatter_text.split("\n"):
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, _, value = line.partition(":")
        key, value = key.strip(), value.strip()
        if value.startswith("[") and value.endswith("]"):
            items = [v.strip().strip("'\"") for v in value[1:-1].split(",")]
            metadata[key] = [i for i in items if i]
        elif value.lower() in ("true", "false"):
            metadata[key] = value.lower() == "true"
        elif value.isdigit():
            metadata[key] = int(value)
        else:
            try:
                metadata[key] = float(value)
            except ValueError:
                metadata[key] = value

    return metadata, content


class PromptRegistry:
    """Central registry for Horae's prompt templates."""

    def __init__(self, prompts_dir: Path | None = None, hot_reload: bool = False):
        """Initialize the registry.

        Args:
            prompts_dir: Override for the templates directory
            hot_reload: If True, re-read files on every get() call
        """
        self._prompts_dir = prompts_dir or _TEMPLATES_DIR
        self._hot_reload = hot_reload
        self._cache: dict[str, PromptVersion] = {}
        self._discover()

    def _discover(self) -> None:
        if not self._prompts_dir.exists():
            logger.warning(f"Prompts directory not found: {self._prompts_dir}")
            return

        count = 0
        for md_file in sorted(self._prompts_dir.glob("*.md")):
            self._load_file(md_file.stem, md_file)
            count += 1
        logger.debug(f"[PromptRegistry] Discovered {count} prompt files")

    def _load_file(self, name: str, path: Path) -> PromptVersion:
        """Load a single prompt file, parse frontmatter, compute hash."""
        raw = path.read_text(encoding="utf-8")
        metadata, content = _parse_frontmatter(raw)

        version = PromptVersion(
            name=name,
            content=content,
            content_hash=_compute_hash(content),
            source=f"file:{path.name}",
            metadata=metadata,
        )
        self._cache[name] = version
        return version

    def get(self, name: str) -> PromptVersion:
        """Get a prompt by name.

        Raises:
            KeyError: If prompt name not found
        """
        if self._hot_reload:
            path = self._prompts_dir / f"{name}.md"
            if path.exists():
                return self._load_file(name, path)

        if name in self._cache:
            return self._cache[name]

        raise KeyError(
            f"Prompt '{name}' not found. "
            f"Available: {sorted(self._cache.keys())}"
        )

    def get_content(self, name: str, fallback: str = "") -> str:
        try:
            return self.get(name).content
        except KeyError:
            if fallback:
                return fallback
            raise

    def get_composed(self, name: str, **fragments: str) -> PromptVersion:
        """Load a base prompt and replace ``{fragment}`` placeholders.

        Returns:
            New PromptVersion with composed content and fresh hash
        """
        base = self.get(name)
        composed_content = base.content

        for key, value in fragments.items():
            composed_content = composed_content.replace("{" + key + "}", value)

        unfilled = re.findall(r"(?<!\{)\{(\w+)\}(?!\})", composed_content)
        if unfilled:
            logger.debug(f"[PromptRegistry] Unfilled placeholders in '{name}': {unfilled}")

        return PromptVersion(
            name=f"{name}:composed",
            content=composed_content,
            content_hash=_compute_hash(composed_content),
            source=base.source,
            metadata=base.metadata,
        )

    def list_names(self) -> list[str]:
        return sorted(self._cache.keys())


# ─── Singleton ───────────────────────────────────────────────────────────────

_registry: PromptRegistry | None = None


def get_registry() -> PromptRegistry:
    """Get the global PromptRegistry instance.

    Creates on first call. Uses hot_reload=True when DEBUG is set.
    """
    global _registry
    if _registry is None:
        _registry = PromptRegistry(hot_reload=Config.is_debug())
    return _registry


def reset_registry() -> None:
    """Reset the global registry (for testing)."""
    global _registry
    _registry = None
