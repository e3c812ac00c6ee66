"""Prompt management package for Horae.

Provides template loading, content-hash versioning and placeholder
composition for every instruction text sent to a model.
"""

from .registry import PromptRegistry, PromptVersion, get_registry, reset_registry

__all__ = ["PromptRegistry", "PromptVersion", "get_registry", "reset_registry"]
