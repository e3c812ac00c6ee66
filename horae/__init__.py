"""Horae - world-state tracking for long-running roleplay conversations."""

__version__ = "1.0.0"
