"""Shared helpers."""

from .tasks import safe_create_task

__all__ = ["safe_create_task"]
