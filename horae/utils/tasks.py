"""
Fire-and-forget tasks for the session's follow-up work.

Host event handlers schedule follow-up work (the automatic compression
check) without awaiting it; a bare ``asyncio.create_task()`` would lose
any exception that work raises.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


def safe_create_task(coro, *, name: str = None) -> asyncio.Task:
    """Schedule ``coro`` so a failure is logged instead of lost.

    Used for the automatic compression check after a message arrives;
    ``name`` shows up in the failure log line.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task) -> None:
    """Log what a finished background task raised, if anything."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error(
            "Background task '%s' failed: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
