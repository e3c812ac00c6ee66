"""
Centralized logging configuration for Horae.

Call setup_logging() once at startup (the command-line tool does this
before loading a chat). Every source module then gets its own logger via:

    import logging
    logger = logging.getLogger(__name__)

Level mapping:
  DEBUG   – fold and replay details, per-cell table writes
  INFO    – compression and rebuild milestones, history scans
  WARNING – skipped tables, refused compressions, parse fallbacks
  ERROR   – failed generations, unreadable settings
"""

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure root logger and quiet noisy third-party loggers."""
    fmt = "[%(name)s] %(message)s"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt,
        stream=sys.stdout,
        force=True,
    )

    # Quiet noisy third-party loggers
    for name in (
        "httpx",
        "httpcore",
        "openai",
    ):
        logging.getLogger(name).setLevel(logging.WARNING)
