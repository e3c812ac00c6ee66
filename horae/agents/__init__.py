"""Model-backed helpers: event summaries and legacy message annotation."""

from .base import BaseAgent
from .summarizer import SummarizerAgent
from .analyzer import AnalyzerAgent

__all__ = ["BaseAgent", "SummarizerAgent", "AnalyzerAgent"]
