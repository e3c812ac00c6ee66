"""Core engine: deltas, parsing, folding and the host transcript."""

from .delta import MessageDelta, SummaryEntry, CustomTable, TableContribution
from .parser import parse_message, strip_tags, inject_tags
from .folder import AggregateState, fold
from .host import ChatHost, ChatMessage, InMemoryChatHost
from .store import DeltaStore

__all__ = [
    "MessageDelta", "SummaryEntry", "CustomTable", "TableContribution",
    "parse_message", "strip_tags", "inject_tags",
    "AggregateState", "fold",
    "ChatHost", "ChatMessage", "InMemoryChatHost",
    "DeltaStore",
]
