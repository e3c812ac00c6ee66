"""LLM provider package - direct endpoint or host connection."""

from .manager import LLMManager
from .provider import LLMProvider, LLMResponse
from .openai_provider import OpenAIProvider
from .host_provider import HostProvider

__all__ = [
    "LLMProvider", "LLMResponse", "LLMManager", "OpenAIProvider", "HostProvider",
]
