"""OpenAI-compatible chat completion provider."""

import logging
from typing import Optional

from .provider import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """Any endpoint speaking the OpenAI chat-completions protocol.

    Uses the async client so that cancelling the awaiting task closes the
    HTTP stream; compression relies on that for its cancel action.
    """

    def __init__(self, api_key: str, default_model: Optional[str] = None, base_url: Optional[str] = None):
        self.base_url = (base_url or "").rstrip("/") or None
        super().__init__(api_key=api_key, default_model=default_model)

    @property
    def name(self) -> str:
        return "openai"

    def get_default_model(self) -> str:
        return "gpt-4o-mini"

    def _init_client(self):
        """Initialize the OpenAI client."""
        import openai
        self._client = openai.AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate a text completion, collecting the streamed response."""
        self._ensure_client()

        model_name = model or self.default_model

        full_messages = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(messages)

        kwargs = {
            "model": model_name,
            "messages": full_messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        async def _stream_and_collect():
            stream = await self._client.chat.completions.create(**kwargs)
            full_text = ""
            final_usage = None
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    full_text += chunk.choices[0].delta.content
                # Capture usage from final chunk
                if getattr(chunk, "usage", None):
                    final_usage = chunk.usage
            return full_text, final_usage

        try:
            full_text, final_usage = await self._call_with_retry(_stream_and_collect)
        except Exception as e:
            raise RuntimeError(f"Completion failed for {model_name} at {self.base_url or 'api.openai.com'}: {e}") from e

        usage = {}
        if final_usage:
            usage = {
                "prompt_tokens": final_usage.prompt_tokens,
                "completion_tokens": final_usage.completion_tokens,
                "total_tokens": final_usage.total_tokens,
            }
            logger.debug(f"{model_name}: {usage['total_tokens']} tokens")

        return LLMResponse(content=full_text, model=model_name, usage=usage)
