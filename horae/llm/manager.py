"""LLM Manager - chooses between the direct endpoint and the host connection."""

import logging
from typing import Dict, Optional, Tuple

from ..core.host import ChatHost
from ..settings import SettingsStore, get_settings_store
from .host_provider import HostProvider
from .openai_provider import OpenAIProvider
from .provider import LLMProvider

logger = logging.getLogger(__name__)


class LLMManager:
    """Factory for the provider used by summary and analysis requests.

    When the settings enable a direct endpoint and it is fully configured
    (url, key, model) requests go there; otherwise they go through the
    chat host. Providers are cached per endpoint so the HTTP client is
    reused between calls.
    """

    def __init__(self, host: Optional[ChatHost] = None, settings_store: Optional[SettingsStore] = None):
        self._host = host
        self._store = settings_store or get_settings_store()
        self._providers: Dict[Tuple[str, str, str], LLMProvider] = {}

    @property
    def host(self) -> Optional[ChatHost]:
        return self._host

    @host.setter
    def host(self, value: Optional[ChatHost]) -> None:
        self._host = value
        self._providers = {k: v for k, v in self._providers.items() if k[0] != "host"}

    def uses_direct_endpoint(self) -> bool:
        endpoint = self._store.endpoint()
        return endpoint.use_direct and self._store.is_endpoint_configured()

    def get_provider(self) -> LLMProvider:
        """Get the provider for the current settings.

        Raises:
            ValueError: when neither a direct endpoint nor a host is available
        """
        if self.uses_direct_endpoint():
            endpoint = self._store.endpoint()
            key = ("openai", endpoint.url, endpoint.model)
            if key not in self._providers:
                logger.info(f"Using direct endpoint {endpoint.url} ({endpoint.model})")
                self._providers[key] = OpenAIProvider(
                    api_key=self._store.get_api_key(),
                    default_model=endpoint.model,
                    base_url=endpoint.url,
                )
            return self._providers[key]

        if self._store.endpoint().use_direct:
            logger.warning("Direct endpoint enabled but incomplete (url, key and model are required); using host")
        if self._host is None:
            raise ValueError("No generation backend: configure a direct endpoint or attach a chat host")
        key = ("host", "", "")
        if key not in self._providers:
            self._providers[key] = HostProvider(self._host)
        return self._providers[key]

    def get_provider_and_model(self) -> Tuple[LLMProvider, str]:
        provider = self.get_provider()
        return provider, provider.default_model

    def clear_cache(self) -> None:
        """Forget cached providers (after endpoint settings change)."""
        self._providers = {}
