"""Settings persistence store with encrypted API key support."""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..config import Config
from .crypto import decrypt_api_key, encrypt_api_key, is_key_configured, mask_api_key
from .models import EndpointSettings, HoraeSettings

logger = logging.getLogger(__name__)


class SettingsStore:
    """Persists Horae settings to a JSON file.

    The endpoint API key is encrypted before storage and decrypted on
    demand; everything else is plain JSON.
    """

    def __init__(self, settings_path: Optional[Path] = None):
        """Initialize the settings store.

        Args:
            settings_path: Path to settings file. Defaults to ``Config.get_settings_path()``.
        """
        self._path = Path(settings_path) if settings_path else Config.get_settings_path()
        self._settings: Optional[HoraeSettings] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> HoraeSettings:
        """Load settings from file, or return defaults.

        A corrupt file is logged and replaced by defaults in memory; it is
        only overwritten on the next ``save``.
        """
        if self._settings is not None:
            return self._settings

        if self._path.exists():
            try:
                with open(self._path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._settings = HoraeSettings.model_validate(data)
            except (json.JSONDecodeError, ValidationError, OSError) as e:
                logger.warning(f"Could not load settings from {self._path}: {e}")
                self._settings = HoraeSettings()
        else:
            self._settings = HoraeSettings()

        return self._settings

    def reload(self) -> HoraeSettings:
        """Force reload settings from disk, bypassing the cache."""
        self._settings = None
        return self.load()

    def save(self, settings: Optional[HoraeSettings] = None) -> None:
        """Save settings to file.

        Args:
            settings: Settings to save. If None, saves current settings.
        """
        if settings:
            self._settings = settings

        if self._settings is None:
            self._settings = HoraeSettings()

        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(self._settings.model_dump(mode="json"), f, indent=2, ensure_ascii=False)

    def update(self, **kwargs) -> HoraeSettings:
        """Update specific settings fields; unknown names are ignored.

        Returns:
            Updated HoraeSettings
        """
        current = self.load()
        updated_data = current.model_dump()

        for key, value in kwargs.items():
            if key in updated_data:
                updated_data[key] = value
            else:
                logger.debug(f"Ignoring unknown setting '{key}'")

        self._settings = HoraeSettings.model_validate(updated_data)
        self.save()
        return self._settings

    def reset(self) -> HoraeSettings:
        """Reset to defaults, preserving global tables and the endpoint.

        Global tables hold user data shared by every conversation, so a
        reset of preferences must not drop them.
        """
        current = self.reload()
        self._settings = HoraeSettings(
            global_tables=current.global_tables,
            global_table_data=current.global_table_data,
            endpoint=current.endpoint,
        )
        self.save()
        return self._settings

    # API Key Management

    def set_api_key(self, key: str) -> None:
        """Set the direct endpoint key (will be encrypted)."""
        settings = self.load()
        settings.endpoint.api_key = encrypt_api_key(key) if key else ""
        self.save()

    def get_api_key(self) -> str:
        """Decrypted endpoint key, falling back to ``HORAE_API_KEY``."""
        encrypted = self.load().endpoint.api_key
        if not encrypted:
            return Config.HORAE_API_KEY
        try:
            return decrypt_api_key(encrypted)
        except ValueError as e:
            logger.error(f"Stored endpoint key is unusable: {e}")
            return ""

    def get_masked_key(self) -> str:
        return mask_api_key(self.load().endpoint.api_key)

    def endpoint(self) -> EndpointSettings:
        """Endpoint settings with environment defaults filled in."""
        stored = self.load().endpoint
        return EndpointSettings(
            use_direct=stored.use_direct,
            url=stored.url or Config.HORAE_API_URL,
            api_key=stored.api_key,
            model=stored.model or Config.HORAE_MODEL,
        )

    def is_endpoint_configured(self) -> bool:
        endpoint = self.endpoint()
        has_key = is_key_configured(endpoint.api_key) or bool(Config.HORAE_API_KEY)
        return bool(endpoint.url and endpoint.model and has_key)


# Global store instance
_store: Optional[SettingsStore] = None


def get_settings_store() -> SettingsStore:
    """Get the global settings store instance."""
    global _store
    if _store is None:
        _store = SettingsStore()
    return _store


def reset_settings_store():
    """Reset the global settings store (useful for testing)."""
    global _store
    _store = None
