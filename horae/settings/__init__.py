"""Settings package for Horae."""

from .models import HoraeSettings, SummarySettings, EndpointSettings
from .store import SettingsStore, get_settings_store, reset_settings_store
from .crypto import encrypt_api_key, decrypt_api_key, mask_api_key

__all__ = [
    "HoraeSettings",
    "SummarySettings",
    "EndpointSettings",
    "SettingsStore",
    "get_settings_store",
    "reset_settings_store",
    "encrypt_api_key",
    "decrypt_api_key",
    "mask_api_key",
]
