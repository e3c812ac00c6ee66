"""Configuration management for Horae."""

import os
from pathlib import Path

from dotenv import load_dotenv


# Load environment variables from .env file
def _find_env_file() -> Path | None:
    """Find the .env file, searching up the directory tree."""
    current = Path(__file__).parent
    for _ in range(5):  # Search up to 5 levels
        env_path = current / ".env"
        if env_path.exists():
            return env_path
        current = current.parent
    return None


_env_file = _find_env_file()
if _env_file:
    load_dotenv(_env_file)


class Config:
    """Application configuration from environment variables."""

    # Settings file (defaults to ./settings.json next to the working directory)
    HORAE_SETTINGS_PATH: str = os.getenv("HORAE_SETTINGS_PATH", "")

    # Direct OpenAI-compatible endpoint defaults (settings override these)
    HORAE_API_URL: str = os.getenv("HORAE_API_URL", "")
    HORAE_API_KEY: str = os.getenv("HORAE_API_KEY", "")
    HORAE_MODEL: str = os.getenv("HORAE_MODEL", "")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Debug (prompt templates are re-read on every access)
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    @classmethod
    def validate(cls) -> list[str]:
        """Validate configuration, return list of issues."""
        issues = []

        if cls.HORAE_API_URL and not cls.HORAE_MODEL:
            issues.append("HORAE_API_URL is set but HORAE_MODEL is empty")
        if cls.HORAE_API_URL and not cls.HORAE_API_URL.startswith(("http://", "https://")):
            issues.append(f"HORAE_API_URL must be an http(s) URL, got '{cls.HORAE_API_URL}'")
        if cls.LOG_LEVEL.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            issues.append(f"Unknown LOG_LEVEL '{cls.LOG_LEVEL}'")

        return issues

    @classmethod
    def is_debug(cls) -> bool:
        """Check if debug mode is enabled."""
        return cls.DEBUG

    @classmethod
    def get_settings_path(cls) -> Path:
        """Get the settings file location."""
        if cls.HORAE_SETTINGS_PATH:
            return Path(cls.HORAE_SETTINGS_PATH)
        return Path.cwd() / "settings.json"


# Singleton config instance
config = Config()
