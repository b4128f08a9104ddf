"""Application configuration with JSON file overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from pydantic_settings import BaseSettings

# Config file location (can be overridden by CONFIG_DIR env var)
CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/app/config"))
SETTINGS_FILE = CONFIG_DIR / "settings.json"


class OllamaConfig(BaseModel):
    host: str = "http://localhost:11434"
    model: str = "llama3"
    timeout: int = 20


class Settings(BaseSettings):
    # Discovery settings
    discovery_timeout: float = 5.0
    discover_on_startup: bool = True

    # Cast session settings
    cast_connect_timeout: float = 10.0
    cast_load_timeout: float = 10.0

    # yt-dlp settings (stream resolution + search)
    ytdlp_path: str = "yt-dlp"
    stream_resolve_timeout: float = 15.0
    search_limit: int = 5

    # Ollama settings (trivia blurbs)
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llama3"
    ollama_timeout: int = 20
    describe_enabled: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def ollama(self) -> OllamaConfig:
        return OllamaConfig(
            host=self.ollama_host,
            model=self.ollama_model,
            timeout=self.ollama_timeout,
        )


_settings: Settings | None = None


def load_settings_from_file() -> dict[str, Any]:
    """Load settings from JSON file if it exists."""
    if SETTINGS_FILE.exists():
        try:
            with open(SETTINGS_FILE) as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            pass
    return {}


def get_settings() -> Settings:
    """Get settings, merging env vars with JSON file (JSON takes precedence)."""
    global _settings
    if _settings is None:
        # Load base settings from env
        _settings = Settings()

        # Override with JSON file settings
        file_settings = load_settings_from_file()
        if file_settings:
            for key, value in file_settings.items():
                if hasattr(_settings, key):
                    setattr(_settings, key, value)

    return _settings

