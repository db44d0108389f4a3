"""Engine settings (backend connection, model preference, fallback tables, styles).

Settings are an explicit object handed to SessionEngine at construction;
nothing reads process-wide state after startup.

Stored as {data_dir}/config.json. load_settings() returns defaults merged
with stored values; the API key and provider URL fall back to the
PROTAGONIST_API_KEY / PROTAGONIST_PROVIDER_URL environment variables (the
app loads .env via python-dotenv). save_settings() applies partial updates:
fallback tables merged key-by-key, scalars overwritten.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from protagonist.fallback import IMAGE_MODEL_FALLBACKS, TEXT_MODEL_FALLBACKS

DEFAULT_WRITING_RULES = (
    "Keep a novelistic narrative voice. Use the five senses and the iceberg "
    "principle: show actions and sensory detail rather than stating emotions. "
    "Prefer plain, natural phrasing, plenty of dialogue and inner thought, and "
    "weave any game-system mechanics naturally into the world."
)


class Settings(BaseModel):
    provider_url: str = "http://localhost:8080"
    api_key: str = ""
    text_model: str = "gemini-2.5-pro"
    image_model: str = "gemini-2.5-flash-image-preview"
    planner_model: str = "gemini-2.5-flash"
    text_fallbacks: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in TEXT_MODEL_FALLBACKS.items()}
    )
    image_fallbacks: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in IMAGE_MODEL_FALLBACKS.items()}
    )
    custom_prompt: str = DEFAULT_WRITING_RULES
    avatar_style: str = "anime"
    custom_avatar_style: str = ""
    background_style: str = "anime"
    auto_save_gallery: bool = False
    backfill_avatars: bool = True
    scene_image_per_turn: bool = False
    request_timeout: float = 120.0


_TABLE_KEYS = ("text_fallbacks", "image_fallbacks")


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def load_settings(data_dir: Path) -> Settings:
    """Read settings, returning defaults merged with stored values."""
    settings = Settings()
    path = _config_path(data_dir)
    if path.is_file():
        stored = json.loads(path.read_text())
        settings = _merge(settings, stored)
    if not settings.api_key:
        settings.api_key = os.getenv("PROTAGONIST_API_KEY", "")
    if "provider_url" not in _stored_keys(path):
        settings.provider_url = os.getenv("PROTAGONIST_PROVIDER_URL", settings.provider_url)
    return settings


def save_settings(data_dir: Path, fields: dict[str, Any]) -> Settings:
    """Merge fields into stored settings and persist. Returns effective settings.

    Only keys that were ever set are written, so unset values keep following
    defaults and the environment. Raises pydantic.ValidationError for an
    invalid value, before anything is written.
    """
    path = _config_path(data_dir)
    stored: dict[str, Any] = json.loads(path.read_text()) if path.is_file() else {}
    known = Settings.model_fields
    for key, value in fields.items():
        if key not in known:
            continue
        if key in _TABLE_KEYS and isinstance(value, dict):
            stored[key] = {**stored.get(key, {}), **value}
        else:
            stored[key] = value
    _merge(Settings(), stored)  # validate only
    data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(stored, indent=2))
    return load_settings(data_dir)


def _merge(settings: Settings, fields: dict[str, Any]) -> Settings:
    data = settings.model_dump()
    for key, value in fields.items():
        if key not in data:
            continue
        if key in _TABLE_KEYS and isinstance(value, dict):
            data[key].update(value)
        else:
            data[key] = value
    return Settings.model_validate(data)


def _stored_keys(path: Path) -> set[str]:
    if not path.is_file():
        return set()
    return set(json.loads(path.read_text()))
