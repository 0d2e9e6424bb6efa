"""Runtime settings from the environment (and ``.env``).

Stored, admin-editable settings (server default tier, system free-use key)
live in the data directory instead; see ``Storage.get_system_settings``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from gamelab.models import Tier

ROOT = Path(__file__).parent.parent
load_dotenv(ROOT / ".env")

DEFAULT_DATA_DIR = ROOT / "data"


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    default_ai_tier: Tier = "balanced"
    stream_buffer_size: int = 100
    stream_timeout: float = 300.0  # seconds before an unconsumed stream expires
    http_timeout: float = 120.0
    image_cache_max_age: float = 300.0
    openai_base_url: str = "https://api.openai.com/v1"
    mistral_base_url: str = "https://api.mistral.ai/v1"
    log_level: str = "INFO"


_ENV_VARS: dict[str, str] = {
    "DATA_DIR": "data_dir",
    "GAMELAB_DEFAULT_AI_TIER": "default_ai_tier",
    "GAMELAB_STREAM_BUFFER": "stream_buffer_size",
    "GAMELAB_STREAM_TIMEOUT": "stream_timeout",
    "GAMELAB_HTTP_TIMEOUT": "http_timeout",
    "GAMELAB_IMAGE_CACHE_MAX_AGE": "image_cache_max_age",
    "OPENAI_BASE_URL": "openai_base_url",
    "MISTRAL_BASE_URL": "mistral_base_url",
    "LOG_LEVEL": "log_level",
}


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables; unset ones keep defaults."""
    source = os.environ if env is None else env
    values = {field: source[var] for var, field in _ENV_VARS.items() if source.get(var)}
    return Settings.model_validate(values)
