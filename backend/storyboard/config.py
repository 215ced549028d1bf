"""
Runtime settings loaded from the environment (and `.env` via python-dotenv).
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    gemini_api_key: str | None = None
    gemini_text_model: str = "gemini-2.5-flash"
    gemini_vision_model: str = "gemini-2.5-flash"

    runware_api_key: str | None = None
    runware_api_url: str = "https://api.runware.ai/v1"
    runware_timeout_seconds: float = 120.0

    r2_endpoint: str | None = None
    r2_access_key_id: str | None = None
    r2_secret_access_key: str | None = None
    r2_bucket: str = "storyboard"
    r2_public_url: str | None = None
    r2_presigned_expires_seconds: int = 3600

    image_probe_timeout_seconds: float = 30.0

    cors_origin_regex: str = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"


def get_settings() -> Settings:
    """
    Build settings from the current environment.

    Read on every call so tests can monkeypatch env vars without reloading
    modules.
    """
    values = {}
    for name in Settings.model_fields:
        raw = os.getenv(name.upper())
        if raw not in (None, ""):
            values[name] = raw
    return Settings(**values)
