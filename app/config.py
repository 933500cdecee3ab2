# app/config.py
from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env sits next to the app/ package (project root)
ENV_FILE = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_FILE, override=False)  # pre-load into the process environment


class Settings(BaseSettings):
    # ---- App ----
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    CORS_ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )

    # ---- Cache ----
    CACHE_BACKEND: Literal["file", "memory"] = "file"
    CACHE_DIR: str = "cache"
    CACHE_TTL_SECONDS: int = 3600
    REFRESH_INTERVAL_SECONDS: int = 3600
    REFRESH_ON_STARTUP: bool = False
    # Stale reads answer immediately and refresh in the background.
    # Off = refresh inline before answering (slower, always fresh).
    SERVE_STALE_WHILE_REFRESH: bool = True

    # ---- Upstream HTTP ----
    HTTP_TIMEOUT_S: float = 15.0

    # ---- News (RSS) ----
    NEWS_FEEDS_FILE: str = "news-feeds.json"

    # ---- Track listing (SoundCloud) ----
    # Not required at class level: public endpoints may still partially work,
    # missing values are reported as warnings when sources are built.
    SC_API_BASE: str = "https://api-v2.soundcloud.com"
    SC_AUTH_TOKEN: Optional[str] = None
    SC_CLIENT_ID: Optional[str] = None
    SC_A_ID: Optional[str] = None
    SC_USER_ID: str = "141564746"
    SC_APP_VERSION: str = "1731681989"
    SC_PAGE_SIZE: int = 100
    SC_TARGET_COUNT: int = 100
    SC_MAX_PAGES: int = 20
    SC_MIN_DURATION_SECONDS: float = 1750.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


def get_settings() -> Settings:
    return settings
