"""
Content source registry.

Builds strongly-typed SourceConfig objects for every cache key from settings,
plus the optional JSON feed-list override for the news aggregator.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from app.config import Settings
from app.core.logging import get_logger

logger = get_logger().bind(module="content_sources")

NEWS_KEY = "news"
TRACKS_STREAM_KEY = "tracks-stream"
TRACKS_FAVORITES_KEY = "tracks-favorites"

SOURCE_KIND_RSS = "rss"
SOURCE_KIND_TRACKS = "tracks"


class ConfigError(Exception):
    """Malformed feed-list override; callers fall back to the built-in defaults."""


@dataclass(frozen=True)
class FeedConfig:
    """Single RSS feed of the news aggregator."""

    name: str
    url: str


@dataclass(frozen=True)
class SourceConfig:
    """Static description of one upstream content stream."""

    key: str
    name: str
    kind: str
    endpoint: str = ""
    credentials: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)
    page_size: int = 100
    # Minimum post-filter items wanted before pagination stops. None = single page.
    target_count: Optional[int] = None
    paginate: bool = False
    max_pages: int = 1
    min_duration_seconds: Optional[float] = None
    excluded_content_types: Tuple[str, ...] = ()
    feeds: Tuple[FeedConfig, ...] = ()

    @property
    def has_filter(self) -> bool:
        return self.min_duration_seconds is not None or bool(self.excluded_content_types)


DEFAULT_FEEDS: Tuple[FeedConfig, ...] = (
    FeedConfig(name="Hacker News", url="https://news.ycombinator.com/rss"),
    FeedConfig(name="The Verge", url="https://www.theverge.com/rss/index.xml"),
    FeedConfig(name="TechCrunch", url="https://techcrunch.com/feed/"),
)


def _is_fetchable_url(url: str) -> bool:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


def parse_feed_configs(data: Any) -> Tuple[FeedConfig, ...]:
    """Validate a decoded feed-list document: a non-empty array of {name, url}."""
    if not isinstance(data, list) or not data:
        raise ConfigError("feed list must be a non-empty JSON array")

    feeds: List[FeedConfig] = []
    for index, raw in enumerate(data):
        if not isinstance(raw, dict):
            raise ConfigError(f"feed #{index} is not an object")
        name = raw.get("name")
        url = raw.get("url")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError(f"feed #{index} has no name")
        if not isinstance(url, str) or not _is_fetchable_url(url.strip()):
            raise ConfigError(f"feed #{index} has an invalid url: {url!r}")
        feeds.append(FeedConfig(name=name.strip(), url=url.strip()))
    return tuple(feeds)


def load_feed_configs(path: Optional[Path] = None) -> Tuple[FeedConfig, ...]:
    """
    Load the feed list override, falling back to DEFAULT_FEEDS.

    A missing file is the normal case; an unreadable or malformed one is
    logged and ignored so the aggregator keeps running.
    """
    if path is None:
        return DEFAULT_FEEDS
    cfg_path = Path(path)
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("news_feeds_override_not_found", path=str(cfg_path))
        return DEFAULT_FEEDS
    except OSError as exc:
        logger.error("news_feeds_override_read_error", path=str(cfg_path), error=str(exc))
        return DEFAULT_FEEDS

    try:
        feeds = parse_feed_configs(json.loads(text))
    except (json.JSONDecodeError, ConfigError) as exc:
        logger.error("news_feeds_override_invalid", path=str(cfg_path), error=str(exc))
        return DEFAULT_FEEDS

    logger.info("news_feeds_override_loaded", path=str(cfg_path), feeds=len(feeds))
    return feeds


def _track_credentials(settings: Settings) -> Dict[str, str]:
    creds = {
        "authorization": settings.SC_AUTH_TOKEN or "",
        "client_id": settings.SC_CLIENT_ID or "",
        "sc_a_id": settings.SC_A_ID or "",
        "user_id": settings.SC_USER_ID or "",
    }
    missing = [name for name, value in creds.items() if not value]
    if missing:
        logger.warning("track_source_credential_missing", missing=missing)
    return creds


def build_source_configs(
    settings: Settings,
    *,
    feeds: Optional[Sequence[FeedConfig]] = None,
) -> Dict[str, SourceConfig]:
    """Return every configured content stream keyed by cache key."""
    if feeds is None:
        feeds = load_feed_configs(Path(settings.NEWS_FEEDS_FILE))
    creds = _track_credentials(settings)
    base = settings.SC_API_BASE.rstrip("/")

    news = SourceConfig(
        key=NEWS_KEY,
        name="News",
        kind=SOURCE_KIND_RSS,
        feeds=tuple(feeds),
    )
    stream = SourceConfig(
        key=TRACKS_STREAM_KEY,
        name="SoundCloud Stream",
        kind=SOURCE_KIND_TRACKS,
        endpoint=f"{base}/stream",
        credentials=creds,
        params={
            "promoted_playlist": "true",
            "app_version": settings.SC_APP_VERSION,
            "app_locale": "en",
        },
        page_size=settings.SC_PAGE_SIZE,
        target_count=settings.SC_TARGET_COUNT,
        paginate=True,
        max_pages=settings.SC_MAX_PAGES,
        min_duration_seconds=settings.SC_MIN_DURATION_SECONDS,
        excluded_content_types=("playlist",),
    )
    favorites = SourceConfig(
        key=TRACKS_FAVORITES_KEY,
        name="SoundCloud Favorites",
        kind=SOURCE_KIND_TRACKS,
        endpoint=f"{base}/users/{{user_id}}/track_likes",
        credentials=creds,
        params={"app_version": settings.SC_APP_VERSION, "app_locale": "en"},
        page_size=settings.SC_PAGE_SIZE,
    )
    return {cfg.key: cfg for cfg in (news, stream, favorites)}
