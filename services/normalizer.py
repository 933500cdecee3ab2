from __future__ import annotations

import calendar
import hashlib
import re
from datetime import datetime, timezone
from html import unescape
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import ValidationError

from app.core.logging import get_logger
from app.models.content import Item
from app.models.content_sources import SOURCE_KIND_RSS, SourceConfig
from services.source_clients import RawRecord

logger = get_logger().bind(module="normalizer")

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")

# Tried in order, first successful parse wins. Entries flagged True carry a
# zone name ("GMT", "EST") which is swapped for its numeric offset first.
_TIMESTAMP_FORMATS: Tuple[Tuple[str, bool], ...] = (
    ("%a, %d %b %Y %H:%M:%S %z", False),  # RFC 1123, numeric zone
    ("%a, %d %b %Y %H:%M:%S %z", True),   # RFC 1123, named zone
    ("%d %b %y %H:%M %z", False),         # RFC 822, numeric zone
    ("%d %b %y %H:%M %z", True),          # RFC 822, named zone
    ("%Y-%m-%dT%H:%M:%SZ", False),        # ISO 8601, UTC designator
    ("%Y-%m-%dT%H:%M:%S%z", False),       # ISO 8601, offset
    ("%Y-%m-%dT%H:%M:%S.%f%z", False),    # ISO 8601, fractional seconds
)

_NAMED_ZONES: Dict[str, str] = {
    "UT": "+0000", "UTC": "+0000", "GMT": "+0000", "Z": "+0000",
    "EST": "-0500", "EDT": "-0400",
    "CST": "-0600", "CDT": "-0500",
    "MST": "-0700", "MDT": "-0600",
    "PST": "-0800", "PDT": "-0700",
    "CET": "+0100", "CEST": "+0200",
}


class NormalizationError(Exception):
    """
    A raw record that cannot become an Item at all. Logged and skipped by the
    refresh; never aborts it.
    """

    def __init__(self, message: str, record: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.record = dict(record or {})


# -------- Timestamps ---------------------------------------------------------

def _swap_zone_name(value: str) -> Optional[str]:
    head, _, zone = value.rpartition(" ")
    offset = _NAMED_ZONES.get(zone.upper())
    if not head or offset is None:
        return None
    return f"{head} {offset}"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an upstream timestamp into an aware UTC datetime, or None."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    for fmt, named_zone in _TIMESTAMP_FORMATS:
        candidate = _swap_zone_name(text) if named_zone else text
        if candidate is None:
            continue
        try:
            parsed = datetime.strptime(candidate, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def _struct_time_to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def resolve_published_at(value: Optional[str], now: datetime, *, fallback_struct: Any = None, source: str = "") -> datetime:
    published = parse_timestamp(value) or _struct_time_to_datetime(fallback_struct)
    if published is None:
        logger.info("timestamp_unparseable", value=value, source=source)
        return now
    return published


# -------- Derived labels -----------------------------------------------------

def format_elapsed(published_at: datetime, now: datetime) -> str:
    """Bucket the age of an item; truncates, never rounds."""
    seconds = int((now - published_at).total_seconds())
    if seconds >= 24 * 3600:
        return f"{seconds // (24 * 3600)} days ago"
    if seconds >= 3600:
        return f"{seconds // 3600} hours ago"
    if seconds >= 60:
        return f"{seconds // 60} minutes ago"
    return "just now"


def format_duration(duration_ms: Optional[int]) -> str:
    """3_900_000 -> "1h  5m", 1_750_001 -> "29m"."""
    if duration_ms is None or duration_ms < 0:
        return ""
    minutes = duration_ms // 1000 // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60:2d}m"
    return f"{minutes:02d}m"


# -------- Thumbnails ---------------------------------------------------------

def extract_thumbnail(markup: Optional[str]) -> str:
    """
    Return the src of the first <img> tag in an HTML fragment, or "".

    Handles double-quoted, single-quoted and unquoted attribute values, and
    rewrites protocol-relative URLs (//host/path) to https. Deliberately not
    an HTML parser.
    """
    if not markup:
        return ""
    lowered = markup.lower()
    img_start = lowered.find("<img")
    if img_start == -1:
        return ""
    tag_end = lowered.find(">", img_start)
    if tag_end == -1:
        tag_end = len(markup)
    src_start = lowered.find("src=", img_start, tag_end)
    if src_start == -1:
        return ""

    pos = src_start + len("src=")
    if pos >= len(markup):
        return ""

    quote = markup[pos]
    if quote in ("\"", "'"):
        end = markup.find(quote, pos + 1)
        if end == -1:
            return ""
        url = markup[pos + 1:end]
    else:
        end = pos
        while end < len(markup) and not markup[end].isspace() and markup[end] != ">":
            end += 1
        url = markup[pos:end]

    url = url.strip()
    if url.startswith("//"):
        url = "https:" + url
    return url


# -------- Records ------------------------------------------------------------

def _strip_html(value: str) -> str:
    text = _HTML_TAG_RE.sub(" ", value or "")
    text = unescape(text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def _rss_identity(data: Mapping[str, Any], title: str, published: str) -> str:
    for key in ("id", "guid", "link"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return hashlib.sha1(f"{title}|{published}".encode("utf-8")).hexdigest()


def normalize_rss_record(record: RawRecord, now: datetime) -> Item:
    data = record.data
    title = str(data.get("title") or "").strip()
    link = str(data.get("link") or "").strip()
    description = str(data.get("summary") or data.get("description") or "")
    published_raw = data.get("published") or data.get("updated") or ""

    published_at = resolve_published_at(
        published_raw,
        now,
        fallback_struct=data.get("published_parsed") or data.get("updated_parsed"),
        source=record.source_name,
    )
    return Item(
        id=_rss_identity(data, title, str(published_raw)),
        title=title or "Untitled",
        link=link,
        description=_strip_html(description),
        source_name=record.source_name,
        published_at=published_at,
        elapsed_label=format_elapsed(published_at, now),
        thumbnail_url=extract_thumbnail(description),
        content_type="article",
    )


def _content_type(entry_type: str, has_track: bool) -> str:
    if "playlist" in entry_type:
        return "playlist"
    return "track" if has_track else entry_type or "unknown"


def normalize_track_record(record: RawRecord, now: datetime) -> Item:
    data = record.data
    entry_type = str(data.get("type") or data.get("kind") or "").lower()
    track = data.get("track")
    playlist = data.get("playlist")
    body = track if isinstance(track, dict) else playlist if isinstance(playlist, dict) else None
    if body is None:
        raise NormalizationError("entry has neither a track nor a playlist", data)
    if body.get("id") is None:
        raise NormalizationError("entry has no id", data)

    content_type = _content_type(entry_type, isinstance(track, dict))
    item_id = str(body["id"]) if content_type != "playlist" else f"playlist:{body['id']}"

    published_raw = body.get("created_at") or data.get("created_at")
    published_at = resolve_published_at(published_raw, now, source=record.source_name)

    duration_ms = body.get("duration")
    if not isinstance(duration_ms, int) or isinstance(duration_ms, bool):
        duration_ms = None

    user = body.get("user") if isinstance(body.get("user"), dict) else {}
    return Item(
        id=item_id,
        title=str(body.get("title") or "Untitled"),
        link=str(body.get("permalink_url") or ""),
        description=str(body.get("description") or ""),
        source_name=record.source_name,
        published_at=published_at,
        duration_seconds=duration_ms / 1000 if duration_ms is not None else None,
        elapsed_label=format_elapsed(published_at, now),
        duration_label=format_duration(duration_ms),
        thumbnail_url=str(body.get("artwork_url") or ""),
        content_type=content_type,
        artist=str(user["username"]) if user.get("username") else None,
    )


def normalize(record: RawRecord, config: SourceConfig, *, now: Optional[datetime] = None) -> Item:
    """Map one raw upstream record onto the canonical Item."""
    now = now or datetime.now(timezone.utc)
    try:
        if config.kind == SOURCE_KIND_RSS:
            return normalize_rss_record(record, now)
        return normalize_track_record(record, now)
    except ValidationError as exc:
        raise NormalizationError(f"record does not fit Item: {exc.error_count()} invalid field(s)", record.data) from exc


def relabel(item: Item, now: datetime) -> Item:
    """Copy of ``item`` with the elapsed label recomputed against ``now``."""
    label = format_elapsed(item.published_at, now)
    if label == item.elapsed_label:
        return item
    return item.model_copy(update={"elapsed_label": label})
