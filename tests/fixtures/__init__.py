# tests/fixtures/__init__.py
"""
Test fixtures for the content cache tests.

Factory functions and fakes:
- make_item() / make_entry()
- make_track_entry()
- rss_document()
- RecordingLogger: stands in for a module-level structlog logger
- ScriptedClient: SourceClient returning canned pages
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from app.models.content import CacheEntry, Item
from app.models.content_sources import SourceConfig
from services.source_clients import RawRecord, SourceClient

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_item(
    item_id: str = "item-1",
    title: str = "Test Item",
    published_at: Optional[datetime] = None,
    duration_seconds: Optional[float] = None,
    content_type: str = "article",
    source_name: str = "Test Source",
) -> Item:
    """Factory function to create a normalized Item."""
    return Item(
        id=item_id,
        title=title,
        link=f"https://example.com/{item_id}",
        source_name=source_name,
        published_at=published_at or NOW,
        duration_seconds=duration_seconds,
        content_type=content_type,
    )


def make_entry(key: str = "news", items: Sequence[Item] = (), last_updated: Optional[datetime] = None) -> CacheEntry:
    """Factory function to create a CacheEntry snapshot."""
    return CacheEntry(key=key, items=tuple(items), last_updated=last_updated or NOW)


def make_track_entry(
    track_id: int = 1,
    duration_ms: int = 3_900_000,
    entry_type: str = "track",
    created_at: str = "2024-01-01T10:00:00Z",
    title: Optional[str] = None,
) -> Dict[str, Any]:
    """Factory function for one element of a track-listing ``collection``."""
    body = {
        "id": track_id,
        "title": title or f"Track {track_id}",
        "duration": duration_ms,
        "created_at": created_at,
        "permalink_url": f"https://soundcloud.com/artist/track-{track_id}",
        "artwork_url": f"https://i1.sndcdn.com/artworks-{track_id}-large.jpg",
        "user": {"username": "artist"},
    }
    field = "playlist" if "playlist" in entry_type else "track"
    return {"type": entry_type, "created_at": created_at, field: body}


def rss_document(items: Sequence[Tuple[str, str]], title: str = "Example RSS") -> str:
    """RSS 2.0 document with one <item> per (title, pubDate) pair."""
    parts = []
    for index, (item_title, pub_date) in enumerate(items):
        parts.append(
            f"""
        <item>
          <title>{item_title}</title>
          <link>https://example.com/{index}</link>
          <guid>https://example.com/{index}</guid>
          <description><![CDATA[<p>Body {index}</p>]]></description>
          <pubDate>{pub_date}</pubDate>
        </item>"""
        )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
    <rss version="2.0">
      <channel>
        <title>{title}</title>{"".join(parts)}
      </channel>
    </rss>
    """


class RecordingLogger:
    """Collects (level, event, fields) triples instead of printing JSON."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def bind(self, **_: Any) -> "RecordingLogger":
        return self

    def _record(self, level: str, event: str, **fields: Any) -> None:
        self.events.append((level, event, fields))

    def debug(self, event: str, **fields: Any) -> None:
        self._record("debug", event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._record("info", event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._record("warning", event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._record("error", event, **fields)

    def exception(self, event: str, **fields: Any) -> None:
        self._record("exception", event, **fields)

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [fields for _, name, fields in self.events if name == event]


Page = Union[List[Dict[str, Any]], Exception]


class ScriptedClient(SourceClient):
    """
    SourceClient that answers successive fetch_page calls from a script.

    Each script element is a list of raw record dicts or an exception to raise.
    Calls past the end of the script return an empty page.
    """

    def __init__(self, pages: Sequence[Page], source_name: str = "Scripted") -> None:
        super().__init__()
        self.pages = list(pages)
        self.source_name = source_name
        self.calls: List[Tuple[str, int, int]] = []
        self.closed = False

    async def fetch_page(self, config: SourceConfig, offset: int, page_size: int) -> List[RawRecord]:
        index = len(self.calls)
        self.calls.append((config.key, offset, page_size))
        if index >= len(self.pages):
            return []
        page = self.pages[index]
        if isinstance(page, Exception):
            raise page
        return [RawRecord(source_name=self.source_name, data=data) for data in page]

    async def aclose(self) -> None:
        self.closed = True
        await super().aclose()
