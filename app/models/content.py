from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class Item(BaseModel):
    """
    Canonical, normalized content unit shared by every upstream source.

    Instances are frozen: the post-processor only selects and reorders them,
    and derived labels are refreshed by copying, never by assignment.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    link: str
    description: str = ""
    source_name: str
    # Always populated; falls back to fetch time when the upstream value is unparseable.
    published_at: datetime
    duration_seconds: Optional[float] = None
    elapsed_label: str = ""
    duration_label: str = ""
    thumbnail_url: str = ""
    content_type: str = "article"
    artist: Optional[str] = None


class CacheEntry(BaseModel):
    """Snapshot of one content stream; replaced wholesale on every refresh."""

    model_config = ConfigDict(frozen=True)

    key: str
    items: Tuple[Item, ...] = ()
    last_updated: datetime


class CacheState(str, Enum):
    MISSING = "missing"
    FRESH = "fresh"
    STALE = "stale"


class ContentListResponse(BaseModel):
    """Paginated response for the /api content endpoints."""

    key: str
    items: List[Item]
    total: int
    limit: int
    offset: int
    last_updated: Optional[datetime] = None
    state: CacheState
