from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query

from app.deps.content import get_orchestrator
from app.models.content import ContentListResponse
from app.models.content_sources import NEWS_KEY, TRACKS_FAVORITES_KEY, TRACKS_STREAM_KEY
from services.cache_orchestrator import CacheOrchestrator, UnknownContentKey
from services.normalizer import relabel

router = APIRouter(
    prefix="/api",
    tags=["content"],
)


async def _resolve_content(
    orchestrator: CacheOrchestrator,
    key: str,
    *,
    limit: int,
    offset: int,
) -> ContentListResponse:
    try:
        entry, state = await orchestrator.get_entry(key)
    except UnknownContentKey as exc:
        raise HTTPException(status_code=404, detail=f"Unknown content key '{key}'.") from exc

    items = list(entry.items) if entry is not None else []
    now = datetime.now(timezone.utc)
    page = [relabel(item, now) for item in items[offset:offset + limit]]
    return ContentListResponse(
        key=key,
        items=page,
        total=len(items),
        limit=limit,
        offset=offset,
        last_updated=entry.last_updated if entry is not None else None,
        state=state,
    )


@router.get("/news", response_model=ContentListResponse)
async def get_news(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    orchestrator: CacheOrchestrator = Depends(get_orchestrator),
) -> ContentListResponse:
    return await _resolve_content(orchestrator, NEWS_KEY, limit=limit, offset=offset)


@router.get("/soundcloud/stream", response_model=ContentListResponse)
async def get_track_stream(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    orchestrator: CacheOrchestrator = Depends(get_orchestrator),
) -> ContentListResponse:
    return await _resolve_content(orchestrator, TRACKS_STREAM_KEY, limit=limit, offset=offset)


@router.get("/soundcloud/favorites", response_model=ContentListResponse)
async def get_track_favorites(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    orchestrator: CacheOrchestrator = Depends(get_orchestrator),
) -> ContentListResponse:
    return await _resolve_content(orchestrator, TRACKS_FAVORITES_KEY, limit=limit, offset=offset)


@router.get("/content/{key}", response_model=ContentListResponse)
async def get_content(
    key: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    orchestrator: CacheOrchestrator = Depends(get_orchestrator),
) -> ContentListResponse:
    return await _resolve_content(orchestrator, key.strip().lower(), limit=limit, offset=offset)
