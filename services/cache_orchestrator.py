"""
Cache orchestrator: the get-or-refresh control flow for every content key.

Per key the cache is Missing (never populated), Fresh, or Stale (older than
the TTL). Reads on a Missing key refresh inline; reads on a Stale key either
serve the stale snapshot while a background refresh runs, or refresh inline
when stale-while-refresh is disabled. The scheduler refreshes every key on
its own interval. At most one refresh per key is in flight; concurrent
callers share it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from app.config import Settings
from app.core.logging import get_logger
from app.models.content import CacheEntry, CacheState, Item
from app.models.content_sources import SourceConfig, build_source_configs
from services.cache_store import CacheStore, build_cache_store
from services.normalizer import NormalizationError, normalize
from services.post_processor import PostProcessor, build_predicate
from services.source_clients import (
    RawRecord,
    SourceClient,
    SourceFetchError,
    build_source_clients,
)

logger = get_logger().bind(module="cache_orchestrator")

DEFAULT_TTL_SECONDS = 3600


class UnknownContentKey(KeyError):
    """Read or refresh requested for a key with no SourceConfig."""


@dataclass(frozen=True)
class RefreshResult:
    key: str
    committed: bool
    items: int = 0
    pages: int = 0
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheOrchestrator:
    def __init__(
        self,
        store: CacheStore,
        sources: Mapping[str, SourceConfig],
        clients: Mapping[str, SourceClient],
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        serve_stale: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.sources = dict(sources)
        self.clients = dict(clients)
        self.ttl = timedelta(seconds=ttl_seconds)
        self.serve_stale = serve_stale
        self._clock = clock
        self._inflight: Dict[str, asyncio.Task[RefreshResult]] = {}

    # -------- State ----------------------------------------------------------

    @property
    def keys(self) -> List[str]:
        return list(self.sources)

    def config_for(self, key: str) -> SourceConfig:
        try:
            return self.sources[key]
        except KeyError:
            raise UnknownContentKey(key) from None

    def is_stale(self, entry: CacheEntry, now: Optional[datetime] = None) -> bool:
        # Exactly TTL old counts as stale.
        now = now or self._clock()
        return now - entry.last_updated >= self.ttl

    def state_of(self, entry: Optional[CacheEntry], now: Optional[datetime] = None) -> CacheState:
        if entry is None:
            return CacheState.MISSING
        return CacheState.STALE if self.is_stale(entry, now) else CacheState.FRESH

    async def state(self, key: str) -> CacheState:
        self.config_for(key)
        return self.state_of(await self.store.get(key))

    def is_refreshing(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    # -------- Read path ------------------------------------------------------

    async def get_entry(self, key: str) -> Tuple[Optional[CacheEntry], CacheState]:
        """
        Current snapshot for ``key`` and the state it was served in.

        Returns ``(None, MISSING)`` only when the key was never populated and
        the inline refresh produced nothing.
        """
        self.config_for(key)
        entry = await self.store.get(key)

        if entry is None:
            logger.info("cache_miss", key=key)
            await self.refresh(key)
            entry = await self.store.get(key)
            return entry, self.state_of(entry)

        if not self.is_stale(entry):
            return entry, CacheState.FRESH

        if self.serve_stale:
            logger.info("cache_stale_serving", key=key, last_updated=entry.last_updated.isoformat())
            self.refresh_in_background(key)
            return entry, CacheState.STALE

        logger.info("cache_stale_refreshing", key=key, last_updated=entry.last_updated.isoformat())
        await self.refresh(key)
        refreshed = await self.store.get(key) or entry
        return refreshed, self.state_of(refreshed)

    # -------- Refresh path ---------------------------------------------------

    def refresh_in_background(self, key: str) -> "asyncio.Task[RefreshResult]":
        return self._start_refresh(key)

    async def refresh(self, key: str) -> RefreshResult:
        """Refresh ``key`` now, joining an in-flight refresh if there is one."""
        self.config_for(key)
        task = self._start_refresh(key)
        # shield: a cancelled reader must not cancel a refresh others are awaiting
        return await asyncio.shield(task)

    async def refresh_all(self) -> List[RefreshResult]:
        return list(await asyncio.gather(*(self.refresh(key) for key in self.keys)))

    def _start_refresh(self, key: str) -> "asyncio.Task[RefreshResult]":
        task = self._inflight.get(key)
        if task is not None and not task.done():
            logger.debug("cache_refresh_joined", key=key)
            return task
        task = asyncio.create_task(self._run_refresh(key), name=f"cache-refresh:{key}")
        self._inflight[key] = task
        task.add_done_callback(lambda t, key=key: self._forget(key, t))
        return task

    def _forget(self, key: str, task: "asyncio.Task[RefreshResult]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled():
            logger.info("cache_refresh_cancelled", key=key)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("cache_refresh_crashed", key=key, error=str(exc), error_type=type(exc).__name__)

    def _normalize_all(self, records: List[RawRecord], config: SourceConfig, now: datetime) -> List[Item]:
        items: List[Item] = []
        for record in records:
            try:
                items.append(normalize(record, config, now=now))
            except NormalizationError as exc:
                logger.warning("cache_refresh_record_skipped", key=config.key, error=str(exc))
        return items

    async def _run_refresh(self, key: str) -> RefreshResult:
        config = self.config_for(key)
        client = self.clients[config.kind]
        processor = PostProcessor(build_predicate(config))
        max_pages = max(1, config.max_pages) if config.paginate else 1

        logger.info("cache_refresh_started", key=key)
        offset = 0
        pages = 0
        error: Optional[str] = None
        while pages < max_pages:
            try:
                records = await client.fetch_page(config, offset, config.page_size)
            except SourceFetchError as exc:
                # Treated as "no more data": keep whatever earlier pages gave.
                error = str(exc)
                logger.warning(
                    "cache_refresh_page_failed",
                    key=key,
                    offset=offset,
                    error=error,
                    error_type=type(exc).__name__,
                )
                break
            pages += 1
            if not records:
                logger.info("cache_refresh_source_exhausted", key=key, offset=offset)
                break

            processor.accept(self._normalize_all(records, config, self._clock()))
            if not config.paginate:
                break
            if config.target_count is not None and len(processor.accepted) >= config.target_count:
                break
            offset += config.page_size

        items = processor.result()
        if not items:
            logger.warning("cache_refresh_empty_kept_previous", key=key, pages=pages, error=error)
            return RefreshResult(key=key, committed=False, pages=pages, error=error or "no items")

        entry = CacheEntry(key=key, items=tuple(items), last_updated=self._clock())
        try:
            await self.store.put(key, entry)
        except OSError as exc:
            logger.error("cache_store_write_failed", key=key, error=str(exc))
            return RefreshResult(key=key, committed=False, pages=pages, error=str(exc))

        logger.info("cache_refresh_committed", key=key, items=len(items), pages=pages)
        return RefreshResult(key=key, committed=True, items=len(items), pages=pages, error=error)

    # -------- Shutdown -------------------------------------------------------

    async def close(self) -> None:
        """Abandon in-flight refreshes and close upstream HTTP clients."""
        tasks = [task for task in self._inflight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for client in self.clients.values():
            await client.aclose()


def build_orchestrator(settings: Settings) -> CacheOrchestrator:
    return CacheOrchestrator(
        build_cache_store(settings),
        build_source_configs(settings),
        build_source_clients(timeout_s=settings.HTTP_TIMEOUT_S),
        ttl_seconds=settings.CACHE_TTL_SECONDS,
        serve_stale=settings.SERVE_STALE_WHILE_REFRESH,
    )
