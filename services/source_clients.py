"""
Upstream source clients.

Each client variant performs the network calls for one kind of upstream and
returns raw, source-specific records. Variants share one capability,
``fetch_page(config, offset, page_size)``, and are selected by
``SourceConfig.kind``.
"""

from __future__ import annotations

import asyncio
import gzip
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import feedparser
import httpx

from app.core.logging import get_logger
from app.models.content_sources import (
    SOURCE_KIND_RSS,
    SOURCE_KIND_TRACKS,
    FeedConfig,
    SourceConfig,
)

logger = get_logger().bind(module="source_clients")

DEFAULT_TIMEOUT_S = 15.0
_GZIP_MAGIC = b"\x1f\x8b"


class SourceFetchError(Exception):
    """Recoverable failure while fetching from an upstream source."""

    def __init__(self, message: str, *, source: str = "", url: str = ""):
        super().__init__(message)
        self.source = source
        self.url = url


class TransportError(SourceFetchError):
    """Network failure, timeout or unexpected HTTP status."""


class DecodeError(SourceFetchError):
    """Upstream answered but the payload is not valid XML/JSON."""


@dataclass(frozen=True)
class RawRecord:
    """One undecoded upstream record plus the name of the feed it came from."""

    source_name: str
    data: Mapping[str, Any]


class SourceClient:
    """
    Shared HTTP client handling for source variants.

    The httpx client is created lazily and lives until ``aclose()``; every
    request carries an explicit timeout.
    """

    kind: str = ""
    user_agent = "feedhub/1.0"

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "SourceClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_s,
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(
        self,
        url: str,
        *,
        source: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        try:
            response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"request failed: {exc}", source=source, url=url) from exc
        except (httpx.InvalidURL, ValueError) as exc:
            # Malformed URL that slipped past config validation, e.g. "https://".
            raise TransportError(f"invalid url: {exc}", source=source, url=url) from exc
        if response.status_code != 200:
            raise TransportError(
                f"unexpected status code: {response.status_code}",
                source=source,
                url=url,
            )
        return response

    async def fetch_page(self, config: SourceConfig, offset: int, page_size: int) -> List[RawRecord]:
        raise NotImplementedError


class RSSClient(SourceClient):
    """
    News aggregator: one GET per configured feed.

    A failing feed is skipped and logged; the page only fails when every feed
    failed, so partial results still reach the cache.
    """

    kind = SOURCE_KIND_RSS

    async def fetch_feed(self, feed: FeedConfig) -> List[RawRecord]:
        response = await self._get(feed.url, source=feed.name)
        parsed = feedparser.parse(response.content)
        entries = parsed.get("entries") or []
        if parsed.get("bozo") and not entries:
            exc = parsed.get("bozo_exception")
            raise DecodeError(f"malformed feed: {exc}", source=feed.name, url=feed.url)

        records = [RawRecord(source_name=feed.name, data=dict(entry)) for entry in entries]
        logger.info("rss_feed_fetched", feed=feed.name, items=len(records))
        return records

    async def fetch_page(self, config: SourceConfig, offset: int = 0, page_size: int = 0) -> List[RawRecord]:
        # Feeds are not paginated: everything arrives on the first page.
        if offset > 0 or not config.feeds:
            return []

        results = await asyncio.gather(
            *(self.fetch_feed(feed) for feed in config.feeds),
            return_exceptions=True,
        )

        records: List[RawRecord] = []
        failures: List[SourceFetchError] = []
        for feed, result in zip(config.feeds, results):
            if isinstance(result, SourceFetchError):
                failures.append(result)
                logger.warning(
                    "rss_feed_skipped",
                    feed=feed.name,
                    url=feed.url,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                continue
            if isinstance(result, BaseException):
                raise result
            records.extend(result)

        if failures and len(failures) == len(config.feeds):
            raise TransportError(
                f"all {len(failures)} feeds failed",
                source=config.key,
            ) from failures[-1]
        return records


class TrackListingClient(SourceClient):
    """
    Paginated track-listing API.

    Credentials go out as the Authorization header and as client_id/sc_a_id
    query parameters; ``{user_id}`` in the endpoint is filled from them too.
    """

    kind = SOURCE_KIND_TRACKS
    user_agent = "Mozilla/5.0 (compatible; feedhub/1.0)"

    def _request_for(self, config: SourceConfig, offset: int, page_size: int):
        creds = dict(config.credentials)
        url = config.endpoint.format(user_id=creds.get("user_id", ""))

        params: Dict[str, Any] = dict(config.params)
        params["offset"] = offset
        params["limit"] = page_size
        for name in ("client_id", "sc_a_id"):
            if creds.get(name):
                params[name] = creds[name]

        headers = {
            "Accept": "application/json, text/javascript, */*; q=0.01",
            "Accept-Encoding": "gzip, deflate",
            "Origin": "https://soundcloud.com",
            "Referer": "https://soundcloud.com/",
        }
        if creds.get("authorization"):
            headers["Authorization"] = creds["authorization"]
        return url, params, headers

    @staticmethod
    def decode_body(body: bytes, *, source: str = "", url: str = "") -> Dict[str, Any]:
        # httpx already undoes Content-Encoding: gzip; a body that still starts
        # with the gzip magic was compressed without the header.
        if body[:2] == _GZIP_MAGIC:
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError) as exc:
                raise DecodeError(f"invalid gzip body: {exc}", source=source, url=url) from exc
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(f"invalid JSON body: {exc}", source=source, url=url) from exc
        if not isinstance(payload, dict):
            raise DecodeError("JSON body is not an object", source=source, url=url)
        return payload

    async def fetch_page(self, config: SourceConfig, offset: int, page_size: int) -> List[RawRecord]:
        url, params, headers = self._request_for(config, offset, page_size)
        logger.info("tracks_page_fetching", source=config.key, offset=offset, limit=page_size)

        response = await self._get(url, source=config.key, params=params, headers=headers)
        payload = self.decode_body(response.content, source=config.key, url=url)

        collection = payload.get("collection") or []
        if not isinstance(collection, list):
            raise DecodeError("collection is not an array", source=config.key, url=url)

        records = [
            RawRecord(source_name=config.name, data=entry)
            for entry in collection
            if isinstance(entry, dict)
        ]
        logger.info("tracks_page_fetched", source=config.key, offset=offset, items=len(records))
        return records


def build_source_clients(*, timeout_s: float = DEFAULT_TIMEOUT_S) -> Dict[str, SourceClient]:
    """One client per source kind, shared by every key of that kind."""
    return {
        SOURCE_KIND_RSS: RSSClient(timeout_s=timeout_s),
        SOURCE_KIND_TRACKS: TrackListingClient(timeout_s=timeout_s),
    }
