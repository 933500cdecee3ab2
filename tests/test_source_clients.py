from __future__ import annotations

import gzip
import json
from typing import List

import httpx
import pytest

from app.models.content_sources import (
    SOURCE_KIND_RSS,
    SOURCE_KIND_TRACKS,
    FeedConfig,
    SourceConfig,
)
from services import source_clients
from services.source_clients import (
    DecodeError,
    RSSClient,
    TrackListingClient,
    TransportError,
    build_source_clients,
)
from tests.fixtures import RecordingLogger, make_track_entry, rss_document

GOOD_XML = rss_document(
    [
        ("Ten", "Mon, 01 Jan 2024 10:00:00 GMT"),
        ("Noon", "Mon, 01 Jan 2024 12:00:00 GMT"),
        ("Eleven", "Mon, 01 Jan 2024 11:00:00 GMT"),
    ]
)


def _news_config(*feeds: FeedConfig) -> SourceConfig:
    return SourceConfig(key="news", name="News", kind=SOURCE_KIND_RSS, feeds=tuple(feeds))


def _tracks_config(**overrides) -> SourceConfig:
    values = dict(
        key="tracks-favorites",
        name="Favorites",
        kind=SOURCE_KIND_TRACKS,
        endpoint="https://api.test/users/{user_id}/track_likes",
        credentials={
            "authorization": "OAuth secret-token",
            "client_id": "cid",
            "sc_a_id": "aid",
            "user_id": "141564746",
        },
        params={"app_locale": "en"},
    )
    values.update(overrides)
    return SourceConfig(**values)


def _feed_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/good.xml":
        return httpx.Response(200, content=GOOD_XML.encode("utf-8"), headers={"Content-Type": "application/rss+xml"})
    if request.url.path == "/garbage.xml":
        return httpx.Response(200, content=b"\x00\x01 definitely not xml")
    return httpx.Response(500, text="upstream exploded")


@pytest.mark.asyncio
async def test_rss_skips_failing_feed_and_keeps_healthy_one(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(source_clients, "logger", recorder)
    config = _news_config(
        FeedConfig(name="Healthy", url="https://feeds.test/good.xml"),
        FeedConfig(name="Broken", url="https://feeds.test/bad.xml"),
    )

    async with RSSClient(transport=httpx.MockTransport(_feed_handler)) as client:
        records = await client.fetch_page(config, 0, 100)

    assert [r.data["title"] for r in records] == ["Ten", "Noon", "Eleven"]
    assert {r.source_name for r in records} == {"Healthy"}
    skipped = recorder.named("rss_feed_skipped")
    assert len(skipped) == 1
    assert skipped[0]["feed"] == "Broken"
    assert skipped[0]["error_type"] == "TransportError"


@pytest.mark.asyncio
async def test_rss_fails_when_every_feed_fails():
    config = _news_config(
        FeedConfig(name="A", url="https://feeds.test/a.xml"),
        FeedConfig(name="B", url="https://feeds.test/b.xml"),
    )

    async with RSSClient(transport=httpx.MockTransport(_feed_handler)) as client:
        with pytest.raises(TransportError):
            await client.fetch_page(config, 0, 100)


@pytest.mark.asyncio
async def test_rss_pages_past_the_first_are_empty():
    calls: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return _feed_handler(request)

    config = _news_config(FeedConfig(name="Healthy", url="https://feeds.test/good.xml"))
    async with RSSClient(transport=httpx.MockTransport(handler)) as client:
        assert await client.fetch_page(config, 100, 100) == []

    assert calls == []


@pytest.mark.asyncio
async def test_rss_malformed_feed_is_decode_error():
    client = RSSClient(transport=httpx.MockTransport(_feed_handler))
    try:
        with pytest.raises(DecodeError):
            await client.fetch_feed(FeedConfig(name="Garbage", url="https://feeds.test/garbage.xml"))
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_tracks_request_carries_credentials_and_paging():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"collection": [make_track_entry(1), make_track_entry(2)]})

    async with TrackListingClient(transport=httpx.MockTransport(handler)) as client:
        records = await client.fetch_page(_tracks_config(), 200, 100)

    assert len(records) == 2
    assert records[0].source_name == "Favorites"
    request = seen[0]
    assert request.url.path == "/users/141564746/track_likes"
    assert request.url.params["offset"] == "200"
    assert request.url.params["limit"] == "100"
    assert request.url.params["client_id"] == "cid"
    assert request.url.params["sc_a_id"] == "aid"
    assert request.url.params["app_locale"] == "en"
    assert request.headers["Authorization"] == "OAuth secret-token"


@pytest.mark.asyncio
async def test_tracks_missing_credentials_are_omitted():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"collection": []})

    config = _tracks_config(credentials={"user_id": "1"})
    async with TrackListingClient(transport=httpx.MockTransport(handler)) as client:
        assert await client.fetch_page(config, 0, 50) == []

    assert "client_id" not in seen[0].url.params
    assert "Authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_tracks_gzip_body_with_content_encoding():
    payload = {"collection": [make_track_entry(9)]}

    def handler(request: httpx.Request) -> httpx.Response:
        body = gzip.compress(json.dumps(payload).encode("utf-8"))
        return httpx.Response(200, content=body, headers={"Content-Encoding": "gzip"})

    async with TrackListingClient(transport=httpx.MockTransport(handler)) as client:
        records = await client.fetch_page(_tracks_config(), 0, 100)

    assert records[0].data["track"]["id"] == 9


@pytest.mark.asyncio
async def test_tracks_gzip_body_without_content_encoding():
    payload = {"collection": [make_track_entry(10)]}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=gzip.compress(json.dumps(payload).encode("utf-8")))

    async with TrackListingClient(transport=httpx.MockTransport(handler)) as client:
        records = await client.fetch_page(_tracks_config(), 0, 100)

    assert records[0].data["track"]["id"] == 10


@pytest.mark.parametrize("body", [b"<html>nope</html>", b"[1, 2, 3]", b"\x1f\x8bbroken-gzip"])
def test_decode_body_rejects_bad_payloads(body):
    with pytest.raises(DecodeError):
        TrackListingClient.decode_body(body, source="tracks-stream")


@pytest.mark.asyncio
async def test_tracks_collection_must_be_a_list():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"collection": {"not": "a list"}})

    async with TrackListingClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(DecodeError):
            await client.fetch_page(_tracks_config(), 0, 100)


@pytest.mark.asyncio
async def test_tracks_http_error_status_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "unauthorized"})

    async with TrackListingClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransportError) as excinfo:
            await client.fetch_page(_tracks_config(), 0, 100)

    assert "401" in str(excinfo.value)
    assert excinfo.value.source == "tracks-favorites"


@pytest.mark.asyncio
async def test_tracks_network_failure_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with TrackListingClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransportError):
            await client.fetch_page(_tracks_config(), 0, 100)


def test_build_source_clients_one_per_kind():
    clients = build_source_clients(timeout_s=3.0)

    assert isinstance(clients[SOURCE_KIND_RSS], RSSClient)
    assert isinstance(clients[SOURCE_KIND_TRACKS], TrackListingClient)
    assert clients[SOURCE_KIND_TRACKS].timeout_s == 3.0


@pytest.mark.asyncio
async def test_rss_feed_with_hostless_url_is_skipped(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(source_clients, "logger", recorder)
    config = _news_config(
        FeedConfig(name="Healthy", url="https://feeds.test/good.xml"),
        FeedConfig(name="Hostless", url="https://"),
    )

    async with RSSClient(transport=httpx.MockTransport(_feed_handler)) as client:
        records = await client.fetch_page(config, 0, 100)

    assert len(records) == 3
    skipped = recorder.named("rss_feed_skipped")
    assert [event["feed"] for event in skipped] == ["Hostless"]
    assert skipped[0]["error_type"] == "TransportError"
