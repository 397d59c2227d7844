import asyncio
import time

import httpx
import pytest

from security_pulse.fetcher import FeedFetcher, ResponseCache
from security_pulse.models import FeedSource


def _source(name: str, url: str) -> FeedSource:
    return FeedSource(name=name, url=url)


@pytest.mark.asyncio
async def test_fetch_all_keeps_input_order_and_isolates_failures(httpx_mock):
    httpx_mock.add_response(url="https://a.example/feed", text="<rss>a</rss>")
    httpx_mock.add_response(url="https://b.example/feed", status_code=500)
    httpx_mock.add_exception(
        httpx.ConnectTimeout("timed out"), url="https://c.example/feed"
    )
    fetcher = FeedFetcher(user_agent="Test-Agent/1.0")

    results = await fetcher.fetch_all(
        [
            _source("A", "https://a.example/feed"),
            _source("B", "https://b.example/feed"),
            _source("C", "https://c.example/feed"),
        ]
    )

    assert results == [("A", b"<rss>a</rss>"), ("B", None), ("C", None)]


@pytest.mark.asyncio
async def test_every_request_carries_the_user_agent(httpx_mock):
    httpx_mock.add_response(url="https://a.example/feed", text="ok")
    fetcher = FeedFetcher(user_agent="ASTRA-Security-Pulse/1.0")

    await fetcher.fetch_all([_source("A", "https://a.example/feed")])

    request = httpx_mock.get_requests()[0]
    assert request.headers["User-Agent"] == "ASTRA-Security-Pulse/1.0"


@pytest.mark.asyncio
async def test_empty_source_list_makes_no_requests(httpx_mock):
    fetcher = FeedFetcher(user_agent="Test-Agent/1.0")

    assert await fetcher.fetch_all([]) == []
    assert httpx_mock.get_requests() == []


@pytest.mark.asyncio
async def test_cached_body_is_reused_and_failures_are_not_cached(httpx_mock):
    httpx_mock.add_response(url="https://a.example/feed", text="cached body")
    httpx_mock.add_response(url="https://b.example/feed", status_code=503)
    httpx_mock.add_response(url="https://b.example/feed", text="recovered")
    fetcher = FeedFetcher(user_agent="Test-Agent/1.0", cache=ResponseCache(ttl_s=60))
    sources = [
        _source("A", "https://a.example/feed"),
        _source("B", "https://b.example/feed"),
    ]

    first = await fetcher.fetch_all(sources)
    second = await fetcher.fetch_all(sources)

    assert first == [("A", b"cached body"), ("B", None)]
    assert second == [("A", b"cached body"), ("B", b"recovered")]
    assert len(httpx_mock.get_requests(url="https://a.example/feed")) == 1


def test_response_cache_expires_entries():
    now = [100.0]
    cache = ResponseCache(ttl_s=10, clock=lambda: now[0])
    cache.put("https://a.example/feed", b"body")

    assert cache.get("https://a.example/feed") == b"body"
    now[0] = 110.0
    assert cache.get("https://a.example/feed") is None
    assert len(cache) == 0


def test_response_cache_disabled_with_zero_ttl():
    cache = ResponseCache(ttl_s=0)
    cache.put("https://a.example/feed", b"body")

    assert cache.get("https://a.example/feed") is None


def test_from_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("FEED_USER_AGENT", "Custom/2.0")
    monkeypatch.setenv("FETCH_TIMEOUT_S", "3.5")
    monkeypatch.setenv("FEED_CACHE_TTL_S", "30")

    fetcher = FeedFetcher.from_settings()

    assert fetcher.user_agent == "Custom/2.0"
    assert fetcher.timeout_s == 3.5
    assert fetcher.cache is not None
    assert fetcher.cache.ttl_s == 30


def _slow_transport(delays: dict) -> httpx.MockTransport:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(delays.get(request.url.host, 0))
        return httpx.Response(200, content=request.url.host.encode("utf-8"))

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_a_stalled_source_is_cut_off_at_the_timeout():
    fetcher = FeedFetcher(
        user_agent="Test-Agent/1.0",
        timeout_s=0.2,
        transport=_slow_transport({"slow.example": 5.0}),
    )

    started = time.monotonic()
    results = await fetcher.fetch_all(
        [
            _source("Slow", "https://slow.example/feed"),
            _source("Fast", "https://fast.example/feed"),
        ]
    )
    elapsed = time.monotonic() - started

    assert results == [("Slow", None), ("Fast", b"fast.example")]
    assert elapsed < 2.0


@pytest.mark.asyncio
async def test_sources_are_fetched_concurrently():
    fetcher = FeedFetcher(
        user_agent="Test-Agent/1.0",
        transport=_slow_transport({"a.example": 0.3, "b.example": 0.3}),
    )

    started = time.monotonic()
    results = await fetcher.fetch_all(
        [
            _source("A", "https://a.example/feed"),
            _source("B", "https://b.example/feed"),
        ]
    )
    elapsed = time.monotonic() - started

    assert results == [("A", b"a.example"), ("B", b"b.example")]
    assert elapsed < 0.55
