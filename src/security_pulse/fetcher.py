"""Concurrent feed fetching with per-source failure isolation."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from .config import get_settings
from .logging_config import get_logger
from .models import FeedSource

logger = get_logger(__name__)

FetchResult = Tuple[str, Optional[bytes]]


@dataclass(frozen=True)
class _CacheEntry:
    body: bytes
    expires_at: float


class ResponseCache:
    """Per-URL body cache with a fixed lifetime.

    Entries are swapped in whole; a reader sees either the previous entry or
    the new one, never a partial write.
    """

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    def get(self, url: str) -> Optional[bytes]:
        entry = self._entries.get(url)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(url, None)
            return None
        return entry.body

    def put(self, url: str, body: bytes) -> None:
        if self.ttl_s <= 0:
            return
        self._entries[url] = _CacheEntry(body=body, expires_at=self._clock() + self.ttl_s)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class FeedFetcher:
    """Issue one GET per feed source concurrently on the running event loop."""

    def __init__(
        self,
        *,
        user_agent: str,
        timeout_s: float = 10.0,
        cache: Optional[ResponseCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout_s = timeout_s
        self.cache = cache
        self._transport = transport

    @classmethod
    def from_settings(
        cls, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "FeedFetcher":
        settings = get_settings()
        cache = (
            ResponseCache(settings.feed_cache_ttl_s)
            if settings.feed_cache_ttl_s > 0
            else None
        )
        return cls(
            user_agent=settings.feed_user_agent,
            timeout_s=settings.fetch_timeout_s,
            cache=cache,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_s,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            transport=self._transport,
        )

    async def _fetch_one(
        self, client: httpx.AsyncClient, source: FeedSource
    ) -> Optional[bytes]:
        if self.cache is not None:
            cached = self.cache.get(source.url)
            if cached is not None:
                return cached
        try:
            # httpx timeouts are per phase; cap the whole exchange as well.
            response = await asyncio.wait_for(
                client.get(source.url), timeout=self.timeout_s
            )
            response.raise_for_status()
        except asyncio.TimeoutError:
            logger.warning(
                "feed_fetch_failed",
                source=source.name,
                url=source.url,
                error=f"timed out after {self.timeout_s}s",
            )
            return None
        except httpx.HTTPError as exc:
            logger.warning(
                "feed_fetch_failed",
                source=source.name,
                url=source.url,
                error=str(exc) or exc.__class__.__name__,
            )
            return None
        body = response.content
        if self.cache is not None:
            self.cache.put(source.url, body)
        return body

    async def fetch_all(self, sources: Sequence[FeedSource]) -> List[FetchResult]:
        """
        Return ``(source_name, body | None)`` per source, in input order.

        A failing source maps to ``None`` and never affects the others; an
        empty input returns immediately without opening a client.
        """
        if not sources:
            return []

        async with self._client() as client:
            outcomes = await asyncio.gather(
                *(self._fetch_one(client, source) for source in sources),
                return_exceptions=True,
            )

        results: List[FetchResult] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "feed_fetch_crashed",
                    source=source.name,
                    url=source.url,
                    error=repr(outcome),
                )
                outcome = None
            results.append((source.name, outcome))
        return results
