"""Merge parsed feed items into one bounded, newest-first list."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from .config import get_settings
from .fetcher import FeedFetcher
from .logging_config import get_logger
from .models import FeedSource, NewsItem
from .parser import parse_feed, parse_pub_date

logger = get_logger(__name__)

MAX_ITEMS = 50


def dedupe_by_link(items: Iterable[NewsItem]) -> List[NewsItem]:
    """Keep the first item seen for each link."""
    seen: set[str] = set()
    unique: List[NewsItem] = []
    for item in items:
        if item.link in seen:
            continue
        seen.add(item.link)
        unique.append(item)
    return unique


def sort_newest_first(
    items: Iterable[NewsItem], *, now: Optional[datetime] = None
) -> List[NewsItem]:
    """Stable sort by publication date; unparseable dates count as ``now``."""
    fallback = now or datetime.now(timezone.utc)

    def _key(item: NewsItem) -> datetime:
        return parse_pub_date(item.pub_date) or fallback

    return sorted(items, key=_key, reverse=True)


def merge_items(
    batches: Iterable[Iterable[NewsItem]],
    *,
    limit: int = MAX_ITEMS,
    now: Optional[datetime] = None,
) -> List[NewsItem]:
    """
    Dedupe, order and truncate per-source batches.

    Batches must be passed in source-enumeration order: when two sources
    emit the same link, the one enumerated first wins.
    """
    merged: List[NewsItem] = []
    for batch in batches:
        merged.extend(batch)
    unique = dedupe_by_link(merged)
    return sort_newest_first(unique, now=now)[: max(0, limit)]


async def aggregate_news(
    sources: Sequence[FeedSource],
    *,
    fetcher: Optional[FeedFetcher] = None,
    limit: Optional[int] = None,
) -> List[NewsItem]:
    """
    Fetch, parse and merge all active sources.

    Source failures and parse failures contribute zero items; no active
    sources (or nothing fetched at all) yields an empty list.
    """
    settings = get_settings()
    active = [source for source in sources if source.is_active]
    if not active:
        return []

    fetcher = fetcher or FeedFetcher.from_settings()
    payloads = await fetcher.fetch_all(active)

    now = datetime.now(timezone.utc)
    batches = [
        parse_feed(
            body,
            name,
            max_description_chars=settings.description_max_chars,
            now=now,
        )
        for name, body in payloads
    ]
    items = merge_items(
        batches,
        limit=settings.max_news_items if limit is None else limit,
        now=now,
    )
    logger.info(
        "news_aggregated",
        sources=len(active),
        failed=sum(1 for _, body in payloads if body is None),
        parsed=sum(len(batch) for batch in batches),
        returned=len(items),
    )
    return items
