"""Tolerant RSS/Atom item extraction.

Feeds come from third parties of unknown well-formedness. ``feedparser``
runs in bozo mode and never raises on malformed documents; each entry is
then normalized on its own, so a failure never propagates past the entry
(or payload) that caused it.
"""

from __future__ import annotations

import calendar
import html
import io
import re
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping, Optional, Union

import feedparser
from dateutil.parser import parse as parse_date

from .logging_config import get_logger
from .models import NewsItem

logger = get_logger(__name__)

DEFAULT_DESCRIPTION_CHARS = 200

# Abbreviations dateutil cannot resolve on its own.
TZINFOS = {
    "EST": timezone(timedelta(hours=-5)),
    "EDT": timezone(timedelta(hours=-4)),
    "CST": timezone(timedelta(hours=-6)),
    "CDT": timezone(timedelta(hours=-5)),
    "MST": timezone(timedelta(hours=-7)),
    "MDT": timezone(timedelta(hours=-6)),
    "PST": timezone(timedelta(hours=-8)),
    "PDT": timezone(timedelta(hours=-7)),
    "GMT": timezone.utc,
    "UTC": timezone.utc,
    "BST": timezone(timedelta(hours=1)),
}

_DATE_KEYS = ("published", "updated", "created")
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def _strip_html(value: str) -> str:
    text = html.unescape(value or "")
    text = _HTML_TAG_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def strip_markup(text: str, max_chars: int = DEFAULT_DESCRIPTION_CHARS) -> str:
    """Drop tags, collapse whitespace and cap the result at ``max_chars``."""
    return _strip_html(text)[:max_chars].rstrip()


def parse_pub_date(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC 822 or ISO-8601 dates; naive values are taken as UTC."""
    if not value or not value.strip():
        return None
    try:
        parsed = parse_date(value.strip(), tzinfos=TZINFOS)
    except (ValueError, OverflowError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _struct_time_to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _entry_pub_date(entry: Mapping[str, Any], now: datetime) -> str:
    """ISO-8601 UTC when parseable, the raw value when not, ``now`` when absent."""
    for key in _DATE_KEYS:
        raw = entry.get(key)
        if not isinstance(raw, str) or not raw.strip():
            continue
        parsed = _struct_time_to_datetime(entry.get(f"{key}_parsed")) or parse_pub_date(raw)
        if parsed is None:
            return _WHITESPACE_RE.sub(" ", raw).strip()
        return parsed.astimezone(timezone.utc).isoformat()
    return now.isoformat()


def _entry_description(entry: Mapping[str, Any]) -> str:
    summary = entry.get("summary") or entry.get("description")
    if isinstance(summary, str) and summary.strip():
        return summary
    content = entry.get("content")
    if isinstance(content, list):
        for block in content:
            value = block.get("value") if isinstance(block, Mapping) else None
            if isinstance(value, str) and value.strip():
                return value
    return ""


def parse_item(
    entry: Mapping[str, Any],
    source: str,
    *,
    max_description_chars: int = DEFAULT_DESCRIPTION_CHARS,
    now: Optional[datetime] = None,
) -> Optional[NewsItem]:
    """Build a NewsItem from one feedparser entry, or None when title or link is missing."""
    raw_title = entry.get("title")
    title = _strip_html(raw_title) if isinstance(raw_title, str) else ""
    raw_link = entry.get("link")
    link = raw_link.strip() if isinstance(raw_link, str) else ""
    if not title or not link:
        return None

    description = strip_markup(_entry_description(entry), max_description_chars)
    return NewsItem(
        title=title,
        link=link,
        pub_date=_entry_pub_date(entry, now or datetime.now(timezone.utc)),
        source=source,
        description=description or None,
    )


def parse_feed(
    raw: Union[str, bytes, None],
    source: str,
    *,
    max_description_chars: int = DEFAULT_DESCRIPTION_CHARS,
    now: Optional[datetime] = None,
) -> List[NewsItem]:
    """
    Extract every item from one feed payload.

    Never raises: a broken entry is skipped, a broken payload yields [].
    """
    if not raw:
        return []

    stamp = now or datetime.now(timezone.utc)
    data = raw.encode("utf-8") if isinstance(raw, str) else raw
    try:
        parsed = feedparser.parse(io.BytesIO(data))
    except Exception as exc:
        logger.warning("feed_parse_failed", source=source, error=str(exc))
        return []
    if parsed.get("bozo") and not parsed.entries:
        logger.debug(
            "feed_parse_failed",
            source=source,
            error=str(parsed.get("bozo_exception", "")),
        )

    items: List[NewsItem] = []
    for entry in parsed.entries:
        try:
            item = parse_item(
                entry,
                source,
                max_description_chars=max_description_chars,
                now=stamp,
            )
        except Exception as exc:
            logger.debug("feed_item_skipped", source=source, error=str(exc))
            continue
        if item is not None:
            items.append(item)
    return items
