"""Derived signals over news items: severity, trending topics, CVE ids.

Everything here is a pure function of item text; nothing is cached and no
input is mutated.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Dict, Iterable, List, Sequence, Tuple

from .models import NewsItem, Severity, TrendingTopic

# Ordered tiers; the first tier with a matching keyword wins.
SEVERITY_KEYWORDS: Tuple[Tuple[Severity, Tuple[str, ...]], ...] = (
    (
        Severity.CRITICAL,
        (
            "critical",
            "zero-day",
            "0-day",
            "actively exploited",
            "emergency",
            "immediate action",
            "urgent patch",
            "under attack",
            "mass exploitation",
        ),
    ),
    (
        Severity.HIGH,
        (
            "ransomware",
            "breach",
            "data leak",
            "vulnerability",
            "exploit",
            "malware",
            "backdoor",
            "apt",
            "threat actor",
            "compromised",
            "severe",
            "dangerous",
            "widespread",
        ),
    ),
    (
        Severity.MEDIUM,
        (
            "warning",
            "alert",
            "security flaw",
            "bug",
            "patch",
            "update",
            "phishing",
            "campaign",
            "attack",
            "threat",
            "risk",
        ),
    ),
)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "been", "be",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "can",
    }
)
MIN_TOKEN_LENGTH = 5
MIN_TRENDING_SOURCES = 2
TOP_TRENDING = 5

CVE_PATTERN = re.compile(r"CVE-\d{4}-\d{4,}", re.IGNORECASE)
_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def _item_text(item: NewsItem) -> str:
    return f"{item.title} {item.description or ''}".lower()


def classify_severity(item: NewsItem) -> Severity:
    """Return the highest-priority tier whose keyword appears in the item."""
    text = _item_text(item)
    for severity, keywords in SEVERITY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return severity
    return Severity.LOW


def tokenize_title(title: str) -> List[str]:
    """Lowercase, drop punctuation, split, and filter short and stop words."""
    words = _PUNCTUATION_RE.sub("", title.lower()).split()
    return [
        word
        for word in words
        if len(word) >= MIN_TOKEN_LENGTH and word not in STOP_WORDS
    ]


def extract_trending_topics(
    items: Sequence[NewsItem],
    previously_seen_links: Iterable[str] = (),
    *,
    limit: int = TOP_TRENDING,
) -> List[TrendingTopic]:
    """
    Tokens that show up in titles from at least two distinct sources.

    Ranked by distinct-source count (ties keep first-appearance order) and
    cut to ``limit``. A topic is new when any of its articles has a link
    the caller has not seen before.
    """
    seen = set(previously_seen_links)
    by_token: Dict[str, List[NewsItem]] = {}
    for item in items:
        for token in dict.fromkeys(tokenize_title(item.title)):
            by_token.setdefault(token, []).append(item)

    topics: List[TrendingTopic] = []
    for token, articles in by_token.items():
        sources = {article.source for article in articles}
        if len(sources) < MIN_TRENDING_SOURCES:
            continue
        topics.append(
            TrendingTopic(
                keyword=token,
                source_count=len(sources),
                articles=articles,
                is_new=any(article.link not in seen for article in articles),
            )
        )

    topics.sort(key=lambda topic: topic.source_count, reverse=True)
    return topics[:limit]


def top_keywords(titles: Iterable[str], *, limit: int = 10) -> List[Tuple[str, int]]:
    """Most frequent title tokens, for reading-pattern analytics."""
    counts: Counter[str] = Counter()
    for title in titles:
        counts.update(tokenize_title(title))
    return counts.most_common(limit)


def find_cves(*texts: str | None) -> List[str]:
    found: List[str] = []
    for text in texts:
        if text:
            found.extend(match.upper() for match in CVE_PATTERN.findall(text))
    return list(dict.fromkeys(found))


def extract_identifiers(item: NewsItem) -> List[str]:
    """CVE ids from title and description, upper-cased, deduped in order."""
    return find_cves(item.title, item.description)


def annotate(item: NewsItem) -> dict:
    """Wire payload of an item plus its severity and CVE ids."""
    severity = classify_severity(item)
    payload = item.to_wire()
    payload["severity"] = severity.value
    payload["severityLabel"] = severity.label
    payload["cves"] = extract_identifiers(item)
    return payload
