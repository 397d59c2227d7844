"""JSONL-backed persistence for feed sources and the user's curated articles.

One file per collection under the storage root. Appends go straight to the
end of the file; updates and deletes rewrite the collection whole while
holding the path lock. Every user-owned operation takes the caller's
``Principal`` explicitly.
"""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Generic, Iterable, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .config import get_settings
from .file_lock import locked_path, replace_file
from .identity import Principal
from .logging_config import get_logger
from .models import (
    PRIORITY_RANK,
    ArticleSummary,
    FeedSource,
    GeneratedContent,
    ReadingAnalytics,
    ReadingListItem,
    ReadState,
    SavedArticle,
    User,
    utc_now,
)
from .signals import top_keywords

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

SEARCH_TYPES = ("all", "saved", "reading-list")

DEFAULT_FEED_SOURCES: tuple[tuple[str, str, str], ...] = (
    (
        "Bleeping Computer",
        "https://www.bleepingcomputer.com/feed/",
        "Latest cybersecurity news and tutorials",
    ),
    (
        "The Hacker News",
        "https://feeds.feedburner.com/TheHackersNews",
        "Cybersecurity news and analysis",
    ),
    (
        "Krebs on Security",
        "https://krebsonsecurity.com/feed/",
        "In-depth security news and investigation",
    ),
    (
        "Dark Reading",
        "https://www.darkreading.com/rss.xml",
        "Cybersecurity news for infosec professionals",
    ),
    (
        "Hacker News (Security)",
        "https://thehackernews.com/feeds/posts/default",
        "The latest hacking news and security updates",
    ),
)


def default_feed_sources() -> List[FeedSource]:
    return [
        FeedSource(name=name, url=url, description=description)
        for name, url, description in DEFAULT_FEED_SOURCES
    ]


class StoreError(Exception):
    """Base class for persistence errors surfaced to callers."""


class NotFoundError(StoreError, LookupError):
    pass


class DuplicateError(StoreError):
    def __init__(self, message: str, existing: BaseModel | None = None):
        super().__init__(message)
        self.existing = existing


def storage_root() -> Path:
    """Base directory for stored collections (override via PULSE_DATA_DIR)."""
    data_dir = get_settings().data_dir
    if data_dir:
        return Path(data_dir).expanduser().resolve()
    return Path(__file__).resolve().parents[2] / "data"


class JsonlCollection(Generic[T]):
    """A list of ``model`` records stored one JSON object per line."""

    def __init__(self, path: Path, model: Type[T]):
        self.path = path
        self.model = model

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[T]:
        if not self.path.exists():
            return []
        records: List[T] = []
        for lineno, line in enumerate(
            self.path.read_text(encoding="utf-8").splitlines(), start=1
        ):
            if not line.strip():
                continue
            try:
                records.append(self.model.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning(
                    "store_record_skipped",
                    collection=self.path.name,
                    line=lineno,
                    error=str(exc),
                )
        return records

    def _dump(self, record: T) -> str:
        return json.dumps(record.model_dump(mode="json"), ensure_ascii=False)

    def append(self, record: T) -> T:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(self._dump(record))
            handle.write("\n")
        return record

    def rewrite(self, records: Iterable[T]) -> None:
        lines = [self._dump(record) for record in records]
        replace_file(self.path, "".join(f"{line}\n" for line in lines))


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle in haystack.lower()


def _window_start(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def _apply_changes(record: T, changes: Dict[str, Any]) -> T:
    updates = {key: value for key, value in changes.items() if value is not None}
    if not updates:
        return record
    return record.model_validate({**record.model_dump(), **updates})


class Store:
    """All collections the service persists, rooted at one directory."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root else storage_root()
        self.users = JsonlCollection(self.root / "users.jsonl", User)
        self.sources = JsonlCollection(self.root / "rss_sources.jsonl", FeedSource)
        self.saved = JsonlCollection(self.root / "saved_articles.jsonl", SavedArticle)
        self.reading = JsonlCollection(
            self.root / "reading_list.jsonl", ReadingListItem
        )
        self.read_states = JsonlCollection(self.root / "read_states.jsonl", ReadState)
        self.summaries = JsonlCollection(
            self.root / "article_summaries.jsonl", ArticleSummary
        )
        self.content = JsonlCollection(
            self.root / "generated_content.jsonl", GeneratedContent
        )
        self.daily_analytics = JsonlCollection(
            self.root / "reading_analytics.jsonl", ReadingAnalytics
        )

    # --- Users -------------------------------------------------------------

    def ensure_user(self, principal: Principal) -> User:
        with locked_path(self.users.path):
            for user in self.users.load():
                if user.id == principal.user_id:
                    return user
            return self.users.append(
                User(id=principal.user_id, email=principal.email, name=principal.name)
            )

    # --- Feed sources ------------------------------------------------------

    def list_sources(self) -> List[FeedSource]:
        return sorted(self.sources.load(), key=lambda source: source.name.lower())

    def list_active_sources(self) -> List[FeedSource]:
        return [source for source in self.list_sources() if source.is_active]

    def create_source(
        self,
        name: str,
        url: str,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> FeedSource:
        with locked_path(self.sources.path):
            for existing in self.sources.load():
                if existing.url == url:
                    raise DuplicateError(
                        "RSS source with this URL already exists", existing
                    )
            return self.sources.append(
                FeedSource(
                    name=name,
                    url=url,
                    description=description or None,
                    is_active=is_active,
                )
            )

    def update_source(self, source_id: str, **changes: Any) -> FeedSource:
        with locked_path(self.sources.path):
            sources = self.sources.load()
            new_url = changes.get("url")
            if new_url and any(
                s.url == new_url and s.id != source_id for s in sources
            ):
                raise DuplicateError("RSS source with this URL already exists")
            for idx, source in enumerate(sources):
                if source.id == source_id:
                    sources[idx] = _apply_changes(source, changes)
                    self.sources.rewrite(sources)
                    return sources[idx]
        raise NotFoundError(f"RSS source {source_id} not found")

    def delete_source(self, source_id: str) -> None:
        with locked_path(self.sources.path):
            sources = self.sources.load()
            remaining = [source for source in sources if source.id != source_id]
            if len(remaining) == len(sources):
                raise NotFoundError(f"RSS source {source_id} not found")
            self.sources.rewrite(remaining)

    def seed_sources(self, defaults: Sequence[FeedSource]) -> List[FeedSource]:
        """Insert any default source whose URL is not stored yet."""
        created: List[FeedSource] = []
        with locked_path(self.sources.path):
            known = {source.url for source in self.sources.load()}
            for source in defaults:
                if source.url in known:
                    continue
                created.append(self.sources.append(source))
                known.add(source.url)
        if created:
            logger.info("feed_sources_seeded", count=len(created))
        return created

    # --- Saved articles ----------------------------------------------------

    def list_saved(
        self, principal: Principal, *, tag: Optional[str] = None, limit: Optional[int] = 50
    ) -> List[SavedArticle]:
        articles = [
            article
            for article in self.saved.load()
            if article.user_id == principal.user_id and (not tag or tag in article.tags)
        ]
        articles.sort(key=lambda article: article.saved_at, reverse=True)
        return articles if limit is None else articles[:limit]

    def save_article(self, principal: Principal, **fields: Any) -> SavedArticle:
        with locked_path(self.saved.path):
            for existing in self.saved.load():
                if existing.user_id == principal.user_id and existing.link == fields["link"]:
                    raise DuplicateError("Article already saved", existing)
            return self.saved.append(
                SavedArticle(user_id=principal.user_id, **fields)
            )

    def update_saved(
        self,
        principal: Principal,
        article_id: str,
        *,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
    ) -> SavedArticle:
        with locked_path(self.saved.path):
            articles = self.saved.load()
            for idx, article in enumerate(articles):
                if article.id == article_id and article.user_id == principal.user_id:
                    articles[idx] = _apply_changes(article, {"tags": tags, "notes": notes})
                    self.saved.rewrite(articles)
                    return articles[idx]
        raise NotFoundError(f"Saved article {article_id} not found")

    def delete_saved(
        self,
        principal: Principal,
        *,
        article_id: Optional[str] = None,
        link: Optional[str] = None,
    ) -> int:
        with locked_path(self.saved.path):
            articles = self.saved.load()
            remaining = [
                article
                for article in articles
                if not (
                    article.user_id == principal.user_id
                    and (
                        (article_id and article.id == article_id)
                        or (not article_id and article.link == link)
                    )
                )
            ]
            removed = len(articles) - len(remaining)
            if article_id and not removed:
                raise NotFoundError(f"Saved article {article_id} not found")
            if removed:
                self.saved.rewrite(remaining)
            return removed

    # --- Reading list ------------------------------------------------------

    def list_reading(
        self,
        principal: Principal,
        *,
        priority: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[ReadingListItem]:
        if priority not in PRIORITY_RANK:
            priority = None
        items = [
            item
            for item in self.reading.load()
            if item.user_id == principal.user_id
            and (priority is None or item.priority == priority)
        ]
        items.sort(key=lambda item: item.added_at, reverse=True)
        items.sort(key=lambda item: PRIORITY_RANK[item.priority])
        return items if limit is None else items[:limit]

    def add_reading(self, principal: Principal, **fields: Any) -> ReadingListItem:
        with locked_path(self.reading.path):
            for existing in self.reading.load():
                if existing.user_id == principal.user_id and existing.link == fields["link"]:
                    raise DuplicateError("Article already in reading list", existing)
            if not fields.get("priority"):
                fields["priority"] = "medium"
            return self.reading.append(
                ReadingListItem(user_id=principal.user_id, **fields)
            )

    def update_reading(
        self,
        principal: Principal,
        item_id: str,
        *,
        priority: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReadingListItem:
        with locked_path(self.reading.path):
            items = self.reading.load()
            for idx, item in enumerate(items):
                if item.id == item_id and item.user_id == principal.user_id:
                    items[idx] = _apply_changes(
                        item, {"priority": priority, "notes": notes}
                    )
                    self.reading.rewrite(items)
                    return items[idx]
        raise NotFoundError(f"Reading list item {item_id} not found")

    def delete_reading(
        self,
        principal: Principal,
        *,
        item_id: Optional[str] = None,
        link: Optional[str] = None,
    ) -> int:
        with locked_path(self.reading.path):
            items = self.reading.load()
            remaining = [
                item
                for item in items
                if not (
                    item.user_id == principal.user_id
                    and (
                        (item_id and item.id == item_id)
                        or (not item_id and item.link == link)
                    )
                )
            ]
            removed = len(items) - len(remaining)
            if item_id and not removed:
                raise NotFoundError(f"Reading list item {item_id} not found")
            if removed:
                self.reading.rewrite(remaining)
            return removed

    # --- Read state --------------------------------------------------------

    def list_read_states(
        self, principal: Principal, links: Optional[Sequence[str]] = None
    ) -> List[ReadState]:
        wanted = set(links or [])
        states = [
            state
            for state in self.read_states.load()
            if state.user_id == principal.user_id
            and (not wanted or state.article_link in wanted)
        ]
        states.sort(key=lambda state: state.read_at, reverse=True)
        return states

    def _upsert_read_states(
        self,
        principal: Principal,
        entries: Sequence[tuple[str, Optional[str]]],
        is_read: bool,
    ) -> List[ReadState]:
        now = utc_now()
        with locked_path(self.read_states.path):
            states = self.read_states.load()
            index = {
                state.article_link: idx
                for idx, state in enumerate(states)
                if state.user_id == principal.user_id
            }
            touched: List[ReadState] = []
            for link, title in entries:
                if link in index:
                    current = states[index[link]]
                    updated = current.model_copy(
                        update={
                            "is_read": is_read,
                            "read_at": now,
                            "article_title": title or current.article_title,
                        }
                    )
                    states[index[link]] = updated
                else:
                    updated = ReadState(
                        user_id=principal.user_id,
                        article_link=link,
                        article_title=title or "Bulk marked",
                        is_read=is_read,
                        read_at=now,
                    )
                    index[link] = len(states)
                    states.append(updated)
                touched.append(updated)
            self.read_states.rewrite(states)
        return touched

    def mark_read(
        self, principal: Principal, link: str, title: str, is_read: bool = True
    ) -> ReadState:
        return self._upsert_read_states(principal, [(link, title)], is_read)[0]

    def bulk_mark_read(
        self, principal: Principal, links: Sequence[str], is_read: bool = True
    ) -> List[ReadState]:
        return self._upsert_read_states(
            principal, [(link, None) for link in links], is_read
        )

    def delete_read_state(self, principal: Principal, link: str) -> int:
        with locked_path(self.read_states.path):
            states = self.read_states.load()
            remaining = [
                state
                for state in states
                if not (state.user_id == principal.user_id and state.article_link == link)
            ]
            removed = len(states) - len(remaining)
            if removed:
                self.read_states.rewrite(remaining)
            return removed

    # --- Search ------------------------------------------------------------

    def search(
        self,
        principal: Principal,
        query: str,
        *,
        search_type: str = "all",
        limit: int = 50,
    ) -> Dict[str, list]:
        if search_type not in SEARCH_TYPES:
            raise ValueError(f"type must be one of: {', '.join(SEARCH_TYPES)}")
        needle = query.lower()
        results: Dict[str, list] = {"savedArticles": [], "readingList": []}

        if search_type in ("all", "saved"):
            results["savedArticles"] = [
                article
                for article in self.list_saved(principal, limit=None)
                if _contains(article.title, needle)
                or _contains(article.description, needle)
                or _contains(article.source, needle)
                or _contains(article.notes, needle)
                or needle in article.tags
            ][:limit]

        if search_type in ("all", "reading-list"):
            results["readingList"] = [
                item
                for item in self.list_reading(principal, limit=None)
                if _contains(item.title, needle)
                or _contains(item.description, needle)
                or _contains(item.source, needle)
                or _contains(item.notes, needle)
            ][:limit]
        return results

    # --- Article summaries -------------------------------------------------

    def get_summary(self, link: str) -> Optional[ArticleSummary]:
        for summary in self.summaries.load():
            if summary.article_link == link:
                return summary
        return None

    def upsert_summary(
        self,
        link: str,
        title: str,
        kind: str,
        text: str,
        cves: Sequence[str] = (),
    ) -> ArticleSummary:
        now = utc_now()
        with locked_path(self.summaries.path):
            summaries = self.summaries.load()
            for idx, summary in enumerate(summaries):
                if summary.article_link == link:
                    update: Dict[str, Any] = {kind: text, "updated_at": now}
                    if cves:
                        update["cves"] = list(cves)
                    summaries[idx] = summary.model_copy(update=update)
                    self.summaries.rewrite(summaries)
                    return summaries[idx]
            created = ArticleSummary(
                article_link=link,
                title=title,
                cves=list(cves),
                created_at=now,
                updated_at=now,
                **{kind: text},
            )
            return self.summaries.append(created)

    # --- Generated content -------------------------------------------------

    def add_content(self, record: GeneratedContent) -> GeneratedContent:
        with locked_path(self.content.path):
            return self.content.append(record)

    def list_content(
        self,
        principal: Principal,
        *,
        content_type: Optional[str] = None,
        limit: int = 20,
    ) -> List[GeneratedContent]:
        history = [
            record
            for record in self.content.load()
            if record.user_id == principal.user_id
            and (not content_type or record.content_type == content_type)
        ]
        history.sort(key=lambda record: record.created_at, reverse=True)
        return history[:limit]

    def delete_content(self, principal: Principal, content_id: str) -> None:
        with locked_path(self.content.path):
            records = self.content.load()
            remaining = [
                record
                for record in records
                if not (record.id == content_id and record.user_id == principal.user_id)
            ]
            if len(remaining) == len(records):
                raise NotFoundError(f"Generated content {content_id} not found")
            self.content.rewrite(remaining)

    # --- Analytics ---------------------------------------------------------

    def _reads_since(self, principal: Principal, days: int) -> List[ReadState]:
        start = _window_start(days)
        return [
            state
            for state in self.list_read_states(principal)
            if state.read_at >= start
        ]

    def overview(self, principal: Principal, *, days: int = 30) -> Dict[str, Any]:
        start = _window_start(days)
        reads = self._reads_since(principal, days)
        saved = [
            article
            for article in self.saved.load()
            if article.user_id == principal.user_id and article.saved_at >= start
        ]
        reading = [
            item for item in self.reading.load() if item.user_id == principal.user_id
        ]
        generated = [
            record
            for record in self.content.load()
            if record.user_id == principal.user_id and record.created_at >= start
        ]
        summaries = [
            summary for summary in self.summaries.load() if summary.created_at >= start
        ]
        topics = top_keywords(state.article_title for state in reads[:100])
        return {
            "days": days,
            "readArticles": len(reads),
            "savedArticles": len(saved),
            "readingList": len(reading),
            "generatedContent": len(generated),
            "summaries": len(summaries),
            "topTopics": [{"topic": word, "count": count} for word, count in topics],
        }

    def reading_patterns(self, principal: Principal, *, days: int = 30) -> Dict[str, Any]:
        """Reads per UTC day and per UTC hour of day inside the window."""
        reads = sorted(self._reads_since(principal, days), key=lambda state: state.read_at)
        daily: Counter[str] = Counter()
        hourly: Counter[int] = Counter()
        for state in reads:
            stamp = state.read_at.astimezone(timezone.utc)
            daily[stamp.date().isoformat()] += 1
            hourly[stamp.hour] += 1
        return {
            "totalReads": len(reads),
            "dailyActivity": [{"date": day, "count": count} for day, count in daily.items()],
            "hourlyActivity": [
                {"hour": hour, "count": hourly[hour]} for hour in sorted(hourly)
            ],
            "avgPerDay": round(len(reads) / len(daily), 1) if daily else 0,
        }

    def reading_trends(
        self, principal: Principal, *, days: int = 30, limit: int = 20
    ) -> List[Dict[str, Any]]:
        titles = (state.article_title for state in self._reads_since(principal, days))
        return [
            {"keyword": word, "count": count}
            for word, count in top_keywords(titles, limit=limit)
        ]

    def source_breakdown(
        self, principal: Principal, *, days: int = 30
    ) -> List[Dict[str, Any]]:
        start = _window_start(days)
        counts = Counter(
            article.source
            for article in self.saved.load()
            if article.user_id == principal.user_id and article.saved_at >= start
        )
        return [{"source": source, "count": count} for source, count in counts.most_common()]

    def record_daily_analytics(
        self, principal: Principal, **fields: Any
    ) -> ReadingAnalytics:
        """Replace today's (UTC) totals for the caller, creating the row if needed."""
        today = datetime.now(timezone.utc).date()
        now = utc_now()
        with locked_path(self.daily_analytics.path):
            records = self.daily_analytics.load()
            for idx, record in enumerate(records):
                if record.user_id == principal.user_id and record.day == today:
                    records[idx] = record.model_validate(
                        {**record.model_dump(), **fields, "updated_at": now}
                    )
                    self.daily_analytics.rewrite(records)
                    return records[idx]
            return self.daily_analytics.append(
                ReadingAnalytics(
                    user_id=principal.user_id, day=today, updated_at=now, **fields
                )
            )
