"""Data models for the security pulse service."""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class WireModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FeedSource(WireModel):
    """A configured RSS/Atom endpoint."""

    id: str = Field(default_factory=new_id)
    name: str
    url: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class NewsItem(WireModel):
    """One normalized article emitted by the parser; never mutated afterwards."""

    model_config = ConfigDict(frozen=True)

    title: str
    link: str
    pub_date: str = Field(..., description="ISO-8601 timestamp or the raw feed value.")
    source: str
    description: Optional[str] = None


class Severity(str, Enum):
    """Severity tiers, highest priority first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def label(self) -> str:
        return "INFO" if self is Severity.LOW else self.value.upper()


class TrendingTopic(WireModel):
    keyword: str
    source_count: int
    articles: List[NewsItem]
    is_new: bool = False


# --- Persisted records -----------------------------------------------------

Priority = Literal["high", "medium", "low"]
SummaryKind = Literal["summary", "eli5", "impact", "actions"]

PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}


class User(WireModel):
    id: str
    email: str
    name: str
    created_at: datetime = Field(default_factory=utc_now)


class SavedArticle(WireModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    link: str
    source: str
    pub_date: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    saved_at: datetime = Field(default_factory=utc_now)


class ReadingListItem(WireModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    link: str
    source: str
    pub_date: Optional[str] = None
    description: Optional[str] = None
    priority: Priority = "medium"
    notes: Optional[str] = None
    added_at: datetime = Field(default_factory=utc_now)


class ReadState(WireModel):
    user_id: str
    article_link: str
    article_title: str
    is_read: bool = True
    read_at: datetime = Field(default_factory=utc_now)


class ArticleSummary(WireModel):
    article_link: str
    title: str
    summary: str = "Summary pending"
    eli5: Optional[str] = None
    impact: Optional[str] = None
    actions: Optional[str] = None
    cves: List[str] = Field(default_factory=list)
    iocs: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def has_field(self, kind: str) -> bool:
        """True when the requested generated field already holds real text."""
        value = getattr(self, kind, None)
        if kind == "summary":
            return bool(value) and value != "Summary pending"
        return bool(value)


class GeneratedContent(WireModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    content_type: str
    title: str
    content: str
    focus_area: Optional[str] = None
    tone: Optional[str] = None
    source_links: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class ReadingAnalytics(WireModel):
    """Client-reported reading totals, one record per user per UTC day."""

    id: str = Field(default_factory=new_id)
    user_id: str
    day: date = Field(..., alias="date")
    articles_read: int = 0
    top_sources: List[str] = Field(default_factory=list)
    top_topics: List[str] = Field(default_factory=list)
    top_severity: Optional[str] = None
    time_spent: int = Field(0, description="Seconds spent reading that day.")
    updated_at: datetime = Field(default_factory=utc_now)
