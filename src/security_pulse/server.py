"""FastAPI service exposing aggregated security news and the curation API."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from .aggregator import aggregate_news
from .config import get_settings
from .fetcher import FeedFetcher
from .generation import (
    SUMMARY_PROMPTS,
    ArticleRef,
    GenerationError,
    PromptStep,
    assist_prompt,
    enhance_prompt,
    generate_content,
    summarize_article,
)
from .identity import Principal, get_principal
from .logging_config import configure_logging, get_logger
from .models import GeneratedContent, NewsItem, Priority, WireModel
from .signals import annotate, extract_trending_topics, find_cves
from .store import (
    DuplicateError,
    NotFoundError,
    Store,
    default_feed_sources,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(level=settings.log_level, json=settings.log_json)
    store = get_store()
    if settings.seed_default_sources and not store.sources.exists():
        store.seed_sources(default_feed_sources())
    yield


app = FastAPI(title="Security Pulse", lifespan=lifespan)


def _add_cors(app: FastAPI) -> None:
    """Allow the browser UI to call the API during local development."""
    allow_all = os.getenv("CORS_ALLOW_ALL", "true").lower() == "true"
    origins_env = os.getenv("CORS_ALLOW_ORIGINS", "")
    origins = [o.strip() for o in origins_env.split(",") if o.strip()]
    allow_credentials = (
        os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() == "true"
    )
    if allow_all or not origins:
        origins = ["*"]
    if origins == ["*"] and allow_credentials:
        # Starlette/FastAPI disallow wildcard origins when credentials are enabled.
        allow_credentials = False
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )


_add_cors(app)


# --- Dependencies -----------------------------------------------------------

_FETCHER: Optional[FeedFetcher] = None


def get_store() -> Store:
    return Store()


def get_fetcher() -> FeedFetcher:
    """Process-wide fetcher so the response cache spans requests."""
    global _FETCHER
    if _FETCHER is None:
        _FETCHER = FeedFetcher.from_settings()
    return _FETCHER


def get_llm_client() -> Any:
    """None means: build an OpenAI client from settings on first use."""
    return None


def current_user(
    principal: Principal = Depends(get_principal),
    store: Store = Depends(get_store),
) -> Principal:
    store.ensure_user(principal)
    return principal


# --- Request payloads -------------------------------------------------------

class SourceCreate(WireModel):
    name: str = ""
    url: str = ""
    description: Optional[str] = None
    is_active: bool = True


class SourceUpdate(WireModel):
    id: str = ""
    name: Optional[str] = None
    url: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class ArticlePayload(WireModel):
    title: str = ""
    link: str = ""
    source: str = ""
    pub_date: Optional[str] = None
    description: Optional[str] = None


class SavePayload(ArticlePayload):
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ReadingPayload(ArticlePayload):
    priority: Optional[Priority] = None
    notes: Optional[str] = None


class ItemUpdate(WireModel):
    id: str = ""
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    priority: Optional[Priority] = None


class RemovePayload(WireModel):
    id: Optional[str] = None
    link: Optional[str] = None


class ReadStatePayload(WireModel):
    article_link: str = ""
    article_title: str = ""
    is_read: bool = True


class BulkReadPayload(WireModel):
    article_links: Optional[List[str]] = None
    is_read: bool = True


class TrendingPayload(WireModel):
    items: Optional[List[NewsItem]] = None
    previously_seen_links: List[str] = Field(default_factory=list)


class SummaryPayload(WireModel):
    article_link: str = ""
    title: str = ""
    description: Optional[str] = None
    source: str = ""
    type: Optional[str] = None


class ContentPayload(WireModel):
    content_type: str = "Security Awareness Email"
    articles: List[ArticleRef] = Field(default_factory=list)
    focus_area: Optional[str] = None
    tone: Optional[str] = None


class AnalyticsPayload(WireModel):
    articles_read: Optional[int] = None
    top_sources: Optional[List[str]] = None
    top_topics: Optional[List[str]] = None
    top_severity: Optional[str] = None
    time_spent: Optional[int] = None


class EnhancePromptPayload(WireModel):
    user_prompt: str = ""
    mode: Optional[str] = None
    methodology: Optional[str] = None
    previous_steps: List[PromptStep] = Field(default_factory=list)


class AssistantPayload(WireModel):
    user_prompt: str = ""
    action: Optional[str] = None


def _parse(model: Type[M], payload: Dict[str, Any]) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _conflict(exc: DuplicateError, key: str) -> HTTPException:
    detail: Dict[str, Any] = {"error": str(exc)}
    if exc.existing is not None:
        detail[key] = exc.existing.model_dump(mode="json", by_alias=True)
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def _wire(records: Sequence[WireModel]) -> List[Dict[str, Any]]:
    return [record.to_wire() for record in records]


# --- News -------------------------------------------------------------------

@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/security-news")
async def security_news(
    annotate_items: bool = Query(False, alias="annotate"),
    store: Store = Depends(get_store),
    fetcher: FeedFetcher = Depends(get_fetcher),
) -> JSONResponse:
    """Newest-first, deduplicated items from every active source (at most 50)."""
    try:
        sources = await run_in_threadpool(store.list_active_sources)
        items = await aggregate_news(sources, fetcher=fetcher)
    except Exception as exc:
        logger.exception("security_news_failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch news",
        ) from exc
    body = [annotate(item) for item in items] if annotate_items else _wire(items)
    return JSONResponse(content=body)


@app.post("/security-news/trending")
async def trending(
    payload: Dict[str, Any],
    store: Store = Depends(get_store),
    fetcher: FeedFetcher = Depends(get_fetcher),
) -> Dict[str, Any]:
    request = _parse(TrendingPayload, payload)
    items = request.items
    if items is None:
        sources = await run_in_threadpool(store.list_active_sources)
        items = await aggregate_news(sources, fetcher=fetcher)
    topics = extract_trending_topics(items, request.previously_seen_links)
    return {"success": True, "topics": _wire(topics), "count": len(topics)}


# --- Feed sources -----------------------------------------------------------

@app.get("/rss-sources")
def list_sources(store: Store = Depends(get_store)) -> Dict[str, Any]:
    sources = store.list_sources()
    return {"success": True, "sources": _wire(sources), "count": len(sources)}


@app.post("/rss-sources")
def create_source(
    payload: Dict[str, Any], store: Store = Depends(get_store)
) -> Dict[str, Any]:
    request = _parse(SourceCreate, payload)
    if not request.name or not request.url:
        raise _bad_request("Name and URL are required")
    try:
        source = store.create_source(
            request.name, request.url, request.description, request.is_active
        )
    except DuplicateError as exc:
        raise _conflict(exc, "source") from exc
    return {
        "success": True,
        "source": source.to_wire(),
        "message": "RSS source created successfully",
    }


@app.patch("/rss-sources")
def update_source(
    payload: Dict[str, Any], store: Store = Depends(get_store)
) -> Dict[str, Any]:
    request = _parse(SourceUpdate, payload)
    if not request.id:
        raise _bad_request("Source ID is required")
    try:
        source = store.update_source(
            request.id,
            name=request.name,
            url=request.url,
            description=request.description,
            is_active=request.is_active,
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except DuplicateError as exc:
        raise _conflict(exc, "source") from exc
    return {
        "success": True,
        "source": source.to_wire(),
        "message": "RSS source updated successfully",
    }


@app.delete("/rss-sources")
def delete_source(
    payload: Dict[str, Any], store: Store = Depends(get_store)
) -> Dict[str, Any]:
    request = _parse(RemovePayload, payload)
    if not request.id:
        raise _bad_request("Source ID is required")
    try:
        store.delete_source(request.id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"success": True, "message": "RSS source deleted successfully"}


# --- Saved articles ---------------------------------------------------------

@app.get("/saved-articles")
def list_saved(
    tag: Optional[str] = None,
    limit: int = 50,
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    articles = store.list_saved(user, tag=tag, limit=limit)
    return {"success": True, "articles": _wire(articles), "count": len(articles)}


@app.post("/saved-articles")
def save_article(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(SavePayload, payload)
    if not request.title or not request.link or not request.source:
        raise _bad_request("Title, link, and source are required")
    try:
        article = store.save_article(user, **request.model_dump())
    except DuplicateError as exc:
        raise _conflict(exc, "article") from exc
    return {
        "success": True,
        "article": article.to_wire(),
        "message": "Article saved successfully",
    }


@app.patch("/saved-articles")
def update_saved(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(ItemUpdate, payload)
    if not request.id:
        raise _bad_request("Article ID is required")
    try:
        article = store.update_saved(
            user, request.id, tags=request.tags, notes=request.notes
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {
        "success": True,
        "article": article.to_wire(),
        "message": "Article updated successfully",
    }


@app.delete("/saved-articles")
def delete_saved(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(RemovePayload, payload)
    if not request.id and not request.link:
        raise _bad_request("Article ID or link is required")
    try:
        store.delete_saved(user, article_id=request.id, link=request.link)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"success": True, "message": "Article removed successfully"}


# --- Reading list -----------------------------------------------------------

@app.get("/reading-list")
def list_reading(
    priority: Optional[str] = None,
    limit: int = 50,
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    items = store.list_reading(user, priority=priority, limit=limit)
    return {"success": True, "items": _wire(items), "count": len(items)}


@app.post("/reading-list")
def add_reading(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(ReadingPayload, payload)
    if not request.title or not request.link or not request.source:
        raise _bad_request("Title, link, and source are required")
    try:
        item = store.add_reading(user, **request.model_dump())
    except DuplicateError as exc:
        raise _conflict(exc, "item") from exc
    return {"success": True, "item": item.to_wire(), "message": "Added to reading list"}


@app.patch("/reading-list")
def update_reading(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(ItemUpdate, payload)
    if not request.id:
        raise _bad_request("Item ID is required")
    try:
        item = store.update_reading(
            user, request.id, priority=request.priority, notes=request.notes
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {
        "success": True,
        "item": item.to_wire(),
        "message": "Reading list item updated",
    }


@app.delete("/reading-list")
def delete_reading(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(RemovePayload, payload)
    if not request.id and not request.link:
        raise _bad_request("Item ID or link is required")
    try:
        store.delete_reading(user, item_id=request.id, link=request.link)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"success": True, "message": "Removed from reading list"}


# --- Read state -------------------------------------------------------------

@app.get("/read-state")
def list_read_states(
    links: Optional[str] = None,
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    wanted = [link for link in (links or "").split(",") if link]
    states = store.list_read_states(user, wanted)
    return {"success": True, "readStates": _wire(states), "count": len(states)}


@app.post("/read-state")
def mark_read(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(ReadStatePayload, payload)
    if not request.article_link or not request.article_title:
        raise _bad_request("Article link and title are required")
    state = store.mark_read(
        user, request.article_link, request.article_title, request.is_read
    )
    return {
        "success": True,
        "readState": state.to_wire(),
        "message": "Marked as read" if request.is_read else "Marked as unread",
    }


@app.patch("/read-state")
def bulk_mark_read(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(BulkReadPayload, payload)
    if request.article_links is None:
        raise _bad_request("Article links array is required")
    updated = store.bulk_mark_read(user, request.article_links, request.is_read)
    return {
        "success": True,
        "updated": len(updated),
        "message": f"{len(updated)} articles updated",
    }


@app.delete("/read-state")
def delete_read_state(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    article_link = payload.get("articleLink") or payload.get("article_link")
    if not article_link:
        raise _bad_request("Article link is required")
    store.delete_read_state(user, article_link)
    return {"success": True, "message": "Read state removed"}


# --- Search & analytics -----------------------------------------------------

@app.get("/search")
def search(
    q: Optional[str] = None,
    search_type: str = Query("all", alias="type"),
    limit: int = 50,
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    if not q:
        raise _bad_request("Search query is required")
    try:
        results = store.search(user, q, search_type=search_type, limit=limit)
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc
    wired = {key: _wire(records) for key, records in results.items()}
    return {
        "success": True,
        "query": q,
        "results": wired,
        "totalResults": sum(len(records) for records in wired.values()),
    }


@app.get("/analytics")
def analytics(
    days: int = 30,
    view: str = Query("overview", alias="type"),
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    """Reading analytics; unknown views fall back to the overview."""
    if view == "reading-patterns":
        return {
            "success": True,
            "days": days,
            "patterns": store.reading_patterns(user, days=days),
        }
    if view == "trending":
        return {
            "success": True,
            "days": days,
            "trending": store.reading_trends(user, days=days),
        }
    if view == "sources":
        return {
            "success": True,
            "days": days,
            "sources": store.source_breakdown(user, days=days),
        }
    return {"success": True, **store.overview(user, days=days)}


@app.post("/analytics")
def record_analytics(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    request = _parse(AnalyticsPayload, payload)
    record = store.record_daily_analytics(
        user,
        articles_read=request.articles_read or 0,
        top_sources=request.top_sources or [],
        top_topics=request.top_topics or [],
        top_severity=request.top_severity or None,
        time_spent=request.time_spent or 0,
    )
    return {"success": True, "analytics": record.to_wire()}



# --- Generation -------------------------------------------------------------

@app.get("/article-summary")
def get_summary(link: Optional[str] = None, store: Store = Depends(get_store)):
    if not link:
        raise _bad_request("Article link is required")
    summary = store.get_summary(link)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Summary not found"
        )
    return {"success": True, "summary": summary.to_wire()}


@app.post("/article-summary")
def create_summary(
    payload: Dict[str, Any],
    store: Store = Depends(get_store),
    client: Any = Depends(get_llm_client),
) -> Dict[str, Any]:
    request = _parse(SummaryPayload, payload)
    if not request.article_link or not request.title:
        raise _bad_request("Article link and title are required")
    kind = request.type or "summary"
    if kind not in SUMMARY_PROMPTS:
        raise _bad_request(f"type must be one of: {', '.join(SUMMARY_PROMPTS)}")

    existing = store.get_summary(request.article_link)
    if existing is not None and existing.has_field(kind):
        return {"success": True, "summary": existing.to_wire(), "cached": True}

    article = ArticleRef(
        title=request.title,
        link=request.article_link,
        source=request.source,
        description=request.description,
    )
    try:
        text = summarize_article(article, kind, client=client)
    except GenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to generate summary", "details": str(exc)},
        ) from exc

    summary = store.upsert_summary(
        request.article_link,
        request.title,
        kind,
        text,
        cves=find_cves(request.title, request.description),
    )
    return {
        "success": True,
        "summary": summary.to_wire(),
        "generated": kind,
        "cached": False,
    }


@app.post("/generate-content")
def create_content(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
    client: Any = Depends(get_llm_client),
) -> Dict[str, Any]:
    request = _parse(ContentPayload, payload)
    if not request.articles:
        raise _bad_request("No articles provided")
    try:
        content = generate_content(
            request.articles,
            request.content_type,
            focus_area=request.focus_area,
            tone=request.tone,
            client=client,
        )
    except GenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to generate content", "details": str(exc)},
        ) from exc

    record = store.add_content(
        GeneratedContent(
            user_id=user.user_id,
            content_type=request.content_type,
            title=f"{request.content_type}: {request.articles[0].title}"[:200],
            content=content,
            focus_area=request.focus_area,
            tone=request.tone,
            source_links=[a.link for a in request.articles if a.link],
        )
    )
    return {
        "success": True,
        "id": record.id,
        "content": content,
        "contentType": request.content_type,
        "articleCount": len(request.articles),
    }


@app.get("/content-history")
def content_history(
    limit: int = 20,
    content_type: Optional[str] = Query(None, alias="contentType"),
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    history = store.list_content(user, content_type=content_type, limit=limit)
    return {"success": True, "history": _wire(history), "count": len(history)}


@app.delete("/content-history")
def delete_content(
    payload: Dict[str, Any],
    user: Principal = Depends(current_user),
    store: Store = Depends(get_store),
) -> Dict[str, Any]:
    content_id = payload.get("id")
    if not content_id:
        raise _bad_request("Content ID required")
    try:
        store.delete_content(user, content_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"success": True, "message": "Content deleted"}


# --- Prompt helpers ---------------------------------------------------------

@app.post("/enhance-prompt")
def create_enhanced_prompt(
    payload: Dict[str, Any],
    client: Any = Depends(get_llm_client),
) -> Dict[str, Any]:
    request = _parse(EnhancePromptPayload, payload)
    if not request.user_prompt.strip():
        raise _bad_request("User prompt is required")
    try:
        text = enhance_prompt(
            request.user_prompt,
            request.mode or "",
            methodology=request.methodology,
            previous_steps=request.previous_steps,
            client=client,
        )
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc
    except GenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to enhance prompt", "details": str(exc)},
        ) from exc
    return {
        "success": True,
        "enhancedPrompt": text,
        "mode": request.mode,
        "step": len(request.previous_steps) + 1,
    }


@app.post("/prompt-assistant")
def prompt_assistant(
    payload: Dict[str, Any],
    client: Any = Depends(get_llm_client),
) -> Dict[str, Any]:
    request = _parse(AssistantPayload, payload)
    if not request.user_prompt.strip():
        raise _bad_request("Prompt is required")
    try:
        text = assist_prompt(request.user_prompt, request.action or "", client=client)
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc
    except GenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to process prompt", "details": str(exc)},
        ) from exc
    return {"result": text}



def run(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    import uvicorn

    uvicorn.run("security_pulse.server:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run(
        host=os.getenv("PULSE_HOST", "0.0.0.0"),
        port=int(os.getenv("PULSE_PORT", "8000")),
        reload=os.getenv("PULSE_RELOAD", "false").lower() == "true",
    )
