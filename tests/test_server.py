from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import rss, rss_item
from security_pulse.fetcher import FeedFetcher
from security_pulse.server import app, get_fetcher, get_llm_client, get_store
from security_pulse.store import Store

FEEDS = {
    "https://a.example/feed": rss(
        rss_item(
            "Critical Zero-Day in Oracle (CVE-2024-5678)",
            "https://x/1",
            "Mon, 01 Jan 2024 00:00:00 GMT",
        ),
        rss_item("Oracle patch guidance", "https://x/2", "Tue, 02 Jan 2024 00:00:00 GMT"),
    ),
    "https://b.example/feed": rss(
        rss_item("Oracle exploit spreads", "https://x/3", "Wed, 03 Jan 2024 00:00:00 GMT"),
    ),
}


def _feed_handler(request: httpx.Request) -> httpx.Response:
    body = FEEDS.get(str(request.url))
    if body is None:
        return httpx.Response(500)
    return httpx.Response(200, text=body)


class FakeResponses:
    def __init__(self, text="Generated text"):
        self.text = text
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.text is None:
            return SimpleNamespace(output_text="", status="failed", error="boom")
        return SimpleNamespace(output_text=self.text, status="completed")


class FakeLLM:
    def __init__(self, text="Generated text"):
        self.responses = FakeResponses(text)


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(tmp_path / "api")


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def client(store, llm):
    fetcher = FeedFetcher(
        user_agent="Test-Agent/1.0", transport=httpx.MockTransport(_feed_handler)
    )
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_fetcher] = lambda: fetcher
    app.dependency_overrides[get_llm_client] = lambda: llm
    yield TestClient(app)
    app.dependency_overrides.clear()


def _add_feeds(client: TestClient) -> None:
    for name, url in (("A", "https://a.example/feed"), ("B", "https://b.example/feed")):
        resp = client.post("/rss-sources", json={"name": name, "url": url})
        assert resp.status_code == 200


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_cors_wildcard_disables_credentials():
    cors = next(
        m for m in app.user_middleware if m.cls.__name__ == "CORSMiddleware"
    )
    assert cors.kwargs["allow_origins"] == ["*"]
    assert cors.kwargs["allow_credentials"] is False


def test_security_news_without_sources_is_empty(client):
    resp = client.get("/security-news")
    assert resp.status_code == 200
    assert resp.json() == []


def test_security_news_merges_active_sources(client):
    _add_feeds(client)
    client.post(
        "/rss-sources",
        json={"name": "Down", "url": "https://down.example/feed", "isActive": True},
    )

    resp = client.get("/security-news")

    assert resp.status_code == 200
    items = resp.json()
    assert [item["link"] for item in items] == ["https://x/3", "https://x/2", "https://x/1"]
    assert set(items[0]) == {"title", "link", "pubDate", "source"}


def test_security_news_annotated(client):
    _add_feeds(client)

    items = client.get("/security-news", params={"annotate": "true"}).json()

    oracle = next(item for item in items if item["link"] == "https://x/1")
    assert oracle["severity"] == "critical"
    assert oracle["cves"] == ["CVE-2024-5678"]


def test_trending_with_explicit_items(client):
    items = [
        {"title": "Oracle exploit", "link": "https://x/1", "pubDate": "2024-01-01", "source": "A"},
        {"title": "Oracle patch", "link": "https://x/2", "pubDate": "2024-01-01", "source": "B"},
    ]

    resp = client.post(
        "/security-news/trending",
        json={"items": items, "previouslySeenLinks": ["https://x/1", "https://x/2"]},
    )

    assert resp.status_code == 200
    topics = resp.json()["topics"]
    assert topics[0]["keyword"] == "oracle"
    assert topics[0]["sourceCount"] == 2
    assert topics[0]["isNew"] is False


def test_trending_aggregates_when_items_missing(client):
    _add_feeds(client)

    resp = client.post("/security-news/trending", json={})

    assert resp.status_code == 200
    assert resp.json()["topics"][0]["keyword"] == "oracle"


def test_rss_source_crud(client):
    resp = client.post("/rss-sources", json={"name": "Krebs", "url": "https://krebs/feed"})
    source_id = resp.json()["source"]["id"]

    dup = client.post("/rss-sources", json={"name": "Again", "url": "https://krebs/feed"})
    assert dup.status_code == 409
    assert dup.json()["detail"]["source"]["id"] == source_id

    assert client.post("/rss-sources", json={"name": "No url"}).status_code == 400

    patched = client.patch("/rss-sources", json={"id": source_id, "isActive": False})
    assert patched.json()["source"]["isActive"] is False

    listing = client.get("/rss-sources").json()
    assert listing["count"] == 1

    assert client.request("DELETE", "/rss-sources", json={"id": source_id}).status_code == 200
    missing = client.request("DELETE", "/rss-sources", json={"id": source_id})
    assert missing.status_code == 404


def test_saved_articles_flow(client):
    article = {"title": "Exchange bug", "link": "https://x/1", "source": "A", "tags": ["mail"]}

    created = client.post("/saved-articles", json=article)
    assert created.status_code == 200
    article_id = created.json()["article"]["id"]

    assert client.post("/saved-articles", json=article).status_code == 409
    assert client.post("/saved-articles", json={"title": "x"}).status_code == 400

    listing = client.get("/saved-articles", params={"tag": "mail"}).json()
    assert listing["count"] == 1
    assert listing["articles"][0]["userId"] == "guest-user"

    patched = client.patch("/saved-articles", json={"id": article_id, "notes": "triage"})
    assert patched.json()["article"]["notes"] == "triage"

    removed = client.request("DELETE", "/saved-articles", json={"link": "https://x/1"})
    assert removed.status_code == 200
    assert client.get("/saved-articles").json()["count"] == 0


def test_reading_list_priority_validation_and_order(client):
    base = {"source": "A"}
    client.post("/reading-list", json={**base, "title": "Low", "link": "https://x/l", "priority": "low"})
    client.post("/reading-list", json={**base, "title": "High", "link": "https://x/h", "priority": "high"})

    bad = client.post(
        "/reading-list",
        json={**base, "title": "Bad", "link": "https://x/b", "priority": "urgent"},
    )
    assert bad.status_code == 400

    items = client.get("/reading-list").json()["items"]
    assert [item["title"] for item in items] == ["High", "Low"]


def test_read_state_endpoints(client):
    resp = client.post(
        "/read-state", json={"articleLink": "https://x/1", "articleTitle": "Story"}
    )
    assert resp.json()["message"] == "Marked as read"

    bulk = client.patch(
        "/read-state", json={"articleLinks": ["https://x/1", "https://x/2"], "isRead": False}
    )
    assert bulk.json()["updated"] == 2

    states = client.get("/read-state", params={"links": "https://x/2"}).json()
    assert states["count"] == 1
    assert states["readStates"][0]["isRead"] is False

    assert client.patch("/read-state", json={}).status_code == 400
    deleted = client.request("DELETE", "/read-state", json={"articleLink": "https://x/2"})
    assert deleted.status_code == 200


def test_search_endpoint(client):
    client.post("/saved-articles", json={"title": "Okta breach", "link": "https://x/1", "source": "A"})

    resp = client.get("/search", params={"q": "okta"})
    assert resp.json()["totalResults"] == 1

    assert client.get("/search").status_code == 400
    assert client.get("/search", params={"q": "okta", "type": "bogus"}).status_code == 400


def test_article_summary_generates_then_caches(client, llm):
    payload = {
        "articleLink": "https://x/1",
        "title": "Exchange zero-day CVE-2024-1234",
        "source": "A",
    }

    first = client.post("/article-summary", json=payload)
    second = client.post("/article-summary", json=payload)

    assert first.status_code == 200
    assert first.json()["cached"] is False
    assert first.json()["summary"]["summary"] == "Generated text"
    assert first.json()["summary"]["cves"] == ["CVE-2024-1234"]
    assert second.json()["cached"] is True
    assert len(llm.responses.calls) == 1

    eli5 = client.post("/article-summary", json={**payload, "type": "eli5"})
    assert eli5.json()["summary"]["eli5"] == "Generated text"
    assert len(llm.responses.calls) == 2

    fetched = client.get("/article-summary", params={"link": "https://x/1"})
    assert fetched.status_code == 200
    assert client.get("/article-summary", params={"link": "https://x/9"}).status_code == 404


def test_article_summary_failure_is_bad_gateway(client, llm):
    llm.responses.text = None

    resp = client.post(
        "/article-summary", json={"articleLink": "https://x/1", "title": "Story"}
    )

    assert resp.status_code == 502
    assert resp.json()["detail"]["error"] == "Failed to generate summary"


def test_generate_content_persists_history(client, llm):
    articles = [{"title": "Okta breach", "link": "https://x/1", "source": "A"}]

    resp = client.post(
        "/generate-content",
        json={"contentType": "Executive Summary", "articles": articles, "tone": "Urgent"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["content"] == "Generated text"
    assert body["articleCount"] == 1

    history = client.get("/content-history").json()
    assert history["count"] == 1
    assert history["history"][0]["sourceLinks"] == ["https://x/1"]

    filtered = client.get("/content-history", params={"contentType": "Slide Bullets"})
    assert filtered.json()["count"] == 0

    deleted = client.request("DELETE", "/content-history", json={"id": body["id"]})
    assert deleted.status_code == 200
    assert client.get("/content-history").json()["count"] == 0


def test_generate_content_requires_articles(client):
    resp = client.post("/generate-content", json={"contentType": "Slide Bullets", "articles": []})
    assert resp.status_code == 400


def test_analytics_overview(client):
    client.post("/read-state", json={"articleLink": "https://x/1", "articleTitle": "Oracle exploit"})

    resp = client.get("/analytics", params={"days": 7})

    assert resp.status_code == 200
    assert resp.json()["readArticles"] == 1
    assert resp.json()["topTopics"][0]["topic"] == "oracle"


def test_analytics_views(client):
    for link, title in (
        ("https://x/1", "Oracle exploit spreads"),
        ("https://x/2", "Oracle patch guidance"),
    ):
        client.post("/read-state", json={"articleLink": link, "articleTitle": title})
    for link, source in (("https://x/1", "A"), ("https://x/2", "B"), ("https://x/3", "B")):
        client.post(
            "/saved-articles", json={"title": "Story", "link": link, "source": source}
        )

    patterns = client.get("/analytics", params={"type": "reading-patterns"}).json()
    trending = client.get("/analytics", params={"type": "trending"}).json()
    sources = client.get("/analytics", params={"type": "sources"}).json()
    fallback = client.get("/analytics", params={"type": "unknown"}).json()

    assert patterns["patterns"]["totalReads"] == 2
    assert patterns["patterns"]["avgPerDay"] == 2.0
    assert sum(row["count"] for row in patterns["patterns"]["hourlyActivity"]) == 2
    assert trending["trending"][0] == {"keyword": "oracle", "count": 2}
    assert sources["sources"] == [
        {"source": "B", "count": 2},
        {"source": "A", "count": 1},
    ]
    assert fallback["readArticles"] == 2


def test_analytics_post_upserts_todays_record(client, store):
    first = client.post("/analytics", json={"articlesRead": 3, "topSources": ["A"]})
    second = client.post("/analytics", json={"articlesRead": 5, "timeSpent": 120})

    assert first.status_code == 200
    assert second.status_code == 200
    record = second.json()["analytics"]
    assert record["articlesRead"] == 5
    assert record["timeSpent"] == 120
    assert record["topSources"] == []
    assert record["id"] == first.json()["analytics"]["id"]
    assert len(store.daily_analytics.load()) == 1


def test_enhance_prompt_endpoint(client, llm):
    resp = client.post(
        "/enhance-prompt",
        json={
            "userPrompt": "Write a phishing awareness memo",
            "mode": "learn",
            "methodology": "CRIT",
            "previousSteps": [{"input": "memo", "enhanced": "Draft a memo"}],
        },
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body == {
        "success": True,
        "enhancedPrompt": "Generated text",
        "mode": "learn",
        "step": 2,
    }
    prompt = llm.responses.calls[0]["input"][0]["content"]
    assert "Step 1:" in prompt
    assert "Draft a memo" in prompt
    assert "CRIT framework" in prompt


def test_enhance_prompt_rejects_bad_input(client):
    missing = client.post("/enhance-prompt", json={"mode": "enhance"})
    bad_mode = client.post("/enhance-prompt", json={"userPrompt": "x", "mode": "remix"})

    assert missing.status_code == 400
    assert bad_mode.status_code == 400


def test_prompt_assistant_endpoint(client, llm):
    ok = client.post(
        "/prompt-assistant", json={"userPrompt": "summarize logs", "action": "improve"}
    )
    bad = client.post("/prompt-assistant", json={"userPrompt": "x", "action": "rhyme"})
    llm.responses.text = None
    failed = client.post(
        "/prompt-assistant", json={"userPrompt": "summarize logs", "action": "explain"}
    )

    assert ok.status_code == 200
    assert ok.json() == {"result": "Generated text"}
    assert "summarize logs" in llm.responses.calls[0]["input"][0]["content"]
    assert bad.status_code == 400
    assert failed.status_code == 502
