from pathlib import Path

import pytest

from security_pulse.identity import GUEST, Principal
from security_pulse.store import Store


def rss(*items: str) -> str:
    return (
        '<?xml version="1.0"?><rss version="2.0"><channel><title>Feed</title>'
        + "".join(items)
        + "</channel></rss>"
    )


def rss_item(title: str, link: str, pub_date: str = "", description: str = "") -> str:
    parts = [f"<title>{title}</title>", f"<link>{link}</link>"]
    if pub_date:
        parts.append(f"<pubDate>{pub_date}</pubDate>")
    if description:
        parts.append(f"<description>{description}</description>")
    return "<item>" + "".join(parts) + "</item>"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    """Keep every test away from the real data dir, API key and feed cache."""
    monkeypatch.setenv("PULSE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SEED_DEFAULT_SOURCES", "false")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("FEED_CACHE_TTL_S", "0")
    yield


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(tmp_path / "store")


@pytest.fixture
def principal() -> Principal:
    return GUEST
