"""Command-line entry points for the security pulse service."""

import asyncio
import json
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlparse

import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .aggregator import aggregate_news
from .config import get_settings
from .logging_config import configure_logging
from .models import FeedSource, NewsItem
from .signals import annotate, extract_trending_topics
from .store import Store, default_feed_sources

app = typer.Typer(help="Aggregate security news feeds and surface what matters.")

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "dim",
}


@app.callback()
def _setup() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json=settings.log_json)


def _feed_sources(feeds: Optional[List[str]]) -> List[FeedSource]:
    """Ad-hoc URLs win; otherwise stored active sources, else the defaults."""
    if feeds:
        sources = []
        for url in feeds:
            parsed = urlparse(url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise typer.BadParameter(f"Not an http(s) feed URL: {url}")
            sources.append(FeedSource(name=parsed.netloc, url=url))
        return sources
    store = Store()
    if store.sources.exists():
        return store.list_active_sources()
    return default_feed_sources()


def _load_seen_links(path: Optional[Path]) -> List[str]:
    """Accept a JSON array of links or a plain file with one link per line."""
    if path is None:
        return []
    if not path.exists():
        raise typer.BadParameter(f"Seen-links file not found: {path}")
    text = path.read_text(encoding="utf-8")
    if text.lstrip().startswith("["):
        data = json.loads(text)
        if not isinstance(data, list):
            raise typer.BadParameter("Seen-links JSON must be an array of links.")
        return [str(link) for link in data]
    return [line.strip() for line in text.splitlines() if line.strip()]


def _write_json(out_path: Path, payload: Any) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def _news_table(rows: List[dict]) -> Table:
    table = Table(title=f"Security news ({len(rows)} items)")
    table.add_column("Severity", no_wrap=True)
    table.add_column("Published", no_wrap=True)
    table.add_column("Source")
    table.add_column("Title")
    table.add_column("CVEs")
    for row in rows:
        style = SEVERITY_STYLES.get(row["severity"], "")
        table.add_row(
            f"[{style}]{row['severityLabel']}[/{style}]" if style else row["severityLabel"],
            row["pubDate"][:16],
            # Feed text is untrusted; keep it out of rich markup.
            escape(row["source"]),
            escape(row["title"]),
            escape(", ".join(row["cves"])),
        )
    return table


@app.command("news")
def news_command(
    feed: Optional[List[str]] = typer.Option(
        None,
        "--feed",
        "-f",
        help="Feed URL to fetch (repeatable). Defaults to the stored active sources.",
    ),
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", min=0, help="Maximum number of items to show."
    ),
    json_out: Optional[Path] = typer.Option(
        None, "--json", help="Also write the annotated items to this JSON file."
    ),
):
    """Fetch every feed concurrently and print a newest-first table."""
    sources = _feed_sources(feed)
    if not sources:
        rprint("[yellow]No active feed sources configured.[/yellow]")
        raise typer.Exit(code=0)

    rprint(f"[cyan]Fetching {len(sources)} feed(s)...[/cyan]")
    items: List[NewsItem] = asyncio.run(aggregate_news(sources, limit=limit))
    rows = [annotate(item) for item in items]
    Console().print(_news_table(rows))

    if json_out:
        _write_json(json_out, rows)
        rprint(f"[cyan]Wrote {len(rows)} items to {escape(str(json_out))}[/cyan]")


@app.command("trending")
def trending_command(
    seen: Optional[Path] = typer.Option(
        None,
        "--seen",
        help="File of previously seen links (JSON array or one per line).",
    ),
    feed: Optional[List[str]] = typer.Option(None, "--feed", "-f"),
):
    """Print keywords covered by at least two sources."""
    seen_links = _load_seen_links(seen)
    items = asyncio.run(aggregate_news(_feed_sources(feed)))
    topics = extract_trending_topics(items, seen_links)
    if not topics:
        rprint("[yellow]No trending topics right now.[/yellow]")
        return
    for topic in topics:
        marker = " [green]NEW[/green]" if topic.is_new else ""
        rprint(
            f"[bold]{escape(topic.keyword)}[/bold] "
            f"({topic.source_count} sources, {len(topic.articles)} articles){marker}"
        )
        for article in topic.articles:
            rprint(f"  - {escape(article.title)} [dim]({escape(article.source)})[/dim]")


@app.command("seed-sources")
def seed_sources_command():
    """Insert the default feed sources that are not stored yet."""
    store = Store()
    created = store.seed_sources(default_feed_sources())
    if created:
        rprint(f"[green]Added {len(created)} feed source(s) under {store.root}[/green]")
    else:
        rprint("[cyan]All default feed sources already present.[/cyan]")


@app.command("serve")
def serve_command(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the HTTP API with uvicorn."""
    from .server import run

    run(host=host, port=port, reload=reload)


def main():
    app()


if __name__ == "__main__":
    main()
