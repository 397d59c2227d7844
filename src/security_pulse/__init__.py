"""Security news aggregation, curation and LLM-assisted content generation."""

__all__ = [
    "aggregator",
    "cli",
    "config",
    "fetcher",
    "generation",
    "models",
    "parser",
    "server",
    "signals",
    "store",
]
