"""structlog setup shared by the API server and the CLI."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List

import structlog

_CONFIGURED = False


def _add_ts(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault(
        "ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    )
    return event_dict


def _add_service(service_name: str):
    def _inner(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return _inner


def _stderr_logger(*_: Any) -> structlog.PrintLogger:
    # Resolve sys.stderr per logger so redirected streams (CLI runners) are honored.
    return structlog.PrintLogger(file=sys.stderr)


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    service_name: str = "security-pulse",
    *,
    level: int | str = logging.INFO,
    json: bool = False,
) -> None:
    """Configure one global structlog stack; safe to call repeatedly."""
    global _CONFIGURED

    numeric_level = _resolve_level(level)
    logging.basicConfig(
        level=numeric_level,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_ts,
        _add_service(service_name),
    ]
    if json:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None) -> Any:
    """Return a lazy logger proxy; configures defaults on first use."""
    if not _CONFIGURED:
        configure_logging()
    if name:
        # Initial context stays lazy; "logger" is reserved by wrap_logger.
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()
