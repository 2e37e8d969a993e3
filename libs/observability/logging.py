# libs/observability/logging.py
from __future__ import annotations

import logging
from typing import Optional

import structlog


def _to_level(level: str | int) -> int:
    """'INFO' / 'info' / 20 -> 20; unknown names fall back to INFO."""
    if isinstance(level, int):
        return level
    lvl = logging.getLevelName(str(level).upper())
    return lvl if isinstance(lvl, int) else logging.INFO


def setup_logging(level: str | int = "INFO", *, json: bool = True) -> None:
    """
    One-time structlog setup for a process entry point (API factory, worker CLI).
    json=False renders key=value lines for local terminals.
    Components are handed a bound logger; nothing here is imported by them.
    """
    if structlog.is_configured():
        return

    lvl = _to_level(level)
    logging.basicConfig(level=lvl, format="%(message)s")

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(request_id: str, trace_id: Optional[str] = None) -> None:
    """Attach ids to every log line emitted while handling the current request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, trace_id=trace_id or request_id)
