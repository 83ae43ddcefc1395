"""
observability/logger.py — Gateway Client Logging

One structlog pipeline for the client and the chat UI. Records go to
`clawchat.log` as JSON lines; stderr gets a copy only when
`logging.console_output` is on, because the REPL owns stdout.

    setup_logging(level="DEBUG", log_dir="data/logs")
    bind_gateway("ws://127.0.0.1:18789", "main")
    get_logger(__name__).info("gateway_client.connected")
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog

_QUIET_LOGGERS = [
    "websockets",
    "websockets.client",
    "asyncio",
]


def _quiet_library_loggers() -> None:
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# Applied to structlog events and to plain stdlib records alike
_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_SHARED_PROCESSORS,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Route structlog and stdlib records into the rotating JSON file, and onto
    stderr when `console_output` is set (`json_format=False` switches stderr
    to the coloured dev renderer). Safe to call again; handlers are replaced.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / "clawchat.log",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handlers: list[logging.Handler] = [file_handler]
    renderers: list[Any] = [structlog.processors.JSONRenderer()]

    if console_output:
        handlers.append(logging.StreamHandler(sys.stderr))
        renderers.append(
            structlog.processors.JSONRenderer()
            if json_format
            else structlog.dev.ConsoleRenderer(colors=True)
        )

    for handler, renderer in zip(handlers, renderers):
        handler.setLevel(numeric_level)
        handler.setFormatter(_formatter(renderer))

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )
    _quiet_library_loggers()

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "clawchat", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Module logger; `initial_values` are bound to every event it emits."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_gateway(url: str, session_key: str = "main") -> None:
    """Tag every log line from this context (and tasks it spawns) with the endpoint and session."""
    structlog.contextvars.bind_contextvars(gateway_url=url, session_key=session_key)


def clear_gateway() -> None:
    """Drop the tags set by bind_gateway()."""
    structlog.contextvars.clear_contextvars()
