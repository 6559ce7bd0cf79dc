"""
Structured logging for the content repository.

Library modules log through ``get_logger()``, which attaches keyword fields to
each record and never installs handlers: until an application calls
``setup_logging()`` the records only reach the host's own logging
configuration. The CLI calls ``setup_logging()`` to get a rich console
handler and, optionally, a JSON Lines log file.

The repository root and current operation are carried in a context variable
set with ``log_context()`` and stamped on every record logged inside it.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Mapping

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

LIBRARY_LOGGER = "contentrepo"

_context_var: ContextVar[Mapping[str, str]] = ContextVar("log_context", default={})

# Handlers installed by setup_logging(), replaced on the next call
_installed_handlers: list[logging.Handler] = []

logging.getLogger(LIBRARY_LOGGER).addHandler(logging.NullHandler())


def current_context() -> dict[str, str]:
    """Fields set by the enclosing log_context() blocks."""
    return dict(_context_var.get())


@contextmanager
def log_context(**fields: str | None) -> Generator[None, None, None]:
    """Scope context fields such as ``repo_root`` and ``operation``.

    Nested blocks add to the outer fields; None values are ignored.
    """
    merged = {**_context_var.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _context_var.set(merged)
    try:
        yield
    finally:
        _context_var.reset(token)


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {**getattr(record, "context", {}), **getattr(record, "fields", {})}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context and fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_record_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode()


class ContextRichHandler(RichHandler):
    """Rich console handler showing the operation and the record's fields."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        operation = getattr(record, "context", {}).get("operation")
        if operation:
            level_text.append(f" {operation}", style="cyan")
        return level_text

    def render_message(self, record: logging.LogRecord, message: str) -> Any:
        text = super().render_message(record, message)
        fields = getattr(record, "fields", {})
        if fields and isinstance(text, Text):
            text.append(" " + " ".join(f"{key}={value}" for key, value in fields.items()), style="dim")
        return text


class ContextLogger:
    """Logger taking structured fields as keyword arguments.

    ``logger.info("Content added", path=str(path))`` logs the message with
    ``path`` attached as a field.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _log(self, level: int, msg: str, exc_info: Any = False, **fields: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(
                level,
                msg,
                exc_info=exc_info,
                stacklevel=3,
                extra={"context": current_context(), "fields": fields},
            )

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, exc_info: Any = False, **fields: Any) -> None:
        self._log(logging.ERROR, msg, exc_info=exc_info, **fields)


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Install console and file handlers on the ``contentrepo`` logger.

    Meant for applications such as the CLI. Calling it again replaces the
    handlers it installed before and leaves any others alone.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: JSON Lines log file. If None, no file is written.
        console_output: Whether to log to stderr through rich.
    """
    level = getattr(logging, log_level.upper())
    library_logger = logging.getLogger(LIBRARY_LOGGER)
    for handler in _installed_handlers:
        library_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        _installed_handlers.append(file_handler)

    if console_output:
        console_handler = ContextRichHandler(
            console=Console(stderr=True),
            level=level,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        _installed_handlers.append(console_handler)

    for handler in _installed_handlers:
        library_logger.addHandler(handler)

    # The file handler takes DEBUG, so the logger itself stays open for it
    library_logger.setLevel(logging.DEBUG if log_file else level)
    library_logger.propagate = False


def get_logger(name: str) -> ContextLogger:
    """Get a structured logger below ``contentrepo``.

    Args:
        name: Logger name (usually __name__).
    """
    if name != LIBRARY_LOGGER and not name.startswith(f"{LIBRARY_LOGGER}."):
        name = f"{LIBRARY_LOGGER}.{name}"
    return ContextLogger(logging.getLogger(name))
