"""Logging setup with contextvars-based metadata injection.

- Adds the category and document being processed into every log line.
- JSON or plain text output, console only or console + rotating file.
"""
from __future__ import annotations

import contextvars
import json
import logging
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator

from .config import settings

cv_category = contextvars.ContextVar("category", default="-")
cv_document = contextvars.ContextVar("document", default="-")


class ContextInjectFilter(logging.Filter):
    """Inject context variables into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.category = cv_category.get() or "-"
        record.document = cv_document.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "category": getattr(record, "category", "-"),
            "document": getattr(record, "document", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


@contextmanager
def log_context(*, category: str | None = None, document: str | None = None) -> Iterator[None]:
    """Tag log lines emitted inside the block with a category and/or document."""
    tokens = []
    if category is not None:
        tokens.append((cv_category, cv_category.set(category)))
    if document is not None:
        tokens.append((cv_document, cv_document.set(document)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def setup_logging(
    *,
    level: str | None = None,
    fmt: str | None = None,
    log_file: str | Path | None = None,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> None:
    """Configure root logging from `LoggingSettings`, with optional overrides.

    Args:
        level: Log level name (default LOG_LEVEL)
        fmt: "json" or "text" (default LOG_FORMAT)
        log_file: Path of a rotating log file (default LOG_FILE, unset = console only)
        max_bytes: Max log file size before rotation
        backup_count: Number of backup files to keep
    """
    level = (level or settings.logging.level).upper()
    fmt = fmt or settings.logging.format
    log_file = log_file if log_file is not None else settings.logging.file

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    if fmt == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s | c=%(category)s d=%(document)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    ctx_filter = ContextInjectFilter()

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    ch.addFilter(ctx_filter)
    root.addHandler(ch)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        fh.setFormatter(formatter)
        fh.addFilter(ctx_filter)
        root.addHandler(fh)

    # Reduce noise from driver and HTTP libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level={level}, format={fmt}, file={log_file or 'None'})")
