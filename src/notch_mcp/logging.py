"""Log files for notch-mcp.

Neither process logs to a stream: stdout of ``notch-mcp serve`` is the
MCP stdio transport.  Each log file gets a RotatingFileHandler on a
named logger, and children of that logger propagate into it.

Structured files hold one JSON object per line::

    {"timestamp": "2025-01-01T12:00:00.123Z", "level": "INFO",
     "logger": "notch-mcp.server", "message": "...",
     "request_id": "...", "tool_name": "...", "duration_ms": 12.5,
     "context": {...}}

``request_id``, ``tool_name`` and ``duration_ms`` are lifted to the top
level so a single request can be followed with ``grep`` or ``jq``; any
other fields passed through :func:`log_fields` stay under ``context``.
The server lifecycle log is plain text.
"""

from __future__ import annotations

import json
import logging
import os
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Optional


SERVER_LOG = "/tmp/notch-mcp-server.log"
TOOL_ERROR_LOG = "/tmp/notch-mcp-tool-error.log"
DISPLAY_LOG = "/tmp/notch-mcp-display.log"

MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

PLAIN_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
PLAIN_DATEFMT = "%Y-%m-%d %H:%M:%S"

REQUEST_KEYS = ("request_id", "tool_name", "duration_ms")

LIBRARY_LOGGERS = ("mcp", "mcp.server", "mcp.server.lowlevel", "asyncio", "httpx")


class RequestJsonFormatter(logging.Formatter):
    """One JSON object per record, request fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = dict(getattr(record, "context", None) or {})
        for key in REQUEST_KEYS:
            value = context.pop(key, None)
            if value is None:
                value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _has_file_handler(logger: logging.Logger, path: str) -> bool:
    target = os.path.abspath(path)
    return any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == target
        for h in logger.handlers
    )


def log_to_file(
    name: str,
    path: str = DISPLAY_LOG,
    level: int = logging.DEBUG,
    *,
    structured: bool = True,
    max_bytes: int = MAX_BYTES,
    backup_count: int = BACKUP_COUNT,
) -> logging.Logger:
    """Attach a rotating file handler for *path* to logger *name*.

    Safe to call repeatedly: a logger never gets two handlers for the
    same file.  ``structured=False`` writes plain ``[time] LEVEL: msg``
    lines instead of JSON.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if _has_file_handler(logger, path):
        return logger

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    if structured:
        handler.setFormatter(RequestJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, PLAIN_DATEFMT))
    logger.addHandler(handler)
    return logger


def log_fields(
    *,
    request_id: Optional[str] = None,
    tool_name: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **context: Any,
) -> dict[str, Any]:
    """Build the ``extra=`` mapping for a structured log call.

    ::

        log.info("resolved", extra=log_fields(request_id=rid, duration_ms=ms))

    Empty or None values are left out.
    """
    fields: dict[str, Any] = {k: v for k, v in context.items() if v not in (None, "")}
    if request_id:
        fields["request_id"] = request_id
    if tool_name:
        fields["tool_name"] = tool_name
    if duration_ms is not None:
        fields["duration_ms"] = round(duration_ms, 1)
    return {"context": fields}


def recent_problems(
    path: str,
    limit: int = 3,
    scan: int = 200,
    min_level: int = logging.WARNING,
) -> list[dict[str, Any]]:
    """Return the last *limit* structured entries at or above *min_level*.

    Only the final *scan* lines of *path* are read.  Plain-text and
    malformed lines are skipped; a missing file yields ``[]``.
    """
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            tail = deque(f, maxlen=scan)
    except OSError:
        return []

    problems = []
    for line in tail:
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if not isinstance(entry, dict):
            continue
        levelno = logging.getLevelName(str(entry.get("level", "")).upper())
        if isinstance(levelno, int) and levelno >= min_level:
            problems.append(entry)
    return problems[-limit:] if limit > 0 else []


def quiet_library_loggers() -> None:
    """Raise library loggers to WARNING and drop any handlers they added."""
    for name in LIBRARY_LOGGERS:
        lib = logging.getLogger(name)
        lib.setLevel(logging.WARNING)
        lib.handlers = []
