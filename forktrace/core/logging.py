"""Logging setup for replay runs.

Provides:
  - One JSON object per line in staging/production (CI, log shipping)
  - Compact coloured lines for local debugging
  - Replay context (tx hash, fork port, retry attempt) lifted from ``extra=``
    or stamped onto every record by :func:`replay_context`
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

# Fields callers attach through ``extra=`` that are worth surfacing.
CONTEXT_FIELDS = ("tx_hash", "port", "fork_block", "attempt", "action", "duration_ms")

NOISY_LOGGERS = ("httpcore", "httpx", "urllib3", "asyncio", "web3", "anthropic", "openai")


def context_of(record: logging.LogRecord) -> dict[str, Any]:
    """Replay context fields present on ``record``, in declaration order."""
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(context_of(record))

        if record.exc_info and record.exc_info[1]:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """Coloured one-line formatter: ``12:00:01 [ INFO] [0xabcdef12:8545] logger: msg``."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        level = f"[{record.levelname:>5s}]"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        tag = self._tag(context_of(record))
        line = f"{stamp} {level} {tag}{record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def _tag(context: dict[str, Any]) -> str:
        parts = []
        if context.get("tx_hash"):
            parts.append(str(context["tx_hash"])[:10])
        if context.get("port"):
            parts.append(str(context["port"]))
        return f"[{':'.join(parts)}] " if parts else ""


class ReplayContextFilter(logging.Filter):
    """Stamp replay context onto records that do not already carry it."""

    def __init__(self, **context: Any) -> None:
        super().__init__()
        self.context = {k: v for k, v in context.items() if k in CONTEXT_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def replay_context(**context: Any) -> Iterator[ReplayContextFilter]:
    """Attach ``context`` to every record emitted through the root handlers."""
    context_filter = ReplayContextFilter(**context)
    handlers = list(logging.getLogger().handlers)
    for handler in handlers:
        handler.addFilter(context_filter)
    try:
        yield context_filter
    finally:
        for handler in handlers:
            handler.removeFilter(context_filter)


def setup_logging(
    env: str = "development",
    log_level: str = "INFO",
    use_color: bool = True,
) -> None:
    """Configure logging for the application.

    Args:
        env: Application environment (development/staging/production)
        log_level: Minimum log level
        use_color: Emit ANSI colours in development output
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if env in ("staging", "production"):
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(DevFormatter(use_color=use_color and sys.stderr.isatty()))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers[:] = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
