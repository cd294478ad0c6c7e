"""patchmedic.logging_utils

One log format for the watcher, the patch manager and the CLI:

    2024-06-01 12:00:00 | WARNING | log_watcher   | GGG/POE1 pid=4242 | Partial transfer detected (3/10)

Timestamps are UTC so lines can be lined up against client logs sent in
from other timezones. The session column is filled by SessionLoggerAdapter
and reads "-" for records that carry no game session.

Env:
    PATCHMEDIC_LOG_LEVEL   default level (INFO)
    PATCHMEDIC_LOG_FILE    also append to this file
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)-13s | %(session)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Chatty at INFO: one connection-pool line per CDN file.
_QUIET_LOGGERS = ("urllib3", "requests")


class SessionFormatter(logging.Formatter):
    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "session"):
            record.session = "-"
        return super().format(record)


def _own_handlers(root: logging.Logger) -> list[logging.Handler]:
    return [h for h in root.handlers if getattr(h, "_patchmedic", False)]


def setup_logging(level: Optional[str] = None) -> None:
    """Install the patchmedic handlers on the root logger.

    Calling it again only re-applies the level, so the CLI and embedding
    code can both call it.
    """
    level_name = (level or os.getenv("PATCHMEDIC_LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if _own_handlers(root):
        return

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = os.getenv("PATCHMEDIC_LOG_FILE")
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    formatter = SessionFormatter(LOG_FORMAT, LOG_DATEFMT)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._patchmedic = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def session_label(service_id: str | None, game_id: str | None = None, pid: int | None = None) -> str:
    """Label such as `GGG/POE1 pid=4242`; "-" when there is no service."""
    if not service_id:
        return "-"
    label = f"{service_id}/{game_id}" if game_id else str(service_id)
    if pid:
        label = f"{label} pid={pid}"
    return label


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Stamps every record with the game session it belongs to."""

    def __init__(
        self,
        logger: logging.Logger,
        service_id: str | None,
        game_id: str | None = None,
        pid: int | None = None,
    ):
        super().__init__(logger, {"session": session_label(service_id, game_id, pid)})


def new_error_id() -> str:
    """Six-character id printed next to unexpected failures, for matching user reports to tracebacks."""
    return uuid.uuid4().hex[:6].upper()


@dataclass
class _Window:
    reopens_at: float = 0.0
    suppressed: int = 0


_windows: dict[str, _Window] = {}


def warn_ratelimited(
    logger: logging.Logger | logging.LoggerAdapter,
    *,
    key: str,
    message: str,
    every_seconds: float = 3600,
) -> None:
    """WARNING at most once per window for ``key``.

    Repeats inside the window go out at DEBUG and are counted; the next
    WARNING for the key says how many were held back.
    """
    now = time.monotonic()
    window = _windows.setdefault(key, _Window())
    if window.reopens_at and now < window.reopens_at:
        window.suppressed += 1
        logger.debug(message)
        return

    if window.suppressed:
        message = f"{message} ({window.suppressed} similar suppressed)"
    window.reopens_at = now + float(every_seconds)
    window.suppressed = 0
    logger.warning(message)
