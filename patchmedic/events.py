# ==========================================================
# patchmedic – Event Bus
#
# Observer registry with synchronous subscribe and asynchronous,
# fire-and-continue dispatch:
#   - publish() never waits for handlers
#   - a failing handler is logged and never reaches the publisher
#   - handlers may be plain functions or coroutines
# ==========================================================

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Set

from .logging_utils import warn_ratelimited

logger = logging.getLogger("events")


class EventType(str, Enum):
    PROCESS_START = "PROCESS:START"
    PROCESS_STOP = "PROCESS:STOP"
    LOG_SESSION_START = "LOG:SESSION_START"
    LOG_WEB_ROOT_FOUND = "LOG:WEB_ROOT_FOUND"
    LOG_BACKUP_WEB_ROOT_FOUND = "LOG:BACKUP_WEB_ROOT_FOUND"
    LOG_ERROR_DETECTED = "LOG:ERROR_DETECTED"
    PATCH_PROGRESS = "PATCH:PROGRESS"
    UI_SHOW_PATCH_MODAL = "UI:SHOW_PATCH_MODAL"
    UI_GAME_START_CLICK = "UI:GAME_START_CLICK"


@dataclass
class Event:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


Handler = Callable[[Event], Any]


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Registered handler %s for %s", getattr(handler, "__qualname__", handler), event_type.value)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event_type: EventType, payload: Dict[str, Any] | None = None) -> Event:
        event = Event(type=event_type, payload=dict(payload or {}))
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return event

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            warn_ratelimited(
                logger,
                key=f"no-loop:{event_type.value}",
                message=f"No running event loop; dropping {event_type.value} for {len(handlers)} handler(s)",
                every_seconds=60,
            )
            return event

        for handler in handlers:
            task = loop.create_task(self._dispatch(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event

    async def _dispatch(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Event handler failed (event=%s, handler=%s)",
                event.type.value,
                getattr(handler, "__qualname__", handler),
            )

    async def drain(self) -> None:
        """Wait until every dispatched handler (including ones they publish) has finished.

        Safe to call from inside a handler: the calling task is not waited on.
        """
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._pending if t is not current]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
