# ==========================================================
# patchmedic – Client Log Watcher
#
# Tails the game client's own text log while a game process runs
# and turns new lines into domain events:
#   - LOG:SESSION_START           (session marker seen, pid known)
#   - LOG:WEB_ROOT_FOUND          (CDN base URL the patcher used)
#   - LOG:BACKUP_WEB_ROOT_FOUND   (mirror base URL)
#   - LOG:ERROR_DETECTED          (partial transfers >= threshold)
#
# IMPORTANT DESIGN:
#   - The log is shared with the game (it writes, we only read).
#   - Only the current session counts: the start offset is the last
#     session marker, and lines from other client PIDs are skipped.
#   - The threshold event is debounced: it fires again only when the
#     count grows, never once per poll.
# ==========================================================

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import AppSettings
from .events import Event, EventBus, EventType
from .log_extractor import (
    LineKind,
    classify_line,
    find_marker_offset_in_file,
    line_has_pid,
)
from .logging_utils import SessionLoggerAdapter

logger = logging.getLogger("log_watcher")

POLL_INTERVAL = 1.0  # seconds between size checks
ERROR_THRESHOLD = 10  # partial transfers before LOG:ERROR_DETECTED


class WatcherState(str, Enum):
    STOPPED = "stopped"
    MONITORING = "monitoring"


@dataclass
class LogReadState:
    log_path: str
    service_id: str
    game_id: str
    pid: Optional[int] = None
    byte_offset: int = 0
    session_error_count: int = 0
    last_reported_error_count: int = 0
    marker: str = ""

    def reset_counters(self) -> None:
        self.session_error_count = 0
        self.last_reported_error_count = 0


class LogWatcher:
    def __init__(
        self,
        settings: AppSettings,
        event_bus: EventBus,
        resolver,
        poll_interval: float = POLL_INTERVAL,
        error_threshold: int = ERROR_THRESHOLD,
    ):
        self.settings = settings
        self.event_bus = event_bus
        self.resolver = resolver
        self.poll_interval = poll_interval
        self.error_threshold = error_threshold

        self.read_state: Optional[LogReadState] = None
        self._task: Optional[asyncio.Task] = None
        self.lg: logging.LoggerAdapter = SessionLoggerAdapter(logger, None)

    @property
    def state(self) -> WatcherState:
        return WatcherState.MONITORING if self.read_state is not None else WatcherState.STOPPED

    def attach(self, follow_stop: bool = True) -> None:
        """Follow process lifecycle events from the process poller.

        follow_stop=False leaves stopping to a coordinator that needs the
        final read state (see AutoPatchCoordinator).
        """
        self.event_bus.subscribe(EventType.PROCESS_START, self.on_process_start)
        if follow_stop:
            self.event_bus.subscribe(EventType.PROCESS_STOP, self.on_process_stop)

    # ------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------

    async def on_process_start(self, event: Event) -> None:
        service_id = self.settings.get("serviceChannel")
        game_id = self.settings.get("activeGame")
        if self.settings.is_game_process(event.payload.get("name", ""), service_id):
            await self.start_monitoring(service_id, game_id, event.payload.get("pid"))

    async def on_process_stop(self, event: Event) -> None:
        service_id = self.settings.get("serviceChannel")
        if self.settings.is_game_process(event.payload.get("name", ""), service_id):
            await self.stop_monitoring()

    # ------------------------------------------------------
    # STOPPED -> MONITORING -> STOPPED
    # ------------------------------------------------------

    async def start_monitoring(self, service_id: str, game_id: str, pid: Optional[int] = None) -> bool:
        if self.read_state is not None:
            self.lg.debug("Already monitoring %s; ignoring start request.", self.read_state.log_path)
            return False

        lg = SessionLoggerAdapter(logger, service_id, game_id, pid)
        lg.info("Starting log monitor")

        profile = self.settings.get_profile(service_id)
        if profile is None:
            lg.error("Unknown service profile: %s", service_id)
            return False

        install_path = self.resolver.resolve_install_path(service_id, game_id)
        if not install_path:
            lg.error("Could not find install path. Skipping.")
            return False

        log_path = os.path.join(install_path, "logs", profile.log_file_name)
        if not os.path.exists(log_path):
            lg.error("Log file not found at %s", log_path)
            return False

        offset = find_marker_offset_in_file(log_path, profile.log_start_marker)
        lg.debug("Session start offset %s in %s", offset, log_path)

        self.lg = lg
        self.read_state = LogReadState(
            log_path=log_path,
            service_id=service_id,
            game_id=game_id,
            pid=int(pid) if pid else None,
            byte_offset=offset,
            marker=profile.log_start_marker,
        )
        self._task = asyncio.create_task(self._poll_loop(), name=f"log_watcher:{service_id}")
        return True

    async def stop_monitoring(self) -> Optional[LogReadState]:
        """Final poll, then stop. Returns the read state as it was at the end of the session."""
        rs = self.read_state
        if rs is None:
            return None

        # Last lines written right before process exit.
        await self.check_log(final=True)

        task = self._task
        self._teardown()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.lg.info("Monitoring stopped.")
        return rs

    def _teardown(self) -> None:
        self.read_state = None
        self._task = None

    async def _poll_loop(self) -> None:
        try:
            while self.read_state is not None:
                await asyncio.sleep(self.poll_interval)
                await self.check_log()
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------
    # Poll tick
    # ------------------------------------------------------

    async def check_log(self, final: bool = False) -> None:
        rs = self.read_state
        if rs is None:
            return

        try:
            size = os.path.getsize(rs.log_path)

            if size < rs.byte_offset:
                # Rotated or truncated: start over, assume nothing about contiguity.
                self.lg.info("Log shrank (%s < %s); restarting from offset 0.", size, rs.byte_offset)
                rs.byte_offset = 0
                rs.session_error_count = 0

            if size <= rs.byte_offset:
                return

            with open(rs.log_path, "rb") as f:
                f.seek(rs.byte_offset)
                chunk = f.read(size - rs.byte_offset)

            if not final:
                # Keep an unterminated last line for the next poll.
                cut = chunk.rfind(b"\n")
                if cut == -1:
                    return
                chunk = chunk[: cut + 1]

            rs.byte_offset += len(chunk)
            lines = chunk.decode("utf-8", errors="replace").split("\n")

        except Exception:
            self.lg.exception("Error during log check; stopping monitor (%s)", rs.log_path)
            task = self._task
            self._teardown()
            if task is not None and task is not asyncio.current_task():
                task.cancel()
            return

        for line in lines:
            self._handle_line(rs, line.rstrip("\r"))

        if rs.session_error_count >= self.error_threshold and rs.session_error_count != rs.last_reported_error_count:
            rs.last_reported_error_count = rs.session_error_count
            self.lg.warning("Error threshold reached (%s partial transfers).", rs.session_error_count)
            self.event_bus.publish(
                EventType.LOG_ERROR_DETECTED,
                {
                    "gameId": rs.game_id,
                    "serviceId": rs.service_id,
                    "pid": rs.pid,
                    "errorCount": rs.session_error_count,
                    "logPath": rs.log_path,
                },
            )

    def _handle_line(self, rs: LogReadState, line: str) -> None:
        if not line:
            return

        entry = classify_line(line, rs.marker)

        if entry.kind is LineKind.SESSION_MARKER:
            rs.reset_counters()
            if rs.pid:
                self.event_bus.publish(
                    EventType.LOG_SESSION_START,
                    {
                        "gameId": rs.game_id,
                        "serviceId": rs.service_id,
                        "pid": rs.pid,
                        "timestamp": time.time(),
                    },
                )
            return

        # Another client instance writing into the same file.
        if rs.pid and not line_has_pid(line, rs.pid):
            return

        if entry.kind is LineKind.BACKUP_WEB_ROOT:
            self.lg.info("Backup web root: %s", entry.value)
            self.event_bus.publish(
                EventType.LOG_BACKUP_WEB_ROOT_FOUND,
                {
                    "gameId": rs.game_id,
                    "serviceId": rs.service_id,
                    "pid": rs.pid,
                    "backupWebRoot": entry.value,
                    "timestamp": time.time(),
                },
            )
        elif entry.kind is LineKind.WEB_ROOT:
            self.lg.info("Web root: %s", entry.value)
            self.event_bus.publish(
                EventType.LOG_WEB_ROOT_FOUND,
                {
                    "gameId": rs.game_id,
                    "serviceId": rs.service_id,
                    "pid": rs.pid,
                    "webRoot": entry.value,
                    "timestamp": time.time(),
                },
            )
        elif entry.kind is LineKind.PARTIAL_FILE_ERROR:
            rs.session_error_count += 1
            self.lg.warning("Partial transfer detected (%s/%s)", rs.session_error_count, self.error_threshold)
