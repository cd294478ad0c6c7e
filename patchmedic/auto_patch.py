# ==========================================================
# patchmedic – Auto-Patch Coordinator
#
# Sits between the log watcher and the patch manager:
#   - keeps per-PID session state (web roots, partial-transfer count)
#   - remembers the game version seen in each web root
#   - on process exit with too many partial transfers, either repairs
#     right away (autoFixPatchError) or parks a pending manual repair
#     and asks the UI to show the patch modal
#
# NOTES:
# - Sessions are keyed by PID; a PID never seen via LOG:SESSION_START
#   is created lazily from the first event that names it.
# - The watcher is stopped from here on PROCESS:STOP (game processes
#   only) so the final error count is read from its last read state.
# ==========================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import AppSettings
from .events import Event, EventBus, EventType
from .log_extractor import extract_version
from .log_watcher import ERROR_THRESHOLD, LogWatcher
from .logging_utils import SessionLoggerAdapter
from .patch_manager import PatchManager

logger = logging.getLogger("auto_patch")


@dataclass
class SessionState:
    service_id: str
    game_id: str
    web_root: Optional[str] = None
    backup_web_root: Optional[str] = None
    error_count: int = 0
    start_time: float = field(default_factory=time.time)
    alerted: bool = False


class AutoPatchCoordinator:
    def __init__(
        self,
        settings: AppSettings,
        event_bus: EventBus,
        resolver,
        patch_manager: PatchManager,
        watcher: Optional[LogWatcher] = None,
        error_threshold: int = ERROR_THRESHOLD,
    ):
        self.settings = settings
        self.event_bus = event_bus
        self.resolver = resolver
        self.patch_manager = patch_manager
        self.watcher = watcher
        self.error_threshold = error_threshold

        self.sessions: Dict[int, SessionState] = {}
        # Key: service id, waiting for the user to confirm the repair.
        self.pending_manual: Dict[str, SessionState] = {}

    def attach(self) -> None:
        bus = self.event_bus
        bus.subscribe(EventType.LOG_SESSION_START, self.on_session_start)
        bus.subscribe(EventType.LOG_WEB_ROOT_FOUND, self.on_web_root)
        bus.subscribe(EventType.LOG_BACKUP_WEB_ROOT_FOUND, self.on_backup_web_root)
        bus.subscribe(EventType.LOG_ERROR_DETECTED, self.on_error_detected)
        bus.subscribe(EventType.PROCESS_STOP, self.on_process_stop)
        if self.watcher is not None:
            self.watcher.attach(follow_stop=False)

    def _session_for(self, payload: Dict) -> Optional[SessionState]:
        pid = payload.get("pid")
        if not pid:
            return None
        session = self.sessions.get(pid)
        if session is None and payload.get("serviceId"):
            session = SessionState(payload["serviceId"], payload.get("gameId") or "")
            self.sessions[pid] = session
        return session

    # ------------------------------------------------------
    # Log events
    # ------------------------------------------------------

    def on_session_start(self, event: Event) -> None:
        p = event.payload
        self.sessions[p["pid"]] = SessionState(p["serviceId"], p.get("gameId") or "")

    def on_web_root(self, event: Event) -> None:
        session = self._session_for(event.payload)
        if session is None:
            return
        web_root = event.payload["webRoot"]
        session.web_root = web_root
        self._remember_version(session, web_root)

    def on_backup_web_root(self, event: Event) -> None:
        session = self._session_for(event.payload)
        if session is not None:
            session.backup_web_root = event.payload["backupWebRoot"]

    def on_error_detected(self, event: Event) -> None:
        session = self._session_for(event.payload)
        if session is None:
            return
        pid = event.payload.get("pid")
        session.error_count = int(event.payload.get("errorCount") or 0)

        lg = SessionLoggerAdapter(logger, session.service_id, session.game_id, pid)
        lg.info("Error count updated: %s", session.error_count)
        if session.error_count >= self.error_threshold and not session.alerted:
            session.alerted = True
            lg.warning("Threshold reached. Waiting for process exit to trigger fix.")

    def _remember_version(self, session: SessionState, web_root: str) -> None:
        version = extract_version(web_root)
        key = f"{session.game_id}_{session.service_id}"
        known = dict(self.settings.get("knownGameVersions") or {})
        current = known.get(key) or {}
        if current.get("webRoot") == web_root and current.get("version") == version:
            return

        logger.info("New version detected: %s (%s)", version, key)
        known[key] = {"version": version, "webRoot": web_root, "timestamp": int(time.time() * 1000)}
        self.settings.set("knownGameVersions", known)
        self.settings.save()

    # ------------------------------------------------------
    # Process exit
    # ------------------------------------------------------

    async def on_process_stop(self, event: Event) -> None:
        if not self.settings.is_game_process(event.payload.get("name", "")):
            return

        final = await self.watcher.stop_monitoring() if self.watcher is not None else None
        # The stop signal usually names only the process; the watcher knows which pid it followed.
        pid = event.payload.get("pid") or (final.pid if final is not None else None)

        # Let the handlers for events from the final poll update the session first.
        await self.event_bus.drain()

        session = self.sessions.get(pid) if pid else None
        if session is None and final is not None and final.pid and final.pid == pid:
            session = SessionState(final.service_id, final.game_id)
        if session is None:
            return
        if final is not None and final.pid == pid:
            session.error_count = max(session.error_count, final.session_error_count)

        self.sessions.pop(pid, None)
        lg = SessionLoggerAdapter(logger, session.service_id, session.game_id, pid)

        if session.error_count < self.error_threshold:
            lg.info("Session ended normally (errors: %s)", session.error_count)
            return

        lg.warning("Process exited with high error count (%s). Triggering fix.", session.error_count)
        if self.settings.get("autoFixPatchError") is True:
            await self._auto_fix(session, lg)
        else:
            lg.info("Requesting user confirmation (manual mode)")
            self.pending_manual[session.service_id] = session
            self.event_bus.publish(
                EventType.UI_SHOW_PATCH_MODAL,
                {"autoStart": False, "serviceId": session.service_id, "gameId": session.game_id},
            )

    async def _auto_fix(self, session: SessionState, lg: logging.LoggerAdapter) -> bool:
        install_path = self.resolver.resolve_install_path(session.service_id, session.game_id)
        if not install_path:
            lg.error("Install path not found; cannot auto-fix.")
            return False

        self.event_bus.publish(EventType.UI_SHOW_PATCH_MODAL, {"autoStart": True})
        ok = await self.patch_manager.start_self_diagnosis(
            install_path,
            session.service_id,
            {"webRoot": session.web_root, "backupWebRoot": session.backup_web_root},
        )

        if ok and self.settings.get("autoGameStartAfterFix") is True:
            lg.info("Auto-start enabled. Requesting game start.")
            self.event_bus.publish(
                EventType.UI_GAME_START_CLICK,
                {"gameId": session.game_id, "serviceId": session.service_id},
            )
        return ok

    # ------------------------------------------------------
    # Manual confirmation
    # ------------------------------------------------------

    async def trigger_pending_manual_patches(self) -> List[bool]:
        """Run every parked repair (one after another; the manager is single-flight)."""
        if not self.pending_manual:
            logger.info("No pending patches found.")
            return []

        results: List[bool] = []
        for service_id, session in list(self.pending_manual.items()):
            self.pending_manual.pop(service_id, None)
            install_path = self.resolver.resolve_install_path(service_id, session.game_id)
            if not install_path:
                logger.error("Install path not found for %s", service_id)
                results.append(False)
                continue

            logger.info("Executing manual patch for %s...", service_id)
            results.append(
                await self.patch_manager.start_self_diagnosis(
                    install_path,
                    service_id,
                    {"webRoot": session.web_root, "backupWebRoot": session.backup_web_root},
                )
            )
        return results

    def cancel_pending_patches(self) -> None:
        self.pending_manual.clear()
        logger.info("All pending patches cancelled.")
