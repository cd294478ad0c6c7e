# ==========================================================
# patchmedic – Patch Manager
#
# Single-flight repair orchestrator. Three flows share one
# download/backup pipeline:
#   - start_self_diagnosis: plan from the client log tail
#   - force_restoration:    essential executables from a given web root
#   - restore_local_backup: copy .patch_backups/ back over the install
#
# IMPORTANT DESIGN:
#   - At most one flow runs per manager; a second request is rejected.
#   - At most MAX_CONCURRENT_DOWNLOADS transfers are in flight.
#   - A pre-existing destination is backed up BEFORE it is overwritten.
#   - A failed file never aborts its siblings (best-effort run); the
#     failures are reported per file and summarised in the final payload.
# ==========================================================

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .config import AppSettings, GameServiceProfile
from .errors import PatchCancelled, PatchConfigError, PatchError
from .events import EventBus, EventType
from .log_extractor import analyze_log_text, extract_version, read_last_part
from .logging_utils import new_error_id
from .models import BackupMetadata, FileProgress, FileStatus, ParsedLogInfo, PatchProgress
from .transfer import CancelToken, HttpTransfer, join_url, percent

logger = logging.getLogger("patch_manager")

TEMP_DIR_NAME = ".patch_temp"
BACKUP_DIR_NAME = ".patch_backups"
BACKUP_INFO_NAME = "backup-info.json"

MAX_CONCURRENT_DOWNLOADS = 2
PROGRESS_THROTTLE_SECONDS = 0.2  # at most one byte-progress publication per interval
PROGRESS_STEP = 10  # ... and only when a file crosses a 10% boundary

Transfer = Callable[..., Awaitable[int]]


@dataclass
class _RunContext:
    install_path: str
    web_root: str
    backup_web_root: Optional[str]
    temp_dir: str
    backup_dir: str
    backup_enabled: bool
    token: CancelToken
    backed_up: List[str] = field(default_factory=list)


def _is_safe_relpath(name: str) -> bool:
    norm = os.path.normpath(name)
    return bool(name) and not os.path.isabs(norm) and norm != ".." and not norm.startswith(".." + os.sep)


class PatchManager:
    def __init__(
        self,
        settings: AppSettings,
        event_bus: EventBus,
        transfer: Optional[Transfer] = None,
        concurrency: int = MAX_CONCURRENT_DOWNLOADS,
    ):
        self.settings = settings
        self.event_bus = event_bus
        self.transfer: Transfer = transfer or HttpTransfer()
        self.concurrency = max(1, int(concurrency))

        self.is_patching = False
        self.should_stop = False
        self.token: Optional[CancelToken] = None

        self.file_states: List[FileProgress] = []
        self._by_name: Dict[str, FileProgress] = {}
        self._published_step: Dict[str, int] = {}
        self.completed_count = 0
        self._last_progress_emit = 0.0

    # ------------------------------------------------------
    # Run guard / cancellation
    # ------------------------------------------------------

    def _begin(self) -> None:
        self.is_patching = True
        self.should_stop = False
        self.token = CancelToken()

    def _end(self) -> None:
        self.is_patching = False
        self.should_stop = False
        self.token = None

    def cancel_patch(self) -> None:
        if not self.is_patching:
            return
        self.should_stop = True
        if self.token is not None:
            self.token.cancel()
        logger.info("Cancel requested.")

    # ------------------------------------------------------
    # Progress
    # ------------------------------------------------------

    def _reset_plan(self, files: List[str]) -> None:
        self.file_states = [FileProgress(f) for f in files]
        self._by_name = {fp.file_name: fp for fp in self.file_states}
        self._published_step = {}
        self.completed_count = 0
        self._last_progress_emit = 0.0

    def snapshot(self, status: FileStatus, message: Optional[str] = None, error: Optional[str] = None) -> PatchProgress:
        return PatchProgress.build(status, self.file_states, self.completed_count, error=error, message=message)

    def emit_progress(self, status: FileStatus, message: Optional[str] = None, error: Optional[str] = None) -> None:
        progress = self.snapshot(status, message, error)
        self._last_progress_emit = time.monotonic()
        self.event_bus.publish(EventType.PATCH_PROGRESS, progress.to_dict())

    def _on_bytes(self, fp: FileProgress, transferred: int, total: Optional[int]) -> None:
        if fp.status is not FileStatus.DOWNLOADING:
            return
        fp.progress = percent(transferred, total)

        step = fp.progress // PROGRESS_STEP
        if step <= self._published_step.get(fp.file_name, 0):
            return
        if time.monotonic() - self._last_progress_emit < PROGRESS_THROTTLE_SECONDS:
            return
        self._published_step[fp.file_name] = step
        self.emit_progress(FileStatus.DOWNLOADING)

    def _set_file(self, fp: FileProgress, status: FileStatus, progress: Optional[int] = None, error: Optional[str] = None) -> None:
        fp.status = status
        if progress is not None:
            fp.progress = progress
        fp.error = error
        self.emit_progress(FileStatus.DOWNLOADING)

    # ------------------------------------------------------
    # Flow A: self diagnosis from the client log
    # ------------------------------------------------------

    async def start_self_diagnosis(
        self,
        install_path: str,
        service_id: str,
        overrides: Optional[Dict[str, Optional[str]]] = None,
    ) -> bool:
        if self.is_patching:
            logger.warning("Repair already running; rejecting self diagnosis for %s", install_path)
            return False

        self._begin()
        self._reset_plan([])
        try:
            profile = self._require_profile(service_id)
            log_path = os.path.join(install_path, "logs", profile.log_file_name)

            self.emit_progress(FileStatus.WAITING, "Analyzing client log...")
            info = self.analyze_log(profile, log_path)

            overrides = overrides or {}
            info.web_root = info.web_root or overrides.get("webRoot")
            info.backup_web_root = info.backup_web_root or overrides.get("backupWebRoot")

            if not info.web_root:
                raise PatchConfigError("No web root found in the recent client log.")

            files = self.build_plan(info, profile)
            logger.info(
                "Repair plan for %s: %s file(s) from %s (log errors=%s)",
                install_path,
                len(files),
                info.web_root,
                info.has_error,
            )

            failed = await self.process_downloads(install_path, info.web_root, files, info.backup_web_root)
            return self._finish(failed)

        except PatchCancelled as e:
            return self._cancelled(e)
        except Exception as e:
            return self._failed(e, "self diagnosis")
        finally:
            self._end()

    def analyze_log(self, profile: GameServiceProfile, log_path: str) -> ParsedLogInfo:
        if not os.path.exists(log_path):
            raise PatchConfigError(f"Client log not found: {log_path}")
        content = read_last_part(log_path)
        return analyze_log_text(content, profile.log_start_marker, profile)

    @staticmethod
    def build_plan(info: ParsedLogInfo, profile: GameServiceProfile) -> List[str]:
        files = list(dict.fromkeys(info.files_to_download))

        # One broken executable means the whole executable set gets refreshed together.
        if any(profile.is_essential(f) for f in files):
            for exe in profile.essential_executables:
                if exe not in files:
                    files.append(exe)

        if not files:
            files = list(profile.essential_executables)

        return files

    # ------------------------------------------------------
    # Flow B: forced essential repair
    # ------------------------------------------------------

    async def force_restoration(self, install_path: str, service_id: str, web_root: str) -> bool:
        if self.is_patching:
            logger.warning("Repair already running; rejecting forced restoration for %s", install_path)
            return False

        self._begin()
        self._reset_plan([])
        try:
            profile = self._require_profile(service_id)
            if not web_root:
                raise PatchConfigError("A web root is required for forced restoration.")
            if not os.path.isdir(install_path):
                raise PatchConfigError(f"Install path not found: {install_path}")

            files = list(dict.fromkeys(profile.essential_executables))
            logger.info("Forced restoration of %s essential file(s) from %s", len(files), web_root)
            failed = await self.process_downloads(install_path, web_root, files, None)
            return self._finish(failed)

        except PatchCancelled as e:
            return self._cancelled(e)
        except Exception as e:
            return self._failed(e, "forced restoration")
        finally:
            self._end()

    # ------------------------------------------------------
    # Flow C: restore from .patch_backups/
    # ------------------------------------------------------

    async def restore_local_backup(self, install_path: str) -> bool:
        if self.is_patching:
            logger.warning("Repair already running; rejecting backup restore for %s", install_path)
            return False

        self._begin()
        self._reset_plan([])
        try:
            backup_dir = os.path.join(install_path, BACKUP_DIR_NAME)
            if not os.path.isdir(backup_dir):
                raise PatchConfigError("No local backup found.")

            files = self.list_backup_files(backup_dir)
            if not files:
                raise PatchConfigError("Local backup is empty.")

            self._reset_plan(files)
            self.emit_progress(FileStatus.WAITING, f"Restoring {len(files)} file(s) from backup")

            loop = asyncio.get_running_loop()
            failed: List[str] = []
            for rel in files:
                if self.should_stop:
                    raise PatchCancelled()

                fp = self._by_name[rel]
                self._set_file(fp, FileStatus.DOWNLOADING, 0)
                try:
                    await loop.run_in_executor(
                        None,
                        self._copy_into_place,
                        os.path.join(backup_dir, rel),
                        os.path.join(install_path, rel),
                    )
                except OSError as e:
                    logger.warning("Restore failed for %s: %s", rel, e)
                    failed.append(rel)
                    self._set_file(fp, FileStatus.ERROR, error=str(e))
                    continue

                self.completed_count += 1
                self._set_file(fp, FileStatus.DONE, 100)

            return self._finish(failed)

        except PatchCancelled as e:
            return self._cancelled(e)
        except Exception as e:
            return self._failed(e, "backup restore")
        finally:
            self._end()

    @staticmethod
    def list_backup_files(backup_dir: str) -> List[str]:
        """Relative paths of every backed-up file (metadata excluded), sorted."""
        out: List[str] = []
        for root, _dirs, names in os.walk(backup_dir):
            for name in names:
                rel = os.path.relpath(os.path.join(root, name), backup_dir)
                if rel == BACKUP_INFO_NAME:
                    continue
                out.append(rel.replace(os.sep, "/"))
        return sorted(out)

    def get_backup_info(self, install_path: str) -> Optional[BackupMetadata]:
        path = os.path.join(install_path, BACKUP_DIR_NAME, BACKUP_INFO_NAME)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return BackupMetadata.from_dict(json.load(f))
        except Exception:
            logger.warning("Unreadable backup metadata at %s", path, exc_info=True)
            return None

    # ------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------

    async def process_downloads(
        self,
        install_path: str,
        web_root: str,
        files: List[str],
        backup_web_root: Optional[str] = None,
    ) -> List[str]:
        """Download, back up and install files; returns the names that failed."""
        token = self.token or CancelToken()
        ctx = _RunContext(
            install_path=install_path,
            web_root=web_root,
            backup_web_root=backup_web_root,
            temp_dir=os.path.join(install_path, TEMP_DIR_NAME),
            backup_dir=os.path.join(install_path, BACKUP_DIR_NAME),
            backup_enabled=self.settings.is_backup_enabled(),
            token=token,
        )

        self._reset_plan(files)
        os.makedirs(ctx.temp_dir, exist_ok=True)
        if ctx.backup_enabled:
            # Only the most recent repair's originals are kept.
            shutil.rmtree(ctx.backup_dir, ignore_errors=True)
            os.makedirs(ctx.backup_dir, exist_ok=True)

        self.emit_progress(FileStatus.DOWNLOADING, f"{len(files)} file(s) queued")

        failed: List[str] = []
        pending = deque(files)
        active: Set[asyncio.Task] = set()

        async def _run(name: str) -> None:
            if not await self.process_file(ctx, name):
                failed.append(name)

        try:
            while pending and not self.should_stop:
                name = pending.popleft()
                active.add(asyncio.create_task(_run(name), name=f"patch:{name}"))
                if len(active) >= self.concurrency:
                    _done, active = await asyncio.wait(active, return_when=asyncio.FIRST_COMPLETED)
            if active:
                await asyncio.wait(active)
        finally:
            for task in active:
                task.cancel()

            try:
                shutil.rmtree(ctx.temp_dir)
            except OSError:
                logger.debug("Temp cleanup failed for %s", ctx.temp_dir, exc_info=True)

        if self.should_stop or token.cancelled:
            raise PatchCancelled(token.reason)

        if ctx.backup_enabled and ctx.backed_up:
            self._write_backup_info(ctx)
        return failed

    async def process_file(self, ctx: _RunContext, name: str) -> bool:
        fp = self._by_name[name]
        self._set_file(fp, FileStatus.DOWNLOADING, 0)

        if not _is_safe_relpath(name):
            self._set_file(fp, FileStatus.ERROR, error="Refusing path outside the install directory")
            return False

        try:
            await self._fetch_and_install(ctx, ctx.web_root, fp)
        except PatchCancelled as e:
            self._set_file(fp, FileStatus.ERROR, error=str(e))
            return False
        except Exception as e:
            err: Optional[Exception] = e
            mirror = ctx.backup_web_root
            if mirror and mirror != ctx.web_root and not ctx.token.cancelled:
                logger.warning("%s failed (%s); retrying from backup web root %s", name, e, mirror)
                try:
                    await self._fetch_and_install(ctx, mirror, fp)
                    err = None
                except Exception as retry_error:
                    err = retry_error
            if err is not None:
                logger.warning("Failed to repair %s: %s", name, err)
                self._set_file(fp, FileStatus.ERROR, error=str(err))
                return False

        self.completed_count += 1
        self._set_file(fp, FileStatus.DONE, 100)
        logger.info("Repaired %s (%s/%s)", name, self.completed_count, len(self.file_states))
        return True

    async def _fetch_and_install(self, ctx: _RunContext, base_url: str, fp: FileProgress) -> None:
        name = fp.file_name
        temp_file = os.path.join(ctx.temp_dir, name)
        await self.transfer(
            join_url(base_url, name),
            temp_file,
            ctx.token,
            lambda transferred, total: self._on_bytes(fp, transferred, total),
        )
        ctx.token.raise_if_cancelled()

        dest = os.path.join(ctx.install_path, name)
        backup = None
        if ctx.backup_enabled and name not in ctx.backed_up:
            backup = os.path.join(ctx.backup_dir, name)

        loop = asyncio.get_running_loop()
        backed_up = await loop.run_in_executor(None, self._install_file, temp_file, dest, backup)
        if backed_up:
            ctx.backed_up.append(name)

    @staticmethod
    def _install_file(temp_file: str, dest: str, backup: Optional[str]) -> bool:
        backed_up = False
        if backup and os.path.exists(dest):
            os.makedirs(os.path.dirname(backup), exist_ok=True)
            shutil.copy2(dest, backup)
            backed_up = True
        PatchManager._copy_into_place(temp_file, dest)
        return backed_up

    @staticmethod
    def _copy_into_place(src: str, dest: str) -> None:
        os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
        shutil.copyfile(src, dest)

    def _write_backup_info(self, ctx: _RunContext) -> None:
        meta = BackupMetadata.now(extract_version(ctx.web_root), ctx.backed_up)
        path = os.path.join(ctx.backup_dir, BACKUP_INFO_NAME)
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(meta.to_dict(), f, indent=2)
        except OSError:
            logger.error("Failed to write backup metadata to %s", path, exc_info=True)

    # ------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------

    def _require_profile(self, service_id: str) -> GameServiceProfile:
        profile = self.settings.get_profile(service_id)
        if profile is None:
            raise PatchConfigError(f"Unknown service: {service_id}")
        return profile

    def _finish(self, failed: List[str]) -> bool:
        if failed:
            summary = f"{len(failed)} file(s) failed: {', '.join(failed)}"
            logger.warning("Repair finished with failures (%s)", summary)
            self.emit_progress(FileStatus.DONE, "Repair finished", error=summary)
            return False
        logger.info("Repair finished (%s file(s)).", self.completed_count)
        self.emit_progress(FileStatus.DONE, "Repair finished")
        return True

    def _cancelled(self, e: PatchCancelled) -> bool:
        logger.info("Repair cancelled (%s/%s done).", self.completed_count, len(self.file_states))
        self.emit_progress(FileStatus.ERROR, "Cancelled", error=str(e))
        return False

    def _failed(self, e: Exception, flow: str) -> bool:
        msg = str(e) or e.__class__.__name__
        if isinstance(e, PatchError):
            logger.error("%s failed: %s", flow, msg)
        else:
            logger.exception("%s failed [err=%s]", flow, new_error_id())
        self.emit_progress(FileStatus.ERROR, msg, error=msg)
        return False
