import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .auto_patch import AutoPatchCoordinator
from .config import AppSettings, ConfigPathResolver
from .events import Event, EventBus, EventType
from .log_extractor import replace_version, scan_known_version
from .log_watcher import LogWatcher
from .logging_utils import setup_logging
from .patch_manager import PatchManager

logger = logging.getLogger("boot")


def _log_progress(event: Event) -> None:
    p = event.payload
    line = f"[{p['status']}] {p['current']}/{p['total']} ({p['overallProgress']}%)"
    if p.get("message"):
        line += " " + p["message"]
    if p.get("error"):
        logger.warning("%s | %s", line, p["error"])
    else:
        logger.info("%s", line)


def resolve_force_web_root(
    settings: AppSettings,
    install_path: str,
    service_id: str,
    web_root: Optional[str] = None,
    version: Optional[str] = None,
) -> Optional[str]:
    """Explicit web root, else the last one remembered in settings, else the newest one in the log."""
    if not web_root:
        key = f"{settings.get('activeGame')}_{service_id}"
        known = (settings.get("knownGameVersions") or {}).get(key) or {}
        web_root = known.get("webRoot")
    if not web_root:
        profile = settings.get_profile(service_id)
        found = scan_known_version(install_path, profile) if profile else None
        web_root = found["webRoot"] if found else None
    if web_root and version:
        web_root = replace_version(web_root, version)
    return web_root


async def _watch(args: argparse.Namespace, settings: AppSettings, bus: EventBus) -> int:
    """Tail one client log until interrupted, with the auto-patch coordinator wired in."""
    resolver = ConfigPathResolver(settings)
    manager = PatchManager(settings, bus)
    watcher = LogWatcher(settings, bus, resolver)
    coordinator = AutoPatchCoordinator(settings, bus, resolver, manager, watcher)
    coordinator.attach()

    service_id = args.service or settings.get("serviceChannel")
    game_id = args.game or settings.get("activeGame")
    if not await watcher.start_monitoring(service_id, game_id, args.pid):
        return 1

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await watcher.stop_monitoring()


async def _main_async(args: argparse.Namespace) -> int:
    settings = AppSettings(args.config)
    bus = EventBus()
    bus.subscribe(EventType.PATCH_PROGRESS, _log_progress)

    if args.command == "watch":
        return await _watch(args, settings, bus)

    manager = PatchManager(settings, bus)
    if args.command == "repair":
        ok = await manager.start_self_diagnosis(
            args.path,
            args.service,
            {"webRoot": args.web_root, "backupWebRoot": args.backup_web_root},
        )
    elif args.command == "force":
        web_root = resolve_force_web_root(settings, args.path, args.service, args.web_root, args.version)
        if not web_root:
            logger.error("No web root given and none known for %s; pass --web-root.", args.path)
            return 1
        ok = await manager.force_restoration(args.path, args.service, web_root)
    else:
        ok = await manager.restore_local_backup(args.path)

    await bus.drain()
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="patchmedic",
        description="Repair game client files left half-patched by the client's own patcher.",
    )
    parser.add_argument("--config", help="Path to patchmedic_config.json")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING (default: PATCHMEDIC_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch = subparsers.add_parser("watch", help="Monitor the client log and auto-repair on exit")
    watch.add_argument("--service", help="Service id, e.g. GGG or 'Kakao Games'")
    watch.add_argument("--game", help="Game id, e.g. POE1")
    watch.add_argument("--pid", type=int, help="Client process id to filter log lines by")

    repair = subparsers.add_parser("repair", help="Repair from the client log (self diagnosis)")
    repair.add_argument("--path", required=True, help="Game install directory")
    repair.add_argument("--service", required=True, help="Service id")
    repair.add_argument("--web-root", help="Web root to use when the log has none")
    repair.add_argument("--backup-web-root", help="Mirror web root to use when the log has none")

    force = subparsers.add_parser("force", help="Re-download the essential executables")
    force.add_argument("--path", required=True, help="Game install directory")
    force.add_argument("--service", required=True, help="Service id")
    force.add_argument("--web-root", help="CDN web root (default: last known for this install)")
    force.add_argument("--version", help="Patch version to substitute into the web root, e.g. 3.25.3.4")

    restore = subparsers.add_parser("restore", help="Restore files from the last local backup")
    restore.add_argument("--path", required=True, help="Game install directory")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    logger.info("Starting patchmedic (%s) ...", args.command)
    try:
        code = asyncio.run(_main_async(args))
    except KeyboardInterrupt:
        logger.info("Exited (KeyboardInterrupt).")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
