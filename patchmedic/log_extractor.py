# ==========================================================
# patchmedic – Client Log Extractors
#
# Pure functions over client log text. The only I/O is the pair of
# "read the tail of a file" helpers used by the watcher and the
# patch manager. Every extractor returns None / "unknown" on a miss
# and never raises.
# ==========================================================

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .config import GameServiceProfile
from .models import ParsedLogInfo

logger = logging.getLogger("log_extractor")

TAIL_READ_SIZE = 2 * 1024 * 1024
VERSION_SCAN_SIZE = 1024 * 1024

PARTIAL_FILE_ERROR = "Transferred a partial file"
QUEUE_FILE_MARKER = "Queue file to download:"
DOWNLOADABLE_EXTENSIONS = (".exe", ".dat", ".bundle", ".dll")

# ----------------------------------------------------------
# Client log regex patterns
# ----------------------------------------------------------

# "Backup Web root: ..." also contains "Web root: ...", so the plain
# pattern refuses a preceding "Backup ".
WEB_ROOT_PATTERN = re.compile(r"(?<!Backup )Web root: (https?://\S+)")
BACKUP_WEB_ROOT_PATTERN = re.compile(r"Backup Web root: (https?://\S+)")

# 2024/05/01 12:00:00 123456 abc [INFO Client 1234] ...
PID_PATTERN = re.compile(r"\[[A-Z]+\s+Client\s+(\d+)\]")

VERSION_PATTERN = re.compile(r"/patch/([\d.]+)/?")
VERSION_SEGMENT_PATTERN = re.compile(r"(/patch/)([\d.]+)(/?)")


class LineKind(str, Enum):
    SESSION_MARKER = "session_marker"
    WEB_ROOT = "web_root"
    BACKUP_WEB_ROOT = "backup_web_root"
    QUEUED_FILE = "queued_file"
    PARTIAL_FILE_ERROR = "partial_file_error"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class LogLine:
    kind: LineKind
    text: str
    value: Optional[str] = None
    pid: Optional[int] = None


# ==========================================================
# ====================== EXTRACTORS ========================
# ==========================================================

def find_last_marker_offset(data: bytes, marker: str, base_offset: int = 0) -> int:
    """
    Offset of the last byte-exact occurrence of marker inside data.

    base_offset is the file position data was read from, so the result is a
    file offset. When the marker is absent the end of the window is returned:
    nothing before "now" belongs to the current session.
    """
    idx = data.rfind(marker.encode("utf-8"))
    if idx == -1:
        return base_offset + len(data)
    return base_offset + idx


def _read_tail_bytes(path: str, read_size: int) -> tuple[bytes, int]:
    size = os.path.getsize(path)
    start = max(0, size - read_size)
    with open(path, "rb") as f:
        f.seek(start)
        return f.read(size - start), start


def find_marker_offset_in_file(path: str, marker: str, read_size: int = TAIL_READ_SIZE) -> int:
    """Apply find_last_marker_offset to the trailing window of a file (whole file when smaller)."""
    try:
        data, start = _read_tail_bytes(path, read_size)
    except OSError:
        logger.warning("Failed to seek session marker in %s", path, exc_info=True)
        try:
            return os.path.getsize(path)
        except OSError:
            return 0
    return find_last_marker_offset(data, marker, start)


def read_last_part(path: str, read_size: int = TAIL_READ_SIZE) -> str:
    """Decoded tail of a file; empty string when it cannot be read."""
    try:
        data, _start = _read_tail_bytes(path, read_size)
    except OSError:
        return ""
    return data.decode("utf-8", errors="replace")


def extract_web_root(line: str) -> Optional[str]:
    m = WEB_ROOT_PATTERN.search(line or "")
    return m.group(1) if m else None


def extract_backup_web_root(line: str) -> Optional[str]:
    m = BACKUP_WEB_ROOT_PATTERN.search(line or "")
    return m.group(1) if m else None


def extract_pid(line: str) -> Optional[int]:
    m = PID_PATTERN.search(line or "")
    return int(m.group(1)) if m else None


def line_has_pid(line: str, pid: int) -> bool:
    """True when the line carries the bracketed logger tag of this exact pid."""
    return re.search(rf"\bClient\s+{int(pid)}\]", line or "") is not None


def extract_file_to_download(line: str, profile: GameServiceProfile) -> Optional[str]:
    if not line or QUEUE_FILE_MARKER not in line:
        return None

    name = line.split(QUEUE_FILE_MARKER, 1)[1].strip()
    # Temporary paths and directories show up with spaces or no extension.
    if not name or " " in name:
        return None

    if name.endswith(DOWNLOADABLE_EXTENSIONS) or profile.is_essential(name):
        return name
    return None


def extract_version(web_root: Optional[str]) -> str:
    m = VERSION_PATTERN.search(web_root or "")
    return m.group(1) if m else "unknown"


def replace_version(web_root: str, new_version: str) -> str:
    """Swap the /patch/<version>/ segment; URL is returned unchanged when there is none."""
    if not new_version or not VERSION_SEGMENT_PATTERN.search(web_root):
        return web_root
    return VERSION_SEGMENT_PATTERN.sub(lambda m: f"{m.group(1)}{new_version}{m.group(3)}", web_root, count=1)


def classify_line(line: str, marker: str, profile: Optional[GameServiceProfile] = None) -> LogLine:
    """Tag a single log line; side effects belong to the caller."""
    pid = extract_pid(line)

    if marker and marker in line:
        return LogLine(LineKind.SESSION_MARKER, line, pid=pid)

    backup = extract_backup_web_root(line)
    if backup:
        return LogLine(LineKind.BACKUP_WEB_ROOT, line, backup, pid)

    web_root = extract_web_root(line)
    if web_root:
        return LogLine(LineKind.WEB_ROOT, line, web_root, pid)

    if profile is not None:
        queued = extract_file_to_download(line, profile)
        if queued:
            return LogLine(LineKind.QUEUED_FILE, line, queued, pid)

    if PARTIAL_FILE_ERROR in line:
        return LogLine(LineKind.PARTIAL_FILE_ERROR, line, pid=pid)

    return LogLine(LineKind.UNRECOGNIZED, line, pid=pid)


# ==========================================================
# ===================== ONE-SHOT ANALYSIS ==================
# ==========================================================

def analyze_log_text(content: str, marker: str, profile: GameServiceProfile) -> ParsedLogInfo:
    """
    Recover web roots and queued files from the most recent session in content.

    Lines before the last session marker are ignored. The first PID seen after
    the marker scopes the session; lines from other client instances are
    dropped. Queued files only count when the session also logged a partial
    transfer, otherwise they were ordinary successful downloads.
    """
    lines = content.split("\n")

    start = 0
    for i in range(len(lines) - 1, -1, -1):
        if marker in lines[i]:
            start = i
            break
    recent = lines[start:]

    pid: Optional[int] = None
    for line in recent:
        pid = extract_pid(line)
        if pid is not None:
            break

    info = ParsedLogInfo()
    for line in recent:
        if pid is not None and not line_has_pid(line, pid):
            continue

        entry = classify_line(line, marker, profile)
        if entry.kind is LineKind.PARTIAL_FILE_ERROR:
            info.has_error = True
        elif entry.kind is LineKind.WEB_ROOT:
            info.web_root = entry.value
        elif entry.kind is LineKind.BACKUP_WEB_ROOT:
            info.backup_web_root = entry.value
        elif entry.kind is LineKind.QUEUED_FILE and entry.value:
            info.add_file(entry.value)

    if not info.has_error:
        info.files_to_download = []

    if not info.web_root:
        info.web_root = info.backup_web_root

    return info


def scan_known_version(install_path: str, profile: GameServiceProfile) -> Optional[Dict[str, str]]:
    """Newest web root in the last 1 MiB of the client log, with its version."""
    log_path = os.path.join(install_path, "logs", profile.log_file_name)
    content = read_last_part(log_path, VERSION_SCAN_SIZE)
    for line in reversed(content.split("\n")):
        web_root = extract_web_root(line)
        if web_root:
            return {"version": extract_version(web_root), "webRoot": web_root}
    return None
