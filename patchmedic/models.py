from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class FileStatus(str, Enum):
    WAITING = "waiting"
    DOWNLOADING = "downloading"
    DONE = "done"
    ERROR = "error"


@dataclass
class ParsedLogInfo:
    """Repair plan recovered from the tail of a client log. Never persisted."""

    web_root: Optional[str] = None
    backup_web_root: Optional[str] = None
    files_to_download: List[str] = field(default_factory=list)
    has_error: bool = False

    def add_file(self, name: str) -> None:
        # Ordered set semantics: first occurrence wins.
        if name not in self.files_to_download:
            self.files_to_download.append(name)


@dataclass
class FileProgress:
    file_name: str
    status: FileStatus = FileStatus.WAITING
    progress: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "fileName": self.file_name,
            "status": self.status.value,
            "progress": self.progress,
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class PatchProgress:
    """Outbound snapshot; always derived from the FileProgress list, never stored."""

    status: FileStatus
    total: int
    current: int
    overall_progress: int
    files: List[FileProgress] = field(default_factory=list)
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def build(
        cls,
        status: FileStatus,
        files: List[FileProgress],
        completed: int,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> "PatchProgress":
        total = len(files)
        current = min(completed, total)
        overall = (current * 100) // total if total else 0
        return cls(
            status=status,
            total=total,
            current=current,
            overall_progress=overall,
            files=[FileProgress(f.file_name, f.status, f.progress, f.error) for f in files],
            error=error,
            message=message,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.status.value,
            "total": self.total,
            "current": self.current,
            "overallProgress": self.overall_progress,
            "files": [f.to_dict() for f in self.files],
        }
        if self.error:
            out["error"] = self.error
        if self.message:
            out["message"] = self.message
        return out


@dataclass
class BackupMetadata:
    timestamp: str
    version: str
    files: List[str] = field(default_factory=list)
    pid: Optional[int] = None

    @classmethod
    def now(cls, version: str, files: List[str], pid: Optional[int] = None) -> "BackupMetadata":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            version=version,
            files=list(files),
            pid=pid,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"timestamp": self.timestamp, "version": self.version, "files": self.files}
        if self.pid is not None:
            out["pid"] = self.pid
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupMetadata":
        return cls(
            timestamp=str(data.get("timestamp") or ""),
            version=str(data.get("version") or "unknown"),
            files=[str(f) for f in (data.get("files") or [])],
            pid=data.get("pid"),
        )
