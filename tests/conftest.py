"""Shared fixtures: a fake install directory, settings, event capture and a fake CDN transfer."""

import asyncio
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from patchmedic.config import AppSettings, ConfigPathResolver
from patchmedic.errors import DownloadError
from patchmedic.events import Event, EventBus, EventType
from patchmedic.models import FileStatus

GGG_MARKER = "***** LOG FILE OPENING *****"


def log_line(text: str, pid: int = 4242, level: str = "INFO") -> str:
    return f"2024/06/01 12:00:00 123456789 abc [{level} Client {pid}] {text}\n"


def write_log(install: Path, lines: List[str], name: str = "Client.txt", mode: str = "w") -> Path:
    path = install / "logs" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, mode, encoding="utf-8", newline="") as f:
        f.write("".join(lines))
    return path


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    install = tmp_path / "PathOfExile"
    (install / "logs").mkdir(parents=True)
    return install


@pytest.fixture
def settings(tmp_path: Path, install_dir: Path) -> AppSettings:
    return AppSettings(
        path=str(tmp_path / "patchmedic_config.json"),
        data={
            "serviceChannel": "GGG",
            "activeGame": "POE1",
            "installPaths": {"POE1_GGG": str(install_dir)},
        },
    )


@pytest.fixture
def resolver(settings: AppSettings) -> ConfigPathResolver:
    return ConfigPathResolver(settings)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


class EventRecorder:
    def __init__(self, bus: EventBus, *types: EventType):
        self.events: List[Event] = []
        for t in types:
            bus.subscribe(t, self.events.append)

    def payloads(self, event_type: EventType) -> List[Dict[str, Any]]:
        return [e.payload for e in self.events if e.type is event_type]


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus, *list(EventType))


class FakeTransfer:
    """Stands in for HttpTransfer: writes `content[name]` after an optional delay."""

    def __init__(self, content: Optional[Dict[str, bytes]] = None, delay: float = 0.0):
        self.content = content or {}
        self.delay = delay
        self.fail_urls: set = set()
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.max_downloading_seen = 0
        self.manager = None
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def __call__(self, url, dest, token, on_progress=None) -> int:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.manager is not None:
            downloading = sum(1 for f in self.manager.file_states if f.status is FileStatus.DOWNLOADING)
            self.max_downloading_seen = max(self.max_downloading_seen, downloading)
        self.started.set()
        try:
            if self.gate is not None:
                while not self.gate.is_set():
                    token.raise_if_cancelled()
                    await asyncio.sleep(0.01)
            if self.delay:
                await asyncio.sleep(self.delay)
            token.raise_if_cancelled()
            if url in self.fail_urls:
                raise DownloadError(url, "HTTP 404")

            name = url.rsplit("/", 1)[-1]
            data = self.content.get(name, f"new:{name}".encode())
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            with open(dest, "wb") as f:
                f.write(data)
            if on_progress is not None:
                on_progress(len(data), len(data))
            return len(data)
        finally:
            self.in_flight -= 1
