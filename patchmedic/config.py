# ==========================================================
# patchmedic – Configuration
#
# Features:
#   - Service profiles (log file name, session marker, essential executables)
#   - JSON-backed app settings (backup toggle, auto-fix, install paths)
#   - Install path resolver for (service, game) pairs
#
# Env vars override file locations the same way for every entry point.
# ==========================================================

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

logger = logging.getLogger("config")

CONFIG_PATH = os.getenv("PATCHMEDIC_CONFIG", os.path.join(os.getcwd(), "patchmedic_config.json"))
PROFILES_PATH = os.getenv("PATCHMEDIC_PROFILES")


@dataclass(frozen=True)
class GameServiceProfile:
    log_file_name: str
    log_start_marker: str
    essential_executables: List[str] = field(default_factory=list)
    process_keywords: List[str] = field(default_factory=list)

    def is_essential(self, file_name: str) -> bool:
        return file_name in self.essential_executables

    def matches_process(self, process_name: str) -> bool:
        lower = (process_name or "").lower()
        return any(k.lower() in lower for k in self.process_keywords)


GAME_SERVICE_PROFILES: Dict[str, GameServiceProfile] = {
    "Kakao Games": GameServiceProfile(
        log_file_name="KakaoClient.txt",
        log_start_marker="***** KAKAO LOG FILE OPENING *****",
        essential_executables=[
            "PathOfExile.exe",
            "PathOfExile_x64.exe",
            "PathOfExile_KG.exe",
            "PathOfExile_x64_KG.exe",
            "Client.exe",
            "PackCheck.exe",
        ],
        process_keywords=["PathOfExile_KG.exe"],
    ),
    "GGG": GameServiceProfile(
        log_file_name="Client.txt",
        log_start_marker="***** LOG FILE OPENING *****",
        essential_executables=[
            "PathOfExile.exe",
            "PathOfExile_x64.exe",
            "Client.exe",
            "PackCheck.exe",
        ],
        process_keywords=["PathOfExile.exe"],
    ),
}

# JSON keys used in a profiles override file -> dataclass field names
_PROFILE_KEYS = {
    "logFileName": "log_file_name",
    "logStartMarker": "log_start_marker",
    "essentialExecutables": "essential_executables",
    "processKeywords": "process_keywords",
}


def load_service_profiles(path: Optional[str] = None) -> Dict[str, GameServiceProfile]:
    """
    Return the built-in profiles with overrides from a JSON file merged on top.

    The file maps service id -> partial profile, e.g.
    {"GGG": {"essentialExecutables": ["PathOfExile.exe", "Client.exe"]}}.
    Unknown services are added when the override is complete.
    """
    profiles = dict(GAME_SERVICE_PROFILES)
    path = path or PROFILES_PATH
    if not path or not os.path.exists(path):
        return profiles

    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            raw = json.load(f)
    except Exception:
        logger.error("Failed to load service profiles from %s", path, exc_info=True)
        return profiles

    for service_id, data in (raw or {}).items():
        if not isinstance(data, dict):
            continue
        kwargs = {_PROFILE_KEYS[k]: v for k, v in data.items() if k in _PROFILE_KEYS}
        base = profiles.get(service_id)
        try:
            profiles[service_id] = replace(base, **kwargs) if base else GameServiceProfile(**kwargs)
        except TypeError:
            logger.warning("Ignoring incomplete profile override for %s", service_id)

    return profiles


# ---------------- App settings ----------------

DEFAULT_SETTINGS: Dict[str, Any] = {
    "serviceChannel": "GGG",
    "activeGame": "POE1",
    "backupPatchFiles": True,
    "autoFixPatchError": False,
    "autoGameStartAfterFix": False,
    "installPaths": {},
    "knownGameVersions": {},
}


class AppSettings:
    """
    Small JSON-backed key/value store.

    Reads are served from memory; save() writes the whole document back.
    A missing or unreadable file falls back to DEFAULT_SETTINGS.
    """

    def __init__(self, path: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        self.path = path or CONFIG_PATH
        self._data: Dict[str, Any] = copy.deepcopy(DEFAULT_SETTINGS)
        if data is not None:
            self._data.update(data)
        else:
            self._data.update(self._load())
        self.profiles = load_service_profiles()

    def _load(self) -> Dict[str, Any]:
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8-sig") as f:
                    return json.load(f)
            except Exception:
                logger.error("Failed to load config from %s", self.path, exc_info=True)
        return {}

    def save(self) -> None:
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
        except Exception:
            logger.error("Failed to save config to %s", self.path, exc_info=True)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def is_backup_enabled(self) -> bool:
        # Only an explicit False disables backups.
        return self._data.get("backupPatchFiles") is not False

    def get_profile(self, service_id: str) -> Optional[GameServiceProfile]:
        return self.profiles.get(service_id)

    def is_game_process(self, process_name: str, service_id: Optional[str] = None) -> bool:
        """True when the process belongs to the given (default: active) service."""
        profile = self.get_profile(service_id or self.get("serviceChannel"))
        return bool(profile and profile.matches_process(process_name))


class ConfigPathResolver:
    """Resolve the install directory for a (service, game) pair.

    Lookup order: settings["installPaths"]["<game>_<service>"], then the env var
    PATCHMEDIC_INSTALL_<GAME>_<SERVICE> (spaces become underscores, upper case).
    """

    def __init__(self, settings: AppSettings):
        self.settings = settings

    @staticmethod
    def _env_key(service_id: str, game_id: str) -> str:
        raw = f"PATCHMEDIC_INSTALL_{game_id}_{service_id}"
        return raw.replace(" ", "_").upper()

    def resolve_install_path(self, service_id: str, game_id: str) -> Optional[str]:
        paths = self.settings.get("installPaths") or {}
        candidate = paths.get(f"{game_id}_{service_id}") or os.getenv(self._env_key(service_id, game_id))
        if not candidate:
            return None
        if not os.path.isdir(candidate):
            logger.warning("Configured install path does not exist: %s", candidate)
            return None
        return candidate
