from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import write_json_atomic
from .errors import ConfigError

LOCK_FILENAME = "agentdock.lock"
LOCK_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class LockEntry:
    registry: str
    version: str
    hash: str
    files: tuple[str, ...]
    installed_at: str
    updated_at: str | None = None

    def updated(self, *, version: str, hash: str, files: tuple[str, ...], now: str | None = None) -> "LockEntry":
        # Registry name and the original install time survive every update.
        return replace(self, version=version, hash=hash, files=files, updated_at=now or utc_now())

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "registry": self.registry,
            "version": self.version,
            "hash": self.hash,
            "files": list(self.files),
            "installedAt": self.installed_at,
        }
        if self.updated_at:
            out["updatedAt"] = self.updated_at
        return out


@dataclass(frozen=True)
class InstalledFrom:
    registry: str
    component: str
    version: str
    hash: str
    installed_at: str

    def to_json(self) -> dict[str, Any]:
        return {
            "registry": self.registry,
            "component": self.component,
            "version": self.version,
            "hash": self.hash,
            "installedAt": self.installed_at,
        }


@dataclass
class Lockfile:
    installed: dict[str, LockEntry] = field(default_factory=dict)
    installed_from: InstalledFrom | None = None

    def __bool__(self) -> bool:
        return bool(self.installed) or self.installed_from is not None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "lockVersion": LOCK_VERSION,
            "installed": {k: self.installed[k].to_json() for k in sorted(self.installed)},
        }
        if self.installed_from is not None:
            out["installedFrom"] = self.installed_from.to_json()
        return out

    def owner_of(self, target: str) -> str | None:
        for name, entry in self.installed.items():
            if target in entry.files:
                return name
        return None


def _parse_entry(key: str, raw: Any, *, path: Path) -> LockEntry:
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid lock entry {key!r} in {path}.")
    files = raw.get("files", [])
    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        raise ConfigError(f"Invalid lock entry {key!r} in {path}: 'files' must be a list of strings.")
    for required in ("registry", "version", "hash", "installedAt"):
        if not isinstance(raw.get(required), str):
            raise ConfigError(f"Invalid lock entry {key!r} in {path}: missing {required!r}.")
    updated_at = raw.get("updatedAt")
    return LockEntry(
        registry=raw["registry"],
        version=raw["version"],
        hash=raw["hash"],
        files=tuple(files),
        installed_at=raw["installedAt"],
        updated_at=updated_at if isinstance(updated_at, str) else None,
    )


def parse_lock(raw: Any, *, path: Path) -> Lockfile:
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid lock file {path}: expected an object.")
    if raw.get("lockVersion") != LOCK_VERSION:
        raise ConfigError(f"Unsupported lock file version in {path}: {raw.get('lockVersion')!r}.")
    installed_raw = raw.get("installed") or {}
    if not isinstance(installed_raw, dict):
        raise ConfigError(f"Invalid lock file {path}: 'installed' must be an object.")
    installed = {str(k): _parse_entry(str(k), v, path=path) for k, v in installed_raw.items()}

    installed_from: InstalledFrom | None = None
    src = raw.get("installedFrom")
    if isinstance(src, dict):
        installed_from = InstalledFrom(
            registry=str(src.get("registry", "")),
            component=str(src.get("component", "")),
            version=str(src.get("version", "")),
            hash=str(src.get("hash", "")),
            installed_at=str(src.get("installedAt", "")),
        )
    return Lockfile(installed=installed, installed_from=installed_from)


def read_lock(path: Path) -> Lockfile | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing {path}: {e}") from e
    return parse_lock(raw, path=path)


def write_lock(path: Path, lock: Lockfile) -> None:
    write_json_atomic(path, lock.to_json())
