from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import RegistryConfig
from .errors import ConfigError, ConflictError, NotFoundError, ValidationError
from .fetcher import ComponentFetcher
from .integrity import BundleFile, hash_bundle
from .lockfile import LOCK_FILENAME, InstalledFrom, LockEntry, Lockfile, read_lock, utc_now, write_lock
from .manifest import (
    COMPONENT_BASE,
    PROFILE_TYPE,
    check_safe_relative_path,
    parse_qualified_name,
    split_version_suffix,
    strip_component_base,
)
from .resolver import resolve_dependencies

logger = logging.getLogger(__name__)

PROFILE_NAME_MAX_LEN = 32
FLAT_PROFILE_FILES = frozenset({"agentdock.json", "agents.json", "AGENTS.md"})

_PROFILE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9._-]*$")


@dataclass(frozen=True)
class ProfileInstallResult:
    name: str
    path: Path
    component: str
    version: str
    hash: str
    flat_files: tuple[str, ...]
    files: tuple[str, ...]
    dependencies: tuple[str, ...]
    replaced: bool

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "component": self.component,
            "version": self.version,
            "hash": self.hash,
            "flatFiles": list(self.flat_files),
            "files": list(self.files),
            "dependencies": list(self.dependencies),
            "replaced": self.replaced,
        }


def validate_profile_name(name: str) -> str:
    if not name or len(name) > PROFILE_NAME_MAX_LEN or not _PROFILE_NAME_RE.match(name):
        raise ValidationError(
            f'Invalid profile name: "{name}". Profile names must start with a letter, be at most '
            f"{PROFILE_NAME_MAX_LEN} characters and contain only letters, digits, dots, underscores or hyphens."
        )
    return name


def is_flat_profile_file(target: str) -> bool:
    return target in FLAT_PROFILE_FILES


def list_profiles(profiles_root: Path) -> list[str]:
    if not profiles_root.is_dir():
        return []
    names: list[str] = []
    for p in sorted(profiles_root.iterdir()):
        if not p.is_dir() or p.name.startswith(".") or ".backup-" in p.name:
            continue
        if (p / LOCK_FILENAME).is_file() or (p / "agentdock.json").is_file():
            names.append(p.name)
    return names


@dataclass(frozen=True)
class ProfileDetails:
    name: str
    path: Path
    installed_from: InstalledFrom | None
    installed: dict[str, LockEntry]
    flat_files: tuple[str, ...]

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "installedFrom": self.installed_from.to_json() if self.installed_from else None,
            "installed": {qn: self.installed[qn].to_json() for qn in sorted(self.installed)},
            "flatFiles": list(self.flat_files),
        }


def _existing_profile(profiles_root: Path, name: str) -> Path:
    validate_profile_name(name)
    dest = profiles_root / name
    if not dest.is_dir():
        raise NotFoundError(f'Profile "{name}" not found.\nRun \'agentdock profile list\' to see installed profiles.')
    return dest


def show_profile(profiles_root: Path, name: str) -> ProfileDetails:
    dest = _existing_profile(profiles_root, name)
    lock = read_lock(dest / LOCK_FILENAME) or Lockfile()
    return ProfileDetails(
        name=name,
        path=dest,
        installed_from=lock.installed_from,
        installed=dict(lock.installed),
        flat_files=tuple(f for f in sorted(FLAT_PROFILE_FILES) if (dest / f).is_file()),
    )


def remove_profile(profiles_root: Path, name: str) -> Path:
    dest = _existing_profile(profiles_root, name)
    shutil.rmtree(dest)
    logger.info("removed profile %s", name)
    return dest


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _remove_tree(path: Path, *, what: str) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s %s: %s", what, path, e)


def _write_into(root: Path, files: list[BundleFile]) -> None:
    for f in files:
        dest = root / f.path
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(f.content)


def _promote(staging: Path, dest: Path) -> bool:
    """Rename ``staging`` to ``dest``; returns True when an existing profile was replaced."""
    if not dest.exists():
        staging.rename(dest)
        return False

    backup = dest.with_name(f"{dest.name}.backup-{int(time.time() * 1000)}")
    dest.rename(backup)
    try:
        staging.rename(dest)
    except OSError:
        backup.rename(dest)
        raise
    _remove_tree(backup, what="profile backup")
    return True


def install_profile_from_registry(
    *,
    source: str,
    profile_name: str,
    registries: dict[str, RegistryConfig],
    fetcher: ComponentFetcher,
    profiles_root: Path,
    force: bool = False,
) -> ProfileInstallResult:
    """
    Install the profile component ``source`` (``ns/name[@version]``) as ``profile_name``.

    Flat files (``agentdock.json``, ``agents.json``, ``AGENTS.md``) land at the
    profile root; every other file, and every file of every dependency, lands
    under ``<profile>/.agents/``.
    """
    validate_profile_name(profile_name)
    ref, version = split_version_suffix(source.strip())
    if version == "":
        raise ValidationError(f"Invalid version specifier in '{ref}@'. Version cannot be empty.")
    namespace, component = parse_qualified_name(ref)
    qn = f"{namespace}/{component}"

    dest = profiles_root / profile_name
    if dest.exists() and not force:
        raise ConflictError(f'Profile "{profile_name}" already exists.\nUse --force to overwrite.', [str(dest)])

    registry = registries.get(namespace)
    if registry is None:
        raise ConfigError(f"Registry '{namespace}' is not configured. Add it with `agentdock registry add`.")
    headers = registry.headers or None

    try:
        fetched = fetcher.fetch_component(registry.url, component, version, headers=headers)
    except NotFoundError as e:
        raise NotFoundError(
            f'Profile component "{qn}" not found in registry.\n\n'
            "Check the component name and ensure the registry is configured."
        ) from e
    manifest = fetched.manifest
    if manifest.type != PROFILE_TYPE:
        raise ValidationError(
            f'Component "{qn}" is type "{manifest.type}", not "{PROFILE_TYPE}".\n\n'
            "Only profile components can be installed with 'agentdock profile add --from'."
        )

    flat: list[BundleFile] = []
    nested: list[BundleFile] = []
    for f in manifest.files:
        content = fetcher.fetch_file_content(registry.url, component, f.path, headers=headers)
        if is_flat_profile_file(f.target):
            flat.append(BundleFile(path=f.target, content=content))
        else:
            rel = check_safe_relative_path(strip_component_base(f.target), what="profile file target")
            nested.append(BundleFile(path=f"{COMPONENT_BASE}/{rel}", content=content))

    dependency_entries: dict[str, LockEntry] = {}
    dependency_files: list[BundleFile] = []
    if manifest.dependencies:
        refs = [dep.qualify(namespace) for dep in manifest.dependencies]
        pinned = {dep.qualify(namespace): dep.version for dep in manifest.dependencies if dep.version}
        resolution = resolve_dependencies(registries, refs, fetcher, pinned=pinned)
        now = utc_now()
        for dep in resolution.components:
            files = [
                BundleFile(
                    path=f"{COMPONENT_BASE}/{strip_component_base(f.target)}",
                    content=fetcher.fetch_file_content(dep.base_url, dep.name, f.path, headers=dep.headers or None),
                )
                for f in dep.manifest.files
            ]
            dependency_files.extend(files)
            dependency_entries[dep.qualified_name] = LockEntry(
                registry=dep.registry_name,
                version=dep.version,
                hash=hash_bundle(files),
                files=tuple(f.path for f in files),
                installed_at=now,
            )

    profile_hash = hash_bundle(flat)

    profiles_root.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=profiles_root))
    try:
        # mkdtemp is 0700; the promoted profile gets the same mode as a plain mkdir.
        staging.chmod(0o777 & ~_current_umask())
        (staging / COMPONENT_BASE).mkdir(parents=True, exist_ok=True)
        _write_into(staging, flat)
        _write_into(staging, nested)
        _write_into(staging, dependency_files)

        lock = Lockfile(
            installed=dependency_entries,
            installed_from=InstalledFrom(
                registry=namespace,
                component=component,
                version=fetched.version,
                hash=profile_hash,
                installed_at=utc_now(),
            ),
        )
        write_lock(staging / LOCK_FILENAME, lock)

        replaced = _promote(staging, dest) if force else _promote_new(staging, dest)
    except BaseException:
        _remove_tree(staging, what="staging directory")
        raise

    logger.info("installed profile %s from %s@%s", profile_name, qn, fetched.version)
    return ProfileInstallResult(
        name=profile_name,
        path=dest,
        component=qn,
        version=fetched.version,
        hash=profile_hash,
        flat_files=tuple(f.path for f in flat),
        files=tuple(f.path for f in (*flat, *nested, *dependency_files)),
        dependencies=tuple(dependency_entries),
        replaced=replaced,
    )


def _promote_new(staging: Path, dest: Path) -> bool:
    # A profile created concurrently since the initial check must not be replaced without --force.
    if dest.exists():
        raise ConflictError(f'Profile "{dest.name}" already exists.\nUse --force to overwrite.', [str(dest)])
    staging.rename(dest)
    return False
