from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

from .config import LocalConfigProvider
from .errors import ConfigError, ConflictError, IntegrityError, NotFoundError, ValidationError
from .fetcher import ComponentFetcher
from .host_config import HostConfigUpdate, parse_package_spec, update_host_config, update_package_dependencies
from .integrity import BundleFile, hash_bundle, hash_installed_files
from .lockfile import LOCK_FILENAME, LockEntry, Lockfile, read_lock, utc_now, write_lock
from .manifest import ComponentManifest, parse_qualified_name, resolve_target_path, split_version_suffix
from .resolver import ResolutionResult, ResolvedComponent, resolve_dependencies

logger = logging.getLogger(__name__)

STATUS_UPDATED = "updated"
STATUS_UP_TO_DATE = "up-to-date"
STATUS_WOULD_UPDATE = "would-update"


@dataclass(frozen=True)
class _PlannedComponent:
    component: ResolvedComponent
    files: tuple[BundleFile, ...]
    hash: str
    to_write: tuple[str, ...]
    skipped: tuple[str, ...]
    conflicts: tuple[str, ...]

    @property
    def targets(self) -> tuple[str, ...]:
        return tuple(f.path for f in self.files)


@dataclass(frozen=True)
class AddResult:
    install_order: tuple[str, ...]
    installed: tuple[str, ...]
    unchanged: tuple[str, ...]
    restored: tuple[str, ...]
    overwritten: tuple[str, ...]
    files_written: tuple[str, ...]
    files_skipped: tuple[str, ...]
    lock_path: Path
    dry_run: bool = False
    host_config: HostConfigUpdate | None = None
    package_json: Path | None = None
    mcp_servers: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "success": True,
            "dryRun": self.dry_run,
            "installOrder": list(self.install_order),
            "installed": list(self.installed),
            "unchanged": list(self.unchanged),
            "restored": list(self.restored),
            "overwritten": list(self.overwritten),
            "filesWritten": list(self.files_written),
            "filesSkipped": list(self.files_skipped),
            "mcpServers": list(self.mcp_servers),
            "hostConfig": self.host_config.to_json() if self.host_config else None,
            "packageJson": str(self.package_json) if self.package_json else None,
            "lockPath": str(self.lock_path),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class UpdateResult:
    qualified_name: str
    old_version: str
    new_version: str
    status: str

    def to_json(self) -> dict[str, Any]:
        return {
            "qualifiedName": self.qualified_name,
            "oldVersion": self.old_version,
            "newVersion": self.new_version,
            "status": self.status,
        }


@dataclass(frozen=True)
class VerifyResult:
    qualified_name: str
    ok: bool
    expected: str
    actual: str | None = None
    missing: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "qualifiedName": self.qualified_name,
            "ok": self.ok,
            "expected": self.expected,
            "actual": self.actual,
            "missing": list(self.missing),
        }


@dataclass(frozen=True)
class _UpdateSpec:
    qualified_name: str
    version: str | None = None


@dataclass
class _PendingUpdate:
    qualified_name: str
    files: tuple[BundleFile, ...]
    hash: str
    version: str
    entry: LockEntry = field(repr=False)


class ComponentInstaller:
    def __init__(self, provider: LocalConfigProvider, fetcher: ComponentFetcher | None = None) -> None:
        self.provider = provider
        self._fetcher = fetcher
        self.cwd = provider.cwd
        self.lock_path = self.cwd / LOCK_FILENAME

    @property
    def fetcher(self) -> ComponentFetcher:
        if self._fetcher is None:
            raise RuntimeError("ComponentInstaller was created without a fetcher; add and update need one")
        return self._fetcher

    # -- paths ---------------------------------------------------------------

    def _target(self, target: str) -> str:
        return resolve_target_path(target, self.provider.get_component_path())

    def _inside(self, rel: str) -> Path:
        root = self.cwd.resolve()
        path = (root / rel).resolve()
        if path != root and root not in path.parents:
            raise ValidationError(f"Refusing to write outside the project: {rel}")
        return path

    def _fetch_files(self, component: ResolvedComponent, manifest: ComponentManifest) -> tuple[BundleFile, ...]:
        headers = component.headers or None
        return tuple(
            BundleFile(
                path=self._target(f.target),
                content=self.fetcher.fetch_file_content(component.base_url, manifest.name, f.path, headers=headers),
            )
            for f in manifest.files
        )

    def _write_files(self, files: Iterable[BundleFile]) -> list[str]:
        written: list[str] = []
        for f in files:
            dest = self._inside(f.path)
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(f.content)
            written.append(f.path)
            logger.debug("wrote %s", f.path)
        return written

    # -- add -----------------------------------------------------------------

    def _plan(self, resolution: ResolutionResult, lock: Lockfile) -> list[_PlannedComponent]:
        plans: list[_PlannedComponent] = []
        claimed: dict[str, str] = {}
        shared: list[tuple[str, str, str]] = []
        for component in resolution.components:
            qn = component.qualified_name
            files = self._fetch_files(component, component.manifest)
            digest = hash_bundle(files)

            entry = lock.installed.get(qn)
            if entry is not None and entry.hash != digest:
                raise IntegrityError(qn, entry.hash, digest)

            to_write: list[str] = []
            skipped: list[str] = []
            conflicts: list[str] = []
            for f in files:
                other = claimed.setdefault(f.path, qn)
                if other == qn:
                    other = lock.owner_of(f.path) or qn
                if other != qn:
                    shared.append((f.path, other, qn))
                dest = self._inside(f.path)
                if not dest.exists():
                    to_write.append(f.path)
                elif dest.is_file() and dest.read_bytes() == f.content:
                    skipped.append(f.path)
                else:
                    conflicts.append(f.path)
                    to_write.append(f.path)
            plans.append(
                _PlannedComponent(
                    component=component,
                    files=files,
                    hash=digest,
                    to_write=tuple(to_write),
                    skipped=tuple(skipped),
                    conflicts=tuple(conflicts),
                )
            )

        if shared:
            # Refused even with --force.
            lines = "\n".join(f"  - {path} ({a}, {b})" for path, a, b in shared)
            raise ConflictError(
                f"These files are claimed by more than one component:\n{lines}\n\n"
                "Components cannot share files; install them into separate projects or profiles.",
                [path for path, _, _ in shared],
            )
        return plans

    def add(self, names: Sequence[str], *, force: bool = False, dry_run: bool = False) -> AddResult:
        """
        Install ``names`` (qualified) and their dependencies.

        Components already in the lock are fetched again at their locked
        version and must hash to the same value (IntegrityError otherwise).
        Locally modified files raise ConflictError unless ``force`` is set.
        """
        if not names:
            raise ValidationError("Specify at least one component to add.")
        lock = read_lock(self.lock_path) or Lockfile()
        pinned = {qn: entry.version for qn, entry in lock.installed.items()}

        resolution = resolve_dependencies(self.provider.get_registries(), names, self.fetcher, pinned=pinned)
        logger.info("install order: %s", ", ".join(resolution.install_order))

        for spec in (*resolution.package_dependencies, *resolution.package_dev_dependencies):
            parse_package_spec(spec)

        plans = self._plan(resolution, lock)

        conflicts = [path for plan in plans for path in plan.conflicts]
        if conflicts and not force:
            lines = []
            for path in conflicts:
                owner = lock.owner_of(path)
                lines.append(f"  - {path}" + (f" (installed by {owner})" if owner else ""))
            raise ConflictError(
                "These files exist with different content:\n"
                + "\n".join(lines)
                + "\n\nRe-run with --force to overwrite them.",
                conflicts,
            )

        installed: list[str] = []
        unchanged: list[str] = []
        restored: list[str] = []
        overwritten: list[str] = []
        for plan in plans:
            qn = plan.component.qualified_name
            if plan.conflicts:
                overwritten.append(qn)
            elif qn not in lock.installed:
                installed.append(qn)
            elif plan.to_write:
                restored.append(qn)
            else:
                unchanged.append(qn)

        files_written = tuple(path for plan in plans for path in plan.to_write)
        files_skipped = tuple(path for plan in plans for path in plan.skipped)

        if dry_run:
            return AddResult(
                install_order=resolution.install_order,
                installed=tuple(installed),
                unchanged=tuple(unchanged),
                restored=tuple(restored),
                overwritten=tuple(overwritten),
                files_written=files_written,
                files_skipped=files_skipped,
                lock_path=self.lock_path,
                dry_run=True,
                mcp_servers=tuple(resolution.mcp_servers),
                warnings=resolution.warnings,
            )

        for plan in plans:
            wanted = set(plan.to_write)
            self._write_files(f for f in plan.files if f.path in wanted)

        host_update: HostConfigUpdate | None = None
        if resolution.has_host_changes():
            host_update = update_host_config(self.cwd, resolution)
        package_json = update_package_dependencies(
            self.cwd,
            resolution.package_dependencies,
            resolution.package_dev_dependencies,
            component_path=self.provider.get_component_path(),
        )

        now = utc_now()
        for plan in plans:
            qn = plan.component.qualified_name
            if qn in lock.installed:
                continue
            lock.installed[qn] = LockEntry(
                registry=plan.component.registry_name,
                version=plan.component.version,
                hash=plan.hash,
                files=plan.targets,
                installed_at=now,
            )
        write_lock(self.lock_path, lock)
        logger.info("wrote %s", self.lock_path)

        warnings = list(resolution.warnings)
        if host_update is not None:
            warnings.extend(f"MCP server '{name}' already configured, skipped" for name in host_update.mcp_skipped)

        return AddResult(
            install_order=resolution.install_order,
            installed=tuple(installed),
            unchanged=tuple(unchanged),
            restored=tuple(restored),
            overwritten=tuple(overwritten),
            files_written=files_written,
            files_skipped=files_skipped,
            lock_path=self.lock_path,
            host_config=host_update,
            package_json=package_json,
            mcp_servers=tuple(resolution.mcp_servers),
            warnings=tuple(warnings),
        )

    # -- update --------------------------------------------------------------

    def _select(
        self,
        lock: Lockfile,
        components: Sequence[str],
        *,
        all_: bool,
        registry: str | None,
    ) -> list[_UpdateSpec]:
        has_components = len(components) > 0
        has_registry = registry is not None
        if not has_components and not all_ and not has_registry:
            raise ValidationError(
                "Specify components, use --all, or use --registry <name>.\n\n"
                "Examples:\n"
                "  agentdock update acme/agent-x      # update one component\n"
                "  agentdock update --all             # update everything installed\n"
                "  agentdock update --registry acme   # update everything from one registry"
            )
        if all_ and has_components:
            raise ValidationError(
                "Cannot specify components with --all.\n"
                "Use either 'agentdock update --all' or 'agentdock update <components>'."
            )
        if has_registry and has_components:
            raise ValidationError(
                "Cannot specify components with --registry.\n"
                "Use either 'agentdock update --registry <name>' or 'agentdock update <components>'."
            )
        if all_ and has_registry:
            raise ValidationError(
                "Cannot use --all with --registry.\n"
                "Use either 'agentdock update --all' or 'agentdock update --registry <name>'."
            )

        installed = sorted(lock.installed)
        if all_:
            return [_UpdateSpec(qn) for qn in installed]
        if has_registry:
            selected = [_UpdateSpec(qn) for qn in installed if lock.installed[qn].registry == registry]
            if not selected:
                raise NotFoundError(f"No installed components from registry '{registry}'.")
            return selected

        specs: list[_UpdateSpec] = []
        for raw in components:
            name, version = split_version_suffix(raw.strip())
            if version == "":
                raise ValidationError(
                    f"Invalid version specifier in '{name}@'.\n"
                    "Version cannot be empty. Use 'acme/agent-x@1.2.0' or omit the version for latest."
                )
            if "/" not in name:
                suggestions = [qn for qn in installed if qn.endswith(f"/{name}")]
                if len(suggestions) == 1:
                    raise ValidationError(f"Ambiguous component '{name}'. Did you mean '{suggestions[0]}'?")
                if suggestions:
                    listed = "\n".join(f"  - {s}" for s in suggestions)
                    raise ValidationError(
                        f"Ambiguous component '{name}'. Found in multiple registries:\n{listed}\n\n"
                        "Please use a fully qualified name (registry/component)."
                    )
                raise ValidationError(f"Component '{name}' must include a registry prefix (e.g. 'acme/{name}').")
            parse_qualified_name(name)
            if name not in lock.installed:
                raise NotFoundError(
                    f"Component '{name}' is not installed.\nRun 'agentdock add {name}' to install it first."
                )
            specs.append(_UpdateSpec(name, version))
        return specs

    def update(
        self,
        components: Sequence[str] = (),
        *,
        all_: bool = False,
        registry: str | None = None,
        dry_run: bool = False,
    ) -> list[UpdateResult]:
        lock = read_lock(self.lock_path)
        if not lock or not lock.installed:
            raise ValidationError("Nothing installed yet. Run 'agentdock add <component>' first.")

        specs = self._select(lock, components, all_=all_, registry=registry)
        registries = self.provider.get_registries()

        results: list[UpdateResult] = []
        pending: list[_PendingUpdate] = []
        for spec in specs:
            entry = lock.installed[spec.qualified_name]
            namespace, name = parse_qualified_name(spec.qualified_name)
            reg = registries.get(namespace)
            if reg is None:
                raise ConfigError(
                    f"Registry '{namespace}' not configured. Component '{spec.qualified_name}' cannot be updated."
                )
            fetched = self.fetcher.fetch_component(reg.url, name, spec.version, headers=reg.headers or None)
            component = ResolvedComponent(
                manifest=fetched.manifest,
                namespace=namespace,
                registry_name=namespace,
                base_url=reg.url,
                version=fetched.version,
                headers=dict(reg.headers),
            )
            files = self._fetch_files(component, fetched.manifest)
            for f in files:
                owner = next(
                    (qn for qn, e in lock.installed.items() if qn != spec.qualified_name and f.path in e.files), None
                )
                if owner is not None:
                    raise ConflictError(
                        f"{spec.qualified_name}@{fetched.version} would overwrite {f.path}, which belongs to {owner}.",
                        [f.path],
                    )
            digest = hash_bundle(files)

            if digest == entry.hash:
                status = STATUS_UP_TO_DATE
            elif dry_run:
                status = STATUS_WOULD_UPDATE
            else:
                status = STATUS_UPDATED
                pending.append(
                    _PendingUpdate(
                        qualified_name=spec.qualified_name,
                        files=files,
                        hash=digest,
                        version=fetched.version,
                        entry=entry,
                    )
                )
            results.append(UpdateResult(spec.qualified_name, entry.version, fetched.version, status))

        if dry_run or not pending:
            return results

        now = utc_now()
        for update in pending:
            self._write_files(update.files)
            lock.installed[update.qualified_name] = update.entry.updated(
                version=update.version,
                hash=update.hash,
                files=tuple(f.path for f in update.files),
                now=now,
            )
            logger.info("updated %s to %s", update.qualified_name, update.version)
        write_lock(self.lock_path, lock)
        return results

    # -- verify --------------------------------------------------------------

    def verify(self) -> list[VerifyResult]:
        """Rehash every locked component from the files on disk."""
        lock = read_lock(self.lock_path)
        if lock is None:
            raise ConfigError(f"No {LOCK_FILENAME} found in {self.cwd}.")

        results: list[VerifyResult] = []
        for qn in sorted(lock.installed):
            entry = lock.installed[qn]
            missing = tuple(p for p in entry.files if not (self.cwd / p).is_file())
            if missing:
                results.append(VerifyResult(qn, ok=False, expected=entry.hash, missing=missing))
                continue
            actual = hash_installed_files(self.cwd, entry.files)
            results.append(VerifyResult(qn, ok=actual == entry.hash, expected=entry.hash, actual=actual))
        return results
