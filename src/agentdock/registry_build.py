from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import write_json_atomic
from .errors import AgentdockError, ValidationError
from .manifest import is_valid_name, parse_component_manifest

logger = logging.getLogger(__name__)

REGISTRY_SOURCE_FILENAME = "registry.json"
SOURCE_FILES_DIR = "files"


@dataclass(frozen=True)
class RegistryBuild:
    name: str
    namespace: str
    version: str
    components_count: int
    files_count: int
    output_path: Path


class RegistryBuildError(AgentdockError):
    code = "BUILD_ERROR"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        return super().__str__() + "\n" + "\n".join(f"  - {e}" for e in self.errors)


def _load_source(source: Path) -> dict[str, Any]:
    path = source / REGISTRY_SOURCE_FILENAME
    if not path.is_file():
        raise RegistryBuildError(f"No {REGISTRY_SOURCE_FILENAME} found in {source}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise RegistryBuildError(f"Error parsing {path}: {e}") from e
    if not isinstance(raw, dict):
        raise RegistryBuildError(f"Error parsing {path}: expected a JSON object.")
    return raw


def _validate(raw: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    for key in ("name", "namespace", "version"):
        if not isinstance(raw.get(key), str) or not raw[key].strip():
            errors.append(f"{key}: must be a non-empty string")
    namespace = raw.get("namespace")
    if isinstance(namespace, str) and namespace and not is_valid_name(namespace):
        errors.append(f"namespace: {namespace!r} must be lowercase alphanumeric with single hyphens")

    components = raw.get("components")
    if not isinstance(components, list):
        errors.append("components: must be a list")
        return errors

    names: set[str] = set()
    parsed = []
    for i, item in enumerate(components):
        try:
            manifest = parse_component_manifest(item, ctx=f"components[{i}]")
        except ValidationError as e:
            errors.append(str(e))
            continue
        if manifest.name in names:
            errors.append(f"components[{i}]: duplicate component name {manifest.name!r}")
        names.add(manifest.name)
        parsed.append(manifest)

    for manifest in parsed:
        for dep in manifest.dependencies:
            if dep.namespace is None and dep.name not in names:
                errors.append(f"{manifest.name}: dependency {dep.name!r} is not a component of this registry")
    return errors


def build_registry(source: Path, out: Path) -> RegistryBuild:
    """
    Build a static registry that ``agentdock add`` can read over plain HTTP.

    Layout of ``out``: ``index.json``, ``components/<name>.json`` (a packument
    with one version) and ``components/<name>/<path>`` for every file.
    """
    source = source.expanduser().resolve()
    out = out.expanduser().resolve()
    if not source.is_dir():
        raise RegistryBuildError(f"Not a directory: {source}")

    raw = _load_source(source)
    errors = _validate(raw)
    if errors:
        raise RegistryBuildError("Registry validation failed", errors)

    version = raw["version"]
    components_dir = out / "components"
    components_dir.mkdir(parents=True, exist_ok=True)

    missing: list[str] = []
    files_count = 0
    for component in raw["components"]:
        manifest = parse_component_manifest(component)
        packument = {
            "name": manifest.name,
            "versions": {version: component},
            "dist-tags": {"latest": version},
        }
        write_json_atomic(components_dir / f"{manifest.name}.json", packument, sort_keys=False)

        for f in manifest.files:
            src = source / SOURCE_FILES_DIR / f.path
            if not src.is_file():
                missing.append(f"{manifest.name}: source file not found at {src}")
                continue
            dest = components_dir / manifest.name / f.path
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dest)
            files_count += 1

    if missing:
        raise RegistryBuildError(f"Build failed with {len(missing)} errors", missing)

    index = {
        "name": raw["name"],
        "namespace": raw["namespace"],
        "version": version,
        "author": raw.get("author", ""),
        "components": [
            {"name": c["name"], "type": c["type"], "description": c.get("description", "")}
            for c in raw["components"]
        ],
    }
    write_json_atomic(out / "index.json", index, sort_keys=False)
    write_json_atomic(out / ".well-known" / "agentdock.json", {"registry": "/index.json"})
    logger.info("built registry %s (%d components) into %s", raw["namespace"], len(raw["components"]), out)

    return RegistryBuild(
        name=raw["name"],
        namespace=raw["namespace"],
        version=version,
        components_count=len(raw["components"]),
        files_count=files_count,
        output_path=out,
    )
