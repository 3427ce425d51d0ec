from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from .config import write_json_atomic
from .errors import ConfigError, ValidationError

if TYPE_CHECKING:
    from .resolver import ResolutionResult

logger = logging.getLogger(__name__)

HOST_CONFIG_FILENAME = "agents.json"
PACKAGE_JSON_FILENAME = "package.json"

# Host-config keys whose lists accumulate across sources instead of being replaced.
CONCAT_KEYS = ("plugin", "instructions")

DEFAULT_PACKAGE_JSON: dict[str, Any] = {
    "name": "agentdock-components",
    "private": True,
    "type": "module",
}


def dedupe(items: Iterable[Any]) -> list[Any]:
    out: list[Any] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out


def deep_merge(base: Any, override: Any) -> Any:
    """
    Merge two JSON-like values.

    Dicts merge key by key, recursively. Anything else (lists included) is
    replaced by ``override``. Neither input is mutated.
    """
    if isinstance(base, dict) and isinstance(override, dict):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = deep_merge(base[key], value) if key in base else _copy(value)
        return merged
    return _copy(override)


def merge_host_config(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """deep_merge, except ``plugin`` and ``instructions`` lists concatenate and dedupe."""
    merged = deep_merge(target, source)
    for key in CONCAT_KEYS:
        left = target.get(key)
        right = source.get(key)
        if isinstance(left, list) and isinstance(right, list):
            merged[key] = dedupe([*left, *right])
    return merged


def _copy(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _copy(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_copy(v) for v in value]
    return value


@dataclass(frozen=True)
class HostConfigUpdate:
    path: Path
    created: bool
    changed: bool
    mcp_added: tuple[str, ...] = ()
    mcp_skipped: tuple[str, ...] = ()
    agents_configured: tuple[str, ...] = ()
    tools_disabled: tuple[str, ...] = ()
    plugins_added: tuple[str, ...] = ()
    instructions_added: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "created": self.created,
            "changed": self.changed,
            "mcpAdded": list(self.mcp_added),
            "mcpSkipped": list(self.mcp_skipped),
            "agentsConfigured": list(self.agents_configured),
            "toolsDisabled": list(self.tools_disabled),
            "pluginsAdded": list(self.plugins_added),
            "instructionsAdded": list(self.instructions_added),
        }


def _read_json_object(path: Path, *, what: str) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid {what} at {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid {what} at {path}: expected a JSON object.")
    return raw


def read_host_config(project_dir: Path) -> dict[str, Any] | None:
    return _read_json_object(project_dir / HOST_CONFIG_FILENAME, what=HOST_CONFIG_FILENAME)


def update_host_config(
    project_dir: Path,
    resolution: "ResolutionResult",
    *,
    dry_run: bool = False,
) -> HostConfigUpdate:
    """
    Apply a resolution's aggregated host settings to ``agents.json``.

    MCP servers already present in the file are left alone and reported as
    skipped. Agent-scoped servers are disabled globally (``<server>_*: false``)
    and re-enabled on their owning agent only.
    """
    path = project_dir / HOST_CONFIG_FILENAME
    existing = read_host_config(project_dir)
    created = existing is None
    config: dict[str, Any] = dict(existing or {})

    mcp = dict(config.get("mcp") or {})
    added: list[str] = []
    skipped: list[str] = []
    for name, server in resolution.mcp_servers.items():
        if name in mcp:
            skipped.append(name)
            continue
        mcp[name] = server.to_json()
        added.append(name)
    if added:
        config["mcp"] = mcp

    tools = dict(config.get("tools") or {})
    agents = dict(config.get("agent") or {})
    configured: list[str] = []
    for binding in resolution.agent_mcp_bindings:
        agent_cfg = dict(agents.get(binding.agent_name) or {})
        agent_tools = dict(agent_cfg.get("tools") or {})
        for server_name in binding.server_names:
            tools[f"{server_name}_*"] = False
            agent_tools[f"{server_name}_*"] = True
        agent_cfg["tools"] = agent_tools
        agents[binding.agent_name] = agent_cfg
        configured.append(binding.agent_name)

    for tool in resolution.disabled_tools:
        tools[tool] = False
    if tools:
        config["tools"] = tools
    if agents:
        config["agent"] = agents

    before_plugins = list(config.get("plugin") or [])
    before_instructions = list(config.get("instructions") or [])
    fragment: dict[str, Any] = {}
    if resolution.plugins:
        fragment["plugin"] = list(resolution.plugins)
    if resolution.instructions:
        fragment["instructions"] = list(resolution.instructions)
    if resolution.agent_configs:
        fragment["agent"] = {k: dict(v) for k, v in resolution.agent_configs.items()}
        configured.extend(resolution.agent_configs)
    if fragment:
        config = merge_host_config(config, fragment)

    changed = config != (existing or {})
    if changed and not dry_run:
        write_json_atomic(path, config, sort_keys=False)
        logger.info("updated %s", path)

    return HostConfigUpdate(
        path=path,
        created=created and changed,
        changed=changed,
        mcp_added=tuple(added),
        mcp_skipped=tuple(skipped),
        agents_configured=tuple(dedupe(configured)),
        tools_disabled=tuple(resolution.disabled_tools),
        plugins_added=tuple(p for p in resolution.plugins if p not in before_plugins),
        instructions_added=tuple(i for i in resolution.instructions if i not in before_instructions),
    )


def parse_package_spec(spec: str) -> tuple[str, str]:
    """``lodash`` -> (lodash, *); ``@types/node@20`` -> (@types/node, 20)."""
    raw = (spec or "").strip()
    if not raw:
        raise ValidationError(f"Invalid package dependency {spec!r}: expected a non-empty string.")
    at_idx = raw.rfind("@")
    if at_idx > 0:
        version = raw[at_idx + 1 :]
        if not version:
            raise ValidationError(f"Invalid package dependency {spec!r}: missing version after '@'.")
        return raw[:at_idx], version
    return raw, "*"


def update_package_dependencies(
    project_dir: Path,
    dependencies: Iterable[str],
    dev_dependencies: Iterable[str] = (),
    *,
    component_path: str = ".agents",
    dry_run: bool = False,
) -> Path | None:
    specs = [*dependencies, *dev_dependencies]
    if not specs:
        return None
    # Parse everything before touching the file.
    parsed = [parse_package_spec(s) for s in specs]

    path = project_dir / component_path / PACKAGE_JSON_FILENAME
    pkg = _read_json_object(path, what=f"{component_path}/{PACKAGE_JSON_FILENAME}") or dict(DEFAULT_PACKAGE_JSON)
    dev = dict(pkg.get("devDependencies") or {})
    for name, version in parsed:
        dev[name] = version
    pkg["devDependencies"] = dev

    if not dry_run:
        write_json_atomic(path, pkg, sort_keys=False)
        logger.info("updated %s (%d package dependencies)", path, len(parsed))
    return path
