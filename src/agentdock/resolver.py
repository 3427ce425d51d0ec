from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .config import RegistryConfig
from .errors import ConfigError, NotFoundError, ValidationError
from .fetcher import ComponentFetcher
from .host_config import deep_merge
from .manifest import (
    AGENT_TYPE,
    MCP_SCOPE_AGENT,
    ComponentManifest,
    McpServer,
    parse_qualified_name,
    qualified_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedComponent:
    manifest: ComponentManifest
    namespace: str
    registry_name: str
    base_url: str
    version: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def qualified_name(self) -> str:
        return qualified_name(self.namespace, self.manifest.name)


@dataclass(frozen=True)
class AgentMcpBinding:
    agent_name: str
    server_names: tuple[str, ...]


@dataclass(frozen=True)
class ResolutionResult:
    components: tuple[ResolvedComponent, ...]
    mcp_servers: dict[str, McpServer]
    agent_mcp_bindings: tuple[AgentMcpBinding, ...]
    package_dependencies: tuple[str, ...]
    package_dev_dependencies: tuple[str, ...]
    disabled_tools: tuple[str, ...]
    plugins: tuple[str, ...]
    agent_configs: dict[str, dict[str, Any]]
    instructions: tuple[str, ...]
    warnings: tuple[str, ...] = ()

    @property
    def install_order(self) -> tuple[str, ...]:
        return tuple(c.qualified_name for c in self.components)

    def has_host_changes(self) -> bool:
        return bool(
            self.mcp_servers
            or self.agent_mcp_bindings
            or self.disabled_tools
            or self.plugins
            or self.agent_configs
            or self.instructions
        )


class _Resolution:
    def __init__(
        self,
        registries: dict[str, RegistryConfig],
        fetcher: ComponentFetcher,
        pinned: dict[str, str],
    ) -> None:
        self.registries = registries
        self.fetcher = fetcher
        self.pinned = pinned

        self.resolved: dict[str, ResolvedComponent] = {}
        self.visiting: set[str] = set()

        self.mcp_servers: dict[str, McpServer] = {}
        self.mcp_owner: dict[str, str] = {}
        self.bindings: list[AgentMcpBinding] = []
        self.package_deps: dict[str, None] = {}
        self.package_dev_deps: dict[str, None] = {}
        self.disabled_tools: dict[str, None] = {}
        self.plugins: dict[str, None] = {}
        self.agent_configs: dict[str, dict[str, Any]] = {}
        self.instructions: dict[str, None] = {}
        self.warnings: list[str] = []

    def resolve(self, namespace: str, name: str, path: list[str], version: str | None = None) -> None:
        key = qualified_name(namespace, name)
        if key in self.resolved:
            have = self.resolved[key].version
            if version and version != have and key not in self.pinned:
                self._warn(f"{key} requested at {version} but already resolved at {have}; using {have}")
            return
        if key in self.visiting:
            cycle = " -> ".join([*path, key])
            raise ValidationError(f"Circular dependency detected: {cycle}")

        registry = self.registries.get(namespace)
        if registry is None:
            raise ConfigError(
                f"Registry '{namespace}' is not configured (needed for {key}). "
                f"Add it with `agentdock registry add {namespace} <url>`."
            )

        self.visiting.add(key)
        try:
            fetched = self.fetcher.fetch_component(
                registry.url, name, self.pinned.get(key) or version, headers=registry.headers or None
            )
        except NotFoundError as e:
            raise NotFoundError(f"Component '{key}' not found in registry '{namespace}': {e}") from e
        manifest = fetched.manifest

        for dep in manifest.dependencies:
            dep_namespace = dep.namespace or namespace
            self.resolve(dep_namespace, dep.name, [*path, key], dep.version)

        self.resolved[key] = ResolvedComponent(
            manifest=manifest,
            namespace=namespace,
            registry_name=namespace,
            base_url=registry.url,
            version=fetched.version,
            headers=dict(registry.headers),
        )
        self.visiting.discard(key)
        logger.debug("resolved %s@%s", key, fetched.version)

        self._collect(key, manifest)

    def _collect(self, key: str, manifest: ComponentManifest) -> None:
        server_names: list[str] = []
        for server_name, server in manifest.mcp_servers.items():
            previous = self.mcp_servers.get(server_name)
            if previous is not None and previous != server:
                self._warn(
                    f"MCP server '{server_name}' from {key} replaces the definition from {self.mcp_owner[server_name]}"
                )
            self.mcp_servers[server_name] = server
            self.mcp_owner[server_name] = key
            server_names.append(server_name)

        if manifest.type == AGENT_TYPE and manifest.mcp_scope == MCP_SCOPE_AGENT and server_names:
            self.bindings.append(AgentMcpBinding(agent_name=manifest.name, server_names=tuple(server_names)))

        _add_all(self.package_deps, manifest.package_dependencies)
        _add_all(self.package_dev_deps, manifest.package_dev_dependencies)
        _add_all(self.disabled_tools, manifest.disabled_tools)

        host = manifest.host_config
        if host is None:
            return
        _add_all(self.plugins, host.plugins)
        _add_all(self.instructions, host.instructions)
        for agent_name, cfg in host.agent.items():
            self.agent_configs[agent_name] = deep_merge(self.agent_configs.get(agent_name, {}), cfg)
        _add_all(self.disabled_tools, (tool for tool, enabled in host.tools.items() if enabled is False))

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def result(self) -> ResolutionResult:
        return ResolutionResult(
            components=tuple(self.resolved.values()),
            mcp_servers=dict(self.mcp_servers),
            agent_mcp_bindings=tuple(self.bindings),
            package_dependencies=tuple(self.package_deps),
            package_dev_dependencies=tuple(self.package_dev_deps),
            disabled_tools=tuple(self.disabled_tools),
            plugins=tuple(self.plugins),
            agent_configs=dict(self.agent_configs),
            instructions=tuple(self.instructions),
            warnings=tuple(self.warnings),
        )


def _add_all(target: dict[str, None], items: Iterable[str]) -> None:
    for item in items:
        target.setdefault(item, None)


def resolve_dependencies(
    registries: dict[str, RegistryConfig],
    requested: Iterable[str],
    fetcher: ComponentFetcher,
    *,
    pinned: dict[str, str] | None = None,
) -> ResolutionResult:
    """
    Resolve ``requested`` qualified names and everything they depend on.

    ``pinned`` maps qualified names to exact versions (e.g. versions already in
    the lock file); anything not pinned resolves at the registry's latest.
    Raises ValidationError on bare names or cycles, ConfigError for unknown
    namespaces and NotFoundError for components the registry does not have.
    """
    run = _Resolution(registries, fetcher, dict(pinned or {}))
    for ref in requested:
        namespace, name = parse_qualified_name(ref)
        run.resolve(namespace, name, [])
    return run.result()


def check_conflicts(existing: Iterable[str], to_install: Iterable[str]) -> list[str]:
    existing_set = set(existing)
    return [name for name in to_install if name in existing_set]
