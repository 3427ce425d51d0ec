from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .errors import ValidationError

COMPONENT_BASE = ".agents"

COMPONENT_TYPES = ("agent", "skill", "plugin", "command", "tool", "bundle", "profile")
PROFILE_TYPE = "profile"
AGENT_TYPE = "agent"

MCP_SCOPE_AGENT = "agent"
MCP_SCOPE_GLOBAL = "global"

_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


@dataclass(frozen=True)
class ComponentFile:
    path: str
    target: str


@dataclass(frozen=True)
class DependencyRef:
    name: str
    namespace: str | None = None
    version: str | None = None

    def qualify(self, default_namespace: str) -> str:
        return f"{self.namespace or default_namespace}/{self.name}"


@dataclass(frozen=True)
class McpServer:
    type: str
    url: str | None = None
    command: tuple[str, ...] | None = None
    args: tuple[str, ...] | None = None
    environment: dict[str, str] | None = None
    headers: dict[str, str] | None = None
    oauth: bool | None = None
    enabled: bool = True

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        if self.url is not None:
            out["url"] = self.url
        if self.command is not None:
            out["command"] = list(self.command)
        if self.args is not None:
            out["args"] = list(self.args)
        if self.environment:
            out["environment"] = dict(self.environment)
        if self.headers:
            out["headers"] = dict(self.headers)
        if self.oauth is not None:
            out["oauth"] = self.oauth
        out["enabled"] = self.enabled
        return out


@dataclass(frozen=True)
class HostConfig:
    plugins: tuple[str, ...] = ()
    instructions: tuple[str, ...] = ()
    agent: dict[str, dict[str, Any]] = field(default_factory=dict)
    tools: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class ComponentManifest:
    name: str
    type: str
    description: str
    files: tuple[ComponentFile, ...] = ()
    dependencies: tuple[DependencyRef, ...] = ()
    mcp_servers: dict[str, McpServer] = field(default_factory=dict)
    mcp_scope: str = MCP_SCOPE_AGENT
    package_dependencies: tuple[str, ...] = ()
    package_dev_dependencies: tuple[str, ...] = ()
    disabled_tools: tuple[str, ...] = ()
    host_config: HostConfig | None = None


@dataclass(frozen=True)
class Packument:
    name: str
    latest: str
    versions: dict[str, Any]


@dataclass(frozen=True)
class IndexEntry:
    name: str
    type: str
    description: str


@dataclass(frozen=True)
class RegistryIndex:
    name: str
    namespace: str
    version: str
    author: str
    components: tuple[IndexEntry, ...] = ()


def is_valid_name(value: str) -> bool:
    return 0 < len(value) <= 64 and bool(_NAME_RE.match(value))


def parse_qualified_name(ref: str) -> tuple[str, str]:
    raw = ref.strip()
    if "/" not in raw:
        raise ValidationError(
            f"Invalid component reference {ref!r}. Use a registry prefix: <namespace>/{raw or '<component>'}"
        )
    parts = raw.split("/")
    if len(parts) != 2:
        raise ValidationError(
            f"Invalid component reference {ref!r}: nested namespaces are not supported. "
            "Use exactly <namespace>/<component>."
        )
    namespace, name = parts
    if not is_valid_name(namespace) or not is_valid_name(name):
        raise ValidationError(
            f"Invalid component reference {ref!r}. Both parts must be lowercase alphanumeric with single hyphens."
        )
    return namespace, name


def qualified_name(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_version_suffix(spec: str) -> tuple[str, str | None]:
    """
    Split ``ns/name@1.2.0`` into name and version.

    The last ``@`` wins. A leading ``@`` is not a separator. An empty version
    (``ns/name@``) is returned as ``""`` so callers can reject it explicitly.
    """
    at_idx = spec.rfind("@")
    if at_idx <= 0:
        return spec, None
    return spec[:at_idx], spec[at_idx + 1 :]


def check_safe_relative_path(value: str, *, what: str) -> str:
    if not value:
        raise ValidationError(f"{what} cannot be empty.")
    if "\0" in value:
        raise ValidationError(f"{what} {value!r} cannot contain null bytes.")
    if value.startswith(("/", "\\")) or re.match(r"^[A-Za-z]:", value):
        raise ValidationError(f"{what} {value!r} must be relative, not absolute.")
    if any(seg == ".." for seg in re.split(r"[/\\]", value)):
        raise ValidationError(f"{what} {value!r} cannot contain '..'.")
    return value


def resolve_target_path(target: str, component_path: str = COMPONENT_BASE) -> str:
    """Map a registry target (``.agents/...``) onto the configured install base."""
    prefix = COMPONENT_BASE + "/"
    if not target.startswith(prefix) or component_path == COMPONENT_BASE:
        return target
    rest = target[len(prefix) :]
    base = component_path.strip("/")
    return f"{base}/{rest}" if base else rest


def strip_component_base(target: str) -> str:
    prefix = COMPONENT_BASE + "/"
    return target[len(prefix) :] if target.startswith(prefix) else target


def _expect_str(raw: dict[str, Any], key: str, *, ctx: str, required: bool = True) -> str | None:
    value = raw.get(key)
    if value is None and not required:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{ctx}: '{key}' must be a non-empty string.")
    return value.strip()


def _expect_str_list(raw: dict[str, Any], key: str, *, ctx: str) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{ctx}: '{key}' must be a list of strings.")
    return tuple(value)


def parse_component_file(raw: Any, *, ctx: str, allow_any_target: bool = False) -> ComponentFile:
    if isinstance(raw, str):
        path = check_safe_relative_path(raw.strip(), what=f"{ctx}: file path")
        return ComponentFile(path=path, target=f"{COMPONENT_BASE}/{path}")
    if not isinstance(raw, dict):
        raise ValidationError(f"{ctx}: file entries must be a string or an object with 'path' and 'target'.")

    path = check_safe_relative_path(_expect_str(raw, "path", ctx=ctx) or "", what=f"{ctx}: file path")
    target = check_safe_relative_path(_expect_str(raw, "target", ctx=ctx) or "", what=f"{ctx}: file target")
    if not allow_any_target and not target.startswith(COMPONENT_BASE + "/"):
        raise ValidationError(f"{ctx}: target {target!r} must start with {COMPONENT_BASE + '/'!r}.")
    return ComponentFile(path=path, target=target)


def parse_dependency_ref(raw: Any, *, ctx: str) -> DependencyRef:
    if isinstance(raw, str):
        spec, version = split_version_suffix(raw.strip())
        if version == "":
            raise ValidationError(f"{ctx}: dependency {raw!r} has an empty version after '@'.")
        if "/" in spec:
            namespace, name = parse_qualified_name(spec)
            return DependencyRef(name=name, namespace=namespace, version=version)
        if not is_valid_name(spec):
            raise ValidationError(
                f'{ctx}: dependency {raw!r} must be a bare name (e.g. "utils") or qualified (e.g. "acme/utils").'
            )
        return DependencyRef(name=spec, version=version)

    if not isinstance(raw, dict):
        raise ValidationError(f"{ctx}: dependencies must be strings or objects.")

    name = _expect_str(raw, "component", ctx=ctx) or ""
    namespace = _expect_str(raw, "namespace", ctx=ctx, required=False)
    version = _expect_str(raw, "version", ctx=ctx, required=False)
    if "/" in name:
        if namespace is not None:
            raise ValidationError(f"{ctx}: dependency {name!r} is already qualified; drop 'namespace'.")
        namespace, name = parse_qualified_name(name)
    elif not is_valid_name(name) or (namespace is not None and not is_valid_name(namespace)):
        raise ValidationError(f"{ctx}: invalid dependency {raw!r}.")
    return DependencyRef(name=name, namespace=namespace, version=version)


def parse_mcp_server(raw: Any, *, ctx: str) -> McpServer:
    if isinstance(raw, str):
        if not raw.startswith(("http://", "https://")):
            raise ValidationError(f"{ctx}: MCP server shorthand must be an http(s) URL.")
        return McpServer(type="remote", url=raw)
    if not isinstance(raw, dict):
        raise ValidationError(f"{ctx}: MCP server must be a URL or an object.")

    kind = raw.get("type")
    if kind not in ("remote", "local"):
        raise ValidationError(f"{ctx}: MCP server 'type' must be 'remote' or 'local'.")
    url = raw.get("url")
    command = raw.get("command")
    if kind == "remote" and not isinstance(url, str):
        raise ValidationError(f"{ctx}: remote MCP servers require 'url'.")
    if kind == "local" and not (isinstance(command, list) and command):
        raise ValidationError(f"{ctx}: local MCP servers require 'command'.")
    args = raw.get("args")
    environment = raw.get("environment")
    headers = raw.get("headers")
    oauth = raw.get("oauth")
    enabled = raw.get("enabled", True)
    return McpServer(
        type=kind,
        url=url if isinstance(url, str) else None,
        command=tuple(str(c) for c in command) if isinstance(command, list) else None,
        args=tuple(str(a) for a in args) if isinstance(args, list) else None,
        environment={str(k): str(v) for k, v in environment.items()} if isinstance(environment, dict) else None,
        headers={str(k): str(v) for k, v in headers.items()} if isinstance(headers, dict) else None,
        oauth=oauth if isinstance(oauth, bool) else None,
        enabled=enabled if isinstance(enabled, bool) else True,
    )


def _parse_mcp_map(raw: Any, *, ctx: str) -> dict[str, McpServer]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(f"{ctx}: MCP servers must be an object keyed by server name.")
    return {str(name): parse_mcp_server(server, ctx=f"{ctx} mcp {name!r}") for name, server in raw.items()}


def _parse_host_config(raw: Any, *, ctx: str) -> tuple[HostConfig | None, dict[str, McpServer]]:
    if raw is None:
        return None, {}
    if not isinstance(raw, dict):
        raise ValidationError(f"{ctx}: 'host' must be an object.")

    agent = raw.get("agent") or {}
    if not isinstance(agent, dict) or not all(isinstance(v, dict) for v in agent.values()):
        raise ValidationError(f"{ctx}: host 'agent' must map agent names to objects.")
    tools = raw.get("tools") or {}
    if not isinstance(tools, dict) or not all(isinstance(v, bool) for v in tools.values()):
        raise ValidationError(f"{ctx}: host 'tools' must map tool names to booleans.")

    host = HostConfig(
        plugins=_expect_str_list(raw, "plugin", ctx=ctx),
        instructions=_expect_str_list(raw, "instructions", ctx=ctx),
        agent={str(k): dict(v) for k, v in agent.items()},
        tools={str(k): v for k, v in tools.items()},
    )
    return host, _parse_mcp_map(raw.get("mcp"), ctx=ctx)


def parse_component_manifest(raw: Any, *, ctx: str | None = None) -> ComponentManifest:
    if not isinstance(raw, dict):
        raise ValidationError(f"{ctx or 'manifest'}: expected an object.")
    name = _expect_str(raw, "name", ctx=ctx or "manifest") or ""
    ctx = ctx or f"component {name!r}"
    if not is_valid_name(name):
        raise ValidationError(f"{ctx}: name must be lowercase alphanumeric with single hyphens.")

    kind = _expect_str(raw, "type", ctx=ctx)
    if kind not in COMPONENT_TYPES:
        raise ValidationError(f"{ctx}: unknown type {kind!r}. Expected one of: {', '.join(COMPONENT_TYPES)}.")
    description = raw.get("description", "")
    if not isinstance(description, str):
        raise ValidationError(f"{ctx}: 'description' must be a string.")

    files_raw = raw.get("files", [])
    if not isinstance(files_raw, list):
        raise ValidationError(f"{ctx}: 'files' must be a list.")
    # Profiles place some files at the profile root, so their targets are free-form.
    files = tuple(parse_component_file(f, ctx=ctx, allow_any_target=kind == PROFILE_TYPE) for f in files_raw)

    deps_raw = raw.get("dependencies", [])
    if not isinstance(deps_raw, list):
        raise ValidationError(f"{ctx}: 'dependencies' must be a list.")
    dependencies = tuple(parse_dependency_ref(d, ctx=ctx) for d in deps_raw)

    mcp_scope = raw.get("mcpScope", MCP_SCOPE_AGENT)
    if mcp_scope not in (MCP_SCOPE_AGENT, MCP_SCOPE_GLOBAL):
        raise ValidationError(f"{ctx}: 'mcpScope' must be 'agent' or 'global'.")

    host, host_mcp = _parse_host_config(raw.get("host"), ctx=ctx)
    mcp_servers = _parse_mcp_map(raw.get("mcpServers"), ctx=ctx)
    mcp_servers.update(host_mcp)

    return ComponentManifest(
        name=name,
        type=kind,
        description=description,
        files=files,
        dependencies=dependencies,
        mcp_servers=mcp_servers,
        mcp_scope=mcp_scope,
        package_dependencies=_expect_str_list(raw, "packageDependencies", ctx=ctx),
        package_dev_dependencies=_expect_str_list(raw, "packageDevDependencies", ctx=ctx),
        disabled_tools=_expect_str_list(raw, "disabledTools", ctx=ctx),
        host_config=host,
    )


def parse_packument(raw: Any, *, name: str) -> Packument:
    ctx = f"packument for {name!r}"
    if not isinstance(raw, dict):
        raise ValidationError(f"Invalid {ctx}: expected an object.")
    tags = raw.get("dist-tags")
    if not isinstance(tags, dict) or not isinstance(tags.get("latest"), str):
        raise ValidationError(f"Invalid {ctx}: missing dist-tags.latest.")
    versions = raw.get("versions")
    if not isinstance(versions, dict):
        raise ValidationError(f"Invalid {ctx}: 'versions' must be an object.")
    return Packument(name=str(raw.get("name") or name), latest=tags["latest"], versions=dict(versions))


def parse_registry_index(raw: Any, *, url: str) -> RegistryIndex:
    ctx = f"Invalid registry format at {url}"
    if not isinstance(raw, dict):
        raise ValidationError(f"{ctx}: expected an object.")
    components: list[IndexEntry] = []
    items = raw.get("components", [])
    if not isinstance(items, list):
        raise ValidationError(f"{ctx}: 'components' must be a list.")
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise ValidationError(f"{ctx}: every component needs a 'name'.")
        components.append(
            IndexEntry(
                name=item["name"],
                type=str(item.get("type", "")),
                description=str(item.get("description", "")),
            )
        )
    return RegistryIndex(
        name=_expect_str(raw, "name", ctx=ctx) or "",
        namespace=_expect_str(raw, "namespace", ctx=ctx) or "",
        version=_expect_str(raw, "version", ctx=ctx) or "",
        author=str(raw.get("author", "")),
        components=tuple(components),
    )
