from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import ConfigError

DEFAULT_TIMEOUT_S = 30.0
PROJECT_CONFIG_FILENAME = "agentdock.json"
DEFAULT_COMPONENT_PATH = ".agents"

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True)
class Config:
    timeout_s: float = DEFAULT_TIMEOUT_S
    profiles_dir: str | None = None  # defaults to <user config dir>/profiles


@dataclass(frozen=True)
class RegistryConfig:
    url: str
    version: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProjectConfig:
    registries: dict[str, RegistryConfig] = field(default_factory=dict)
    component_path: str = DEFAULT_COMPONENT_PATH


def config_dir() -> Path:
    return user_config_path("agentdock")


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("AGENTDOCK_CONFIG_PATH"):
        return Path(env).expanduser()
    return config_dir() / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def profiles_dir(cfg: Config | None = None) -> Path:
    if env := os.getenv("AGENTDOCK_PROFILES_DIR"):
        return Path(env).expanduser()
    if cfg is not None and cfg.profiles_dir:
        return Path(cfg.profiles_dir).expanduser()
    return config_dir() / "profiles"


def write_json_atomic(path: Path, data: Any, *, sort_keys: bool = True) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}")
    try:
        tmp.write_text(json.dumps(data, indent=2, sort_keys=sort_keys) + "\n", encoding="utf-8")
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def expand_env_refs(value: str) -> str:
    # Unset variables expand to "" so a missing token fails at the registry, not here.
    return _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)


def _parse_registry_config(namespace: str, raw: Any, *, source: Path, expand_env: bool = True) -> RegistryConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Registry {namespace!r} in {source} must be an object.")
    url = raw.get("url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ConfigError(f"Registry {namespace!r} in {source} needs an http(s) 'url'.")
    version = raw.get("version")
    if version is not None and not isinstance(version, str):
        raise ConfigError(f"Registry {namespace!r} in {source}: 'version' must be a string.")
    headers_raw = raw.get("headers") or {}
    if not isinstance(headers_raw, dict):
        raise ConfigError(f"Registry {namespace!r} in {source}: 'headers' must be an object.")
    headers = {str(k): expand_env_refs(str(v)) if expand_env else str(v) for k, v in headers_raw.items()}
    return RegistryConfig(url=url.rstrip("/"), version=version or None, headers=headers)


def read_project_config(cwd: Path, *, expand_env: bool = True) -> ProjectConfig | None:
    """Parse agentdock.json. Header values have ${VAR} references expanded unless ``expand_env`` is false."""
    path = cwd / PROJECT_CONFIG_FILENAME
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Error parsing {path}: expected a JSON object.")

    registries_raw = raw.get("registries") or {}
    if not isinstance(registries_raw, dict):
        raise ConfigError(f"Error parsing {path}: 'registries' must be an object.")
    registries = {
        str(ns): _parse_registry_config(str(ns), reg, source=path, expand_env=expand_env)
        for ns, reg in registries_raw.items()
    }

    component_path = raw.get("componentPath", DEFAULT_COMPONENT_PATH)
    if not isinstance(component_path, str):
        raise ConfigError(f"Error parsing {path}: 'componentPath' must be a string.")
    return ProjectConfig(registries=registries, component_path=component_path)


def write_project_config(cwd: Path, cfg: ProjectConfig) -> Path:
    registries: dict[str, Any] = {}
    for ns in sorted(cfg.registries):
        reg = cfg.registries[ns]
        item: dict[str, Any] = {"url": reg.url}
        if reg.version:
            item["version"] = reg.version
        if reg.headers:
            item["headers"] = dict(reg.headers)
        registries[ns] = item
    payload: dict[str, Any] = {"registries": registries}
    if cfg.component_path != DEFAULT_COMPONENT_PATH:
        payload["componentPath"] = cfg.component_path
    path = cwd / PROJECT_CONFIG_FILENAME
    write_json_atomic(path, payload)
    return path


class LocalConfigProvider:
    """Registries and component path for one project directory, parsed once."""

    def __init__(self, cwd: Path, config: ProjectConfig) -> None:
        self.cwd = cwd
        self._config = config

    @classmethod
    def require_initialized(cls, cwd: Path) -> "LocalConfigProvider":
        cwd = cwd.expanduser().resolve()
        config = read_project_config(cwd)
        if config is None:
            raise ConfigError(f"No {PROJECT_CONFIG_FILENAME} found in {cwd}. Run `agentdock init` first.")
        return cls(cwd, config)

    @property
    def config(self) -> ProjectConfig:
        return self._config

    def get_registries(self) -> dict[str, RegistryConfig]:
        return dict(self._config.registries)

    def get_component_path(self) -> str:
        return self._config.component_path
