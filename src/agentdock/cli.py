from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ._version import __version__
from .client import RegistryClient
from .config import (
    PROJECT_CONFIG_FILENAME,
    Config,
    LocalConfigProvider,
    ProjectConfig,
    RegistryConfig,
    config_path,
    load_config,
    profiles_dir,
    read_project_config,
    write_project_config,
)
from .errors import AgentdockError, ConflictError, NotFoundError, ValidationError
from .fetcher import FetchCache, RegistryFetcher
from .installer import STATUS_UP_TO_DATE, STATUS_UPDATED, STATUS_WOULD_UPDATE, ComponentInstaller
from .lockfile import LOCK_FILENAME, read_lock
from .manifest import is_valid_name
from .profiles import install_profile_from_registry, list_profiles, remove_profile, show_profile
from .registry_build import RegistryBuildError, build_registry
from .search import DEFAULT_SEARCH_LIMIT, search_registries


def _parse_header(s: str) -> tuple[str, str]:
    if ":" not in s:
        raise ValidationError(f"Invalid header {s!r}. Expected 'Name: value'.")
    k, v = s.split(":", 1)
    return k.strip(), v.strip()


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    timeout_s = getattr(args, "timeout_s", None) or os.getenv("AGENTDOCK_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s
    return Config(timeout_s=timeout_s_f, profiles_dir=base.profiles_dir)


def _cwd(args: argparse.Namespace) -> Path:
    return Path(args.cwd or ".").expanduser().resolve()


def _make_client(args: argparse.Namespace) -> RegistryClient:
    cfg = _merge_cfg(load_config(), args)
    return RegistryClient(timeout_s=cfg.timeout_s, default_headers={"User-Agent": f"agentdock/{__version__}"})


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="agentdock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install agents, skills and profiles from component registries.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              AGENTDOCK_CONFIG_PATH, AGENTDOCK_PROFILES_DIR, AGENTDOCK_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--cwd", help="Project directory (default: current directory)")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable)")
    p.add_argument("--version", action="version", version=f"agentdock {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    init = sub.add_parser("init", help=f"Create {PROJECT_CONFIG_FILENAME} in the project directory")
    init.add_argument("--force", action="store_true", help="Overwrite an existing config")

    add = sub.add_parser("add", help="Add components (and their dependencies) to the project")
    add.add_argument("components", nargs="+", help="Qualified component names, e.g. acme/agent-x")
    add.add_argument("--force", action="store_true", help="Overwrite locally modified files")
    add.add_argument("--dry-run", action="store_true", help="Resolve and fetch, but write nothing")
    add.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser(
        "update",
        help="Update installed components (use @version to pin, e.g. acme/agent-x@1.2.0)",
    )
    update.add_argument("components", nargs="*", help="Qualified component names")
    update.add_argument("--all", dest="all_", action="store_true", help="Update every installed component")
    update.add_argument("--registry", help="Update every component installed from this registry")
    update.add_argument("--dry-run", action="store_true", help="Preview changes without applying")
    update.add_argument("--json", action="store_true", help="Output JSON")

    search = sub.add_parser("search", aliases=["list"], help="Search registries, or list installed components")
    search.add_argument("query", nargs="?", help="Filter by name or description")
    search.add_argument("-i", "--installed", action="store_true", help="List installed components only")
    search.add_argument("-l", "--limit", type=int, default=DEFAULT_SEARCH_LIMIT, help="Maximum results")
    search.add_argument("--json", action="store_true", help="Output JSON")

    verify = sub.add_parser("verify", help="Check installed files against the lock file")
    verify.add_argument("--json", action="store_true", help="Output JSON")

    reg = sub.add_parser("registry", help="Manage project registries")
    reg_sub = reg.add_subparsers(dest="subcmd", required=True)
    reg_add = reg_sub.add_parser("add", help="Add a registry")
    reg_add.add_argument("name", help="Registry namespace, e.g. acme")
    reg_add.add_argument("url", help="Registry base URL")
    reg_add.add_argument("--version", dest="registry_version", help="Registry version (informational)")
    reg_add.add_argument(
        "--header",
        action="append",
        default=[],
        help="Request header 'Name: value' (repeatable, ${ENV} is expanded)",
    )
    reg_add.add_argument("--force", action="store_true", help="Replace an existing registry")
    reg_remove = reg_sub.add_parser("remove", help="Remove a registry")
    reg_remove.add_argument("name")
    reg_list = reg_sub.add_parser("list", help="List registries")
    reg_list.add_argument("--json", action="store_true", help="Output JSON")

    prof = sub.add_parser("profile", help="Install, inspect and remove profiles")
    prof_sub = prof.add_subparsers(dest="subcmd", required=True)
    prof_add = prof_sub.add_parser("add", help="Install a profile component from a registry")
    prof_add.add_argument("name", help="Local profile name")
    prof_add.add_argument("--from", dest="source", required=True, help="Profile component, e.g. acme/minimal")
    prof_add.add_argument("--force", action="store_true", help="Replace an existing profile")
    prof_add.add_argument("--json", action="store_true", help="Output JSON")
    prof_list = prof_sub.add_parser("list", help="List installed profiles")
    prof_list.add_argument("--json", action="store_true", help="Output JSON")
    prof_show = prof_sub.add_parser("show", help="Show where a profile came from and what it contains")
    prof_show.add_argument("name", help="Local profile name")
    prof_show.add_argument("--json", action="store_true", help="Output JSON")
    prof_remove = prof_sub.add_parser("remove", aliases=["rm"], help="Delete an installed profile")
    prof_remove.add_argument("name", help="Local profile name")

    build = sub.add_parser("build", help="Build a static registry from a source directory")
    build.add_argument("source", help="Directory containing registry.json and files/")
    build.add_argument("--out", required=True, help="Output directory")
    build.add_argument("--json", action="store_true", help="Output JSON")

    cfg = sub.add_parser("config", help="Show user config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")

    return p


def cmd_init(args: argparse.Namespace) -> int:
    cwd = _cwd(args)
    if read_project_config(cwd) is not None and not args.force:
        raise ConflictError(f"{PROJECT_CONFIG_FILENAME} already exists in {cwd}. Use --force to overwrite.")
    cwd.mkdir(parents=True, exist_ok=True)
    path = write_project_config(cwd, ProjectConfig())
    print(f"Created: {path}")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    provider = LocalConfigProvider.require_initialized(_cwd(args))
    with _make_client(args) as client:
        installer = ComponentInstaller(provider, RegistryFetcher(client, FetchCache()))
        result = installer.add(args.components, force=args.force, dry_run=args.dry_run)

    if args.json:
        _print_json(result.to_json())
        return 0

    if result.dry_run:
        print("Dry run - no changes made")
    print("install order:")
    for name in result.install_order:
        print(f"  {name}")
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["installed", str(len(result.installed))],
            ["restored", str(len(result.restored))],
            ["overwritten", str(len(result.overwritten))],
            ["unchanged", str(len(result.unchanged))],
            ["files written", str(len(result.files_written))],
            ["files skipped", str(len(result.files_skipped))],
        ]
    )
    host = result.host_config
    if host is not None:
        if host.mcp_added:
            print(f"mcp servers: {', '.join(host.mcp_added)}")
        if host.tools_disabled:
            print(f"disabled tools: {', '.join(host.tools_disabled)}")
        if host.plugins_added:
            print(f"plugins: {', '.join(host.plugins_added)}")
        if host.agents_configured:
            print(f"agents configured: {', '.join(host.agents_configured)}")
    if result.package_json is not None:
        print(f"package.json: {result.package_json}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    if not result.dry_run:
        print(f"lock: {result.lock_path}")
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    provider = LocalConfigProvider.require_initialized(_cwd(args))
    with _make_client(args) as client:
        installer = ComponentInstaller(provider, RegistryFetcher(client, FetchCache()))
        results = installer.update(args.components, all_=args.all_, registry=args.registry, dry_run=args.dry_run)

    if args.json:
        payload: dict[str, Any] = {
            "success": True,
            "dryRun": args.dry_run,
            "results": [r.to_json() for r in results],
        }
        _print_json(payload)
        return 0

    rows = [["COMPONENT", "FROM", "TO", "STATUS"]]
    for r in results:
        rows.append([r.qualified_name, r.old_version, r.new_version, r.status])
    _print_table(rows)

    updated = [r for r in results if r.status == STATUS_UPDATED]
    pending = [r for r in results if r.status == STATUS_WOULD_UPDATE]
    if args.dry_run and pending:
        print("Run without --dry-run to apply changes.")
    elif not updated and all(r.status == STATUS_UP_TO_DATE for r in results):
        print("All components are up to date.")
    else:
        print(f"Updated {len(updated)} component(s).")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    cwd = _cwd(args)
    if args.installed:
        lock = read_lock(cwd / LOCK_FILENAME)
        entries = sorted(lock.installed.items()) if lock else []
        if args.json:
            _print_json(
                {
                    "success": True,
                    "components": [
                        {"name": qn, "registry": e.registry, "version": e.version, "installedAt": e.installed_at}
                        for qn, e in entries
                    ],
                }
            )
            return 0
        if not entries:
            print("No components installed.")
            return 0
        rows = [["COMPONENT", "VERSION", "REGISTRY"]]
        rows.extend([qn, e.version, e.registry] for qn, e in entries)
        _print_table(rows)
        return 0

    provider = LocalConfigProvider.require_initialized(cwd)
    with _make_client(args) as client:
        hits = search_registries(
            provider.get_registries(),
            RegistryFetcher(client, FetchCache()),
            args.query,
            limit=args.limit,
        )

    if args.json:
        _print_json({"success": True, "components": [h.to_json() for h in hits]})
        return 0
    if not hits:
        print("No components found.")
        return 0
    rows = [["COMPONENT", "TYPE", "DESCRIPTION"]]
    for h in hits:
        desc = h.description
        if len(desc) > 60:
            desc = desc[:57] + "..."
        rows.append([h.qualified_name, h.type, desc])
    _print_table(rows)
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    provider = LocalConfigProvider.require_initialized(_cwd(args))
    results = ComponentInstaller(provider).verify()

    ok = all(r.ok for r in results)
    if args.json:
        _print_json({"success": ok, "results": [r.to_json() for r in results]})
        return 0 if ok else 1

    rows = [["COMPONENT", "STATUS"]]
    for r in results:
        if r.ok:
            status = "ok"
        elif r.missing:
            status = f"missing: {', '.join(r.missing)}"
        else:
            status = "modified"
        rows.append([r.qualified_name, status])
    _print_table(rows)
    return 0 if ok else 1


def cmd_registry(args: argparse.Namespace) -> int:
    cwd = _cwd(args)
    LocalConfigProvider.require_initialized(cwd)
    # Rewrites keep ${VAR} references in headers instead of the expanded secrets.
    current = read_project_config(cwd, expand_env=False) or ProjectConfig()
    registries = dict(current.registries)

    if args.subcmd == "list":
        if args.json:
            _print_json(
                {
                    ns: {"url": reg.url, "version": reg.version, "headers": {k: "***" for k in reg.headers}}
                    for ns, reg in registries.items()
                }
            )
            return 0
        rows = [["NAME", "URL", "VERSION"]]
        for ns in sorted(registries):
            rows.append([ns, registries[ns].url, registries[ns].version or ""])
        _print_table(rows)
        return 0

    if args.subcmd == "add":
        if not is_valid_name(args.name):
            raise ValidationError(f"Invalid registry name {args.name!r}. Use lowercase letters, digits and hyphens.")
        if not args.url.startswith(("http://", "https://")):
            raise ValidationError(f"Invalid registry URL {args.url!r}. Expected http(s)://...")
        if args.name in registries and not args.force:
            raise ConflictError(f"Registry '{args.name}' already exists. Use --force to replace it.")
        headers = dict(_parse_header(h) for h in args.header)
        registries[args.name] = RegistryConfig(url=args.url.rstrip("/"), version=args.registry_version, headers=headers)
        write_project_config(cwd, ProjectConfig(registries=registries, component_path=current.component_path))
        print(f"Added registry: {args.name}")
        return 0

    if args.subcmd == "remove":
        if args.name not in registries:
            raise NotFoundError(f"Registry '{args.name}' is not configured.")
        del registries[args.name]
        write_project_config(cwd, ProjectConfig(registries=registries, component_path=current.component_path))
        print(f"Removed registry: {args.name}")
        return 0

    raise AssertionError("unreachable")


def cmd_profile(args: argparse.Namespace) -> int:
    root = profiles_dir(load_config())

    if args.subcmd == "list":
        names = list_profiles(root)
        if args.json:
            _print_json({"profilesDir": str(root), "profiles": names})
            return 0
        print(f"profiles_dir: {root}")
        for name in names:
            print(name)
        return 0

    if args.subcmd == "add":
        provider = LocalConfigProvider.require_initialized(_cwd(args))
        with _make_client(args) as client:
            result = install_profile_from_registry(
                source=args.source,
                profile_name=args.name,
                registries=provider.get_registries(),
                fetcher=RegistryFetcher(client, FetchCache()),
                profiles_root=root,
                force=args.force,
            )
        if args.json:
            _print_json(result.to_json())
            return 0
        print(f"profile: {result.name}")
        print(f"path: {result.path}")
        print(f"from: {result.component}@{result.version}")
        for dep in result.dependencies:
            print(f"dependency: {dep}")
        return 0

    if args.subcmd == "show":
        details = show_profile(root, args.name)
        if args.json:
            _print_json(details.to_json())
            return 0
        print(f"profile: {details.name}")
        print(f"path: {details.path}")
        origin = details.installed_from
        if origin is not None:
            print(f"from: {origin.registry}/{origin.component}@{origin.version}")
        for name in details.flat_files:
            print(f"file: {name}")
        if details.installed:
            rows = [["COMPONENT", "VERSION"]]
            for qn in sorted(details.installed):
                rows.append([qn, details.installed[qn].version])
            _print_table(rows)
        return 0

    if args.subcmd in ("remove", "rm"):
        path = remove_profile(root, args.name)
        print(f"Removed profile: {args.name} ({path})")
        return 0

    raise AssertionError("unreachable")


def cmd_build(args: argparse.Namespace) -> int:
    result = build_registry(Path(args.source), Path(args.out))
    if args.json:
        payload = asdict(result)
        payload["output_path"] = str(result.output_path)
        _print_json(payload)
        return 0
    print(f"Built registry {result.namespace} ({result.name} {result.version})")
    print(f"components: {result.components_count}")
    print(f"files: {result.files_count}")
    print(f"output: {result.output_path}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = _merge_cfg(load_config(), args)
        d = asdict(cfg)
        d["profiles_dir"] = str(profiles_dir(cfg))
        _print_json(d)
        return 0

    raise AssertionError("unreachable")


def _print_error(args: argparse.Namespace, err: AgentdockError) -> None:
    if getattr(args, "json", False):
        error: dict[str, Any] = {"code": err.code, "message": str(err)}
        if isinstance(err, ConflictError) and err.conflicts:
            error["conflicts"] = err.conflicts
        if isinstance(err, RegistryBuildError) and err.errors:
            error["errors"] = err.errors
        _print_json({"success": False, "error": error})
        return
    print(f"error: {err}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd == "add":
            return cmd_add(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd in ("search", "list"):
            return cmd_search(args)
        if args.cmd == "verify":
            return cmd_verify(args)
        if args.cmd == "registry":
            return cmd_registry(args)
        if args.cmd == "profile":
            return cmd_profile(args)
        if args.cmd == "build":
            return cmd_build(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except AgentdockError as e:
        _print_error(args, e)
        return e.exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
