import json
import tempfile
import unittest
from pathlib import Path

from agentdock.errors import ConfigError, ValidationError
from agentdock.host_config import (
    deep_merge,
    merge_host_config,
    parse_package_spec,
    update_host_config,
    update_package_dependencies,
)
from agentdock.manifest import McpServer
from agentdock.resolver import AgentMcpBinding, ResolutionResult


def _resolution(**kwargs) -> ResolutionResult:
    fields = {
        "components": (),
        "mcp_servers": {},
        "agent_mcp_bindings": (),
        "package_dependencies": (),
        "package_dev_dependencies": (),
        "disabled_tools": (),
        "plugins": (),
        "agent_configs": {},
        "instructions": (),
    }
    fields.update(kwargs)
    return ResolutionResult(**fields)


class TestDeepMerge(unittest.TestCase):
    def test_nested_objects_merge_and_scalars_override(self) -> None:
        base = {"a": 1, "nested": {"x": 1, "y": {"z": 1}}, "list": [1, 2]}
        override = {"a": 2, "nested": {"y": {"w": 2}}, "list": [3]}
        merged = deep_merge(base, override)
        self.assertEqual(merged, {"a": 2, "nested": {"x": 1, "y": {"z": 1, "w": 2}}, "list": [3]})
        self.assertEqual(base["nested"], {"x": 1, "y": {"z": 1}})

    def test_non_dict_override_replaces(self) -> None:
        self.assertEqual(deep_merge({"a": {"b": 1}}, {"a": "flat"}), {"a": "flat"})
        self.assertEqual(deep_merge(1, {"a": 1}), {"a": 1})

    def test_plugin_and_instruction_lists_concatenate(self) -> None:
        merged = merge_host_config(
            {"plugin": ["a", "b"], "instructions": ["x.md"], "other": [1]},
            {"plugin": ["b", "c"], "instructions": ["x.md", "y.md"], "other": [2]},
        )
        self.assertEqual(merged["plugin"], ["a", "b", "c"])
        self.assertEqual(merged["instructions"], ["x.md", "y.md"])
        self.assertEqual(merged["other"], [2])


class TestUpdateHostConfig(unittest.TestCase):
    def test_creates_config_with_agent_scoped_servers(self) -> None:
        resolution = _resolution(
            mcp_servers={"search": McpServer(type="remote", url="https://mcp.example/search")},
            agent_mcp_bindings=(AgentMcpBinding("researcher", ("search",)),),
            disabled_tools=("WebFetch",),
            plugins=("p1",),
            instructions=("AGENTS.md",),
            agent_configs={"researcher": {"model": "large"}},
        )
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            result = update_host_config(root, resolution)
            cfg = json.loads((root / "agents.json").read_text(encoding="utf-8"))

        self.assertTrue(result.created)
        self.assertEqual(result.mcp_added, ("search",))
        self.assertEqual(cfg["mcp"]["search"]["url"], "https://mcp.example/search")
        self.assertEqual(cfg["tools"], {"search_*": False, "WebFetch": False})
        self.assertEqual(cfg["agent"]["researcher"], {"tools": {"search_*": True}, "model": "large"})
        self.assertEqual(cfg["plugin"], ["p1"])
        self.assertEqual(cfg["instructions"], ["AGENTS.md"])
        self.assertEqual(result.agents_configured, ("researcher",))

    def test_existing_servers_are_skipped_and_user_settings_kept(self) -> None:
        resolution = _resolution(
            mcp_servers={"search": McpServer(type="remote", url="https://new.example")},
            plugins=("p1", "p2"),
        )
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            existing = {"theme": "dark", "mcp": {"search": {"type": "remote", "url": "https://mine.example"}}, "plugin": ["p1"]}
            (root / "agents.json").write_text(json.dumps(existing), encoding="utf-8")
            result = update_host_config(root, resolution)
            cfg = json.loads((root / "agents.json").read_text(encoding="utf-8"))

        self.assertFalse(result.created)
        self.assertEqual(result.mcp_skipped, ("search",))
        self.assertEqual(result.plugins_added, ("p2",))
        self.assertEqual(cfg["mcp"]["search"]["url"], "https://mine.example")
        self.assertEqual(cfg["plugin"], ["p1", "p2"])
        self.assertEqual(cfg["theme"], "dark")

    def test_dry_run_and_no_changes_do_not_write(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            result = update_host_config(root, _resolution(plugins=("p1",)), dry_run=True)
            self.assertTrue(result.changed)
            self.assertFalse((root / "agents.json").exists())

            result = update_host_config(root, _resolution())
            self.assertFalse(result.changed)
            self.assertFalse((root / "agents.json").exists())

    def test_invalid_existing_config(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "agents.json").write_text("[]", encoding="utf-8")
            with self.assertRaises(ConfigError):
                update_host_config(root, _resolution(plugins=("p1",)))


class TestPackageDependencies(unittest.TestCase):
    def test_parse_package_spec(self) -> None:
        self.assertEqual(parse_package_spec("lodash"), ("lodash", "*"))
        self.assertEqual(parse_package_spec("lodash@4.0.0"), ("lodash", "4.0.0"))
        self.assertEqual(parse_package_spec("@types/node"), ("@types/node", "*"))
        self.assertEqual(parse_package_spec("@types/node@20"), ("@types/node", "20"))
        for bad in ("", "  ", "lodash@"):
            with self.subTest(bad=bad):
                with self.assertRaises(ValidationError):
                    parse_package_spec(bad)

    def test_writes_dev_dependencies(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self.assertIsNone(update_package_dependencies(root, [], []))
            path = update_package_dependencies(root, ["lodash@4"], ["@types/node"])
            pkg = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(path, root / ".agents" / "package.json")
            self.assertEqual(pkg["devDependencies"], {"lodash": "4", "@types/node": "*"})
            self.assertTrue(pkg["private"])

            update_package_dependencies(root, ["zod@3"])
            pkg = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(pkg["devDependencies"], {"lodash": "4", "@types/node": "*", "zod": "3"})


if __name__ == "__main__":
    unittest.main()
