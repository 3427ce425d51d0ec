import json
import tempfile
import unittest
from pathlib import Path
from typing import Any

import httpx

from agentdock.client import RegistryClient
from agentdock.config import LocalConfigProvider, ProjectConfig, RegistryConfig
from agentdock.fetcher import FetchCache, RegistryFetcher
from agentdock.installer import ComponentInstaller
from agentdock.registry_build import RegistryBuildError, build_registry

BASE = "https://acme.example/r"


def _source(root: Path, registry: dict[str, Any], files: dict[str, bytes]) -> Path:
    src = root / "src"
    src.mkdir()
    (src / "registry.json").write_text(json.dumps(registry), encoding="utf-8")
    for rel, content in files.items():
        path = src / "files" / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return src


REGISTRY = {
    "name": "Acme Registry",
    "namespace": "acme",
    "version": "1.2.0",
    "author": "acme",
    "components": [
        {
            "name": "agent-x",
            "type": "agent",
            "description": "Agent X",
            "files": ["agent/agent-x.md"],
            "dependencies": ["skill-y"],
        },
        {"name": "skill-y", "type": "skill", "description": "Skill Y", "files": ["skill/skill-y/SKILL.md"]},
    ],
}
FILES = {"agent/agent-x.md": b"# x\n", "skill/skill-y/SKILL.md": b"# y\n"}


class StaticServer:
    def __init__(self, root: Path) -> None:
        self.root = root

    def __call__(self, request: httpx.Request) -> httpx.Response:
        rel = request.url.path[len("/r/"):]
        path = self.root / rel
        if not path.is_file():
            return httpx.Response(404)
        return httpx.Response(200, content=path.read_bytes())


class TestBuildRegistry(unittest.TestCase):
    def test_layout(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            out = root / "out"
            result = build_registry(_source(root, REGISTRY, FILES), out)

            self.assertEqual((result.namespace, result.version), ("acme", "1.2.0"))
            self.assertEqual((result.components_count, result.files_count), (2, 2))
            index = json.loads((out / "index.json").read_text(encoding="utf-8"))
            self.assertEqual([c["name"] for c in index["components"]], ["agent-x", "skill-y"])
            packument = json.loads((out / "components" / "agent-x.json").read_text(encoding="utf-8"))
            self.assertEqual(packument["dist-tags"], {"latest": "1.2.0"})
            self.assertEqual(packument["versions"]["1.2.0"]["dependencies"], ["skill-y"])
            self.assertEqual((out / "components/skill-y/skill/skill-y/SKILL.md").read_bytes(), b"# y\n")
            self.assertTrue((out / ".well-known" / "agentdock.json").is_file())

    def test_built_registry_can_be_installed_from(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            out = root / "out"
            build_registry(_source(root, REGISTRY, FILES), out)
            project = root / "project"
            project.mkdir()

            client = RegistryClient(transport=httpx.MockTransport(StaticServer(out)))
            try:
                provider = LocalConfigProvider(project, ProjectConfig(registries={"acme": RegistryConfig(url=BASE)}))
                result = ComponentInstaller(provider, RegistryFetcher(client, FetchCache())).add(["acme/agent-x"])
            finally:
                client.close()

            self.assertEqual(result.install_order, ("acme/skill-y", "acme/agent-x"))
            self.assertEqual((project / ".agents/agent/agent-x.md").read_bytes(), b"# x\n")

    def test_missing_source_files_are_collected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with self.assertRaises(RegistryBuildError) as ctx:
                build_registry(_source(root, REGISTRY, {}), root / "out")
            self.assertEqual(len(ctx.exception.errors), 2)
            self.assertIn("Build failed with 2 errors", str(ctx.exception))
            self.assertFalse((root / "out" / "index.json").exists())

    def test_validation_errors(self) -> None:
        registry = dict(REGISTRY)
        registry["namespace"] = ""
        registry["components"] = [
            {"name": "agent-x", "type": "agent", "files": [], "dependencies": ["missing"]},
            {"name": "agent-x", "type": "agent", "files": []},
            {"name": "bad", "type": "widget"},
        ]
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with self.assertRaises(RegistryBuildError) as ctx:
                build_registry(_source(root, registry, {}), root / "out")
            errors = "\n".join(ctx.exception.errors)
            self.assertIn("namespace", errors)
            self.assertIn("duplicate component name 'agent-x'", errors)
            self.assertIn("'missing' is not a component of this registry", errors)
            self.assertIn("widget", errors)
            self.assertFalse((root / "out").exists())

    def test_missing_registry_json(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(RegistryBuildError):
                build_registry(Path(td), Path(td) / "out")


if __name__ == "__main__":
    unittest.main()
