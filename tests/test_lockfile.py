import json
import tempfile
import unittest
from pathlib import Path

from agentdock.errors import ConfigError
from agentdock.lockfile import InstalledFrom, LockEntry, Lockfile, read_lock, utc_now, write_lock


class TestLockfile(unittest.TestCase):
    def test_write_then_read(self) -> None:
        entry = LockEntry(
            registry="acme",
            version="1.0.0",
            hash="abc",
            files=(".agents/agent/x.md",),
            installed_at="2026-01-01T00:00:00Z",
        )
        lock = Lockfile(installed={"acme/x": entry})
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "agentdock.lock"
            write_lock(path, lock)
            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["lockVersion"], 1)
            self.assertNotIn("updatedAt", raw["installed"]["acme/x"])
            self.assertNotIn("installedFrom", raw)
            self.assertEqual(read_lock(path), lock)
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["agentdock.lock"])

    def test_updated_keeps_registry_and_install_time(self) -> None:
        entry = LockEntry("acme", "1.0.0", "abc", (".agents/a.md",), "2026-01-01T00:00:00Z")
        new = entry.updated(version="1.1.0", hash="def", files=(".agents/b.md",), now="2026-02-01T00:00:00Z")
        self.assertEqual(new.registry, "acme")
        self.assertEqual(new.installed_at, "2026-01-01T00:00:00Z")
        self.assertEqual(new.updated_at, "2026-02-01T00:00:00Z")
        self.assertEqual(new.to_json()["updatedAt"], "2026-02-01T00:00:00Z")
        self.assertEqual(new.files, (".agents/b.md",))

    def test_profile_lock_has_installed_from(self) -> None:
        lock = Lockfile(installed_from=InstalledFrom("acme", "minimal", "1.0.0", "h", utc_now()))
        self.assertTrue(lock)
        self.assertEqual(lock.to_json()["installedFrom"]["component"], "minimal")
        self.assertFalse(Lockfile())

    def test_owner_of(self) -> None:
        lock = Lockfile(installed={"acme/x": LockEntry("acme", "1", "h", (".agents/x.md",), "t")})
        self.assertEqual(lock.owner_of(".agents/x.md"), "acme/x")
        self.assertIsNone(lock.owner_of(".agents/y.md"))

    def test_missing_and_invalid(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "agentdock.lock"
            self.assertIsNone(read_lock(path))
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError):
                read_lock(path)
            path.write_text(json.dumps({"lockVersion": 2, "installed": {}}), encoding="utf-8")
            with self.assertRaises(ConfigError):
                read_lock(path)
            path.write_text(json.dumps({"lockVersion": 1, "installed": {"acme/x": {"registry": "acme"}}}), encoding="utf-8")
            with self.assertRaises(ConfigError):
                read_lock(path)


if __name__ == "__main__":
    unittest.main()
