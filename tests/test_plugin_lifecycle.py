import io
import json
import os
import stat
import tempfile
import threading
import unittest
from pathlib import Path

import httpx

from ambros.domain.plugins import PluginManifest
from ambros.errors import (
    CommandExistsError,
    CommandNotFoundError,
    ConfigInvalidError,
    ExecutableNotFoundError,
    InternalServerError,
    InvalidCommandError,
    NotFoundError,
)
from ambros.execution.path_resolver import PathResolver
from ambros.plugins.builtin import register_builtin_plugins
from ambros.plugins.lifecycle import PluginLifecycleManager
from ambros.plugins.manifest import MANIFEST_FILENAME, ManifestStore
from ambros.plugins.registry import InProcessPluginRegistry
from ambros.plugins.runtime import SOURCE_DISK, PluginRuntime

REGISTRY_URL = "https://plugins.example.test/registry"


def _registry_plugin(name: str, dependencies=()) -> dict:
    return {
        "name": name,
        "version": "1.2.3",
        "description": f"{name} from the registry",
        "executable": f"{name}.sh",
        "commands": [{"name": "hello"}],
        "dependencies": list(dependencies),
    }


class FakeRegistry:
    def __init__(self, plugins):
        self.plugins = {p["name"]: p for p in plugins}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        prefix = httpx.URL(REGISTRY_URL).path.rstrip("/") + "/"
        path = request.url.path
        if not path.startswith(prefix):
            return httpx.Response(404)
        name, _, filename = path[len(prefix):].partition("/")
        plugin = self.plugins.get(name)
        if plugin is None:
            return httpx.Response(404)
        if filename == MANIFEST_FILENAME:
            return httpx.Response(200, json=plugin)
        if filename == plugin["executable"]:
            return httpx.Response(200, content=f'#!/bin/sh\necho "{name} says $1"\n'.encode("utf-8"))
        return httpx.Response(404)


class TestPluginLifecycle(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.plugins_dir = self.tmp / "plugins"
        self.plugins_dir.mkdir()
        self.resolver = PathResolver(self.plugins_dir)
        self.registry = InProcessPluginRegistry()
        self.runtime = PluginRuntime(ManifestStore(self.plugins_dir), self.registry, self.resolver)
        self.fake_registry = FakeRegistry([])
        self.manager = PluginLifecycleManager(
            self.runtime,
            self.resolver,
            registries_path=self.tmp / "registries.json",
            transport=httpx.MockTransport(self.fake_registry),
        )

    def tearDown(self):
        self._tmp.cleanup()

    def _source_plugin(self, name: str, mode: int = 0o755, manifest: dict = None) -> Path:
        src = self.tmp / "src" / name
        src.mkdir(parents=True)
        exe = src / f"{name}.sh"
        exe.write_text(f'#!/bin/sh\necho "{name}:$1"\n', encoding="utf-8")
        os.chmod(exe, mode)
        data = manifest or {"name": name, "version": "0.3.0", "executable": f"{name}.sh"}
        (src / MANIFEST_FILENAME).write_text(json.dumps(data), encoding="utf-8")
        return src

    def _dispatch(self, name: str, command: str = "hello") -> str:
        out = io.StringIO()
        code = self.runtime.dispatch(name, command, stdout=out, stderr=io.StringIO())
        self.assertEqual(code, 0)
        return out.getvalue()

    def test_create_enable_and_dispatch(self):
        plugin_dir = self.manager.create_plugin("demo")
        script = plugin_dir / "demo.sh"
        self.assertEqual(stat.S_IMODE(script.stat().st_mode), 0o750)
        self.assertTrue((plugin_dir / "README.md").is_file())
        self.assertFalse(self.runtime.get("demo").manifest.enabled)
        with self.assertRaises(CommandNotFoundError):
            self.runtime.dispatch("demo", "hello")

        self.manager.enable("demo")
        self.assertIn("Hello from demo plugin!", self._dispatch("demo"))
        with self.assertRaises(CommandExistsError):
            self.manager.create_plugin("demo")

    def test_install_from_local_path(self):
        src = self._source_plugin("local")
        (src / "data").mkdir()
        (src / "data" / "notes.txt").write_text("keep me", encoding="utf-8")
        manifest = self.manager.install(str(src))
        self.assertTrue(manifest.enabled)
        installed = self.plugins_dir / "local"
        self.assertEqual((installed / "data" / "notes.txt").read_text(encoding="utf-8"), "keep me")
        self.assertEqual(self._dispatch("local"), "local:hello\n")
        with self.assertRaises(CommandExistsError):
            self.manager.install_from_path(src)

    def test_install_strips_setuid_bits(self):
        src = self._source_plugin("suid", mode=0o4755)
        self.manager.install_from_path(src)
        mode = (self.plugins_dir / "suid" / "suid.sh").stat().st_mode
        self.assertEqual(mode & (stat.S_ISUID | stat.S_ISGID | stat.S_ISVTX), 0)
        self.assertTrue(mode & stat.S_IXUSR)

    def test_install_refuses_symlinked_executable(self):
        src = self.tmp / "src" / "linky"
        src.mkdir(parents=True)
        real = self.tmp / "real.sh"
        real.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
        os.chmod(real, 0o755)
        os.symlink(real, src / "linky.sh")
        (src / MANIFEST_FILENAME).write_text(
            json.dumps({"name": "linky", "executable": "linky.sh"}),
            encoding="utf-8",
        )
        with self.assertLogs("ambros.plugins.lifecycle", level="WARNING"):
            with self.assertRaises(ExecutableNotFoundError):
                self.manager.install_from_path(src)
        self.assertFalse((self.plugins_dir / "linky").exists())
        last = self.manager.list_audit_events()[-1]
        self.assertEqual((last.action, last.plugin_name, last.outcome), ("install", "linky", "failed"))

    def test_install_rejects_invalid_manifest(self):
        src = self._source_plugin("bad", manifest={"name": "bad", "executable": "/bin/sh"})
        with self.assertRaises(ConfigInvalidError):
            self.manager.install_from_path(src)
        self.assertFalse((self.plugins_dir / "bad").exists())

    def test_missing_source_path(self):
        with self.assertRaises(NotFoundError):
            self.manager.install_from_path(self.tmp / "does-not-exist")

    def test_uninstall(self):
        self.manager.install_from_path(self._source_plugin("gone"))
        self.assertTrue(self.manager.uninstall("gone"))
        self.assertFalse(self.manager.uninstall("gone"))
        with self.assertRaises(CommandNotFoundError):
            self.runtime.get("gone")

    def test_config_set_get_list(self):
        self.manager.install_from_path(self._source_plugin("cfg"))
        self.manager.set_config("cfg", "region", "eu-west-1")
        self.manager.set_config("cfg", "retries", 3)
        self.assertEqual(self.manager.get_config("cfg", "retries"), "3")
        self.assertEqual(self.manager.list_config("cfg"), {"region": "eu-west-1", "retries": "3"})
        with self.assertRaises(NotFoundError):
            self.manager.get_config("cfg", "missing")
        with self.assertRaises(ConfigInvalidError):
            self.manager.set_config("cfg", " ", "x")

    def test_concurrent_config_updates_are_not_lost(self):
        self.manager.install_from_path(self._source_plugin("busy"))
        threads = [
            threading.Thread(target=self.manager.set_config, args=("busy", f"key{i}", str(i))) for i in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.manager.list_config("busy"), {f"key{i}": str(i) for i in range(8)})

    def test_registry_sources(self):
        self.assertEqual(self.manager.list_registries(), [])
        self.manager.add_registry("main", REGISTRY_URL + "/")
        self.assertEqual([(r.name, r.url) for r in self.manager.list_registries()], [("main", REGISTRY_URL)])
        with self.assertRaises(CommandExistsError):
            self.manager.add_registry("main", "https://other.example.test")
        with self.assertRaises(ConfigInvalidError):
            self.manager.add_registry("ftp", "ftp://files.example.test/plugins")
        self.manager.remove_registry("main")
        self.assertEqual(self.manager.list_registries(), [])
        with self.assertRaises(NotFoundError):
            self.manager.remove_registry("main")

    def test_install_from_registry_with_dependency(self):
        self.fake_registry.plugins = {
            "tool": _registry_plugin("tool", dependencies=["lib"]),
            "lib": _registry_plugin("lib"),
        }
        self.manager.add_registry("main", REGISTRY_URL)
        manifest = self.manager.install_from_registry("tool")
        self.assertEqual(manifest.version, "1.2.3")
        self.assertTrue((self.plugins_dir / "lib" / "lib.sh").is_file())
        self.assertEqual(self._dispatch("tool"), "tool says hello\n")
        self.assertEqual(self.manager.check_dependencies("tool"), {"lib": True})
        installs = [e.plugin_name for e in self.manager.list_audit_events() if e.action == "install"]
        self.assertEqual(installs, ["lib", "tool"])

    def test_registry_lookup_failures(self):
        with self.assertRaises(NotFoundError):
            self.manager.install_from_registry("anything")
        self.manager.add_registry("main", REGISTRY_URL)
        with self.assertRaises(NotFoundError):
            self.manager.install_from_registry("unknown")

    def test_dependency_cycle_is_reported(self):
        self.fake_registry.plugins = {
            "left": _registry_plugin("left", dependencies=["right"]),
            "right": _registry_plugin("right", dependencies=["left"]),
        }
        self.manager.add_registry("main", REGISTRY_URL)
        with self.assertRaises(InternalServerError):
            self.manager.install_from_registry("left")
        self.assertFalse((self.plugins_dir / "left").exists())
        self.assertFalse((self.plugins_dir / "right").exists())

    def test_missing_dependency_reported_by_check(self):
        src = self._source_plugin(
            "needy",
            manifest={"name": "needy", "executable": "needy.sh", "dependencies": ["absent"]},
        )
        with self.assertRaises(InternalServerError):
            self.manager.install_from_path(src)

    def test_disable_builtin_materializes_manifest(self):
        register_builtin_plugins(self.registry)
        self.manager.disable("example")
        plugin = self.runtime.get("example")
        self.assertEqual(plugin.source, SOURCE_DISK)
        self.assertFalse(plugin.manifest.enabled)
        with self.assertRaises(CommandNotFoundError):
            self.runtime.dispatch("example", "hello")
        self.manager.enable("example")
        self.assertIn("Hello, world!", self._dispatch("example"))

    def test_enable_unknown_plugin(self):
        with self.assertRaises(NotFoundError):
            self.manager.enable("ghost")

    def test_enable_refuses_broken_executable(self):
        self.manager.install_from_path(self._source_plugin("brittle"))
        self.manager.disable("brittle")
        os.chmod(self.plugins_dir / "brittle" / "brittle.sh", 0o644)
        with self.assertRaises(InvalidCommandError):
            self.manager.enable("brittle")
        self.assertFalse(self.runtime.get("brittle").manifest.enabled)
        self.assertEqual(self.manager.list_audit_events()[-1].outcome, "failed")

    def test_list_plugins_and_get_plugin(self):
        register_builtin_plugins(self.registry)
        self.manager.install_from_path(self._source_plugin("listed"))
        self.assertEqual([p.name for p in self.manager.list_plugins()], ["example", "listed"])
        self.assertIsInstance(self.manager.get_plugin("listed").manifest, PluginManifest)


if __name__ == "__main__":
    unittest.main()
