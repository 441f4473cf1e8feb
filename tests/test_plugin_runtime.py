import io
import json
import os
import tempfile
import unittest
from pathlib import Path

from ambros.domain.contracts import PluginContext
from ambros.domain.plugins import HOOK_PRE_RUN, PLUGIN_TYPE_INTERNAL, PluginManifest
from ambros.errors import CommandNotFoundError, ExecutionFailedError, HookDispatchError, InvalidCommandError
from ambros.execution.path_resolver import PathResolver
from ambros.plugins.builtin import ExamplePlugin
from ambros.plugins.manifest import MANIFEST_FILENAME, ManifestStore
from ambros.plugins.registry import InProcessPluginRegistry
from ambros.plugins.runtime import SOURCE_BUILTIN, SOURCE_DISK, PluginRuntime


class BrokenPlugin:
    def __init__(self, name: str = "broken", hooks=(HOOK_PRE_RUN,)):
        self.manifest = PluginManifest(name=name, enabled=True, type=PLUGIN_TYPE_INTERNAL, hooks=list(hooks))
        self.contexts = []

    def run(self, context: PluginContext, command, args, stdout, stderr) -> int:
        self.contexts.append(context)
        raise RuntimeError("kaboom")

    def handle_hook(self, context: PluginContext, event, args) -> None:
        self.contexts.append(context)
        raise RuntimeError(f"cannot handle {event}")


class RecordingExamplePlugin(ExamplePlugin):
    def __init__(self):
        super().__init__()
        self.hook_calls = []

    def handle_hook(self, context: PluginContext, event, args) -> None:
        self.hook_calls.append(event)
        super().handle_hook(context, event, args)


class TestPluginRuntime(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.plugins_dir = self.tmp / "plugins"
        self.plugins_dir.mkdir()
        self.store = ManifestStore(self.plugins_dir)
        self.registry = InProcessPluginRegistry()
        self.runtime = PluginRuntime(self.store, self.registry, PathResolver(self.plugins_dir))

    def tearDown(self):
        self._tmp.cleanup()

    def _shell_plugin(self, name: str, script: str, enabled: bool = True, hooks=(), config=None) -> Path:
        plugin_dir = self.store.dir_for(name)
        plugin_dir.mkdir()
        exe = plugin_dir / f"{name}.sh"
        exe.write_text("#!/bin/sh\n" + script, encoding="utf-8")
        os.chmod(exe, 0o755)
        self.store.save(
            PluginManifest(
                name=name,
                version="1.0.0",
                enabled=enabled,
                executable=f"{name}.sh",
                hooks=list(hooks),
                config=config or {},
            )
        )
        return plugin_dir

    def test_shell_dispatch_passes_env_cwd_and_args(self):
        plugin_dir = self._shell_plugin(
            "greeter",
            'echo "name=$AMBROS_PLUGIN_NAME"\n'
            'echo "command=$AMBROS_PLUGIN_COMMAND"\n'
            'echo "config=$AMBROS_PLUGIN_CONFIG"\n'
            'echo "cwd=$(pwd)"\n'
            'echo "argv=$*"\n',
            config={"greeting": "hi"},
        )
        out = io.StringIO()
        code = self.runtime.dispatch("greeter", "hello", ["a", "b c"], stdout=out, stderr=io.StringIO())
        self.assertEqual(code, 0)
        lines = out.getvalue().splitlines()
        self.assertIn("name=greeter", lines)
        self.assertIn("command=hello", lines)
        self.assertIn("config=" + json.dumps({"greeting": "hi"}, sort_keys=True), lines)
        self.assertIn(f"cwd={plugin_dir}", lines)
        self.assertIn("argv=hello a b c", lines)

    def test_shell_dispatch_returns_nonzero_exit(self):
        self._shell_plugin("failing", "echo oops >&2\nexit 4\n")
        err = io.StringIO()
        with self.assertLogs("ambros.plugins.runtime", level="WARNING"):
            code = self.runtime.dispatch("failing", "anything", stdout=io.StringIO(), stderr=err)
        self.assertEqual(code, 4)
        self.assertIn("oops", err.getvalue())

    def test_symlinked_executable_is_refused_before_spawn(self):
        marker = self.tmp / "marker"
        outside = self.tmp / "outside.sh"
        outside.write_text(f"#!/bin/sh\ntouch {marker}\n", encoding="utf-8")
        os.chmod(outside, 0o755)
        plugin_dir = self.store.dir_for("sneaky")
        plugin_dir.mkdir()
        os.symlink(outside, plugin_dir / "sneaky.sh")
        self.store.save(PluginManifest(name="sneaky", version="1.0.0", enabled=True, executable="sneaky.sh"))

        with self.assertRaises(InvalidCommandError):
            self.runtime.dispatch("sneaky", "hello", stdout=io.StringIO(), stderr=io.StringIO())
        self.assertFalse(marker.exists())

    def test_executable_outside_plugin_dir_is_refused(self):
        self._shell_plugin("good", "exit 0\n")
        plugin_dir = self.store.dir_for("escape")
        plugin_dir.mkdir()
        (plugin_dir / MANIFEST_FILENAME).write_text(
            json.dumps({"name": "escape", "enabled": True, "executable": "../good/good.sh"}),
            encoding="utf-8",
        )
        with self.assertRaises(InvalidCommandError):
            self.runtime.dispatch("escape", "hello", stdout=io.StringIO(), stderr=io.StringIO())

    def test_disabled_and_unknown_plugins(self):
        self._shell_plugin("sleepy", "exit 0\n", enabled=False)
        with self.assertRaises(CommandNotFoundError):
            self.runtime.dispatch("sleepy", "hello")
        with self.assertRaises(CommandNotFoundError):
            self.runtime.dispatch("nobody", "hello")

    def test_hook_failures_are_joined_after_all_plugins_run(self):
        marker = self.tmp / "beta-ran"
        alpha_dir = self._shell_plugin("alpha", "exit 0\n", hooks=[HOOK_PRE_RUN])
        os.chmod(alpha_dir / "alpha.sh", 0o644)
        self._shell_plugin("beta", f'[ "$1" = "pre-run" ] && touch {marker}\nexit 0\n', hooks=[HOOK_PRE_RUN])
        self._shell_plugin("gamma", "exit 1\n", hooks=["post-run"])

        with self.assertLogs("ambros.plugins.runtime", level="INFO") as logs:
            with self.assertRaises(HookDispatchError) as ctx:
                self.runtime.trigger_hook(HOOK_PRE_RUN, ["ls", "-la"])
        self.assertTrue(marker.exists())
        self.assertEqual(set(ctx.exception.failures), {"alpha"})
        self.assertIsInstance(ctx.exception.failures["alpha"], InvalidCommandError)
        self.assertEqual(ctx.exception.handled, ["beta"])
        self.assertIn("alpha", str(ctx.exception))
        self.assertNotIn("beta", str(ctx.exception))
        self.assertTrue(any('"event": "hook.failed"' in line for line in logs.output))

    def test_shell_hook_nonzero_exit_is_logged_not_failed(self):
        self._shell_plugin("nz", 'echo "nz on $1" >&2\nexit 3\n', hooks=[HOOK_PRE_RUN])
        with self.assertLogs("ambros.plugins.runtime", level="WARNING") as logs:
            handled = self.runtime.trigger_hook(HOOK_PRE_RUN, ["true"])
        self.assertEqual(handled, ["nz"])
        self.assertTrue(any("exited with status 3" in line for line in logs.output))

    def test_hook_without_failures_returns_handled(self):
        example = RecordingExamplePlugin()
        self.registry.register(example)
        self._shell_plugin("hooked", "exit 0\n", hooks=[HOOK_PRE_RUN])
        self._shell_plugin("off", "exit 1\n", enabled=False, hooks=[HOOK_PRE_RUN])
        handled = self.runtime.trigger_hook(HOOK_PRE_RUN, ["true"])
        self.assertEqual(handled, ["example", "hooked"])
        self.assertEqual(example.hook_calls, [HOOK_PRE_RUN])

    def test_in_process_hook_error_is_collected(self):
        self.registry.register(BrokenPlugin())
        example = RecordingExamplePlugin()
        self.registry.register(example)
        with self.assertRaises(HookDispatchError) as ctx:
            self.runtime.trigger_hook(HOOK_PRE_RUN)
        self.assertEqual(set(ctx.exception.failures), {"broken"})
        self.assertIsInstance(ctx.exception.failures["broken"], ExecutionFailedError)
        self.assertEqual(example.hook_calls, [HOOK_PRE_RUN])

    def test_in_process_dispatch(self):
        self.registry.register(ExamplePlugin())
        out, err = io.StringIO(), io.StringIO()
        self.assertEqual(self.runtime.dispatch("example", "hello", ["Ada"], stdout=out, stderr=err), 0)
        self.assertEqual(out.getvalue(), "Hello, Ada! (from the example plugin)\n")
        self.assertEqual(self.runtime.dispatch("example", "nope", stdout=out, stderr=err), 1)
        self.assertIn("unknown command", err.getvalue())

    def test_in_process_exception_is_wrapped_and_context_cancelled(self):
        broken = BrokenPlugin()
        self.registry.register(broken)
        with self.assertRaises(ExecutionFailedError):
            self.runtime.dispatch("broken", "run", stdout=io.StringIO(), stderr=io.StringIO())
        self.assertTrue(broken.contexts[0].cancelled)

    def test_discovery_skips_invalid_and_prefers_disk(self):
        self._shell_plugin("valid", "exit 0\n")
        bad_json = self.plugins_dir / "badjson"
        bad_json.mkdir()
        (bad_json / MANIFEST_FILENAME).write_text("{not json", encoding="utf-8")
        mismatch = self.plugins_dir / "mismatch"
        mismatch.mkdir()
        (mismatch / MANIFEST_FILENAME).write_text(json.dumps({"name": "other", "executable": "x.sh"}), encoding="utf-8")
        self.registry.register(ExamplePlugin())
        self.store.save(PluginManifest(name="example", enabled=False, type=PLUGIN_TYPE_INTERNAL))

        with self.assertLogs("ambros.plugins.runtime", level="WARNING"):
            found = {p.name: p for p in self.runtime.discover()}
        self.assertEqual(sorted(found), ["example", "valid"])
        self.assertEqual(found["example"].source, SOURCE_DISK)
        self.assertEqual([p.name for p in self.runtime.enabled_plugins()], ["valid"])

    def test_builtin_source_when_not_on_disk(self):
        self.registry.register(ExamplePlugin())
        plugin = self.runtime.get("example")
        self.assertEqual(plugin.source, SOURCE_BUILTIN)
        self.assertIsNone(plugin.directory)


if __name__ == "__main__":
    unittest.main()
