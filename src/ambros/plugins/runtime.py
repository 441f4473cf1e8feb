import json
import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, TextIO

from ambros.domain.contracts import PluginContext
from ambros.domain.plugins import PLUGIN_TYPE_INTERNAL, PLUGIN_TYPE_SHELL, PluginManifest
from ambros.errors import (
    AmbrosError,
    CommandNotFoundError,
    ConfigInvalidError,
    ExecutionFailedError,
    HookDispatchError,
)
from ambros.execution.executor import decode_exit_status
from ambros.execution.path_resolver import PathResolver
from ambros.observability.structured_log import log_json
from ambros.plugins.manifest import ManifestStore, validate_manifest
from ambros.plugins.registry import InProcessPluginRegistry

logger = logging.getLogger(__name__)

ENV_PLUGIN_NAME = "AMBROS_PLUGIN_NAME"
ENV_PLUGIN_COMMAND = "AMBROS_PLUGIN_COMMAND"
ENV_PLUGIN_CONFIG = "AMBROS_PLUGIN_CONFIG"

SOURCE_DISK = "disk"
SOURCE_BUILTIN = "builtin"


@dataclass(frozen=True)
class DiscoveredPlugin:
    manifest: PluginManifest
    directory: Optional[Path]
    source: str

    @property
    def name(self) -> str:
        return self.manifest.name


class PluginDispatcher(Protocol):
    def dispatch(
        self,
        plugin: DiscoveredPlugin,
        command: str,
        args: Sequence[str],
        stdout: Optional[TextIO],
        stderr: Optional[TextIO],
    ) -> int:
        ...

    def dispatch_hook(self, plugin: DiscoveredPlugin, event: str, args: Sequence[str]) -> None:
        ...


def _fileno_or_none(stream: Optional[TextIO]) -> Optional[int]:
    if stream is None:
        return None
    try:
        return stream.fileno()
    except (AttributeError, ValueError, OSError):
        return None


class ShellPluginDispatcher:
    """Runs a plugin's executable as ``<executable> <command> [args...]``.

    The executable is re-validated on every call: it must resolve inside the
    plugin directory, must not be (or be reached through) a symlink, and must
    be executable.
    """

    def __init__(self, resolver: PathResolver):
        self._resolver = resolver

    def dispatch(
        self,
        plugin: DiscoveredPlugin,
        command: str,
        args: Sequence[str],
        stdout: Optional[TextIO],
        stderr: Optional[TextIO],
    ) -> int:
        return self._run(plugin, command, args, stdout, stderr)

    def dispatch_hook(self, plugin: DiscoveredPlugin, event: str, args: Sequence[str]) -> None:
        self._run(plugin, event, args, None, None)

    def _run(
        self,
        plugin: DiscoveredPlugin,
        command: str,
        args: Sequence[str],
        stdout: Optional[TextIO],
        stderr: Optional[TextIO],
    ) -> int:
        if plugin.directory is None:
            raise ConfigInvalidError(f"shell plugin has no directory: {plugin.name}")
        executable = self._resolver.resolve_plugin_executable(plugin.directory, plugin.manifest.executable)
        env = dict(os.environ)
        env[ENV_PLUGIN_NAME] = plugin.name
        env[ENV_PLUGIN_COMMAND] = command
        env[ENV_PLUGIN_CONFIG] = json.dumps(plugin.manifest.config, ensure_ascii=True, sort_keys=True)

        out = stdout if stdout is not None else sys.stdout
        err = stderr if stderr is not None else sys.stderr
        out_fd = _fileno_or_none(out)
        err_fd = _fileno_or_none(err)
        for stream in (out, err):
            try:
                stream.flush()
            except (AttributeError, ValueError, OSError):
                pass
        try:
            proc = subprocess.Popen(
                [executable, command, *args],
                cwd=str(plugin.directory),
                env=env,
                stdin=None,
                stdout=out_fd if out_fd is not None else subprocess.PIPE,
                stderr=err_fd if err_fd is not None else subprocess.PIPE,
                shell=False,
                close_fds=True,
            )
        except OSError as exc:
            raise ExecutionFailedError(f"failed to start plugin {plugin.name}", exc)

        captured_out, captured_err = proc.communicate()
        if captured_out:
            out.write(captured_out.decode("utf-8", errors="replace"))
        if captured_err:
            err.write(captured_err.decode("utf-8", errors="replace"))
        code, status_err = decode_exit_status(proc.returncode)
        if code != 0:
            logger.warning(
                "plugin %s command %s exited with status %d%s",
                plugin.name,
                command,
                code,
                f" ({status_err})" if status_err else "",
            )
        return code


class InProcessPluginDispatcher:
    """Calls into a plugin object held by the in-process registry."""

    def __init__(self, registry: InProcessPluginRegistry):
        self._registry = registry

    def dispatch(
        self,
        plugin: DiscoveredPlugin,
        command: str,
        args: Sequence[str],
        stdout: Optional[TextIO],
        stderr: Optional[TextIO],
    ) -> int:
        impl = self._registry.get(plugin.name)
        context = self._context(plugin)
        try:
            code = impl.run(
                context,
                command,
                list(args),
                stdout if stdout is not None else sys.stdout,
                stderr if stderr is not None else sys.stderr,
            )
        except AmbrosError:
            raise
        except Exception as exc:
            raise ExecutionFailedError(f"plugin {plugin.name} failed running {command}", exc)
        finally:
            context.cancel_event.set()
        return int(code or 0)

    def dispatch_hook(self, plugin: DiscoveredPlugin, event: str, args: Sequence[str]) -> None:
        impl = self._registry.get(plugin.name)
        context = self._context(plugin)
        try:
            impl.handle_hook(context, event, list(args))
        except AmbrosError:
            raise
        except Exception as exc:
            raise ExecutionFailedError(f"plugin {plugin.name} failed handling hook {event}", exc)
        finally:
            context.cancel_event.set()

    def _context(self, plugin: DiscoveredPlugin) -> PluginContext:
        return PluginContext(
            plugin_name=plugin.name,
            config=dict(plugin.manifest.config),
            logger=logging.getLogger(f"ambros.plugins.{plugin.name}"),
        )


class PluginRuntime:
    def __init__(
        self,
        manifests: ManifestStore,
        registry: InProcessPluginRegistry,
        resolver: PathResolver,
        dispatchers: Optional[Dict[str, PluginDispatcher]] = None,
    ):
        self._manifests = manifests
        self._registry = registry
        self._dispatchers: Dict[str, PluginDispatcher] = dispatchers or {
            PLUGIN_TYPE_SHELL: ShellPluginDispatcher(resolver),
            PLUGIN_TYPE_INTERNAL: InProcessPluginDispatcher(registry),
        }

    @property
    def manifests(self) -> ManifestStore:
        return self._manifests

    @property
    def registry(self) -> InProcessPluginRegistry:
        return self._registry

    def discover(self) -> List[DiscoveredPlugin]:
        found: Dict[str, DiscoveredPlugin] = {}
        for name in self._manifests.names():
            try:
                manifest = self._manifests.load(name)
            except AmbrosError as exc:
                logger.warning("skipping plugin %s: %s", name, exc)
                continue
            errors = validate_manifest(manifest)
            if errors:
                logger.warning("skipping plugin %s: %s", name, "; ".join(errors))
                continue
            found[name] = DiscoveredPlugin(manifest=manifest, directory=self._manifests.dir_for(name), source=SOURCE_DISK)
        for name in self._registry.names():
            if name in found:
                continue
            found[name] = DiscoveredPlugin(
                manifest=self._registry.get(name).manifest,
                directory=None,
                source=SOURCE_BUILTIN,
            )
        return [found[k] for k in sorted(found)]

    def enabled_plugins(self) -> List[DiscoveredPlugin]:
        return [p for p in self.discover() if p.manifest.enabled]

    def get(self, name: str) -> DiscoveredPlugin:
        manifest = self._manifests.try_load(name)
        if manifest is not None:
            return DiscoveredPlugin(manifest=manifest, directory=self._manifests.dir_for(name), source=SOURCE_DISK)
        impl = self._registry.find(name)
        if impl is not None:
            return DiscoveredPlugin(manifest=impl.manifest, directory=None, source=SOURCE_BUILTIN)
        raise CommandNotFoundError(f"plugin not found: {name}")

    def dispatch(
        self,
        plugin_name: str,
        command: str,
        args: Sequence[str] = (),
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ) -> int:
        plugin = self.get(plugin_name)
        if not plugin.manifest.enabled:
            raise CommandNotFoundError(f"plugin is disabled: {plugin_name}")
        started = time.monotonic()
        code = self._dispatcher_for(plugin).dispatch(plugin, command, list(args), stdout, stderr)
        log_json(
            logger,
            "plugin.dispatched",
            plugin=plugin.name,
            type=plugin.manifest.type,
            command=command,
            exit_code=code,
            duration_sec=round(time.monotonic() - started, 3),
        )
        return code

    def trigger_hook(self, event: str, args: Sequence[str] = ()) -> List[str]:
        """Run ``event`` on every enabled plugin that declares it, in name order.

        A failing plugin does not stop the others; failures are raised together
        as one ``HookDispatchError`` once every plugin has been attempted.
        """
        handled: List[str] = []
        failures: Dict[str, BaseException] = {}
        for plugin in self.enabled_plugins():
            if not plugin.manifest.handles_hook(event):
                continue
            try:
                self._dispatcher_for(plugin).dispatch_hook(plugin, event, list(args))
            except Exception as exc:
                logger.warning("plugin %s failed on hook %s: %s", plugin.name, event, exc)
                failures[plugin.name] = exc
                continue
            handled.append(plugin.name)
        if failures:
            log_json(logger, "hook.failed", hook=event, failed=sorted(failures), handled=handled)
            raise HookDispatchError(event, failures, handled=handled)
        return handled

    def _dispatcher_for(self, plugin: DiscoveredPlugin) -> PluginDispatcher:
        dispatcher = self._dispatchers.get(plugin.manifest.type)
        if dispatcher is None:
            raise ConfigInvalidError(f"unsupported plugin type '{plugin.manifest.type}' for {plugin.name}")
        return dispatcher
