from typing import Sequence, TextIO

from ambros import __version__
from ambros.domain.contracts import PluginContext
from ambros.domain.plugins import (
    HOOK_POST_RUN,
    HOOK_PRE_RUN,
    PLUGIN_TYPE_INTERNAL,
    PluginCommandDef,
    PluginManifest,
)


class ExamplePlugin:
    """Reference in-process plugin shipped with ambros."""

    def __init__(self) -> None:
        self._manifest = PluginManifest(
            name="example",
            version=__version__,
            description="Example in-process plugin",
            author="ambros",
            enabled=True,
            type=PLUGIN_TYPE_INTERNAL,
            commands=[
                PluginCommandDef(name="hello", description="Print a greeting", usage="hello [name]"),
                PluginCommandDef(name="info", description="Show plugin information", usage="info"),
            ],
            hooks=[HOOK_PRE_RUN, HOOK_POST_RUN],
        )

    @property
    def manifest(self) -> PluginManifest:
        return self._manifest

    def run(
        self,
        context: PluginContext,
        command: str,
        args: Sequence[str],
        stdout: TextIO,
        stderr: TextIO,
    ) -> int:
        if command == "hello":
            who = " ".join(args) if args else "world"
            stdout.write(f"Hello, {who}! (from the {context.plugin_name} plugin)\n")
            return 0
        if command == "info":
            stdout.write(f"Plugin: {self._manifest.name} v{self._manifest.version}\n")
            stdout.write(f"Commands: {', '.join(self._manifest.command_names())}\n")
            stdout.write(f"Hooks: {', '.join(self._manifest.hooks)}\n")
            return 0
        stderr.write(f"unknown command: {command} (available: {', '.join(self._manifest.command_names())})\n")
        return 1

    def handle_hook(self, context: PluginContext, event: str, args: Sequence[str]) -> None:
        context.logger.debug("hook %s args=%s", event, list(args))


def register_builtin_plugins(registry) -> None:
    registry.register(ExamplePlugin())
