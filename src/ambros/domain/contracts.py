import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, TextIO

from ambros.domain.chains import ChainSpec
from ambros.domain.commands import CommandRecord
from ambros.domain.plugins import PluginManifest


class CommandRepository(Protocol):
    def get(self, command_id: str) -> Optional[CommandRecord]:
        ...

    def get_all_commands(self) -> List[CommandRecord]:
        ...

    def get_limit_commands(self, limit: int) -> List[CommandRecord]:
        ...

    def put(self, record: CommandRecord) -> None:
        ...

    def delete(self, command_id: str) -> bool:
        ...

    def search_by_tag(self, tag: str) -> List[CommandRecord]:
        ...


class ChainRepository(Protocol):
    def save_chain(self, spec: ChainSpec) -> None:
        ...

    def get_chain(self, name: str) -> Optional[ChainSpec]:
        ...

    def list_chains(self) -> List[ChainSpec]:
        ...

    def delete_chain(self, name: str) -> bool:
        ...


@dataclass
class PluginContext:
    """Handed to in-process plugins for the duration of one call."""

    plugin_name: str
    config: Dict[str, str]
    logger: logging.Logger
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class InProcessPlugin(Protocol):
    @property
    def manifest(self) -> PluginManifest:
        ...

    def run(
        self,
        context: PluginContext,
        command: str,
        args: Sequence[str],
        stdout: TextIO,
        stderr: TextIO,
    ) -> int:
        ...

    def handle_hook(self, context: PluginContext, event: str, args: Sequence[str]) -> None:
        ...
