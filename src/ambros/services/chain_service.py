import json
from pathlib import Path
from typing import List, Optional, Sequence

from ambros.domain.chains import DEFAULT_CHAIN_TIMEOUT_SEC, ChainPlan, ChainResult, ChainSpec
from ambros.domain.contracts import ChainRepository, CommandRepository
from ambros.errors import CommandExistsError, CommandNotFoundError, ConfigInvalidError
from ambros.execution.chain import ChainOrchestrator


class ChainService:
    """Saved-chain management on top of ``ChainOrchestrator``."""

    def __init__(
        self,
        chains: ChainRepository,
        commands: CommandRepository,
        orchestrator: ChainOrchestrator,
        default_timeout_sec: float = DEFAULT_CHAIN_TIMEOUT_SEC,
    ):
        self._chains = chains
        self._commands = commands
        self._orchestrator = orchestrator
        self._default_timeout_sec = default_timeout_sec

    def create(
        self,
        name: str,
        commands: Sequence[str],
        description: str = "",
        conditional: bool = False,
        parallel: bool = False,
        retry_limit: int = 0,
        timeout_sec: Optional[float] = None,
    ) -> ChainSpec:
        if not commands:
            raise ConfigInvalidError("a chain needs at least one command")
        if self._chains.get_chain(name) is not None:
            raise CommandExistsError(f"chain already exists: {name}")
        missing = [ref for ref in commands if self._commands.get(ref) is None]
        if missing:
            raise CommandNotFoundError(f"unknown command(s) in chain: {', '.join(missing)}")
        try:
            spec = ChainSpec(
                name=name,
                commands=tuple(commands),
                description=description,
                conditional=conditional,
                parallel=parallel,
                retry_limit=retry_limit,
                timeout_sec=timeout_sec or self._default_timeout_sec,
            )
        except ValueError as exc:
            raise ConfigInvalidError(str(exc), exc)
        self._chains.save_chain(spec)
        return spec

    def get(self, name: str) -> ChainSpec:
        spec = self._chains.get_chain(name)
        if spec is None:
            raise CommandNotFoundError(f"chain not found: {name}")
        return spec

    def list_chains(self) -> List[ChainSpec]:
        return self._chains.list_chains()

    def delete(self, name: str) -> None:
        if not self._chains.delete_chain(name):
            raise CommandNotFoundError(f"chain not found: {name}")

    def plan(self, name: str) -> ChainPlan:
        return self._orchestrator.plan(self.get(name))

    def execute(self, name: str, store: bool = False) -> ChainResult:
        return self._orchestrator.execute(self.get(name), store=store)

    def export_chain(self, name: str, path: Path) -> Path:
        spec = self.get(name)
        target = Path(path)
        target.write_text(json.dumps(spec.to_dict(), ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
        return target

    def import_chain(self, path: Path, overwrite: bool = False) -> ChainSpec:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            spec = ChainSpec.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            raise ConfigInvalidError(f"could not import chain from {path}", exc)
        if not overwrite and self._chains.get_chain(spec.name) is not None:
            raise CommandExistsError(f"chain already exists: {spec.name}")
        self._chains.save_chain(spec)
        return spec
