import logging
import shlex
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from ambros.domain.commands import MODE_CAPTURED, CommandRecord, ExecutionRequest, ExecutionResult
from ambros.domain.contracts import CommandRepository
from ambros.domain.plugins import HOOK_POST_RUN, HOOK_PRE_RUN
from ambros.errors import (
    AmbrosError,
    CommandExistsError,
    CommandNotFoundError,
    HookDispatchError,
    InvalidCommandError,
)
from ambros.execution.executor import ProcessExecutor
from ambros.observability.structured_log import log_json
from ambros.plugins.runtime import PluginRuntime

logger = logging.getLogger(__name__)

RERUN_TAG = "rerun"
STORED_TAG = "stored"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_command_id() -> str:
    return f"CMD-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class RunOutcome:
    command_text: str
    result: ExecutionResult
    record: Optional[CommandRecord] = None
    stored: bool = False
    dry_run: bool = False


class CommandService:
    def __init__(
        self,
        executor: ProcessExecutor,
        repository: CommandRepository,
        plugins: Optional[PluginRuntime] = None,
    ):
        self._executor = executor
        self._repository = repository
        self._plugins = plugins

    def run(
        self,
        argv: Sequence[str],
        mode: str = MODE_CAPTURED,
        store: bool = True,
        tags: Iterable[str] = (),
        category: str = "",
        dry_run: bool = False,
    ) -> RunOutcome:
        argv = [str(a) for a in argv]
        if not argv:
            raise InvalidCommandError("No command specified. Use: ambros run [flags] -- <command> [args...]")
        text = shlex.join(argv)
        if dry_run:
            return RunOutcome(
                command_text=text,
                result=ExecutionResult(exit_code=0, succeeded=True),
                dry_run=True,
            )

        request = ExecutionRequest(program=argv[0], args=tuple(argv[1:]), mode=mode)
        self._trigger(HOOK_PRE_RUN, argv)
        started_at = _utc_now()
        result = self._executor.execute(request)
        record = CommandRecord(
            command_id=new_command_id(),
            name=argv[0],
            arguments=argv[1:],
            status=result.succeeded,
            output=result.output,
            error=result.error_message,
            tags=_dedupe(tags),
            category=category,
            created_at=started_at,
            terminated_at=_utc_now(),
        )
        stored = False
        if store:
            stored = self._store(record)
        self._trigger(HOOK_POST_RUN, [record.command_id, str(result.exit_code)])
        log_json(
            logger,
            "command.executed",
            command_id=record.command_id,
            mode=mode,
            exit_code=result.exit_code,
            succeeded=result.succeeded,
            stored=stored,
        )
        return RunOutcome(command_text=text, result=result, record=record, stored=stored)

    def rerun(self, command_id: str, mode: Optional[str] = None, store: bool = True, dry_run: bool = False) -> RunOutcome:
        original = self.get(command_id)
        return self.run(
            [original.name, *original.arguments],
            mode=mode or MODE_CAPTURED,
            store=store,
            tags=[*original.tags, RERUN_TAG],
            category=original.category,
            dry_run=dry_run,
        )

    def store(
        self,
        argv: Sequence[str],
        tags: Iterable[str] = (),
        category: str = "",
        description: str = "",
        name: str = "",
        force: bool = False,
    ) -> CommandRecord:
        """Save a command for later use without running it.

        The record is marked successful and tagged ``stored``. ``name``
        becomes the command id; an existing id is only replaced with ``force``.
        """
        argv = [str(a) for a in argv]
        if not argv:
            raise InvalidCommandError("No command specified. Use: ambros store [flags] -- <command> [args...]")
        name = (name or "").strip()
        if name and not force and self._repository.get(name) is not None:
            raise CommandExistsError(f"command with name '{name}' already exists, use --force to overwrite")
        now = _utc_now()
        record = CommandRecord(
            command_id=name or new_command_id(),
            name=argv[0],
            arguments=argv[1:],
            status=True,
            tags=_dedupe([*tags, STORED_TAG]),
            category=category,
            variables={"description": description} if description else {},
            created_at=now,
            terminated_at=now,
        )
        self._repository.put(record)
        log_json(logger, "command.stored", command_id=record.command_id, category=category, tags=record.tags)
        return record

    def get(self, command_id: str) -> CommandRecord:
        record = self._repository.get(command_id)
        if record is None:
            raise CommandNotFoundError(f"command not found: {command_id}")
        return record

    def recent(self, limit: int = 10) -> List[CommandRecord]:
        return self._repository.get_limit_commands(limit)

    def search_by_tag(self, tag: str) -> List[CommandRecord]:
        return self._repository.search_by_tag(tag)

    def delete(self, command_id: str) -> None:
        if not self._repository.delete(command_id):
            raise CommandNotFoundError(f"command not found: {command_id}")

    def _store(self, record: CommandRecord) -> bool:
        try:
            self._repository.put(record)
        except AmbrosError as exc:
            logger.warning("failed to store command %s: %s", record.command_id, exc)
            return False
        return True

    def _trigger(self, event: str, args: Sequence[str]) -> None:
        if self._plugins is None:
            return
        try:
            self._plugins.trigger_hook(event, args)
        except HookDispatchError as exc:
            logger.warning("%s", exc)


def _dedupe(tags: Iterable[str]) -> List[str]:
    out: List[str] = []
    for tag in tags:
        tag = str(tag or "").strip()
        if tag and tag not in out:
            out.append(tag)
    return out
