import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import List, Optional

from ambros.domain.chains import (
    RESULT_FAILED,
    RESULT_SKIPPED,
    RESULT_SUCCESS,
    ChainPlan,
    ChainResult,
    ChainSpec,
    CommandExecutionResult,
    PlannedCommand,
)
from ambros.domain.commands import MODE_CAPTURED, CommandRecord, ExecutionRequest
from ambros.domain.contracts import CommandRepository
from ambros.errors import AmbrosError
from ambros.execution.executor import ProcessExecutor
from ambros.observability.structured_log import log_json

logger = logging.getLogger(__name__)

CHAIN_RESULT_CATEGORY = "chain-execution"
CHAIN_RESULT_TAGS = ["chain", "execution", "result"]
TIMEOUT_MESSAGE = "chain timeout exceeded"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChainOrchestrator:
    """Runs the stored commands referenced by a chain under one retry/timeout policy.

    Every command runs in captured mode. A single cancellation event is shared
    by all attempts of one chain; the chain deadline sets it, which stops
    retries and terminates children that are still running. Commands that
    had not produced a result by then are recorded as skipped.
    """

    def __init__(
        self,
        executor: ProcessExecutor,
        repository: CommandRepository,
        backoff_unit_sec: float = 1.0,
    ):
        self._executor = executor
        self._repository = repository
        self._backoff_unit_sec = max(0.0, float(backoff_unit_sec))

    def plan(self, spec: ChainSpec) -> ChainPlan:
        planned: List[PlannedCommand] = []
        for ref in spec.commands:
            record = self._lookup(ref)
            planned.append(
                PlannedCommand(
                    command_ref=ref,
                    resolved_text=record.command_text if record is not None else "",
                    found=record is not None,
                )
            )
        return ChainPlan(
            chain_name=spec.name,
            description=spec.description,
            commands=planned,
            mode=spec.mode,
            conditional=spec.conditional,
            retry_limit=spec.retry_limit,
            timeout_sec=spec.timeout_sec,
        )

    def execute(self, spec: ChainSpec, store: bool = False) -> ChainResult:
        result = ChainResult(chain_name=spec.name, started_at=_utc_now(), total_commands=len(spec.commands))
        cancel = threading.Event()
        deadline = threading.Timer(spec.timeout_sec, cancel.set)
        deadline.daemon = True
        deadline.start()
        try:
            if spec.parallel:
                result.results.extend(self._run_parallel(spec, cancel))
            else:
                result.results.extend(self._run_sequential(spec, cancel))
        finally:
            deadline.cancel()
        result.finished_at = _utc_now()
        if cancel.is_set():
            logger.warning("chain=%s exceeded its timeout of %.1fs", spec.name, spec.timeout_sec)

        log_json(
            logger,
            "chain.finished",
            chain=spec.name,
            mode=spec.mode,
            status=result.status,
            total=result.total_commands,
            succeeded=result.success_count,
            failed=result.failure_count,
            skipped=result.skipped_count,
            duration_sec=round(result.duration_sec, 3),
        )
        if store:
            self._store_result(spec, result)
        return result

    def _run_sequential(self, spec: ChainSpec, cancel: threading.Event) -> List[CommandExecutionResult]:
        out: List[CommandExecutionResult] = []
        for ref in spec.commands:
            if cancel.is_set():
                out.append(_skipped(ref, "", TIMEOUT_MESSAGE))
                continue
            item = self._run_command(spec, ref, cancel)
            out.append(item)
            if item.status == RESULT_FAILED and not spec.conditional:
                logger.info("chain=%s halted after failure of %s", spec.name, ref)
                break
        return out

    def _run_parallel(self, spec: ChainSpec, cancel: threading.Event) -> List[CommandExecutionResult]:
        if not spec.commands:
            return []
        out: List[CommandExecutionResult] = []
        with ThreadPoolExecutor(
            max_workers=len(spec.commands),
            thread_name_prefix=f"chain-{spec.name}",
        ) as pool:
            futures = [pool.submit(self._run_command, spec, ref, cancel) for ref in spec.commands]
            for future in as_completed(futures):
                out.append(future.result())
        return out

    def _run_command(self, spec: ChainSpec, ref: str, cancel: threading.Event) -> CommandExecutionResult:
        started = time.monotonic()
        record = self._lookup(ref)
        if record is None:
            return CommandExecutionResult(
                command_ref=ref,
                resolved_text="",
                status=RESULT_FAILED,
                error=f"command not found: {ref}",
            )
        request = ExecutionRequest(program=record.name, args=tuple(record.arguments), mode=MODE_CAPTURED)
        text = record.command_text
        attempt = 0
        while True:
            if cancel.is_set():
                return _skipped(ref, text, TIMEOUT_MESSAGE, time.monotonic() - started, attempt)
            try:
                outcome = self._executor.run_captured(request, cancel_event=cancel)
            except AmbrosError as exc:
                outcome = None
                error, output = str(exc), ""
            else:
                error, output = outcome.error_message, outcome.output
            if outcome is not None and outcome.succeeded:
                return CommandExecutionResult(
                    command_ref=ref,
                    resolved_text=text,
                    status=RESULT_SUCCESS,
                    output=output,
                    duration_sec=time.monotonic() - started,
                    retry_count=attempt,
                )
            if cancel.is_set():
                return _skipped(ref, text, TIMEOUT_MESSAGE, time.monotonic() - started, attempt, output)
            if attempt >= spec.retry_limit:
                return CommandExecutionResult(
                    command_ref=ref,
                    resolved_text=text,
                    status=RESULT_FAILED,
                    output=output,
                    error=error,
                    duration_sec=time.monotonic() - started,
                    retry_count=attempt,
                )
            attempt += 1
            backoff = attempt * self._backoff_unit_sec
            logger.info(
                "chain=%s command=%s failed (attempt %d/%d), retrying in %.1fs",
                spec.name,
                ref,
                attempt,
                spec.retry_limit + 1,
                backoff,
            )
            if backoff > 0 and cancel.wait(backoff):
                return _skipped(ref, text, TIMEOUT_MESSAGE, time.monotonic() - started, attempt, output)

    def _lookup(self, ref: str) -> Optional[CommandRecord]:
        try:
            return self._repository.get(ref)
        except AmbrosError as exc:
            logger.warning("failed to load command %s: %s", ref, exc)
            return None

    def _store_result(self, spec: ChainSpec, result: ChainResult) -> None:
        now = _utc_now()
        record = CommandRecord(
            command_id=f"CMD-{uuid.uuid4().hex[:12]}",
            name="chain-result",
            arguments=[spec.name],
            status=result.failure_count == 0,
            output=f"{result.success_count}/{result.total_commands} succeeded",
            error="" if result.failure_count == 0 else f"{result.failure_count} command(s) failed",
            tags=list(CHAIN_RESULT_TAGS),
            category=CHAIN_RESULT_CATEGORY,
            variables={
                "label": f"chain-execution:{spec.name}",
                "chain_name": spec.name,
                "status": result.status,
                "duration": f"{result.duration_sec:.3f}s",
                "data": json.dumps(result.to_dict(), ensure_ascii=True),
            },
            created_at=result.started_at,
            terminated_at=result.finished_at or now,
        )
        try:
            self._repository.put(record)
        except AmbrosError as exc:
            logger.warning("failed to store chain result for %s: %s", spec.name, exc)


def _skipped(
    ref: str,
    text: str,
    reason: str,
    duration_sec: float = 0.0,
    retry_count: int = 0,
    output: str = "",
) -> CommandExecutionResult:
    return CommandExecutionResult(
        command_ref=ref,
        resolved_text=text,
        status=RESULT_SKIPPED,
        output=output,
        error=reason,
        duration_sec=duration_sec,
        retry_count=retry_count,
    )
