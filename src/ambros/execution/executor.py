from __future__ import annotations

import io
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from typing import BinaryIO, Callable, Optional, Sequence, Tuple

from ambros.domain.commands import (
    MODE_CAPTURE_ECHO,
    MODE_CAPTURED,
    MODE_TRANSPARENT,
    ExecutionRequest,
    ExecutionResult,
)
from ambros.errors import AmbrosError, ExecutableNotFoundError, ExecutionFailedError
from ambros.execution.path_resolver import PathResolver
from ambros.execution.pty_spawn import raw_terminal, spawn_pty
from ambros.execution.signals import SignalForwarder

logger = logging.getLogger(__name__)

INTERACTIVE_COMMANDS = frozenset(
    {
        "ssh",
        "su",
        "sudo",
        "vim",
        "vi",
        "nano",
        "less",
        "more",
        "man",
        "top",
        "htop",
        "screen",
        "tmux",
        "passwd",
    }
)
_CONTAINER_TOOLS = frozenset({"docker", "kubectl"})
_CONTAINER_SUBCOMMANDS = frozenset({"run", "exec"})
_TTY_FLAGS = frozenset({"-it", "-ti", "-i", "-t", "--interactive", "--tty", "--stdin"})
_FOLLOW_FLAGS = frozenset({"-f", "-F", "--follow"})

_POLL_SEC = 0.1
_DEFAULT_TERMINATE_GRACE_SEC = 2.0


def is_likely_interactive(command: str, args: Sequence[str]) -> bool:
    """Advisory guess whether a program expects a real terminal."""
    base = os.path.basename(str(command or "")).lower()
    if base.endswith(".exe"):
        base = base[: -len(".exe")]
    if base in INTERACTIVE_COMMANDS:
        return True
    if base in _CONTAINER_TOOLS:
        has_subcommand = any(a in _CONTAINER_SUBCOMMANDS for a in args)
        has_tty_flag = any(a in _TTY_FLAGS or a.startswith(("--interactive=", "--tty=")) for a in args)
        return has_subcommand and has_tty_flag
    if base == "tail":
        return any(a in _FOLLOW_FLAGS or a.startswith("--follow=") for a in args)
    return False


def decode_exit_status(returncode: Optional[int]) -> Tuple[int, Optional[ExecutionFailedError]]:
    """Map a ``Popen.returncode`` to a shell-style exit code.

    Normal exits pass through. A child killed by a signal, or one whose status
    could not be read, maps to 1 together with an error naming the cause.
    """
    if returncode is None:
        return 1, ExecutionFailedError("exit status unavailable")
    if returncode >= 0:
        return returncode, None
    signum = -returncode
    try:
        name = signal.Signals(signum).name
    except ValueError:
        name = f"signal {signum}"
    return 1, ExecutionFailedError(f"terminated by {name}")


def _default_is_terminal(fd: Optional[int]) -> bool:
    if fd is None:
        return False
    try:
        return os.isatty(fd)
    except OSError:
        return False


def _host_stdin_fd() -> Optional[int]:
    try:
        return sys.stdin.fileno()
    except (AttributeError, ValueError, OSError, io.UnsupportedOperation):
        return None


def _host_stdout() -> BinaryIO:
    return getattr(sys.stdout, "buffer", sys.stdout)


def _fileno_or_none(stream: object) -> Optional[int]:
    try:
        return stream.fileno()  # type: ignore[attr-defined]
    except (AttributeError, ValueError, OSError, io.UnsupportedOperation):
        return None


class ProcessExecutor:
    """Runs a single external program in captured, transparent or capture-echo mode."""

    def __init__(
        self,
        resolver: PathResolver,
        is_terminal: Optional[Callable[[Optional[int]], bool]] = None,
        stdin_fd: Optional[int] = None,
        stdout: Optional[BinaryIO] = None,
        terminate_grace_sec: float = _DEFAULT_TERMINATE_GRACE_SEC,
    ):
        self._resolver = resolver
        self._is_terminal = is_terminal or _default_is_terminal
        self._stdin_fd = stdin_fd
        self._stdout = stdout
        self._terminate_grace_sec = max(0.0, float(terminate_grace_sec))

    @property
    def resolver(self) -> PathResolver:
        return self._resolver

    def execute(self, request: ExecutionRequest, cancel_event: Optional[threading.Event] = None) -> ExecutionResult:
        if request.mode == MODE_TRANSPARENT:
            return self.run_transparent(request)
        if request.mode == MODE_CAPTURE_ECHO:
            return self.run_capture_echo(request, cancel_event=cancel_event)
        return self.run_captured(request, cancel_event=cancel_event)

    def run_captured(
        self,
        request: ExecutionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        try:
            path = self._resolver.resolve(request.program)
        except AmbrosError as exc:
            logger.debug("resolve failed for %r: %s", request.program, exc)
            return ExecutionResult.failure(str(exc))
        self._warn_if_interactive(path, request.args)
        return self._capture([path, *request.args], cancel_event)

    def run_transparent(self, request: ExecutionRequest) -> ExecutionResult:
        path = self._resolver.resolve(request.program)
        argv = [path, *request.args]
        stdin_fd = self._input_fd()
        if self._is_terminal(stdin_fd):
            returncode = self._run_pty(argv, stdin_fd, capture=False)[0]
        else:
            returncode = self._run_attached(argv, stdin_fd)
        return _result_from_returncode(returncode, output="", echoed=True)

    def run_capture_echo(
        self,
        request: ExecutionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        path = self._resolver.resolve(request.program)
        self._warn_if_interactive(path, request.args)
        argv = [path, *request.args]
        stdin_fd = self._input_fd()
        if not self._is_terminal(stdin_fd):
            return self._capture(argv, cancel_event)
        returncode, transcript = self._run_pty(argv, stdin_fd, capture=True)
        return _result_from_returncode(returncode, output=transcript, echoed=True)

    def _capture(self, argv: Sequence[str], cancel_event: Optional[threading.Event]) -> ExecutionResult:
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                shell=False,
                close_fds=True,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            return ExecutionResult.failure(str(ExecutableNotFoundError(f"executable not found: {argv[0]}", exc)))
        except OSError as exc:
            raise ExecutionFailedError(f"failed to start {argv[0]}", exc)

        raw, cancelled = self._communicate(proc, cancel_event)
        output = raw.decode("utf-8", errors="replace")
        result = _result_from_returncode(proc.returncode, output=output)
        if cancelled:
            result = ExecutionResult.failure("execution cancelled", exit_code=result.exit_code or 1, output=output)
        logger.debug(
            "captured %s exit=%s in %.3fs",
            os.path.basename(argv[0]),
            result.exit_code,
            time.monotonic() - started,
        )
        return result

    def _communicate(self, proc: subprocess.Popen, cancel_event: Optional[threading.Event]) -> Tuple[bytes, bool]:
        cancelled = False
        killed = False
        kill_deadline = 0.0
        while True:
            try:
                out, _ = proc.communicate(timeout=_POLL_SEC)
                return out or b"", cancelled
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is None:
                continue
            if not cancelled and cancel_event.is_set():
                cancelled = True
                _signal_group(proc, signal.SIGTERM)
                kill_deadline = time.monotonic() + self._terminate_grace_sec
            elif cancelled and not killed and time.monotonic() >= kill_deadline:
                killed = True
                _signal_group(proc, signal.SIGKILL)

    def _run_pty(self, argv: Sequence[str], stdin_fd: Optional[int], capture: bool) -> Tuple[int, str]:
        with raw_terminal(stdin_fd):
            try:
                session = spawn_pty(argv, output=self._output(), input_fd=stdin_fd, capture=capture)
            except OSError as exc:
                raise ExecutionFailedError(f"failed to start {argv[0]} on a pty", exc)
            if stdin_fd is not None:
                session.resize_from(stdin_fd)
            resize = (lambda: session.resize_from(stdin_fd)) if stdin_fd is not None else None
            with SignalForwarder(session.pid, on_resize=resize, process_group=True):
                returncode = session.wait()
        transcript = ""
        if session.transcript is not None:
            transcript = session.transcript.decode("utf-8", errors="replace")
        return returncode, transcript

    def _run_attached(self, argv: Sequence[str], stdin_fd: Optional[int]) -> int:
        out_fd = _fileno_or_none(self._stdout) if self._stdout is not None else None
        if self._stdout is not None:
            self._stdout.flush()
        try:
            proc = subprocess.Popen(
                list(argv),
                stdin=stdin_fd,
                stdout=out_fd,
                stderr=out_fd,
                shell=False,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExecutionFailedError(f"failed to start {argv[0]}", exc)
        with SignalForwarder(proc.pid, process_group=True):
            return proc.wait()

    def _input_fd(self) -> Optional[int]:
        if self._stdin_fd is not None:
            return self._stdin_fd
        return _host_stdin_fd()

    def _output(self) -> BinaryIO:
        if self._stdout is not None:
            return self._stdout
        return _host_stdout()

    def _warn_if_interactive(self, path: str, args: Sequence[str]) -> None:
        if is_likely_interactive(path, args):
            logger.warning(
                "%s looks interactive; consider transparent mode (--auto) to attach it to your terminal",
                os.path.basename(path),
            )


def _result_from_returncode(returncode: Optional[int], output: str, echoed: bool = False) -> ExecutionResult:
    exit_code, err = decode_exit_status(returncode)
    if err is not None:
        error_message = str(err)
    elif exit_code != 0:
        error_message = f"exit status {exit_code}"
    else:
        error_message = ""
    return ExecutionResult(
        exit_code=exit_code,
        output=output,
        error_message=error_message,
        succeeded=not error_message,
        echoed=echoed,
    )


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except OSError:
        # Fallback to direct process signaling if pgid kill fails.
        try:
            proc.send_signal(sig)
        except OSError:
            return
