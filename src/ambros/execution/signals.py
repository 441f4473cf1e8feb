import logging
import os
import signal
import threading
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Signals that cannot be caught, that describe the child's own lifecycle, or
# that are synchronous faults of the host process itself.
_NOT_FORWARDED = {
    "SIGKILL",
    "SIGSTOP",
    "SIGCHLD",
    "SIGCLD",
    "SIGWINCH",
    "SIGSEGV",
    "SIGBUS",
    "SIGFPE",
    "SIGILL",
    "SIGTRAP",
    "SIGSYS",
    "SIGPIPE",
    "SIGURG",
    "SIGABRT",
    "SIGIOT",
    "SIGTTIN",
    "SIGTTOU",
    "SIGPROF",
    "SIGVTALRM",
    "SIGPOLL",
    "SIGIO",
}


def forwardable_signals() -> list[signal.Signals]:
    out = []
    for sig in signal.Signals:
        if sig.name in _NOT_FORWARDED:
            continue
        out.append(sig)
    return out


class SignalForwarder:
    """Relays host signals to a running child for the lifetime of a ``with`` block.

    Handlers are only installed on the main thread; elsewhere the forwarder is
    a no-op and the child relies on sharing the terminal's process group.
    An optional ``on_resize`` callback is invoked on SIGWINCH.
    """

    def __init__(self, pid: int, on_resize: Optional[Callable[[], None]] = None, process_group: bool = False):
        self._pid = pid
        self._on_resize = on_resize
        self._process_group = process_group
        self._previous: Dict[int, object] = {}
        self.received: list[int] = []

    def __enter__(self) -> "SignalForwarder":
        if threading.current_thread() is not threading.main_thread():
            return self
        for sig in forwardable_signals():
            self._install(sig, self._forward)
        if self._on_resize is not None and hasattr(signal, "SIGWINCH"):
            self._install(signal.SIGWINCH, self._resize)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        for signum, handler in self._previous.items():
            try:
                signal.signal(signum, handler)
            except (OSError, ValueError, TypeError):
                logger.debug("could not restore handler for signal %s", signum)
        self._previous.clear()

    def _install(self, sig: signal.Signals, handler: Callable) -> None:
        try:
            previous = signal.getsignal(sig)
            signal.signal(sig, handler)
        except (OSError, ValueError, RuntimeError):
            return
        self._previous[int(sig)] = previous

    def _forward(self, signum: int, _frame) -> None:
        self.received.append(signum)
        try:
            if self._process_group:
                os.killpg(self._pid, signum)
            else:
                os.kill(self._pid, signum)
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.debug("failed to forward signal %s to pid=%s: %s", signum, self._pid, exc)

    def _resize(self, _signum: int, _frame) -> None:
        if self._on_resize is not None:
            self._on_resize()
