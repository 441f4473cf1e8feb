from __future__ import annotations

import errno
import fcntl
import logging
import os
import select
import signal
import struct
import subprocess
import termios
import threading
import tty
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096
_POLL_SEC = 0.2


@dataclass
class PtySession:
    """Child process attached to a pseudo-terminal, with host<->child copy loops.

    ``wait`` blocks until the child exits, then joins the output loop (which
    drains until EOF/EIO), stops and joins the input loop, and only then
    closes the master side of the PTY.
    """

    process: subprocess.Popen
    master_fd: int
    output: BinaryIO
    input_fd: Optional[int] = None
    transcript: Optional[bytearray] = None
    _threads: list[threading.Thread] = field(default_factory=list)
    _stop_event: threading.Event = field(default_factory=threading.Event)
    _output_done: threading.Event = field(default_factory=threading.Event)
    _closed: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    def start_copy_loops(self) -> None:
        t_out = threading.Thread(target=self._copy_output, daemon=True, name=f"pty-output-{self.pid}")
        self._threads.append(t_out)
        t_out.start()
        if self.input_fd is not None:
            t_in = threading.Thread(target=self._copy_input, daemon=True, name=f"pty-input-{self.pid}")
            self._threads.append(t_in)
            t_in.start()

    def resize_from(self, fd: int) -> None:
        try:
            packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
            if self.master_fd >= 0 and not self._closed:
                fcntl.ioctl(self.master_fd, termios.TIOCSWINSZ, packed)
        except OSError as exc:
            logger.debug("pty resize skipped: %s", exc)

    def wait(self) -> int:
        returncode = self.process.wait()
        self._output_done.wait()
        self._stop_event.set()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()
        self.close()
        return returncode

    def terminate(self) -> None:
        try:
            os.killpg(self.process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except OSError:
            try:
                self.process.terminate()
            except OSError:
                return

    def close(self) -> None:
        self._stop_event.set()
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self.master_fd)
        except OSError:
            pass

    def _emit(self, data: bytes) -> None:
        if self.transcript is not None:
            self.transcript.extend(data)
        try:
            self.output.write(data)
            self.output.flush()
        except (OSError, ValueError) as exc:
            logger.debug("pty output write failed: %s", exc)

    def _copy_output(self) -> None:
        try:
            while True:
                try:
                    ready, _, _ = select.select([self.master_fd], [], [], _POLL_SEC)
                except OSError:
                    break
                if not ready:
                    if self.process.poll() is not None:
                        # Drain one extra cycle after process exit.
                        data = self._read_master()
                        if data:
                            self._emit(data)
                            continue
                        break
                    continue
                data = self._read_master()
                if data is None:
                    break
                if not data:
                    if self.process.poll() is not None:
                        break
                    continue
                self._emit(data)
        finally:
            self._output_done.set()

    def _read_master(self) -> Optional[bytes]:
        try:
            return os.read(self.master_fd, _READ_CHUNK)
        except OSError as exc:
            if exc.errno in {errno.EAGAIN, errno.EWOULDBLOCK}:
                return b""
            # EIO once every slave descriptor is closed.
            return None

    def _copy_input(self) -> None:
        assert self.input_fd is not None
        while not self._stop_event.is_set():
            try:
                ready, _, _ = select.select([self.input_fd], [], [], _POLL_SEC)
            except OSError:
                break
            if not ready:
                continue
            try:
                data = os.read(self.input_fd, _READ_CHUNK)
            except OSError as exc:
                if exc.errno in {errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR}:
                    continue
                break
            if not data:
                break
            try:
                _write_all(self.master_fd, data)
            except OSError as exc:
                if exc.errno in {errno.EIO, errno.EBADF}:
                    break
                raise


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except BlockingIOError:
            select.select([], [fd], [], _POLL_SEC)
            continue
        view = view[written:]


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the PTY slave.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


def spawn_pty(
    argv: Sequence[str],
    output: BinaryIO,
    input_fd: Optional[int] = None,
    capture: bool = False,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> PtySession:
    """Spawn ``argv`` with a fresh PTY as its controlling terminal."""
    master_fd, slave_fd = os.openpty()
    try:
        proc = subprocess.Popen(
            list(argv),
            cwd=cwd,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            shell=False,
            close_fds=True,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
            env=(dict(env) if env is not None else None),
        )
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)

    os.set_blocking(master_fd, False)
    session = PtySession(
        process=proc,
        master_fd=master_fd,
        output=output,
        input_fd=input_fd,
        transcript=bytearray() if capture else None,
    )
    session.start_copy_loops()
    return session


@contextmanager
def raw_terminal(fd: Optional[int]) -> Iterator[None]:
    """Put ``fd`` in raw mode when it is a terminal, restoring it on exit."""
    if fd is None or not os.isatty(fd):
        yield
        return
    try:
        saved = termios.tcgetattr(fd)
    except termios.error:
        yield
        return
    try:
        tty.setraw(fd)
        yield
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        except termios.error as exc:
            logger.warning("failed to restore terminal mode: %s", exc)
