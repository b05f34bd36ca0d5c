"""Pty-backed shell session.

Manages one shell process attached to its own pseudo-terminal. Output is
published on a per-session asyncio queue; input is written by a dedicated
task so callers never block on the pty.
"""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass
from typing import Callable, Union

from termbroker.broker.errors import SpawnError

logger = logging.getLogger(__name__)

# Seconds to keep draining the pty after the shell exits. A background job
# that inherited the terminal can hold it open indefinitely.
_DRAIN_TIMEOUT = 0.5


class SessionState(enum.Enum):
    """Lifecycle states for a pty session."""

    CREATED = "created"
    READY = "ready"
    EXITED = "exited"  # Process exited on its own
    CLOSED = "closed"  # Closed on request


@dataclass(frozen=True)
class ExitStatus:
    """How a session's process terminated."""

    exit_code: int
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitStatus:
        if returncode < 0:
            return cls(exit_code=0, signal=-returncode)
        return cls(exit_code=returncode)


# Items on PtySession.output: output chunks, then exactly one terminator.
# ExitStatus ends a session that exited, None one that was closed.
OutputItem = Union[bytes, ExitStatus, None]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid() and after the pty slave became fd 0.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtySession:
    """A shell process running on its own pseudo-terminal.

    The session goes CREATED -> READY when the process has been spawned,
    then READY -> EXITED when the process terminates by itself or
    READY -> CLOSED when close() is called. Neither end state is ever left.

    Output chunks are put on ``output`` in the order the process produced
    them. The queue always ends with one terminator item: the ExitStatus
    of a process that exited, or None for a closed session.
    """

    def __init__(
        self,
        session_id: str,
        shell: str,
        cols: int = 80,
        rows: int = 24,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        term_name: str = "xterm-color",
        kill_grace_period: float = 2.0,
        read_chunk_size: int = 4096,
    ) -> None:
        self._id = session_id
        self._shell = shell
        self._cols = cols if cols > 0 else 80
        self._rows = rows if rows > 0 else 24
        self._cwd = cwd
        self._env = env or {}
        self._term_name = term_name
        self._kill_grace_period = kill_grace_period
        self._read_chunk_size = read_chunk_size

        self.output: asyncio.Queue[OutputItem] = asyncio.Queue()
        self._input: asyncio.Queue[bytes] = asyncio.Queue()

        self._state = SessionState.CREATED
        self._exit_status: ExitStatus | None = None
        self._master_fd = -1
        self._reading = False
        self._eof = asyncio.Event()
        self._finished = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._wait_task: asyncio.Task[None] | None = None
        self._kill_task: asyncio.Task[None] | None = None
        self._on_exit: Callable[[PtySession, ExitStatus], None] | None = None

    @classmethod
    async def spawn(
        cls,
        session_id: str,
        shell: str,
        cols: int = 80,
        rows: int = 24,
        **kwargs,
    ) -> PtySession:
        """Create a session and start its process. Raises SpawnError."""
        session = cls(session_id, shell, cols, rows, **kwargs)
        await session.start()
        return session

    @property
    def id(self) -> str:
        return self._id

    @property
    def shell(self) -> str:
        return self._shell

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._state is SessionState.READY

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def cols(self) -> int:
        return self._cols

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def exit_status(self) -> ExitStatus | None:
        return self._exit_status

    def set_on_exit(self, callback: Callable[[PtySession, ExitStatus], None]) -> None:
        """Set a callback invoked once when the process exits on its own.

        It is NOT called for a session that was closed with close().
        """
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the shell on a new pty in its own session and process group."""
        if self._state is not SessionState.CREATED:
            raise RuntimeError(f"Session {self._id} was already started")

        cwd = self._cwd or os.environ.get("HOME") or os.getcwd()
        env = {**os.environ, **self._env}
        env["TERM"] = self._term_name
        env["COLUMNS"] = str(self._cols)
        env["LINES"] = str(self._rows)

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(self._id, f"Failed to allocate a pty: {e}") from e

        try:
            _set_winsize(slave_fd, self._cols, self._rows)
            proc = await asyncio.create_subprocess_exec(
                self._shell,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(self._id, f"Failed to spawn {self._shell}: {e}") from e
        finally:
            # The child holds its own copy of the slave end
            os.close(slave_fd)

        self._proc = proc
        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        self._loop = asyncio.get_running_loop()
        self._state = SessionState.READY

        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._writer_task = asyncio.create_task(self._write_loop())
        self._wait_task = asyncio.create_task(self._wait_for_exit(proc))

        logger.info(
            "Session %s started: shell=%s pid=%d %dx%d cwd=%s",
            self._id, self._shell, proc.pid, self._cols, self._rows, cwd,
        )

    def write(self, data: bytes | str) -> None:
        """Queue bytes for the process's input. Never blocks."""
        if self._state is not SessionState.READY:
            logger.debug("Dropping write to %s session %s", self._state.value, self._id)
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        if data:
            self._input.put_nowait(data)

    def resize(self, cols: int, rows: int) -> None:
        """Update the pty window size; the kernel signals SIGWINCH."""
        if self._state is not SessionState.READY:
            logger.debug("Ignoring resize of %s session %s", self._state.value, self._id)
            return
        if cols <= 0 or rows <= 0:
            logger.debug("Ignoring invalid size %dx%d for session %s", cols, rows, self._id)
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as e:
            logger.debug("Resize of session %s failed: %s", self._id, e)
            return
        self._cols = cols
        self._rows = rows

    def close(self) -> None:
        """Terminate the process. Idempotent.

        Sends SIGHUP to the process group and escalates to SIGKILL if the
        process is still alive after the grace period.
        """
        if self._state is not SessionState.READY:
            return

        self._state = SessionState.CLOSED
        self.output.put_nowait(None)
        logger.info("Closing session %s (pid=%s)", self._id, self.pid)
        self._signal_group(signal.SIGHUP)
        if self._wait_task is not None:
            self._kill_task = asyncio.create_task(self._escalate(self._wait_task))

    async def wait_closed(self) -> None:
        """Wait until the process has been reaped and the pty released."""
        if self._state is SessionState.CREATED:
            return
        await self._finished.wait()

    def _signal_group(self, sig: signal.Signals) -> None:
        if self._proc is None or self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._proc.pid)
        except PermissionError as e:
            logger.warning("Cannot signal session %s: %s", self._id, e)

    async def _escalate(self, wait_task: asyncio.Task[None]) -> None:
        done, _ = await asyncio.wait({wait_task}, timeout=self._kill_grace_period)
        if not done:
            logger.info(
                "Session %s ignored SIGHUP for %.1fs, sending SIGKILL",
                self._id, self._kill_grace_period,
            )
            self._signal_group(signal.SIGKILL)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, self._read_chunk_size)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every holder of the slave end is gone
            data = b""

        if not data:
            self._stop_reading()
            return

        if self._state is SessionState.READY:
            self.output.put_nowait(data)

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._master_fd)
            self._reading = False
        self._eof.set()

    async def _write_loop(self) -> None:
        while True:
            data = await self._input.get()
            view = memoryview(data)
            while view:
                try:
                    written = os.write(self._master_fd, view)
                except BlockingIOError:
                    await self._wait_writable()
                    continue
                except OSError as e:
                    logger.debug("Write to session %s failed: %s", self._id, e)
                    return
                view = view[written:]

    async def _wait_writable(self) -> None:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        def _ready() -> None:
            if not waiter.done():
                waiter.set_result(None)

        loop.add_writer(self._master_fd, _ready)
        try:
            await waiter
        finally:
            # _release() may have closed the fd while we were waiting
            if self._master_fd >= 0:
                loop.remove_writer(self._master_fd)

    async def _wait_for_exit(self, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        status = ExitStatus.from_returncode(returncode)

        if self._state is SessionState.READY:
            try:
                await asyncio.wait_for(self._eof.wait(), timeout=_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.debug("Session %s pty still held open after exit", self._id)

        self._release()

        if self._state is SessionState.READY:
            self._state = SessionState.EXITED
            self._exit_status = status
            logger.info(
                "Session %s exited (code=%s, signal=%s)",
                self._id, status.exit_code, status.signal,
            )
            self.output.put_nowait(status)
            if self._on_exit:
                try:
                    self._on_exit(self, status)
                except Exception:
                    logger.exception("Error in on_exit callback for session %s", self._id)
        else:
            self._exit_status = status
            logger.info("Session %s reaped after close (returncode=%d)", self._id, returncode)

        self._finished.set()

    def _release(self) -> None:
        if self._writer_task is not None:
            self._writer_task.cancel()
        self._stop_reading()
        if self._loop is not None and self._master_fd >= 0:
            self._loop.remove_writer(self._master_fd)
        if self._master_fd >= 0:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = -1
