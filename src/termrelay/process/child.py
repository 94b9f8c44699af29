"""Pty-backed child process for a relay session.

Runs the configured interactive CLI on a pseudo-terminal so it behaves
as it would in a real terminal (line editing, prompts, colors), and
streams everything it prints back through a callback.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import re
import shutil
import signal
import struct
import subprocess
import termios
from typing import Mapping, Sequence

from termrelay.config.settings import ProcessConfig
from termrelay.domain.models import ProcessExit
from termrelay.process.base import ExitCallback, OutputCallback, ProcessHandle, SpawnError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

_ESCAPE_PATTERNS = (
    # CSI sequences (e.g., colors, cursor movement)
    re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]"),
    # OSC sequences (e.g., window title)
    re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"),
    # Other escape sequences
    re.compile(r"\x1b[()][AB012]"),
    re.compile(r"\x1b[>=]"),
    # Control characters except newline/tab/carriage return
    re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]"),
)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and normalize line endings."""
    for pattern in _ESCAPE_PATTERNS:
        text = pattern.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the pty slave
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class ChildProcessHandle(ProcessHandle):
    """An interactive subprocess attached to a pty master.

    The master fd is non-blocking and registered with the event loop, so
    a slow or chatty process never stalls other sessions. Use
    :meth:`spawn` to create one.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int,
        command: str,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        kill_grace_period: float = 0.5,
        strip_ansi: bool = False,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._process = process
        self._master_fd: int | None = master_fd
        self._command = command
        self._on_output = on_output
        self._on_exit = on_exit
        self._kill_grace_period = kill_grace_period
        self._strip_ansi = strip_ansi
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_input = bytearray()
        self._reading = False
        self._writing = False
        self._killed = False
        self._exit: ProcessExit | None = None
        self._escalate_task: asyncio.Task[None] | None = None

        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._wait_task: asyncio.Task[int] = self._loop.create_task(self._wait_for_exit())

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        working_dir: str | None = None,
        environment: Mapping[str, str] | None = None,
        *,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        rows: int = 24,
        cols: int = 80,
        term: str = "xterm-color",
        kill_grace_period: float = 0.5,
        strip_ansi: bool = False,
    ) -> ChildProcessHandle:
        """Launch ``command`` on a fresh pty.

        Raises:
            SpawnError: If the executable or working directory does not
                exist, or the process cannot be started.
        """
        env = os.environ.copy()
        env.update(environment or {})
        env["TERM"] = term
        env["COLUMNS"] = str(cols)
        env["LINES"] = str(rows)

        executable = shutil.which(command, path=env.get("PATH"))
        if executable is None:
            raise SpawnError(f"Executable not found: {command}")
        if working_dir is not None and not os.path.isdir(working_dir):
            raise SpawnError(f"Working directory does not exist: {working_dir}")

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"Cannot allocate a pty: {e}") from e

        try:
            # Set terminal size
            winsize = struct.pack("HHHH", rows, cols, 0, 0)
            fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, winsize)
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=working_dir,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(f"Failed to launch {command}: {e}") from e
        finally:
            os.close(slave_fd)

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        handle = cls(
            process,
            master_fd,
            command,
            on_output,
            on_exit,
            kill_grace_period=kill_grace_period,
            strip_ansi=strip_ansi,
        )
        logger.info("Started %s (pid=%d, %dx%d)", command, process.pid, cols, rows)
        return handle

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def is_alive(self) -> bool:
        return not self._killed and self._process.returncode is None

    @property
    def exit_status(self) -> ProcessExit | None:
        return self._exit

    def write(self, data: str | bytes) -> None:
        if not self.is_alive or self._master_fd is None:
            logger.debug("Dropping write to %s: process is gone", self._command)
            return
        payload = data.encode() if isinstance(data, str) else bytes(data)
        if self._pending_input:
            self._pending_input.extend(payload)
            return
        try:
            written = os.write(self._master_fd, payload)
        except BlockingIOError:
            written = 0
        except OSError as e:
            logger.warning("Failed to write to %s (pid=%s): %s", self._command, self.pid, e)
            return
        if written < len(payload):
            self._pending_input.extend(payload[written:])
            self._loop.add_writer(self._master_fd, self._flush_input)
            self._writing = True

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self._stop_reading()
        self._stop_writing()
        if self._process.returncode is None:
            self._signal(signal.SIGTERM)
            self._escalate_task = self._loop.create_task(self._escalate())
        self._close_master()
        logger.info("Killed %s (pid=%d)", self._command, self._process.pid)

    async def wait(self) -> int:
        return await asyncio.shield(self._wait_task)

    # -- internals ---------------------------------------------------------

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once nothing holds the slave side any more
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._deliver(data)

    def _deliver(self, data: bytes, final: bool = False) -> None:
        if self._killed or self._exit is not None:
            return
        text = self._decoder.decode(data, final=final)
        if self._strip_ansi:
            text = strip_ansi(text)
        if not text:
            return
        try:
            self._on_output(text)
        except Exception:
            logger.exception("Output callback failed for %s (pid=%d)", self._command, self._process.pid)

    def _drain(self) -> None:
        """Read whatever the process left in the pty buffer."""
        while self._master_fd is not None:
            try:
                data = os.read(self._master_fd, READ_CHUNK_SIZE)
            except OSError:
                break
            if not data:
                break
            self._deliver(data)
        self._deliver(b"", final=True)

    def _flush_input(self) -> None:
        if self._master_fd is None:
            self._stop_writing()
            return
        try:
            written = os.write(self._master_fd, self._pending_input)
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning("Failed to flush input to %s: %s", self._command, e)
            self._pending_input.clear()
            self._stop_writing()
            return
        del self._pending_input[:written]
        if not self._pending_input:
            self._stop_writing()

    async def _wait_for_exit(self) -> int:
        returncode = await self._process.wait()
        self._drain()
        self._stop_reading()
        self._stop_writing()
        self._close_master()
        self._exit = ProcessExit.from_returncode(returncode)
        logger.info(
            "Process %s (pid=%d) exited (code=%s, signal=%s)",
            self._command, self._process.pid, self._exit.exit_code, self._exit.signal,
        )
        try:
            self._on_exit(self._exit)
        except Exception:
            logger.exception("Exit callback failed for %s (pid=%d)", self._command, self._process.pid)
        return returncode

    async def _escalate(self) -> None:
        done, _ = await asyncio.wait({self._wait_task}, timeout=self._kill_grace_period)
        if not done:
            logger.warning("%s (pid=%d) ignored SIGTERM, sending SIGKILL", self._command, self._process.pid)
            self._signal(signal.SIGKILL)

    def _signal(self, sig: signal.Signals) -> None:
        try:
            # The child leads its own session, so this reaches its children too
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass

    def _stop_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False

    def _stop_writing(self) -> None:
        if self._writing and self._master_fd is not None:
            self._loop.remove_writer(self._master_fd)
        self._writing = False
        self._pending_input.clear()

    def _close_master(self) -> None:
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None


async def spawn_child(
    config: ProcessConfig,
    on_output: OutputCallback,
    on_exit: ExitCallback,
) -> ChildProcessHandle:
    """Default spawner: build a :class:`ChildProcessHandle` from config."""
    return await ChildProcessHandle.spawn(
        config.command,
        config.args,
        config.working_dir,
        config.env,
        on_output=on_output,
        on_exit=on_exit,
        rows=config.rows,
        cols=config.cols,
        term=config.term,
        kill_grace_period=config.kill_grace_period,
        strip_ansi=config.strip_ansi,
    )
