"""Abstract base class for a session's child process.

Sessions only talk to this interface, so the pty-backed implementation
can be swapped for an in-memory double in tests without touching any
session or gateway code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Awaitable, Callable

from termrelay.domain.models import ProcessExit

if TYPE_CHECKING:
    from termrelay.config.settings import ProcessConfig

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[ProcessExit], None]


class ProcessHandle(ABC):
    """Owns one spawned interactive process.

    Output and exit are reported through the callbacks handed to the
    spawner. Implementations must guarantee:

    - output chunks are delivered in the order they were read
    - the exit callback fires exactly once, and no output follows it
    - nothing is delivered after :meth:`kill`, except the exit report
    """

    @property
    @abstractmethod
    def pid(self) -> int | None:
        ...

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the process is running and has not been killed."""
        ...

    @abstractmethod
    def write(self, data: str | bytes) -> None:
        """Send data to the process's input.

        A silent no-op once the process has exited or been killed.
        """
        ...

    @abstractmethod
    def kill(self) -> None:
        """Request termination and release OS resources.

        Idempotent: safe to call on an exited or already-killed handle.
        """
        ...

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its returncode."""
        ...


Spawner = Callable[["ProcessConfig", OutputCallback, ExitCallback], Awaitable[ProcessHandle]]


class SpawnError(Exception):
    """Raised when the configured executable cannot be found or launched."""
