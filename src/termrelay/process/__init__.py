"""Child process management for termrelay sessions.

Each session owns at most one interactive process, spawned on its own
pseudo-terminal. Spawn failures surface as :class:`SpawnError` so the
session can fall back to simulated output.
"""

from termrelay.process.base import ProcessHandle, Spawner, SpawnError
from termrelay.process.child import ChildProcessHandle, spawn_child, strip_ansi

__all__ = [
    "ChildProcessHandle",
    "ProcessHandle",
    "SpawnError",
    "Spawner",
    "spawn_child",
    "strip_ansi",
]
