"""Session management for termrelay.

A :class:`Session` binds one client to one interactive process (or to
the :class:`SimulatedResponder` when no process can be spawned), and
the :class:`SessionRegistry` keeps at most one per client.
"""

from termrelay.session.registry import (
    DuplicateSessionError,
    SessionRegistry,
    StaleRouteError,
)
from termrelay.session.responder import SimulatedResponder
from termrelay.session.session import OutputSink, Session

__all__ = [
    "DuplicateSessionError",
    "OutputSink",
    "Session",
    "SessionRegistry",
    "SimulatedResponder",
    "StaleRouteError",
]
