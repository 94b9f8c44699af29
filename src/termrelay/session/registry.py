"""Registry of live sessions, keyed by client identity.

The registry is owned by the event loop: every mutation below runs
without an ``await`` in the middle, so no two mutations interleave and
the idle sweep never iterates a map that is changing under it. The only
suspension point is the spawn inside :meth:`SessionRegistry.create_for`,
and the identity is reserved before it so a duplicate is still refused.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from termrelay.process.base import ProcessHandle
from termrelay.session.session import Session

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, "SessionRegistry"], Session]


class DuplicateSessionError(Exception):
    """Raised when a session is requested for an identity that already has one."""


class StaleRouteError(Exception):
    """Raised when a message targets an identity with no live session."""


class SessionRegistry:
    """At most one live session per identity, plus idle eviction.

    Args:
        session_factory: Builds an uninitialized session for an identity.
                         It receives the registry so the session can
                         remove itself on cleanup.
        clock: Time source for idle checks; must match the sessions'.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._pending: set[str] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def sessions(self) -> list[Session]:
        """Snapshot of the registered sessions."""
        return list(self._sessions.values())

    async def create_for(self, identity: str) -> Session:
        """Create, initialize, and register a session for ``identity``.

        Raises:
            DuplicateSessionError: If ``identity`` already has a live
                session or one is being created.
        """
        if identity in self._sessions or identity in self._pending:
            raise DuplicateSessionError(f"Session already exists for {identity}")
        self._pending.add(identity)
        try:
            session = self._session_factory(identity, self)
            await session.initialize()
        finally:
            self._pending.discard(identity)

        if session.is_active:
            self._sessions[identity] = session
            logger.info(
                "Registered session %s (%s, %d live)",
                identity, session.state.value, len(self._sessions),
            )
        return session

    def get(self, identity: str) -> Session | None:
        return self._sessions.get(identity)

    def require(self, identity: str) -> Session:
        """Look up the session a message should be routed to.

        Raises:
            StaleRouteError: If no live session exists for ``identity``.
        """
        session = self._sessions.get(identity)
        if session is None:
            raise StaleRouteError(f"No live session for {identity}")
        return session

    def remove(self, identity: str) -> Session | None:
        return self._sessions.pop(identity, None)

    def discard(self, session: Session) -> None:
        """Remove ``session`` if it is still the one registered for its id."""
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]

    def sweep_idle(self, threshold: float, now: float | None = None) -> list[str]:
        """Clean up every session idle for longer than ``threshold`` seconds.

        Returns:
            The identities that were swept.
        """
        if now is None:
            now = self._clock()
        swept = []
        for session in list(self._sessions.values()):
            if now - session.last_activity_at > threshold:
                logger.info(
                    "Cleaning up inactive session %s (idle %.0fs)",
                    session.id, now - session.last_activity_at,
                )
                session.cleanup("idle")
                swept.append(session.id)
        return swept

    async def run_sweeper(self, interval: float, threshold: float) -> None:
        """Sweep idle sessions every ``interval`` seconds until cancelled."""
        logger.info("Idle sweeper started (interval=%ss, threshold=%ss)", interval, threshold)
        while True:
            await asyncio.sleep(interval)
            swept = self.sweep_idle(threshold)
            if swept:
                logger.info("Idle sweep removed %d session(s)", len(swept))

    def cleanup_all(self, reason: str = "shutdown") -> list[ProcessHandle]:
        """Clean up every registered session.

        Returns:
            The process handles that were killed, for :meth:`wait_closed`.
        """
        killed = []
        for session in self.sessions():
            handle = session.cleanup(reason)
            if handle is not None:
                killed.append(handle)
        self._sessions.clear()
        return killed

    async def wait_closed(self, handles: list[ProcessHandle], timeout: float) -> None:
        """Wait up to ``timeout`` seconds for killed processes to exit."""
        if not handles:
            return
        waiters = [asyncio.ensure_future(handle.wait()) for handle in handles]
        _, pending = await asyncio.wait(waiters, timeout=timeout)
        if pending:
            logger.warning("%d process(es) still running after shutdown", len(pending))
            for waiter in pending:
                waiter.cancel()
