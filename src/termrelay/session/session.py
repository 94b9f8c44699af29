"""A single client's relay session.

Binds one client identity to one interactive child process, or to the
simulated responder when the process cannot be spawned. The session
tracks activity for idle eviction and tears itself down exactly once,
whichever of disconnect, process exit, idle sweep, or shutdown asks
first.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Protocol

from termrelay.config.settings import ProcessConfig
from termrelay.domain.models import (
    OutputEvent,
    OutputKind,
    ProcessExit,
    ServerEvent,
    SessionInfo,
    SessionMode,
    SessionState,
)
from termrelay.process.base import ProcessHandle, Spawner, SpawnError
from termrelay.process.child import spawn_child
from termrelay.session.responder import SimulatedResponder

if TYPE_CHECKING:
    from termrelay.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

# Tokens the wrapped CLI expects at a yes/no prompt; anything else is sent verbatim
CONFIRMATION_TOKENS = {
    "yes": "y",
    "no": "n",
}


class OutputSink(Protocol):
    """Where a session's events go; implemented by the gateway per connection."""

    def deliver(self, event: ServerEvent) -> None:
        ...

    def close(self, reason: str) -> None:
        ...


class Session:
    """State machine for one client's interactive process.

    ``initializing -> active | active_fallback -> terminated``

    All methods except :meth:`initialize` are synchronous and must be
    called from the event loop thread.
    """

    def __init__(
        self,
        session_id: str,
        process_config: ProcessConfig,
        responder: SimulatedResponder,
        spawner: Spawner = spawn_child,
        registry: SessionRegistry | None = None,
        mode: SessionMode = SessionMode.CHAT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._id = session_id
        self._process_config = process_config
        self._responder = responder
        self._spawner = spawner
        self._registry = registry
        self._clock = clock
        self._state = SessionState.INITIALIZING
        self._mode = mode
        self._process: ProcessHandle | None = None
        self._sink: weakref.ReferenceType[OutputSink] | None = None
        self._pending_responses: set[asyncio.TimerHandle] = set()
        self._last_activity_at = clock()

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self) -> SessionMode:
        return self._mode

    @property
    def is_active(self) -> bool:
        return self._state in (SessionState.ACTIVE, SessionState.ACTIVE_FALLBACK)

    @property
    def is_fallback(self) -> bool:
        return self._state is SessionState.ACTIVE_FALLBACK

    @property
    def last_activity_at(self) -> float:
        return self._last_activity_at

    @property
    def process_handle(self) -> ProcessHandle | None:
        return self._process

    @property
    def sink(self) -> OutputSink | None:
        return self._sink() if self._sink is not None else None

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        """Spawn the child process, or fall back to simulated output.

        Never raises for a missing or broken executable.
        """
        try:
            process = await self._spawner(
                self._process_config, self._on_process_output, self._on_process_exit
            )
        except SpawnError as e:
            if self._state is SessionState.TERMINATED:
                return
            logger.warning("Session %s: %s; using fallback mode", self._id, e)
            self._state = SessionState.ACTIVE_FALLBACK
            self._touch()
            return

        if self._state is SessionState.TERMINATED:
            # Cleaned up while the spawn was in flight
            process.kill()
            return
        self._process = process
        self._state = SessionState.ACTIVE
        self._touch()
        logger.info("Session %s initialized (pid=%s)", self._id, process.pid)

    def cleanup(self, reason: str = "cleanup") -> ProcessHandle | None:
        """Tear the session down. Only the first call has any effect.

        Returns:
            The process handle killed by this call, if any.
        """
        if self._state is SessionState.TERMINATED:
            return None
        self._state = SessionState.TERMINATED

        if self._registry is not None:
            self._registry.discard(self)

        for timer in self._pending_responses:
            timer.cancel()
        self._pending_responses.clear()

        process, self._process = self._process, None
        if process is not None:
            process.kill()

        sink = self.sink
        self._sink = None
        if sink is not None:
            sink.close(reason)

        logger.info("Session %s cleaned up (%s)", self._id, reason)
        return process

    # -- output binding ----------------------------------------------------

    def bind(self, sink: OutputSink) -> None:
        self._sink = weakref.ref(sink)

    def unbind(self) -> None:
        self._sink = None

    # -- client traffic ----------------------------------------------------

    def send_input(self, text: str, mode: SessionMode | None = None) -> None:
        """Forward a line of input to the process or the simulated responder."""
        if not self.is_active:
            logger.debug("Session %s: dropping input in state %s", self._id, self._state.value)
            return
        self._touch()
        if mode is not None:
            self._mode = mode

        if self._process is not None:
            self._process.write(text + "\n")
        else:
            self._schedule_response(text, self._mode)

    def handle_confirmation(self, choice: str) -> None:
        """Answer a confirmation prompt from the wrapped tool."""
        if not self.is_active:
            return
        self._touch()

        if self._process is not None:
            self._process.write(CONFIRMATION_TOKENS.get(choice, choice) + "\n")
        else:
            self.handle_output(
                self._responder.acknowledge(choice), kind=OutputKind.ACKNOWLEDGMENT
            )

    def handle_output(
        self,
        text: str,
        kind: OutputKind = OutputKind.OUTPUT,
        mode: SessionMode | None = None,
    ) -> None:
        """Emit output to the bound sink, if any.

        Output arriving after cleanup is discarded.
        """
        if self._state is SessionState.TERMINATED:
            logger.debug("Session %s: discarding late output", self._id)
            return
        self._touch()
        sink = self.sink
        if sink is None:
            return
        sink.deliver(OutputEvent(kind=kind, text=text, mode=mode or self._mode))

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self._id,
            is_active=self.is_active,
            state=self._state,
            mode=self._mode,
            last_activity_at=datetime.fromtimestamp(self._last_activity_at),
        )

    # -- internals ---------------------------------------------------------

    def _touch(self) -> None:
        self._last_activity_at = self._clock()

    def _schedule_response(self, text: str, mode: SessionMode) -> None:
        delay = self._responder.next_delay()
        loop = asyncio.get_running_loop()
        timer: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._pending_responses.discard(timer)
            self.handle_output(
                self._responder.respond(text, mode), kind=OutputKind.RESPONSE, mode=mode
            )

        timer = loop.call_later(delay, fire)
        self._pending_responses.add(timer)
        logger.debug("Session %s: simulated response in %.2fs", self._id, delay)

    def _on_process_output(self, text: str) -> None:
        self.handle_output(text)

    def _on_process_exit(self, status: ProcessExit) -> None:
        if self._state is SessionState.TERMINATED:
            # Reaped after we killed it
            logger.debug(
                "Session %s: process reaped (code=%s, signal=%s)",
                self._id, status.exit_code, status.signal,
            )
            return
        if status.is_clean:
            logger.info("Session %s: process exited cleanly", self._id)
        else:
            logger.warning(
                "Session %s: process exited (code=%s, signal=%s)",
                self._id, status.exit_code, status.signal,
            )
        self.cleanup("process-exit")
