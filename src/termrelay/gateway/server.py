"""FastAPI gateway for termrelay.

Each WebSocket connection gets its own session and interactive process.
Client messages are routed to the connection's session, and the
session's output is sent back over the same socket, in order.

    WS   /ws             <- {"type": "input", "text": "hello", "mode": "chat"}
                         <- {"type": "confirmation", "choice": "yes"}
                         <- {"type": "mode-change", "mode": "code"}
                         -> {"type": "output", "kind": ..., "text": ..., "mode": ..., "timestamp": ...}
                         -> {"type": "mode-changed", "mode": "code"}
                         -> {"type": "session-ended", "reason": "process-exit"}
    GET  /health         -> {"status": "healthy", "active_sessions": 1, ...}
    GET  /api/sessions   -> {"total": 1, "sessions": [...]}
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from termrelay.config.settings import Settings, load_settings
from termrelay.domain.models import (
    ClientMessage,
    HealthStatus,
    InputMessage,
    ModeChangedEvent,
    ModeChangeMessage,
    ServerEvent,
    SessionEndedEvent,
    SessionListing,
    client_message_adapter,
)
from termrelay.process.base import Spawner
from termrelay.process.child import spawn_child
from termrelay.session.registry import (
    DuplicateSessionError,
    SessionRegistry,
    StaleRouteError,
)
from termrelay.session.responder import SimulatedResponder
from termrelay.session.session import Session
from termrelay.utils.logging import setup_logging

logger = logging.getLogger(__name__)


class ConnectionSink:
    """Output sink for one WebSocket connection.

    Sessions hand events over synchronously; a single sender task drains
    the queue, so events leave in the order they were produced and a
    slow client never blocks the process read loop. A client that falls
    ``max_pending`` events behind is cut off instead of buffered forever.
    """

    def __init__(self, websocket: WebSocket, max_pending: int = 1000) -> None:
        self._websocket = websocket
        self._max_pending = max_pending
        self._queue: asyncio.Queue[ServerEvent | None] = asyncio.Queue()
        self._closed_reason: str | None = None
        self._overflow = asyncio.Event()

    @property
    def closed_reason(self) -> str | None:
        return self._closed_reason

    @property
    def overflowed(self) -> bool:
        return self._overflow.is_set()

    def deliver(self, event: ServerEvent) -> None:
        if self._closed_reason is not None:
            return
        if self._queue.qsize() >= self._max_pending:
            logger.warning("Client too slow, %d events pending; dropping channel", self._max_pending)
            self._closed_reason = "overflow"
            self._overflow.set()
            return
        self._queue.put_nowait(event)

    async def wait_overflow(self) -> None:
        await self._overflow.wait()

    def close(self, reason: str) -> None:
        if self._closed_reason is not None:
            return
        self._closed_reason = reason
        self._queue.put_nowait(SessionEndedEvent(reason=reason))
        self._queue.put_nowait(None)

    async def run(self) -> bool:
        """Send queued events until the session ends or the client goes away.

        Returns:
            True if the session ended, False if sending failed.
        """
        while True:
            event = await self._queue.get()
            if event is None:
                return True
            try:
                await self._websocket.send_json(event.model_dump(mode="json"))
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Send failed, client gone: %s", e)
                return False


def create_app(
    settings: Settings | None = None,
    registry: SessionRegistry | None = None,
    spawner: Spawner | None = None,
    responder: SimulatedResponder | None = None,
) -> FastAPI:
    """Create and configure the gateway application.

    Args:
        settings: Full configuration; defaults plus environment if None.
        registry: Optional pre-built registry (for testing).
        spawner: Optional process spawner (for testing); defaults to a
                 pty-backed child process.
        responder: Optional simulated responder (for testing).
    """
    if settings is None:
        settings = Settings()
    session_config = settings.session
    if responder is None:
        responder = SimulatedResponder(
            delay_min=session_config.response_delay_min,
            delay_max=session_config.response_delay_max,
        )
    if spawner is None:
        spawner = spawn_child
    if registry is None:
        def session_factory(identity: str, owner: SessionRegistry) -> Session:
            return Session(
                identity,
                settings.process,
                responder,
                spawner=spawner,
                registry=owner,
                mode=session_config.default_mode,
            )

        registry = SessionRegistry(session_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Startup
        reg: SessionRegistry = app.state.registry
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_log_unhandled_error)
        sweeper = asyncio.create_task(
            reg.run_sweeper(session_config.sweep_interval, session_config.idle_timeout)
        )
        logger.info("Gateway started (command=%s)", settings.process.command)
        yield
        # Shutdown
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        # Normally a no-op: GatewayServer has already ended every session
        await shutdown_sessions(reg, settings.process.kill_grace_period)
        loop.set_exception_handler(None)
        logger.info("Gateway stopped")

    app = FastAPI(
        title="termrelay",
        description="Relays WebSocket clients to per-client interactive CLI processes",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.registry = registry
    app.state.started_at = time.monotonic()

    @app.get("/health")
    async def health_check() -> HealthStatus:
        return HealthStatus(
            status="healthy",
            active_sessions=len(app.state.registry),
            uptime=time.monotonic() - app.state.started_at,
        )

    @app.get("/api/sessions")
    async def list_sessions() -> SessionListing:
        infos = [session.info() for session in app.state.registry.sessions()]
        return SessionListing(total=len(infos), sessions=infos)

    @app.websocket("/ws")
    async def session_channel(websocket: WebSocket) -> None:
        reg: SessionRegistry = app.state.registry
        await websocket.accept()
        identity = uuid.uuid4().hex
        logger.info("Client connected: %s", identity)

        try:
            session = await reg.create_for(identity)
        except DuplicateSessionError as e:
            logger.warning("Rejecting connection: %s", e)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
            return

        sink = ConnectionSink(websocket, max_pending=settings.server.max_pending_events)
        session.bind(sink)
        sender = asyncio.create_task(sink.run())
        receiver = asyncio.create_task(_receive_messages(websocket, identity, reg, sink))
        overflow = asyncio.create_task(sink.wait_overflow())
        tasks = (sender, receiver, overflow)
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            failed = False
            for result in results:
                if isinstance(result, Exception):
                    failed = True
                    logger.error("Channel task for %s failed", identity, exc_info=result)
            session.unbind()
            if sink.overflowed:
                reason = "overflow"
            elif failed:
                reason = "error"
            else:
                reason = "disconnect"
            removed = reg.remove(identity)
            if removed is not None:
                removed.cleanup(reason)

        if sink.overflowed:
            await _close_quietly(websocket, identity, status.WS_1008_POLICY_VIOLATION, "overflow")
            logger.info("Closed channel for %s (overflow)", identity)
        elif failed:
            await _close_quietly(websocket, identity, status.WS_1011_INTERNAL_ERROR, "error")
            logger.info("Closed channel for %s after an error", identity)
        elif sender in done and results[0] is True:
            # Session ended on our side; the client has to reconnect
            await _close_quietly(
                websocket, identity, status.WS_1000_NORMAL_CLOSURE, sink.closed_reason or ""
            )
            logger.info("Closed channel for %s (%s)", identity, sink.closed_reason)
        else:
            logger.info("Client disconnected: %s", identity)

    return app


async def _receive_messages(
    websocket: WebSocket,
    identity: str,
    registry: SessionRegistry,
    sink: ConnectionSink,
) -> None:
    """Read client messages until the client disconnects."""
    while True:
        frame = await websocket.receive()
        if frame["type"] == "websocket.disconnect":
            return
        text = frame.get("text")
        if text is None:
            logger.warning("Ignoring binary frame from %s", identity)
            continue
        try:
            payload = json.loads(text)
        except ValueError:
            logger.warning("Ignoring malformed JSON from %s", identity)
            continue
        try:
            message = client_message_adapter.validate_python(payload)
        except ValidationError as e:
            logger.warning("Ignoring invalid message from %s: %d error(s)", identity, e.error_count())
            continue
        _route_message(message, identity, registry, sink)


def _route_message(
    message: ClientMessage,
    identity: str,
    registry: SessionRegistry,
    sink: ConnectionSink,
) -> None:
    if isinstance(message, ModeChangeMessage):
        logger.debug("Mode changed for %s: %s", identity, message.mode.value)
        sink.deliver(ModeChangedEvent(mode=message.mode))
        return

    try:
        session = registry.require(identity)
    except StaleRouteError:
        logger.debug("Dropping %s message for %s: no live session", message.type, identity)
        return

    if isinstance(message, InputMessage):
        logger.debug("Input from %s (mode: %s)", identity, message.mode.value)
        session.send_input(message.text, message.mode)
    else:
        logger.debug("Confirmation from %s: %s", identity, message.choice)
        session.handle_confirmation(message.choice)


async def _close_quietly(websocket: WebSocket, identity: str, code: int, reason: str) -> None:
    try:
        await websocket.close(code=code, reason=reason)
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Close failed for %s: %s", identity, e)


def _log_unhandled_error(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    logger.error(
        "Unhandled error: %s",
        context.get("message", "unknown"),
        exc_info=context.get("exception"),
    )


async def shutdown_sessions(registry: SessionRegistry, grace_period: float) -> None:
    """End every live session and give the killed processes time to exit."""
    killed = registry.cleanup_all("shutdown")
    await registry.wait_closed(killed, timeout=grace_period + 1.0)


class GatewayServer(uvicorn.Server):
    """uvicorn server that ends every session before the port is released."""

    def __init__(self, config: uvicorn.Config, registry: SessionRegistry, grace_period: float) -> None:
        super().__init__(config)
        self._registry = registry
        self._grace_period = grace_period

    async def shutdown(self, sockets: Any = None) -> None:
        logger.info("Shutting down %d session(s)", len(self._registry))
        await shutdown_sessions(self._registry, self._grace_period)
        await super().shutdown(sockets=sockets)


def serve(app: FastAPI, settings: Settings, host: str | None = None, port: int | None = None) -> None:
    """Run ``app`` under :class:`GatewayServer` until interrupted."""
    config = uvicorn.Config(
        app,
        host=host or settings.server.host,
        port=port or settings.server.port,
    )
    server = GatewayServer(config, app.state.registry, settings.process.kill_grace_period)
    server.run()


def main() -> None:
    """Entry point for running the gateway standalone."""
    settings = load_settings()
    setup_logging(settings.logging)
    app = create_app(settings)
    serve(app, settings)


if __name__ == "__main__":
    main()
