"""Tests for the Session state machine."""

from __future__ import annotations

import asyncio
import gc
import logging
import time

import pytest

from termrelay.config.settings import ProcessConfig
from termrelay.domain.models import OutputKind, SessionMode, SessionState
from termrelay.session.responder import SimulatedResponder
from termrelay.session.session import Session

from doubles import FakeClock, FakeProcessHandle, FakeSpawner, RecordingSink, failing_spawner


@pytest.fixture
def make_session(process_config: ProcessConfig, responder: SimulatedResponder, clock: FakeClock):
    def _make(spawner=failing_spawner, registry=None) -> Session:
        return Session(
            "client-1",
            process_config,
            responder,
            spawner=spawner,
            registry=registry,
            clock=clock,
        )

    return _make


async def _active_session(make_session, fake_spawner: FakeSpawner) -> tuple[Session, FakeProcessHandle]:
    session = make_session(spawner=fake_spawner)
    await session.initialize()
    return session, fake_spawner.handles[0]


class TestInitialize:
    @pytest.mark.asyncio
    async def test_spawn_success_is_active(self, make_session, fake_spawner: FakeSpawner) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        assert session.state is SessionState.ACTIVE
        assert session.is_active
        assert not session.is_fallback
        assert session.process_handle is handle

    @pytest.mark.asyncio
    async def test_spawn_failure_falls_back(self, make_session) -> None:
        session = make_session()
        await session.initialize()
        assert session.state is SessionState.ACTIVE_FALLBACK
        assert session.is_active
        assert session.process_handle is None

    @pytest.mark.asyncio
    async def test_cleanup_during_spawn_kills_new_process(self, make_session) -> None:
        release = asyncio.Event()
        spawned: list[FakeProcessHandle] = []

        async def slow_spawner(config, on_output, on_exit):
            await release.wait()
            handle = FakeProcessHandle(on_output, on_exit)
            spawned.append(handle)
            return handle

        session = make_session(spawner=slow_spawner)
        init = asyncio.create_task(session.initialize())
        await asyncio.sleep(0)
        session.cleanup("disconnect")
        release.set()
        await init

        assert session.state is SessionState.TERMINATED
        assert session.process_handle is None
        assert spawned[0].kill_count == 1


class TestSendInput:
    @pytest.mark.asyncio
    async def test_active_writes_newline_terminated_text(
        self, make_session, fake_spawner: FakeSpawner, clock: FakeClock
    ) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        clock.advance(30)
        session.send_input("hello", SessionMode.CODE)
        assert handle.written == ["hello\n"]
        assert session.mode is SessionMode.CODE
        assert session.last_activity_at == clock.now

    @pytest.mark.asyncio
    async def test_fallback_yields_one_response_within_bounds(
        self, make_session, responder: SimulatedResponder, sink: RecordingSink
    ) -> None:
        session = make_session()
        await session.initialize()
        session.bind(sink)
        delay_min, delay_max = responder.delay_bounds

        sent_at = time.monotonic()
        session.send_input("hello", SessionMode.CHAT)
        assert sink.events == []
        await asyncio.sleep(delay_max + 0.2)

        assert len(sink.events) == 1
        event = sink.events[0]
        assert event.kind is OutputKind.RESPONSE
        assert event.mode is SessionMode.CHAT
        assert "hello" in event.text
        elapsed = sink.arrivals[0] - sent_at
        assert delay_min - 0.005 <= elapsed <= delay_max + 0.2
        assert session.is_active

    @pytest.mark.asyncio
    async def test_fallback_echoes_input_mode(
        self, make_session, responder: SimulatedResponder, sink: RecordingSink
    ) -> None:
        session = make_session()
        await session.initialize()
        session.bind(sink)
        session.send_input("sort a list", SessionMode.CODE)
        await asyncio.sleep(responder.delay_bounds[1] + 0.2)
        assert [event.mode for event in sink.events] == [SessionMode.CODE]
        assert "def example" in sink.events[0].text

    @pytest.mark.asyncio
    async def test_input_after_cleanup_is_dropped(
        self, make_session, fake_spawner: FakeSpawner
    ) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        session.cleanup()
        session.send_input("too late")
        assert handle.written == []


class TestConfirmation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("choice", "expected"),
        [("yes", "y\n"), ("no", "n\n"), ("always", "always\n")],
    )
    async def test_active_writes_token(
        self, make_session, fake_spawner: FakeSpawner, choice: str, expected: str
    ) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        session.handle_confirmation(choice)
        assert handle.written == [expected]

    @pytest.mark.asyncio
    async def test_fallback_acknowledges_immediately(self, make_session, sink: RecordingSink) -> None:
        session = make_session()
        await session.initialize()
        session.bind(sink)
        session.handle_confirmation("yes")
        assert len(sink.events) == 1
        assert sink.events[0].kind is OutputKind.ACKNOWLEDGMENT
        assert sink.events[0].text == "Received yes response. Continuing..."


class TestOutput:
    @pytest.mark.asyncio
    async def test_output_delivered_in_emission_order(
        self, make_session, fake_spawner: FakeSpawner, sink: RecordingSink
    ) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        session.bind(sink)
        chunks = ["one", "two", "", "three", "four"]
        for chunk in chunks:
            handle.emit(chunk)
        assert sink.texts == chunks
        assert all(event.kind is OutputKind.OUTPUT for event in sink.events)

    @pytest.mark.asyncio
    async def test_output_updates_activity(
        self, make_session, fake_spawner: FakeSpawner, clock: FakeClock
    ) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        clock.advance(120)
        handle.emit("tick")
        assert session.last_activity_at == clock.now

    @pytest.mark.asyncio
    async def test_unbound_output_is_dropped(self, make_session, fake_spawner: FakeSpawner) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        handle.emit("nobody listening")
        assert session.is_active

    @pytest.mark.asyncio
    async def test_sink_is_weakly_held(self, make_session, fake_spawner: FakeSpawner) -> None:
        session, _ = await _active_session(make_session, fake_spawner)
        sink = RecordingSink()
        session.bind(sink)
        assert session.sink is sink
        del sink
        gc.collect()
        assert session.sink is None

    @pytest.mark.asyncio
    async def test_late_output_after_cleanup_is_discarded(
        self, make_session, fake_spawner: FakeSpawner, sink: RecordingSink
    ) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        session.bind(sink)
        session.cleanup("disconnect")
        # Orphaned process callback firing after teardown
        handle.on_output("late")
        session.handle_output("later")
        assert sink.events == []


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, fake_spawner: FakeSpawner, make_registry) -> None:
        registry = make_registry(fake_spawner)
        session = await registry.create_for("client-1")
        handle = fake_spawner.handles[0]

        first = session.cleanup()
        assert "client-1" not in registry
        second = session.cleanup()
        third = session.cleanup("idle")

        assert first is handle
        assert second is None and third is None
        assert handle.kill_count == 1
        assert session.state is SessionState.TERMINATED
        assert session.process_handle is None
        assert not session.is_active

    @pytest.mark.asyncio
    async def test_cleanup_notifies_sink_once(
        self, make_session, fake_spawner: FakeSpawner, sink: RecordingSink
    ) -> None:
        session, _ = await _active_session(make_session, fake_spawner)
        session.bind(sink)
        session.cleanup("idle")
        session.cleanup("disconnect")
        assert sink.closed == ["idle"]
        assert session.sink is None

    @pytest.mark.asyncio
    async def test_cleanup_cancels_pending_responses(
        self, make_session, responder: SimulatedResponder, sink: RecordingSink
    ) -> None:
        session = make_session()
        await session.initialize()
        session.bind(sink)
        session.send_input("hello")
        session.cleanup()
        await asyncio.sleep(responder.delay_bounds[1] + 0.1)
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_process_exit_triggers_cleanup(
        self, fake_spawner: FakeSpawner, make_registry, sink: RecordingSink
    ) -> None:
        registry = make_registry(fake_spawner)
        session = await registry.create_for("client-1")
        session.bind(sink)
        handle = fake_spawner.handles[0]

        handle.exit(1)

        assert session.state is SessionState.TERMINATED
        assert "client-1" not in registry
        assert sink.closed == ["process-exit"]
        # Not retried
        assert len(fake_spawner.handles) == 1

    @pytest.mark.asyncio
    async def test_exit_after_kill_is_not_a_warning(
        self, make_session, fake_spawner: FakeSpawner, sink: RecordingSink, caplog
    ) -> None:
        session, handle = await _active_session(make_session, fake_spawner)
        session.bind(sink)
        session.cleanup("disconnect")

        with caplog.at_level(logging.DEBUG, logger="termrelay.session.session"):
            handle.exit(-15)

        assert sink.closed == ["disconnect"]
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert any("reaped" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_unexpected_exit_is_a_warning(
        self, make_session, fake_spawner: FakeSpawner, caplog
    ) -> None:
        _, handle = await _active_session(make_session, fake_spawner)
        with caplog.at_level(logging.WARNING, logger="termrelay.session.session"):
            handle.exit(1)
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    @pytest.mark.asyncio
    async def test_info_snapshot(self, make_session, fake_spawner: FakeSpawner) -> None:
        session, _ = await _active_session(make_session, fake_spawner)
        info = session.info()
        assert info.id == "client-1"
        assert info.is_active is True
        assert info.state is SessionState.ACTIVE
        assert info.mode is SessionMode.CHAT
