"""Tests for SessionService, driving a scripted fake agent."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from agentorchestrator.config import AgentDefaults, AppConfig
from agentorchestrator.errors import (
    ClosedTransportError,
    LaunchError,
    NotResumableError,
    SessionNotFoundError,
)
from agentorchestrator.infra.agents.claude_code import ClaudeCodeBackend
from agentorchestrator.models.agent import AgentOptions
from agentorchestrator.models.events import (
    AgentSessionIdLearned,
    MessageReceived,
    SessionCreated,
    SessionEnded,
    SessionStateChanged,
)
from agentorchestrator.models.messages import AssistantMessage, ResultMessage, SystemMessage
from agentorchestrator.models.session import SessionState, WorktreeRef
from agentorchestrator.services.session_service import SessionService

TIMEOUT = 10


@pytest.fixture
def worktree(tmp_path):
    path = tmp_path / "wt"
    path.mkdir()
    return WorktreeRef(id="wt-1", path=str(path), task_description="Fix the build")


@pytest_asyncio.fixture
async def service(fake_agent, fake_backend, fast_settings):
    config = AppConfig(agent=AgentDefaults(executable=str(fake_agent)))
    svc = SessionService(config, backend=fake_backend, settings=fast_settings)
    yield svc
    await svc.close()


def _mode(mode: str) -> AgentOptions:
    return AgentOptions(env={"FAKE_AGENT_MODE": mode})


class _Recorder:
    """Collects every event and lets a test wait for the next session end."""

    def __init__(self, service: SessionService) -> None:
        self.events = []
        self._ended = asyncio.Event()
        self._sub = service.events.subscribe(None, self._on_event)

    def _on_event(self, event) -> None:
        self.events.append(event)
        if isinstance(event, SessionEnded):
            self._ended.set()

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]

    def arm(self) -> None:
        self._ended.clear()

    async def wait_ended(self) -> None:
        await asyncio.wait_for(self._ended.wait(), timeout=TIMEOUT)

    async def wait_for(self, predicate) -> None:
        async def _poll():
            while not any(predicate(e) for e in self.events):
                await asyncio.sleep(0.01)
        await asyncio.wait_for(_poll(), timeout=TIMEOUT)

    def close(self) -> None:
        self._sub.close()


class TestEagerSession:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "say hi")
        assert session.state == SessionState.STARTING
        assert session.initial_prompt == "say hi"

        await recorder.wait_ended()
        session = service.get_session(session.id)

        assert session.state == SessionState.COMPLETED
        assert session.ended_at is not None
        first, *middle, last = session.messages
        assert isinstance(first, SystemMessage) and first.is_init
        assert first.session_id
        assert any(isinstance(m, AssistantMessage) for m in middle)
        assert isinstance(last, ResultMessage) and not last.is_error
        assert session.total_cost_usd == pytest.approx(last.total_cost_usd)
        assert session.agent_session_id == first.session_id

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "say hi")
        await recorder.wait_ended()

        assert recorder.of_type(SessionCreated)[0].session.id == session.id
        learned = recorder.of_type(AgentSessionIdLearned)
        assert len(learned) == 1
        assert learned[0].worktree_id == "wt-1"
        changes = [(e.previous_state, e.session.state) for e in recorder.of_type(SessionStateChanged)]
        assert changes == [
            (SessionState.STARTING, SessionState.ACTIVE),
            (SessionState.ACTIVE, SessionState.COMPLETED),
        ]
        assert len(recorder.of_type(MessageReceived)) == 3
        ended = recorder.of_type(SessionEnded)
        assert len(ended) == 1
        assert ended[0].final_state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "order", _mode("noise"))
        await recorder.wait_ended()
        received = [e.message.type for e in recorder.of_type(MessageReceived)]
        assert received == ["system", "assistant", "result"]
        assert service.get_session(session.id).state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_exit_without_result_is_error(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "boom", _mode("crash"))
        await recorder.wait_ended()
        session = service.get_session(session.id)
        assert session.state == SessionState.ERROR
        assert session.ended_at is not None
        assert session.is_resumable

    @pytest.mark.asyncio
    async def test_launch_failure_registers_nothing(self, tmp_path, worktree):
        missing = str(tmp_path / "missing-agent")
        service = SessionService(
            AppConfig(agent=AgentDefaults(executable=missing)),
            backend=ClaudeCodeBackend(missing),
        )
        with pytest.raises(LaunchError):
            await service.create_session(worktree, "hi")
        assert service.list_sessions() == []


class TestIdleSession:
    @pytest.mark.asyncio
    async def test_send_starts_processing(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_idle_session(worktree)
        assert session.state == SessionState.WAITING_FOR_INPUT
        assert session.messages == ()
        assert session.initial_prompt is None
        assert session.title == "Fix the build"

        session = await service.send_message(session.id, "hello")
        assert session.state == SessionState.PROCESSING

        await recorder.wait_ended()
        session = service.get_session(session.id)
        assert session.state == SessionState.COMPLETED
        assert session.messages[1].text == "echo: hello"

    @pytest.mark.asyncio
    async def test_history_prepopulates_messages(self, service, worktree):
        history = (SystemMessage(subtype="init", session_id="agent-old"),)
        session = await service.create_idle_session(worktree, history=history)
        assert session.messages == history

    @pytest.mark.asyncio
    async def test_end_idle_session(self, service, worktree):
        session = await service.create_idle_session(worktree)
        ended = await service.end_session(session.id)
        assert ended.state == SessionState.CANCELLED
        assert ended.ended_at is not None
        assert service.get_query(session.id) is None
        again = await service.end_session(session.id)
        assert again.ended_at == ended.ended_at
        assert again.state == SessionState.CANCELLED


class TestInterrupt:
    @pytest.mark.asyncio
    async def test_interrupt_processing_session(self, service, worktree):
        session = await service.create_idle_session(worktree, _mode("hang"))
        query = service.get_query(session.id)
        session = await service.send_message(session.id, "long job")
        assert session.state == SessionState.PROCESSING

        session = await service.interrupt_session(session.id)
        assert session.state == SessionState.CANCELLED
        assert session.ended_at is not None
        assert not query.transport.is_running

    @pytest.mark.asyncio
    async def test_interrupt_mid_turn(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "long job", _mode("hang"))
        await recorder.wait_for(
            lambda e: isinstance(e, MessageReceived) and isinstance(e.message, AssistantMessage)
        )
        query = service.get_query(session.id)

        session = await service.interrupt_session(session.id)
        assert session.state == SessionState.CANCELLED
        assert not query.transport.is_running
        assert len(recorder.of_type(SessionEnded)) == 1

    @pytest.mark.asyncio
    async def test_interrupt_terminal_session_is_noop(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "hi")
        await recorder.wait_ended()
        session = await service.interrupt_session(session.id)
        assert session.state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_interrupt_waits_for_resume_in_flight(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "first")
        await recorder.wait_ended()
        old_query = service.get_query(session.id)

        sent, interrupted = await asyncio.gather(
            service.send_message(session.id, "hang"),
            service.interrupt_session(session.id),
        )
        assert sent.state == SessionState.PROCESSING
        assert interrupted.state == SessionState.CANCELLED

        query = service.get_query(session.id)
        assert query is not old_query
        assert not query.transport.is_running
        assert service.get_session(session.id).state == SessionState.CANCELLED


class TestResume:
    @pytest.mark.asyncio
    async def test_send_after_completion_resumes(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "first")
        await recorder.wait_ended()
        agent_id = service.get_session(session.id).agent_session_id
        assert agent_id

        recorder.arm()
        resumed = await service.send_message(session.id, "second")
        assert resumed.id == session.id
        assert resumed.state == SessionState.PROCESSING
        assert resumed.ended_at is None
        args = list(service.get_query(session.id).transport.command.args)
        assert args[args.index("--resume") + 1] == agent_id

        await recorder.wait_ended()
        session = service.get_session(session.id)
        assert session.state == SessionState.COMPLETED
        assert session.total_cost_usd == pytest.approx(0.5)
        texts = [m.text for m in session.messages if isinstance(m, AssistantMessage)]
        assert texts == ["echo: first", f"echo: second (resumed {agent_id})"]

        changes = [(e.previous_state, e.session.state) for e in recorder.of_type(SessionStateChanged)]
        assert (SessionState.COMPLETED, SessionState.PROCESSING) in changes
        assert len(recorder.of_type(SessionEnded)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_sends_bind_one_process(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "first")
        await recorder.wait_ended()

        recorder.arm()
        results = await asyncio.gather(
            service.send_message(session.id, "a"),
            service.send_message(session.id, "b"),
            return_exceptions=True,
        )
        assert results[0].state == SessionState.PROCESSING
        assert isinstance(results[1], ClosedTransportError)

        await recorder.wait_ended()
        session = service.get_session(session.id)
        assert session.state == SessionState.COMPLETED
        assert len([m for m in session.messages if isinstance(m, ResultMessage)]) == 2
        assert session.total_cost_usd == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_finished_turn_releases_process(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_idle_session(worktree)
        query = service.get_query(session.id)
        await service.send_message(session.id, "hello")
        await recorder.wait_ended()

        async def _released():
            while query.transport.is_running:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_released(), timeout=TIMEOUT)
        assert not query.is_active
        assert service.get_session(session.id).state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_send_without_agent_id_is_not_resumable(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "hi", _mode("noinit"))
        await recorder.wait_ended()
        before = service.get_session(session.id)
        assert before.state == SessionState.COMPLETED
        assert not before.agent_session_id

        with pytest.raises(NotResumableError):
            await service.send_message(session.id, "again")
        after = service.get_session(session.id)
        assert after.state == SessionState.COMPLETED
        assert after.ended_at == before.ended_at

    @pytest.mark.asyncio
    async def test_resume_session(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "first")
        await recorder.wait_ended()
        agent_id = service.get_session(session.id).agent_session_id

        session = await service.resume_session(session.id)
        assert session.state == SessionState.ACTIVE
        assert session.ended_at is None
        query = service.get_query(session.id)
        assert query.is_streaming
        assert agent_id in query.transport.command.args

        recorder.arm()
        session = await service.send_message(session.id, "next")
        assert session.state == SessionState.PROCESSING
        await recorder.wait_ended()
        assert service.get_session(session.id).state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_requires_agent_id(self, service, worktree):
        session = await service.create_idle_session(worktree)
        with pytest.raises(NotResumableError):
            await service.resume_session(session.id)

    @pytest.mark.asyncio
    async def test_send_to_busy_one_shot_session(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "busy", _mode("hang"))
        await recorder.wait_for(lambda e: isinstance(e, AgentSessionIdLearned))
        with pytest.raises(ClosedTransportError):
            await service.send_message(session.id, "more")
        assert service.get_session(session.id).state == SessionState.ACTIVE


class TestRegistry:
    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        with pytest.raises(SessionNotFoundError):
            service.get_session("nope")
        with pytest.raises(SessionNotFoundError):
            await service.send_message("nope", "hi")
        with pytest.raises(SessionNotFoundError):
            await service.resume_session("nope")
        with pytest.raises(SessionNotFoundError):
            await service.interrupt_session("nope")
        with pytest.raises(SessionNotFoundError):
            await service.end_session("nope")

    @pytest.mark.asyncio
    async def test_lookup_and_listing(self, service, worktree):
        idle = await service.create_idle_session(worktree)
        assert service.get_session_by_worktree_id("wt-1").id == idle.id
        assert service.get_session_by_worktree_id("other") is None
        assert [s.id for s in service.list_active_sessions()] == [idle.id]

        await service.end_session(idle.id)
        assert service.list_active_sessions() == []
        assert len(service.list_sessions()) == 1

    @pytest.mark.asyncio
    async def test_forget_session(self, service, worktree):
        session = await service.create_idle_session(worktree)
        await service.forget_session(session.id)
        with pytest.raises(SessionNotFoundError):
            service.get_session(session.id)

    @pytest.mark.asyncio
    async def test_close_ends_everything(self, fake_agent, fake_backend, fast_settings, worktree):
        config = AppConfig(agent=AgentDefaults(executable=str(fake_agent)))
        async with SessionService(config, backend=fake_backend, settings=fast_settings) as service:
            a = await service.create_idle_session(worktree)
            b = await service.create_session(worktree, "long", _mode("hang"))
            queries = [service.get_query(a.id), service.get_query(b.id)]

        for session_id in (a.id, b.id):
            assert service.get_session(session_id).state.is_terminal
        assert all(not q.transport.is_running for q in queries)

    @pytest.mark.asyncio
    async def test_ended_at_tracks_terminal_state(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "first")
        await recorder.wait_ended()
        recorder.arm()
        await service.send_message(session.id, "second")
        await recorder.wait_ended()
        await service.end_session(session.id)

        for event in recorder.of_type(SessionStateChanged):
            snapshot = event.session
            assert (snapshot.ended_at is not None) == snapshot.state.is_terminal

    @pytest.mark.asyncio
    async def test_snapshots_do_not_change(self, service, worktree):
        recorder = _Recorder(service)
        session = await service.create_session(worktree, "hi")
        created = recorder.of_type(SessionCreated)[0].session
        await recorder.wait_ended()

        latest = service.get_session(session.id)
        assert created.messages == ()
        assert isinstance(latest.messages, tuple)
        assert len(latest.messages) == 3
        assert service.get_session(session.id) is latest
