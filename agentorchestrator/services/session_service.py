"""Session business logic: registry, state machine, rebinding, read loops."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass, replace

from agentorchestrator.config import AppConfig
from agentorchestrator.errors import (
    ClosedTransportError,
    NotResumableError,
    OrchestratorError,
    SessionNotFoundError,
)
from agentorchestrator.infra.agents.base import AgentBackend
from agentorchestrator.infra.agents.claude_code import ClaudeCodeBackend
from agentorchestrator.infra.query import Query, create_query, create_streaming_query
from agentorchestrator.infra.transport import TransportSettings
from agentorchestrator.models.agent import AgentOptions
from agentorchestrator.models.content import ImageBlock
from agentorchestrator.models.events import (
    AgentSessionIdLearned,
    MessageReceived,
    SessionCreated,
    SessionEnded,
    SessionStateChanged,
)
from agentorchestrator.models.messages import AgentMessage, ResultMessage, SystemMessage
from agentorchestrator.models.session import Session, SessionState, WorktreeRef
from agentorchestrator.services.event_bus import SessionEventBus

logger = logging.getLogger(__name__)


@dataclass
class _Binding:
    """The Query currently serving a session, plus its read loop."""

    query: Query
    reader: asyncio.Task | None = None
    detached: bool = False


class _SessionEntry:
    """Registry slot for one session.

    Messages accumulate in a list owned by the entry; the tuple on the
    Session snapshot is rebuilt only when the snapshot is next read.
    """

    def __init__(self, session: Session, options: AgentOptions) -> None:
        self._session = session
        self._messages = list(session.messages)
        self._stale = False
        self.options = options
        self.lock = asyncio.Lock()
        self.binding: _Binding | None = None

    @property
    def session(self) -> Session:
        if self._stale:
            self._session = replace(self._session, messages=tuple(self._messages))
            self._stale = False
        return self._session

    @session.setter
    def session(self, session: Session) -> None:
        self._session = session

    def add_message(self, message: AgentMessage) -> None:
        self._messages.append(message)
        self._stale = True


class SessionService:
    """Business logic for agent sessions.

    Each session is bound to at most one live Query. Operations that swap
    the binding or stop its process (send, resume, interrupt, end) hold the
    session's lock, so two tasks never rebind the same session at once. Session
    records handed out are immutable snapshots.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        backend: AgentBackend | None = None,
        settings: TransportSettings | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._backend = backend or ClaudeCodeBackend(self._config.agent.executable)
        self._settings = settings or self._config.transport.to_settings()
        self._sessions: dict[str, _SessionEntry] = {}
        self.events = SessionEventBus()

    # --- Creation ---

    async def create_session(
        self,
        worktree: WorktreeRef,
        prompt: str,
        options: AgentOptions | None = None,
        images: Sequence[ImageBlock] = (),
    ) -> Session:
        """Start an agent on ``prompt`` right away and begin reading its output."""
        options = self._options_for(worktree, options)
        query = await create_query(
            prompt, options, images=images, backend=self._backend, settings=self._settings,
        )
        session = Session(
            id=str(uuid.uuid4()),
            worktree_id=worktree.id,
            worktree_path=worktree.path,
            state=SessionState.STARTING,
            initial_prompt=prompt,
            task_description=worktree.task_description,
        )
        entry = self._register(session, options, query)
        self._start_reader(entry)
        logger.info(
            "Created session %s in %s (pid=%s)", session.id, worktree.path, query.pid,
        )
        return entry.session

    async def create_idle_session(
        self,
        worktree: WorktreeRef,
        options: AgentOptions | None = None,
        history: Iterable[AgentMessage] = (),
    ) -> Session:
        """Start a streaming agent that waits for the first send_message."""
        options = self._options_for(worktree, options)
        query = await create_streaming_query(
            options, backend=self._backend, settings=self._settings,
        )
        session = Session(
            id=str(uuid.uuid4()),
            worktree_id=worktree.id,
            worktree_path=worktree.path,
            state=SessionState.WAITING_FOR_INPUT,
            task_description=worktree.task_description,
            messages=tuple(history),
            agent_session_id=options.resume,
        )
        entry = self._register(session, options, query)
        logger.info(
            "Created idle session %s in %s (pid=%s)", session.id, worktree.path, query.pid,
        )
        return entry.session

    def _options_for(self, worktree: WorktreeRef, options: AgentOptions | None) -> AgentOptions:
        if options is None:
            return self._config.agent.to_options(worktree.path)
        if options.cwd is None:
            return options.with_changes(cwd=worktree.path)
        return options

    def _register(self, session: Session, options: AgentOptions, query: Query) -> _SessionEntry:
        entry = _SessionEntry(session, options)
        entry.binding = _Binding(query)
        self._sessions[session.id] = entry
        self.events.emit(SessionCreated(session))
        return entry

    # --- Lookup ---

    def _entry(self, session_id: str) -> _SessionEntry:
        entry = self._sessions.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    def get_session(self, session_id: str) -> Session:
        return self._entry(session_id).session

    def get_session_by_worktree_id(self, worktree_id: str) -> Session | None:
        """Most recently created session for a worktree, if any."""
        found = None
        for entry in self._sessions.values():
            if entry.session.worktree_id == worktree_id:
                if found is None or entry.session.created_at >= found.created_at:
                    found = entry.session
        return found

    def list_sessions(self) -> list[Session]:
        return [entry.session for entry in self._sessions.values()]

    def list_active_sessions(self) -> list[Session]:
        return [
            entry.session for entry in self._sessions.values()
            if not entry.session.state.is_terminal
        ]

    def get_query(self, session_id: str) -> Query | None:
        """The Query currently bound to a session (None once ended)."""
        binding = self._entry(session_id).binding
        return binding.query if binding else None

    # --- Operations ---

    async def send_message(
        self, session_id: str, text: str, images: Sequence[ImageBlock] = (),
    ) -> Session:
        """Send the next turn.

        A session in a terminal state is resumed on a fresh agent process
        with ``text`` as its prompt. Otherwise the turn is written to the
        bound streaming process.
        """
        entry = self._entry(session_id)
        async with entry.lock:
            if entry.session.state.is_terminal:
                return await self._send_resumed(entry, text, images)

            binding = entry.binding
            if binding is None or binding.query.transport.input_closed:
                raise ClosedTransportError(
                    f"Session {session_id} is bound to a process that takes no more input"
                )
            if entry.session.state in (SessionState.WAITING_FOR_INPUT, SessionState.ACTIVE):
                self._transition(entry, SessionState.PROCESSING)
            if binding.reader is None:
                self._start_reader(entry)
            await binding.query.send_message(text, images)
            return entry.session

    async def _send_resumed(
        self, entry: _SessionEntry, text: str, images: Sequence[ImageBlock],
    ) -> Session:
        session = entry.session
        if not session.agent_session_id:
            raise NotResumableError(session.id)

        await self._unbind(entry)
        options = entry.options.with_changes(
            resume=session.agent_session_id, continue_conversation=False,
        )
        query = await self._rebind(
            entry,
            create_query(
                text, options, images=images, backend=self._backend, settings=self._settings,
            ),
        )
        self._transition(entry, SessionState.PROCESSING)
        self._start_reader(entry)
        logger.info(
            "Session %s resumed agent session %s on pid %s",
            session.id, session.agent_session_id, query.pid,
        )
        return entry.session

    async def resume_session(self, session_id: str) -> Session:
        """Rebind the session onto a streaming process that resumes the agent session."""
        entry = self._entry(session_id)
        async with entry.lock:
            session = entry.session
            if not session.agent_session_id:
                raise NotResumableError(session_id)

            await self._unbind(entry)
            options = entry.options.with_changes(
                resume=session.agent_session_id, continue_conversation=False,
            )
            query = await self._rebind(
                entry,
                create_streaming_query(options, backend=self._backend, settings=self._settings),
            )
            self._transition(entry, SessionState.ACTIVE)
            self._start_reader(entry)
            logger.info(
                "Session %s resumed agent session %s on pid %s",
                session_id, session.agent_session_id, query.pid,
            )
            return entry.session

    async def interrupt_session(self, session_id: str) -> Session:
        """Abort the current turn. The bound process is terminated; the session ends Cancelled.

        Holds the session lock, so an interrupt issued while a send or
        resume is starting a new process applies to that new process.
        """
        entry = self._entry(session_id)
        async with entry.lock:
            binding = entry.binding
            if binding is None or entry.session.state.is_terminal:
                return entry.session

            binding.query.cancel()
            await binding.query.interrupt()
            self._finish(entry, SessionState.CANCELLED)
            logger.info("Interrupted session %s", session_id)
            return entry.session

    async def end_session(self, session_id: str) -> Session:
        """Dispose the bound process. A live session ends Cancelled."""
        entry = self._entry(session_id)
        async with entry.lock:
            await self._unbind(entry)
            if not entry.session.state.is_terminal:
                self._transition(entry, SessionState.CANCELLED)
            return entry.session

    async def forget_session(self, session_id: str) -> Session:
        """End the session and drop it from the registry."""
        session = await self.end_session(session_id)
        self._sessions.pop(session_id, None)
        logger.info("Forgot session %s", session_id)
        return session

    async def close(self) -> None:
        """End every session."""
        if not self._sessions:
            return
        results = await asyncio.gather(
            *(self.end_session(session_id) for session_id in list(self._sessions)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.warning("Error ending session during close: %s", result)

    async def __aenter__(self) -> SessionService:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Binding ---

    async def _rebind(self, entry: _SessionEntry, start: Awaitable[Query]) -> Query:
        """Await a query factory and bind its Query; a launch failure ends the session."""
        try:
            query = await start
        except OrchestratorError:
            if not entry.session.state.is_terminal:
                self._transition(entry, SessionState.ERROR)
            raise
        entry.binding = _Binding(query)
        return query

    async def _unbind(self, entry: _SessionEntry) -> None:
        """Detach and dispose the current Query, waiting for its read loop to stop."""
        binding = entry.binding
        if binding is None:
            return
        entry.binding = None
        binding.detached = True
        binding.query.cancel()
        await binding.query.dispose()
        if binding.reader is not None and not binding.reader.done():
            await asyncio.wait([binding.reader])
        logger.debug("Unbound session %s from pid %s", entry.session.id, binding.query.pid)

    def _start_reader(self, entry: _SessionEntry) -> None:
        binding = entry.binding
        if binding is None or binding.reader is not None:
            return
        binding.reader = asyncio.ensure_future(self._read_loop(entry, binding))

    # --- Read loop ---

    async def _read_loop(self, entry: _SessionEntry, binding: _Binding) -> None:
        saw_result = False
        try:
            async for message in binding.query:
                if binding.detached:
                    return
                self._apply_message(entry, message)
                if isinstance(message, ResultMessage):
                    saw_result = True
        except asyncio.CancelledError:
            if not binding.detached:
                self._finish(entry, SessionState.CANCELLED)
            raise
        except Exception:
            logger.exception("Read loop for session %s failed", entry.session.id)
            if binding.detached:
                return
            self._finish(entry, SessionState.ERROR)
        else:
            if binding.detached:
                return
            if binding.query.is_cancelled:
                self._finish(entry, SessionState.CANCELLED)
            elif not saw_result:
                stderr = "\n".join(binding.query.stderr_tail)
                logger.warning(
                    "Agent for session %s exited without a result (code %s)%s",
                    entry.session.id,
                    binding.query.transport.returncode,
                    f":\n{stderr}" if stderr else "",
                )
                self._finish(entry, SessionState.ERROR)

        # A terminal session never writes to this process again; the next
        # turn resumes on a new one.
        if entry.session.state.is_terminal:
            await binding.query.dispose()
            logger.debug(
                "Released agent process %s of session %s", binding.query.pid, entry.session.id,
            )

    def _apply_message(self, entry: _SessionEntry, message: AgentMessage) -> None:
        entry.add_message(message)
        self.events.emit(MessageReceived(entry.session.id, message))

        if isinstance(message, SystemMessage) and message.is_init:
            if message.session_id and message.session_id != entry.session.agent_session_id:
                entry.session = entry.session.with_agent_session_id(message.session_id)
                self.events.emit(AgentSessionIdLearned(
                    entry.session.id, entry.session.worktree_id, message.session_id,
                ))
            if not entry.session.state.is_terminal:
                self._transition(entry, SessionState.ACTIVE)
        elif isinstance(message, ResultMessage):
            entry.session = entry.session.with_added_cost(message.total_cost_usd)
            self._finish(
                entry, SessionState.ERROR if message.is_error else SessionState.COMPLETED,
            )

    def _finish(self, entry: _SessionEntry, state: SessionState) -> None:
        if not entry.session.state.is_terminal:
            self._transition(entry, state)

    def _transition(self, entry: _SessionEntry, state: SessionState) -> None:
        previous = entry.session.state
        if previous is state:
            return
        entry.session = entry.session.with_state(state)
        logger.info("Session %s: %s -> %s", entry.session.id, previous.value, state.value)
        self.events.emit(SessionStateChanged(entry.session, previous))
        if state.is_terminal and not previous.is_terminal:
            self.events.emit(SessionEnded(entry.session.id, state, entry.session.ended_at))
