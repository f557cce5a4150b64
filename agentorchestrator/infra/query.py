"""Query: the owner-facing handle for one agent process.

Usage:
    query = await create_query("fix the failing test", AgentOptions(cwd=repo))
    async for message in query:
        ...
    await query.dispose()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence

from agentorchestrator.errors import AlreadyConsumedError, ClosedTransportError
from agentorchestrator.infra.agents.base import AgentBackend
from agentorchestrator.infra.agents.claude_code import ClaudeCodeBackend
from agentorchestrator.infra.transport import (
    ProcessTransport,
    TransportMode,
    TransportSettings,
    spawn_agent,
    terminate_process_tree,
)
from agentorchestrator.models.agent import AgentOptions, PermissionMode
from agentorchestrator.models.content import ImageBlock
from agentorchestrator.models.messages import AgentMessage, SystemMessage, UserMessage

logger = logging.getLogger(__name__)


class Query:
    """A single-pass stream of agent messages plus control operations."""

    def __init__(self, transport: ProcessTransport) -> None:
        self._transport = transport
        self._cancelled = asyncio.Event()
        self._consumed = False
        self._disposed = False
        self._dispose_task: asyncio.Future | None = None
        self._agent_session_id = ""

    @property
    def agent_session_id(self) -> str:
        """Session id assigned by the agent, known once its init message is seen."""
        return self._agent_session_id

    @property
    def transport(self) -> ProcessTransport:
        return self._transport

    @property
    def is_active(self) -> bool:
        return not self._disposed and not self._cancelled.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def is_streaming(self) -> bool:
        return self._transport.mode is TransportMode.STREAMING

    @property
    def pid(self) -> int | None:
        return self._transport.pid

    @property
    def stderr_tail(self) -> tuple[str, ...]:
        return self._transport.stderr_tail

    def __aiter__(self) -> AsyncIterator[AgentMessage]:
        return self.messages()

    def messages(self, cancel: asyncio.Event | None = None) -> AsyncIterator[AgentMessage]:
        """Return the message stream; ``cancel`` stops it like :meth:`cancel` does.

        The transport cannot rewind, so this may be called only once.
        """
        if self._consumed:
            raise AlreadyConsumedError("Query can only be iterated once")
        self._consumed = True
        return self._iterate(cancel)

    async def _iterate(self, cancel: asyncio.Event | None) -> AsyncIterator[AgentMessage]:
        events = [self._cancelled] if cancel is None else [self._cancelled, cancel]
        stream = self._transport.read_messages(*events)
        try:
            async for message in stream:
                if (
                    not self._agent_session_id
                    and isinstance(message, SystemMessage)
                    and message.is_init
                ):
                    self._agent_session_id = message.session_id
                yield message
                if self._cancelled.is_set():
                    return
        finally:
            await stream.aclose()

    def _ensure_open(self) -> None:
        if self._disposed:
            raise ClosedTransportError("Query is disposed")

    async def send_message(self, text: str, images: Sequence[ImageBlock] = ()) -> None:
        """Send a follow-up turn (streaming queries only)."""
        self._ensure_open()
        if images:
            message = UserMessage.with_images(text, tuple(images), self._agent_session_id)
        else:
            message = UserMessage.text(text, self._agent_session_id)
        await self._transport.send(message)

    async def send_command(self, name: str, payload: dict | None = None) -> None:
        self._ensure_open()
        await self._transport.send_command(name, payload)

    async def interrupt(self) -> None:
        """Stop the current turn. The agent process does not survive this."""
        self._ensure_open()
        await self._transport.interrupt()

    async def set_permission_mode(self, mode: PermissionMode) -> None:
        await self.send_command("set_permission_mode", {"mode": mode.wire_value})

    async def set_model(self, model: str | None = None) -> None:
        await self.send_command("set_model", {"model": model})

    async def set_max_thinking_tokens(self, max_thinking_tokens: int | None) -> None:
        await self.send_command(
            "set_max_thinking_tokens", {"max_thinking_tokens": max_thinking_tokens}
        )

    async def rewind_files(self, user_message_uuid: str) -> None:
        """Ask the agent to restore files to their state at a user message."""
        await self.send_command("rewind_files", {"user_message_uuid": user_message_uuid})

    async def close_input(self) -> None:
        self._ensure_open()
        await self._transport.close_input()

    def cancel(self) -> None:
        """Stop iteration promptly, even if more output is buffered."""
        if not self._disposed:
            self._cancelled.set()

    async def dispose(self) -> None:
        """Cancel and tear down the transport. Safe to call concurrently."""
        if self._dispose_task is None:
            self._disposed = True
            self._cancelled.set()
            self._dispose_task = asyncio.ensure_future(self._transport.dispose())
        await asyncio.shield(self._dispose_task)

    async def __aenter__(self) -> Query:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()


async def create_query(
    prompt: str,
    options: AgentOptions | None = None,
    *,
    images: Sequence[ImageBlock] = (),
    backend: AgentBackend | None = None,
    settings: TransportSettings | None = None,
) -> Query:
    """Start a query for one prompt (one-shot; streaming when images are attached)."""
    transport = await ProcessTransport.start(
        prompt, options, images=images, backend=backend, settings=settings
    )
    return Query(transport)


async def create_streaming_query(
    options: AgentOptions | None = None,
    *,
    backend: AgentBackend | None = None,
    settings: TransportSettings | None = None,
) -> Query:
    """Start a query that waits for turns written with send_message."""
    transport = await ProcessTransport.start(None, options, backend=backend, settings=settings)
    return Query(transport)


async def resume_query(
    agent_session_id: str,
    prompt: str | None = None,
    options: AgentOptions | None = None,
    *,
    images: Sequence[ImageBlock] = (),
    backend: AgentBackend | None = None,
    settings: TransportSettings | None = None,
) -> Query:
    """Resume an earlier agent session, optionally with the next prompt."""
    options = (options or AgentOptions()).with_changes(resume=agent_session_id)
    if prompt:
        return await create_query(prompt, options, images=images, backend=backend, settings=settings)
    return await create_streaming_query(options, backend=backend, settings=settings)


async def continue_query(
    prompt: str | None = None,
    options: AgentOptions | None = None,
    *,
    backend: AgentBackend | None = None,
    settings: TransportSettings | None = None,
) -> Query:
    """Continue the most recent agent session in the working directory."""
    options = (options or AgentOptions()).with_changes(continue_conversation=True)
    if prompt:
        return await create_query(prompt, options, backend=backend, settings=settings)
    return await create_streaming_query(options, backend=backend, settings=settings)


async def query_once(
    prompt: str,
    options: AgentOptions | None = None,
    *,
    timeout: float | None = None,
    backend: AgentBackend | None = None,
    settings: TransportSettings | None = None,
) -> str | None:
    """Run a single print-mode request and return its text.

    Returns None when the agent exits non-zero or prints nothing. On
    timeout or cancellation the process tree is killed and the error
    propagates.
    """
    options = options or AgentOptions()
    backend = backend or ClaudeCodeBackend()
    settings = settings or TransportSettings()
    command = backend.print_command(prompt, options)

    proc = await spawn_agent(
        command, stdin=asyncio.subprocess.DEVNULL, limit=settings.line_limit
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.CancelledError, asyncio.TimeoutError):
        await terminate_process_tree(proc, settings.shutdown_grace)
        raise

    if stderr:
        logger.debug("query_once stderr: %s", stderr.decode("utf-8", errors="replace").strip())

    if proc.returncode != 0:
        logger.warning("query_once: agent exited with code %s", proc.returncode)
        return None

    text = stdout.decode("utf-8", errors="replace").strip()
    return text or None
