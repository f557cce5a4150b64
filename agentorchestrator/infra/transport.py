"""Agent subprocess transport: launching, line-JSON framing, teardown."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections import deque
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum

from agentorchestrator.errors import ClosedTransportError, LaunchError
from agentorchestrator.infra.agents.base import AgentBackend
from agentorchestrator.infra.agents.claude_code import ClaudeCodeBackend
from agentorchestrator.models.agent import AgentOptions, CommandSpec
from agentorchestrator.models.content import ImageBlock
from agentorchestrator.models.messages import (
    AgentMessage,
    ResultMessage,
    UserMessage,
    decode_message,
    encode_command,
    encode_line,
    encode_user_message,
)

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_GRACE = 5.0
DEFAULT_LINE_LIMIT = 10 * 1024 * 1024
DEFAULT_STDERR_TAIL_LINES = 50


class TransportMode(str, Enum):
    ONE_SHOT = "one_shot"
    STREAMING = "streaming"


@dataclass(frozen=True)
class TransportSettings:
    """Process-level limits shared by every transport a service creates."""

    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE
    line_limit: int = DEFAULT_LINE_LIMIT
    stderr_tail_lines: int = DEFAULT_STDERR_TAIL_LINES


async def spawn_agent(
    command: CommandSpec,
    *,
    stdin: int | None = asyncio.subprocess.PIPE,
    limit: int = DEFAULT_LINE_LIMIT,
) -> asyncio.subprocess.Process:
    """Start the agent in its own process group. Raises LaunchError."""
    env = None
    if command.env:
        env = os.environ.copy()
        env.update(command.env)

    try:
        return await asyncio.create_subprocess_exec(
            command.program,
            *command.args,
            cwd=command.cwd,
            env=env,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=limit,
            start_new_session=os.name == "posix",
        )
    except OSError as e:
        raise LaunchError(f"Failed to start agent {command.program!r}: {e}") from e


def _signal_tree(proc: asyncio.subprocess.Process, force: bool) -> None:
    """Signal the process group the agent leads (the agent and its children)."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif force:
            proc.kill()
        else:
            proc.terminate()
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.warning("Not permitted to signal agent process %s", proc.pid)


async def terminate_process_tree(
    proc: asyncio.subprocess.Process, grace: float = DEFAULT_SHUTDOWN_GRACE
) -> None:
    """SIGTERM the tree, then SIGKILL it if it outlives ``grace`` seconds."""
    if proc.returncode is not None:
        return

    _signal_tree(proc, force=False)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("Agent process %s ignored SIGTERM, killing", proc.pid)
        _signal_tree(proc, force=True)
        await proc.wait()


class ProcessTransport:
    """Owns one agent process and its three standard streams.

    Output is read as one JSON document per line and decoded into protocol
    messages; input is written the same way. A transport lives for exactly
    one process: resuming a conversation means a new transport.
    """

    def __init__(
        self,
        command: CommandSpec,
        mode: TransportMode,
        settings: TransportSettings | None = None,
    ) -> None:
        self.command = command
        self.mode = mode
        self.settings = settings or TransportSettings()
        self._process: asyncio.subprocess.Process | None = None
        self._closing = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._input_closed = False
        self._stderr_tail: deque[str] = deque(maxlen=self.settings.stderr_tail_lines)
        self._stderr_task: asyncio.Task | None = None
        self._dispose_task: asyncio.Future | None = None

    @classmethod
    async def start(
        cls,
        prompt: str | None,
        options: AgentOptions | None = None,
        *,
        images: Sequence[ImageBlock] = (),
        backend: AgentBackend | None = None,
        settings: TransportSettings | None = None,
    ) -> ProcessTransport:
        """Launch the agent for one conversation.

        A prompt without images uses the one-shot shape. No prompt, or a
        prompt with images, uses the streaming shape; the prompt then goes
        out as the first framed user message.
        """
        options = options or AgentOptions()
        backend = backend or ClaudeCodeBackend()

        if prompt is not None and not images:
            transport = cls(backend.one_shot_command(prompt, options), TransportMode.ONE_SHOT, settings)
        else:
            transport = cls(backend.streaming_command(options), TransportMode.STREAMING, settings)

        await transport.launch()

        if transport.mode is TransportMode.STREAMING and prompt is not None:
            if images:
                message = UserMessage.with_images(prompt, tuple(images), session_id=options.resume)
            else:
                message = UserMessage.text(prompt, session_id=options.resume)
            try:
                await transport.send(message)
            except ClosedTransportError:
                await transport.dispose()
                raise
        return transport

    async def launch(self) -> None:
        if self._process is not None:
            raise RuntimeError("Transport already launched")

        logger.debug("Launching agent: %s", self.command.full_command)
        self._process = await spawn_agent(self.command, limit=self.settings.line_limit)
        logger.info(
            "Started agent process %s (%s, cwd=%s)",
            self._process.pid, self.mode.value, self.command.cwd or os.getcwd(),
        )
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())

        if self.mode is TransportMode.ONE_SHOT:
            # The agent buffers its output until stdin reaches EOF.
            await self.close_input()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def input_closed(self) -> bool:
        return self._input_closed or self._closing.is_set()

    @property
    def stderr_tail(self) -> tuple[str, ...]:
        return tuple(self._stderr_tail)

    async def read_messages(self, *cancel_events: asyncio.Event) -> AsyncIterator[AgentMessage]:
        """Yield decoded messages until EOF, cancellation, or a result message."""
        proc = self._process
        if proc is None or proc.stdout is None:
            return

        events = (self._closing, *cancel_events)
        while not any(event.is_set() for event in events):
            try:
                line = await self._next_line(proc.stdout, events)
            except ValueError:
                logger.warning(
                    "Agent %s wrote a line over %d bytes, skipping",
                    proc.pid, self.settings.line_limit,
                )
                continue

            if not line:
                # Cancelled, or EOF because the process exited
                return

            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue

            message = decode_message(text)
            if message is None:
                continue

            yield message

            if isinstance(message, ResultMessage):
                return

    async def _next_line(
        self, stream: asyncio.StreamReader, events: Sequence[asyncio.Event]
    ) -> bytes | None:
        """Read one line, or return None as soon as any event is set."""
        read = asyncio.ensure_future(stream.readline())
        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait([read, *waiters], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            if not read.done():
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await read

        if read.cancelled():
            return None
        return read.result()

    async def send(self, message: UserMessage) -> None:
        """Write one user turn to the agent's stdin."""
        await self._write(encode_user_message(message))

    async def send_command(self, name: str, payload: dict | None = None) -> None:
        """Write one side-channel control line (set_model, rewind_files, ...)."""
        await self._write(encode_command(name, payload))

    async def _write(self, doc: dict) -> None:
        async with self._write_lock:
            proc = self._process
            if self.input_closed or proc is None or proc.stdin is None:
                raise ClosedTransportError("Agent input is closed")
            try:
                proc.stdin.write(encode_line(doc))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._input_closed = True
                raise ClosedTransportError(f"Agent process {proc.pid} closed its input") from e

    async def interrupt(self) -> None:
        """Abort the current turn by terminating the agent's process tree."""
        proc = self._process
        if proc is None:
            return
        logger.info("Interrupting agent process %s", proc.pid)
        self._closing.set()
        await terminate_process_tree(proc, self.settings.shutdown_grace)

    async def close_input(self) -> None:
        """Half-close stdin: no more turns, but the process keeps running."""
        async with self._write_lock:
            self._close_stdin()
        await self._wait_stdin_closed()

    def _close_stdin(self) -> None:
        if self._input_closed:
            return
        self._input_closed = True
        if self._process is not None and self._process.stdin is not None:
            self._process.stdin.close()

    async def _wait_stdin_closed(self) -> None:
        if self._process is None or self._process.stdin is None:
            return
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await self._process.stdin.wait_closed()

    async def _drain_stderr(self) -> None:
        proc = self._process
        if proc is None or proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("agent[%s] stderr: %s", proc.pid, text)

    async def dispose(self) -> None:
        """Stop reads, kill the process tree if alive, release the pipes.

        Idempotent; concurrent callers all wait for the same teardown.
        """
        if self._dispose_task is None:
            self._dispose_task = asyncio.ensure_future(self._dispose())
        await asyncio.shield(self._dispose_task)

    async def _dispose(self) -> None:
        self._closing.set()
        proc = self._process
        if proc is None:
            return

        try:
            await terminate_process_tree(proc, self.settings.shutdown_grace)
        except OSError:
            logger.warning("Error terminating agent process %s", proc.pid, exc_info=True)

        self._close_stdin()
        await self._wait_stdin_closed()

        if self._stderr_task is not None and not self._stderr_task.done():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stderr_task, timeout=self.settings.shutdown_grace)

        logger.info("Disposed agent process %s (exit code %s)", proc.pid, proc.returncode)

    async def __aenter__(self) -> ProcessTransport:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()
