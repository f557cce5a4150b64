"""CLI handlers for running agent sessions."""

from __future__ import annotations

import asyncio
import json
import os
import uuid

import click

from agentorchestrator.config import load_config
from agentorchestrator.errors import LaunchError, OrchestratorError
from agentorchestrator.models.events import MessageReceived, SessionEnded, SessionStateChanged
from agentorchestrator.models.messages import AssistantMessage, ResultMessage
from agentorchestrator.models.session import Session, SessionState, WorktreeRef
from agentorchestrator.services.session_service import SessionService


def _run(coro):
    return asyncio.run(coro)


def _worktree(cwd: str) -> WorktreeRef:
    path = os.path.abspath(cwd)
    return WorktreeRef(id=str(uuid.uuid5(uuid.NAMESPACE_URL, path)), path=path)


def _echo_message(event: MessageReceived, raw_json: bool) -> None:
    message = event.message
    if raw_json:
        click.echo(json.dumps(message.raw if message.raw is not None else {"type": message.type}))
        return
    if isinstance(message, AssistantMessage) and message.text:
        click.echo(message.text)
    elif isinstance(message, ResultMessage):
        label = "error" if message.is_error else "done"
        click.echo(
            f"[{label}: {message.subtype}, {message.num_turns} turn(s), "
            f"${message.total_cost_usd:.4f}]",
            err=True,
        )


def _echo_summary(session: Session) -> None:
    click.echo(f"Session: {session.id}", err=True)
    click.echo(f"  State: {session.state.value}", err=True)
    if session.agent_session_id:
        click.echo(f"  Agent session: {session.agent_session_id}", err=True)
    click.echo(f"  Total cost: ${session.total_cost_usd:.4f}", err=True)


@click.command("run")
@click.argument("prompt")
@click.option("--cwd", default=".", type=click.Path(exists=True, file_okay=False), help="Working directory")
@click.option("--model", "-m", default="", help="Model to use")
@click.option("--json", "raw_json", is_flag=True, help="Print every protocol message as JSON")
def run_command(prompt: str, cwd: str, model: str, raw_json: bool):
    """Run one prompt to completion and print the answer."""

    async def _session() -> Session:
        config = load_config()
        if model:
            config.agent.model = model

        async with SessionService(config) as service:
            ended = asyncio.Event()
            service.events.subscribe(MessageReceived, lambda e: _echo_message(e, raw_json))
            service.events.subscribe(SessionEnded, lambda e: ended.set())
            try:
                session = await service.create_session(_worktree(cwd), prompt)
            except LaunchError as e:
                raise click.ClickException(str(e)) from e
            await ended.wait()
            return service.get_session(session.id)

    session = _run(_session())
    _echo_summary(session)
    if session.state is not SessionState.COMPLETED:
        raise SystemExit(1)


@click.command("chat")
@click.option("--cwd", default=".", type=click.Path(exists=True, file_okay=False), help="Working directory")
@click.option("--model", "-m", default="", help="Model to use")
@click.option("--resume", "resume_id", default="", help="Agent session id to resume")
def chat_command(cwd: str, model: str, resume_id: str):
    """Interactive multi-turn conversation. Empty line or /quit exits."""

    async def _chat() -> Session | None:
        config = load_config()
        if model:
            config.agent.model = model
        loop = asyncio.get_running_loop()
        worktree = _worktree(cwd)

        async with SessionService(config) as service:
            turn_over = asyncio.Event()

            def on_state(event: SessionStateChanged) -> None:
                if event.session.state.is_terminal:
                    turn_over.set()

            service.events.subscribe(MessageReceived, lambda e: _echo_message(e, False))
            service.events.subscribe(SessionStateChanged, on_state)

            options = config.agent.to_options(worktree.path)
            if resume_id:
                options = options.with_changes(resume=resume_id)
            try:
                session = await service.create_idle_session(worktree, options)
            except LaunchError as e:
                raise click.ClickException(str(e)) from e

            while True:
                try:
                    text = await loop.run_in_executor(
                        None, lambda: click.prompt("you", default="", show_default=False)
                    )
                except click.Abort:
                    break
                if not text.strip() or text.strip() == "/quit":
                    break

                turn_over.clear()
                try:
                    await service.send_message(session.id, text)
                except OrchestratorError as e:
                    click.echo(f"Error: {e}", err=True)
                    break
                await turn_over.wait()

            return service.get_session(session.id)

    session = _run(_chat())
    if session is not None:
        _echo_summary(session)
