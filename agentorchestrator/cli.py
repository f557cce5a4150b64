"""Click CLI definitions - main entry point."""

from __future__ import annotations

import logging
import sys

import click

from agentorchestrator.commands.config_cmd import config_group
from agentorchestrator.commands.session_cmd import chat_command, run_command


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, debug: bool) -> None:
    """agentorchestrator - drive coding-agent CLI processes as sessions."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


cli.add_command(run_command, "run")
cli.add_command(chat_command, "chat")
cli.add_command(config_group, "config")


if __name__ == "__main__":
    cli()
