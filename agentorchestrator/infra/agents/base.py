"""Agent backend protocol definition."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from agentorchestrator.models.agent import AgentOptions, CommandSpec


@runtime_checkable
class AgentBackend(Protocol):
    """Protocol for agent subprocess backends.

    Each backend knows how to turn AgentOptions into a CommandSpec for the
    three invocation shapes the transport supports.
    """

    def one_shot_command(self, prompt: str, options: AgentOptions) -> CommandSpec:
        """Prompt on the command line, line-JSON output, input closed after start."""
        ...

    def streaming_command(self, options: AgentOptions) -> CommandSpec:
        """Line-JSON in both directions; turns are written to stdin."""
        ...

    def print_command(self, prompt: str, options: AgentOptions) -> CommandSpec:
        """Plain-text single answer on stdout."""
        ...
