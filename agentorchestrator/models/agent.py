"""Agent invocation domain models."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field, replace
from enum import Enum


class PermissionMode(str, Enum):
    DEFAULT = "default"
    ACCEPT_ALL = "accept_all"
    PLAN = "plan"

    @property
    def wire_value(self) -> str:
        """Mode name understood by the agent's set_permission_mode command."""
        if self is PermissionMode.ACCEPT_ALL:
            return "acceptEdits"
        return self.value


@dataclass(frozen=True)
class CommandSpec:
    """Specification for launching an agent subprocess."""

    program: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    cwd: str | None = None

    @property
    def full_command(self) -> str:
        """Return the full command string for shell execution."""
        parts = [self.program, *self.args]
        return " ".join(shlex.quote(p) for p in parts)


@dataclass(frozen=True)
class SystemPromptConfig:
    """Extra system prompt text placed around the agent's own prompt."""

    prepend: str = ""
    append: str = ""

    @property
    def combined(self) -> str:
        return "\n\n".join(part for part in (self.prepend, self.append) if part)


@dataclass(frozen=True)
class AgentOptions:
    """Options for starting, resuming or continuing an agent process."""

    cwd: str | None = None
    resume: str = ""
    continue_conversation: bool = False
    fork_session: bool = False
    model: str = ""
    fallback_model: str = ""
    max_turns: int | None = None
    max_thinking_tokens: int | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    allow_dangerously_skip_permissions: bool = False
    additional_directories: tuple[str, ...] = ()
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    system_prompt: SystemPromptConfig | None = None
    include_partial_messages: bool = False
    executable: str = ""
    executable_args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def with_changes(self, **changes) -> AgentOptions:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @property
    def skips_permissions(self) -> bool:
        return (
            self.allow_dangerously_skip_permissions
            or self.permission_mode is PermissionMode.ACCEPT_ALL
        )
