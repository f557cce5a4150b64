"""Configuration loading: TOML file + environment variable overlay."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]

from agentorchestrator.infra.transport import (
    DEFAULT_LINE_LIMIT,
    DEFAULT_SHUTDOWN_GRACE,
    DEFAULT_STDERR_TAIL_LINES,
    TransportSettings,
)
from agentorchestrator.models.agent import AgentOptions, PermissionMode, SystemPromptConfig

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agentorchestrator"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

DEFAULT_CONFIG_TOML = """\
[agent]
executable = "claude"
model = ""
permission_mode = "default"
# max_turns = 20
additional_directories = []
allowed_tools = []
disallowed_tools = []
append_system_prompt = ""
extra_args = []

[transport]
shutdown_grace_seconds = 5.0
line_limit_bytes = 10485760
stderr_tail_lines = 50
"""


@dataclass
class AgentDefaults:
    executable: str = "claude"
    model: str = ""
    permission_mode: str = "default"  # default, accept_all, plan
    max_turns: int | None = None
    additional_directories: list[str] = field(default_factory=list)
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    append_system_prompt: str = ""
    extra_args: list[str] = field(default_factory=list)

    def to_options(self, cwd: str | None = None) -> AgentOptions:
        """Build the starting AgentOptions for a session in ``cwd``.

        ``executable`` is not copied; it configures the backend instead.
        """
        return AgentOptions(
            cwd=cwd,
            model=self.model,
            max_turns=self.max_turns,
            permission_mode=PermissionMode(self.permission_mode or "default"),
            additional_directories=tuple(self.additional_directories),
            allowed_tools=tuple(self.allowed_tools),
            disallowed_tools=tuple(self.disallowed_tools),
            system_prompt=(
                SystemPromptConfig(append=self.append_system_prompt)
                if self.append_system_prompt else None
            ),
            executable_args=tuple(self.extra_args),
        )


@dataclass
class TransportConfig:
    shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE
    line_limit_bytes: int = DEFAULT_LINE_LIMIT
    stderr_tail_lines: int = DEFAULT_STDERR_TAIL_LINES

    def to_settings(self) -> TransportSettings:
        return TransportSettings(
            shutdown_grace=self.shutdown_grace_seconds,
            line_limit=self.line_limit_bytes,
            stderr_tail_lines=self.stderr_tail_lines,
        )


@dataclass
class AppConfig:
    agent: AgentDefaults = field(default_factory=AgentDefaults)
    transport: TransportConfig = field(default_factory=TransportConfig)
    config_path: Path = DEFAULT_CONFIG_PATH


def _env_overlay(config: AppConfig) -> None:
    """Override config values with environment variables where applicable."""
    if executable := os.environ.get("AGENT_ORCHESTRATOR_EXECUTABLE"):
        config.agent.executable = executable
    if model := os.environ.get("AGENT_ORCHESTRATOR_MODEL"):
        config.agent.model = model


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from TOML file with env var overlay."""
    path = config_path or DEFAULT_CONFIG_PATH

    if path.exists():
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    else:
        raw = tomllib.loads(DEFAULT_CONFIG_TOML)

    agent_raw = raw.get("agent", {})
    transport_raw = raw.get("transport", {})

    config = AppConfig(
        agent=AgentDefaults(
            executable=agent_raw.get("executable", "claude"),
            model=agent_raw.get("model", ""),
            permission_mode=agent_raw.get("permission_mode", "default"),
            max_turns=agent_raw.get("max_turns"),
            additional_directories=list(agent_raw.get("additional_directories", [])),
            allowed_tools=list(agent_raw.get("allowed_tools", [])),
            disallowed_tools=list(agent_raw.get("disallowed_tools", [])),
            append_system_prompt=agent_raw.get("append_system_prompt", ""),
            extra_args=list(agent_raw.get("extra_args", [])),
        ),
        transport=TransportConfig(
            shutdown_grace_seconds=float(
                transport_raw.get("shutdown_grace_seconds", DEFAULT_SHUTDOWN_GRACE)
            ),
            line_limit_bytes=transport_raw.get("line_limit_bytes", DEFAULT_LINE_LIMIT),
            stderr_tail_lines=transport_raw.get("stderr_tail_lines", DEFAULT_STDERR_TAIL_LINES),
        ),
        config_path=path,
    )

    _env_overlay(config)
    return config


def init_config(config_path: Path | None = None) -> Path:
    """Create default config file."""
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TOML)
    return path
