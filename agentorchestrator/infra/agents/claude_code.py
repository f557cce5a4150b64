"""Claude Code CLI backend."""

from __future__ import annotations

from agentorchestrator.models.agent import AgentOptions, CommandSpec, PermissionMode

DEFAULT_EXECUTABLE = "claude"


class ClaudeCodeBackend:
    """Backend for the Claude Code CLI agent.

    Generates commands like:
        claude --output-format stream-json --verbose -p PROMPT [--resume ID]
        claude --output-format stream-json --input-format stream-json --verbose
        claude --print [--model M] PROMPT

    The executable is injected (config or ``AgentOptions.executable``)
    rather than discovered by scanning PATH.
    """

    def __init__(self, executable: str = DEFAULT_EXECUTABLE) -> None:
        self.executable = executable or DEFAULT_EXECUTABLE

    def one_shot_command(self, prompt: str, options: AgentOptions) -> CommandSpec:
        """Generate command for a single prompt passed as an argument."""
        args = ["--output-format", "stream-json", "--verbose", "-p", prompt]
        return self._command(args, options)

    def streaming_command(self, options: AgentOptions) -> CommandSpec:
        """Generate command for multi-turn line-JSON input."""
        args = [
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
        ]
        return self._command(args, options)

    def print_command(self, prompt: str, options: AgentOptions) -> CommandSpec:
        """Generate command for a plain-text, print-mode answer."""
        args = ["--print"]
        args.extend(self._common_args(options))
        args.append(prompt)
        return CommandSpec(
            program=options.executable or self.executable,
            args=tuple(args),
            env=self._build_env(options),
            cwd=options.cwd or None,
        )

    def _command(self, args: list[str], options: AgentOptions) -> CommandSpec:
        args.extend(self._common_args(options))
        return CommandSpec(
            program=options.executable or self.executable,
            args=tuple(args),
            env=self._build_env(options),
            cwd=options.cwd or None,
        )

    def _common_args(self, options: AgentOptions) -> list[str]:
        args: list[str] = []

        if options.resume:
            args.extend(["--resume", options.resume])

        if options.continue_conversation:
            args.append("--continue")

        if options.fork_session:
            args.append("--fork-session")

        if options.model:
            args.extend(["--model", options.model])

        if options.fallback_model:
            args.extend(["--fallback-model", options.fallback_model])

        if options.max_turns is not None:
            args.extend(["--max-turns", str(options.max_turns)])

        if options.skips_permissions:
            args.append("--dangerously-skip-permissions")
        elif options.permission_mode is PermissionMode.PLAN:
            args.extend(["--permission-mode", "plan"])

        for directory in options.additional_directories:
            args.extend(["--add-dir", directory])

        for tool in options.allowed_tools:
            args.extend(["--allowedTools", tool])

        for tool in options.disallowed_tools:
            args.extend(["--disallowedTools", tool])

        if options.system_prompt and options.system_prompt.combined:
            args.extend(["--append-system-prompt", options.system_prompt.combined])

        if options.include_partial_messages:
            args.append("--include-partial-messages")

        args.extend(options.executable_args)
        return args

    def _build_env(self, options: AgentOptions) -> dict[str, str] | None:
        env: dict[str, str] = dict(options.env)
        if options.max_thinking_tokens is not None:
            env["MAX_THINKING_TOKENS"] = str(options.max_thinking_tokens)
        return env or None
