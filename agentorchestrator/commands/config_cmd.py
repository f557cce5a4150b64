"""CLI handlers for config commands."""

from __future__ import annotations

import click

from agentorchestrator.config import DEFAULT_CONFIG_PATH, init_config, load_config


@click.group("config")
def config_group():
    """Manage configuration."""
    pass


@config_group.command("init")
def config_init():
    """Create default configuration file."""
    path = init_config()
    click.echo(f"Configuration created at: {path}")


@config_group.command("show")
def config_show():
    """Show current configuration."""
    config = load_config()
    agent = config.agent
    transport = config.transport
    click.echo(f"Config file: {config.config_path}")
    click.echo(f"  Executable: {agent.executable}")
    click.echo(f"  Model: {agent.model or '(agent default)'}")
    click.echo(f"  Permission mode: {agent.permission_mode}")
    if agent.max_turns is not None:
        click.echo(f"  Max turns: {agent.max_turns}")
    if agent.additional_directories:
        click.echo(f"  Extra directories: {', '.join(agent.additional_directories)}")
    if agent.allowed_tools:
        click.echo(f"  Allowed tools: {', '.join(agent.allowed_tools)}")
    if agent.disallowed_tools:
        click.echo(f"  Disallowed tools: {', '.join(agent.disallowed_tools)}")
    if agent.extra_args:
        click.echo(f"  Extra args: {' '.join(agent.extra_args)}")

    click.echo("\n  Transport:")
    click.echo(f"    Shutdown grace: {transport.shutdown_grace_seconds}s")
    click.echo(f"    Line limit: {transport.line_limit_bytes} bytes")
    click.echo(f"    Stderr tail: {transport.stderr_tail_lines} lines")


def _coerce(value: str):
    import json

    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit():
        return int(value)
    if value.startswith("[") or value.startswith("{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    try:
        return float(value)
    except ValueError:
        return value


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    Modifies the TOML config file. Key uses dot notation, e.g.:
    agent.model, agent.allowed_tools, transport.shutdown_grace_seconds
    """
    import tomli_w

    path = DEFAULT_CONFIG_PATH
    if not path.exists():
        click.echo("No config file found. Run 'agentorchestrator config init' first.", err=True)
        return

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    with open(path, "rb") as f:
        data = tomllib.load(f)

    # Navigate dot-separated key
    parts = key.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})

    target[parts[-1]] = _coerce(value)

    with open(path, "wb") as f:
        tomli_w.dump(data, f)

    click.echo(f"Set {key} = {value}")
