"""Exec command — run one shell command through a sandbox and the permission gate."""

from __future__ import annotations

import json as json_mod

import click

from agentbox.cli.app import async_cmd
from agentbox.cli.formatters import get_console, risk_text
from agentbox.config import AgentboxConfig
from agentbox.errors import ConfigurationError, ContainerRuntimeError, PermissionDeniedError, SecurityError
from agentbox.execution.factory import ExecutorFactory
from agentbox.permissions.manager import PermissionManager


@click.command("exec")
@click.argument("command", nargs=-1, required=True)
@click.option(
    "--mode",
    type=click.Choice(["auto", "native", "docker", "devcontainer"]),
    default=None,
    help="Execution mode (default: AGENTBOX_EXECUTION_MODE or auto)",
)
@click.option("--project-dir", type=click.Path(file_okay=False, exists=True), default=None)
@click.option(
    "--accept-risk",
    type=click.Choice(["low", "medium", "high", "critical"]),
    default=None,
    help="Highest risk level allowed without approval",
)
@click.option("--timeout", type=float, default=None, help="Command timeout in seconds")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def exec_cmd(
    ctx: click.Context,
    command: tuple[str, ...],
    mode: str | None,
    project_dir: str | None,
    accept_risk: str | None,
    timeout: float | None,
    json_output: bool,
) -> None:
    """Run COMMAND in the detected (or chosen) sandbox."""
    config = AgentboxConfig()
    if accept_risk:
        config.permissions.accept_risk_level = accept_risk
    exec_config = config.execution.to_execution_config(
        mode=mode, project_dir=project_dir, command_timeout=timeout
    )
    text = " ".join(command)
    console = get_console(no_color=(ctx.obj or {}).get("no_color", False))

    factory = ExecutorFactory(PermissionManager(config.permissions))
    try:
        executor = await factory.create_executor(exec_config)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc

    try:
        await executor.initialize()
        result = await executor.execute(text)
    except PermissionDeniedError as exc:
        level = exc.assessment.level.value if exc.assessment else "unknown"
        if json_output:
            click.echo(json_mod.dumps({"allowed": False, "reason": exc.reason, "risk_level": level}))
        else:
            console.print(risk_text(level), f"Denied: {exc.reason or exc}")
        ctx.exit(2)
    except (ConfigurationError, ContainerRuntimeError, SecurityError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        await executor.cleanup()

    if json_output:
        click.echo(json_mod.dumps({
            "allowed": True,
            "mode": executor.get_mode(),
            "exit_code": result.exit_code,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "signal": result.signal,
            "duration": result.duration,
        }))
    else:
        if result.stdout:
            click.echo(result.stdout, nl=not result.stdout.endswith("\n"))
        if result.stderr:
            click.echo(result.stderr, nl=not result.stderr.endswith("\n"), err=True)
    ctx.exit(result.exit_code)
