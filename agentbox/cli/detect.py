"""Detection command — report which sandbox a project would use."""

from __future__ import annotations

import json as json_mod
import os

import click

from agentbox.cli.app import async_cmd
from agentbox.cli.formatters import build_table, get_console
from agentbox.execution.factory import ExecutorFactory


@click.command("detect")
@click.argument("project_dir", default=".", type=click.Path(file_okay=False))
@click.option("--all", "show_all", is_flag=True, help="List every candidate, not just the winner")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def detect_cmd(ctx: click.Context, project_dir: str, show_all: bool, json_output: bool) -> None:
    """Detect the execution mode for PROJECT_DIR."""
    project_dir = os.path.abspath(project_dir)
    factory = ExecutorFactory()
    if show_all:
        results = await factory.detect_available_modes(project_dir)
    else:
        results = [await factory.detect(project_dir)]

    if json_output:
        click.echo(json_mod.dumps([
            {
                "mode": r.mode,
                "available": r.available,
                "reason": r.reason,
                "config_path": r.config_path,
            }
            for r in results
        ]))
        return

    console = get_console(no_color=(ctx.obj or {}).get("no_color", False))
    rows = [[r.mode, "yes" if r.available else "no", r.reason] for r in results]
    console.print(build_table(f"Sandbox: {project_dir}", ["Mode", "Available", "Reason"], rows))
