"""Risk assessment command — score a shell command without running it."""

from __future__ import annotations

import json as json_mod

import click

from agentbox.cli.formatters import build_table, get_console, risk_text
from agentbox.permissions.risk import RiskAssessor


@click.command("assess")
@click.argument("command", nargs=-1, required=True)
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
def assess_cmd(ctx: click.Context, command: tuple[str, ...], json_output: bool) -> None:
    """Show the risk level of COMMAND."""
    text = " ".join(command)
    assessment = RiskAssessor().assess(text)

    if json_output:
        click.echo(json_mod.dumps({
            "command": text,
            "level": assessment.level.value,
            "score": assessment.score,
            "reasons": assessment.reasons,
        }))
        return

    console = get_console(no_color=(ctx.obj or {}).get("no_color", False))
    rows = [[risk_text(assessment.level.value), assessment.score, reason] for reason in assessment.reasons]
    console.print(build_table(f"Risk: {text}", ["Level", "Score", "Reason"], rows))
