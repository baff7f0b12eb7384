"""CLI application — Click-based command group for agentbox.

Subcommand modules register themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any

import click

from agentbox import __version__


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.version_option(__version__, prog_name="agentbox")
@click.pass_context
def cli(ctx: click.Context, no_color: bool) -> None:
    """Agentbox - sandboxed execution for coding agents."""
    from agentbox.main import configure_logging

    configure_logging()
    ctx.ensure_object(dict)
    ctx.obj["no_color"] = no_color


def _register_subcommands() -> None:
    from agentbox.cli.assess import assess_cmd
    from agentbox.cli.detect import detect_cmd
    from agentbox.cli.exec_cmd import exec_cmd

    cli.add_command(assess_cmd)
    cli.add_command(detect_cmd)
    cli.add_command(exec_cmd)


_register_subcommands()
