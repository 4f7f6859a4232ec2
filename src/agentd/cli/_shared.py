"""
Shared CLI state: Typer apps and console.
"""

import typer
from rich.console import Console

# Main app
app = typer.Typer(
    name="agentd",
    help="Spawn and supervise coding-agent sessions from a local daemon",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Daemon subcommand group
daemon_app = typer.Typer(
    name="daemon",
    help="Manage the agentd daemon",
    no_args_is_help=False,
    invoke_without_command=True,
)
app.add_typer(daemon_app, name="daemon")

# Console for rich output
console = Console()
