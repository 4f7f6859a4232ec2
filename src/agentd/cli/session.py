"""
Session commands: report-session.
"""

import os
from typing import Annotated, List, Optional

import typer
from rich import print as rprint

from ..exceptions import AgentdError, DaemonNotRunningError
from ._shared import app


@app.command("report-session")
def report_session(
    session_id: Annotated[str, typer.Argument(help="Session id assigned to this session")],
    pid: Annotated[
        Optional[int],
        typer.Option("--pid", help="PID of the agent process (default: parent of this command)"),
    ] = None,
    meta: Annotated[
        Optional[List[str]],
        typer.Option("--meta", help="Extra metadata as KEY=VALUE (repeatable)"),
    ] = None,
):
    """Tell the daemon that this session is up (called by spawned sessions)."""
    from ..control_client import notify_daemon_session_started

    metadata = {}
    for item in meta or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            rprint(f"[red]Invalid --meta value:[/red] {item} (expected KEY=VALUE)")
            raise typer.Exit(2)
        metadata[key] = value
    metadata["hostPid"] = pid if pid is not None else os.getppid()

    try:
        notify_daemon_session_started(session_id, metadata)
    except DaemonNotRunningError:
        rprint("[dim]Daemon is not running; nothing to report to[/dim]")
        raise typer.Exit(1)
    except AgentdError as e:
        rprint(f"[red]Report failed:[/red] {e}")
        raise typer.Exit(1)
    rprint(f"[green]✓[/green] Reported session {session_id} (PID {metadata['hostPid']})")
