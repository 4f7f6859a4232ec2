"""
Daemon commands: start, start-sync, stop, status, list, stop-session,
spawn, update.
"""

import json
from typing import Annotated, Optional

import typer
from rich import print as rprint
from rich.table import Table

from ..exceptions import AgentdError, DaemonNotRunningError
from ._shared import console, daemon_app


@daemon_app.callback(invoke_without_command=True)
def daemon_default(ctx: typer.Context):
    """Show daemon status (default when no subcommand given)."""
    if ctx.invoked_subcommand is None:
        _daemon_status()


@daemon_app.command("start")
def daemon_start(
    timeout: Annotated[
        float, typer.Option("--timeout", help="Seconds to wait for the daemon to come up")
    ] = 5.0,
):
    """Start the daemon in the background."""
    from ..daemon import start_daemon_background

    state = start_daemon_background(timeout=timeout)
    if state is None:
        rprint("[red]Daemon did not start[/red] (check the logs directory)")
        raise typer.Exit(1)
    rprint(f"[green]✓[/green] Daemon running (PID {state.pid}, port {state.http_port})")


@daemon_app.command("start-sync")
def daemon_start_sync():
    """Run the daemon in the foreground."""
    from ..daemon import run_daemon

    run_daemon(foreground=True)


@daemon_app.command("stop")
def daemon_stop():
    """Stop the running daemon."""
    from ..control_client import check_if_daemon_running_and_clean_stale_state, stop_daemon

    if not check_if_daemon_running_and_clean_stale_state():
        rprint("[dim]Daemon is not running[/dim]")
        return

    if stop_daemon():
        rprint("[green]✓[/green] Daemon stopped")
    else:
        rprint("[red]Failed to stop daemon[/red]")
        raise typer.Exit(1)


@daemon_app.command("status")
def daemon_status_cmd():
    """Show daemon status."""
    _daemon_status()


def _daemon_status():
    from ..control_client import check_if_daemon_running_and_clean_stale_state
    from ..daemon_state import read_daemon_state
    from ..settings import get_installed_version

    if not check_if_daemon_running_and_clean_stale_state():
        rprint("[dim]Daemon:[/dim] ○ stopped")
        return

    state = read_daemon_state()
    if state is None:
        rprint("[dim]Daemon:[/dim] ○ stopped")
        return

    rprint(f"[green]Daemon:[/green] ● {state.status} (PID {state.pid})")
    rprint(f"  Port: {state.http_port}")
    rprint(f"  Started: {state.start_time}")
    version = state.started_with_cli_version
    installed = get_installed_version()
    if version != installed:
        rprint(f"  Version: {version} [yellow](installed: {installed})[/yellow]")
    else:
        rprint(f"  Version: {version}")
    if state.last_heartbeat:
        rprint(f"  Last heartbeat: {state.last_heartbeat}")
    if state.daemon_log_path:
        rprint(f"  Log: {state.daemon_log_path}")


@daemon_app.command("list")
def daemon_list(
    as_json: Annotated[bool, typer.Option("--json", help="Print raw JSON")] = False,
):
    """List sessions tracked by the daemon."""
    from ..control_client import list_daemon_sessions

    try:
        sessions = list_daemon_sessions()
    except DaemonNotRunningError:
        rprint("[dim]Daemon is not running[/dim]")
        raise typer.Exit(1)

    if as_json:
        print(json.dumps(sessions, indent=2))
        return
    if not sessions:
        rprint("[dim]No sessions[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Session")
    table.add_column("PID", justify="right")
    table.add_column("Started by")
    table.add_column("tmux")
    for s in sessions:
        table.add_row(
            str(s.get("sessionId")),
            str(s.get("pid")),
            str(s.get("startedBy")),
            s.get("tmuxSessionId") or "-",
        )
    console.print(table)


@daemon_app.command("stop-session")
def daemon_stop_session(
    session_id: Annotated[str, typer.Argument(help="Session id, PID-<n> or PID")],
):
    """Stop one session tracked by the daemon."""
    from ..control_client import stop_daemon_session

    try:
        stopped = stop_daemon_session(session_id)
    except DaemonNotRunningError:
        rprint("[dim]Daemon is not running[/dim]")
        raise typer.Exit(1)

    if stopped:
        rprint(f"[green]✓[/green] Session {session_id} stopped")
    else:
        rprint(f"[red]Session not found:[/red] {session_id}")
        raise typer.Exit(1)


@daemon_app.command("spawn")
def daemon_spawn(
    directory: Annotated[str, typer.Argument(help="Working directory for the session")],
    agent: Annotated[
        str, typer.Option("--agent", "-a", help="Agent CLI: claude, codex or gemini")
    ] = "claude",
    create_directory: Annotated[
        bool,
        typer.Option("--create-directory/--no-create-directory", help="Create the directory if missing"),
    ] = True,
    tmux_session: Annotated[
        Optional[str],
        typer.Option("--tmux", help="Spawn inside this tmux session ('' = most recent)"),
    ] = None,
):
    """Ask the daemon to spawn a session."""
    from ..control_client import spawn_daemon_session

    env = None
    if tmux_session is not None:
        env = {"TMUX_SESSION_NAME": tmux_session}

    try:
        result = spawn_daemon_session(
            directory,
            agent=agent,
            approved_new_directory_creation=create_directory,
            environment_variables=env,
        )
    except DaemonNotRunningError:
        rprint("[dim]Daemon is not running[/dim]")
        raise typer.Exit(1)
    except AgentdError as e:
        rprint(f"[red]Spawn failed:[/red] {e}")
        raise typer.Exit(1)

    kind = result.get("type")
    if kind == "success":
        rprint(f"[green]✓[/green] Session {result.get('sessionId')} started")
        if result.get("message"):
            rprint(f"  [dim]{result['message']}[/dim]")
    elif kind == "requestToApproveDirectoryCreation":
        rprint(f"[yellow]Directory does not exist:[/yellow] {result.get('directory')}")
        rprint("  [dim]Re-run with --create-directory to create it[/dim]")
        raise typer.Exit(1)
    else:
        rprint(f"[red]Spawn failed:[/red] {result.get('errorMessage')}")
        raise typer.Exit(1)


@daemon_app.command("update")
def daemon_update(
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Hide update command output")] = False,
):
    """Install the latest agentd and restart the daemon."""
    from ..update import UpdateError, run_daemon_update

    try:
        command = run_daemon_update(quiet=quiet)
    except UpdateError as e:
        rprint(f"[red]Update failed:[/red] {e}")
        raise typer.Exit(1)
    rprint(f"[green]✓[/green] Ran [bold]{command}[/bold], daemon restart requested")
