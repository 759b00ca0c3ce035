"""
Command-line interface for gana using Typer.
"""

import time
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import ensure_config, get_config
from .exceptions import AlreadyRunningError, ConfigError, GanaError
from .instance import InstanceStatus, RestartOptions
from .logging_config import setup_cli_logging, setup_daemon_logging
from .settings import SCHEDULER, get_paths

app = typer.Typer(
    name="gana",
    help="Run AI coding assistants side by side, each in its own worktree",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

daemon_app = typer.Typer(
    name="daemon",
    help="Manage the background monitoring daemon",
    no_args_is_help=False,
    invoke_without_command=True,
)
app.add_typer(daemon_app, name="daemon")

console = Console()

STATUS_STYLES = {
    InstanceStatus.RUNNING: "green",
    InstanceStatus.PAUSED: "yellow",
    InstanceStatus.READY: "cyan",
    InstanceStatus.DEAD: "red",
}

RefArgument = Annotated[str, typer.Argument(help="Instance id, id prefix, or title")]


def _open_orchestrator():
    """Build an Orchestrator over the on-disk state."""
    from .orchestrator import Orchestrator
    from .registry import open_registry

    paths = get_paths().ensure()
    config = ensure_config(paths.config_file)
    orchestrator = Orchestrator(open_registry(paths, config), config)
    orchestrator.load()
    return orchestrator


def _fail(message: str) -> None:
    rprint(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show info-level logs")] = False,
):
    """gana keeps several assistants busy at once without them sharing a checkout."""
    import logging

    setup_cli_logging(logging.INFO if verbose else logging.WARNING)


# =============================================================================
# Instance commands
# =============================================================================


@app.command("list")
def list_instances():
    """List instances with their status and diff stats."""
    orchestrator = _open_orchestrator()
    try:
        instances = orchestrator.instances()
        if not instances:
            rprint("[dim]No instances[/dim]")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Program")
        table.add_column("Branch")
        table.add_column("Diff", justify="right")
        for instance in instances:
            stats = orchestrator.workspaces.diff_stats(instance.workspace)
            style = STATUS_STYLES[instance.status]
            table.add_row(
                instance.id[:8],
                instance.title,
                f"[{style}]{instance.status.value}[/{style}]",
                instance.program.value,
                instance.workspace.branch_name,
                f"[green]+{stats.added}[/green] [red]-{stats.removed}[/red]",
            )
        console.print(table)
    finally:
        orchestrator.shutdown()


@app.command("new")
def new_instance(
    title: Annotated[str, typer.Argument(help="Title; also names the branch")],
    prompt: Annotated[
        Optional[str], typer.Option("--prompt", "-p", help="Initial prompt to send")
    ] = None,
    program: Annotated[
        Optional[str], typer.Option("--program", help="Assistant to run (default from config)")
    ] = None,
    repo: Annotated[
        Optional[Path], typer.Option("--repo", "-r", help="Repository (default: current directory)")
    ] = None,
):
    """Create a worktree and launch an assistant in it."""
    orchestrator = _open_orchestrator()
    try:
        with console.status(f"Creating '{title}'..."):
            instance = orchestrator.create_instance(title, prompt=prompt, program=program, repo_root=repo).result()
    except (GanaError, ValueError) as e:
        _fail(str(e))
    finally:
        orchestrator.shutdown()

    rprint(f"[green]✓[/green] Created [bold]{instance.title}[/bold] ({instance.id[:8]})")
    rprint(f"  Branch:   {instance.workspace.branch_name}")
    rprint(f"  Worktree: {instance.workspace.worktree_path}")
    rprint(f"  Session:  {instance.handle_name}")


@app.command("attach")
def attach(ref: RefArgument):
    """Attach to an instance. Press Ctrl-Q to detach."""
    orchestrator = _open_orchestrator()
    try:
        instance = orchestrator.resolve(ref)
        handle = orchestrator.attach(instance.id)
    except GanaError as e:
        orchestrator.shutdown()
        _fail(str(e))

    try:
        reason = handle.run()
    finally:
        orchestrator.shutdown()
    if reason == "exited":
        rprint(f"[dim]Session for '{instance.title}' ended[/dim]")
    else:
        rprint(f"[dim]Detached from '{instance.title}'[/dim]")


def _lifecycle(ref: str, action: str, **kwargs):
    orchestrator = _open_orchestrator()
    try:
        instance = orchestrator.resolve(ref)
        getattr(orchestrator, action)(instance.id, **kwargs)
    except GanaError as e:
        _fail(str(e))
    finally:
        orchestrator.shutdown()
    return instance


@app.command("pause")
def pause(ref: RefArgument):
    """Detach from an instance but leave its assistant running."""
    instance = _lifecycle(ref, "pause")
    rprint(f"[yellow]⏸[/yellow] Paused '{instance.title}'")


@app.command("resume")
def resume(ref: RefArgument):
    """Resume a paused instance."""
    instance = _lifecycle(ref, "resume")
    rprint(f"[green]▶[/green] Resumed '{instance.title}'")


@app.command("start")
def start(ref: RefArgument):
    """Start the assistant again in an instance whose session ended."""
    instance = _lifecycle(ref, "start")
    rprint(f"[green]▶[/green] Started '{instance.title}'")


@app.command("restart")
def restart(
    ref: RefArgument,
    skip_permissions: Annotated[
        bool, typer.Option("--skip-permissions", help="Disable the assistant's permission prompts")
    ] = False,
    resume_conversation: Annotated[
        bool, typer.Option("--resume/--no-resume", help="Continue the previous conversation")
    ] = True,
):
    """Kill the assistant and start a fresh one in the same worktree."""
    options = RestartOptions(skip_permissions=skip_permissions, resume_conversation=resume_conversation)
    instance = _lifecycle(ref, "restart", options=options)
    rprint(f"[green]↻[/green] Restarted '{instance.title}'")


@app.command("kill")
def kill(ref: RefArgument):
    """Kill an instance's assistant. The worktree is kept."""
    instance = _lifecycle(ref, "kill")
    rprint(f"[red]✗[/red] Killed '{instance.title}'")


@app.command("delete")
def delete(
    ref: RefArgument,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Discard uncommitted changes")
    ] = False,
):
    """Kill an instance and delete its worktree and branch."""
    instance = _lifecycle(ref, "delete", force=force)
    rprint(f"[red]✗[/red] Deleted '{instance.title}' and branch {instance.workspace.branch_name}")


@app.command("push")
def push(
    ref: RefArgument,
    message: Annotated[
        Optional[str], typer.Option("--message", "-m", help="Commit message for pending changes")
    ] = None,
):
    """Commit an instance's changes and push its branch to origin."""
    orchestrator = _open_orchestrator()
    try:
        instance = orchestrator.resolve(ref)
        committed = orchestrator.push(instance.id, message)
    except GanaError as e:
        _fail(str(e))
    finally:
        orchestrator.shutdown()
    note = "committed and pushed" if committed else "pushed"
    rprint(f"[green]↑[/green] {escape(instance.workspace.branch_name)} {note}")


@app.command("watch")
def watch(
    interval: Annotated[
        float, typer.Option("--interval", "-i", help="Seconds between refreshes")
    ] = SCHEDULER.interval,
):
    """Refresh instances in the foreground and report status changes."""
    orchestrator = _open_orchestrator()
    rprint("[dim]Watching instances (Ctrl-C to stop)[/dim]")
    try:
        while True:
            orchestrator.tick()
            for update in orchestrator.poll_updates():
                if update.kind == "refreshed":
                    continue
                instance = orchestrator.registry.get(update.instance_id) if update.instance_id else None
                if instance is not None:
                    style = STATUS_STYLES[instance.status]
                    rprint(f"{instance.title}: [{style}]{instance.status.value}[/{style}]")
            time.sleep(interval)
    except KeyboardInterrupt:
        pass
    finally:
        orchestrator.shutdown(wait=False)


# =============================================================================
# Maintenance commands
# =============================================================================


@app.command("debug")
def debug():
    """Print configuration and state locations."""
    from .daemon import get_daemon_pid, is_daemon_running
    from .daemon_state import DaemonState
    from .dependency_check import check_git, check_tmux

    paths = get_paths()
    try:
        config = get_config(paths.config_file, strict=True)
        config_note = ""
    except ConfigError as e:
        config = get_config(paths.config_file)
        config_note = f" [yellow](ignored: {escape(str(e))})[/yellow]"

    rprint(f"Config dir:       {paths.state_dir}")
    rprint(f"Config file:      {paths.config_file}{config_note}")
    rprint(f"Default program:  {config.default_program}")
    rprint(f"Auto-yes:         {config.auto_yes}")
    rprint(f"Poll interval:    {config.daemon_poll_interval}ms")
    rprint(f"Branch prefix:    {config.branch_prefix}")
    rprint(f"Instances file:   {paths.instances_file}")
    rprint(f"Worktrees dir:    {paths.worktrees_dir}")

    for label, check in (("tmux", check_tmux), ("git", check_git)):
        available, path, version = check()
        if available:
            rprint(f"{label + ':':<18}{version or 'unknown version'} ({path})")
        else:
            rprint(f"{label + ':':<18}[red]not found[/red]")

    if is_daemon_running(paths):
        rprint(f"Daemon running:   [green]yes[/green] (PID {get_daemon_pid(paths)})")
        state = DaemonState.load(paths.daemon_state)
        if state and state.last_loop_time:
            rprint(f"Daemon loops:     {state.loop_count} (last {state.last_loop_time:%H:%M:%S})")
    else:
        rprint("Daemon running:   [dim]no[/dim]")


@app.command("reset")
def reset(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Don't ask for confirmation")] = False,
):
    """Kill all sessions, delete all worktrees and forget every instance."""
    from .daemon import is_daemon_running, stop_daemon

    if not yes:
        typer.confirm("Delete every gana session, worktree and branch?", abort=True)

    paths = get_paths()
    if is_daemon_running(paths):
        stop_daemon(paths)
        rprint("[dim]Stopped daemon[/dim]")

    orchestrator = _open_orchestrator()
    try:
        report = orchestrator.reset()
    except GanaError as e:
        _fail(str(e))
    finally:
        orchestrator.shutdown()

    rprint(
        f"[green]✓[/green] Reset complete: {report.instances} instances, "
        f"{report.sessions} stray sessions, {report.worktrees} stray worktrees removed"
    )


# =============================================================================
# Daemon commands
# =============================================================================


@daemon_app.callback(invoke_without_command=True)
def daemon_default(ctx: typer.Context):
    """Show daemon status (default when no subcommand given)."""
    if ctx.invoked_subcommand is None:
        _daemon_status()


@daemon_app.command("start")
def daemon_start():
    """Start the daemon in the background."""
    from .daemon import get_daemon_pid, is_daemon_running, launch_daemon

    paths = get_paths()
    if is_daemon_running(paths):
        rprint(f"[yellow]Daemon already running[/yellow] (PID {get_daemon_pid(paths)})")
        raise typer.Exit(1)

    pid = launch_daemon(paths)
    rprint(f"[green]✓[/green] Daemon started (PID {pid})")


@daemon_app.command("run")
def daemon_run():
    """Run the daemon in the foreground."""
    from .daemon import GanaDaemon

    paths = get_paths().ensure()
    setup_daemon_logging(paths.log_dir / "gana.log")
    daemon = GanaDaemon(paths, get_config(paths.config_file))
    try:
        daemon.run()
    except AlreadyRunningError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@daemon_app.command("stop")
def daemon_stop():
    """Stop the running daemon."""
    from .daemon import get_daemon_pid, is_daemon_running, stop_daemon

    paths = get_paths()
    if not is_daemon_running(paths):
        rprint("[dim]No daemon running[/dim]")
        return

    pid = get_daemon_pid(paths)
    if stop_daemon(paths):
        rprint(f"[green]✓[/green] Daemon stopped (was PID {pid})")
    else:
        rprint("[red]Failed to stop daemon[/red]")
        raise typer.Exit(1)


@daemon_app.command("status")
def daemon_status():
    """Show daemon status."""
    _daemon_status()


def _daemon_status() -> None:
    from .daemon import get_daemon_pid, is_daemon_running
    from .daemon_state import DaemonState

    paths = get_paths()
    if not is_daemon_running(paths):
        rprint("[dim]Daemon is not running[/dim]")
        return

    rprint(f"[green]●[/green] Daemon running (PID {get_daemon_pid(paths)})")
    state = DaemonState.load(paths.daemon_state)
    if state:
        rprint(f"  Loops:            {state.loop_count}")
        rprint(f"  Instances:        {state.instance_count} ({state.live_count} live)")
        rprint(f"  Prompts answered: {state.prompts_answered}")


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
