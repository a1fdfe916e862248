"""CLI entry point for inspecting the fetchbot auto-restarter."""

from __future__ import annotations

import json

import psutil
import typer
from rich.console import Console
from rich.table import Table

from fetchbot.config import get_settings
from fetchbot.supervisor.events import EventLogger
from fetchbot.supervisor.state import StateStore

app = typer.Typer(help="fetchbot auto-restart supervisor", no_args_is_help=True)
console = Console()


def _store() -> StateStore:
    config = get_settings().supervisor_config()
    return StateStore(config.state_file, config.pid_file)


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable output"),
) -> None:
    """Show persisted restart state, the pid file and the effective limits."""
    config = get_settings().supervisor_config()
    store = _store()
    stored = store.load_raw()
    effective = store.load()
    pid = store.read_pid()
    alive = pid is not None and psutil.pid_exists(pid)

    summary = {
        "stateFile": str(config.state_file),
        "stored": stored.to_dict() if stored else None,
        "effectiveRestartCount": effective.restart_count if effective else 0,
        "maxRestarts": config.max_restarts,
        "cooldownMs": config.cooldown_ms,
        "pid": pid,
        "pidAlive": alive,
        "config": config.describe(),
    }
    if as_json:
        typer.echo(json.dumps(summary, indent=2))
        return

    console.print("\n[bold cyan]🔄 fetchbot auto-restarter[/bold cyan]\n")
    console.print(f"  State file:    {config.state_file}")
    if stored is None:
        console.print("  Stored state:  [dim]none[/dim]")
    else:
        console.print(f"  Saved at:      {stored.saved_at.isoformat()}")
        console.print(f"  Stored count:  {stored.restart_count}")
    count = summary["effectiveRestartCount"]
    colour = "red" if count >= config.max_restarts else "green"
    console.print(f"  Restarts:      [{colour}]{count}/{config.max_restarts}[/{colour}] today")
    console.print(f"  Cooldown:      {config.cooldown_ms / 1000:.0f}s")
    if pid is None:
        console.print("  Pid file:      [dim]absent[/dim]")
    else:
        state = "[green]running[/green]" if alive else "[red]not running[/red]"
        console.print(f"  Pid:           {pid} ({state})")
    console.print()


@app.command()
def events(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of events to show"),
    event_type: str = typer.Option("", "--type", "-t", help="Only show events of this type"),
) -> None:
    """Show the most recent supervisor events."""
    config = get_settings().supervisor_config()
    entries = EventLogger(config.log_file).read_recent(limit, event_type or None)
    if not entries:
        console.print("[dim]No supervisor events recorded.[/dim]")
        return

    table = Table(title=f"Supervisor events ({config.log_file})")
    table.add_column("Timestamp", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Pid", justify="right")
    table.add_column("Data")
    for entry in entries:
        data = entry.get("data")
        text = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
        table.add_row(
            str(entry.get("timestamp", "")),
            str(entry.get("type", "")),
            str(entry.get("pid", "")),
            (text or "")[:120],
        )
    console.print(table)


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Delete the persisted restart state so the daily count starts from zero."""
    store = _store()
    if not yes and not typer.confirm(f"Delete {store.state_file}?"):
        raise typer.Abort()
    if store.clear():
        console.print(f"[green]✔[/green] Removed {store.state_file}")
    else:
        console.print(f"[dim]No state file at {store.state_file}[/dim]")


@app.command()
def run() -> None:
    """Start the fetchbot host process under the auto-restarter."""
    from fetchbot.main import main

    main()


if __name__ == "__main__":
    app()
