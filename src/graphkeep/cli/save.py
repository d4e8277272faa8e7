"""Save and overview commands: save, status."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.panel import Panel
from rich.table import Table

from ._common import GRAPHKEEP_HOME, console, format_ms, run_with_runtime, yes_no
from ..errors import GraphkeepError
from ..handles import LocalFileCapability
from ..runtime import PersistenceRuntime


def _load_state(state_file: str) -> dict[str, Any]:
    try:
        data = json.loads(Path(state_file).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.BadParameter(f"cannot read {state_file}: {exc}") from exc
    # accept a previously exported document as well as a bare state
    if isinstance(data, dict) and "state" in data and "format" in data:
        data = data["state"]
    if not isinstance(data, dict):
        raise click.BadParameter(f"{state_file} does not hold a workspace object")
    return data


def register_save_commands(main: click.Group) -> None:
    """Register save/status commands on the main CLI group."""

    @main.command()
    @click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--workspace", "-w", "workspace_id", required=True, help="Workspace id.")
    @click.option("--to", "target", type=click.Path(dir_okay=False), help="Connect this file first.")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    def save(state_file, workspace_id, target, home):
        """Write a workspace state file to the workspace's local file."""
        state = _load_state(state_file)

        async def _save(rt: PersistenceRuntime) -> tuple[bool, Optional[str]]:
            result = await rt.open_workspace(workspace_id)
            if target:
                # verification reads the file, so it has to exist
                Path(target).expanduser().touch(exist_ok=True)
                if not await rt.connect_file(workspace_id, LocalFileCapability(target)):
                    return False, f"Cannot write to {target}"
            elif not result.success:
                return False, result.message or result.error
            try:
                await rt.coordinator.force_save(state)
            except GraphkeepError as exc:
                return False, str(exc)
            handle = rt.workspaces.get_file_handle(workspace_id)
            return True, str(getattr(handle, "path", None) or getattr(handle, "name", ""))

        saved, detail = run_with_runtime(home, _save)
        if not saved:
            console.print(f"[bold red]Not saved:[/] {detail}")
            sys.exit(1)
        console.print(f"\n  [green]Saved[/] {workspace_id} to {detail}\n")

    @main.command()
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    def status(home):
        """Show configuration, credentials and remembered files."""

        async def _status(rt: PersistenceRuntime) -> tuple[dict[str, Any], list]:
            return rt.get_status(), rt.registry.get_all()

        snapshot, records = run_with_runtime(home, _status)
        auth = snapshot["auth"]
        user = (auth.get("user_data") or {}).get("login") or "-"

        console.print()
        console.print(
            Panel(
                f"[bold]graphkeep[/] home {snapshot['home']}\n"
                f"Authenticated: {yes_no(auth['is_authenticated'])} ({user})   "
                f"App installed: {yes_no(auth['app']['is_installed'])}",
                title="graphkeep",
                border_style="bright_blue",
            )
        )

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Workspace", style="cyan")
        table.add_column("File")
        table.add_column("Last accessed", style="dim")
        for record in records:
            table.add_row(record.workspace_id, record.file_name or "-", format_ms(record.last_accessed))
        if records:
            console.print(table)
        else:
            console.print("  [dim]No workspace files remembered.[/]")
        console.print()
