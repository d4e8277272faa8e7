"""File handle commands: list, check, forget."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ._common import GRAPHKEEP_HOME, console, format_ms, run_with_runtime
from ..models import FileHandleRecord, RestoreResult
from ..runtime import PersistenceRuntime


def register_handles_commands(main: click.Group) -> None:
    """Register the handles command group."""

    @main.group()
    def handles():
        """Inspect remembered workspace files."""

    @handles.command("list")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    def handles_list(home):
        """List every workspace file on record, most recent first."""

        async def _list(rt: PersistenceRuntime) -> list[FileHandleRecord]:
            return rt.registry.get_all()

        records = run_with_runtime(home, _list)
        if not records:
            console.print("\n  [dim]No workspace files remembered yet.[/]\n")
            return

        table = Table(title="Workspace Files")
        table.add_column("Workspace", style="cyan")
        table.add_column("File", style="bold")
        table.add_column("Kind")
        table.add_column("Path", style="dim")
        table.add_column("Last accessed")
        for record in records:
            table.add_row(
                record.workspace_id,
                record.file_name or "-",
                record.kind,
                record.path or "-",
                format_ms(record.last_accessed),
            )

        console.print()
        console.print(table)
        console.print()

    @handles.command("check")
    @click.argument("workspace_id")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    def handles_check(workspace_id, home):
        """Try to regain access to a workspace's file."""

        async def _check(rt: PersistenceRuntime) -> RestoreResult:
            return await rt.registry.restore_handle(workspace_id)

        result = run_with_runtime(home, _check)
        if result.success:
            path = getattr(result.handle, "path", None) or result.handle.name
            console.print(f"\n  [green]Accessible:[/] {path}\n")
            return
        if result.needs_reconnect:
            console.print(f"\n  [yellow]{result.message}[/]\n")
        else:
            console.print(f"\n  [red]{result.error or result.message}[/]\n")
        sys.exit(1)

    @handles.command("forget")
    @click.argument("workspace_id", required=False)
    @click.option("--all", "forget_all", is_flag=True, help="Forget every workspace file.")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    def handles_forget(workspace_id, forget_all, home):
        """Forget a workspace's file (or all of them)."""
        if not workspace_id and not forget_all:
            console.print("[red]Give a workspace id or --all.[/]")
            sys.exit(1)

        async def _forget(rt: PersistenceRuntime) -> int:
            if forget_all:
                return rt.registry.clear_all()
            return 1 if rt.registry.remove(workspace_id) else 0

        removed = run_with_runtime(home, _forget)
        if not removed and not forget_all:
            console.print(f"[red]No file remembered for[/] {workspace_id}")
            sys.exit(1)
        console.print(f"\n  [green]Forgot {removed} workspace file(s).[/]\n")
