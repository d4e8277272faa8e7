"""Credential commands: status, login, install, logout, refresh."""

from __future__ import annotations

import sys
from typing import Any, Optional

import click
from rich.table import Table

from ._common import GRAPHKEEP_HOME, console, format_duration, run_with_runtime, yes_no
from ..errors import CredentialInvalid, TransientIOError
from ..models import AppInstallation
from ..runtime import PersistenceRuntime


def _repo_name(repo: Any) -> str:
    """Repositories are stored as names or as provider repository objects."""
    if isinstance(repo, dict):
        return str(repo.get("full_name") or repo.get("name") or repo.get("id") or "?")
    return str(repo)


def register_auth_commands(main: click.Group) -> None:
    """Register the auth command group."""

    @main.group()
    def auth():
        """Manage remote provider credentials.

        Store, validate and forget the OAuth token and the app
        installation used for repository writes.
        """

    @auth.command("status")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    def auth_status(home):
        """Show stored credentials without touching the network."""

        async def _status(rt: PersistenceRuntime) -> dict[str, Any]:
            return rt.credentials.get_comprehensive_auth_status()

        status = run_with_runtime(home, _status)
        user = (status.get("user_data") or {}).get("login") or "-"
        app = status["app"]

        table = Table(title="Credentials", show_header=False, box=None, padding=(0, 2))
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Authenticated", yes_no(status["is_authenticated"]))
        table.add_row("State", status["state"])
        table.add_row("User", user)
        table.add_row("Method", status.get("auth_method") or "-")
        if status["expiry_time"]:
            table.add_row(
                "Expires",
                f"{status['expiry_time']:%Y-%m-%d %H:%M} (in {format_duration(status['time_to_expiry'])})",
            )
        table.add_row("Needs validation", yes_no(status["needs_refresh"]))
        table.add_row("App installed", yes_no(app["is_installed"]))
        if app["installation"]:
            inst = app["installation"]
            table.add_row("Installation", str(inst["installation_id"]))
            table.add_row("Repositories", ", ".join(_repo_name(r) for r in inst["repositories"]) or "-")

        console.print()
        console.print(table)
        console.print()

    @auth.command("login")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    @click.option("--token", prompt=True, hide_input=True, help="OAuth access token.")
    @click.option("--no-verify", is_flag=True, help="Store without asking the provider who it is.")
    def auth_login(home, token, no_verify):
        """Store an OAuth access token."""

        async def _login(rt: PersistenceRuntime) -> tuple[bool, Optional[str]]:
            user_data = None
            if not no_verify:
                try:
                    user_data = await rt.provider.fetch_user(token)
                except CredentialInvalid as exc:
                    return False, str(exc)
                except TransientIOError as exc:
                    return False, f"Could not reach provider: {exc}"
            stored = rt.credentials.store_token({"access_token": token}, user_data)
            login = (user_data or {}).get("login")
            return stored, login

        stored, detail = run_with_runtime(home, _login)
        if not stored:
            console.print(f"[bold red]Login failed:[/] {detail or 'token not stored'}")
            sys.exit(1)
        console.print(f"\n  [green]Token stored[/] for [bold]{detail or 'unverified user'}[/]\n")

    @auth.command("install")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    @click.option("--installation-id", required=True, help="App installation id.")
    @click.option("--token", prompt=True, hide_input=True, help="Installation access token.")
    @click.option("--repo", multiple=True, help="Repository the installation covers.")
    def auth_install(home, installation_id, token, repo):
        """Store an app installation."""

        async def _install(rt: PersistenceRuntime) -> bool:
            return rt.credentials.store_app_installation(
                AppInstallation(
                    installation_id=installation_id,
                    access_token=token,
                    repositories=list(repo),
                )
            )

        if not run_with_runtime(home, _install):
            console.print("[bold red]Installation not stored.[/]")
            sys.exit(1)
        console.print(f"\n  [green]Installation {installation_id} stored[/] ({len(repo)} repositories)\n")

    @auth.command("logout")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    @click.option("--app", "include_app", is_flag=True, help="Also forget the app installation.")
    def auth_logout(home, include_app):
        """Forget the stored OAuth token."""

        async def _logout(rt: PersistenceRuntime) -> None:
            rt.credentials.clear_tokens()
            if include_app:
                rt.credentials.clear_app_installation()

        run_with_runtime(home, _logout)
        console.print("\n  [yellow]Credentials cleared.[/]\n")

    @auth.command("refresh")
    @click.option("--home", default=GRAPHKEEP_HOME, type=click.Path())
    def auth_refresh(home):
        """Validate the stored token now and extend its expiry."""

        async def _refresh(rt: PersistenceRuntime) -> tuple[str, str]:
            if rt.credentials.get_credential() is None:
                return "absent", "No token stored. Run graphkeep auth login first."
            try:
                result = await rt.credentials.refresh()
            except CredentialInvalid as exc:
                return "invalid", str(exc)
            except TransientIOError as exc:
                return "transient", str(exc)
            return "ok", result["expiry_time"]

        outcome, detail = run_with_runtime(home, _refresh)
        if outcome == "ok":
            console.print(f"\n  [green]Token valid[/], expiry extended to {detail}\n")
            return
        if outcome == "invalid":
            console.print(f"[bold red]Token invalid:[/] {detail}. Credentials cleared; log in again.")
        elif outcome == "transient":
            console.print(f"[yellow]Could not validate:[/] {detail}. Stored token kept.")
        else:
            console.print(f"[red]{detail}[/]")
        sys.exit(1)
