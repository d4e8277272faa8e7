"""Shared utilities for all CLI command modules.

Provides the Rich console instance, runtime construction, and the
small async bridge every command uses.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console

from .. import GRAPHKEEP_HOME
from ..handles import LocalFileCapability
from ..runtime import PersistenceRuntime

console = Console()

T = TypeVar("T")


def confirm_access(capability: LocalFileCapability) -> bool:
    """Ask the user before re-granting access to a remembered file."""
    return click.confirm(f"  Allow graphkeep to access {capability.path}?", default=True)


def run_with_runtime(home: str, action: Callable[[PersistenceRuntime], Awaitable[T]]) -> T:
    """Build a runtime for ``home``, run ``action`` against it, then close it.

    Args:
        home: graphkeep home directory.
        action: Coroutine function taking the runtime.

    Returns:
        Whatever ``action`` returned.
    """

    async def _main() -> T:
        runtime = PersistenceRuntime(home=Path(home), prompt=confirm_access)
        try:
            return await action(runtime)
        finally:
            await runtime.aclose()

    return asyncio.run(_main())


def format_ms(epoch_ms: Optional[int]) -> str:
    """Render an epoch-millisecond timestamp for tables."""
    if not epoch_ms:
        return "never"
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def format_duration(ms: int) -> str:
    seconds = max(0, int(ms // 1000))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def yes_no(value: Any) -> str:
    return "[green]yes[/]" if value else "[red]no[/]"


__all__ = [
    "GRAPHKEEP_HOME",
    "confirm_access",
    "console",
    "format_duration",
    "format_ms",
    "run_with_runtime",
    "yes_no",
]
