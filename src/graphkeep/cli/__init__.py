"""
graphkeep CLI -- inspect and operate the durable persistence state.

Each command group lives in its own module and is registered on the
main group through a ``register_*_commands`` function.

Entry point: graphkeep.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="graphkeep")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose: bool):
    """graphkeep -- workspace persistence and credential resilience.

    Nothing is written twice. Nothing expires silently.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .auth import register_auth_commands
from .handles import register_handles_commands
from .save import register_save_commands

register_auth_commands(main)
register_handles_commands(main)
register_save_commands(main)
