"""
gitalite CLI — run and administer the wiki.

The main Click group is defined here and every subcommand is
registered from its own module.

Entry point: gitalite.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="gitalite")
def main():
    """gitalite: a git-backed personal wiki.

    Pages are plain files in a git repository; logins go through IndieAuth.
    """


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .serve import register_serve_commands
from .vault import register_vault_commands
from .sync import register_sync_commands

register_serve_commands(main)
register_vault_commands(main)
register_sync_commands(main)
