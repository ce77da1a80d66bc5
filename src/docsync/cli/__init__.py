"""
docsync CLI -- the document sync command line.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: docsync.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="docsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """docsync -- encrypted document sync across your devices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .docs import register_docs_commands
from .settings_cmd import register_settings_commands
from .sync_cmd import register_sync_commands

register_sync_commands(main)
register_docs_commands(main)
register_settings_commands(main)
