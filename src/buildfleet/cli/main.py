"""buildfleet CLI: run and manage a build worker."""

from __future__ import annotations

import click

from buildfleet import __version__
from buildfleet.cli.commands.configure import configure
from buildfleet.cli.commands.doctor import doctor
from buildfleet.cli.commands.start import start
from buildfleet.cli.commands.status import status
from buildfleet.cli.commands.stop import stop


@click.group()
@click.version_option(__version__, prog_name="buildfleet")
def cli() -> None:
    """buildfleet: turn this machine into a VM-isolated build worker."""
    pass


# Register subcommands
cli.add_command(configure)
cli.add_command(start)
cli.add_command(stop)
cli.add_command(status)
cli.add_command(doctor)
