"""
Command-line entry point for pathdiag.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import click

from pathdiag import __version__
from pathdiag.logging_config import configure_logging
from pathdiag.traceroute.cli import trace


@click.group()
@click.version_option(__version__, prog_name="pathdiag")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Also write a rotating debug log to this file",
)
def main(debug: bool, log_file: str | None):
    """Network path diagnostics.

    Discovers the routers between this host and a destination and
    measures per-hop latency.
    """
    configure_logging(debug=debug, log_file=log_file)


main.add_command(trace)


if __name__ == "__main__":
    main()
