"""kubeloop command-line interface.

Commands:
    kubeloop run [--simulate]     Run the store, controllers and REST API.
    kubeloop version              Print version and exit.

Desired state is submitted through the REST API served by ``run``.
"""

from __future__ import annotations

import asyncio

import click

from kubeloop import __version__


@click.group()
def cli() -> None:
    """kubeloop: declarative workload orchestration."""


# ---------------------------------------------------------------------------
# kubeloop version / run
# ---------------------------------------------------------------------------


@cli.command("version")
def cmd_version() -> None:
    """Print the kubeloop version and exit."""
    click.echo(f"kubeloop {__version__}")


@cli.command("run")
@click.option(
    "--simulate",
    is_flag=True,
    default=False,
    help="Report every bound Pod ready without an external node agent.",
)
def cmd_run(simulate: bool) -> None:
    """Run the store, controllers and REST API until interrupted."""
    from kubeloop.app import main

    asyncio.run(main(simulate=simulate))
