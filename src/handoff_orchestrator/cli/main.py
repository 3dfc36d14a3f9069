"""Entry point for the hoc command line."""

import click

from handoff_orchestrator.cli.commands.agents import agents
from handoff_orchestrator.cli.commands.conversations import continue_, list_, show
from handoff_orchestrator.cli.commands.run import run
from handoff_orchestrator.utils.logging import setup_logging


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr and a log file")
def cli(verbose):
    """Handoff orchestrator: run a task across cooperating agent roles."""
    log_file = setup_logging(verbose=verbose)
    if log_file:
        click.echo(f"Logging to {log_file}", err=True)


cli.add_command(run)
cli.add_command(list_)
cli.add_command(show)
cli.add_command(continue_)
cli.add_command(agents)


if __name__ == "__main__":
    cli()
