"""Run command for the hoc CLI."""

import asyncio

import click

from handoff_orchestrator.config import load_config
from handoff_orchestrator.exceptions import OrchestratorError
from handoff_orchestrator.models.execution import TaskResult
from handoff_orchestrator.models.strategy import OrchestratorStrategy
from handoff_orchestrator.services.orchestrator import Orchestrator

STRATEGY_CHOICES = [s.value for s in OrchestratorStrategy]


def echo_task_result(result: TaskResult) -> None:
    """Print a short human-readable report of a finished task."""
    status = "completed" if result.success else "failed"
    click.echo(f"Conversation {result.conversation_id} {status}")
    if result.strategy:
        click.echo(f"Strategy: {result.strategy.value}")
    if result.outcome:
        click.echo(f"Agent turns: {len(result.outcome.results)}")
        if result.outcome.stop_reason:
            click.echo(f"Stop reason: {result.outcome.stop_reason.value}")
    if result.summary:
        click.echo(f"Total cost: ${result.summary.total_cost:.4f}")
    if result.outcome and result.outcome.summary:
        click.echo("")
        click.echo(result.outcome.summary)
    if result.error:
        click.echo(f"Error: {result.error}", err=True)


@click.command()
@click.argument("task")
@click.option("--strategy", type=click.Choice(STRATEGY_CHOICES), help="Execution strategy (default: auto)")
@click.option("--agent", "agent_name", help="Run a single turn of this agent instead of a strategy")
@click.option("--max-iterations", type=int, help="Upper bound on agent turns in a handoff chain")
@click.option("--timeout-ms", type=int, help="Wall-clock limit for each agent turn")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="JSON config file")
@click.option("--no-save", is_flag=True, help="Do not persist the conversation")
def run(task, strategy, agent_name, max_iterations, timeout_ms, config_path, no_save):
    """Run TASK and print the outcome."""
    try:
        config = load_config(
            config_path,
            strategy=strategy,
            max_iterations=max_iterations,
            timeout_ms=timeout_ms,
            save=False if no_save else None,
        )
        orchestrator = Orchestrator.from_config(config)
    except OrchestratorError as e:
        raise click.ClickException(str(e))

    async def _run() -> TaskResult:
        try:
            if agent_name:
                return await orchestrator.execute_with_agent(agent_name, task)
            return await orchestrator.execute(task)
        finally:
            await orchestrator.close()

    result = asyncio.run(_run())
    echo_task_result(result)
    if not result.success:
        raise SystemExit(1)
