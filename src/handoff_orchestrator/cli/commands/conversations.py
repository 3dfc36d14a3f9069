"""Commands for inspecting and continuing saved conversations."""

import asyncio

import click

from handoff_orchestrator.cli.commands.run import echo_task_result
from handoff_orchestrator.config import load_config
from handoff_orchestrator.exceptions import OrchestratorError
from handoff_orchestrator.models.execution import TaskResult
from handoff_orchestrator.services.orchestrator import Orchestrator
from handoff_orchestrator.services.persistence import ConversationStore, render_transcript
from handoff_orchestrator.utils.text import truncate

config_option = click.option("--config", "config_path", type=click.Path(dir_okay=False), help="JSON config file")


def _store(config_path) -> ConversationStore:
    try:
        return ConversationStore(load_config(config_path).output_dir)
    except OrchestratorError as e:
        raise click.ClickException(str(e))


@click.command(name="list")
@config_option
def list_(config_path):
    """List saved conversations, newest first."""
    infos = _store(config_path).list()
    if not infos:
        click.echo("No saved conversations")
        return
    for info in infos:
        click.echo(
            f"{info.conversation_id}  {info.status.value:<9}  {info.message_count:>3} msgs  "
            f"${info.total_cost:.4f}  {truncate(info.task_description or '', 60)}"
        )


@click.command()
@click.argument("conversation_id")
@click.option("--json", "as_json", is_flag=True, help="Print the structured ledger instead of the transcript")
@config_option
def show(conversation_id, as_json, config_path):
    """Show a saved conversation."""
    try:
        record = _store(config_path).load(conversation_id)
    except OrchestratorError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(record.model_dump_json(indent=2))
    else:
        click.echo(render_transcript(record))


@click.command(name="continue")
@click.argument("conversation_id")
@click.argument("message")
@config_option
def continue_(conversation_id, message, config_path):
    """Send MESSAGE to a saved conversation and run one more agent turn."""
    try:
        orchestrator = Orchestrator.from_config(load_config(config_path))
    except OrchestratorError as e:
        raise click.ClickException(str(e))

    async def _continue() -> TaskResult:
        try:
            return await orchestrator.continue_conversation(conversation_id, message)
        finally:
            await orchestrator.close()

    result = asyncio.run(_continue())
    echo_task_result(result)
    if not result.success:
        raise SystemExit(1)
