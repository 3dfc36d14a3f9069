"""Agents command for the hoc CLI."""

import click

from handoff_orchestrator.config import load_config
from handoff_orchestrator.exceptions import OrchestratorError
from handoff_orchestrator.services.agent_registry import AgentRegistry


@click.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="JSON config file")
def agents(config_path):
    """List the registered agent roles."""
    try:
        config = load_config(config_path)
        registry = (
            AgentRegistry.with_custom_agents(config.agents_file)
            if config.agents_file
            else AgentRegistry.standard()
        )
    except OrchestratorError as e:
        raise click.ClickException(str(e))

    for name in registry.names():
        agent = registry.get(name)
        roles = []
        if name == registry.planner_name:
            roles.append("planner")
        if name == registry.default_reviewer_name:
            roles.append("default reviewer")
        suffix = f" [{', '.join(roles)}]" if roles else ""
        click.echo(f"{name}{suffix}: {agent.description}")
        click.echo(f"    model: {agent.preferred_model}  capabilities: {', '.join(sorted(agent.capabilities))}")
        if agent.handoff_preferences:
            prefs = ", ".join(f"{p.keyword}->{p.target}" for p in agent.handoff_preferences)
            click.echo(f"    handoffs: {prefs}")
