"""Agent registry - static catalog of agent roles.

The registry is built once at startup and never mutated afterwards; extending
it returns a new registry. Lookups by name fail loudly, while handoff
resolution always degrades to the default reviewer.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from handoff_orchestrator.constants import DEFAULT_REVIEWER_AGENT, PLANNER_AGENT
from handoff_orchestrator.exceptions import ConfigError, UnknownAgentError
from handoff_orchestrator.models.agent import AgentCapability, AgentDefinition
from handoff_orchestrator.utils.text import mentions_any

logger = logging.getLogger(__name__)

# Keyword routes checked in order by find_agent_for_task
TASK_ROUTES: List[Tuple[Tuple[str, ...], str]] = [
    (("security", "vulnerability", "acl", "permission", "auth"), "security"),
    (("analyze", "analysis", "plan", "design", "architecture"), "architect"),
    (("implement", "create", "build", "fix"), "coder"),
    (("review", "check", "validate", "audit"), "reviewer"),
    (("test", "coverage", "regression"), "tester"),
    (("document", "readme", "explain", "changelog"), "documenter"),
]


class AgentRegistry:
    """Catalog of agent definitions keyed by name."""

    def __init__(
        self,
        agents: Iterable[AgentDefinition],
        planner: str = PLANNER_AGENT,
        default_reviewer: str = DEFAULT_REVIEWER_AGENT,
    ):
        self._agents: Dict[str, AgentDefinition] = {}
        for agent in agents:
            if agent.name in self._agents:
                raise ValueError(f"Duplicate agent definition: {agent.name}")
            self._agents[agent.name] = agent

        for role in (planner, default_reviewer):
            if role not in self._agents:
                raise ValueError(f"Registry is missing required agent '{role}'")
        self.planner_name = planner
        self.default_reviewer_name = default_reviewer

        for agent in self._agents.values():
            for preference in agent.handoff_preferences:
                if preference.target not in self._agents:
                    logger.warning(
                        f"Agent '{agent.name}' prefers unknown handoff target "
                        f"'{preference.target}' for '{preference.keyword}'"
                    )

    @classmethod
    def standard(cls) -> "AgentRegistry":
        """Registry holding the built-in roles."""
        return cls(STANDARD_AGENTS)

    @classmethod
    def with_custom_agents(cls, path: Path, base: Optional["AgentRegistry"] = None) -> "AgentRegistry":
        """Return ``base`` (default: standard roles) extended with agents from a JSON file.

        The file holds a list of agent definitions. A definition whose name
        matches an existing role replaces it.
        """
        base = base or cls.standard()
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            custom = TypeAdapter(List[AgentDefinition]).validate_python(raw)
        except FileNotFoundError:
            raise ConfigError(f"Agents file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in agents file {path}: {e}")
        except ValidationError as e:
            raise ConfigError(f"Invalid agent definitions in {path}: {e}")

        logger.info(f"Loaded {len(custom)} custom agent(s) from {path}")
        return base.extended(custom)

    def extended(self, agents: Iterable[AgentDefinition]) -> "AgentRegistry":
        merged = dict(self._agents)
        for agent in agents:
            merged[agent.name] = agent
        return AgentRegistry(merged.values(), self.planner_name, self.default_reviewer_name)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def get(self, name: str) -> AgentDefinition:
        """Return the named agent or raise :class:`UnknownAgentError`."""
        agent = self._agents.get(name)
        if agent is None:
            raise UnknownAgentError(name)
        return agent

    @property
    def planner(self) -> AgentDefinition:
        return self._agents[self.planner_name]

    @property
    def default_reviewer(self) -> AgentDefinition:
        return self._agents[self.default_reviewer_name]

    def names(self) -> List[str]:
        return list(self._agents)

    def by_capability(self, capability: str) -> List[AgentDefinition]:
        if isinstance(capability, AgentCapability):
            capability = capability.value
        return [agent for agent in self._agents.values() if capability in agent.capabilities]

    def roster(self) -> List[Tuple[str, str]]:
        return [(agent.name, agent.description) for agent in self._agents.values()]

    def find_agent_for_task(self, task_text: str) -> AgentDefinition:
        """Pick a starting agent by keyword, defaulting to the planner."""
        for keywords, agent_name in TASK_ROUTES:
            if agent_name in self._agents and mentions_any(task_text, keywords):
                return self._agents[agent_name]
        return self.planner

    def resolve_handoff(
        self,
        current_agent_name: str,
        reason_text: str,
        target: Optional[str] = None,
    ) -> AgentDefinition:
        """Resolve the next agent for a handoff. Never fails.

        An explicit registered ``target`` wins. An explicit unknown target goes
        to the default reviewer. Without a target, the current agent's
        handoff preferences are scanned for a keyword contained in
        ``reason_text``; no match also goes to the default reviewer.
        """
        if target:
            if target in self._agents:
                return self._agents[target]
            logger.warning(
                f"Unknown handoff target '{target}' from '{current_agent_name}', "
                f"routing to {self.default_reviewer_name}"
            )
            return self.default_reviewer

        current = self._agents.get(current_agent_name)
        if current is not None:
            preferred = current.preferred_target(reason_text)
            if preferred in self._agents:
                return self._agents[preferred]
            if preferred is not None:
                logger.warning(
                    f"Preferred handoff target '{preferred}' of '{current_agent_name}' "
                    f"is not registered, routing to {self.default_reviewer_name}"
                )

        return self.default_reviewer

    def render_prompt(self, agent: AgentDefinition, task: str, conversation_context: str = "") -> str:
        """Build ``agent``'s full prompt with this registry's roster."""
        return agent.build_prompt(task, conversation_context, self.roster())


# =============================================================================
# Built-in roles
# =============================================================================

STANDARD_AGENTS: Tuple[AgentDefinition, ...] = (
    AgentDefinition(
        name="architect",
        description="Software architect for analysis, planning, and design decisions",
        capabilities={AgentCapability.ANALYSIS},
        preferred_model="sonnet",
        estimated_cost_per_turn=0.03,
        prompt_template="""You are a software architect. Your role is to:

1. **Analyze** - Understand the codebase, requirements, and constraints
2. **Plan** - Design solutions and implementation approaches
3. **Guide** - Provide clear direction for implementation

When analyzing a task:
- Explore the relevant code using available tools
- Identify existing patterns and conventions
- Consider impact on existing functionality
- Think about testing requirements

When planning:
- Break the work into clear, ordered steps
- Identify dependencies between steps
- Name the agent best suited to each step

Your output should be a short analysis of the current state followed by a
structured implementation plan.""",
        handoff_preferences={
            "implement": "coder",
            "review": "reviewer",
            "test": "tester",
            "security": "security",
        },
    ),
    AgentDefinition(
        name="coder",
        description="Software engineer for implementation and code changes",
        capabilities={AgentCapability.IMPLEMENTATION},
        preferred_model="sonnet",
        estimated_cost_per_turn=0.08,
        prompt_template="""You are a software engineer. Your role is to:

1. **Implement** - Write clean, tested, production-quality code
2. **Follow patterns** - Match existing code style and conventions
3. **Verify** - Make sure your changes work

Implementation guidelines:
- Read existing code before making changes
- Write minimal, focused changes
- Add tests for new functionality
- Handle errors where they can occur

After implementation, run the relevant tests and report what you ran.""",
        handoff_preferences={
            "review": "reviewer",
            "test": "tester",
            "plan": "architect",
            "design": "architect",
        },
    ),
    AgentDefinition(
        name="reviewer",
        description="Code reviewer for quality assurance and validation",
        capabilities={AgentCapability.REVIEW},
        preferred_model="sonnet",
        estimated_cost_per_turn=0.03,
        prompt_template="""You are a code reviewer. Your role is to:

1. **Review** - Examine changes for correctness and quality
2. **Validate** - Confirm the changes meet the task requirements
3. **Decide** - Approve, or hand back with concrete fixes

Review checklist:
- Correctness, readability, and maintainability
- Security and performance concerns
- Adequate tests

List issues with file:line references, labelled BLOCKER, WARNING, or
SUGGESTION. When other agents failed or stopped without a clear next step,
judge whether the task is complete and say so explicitly.""",
        handoff_preferences={
            "fix": "coder",
            "architecture": "architect",
            "test": "tester",
        },
    ),
    AgentDefinition(
        name="tester",
        description="Test engineer for writing and running tests",
        capabilities={AgentCapability.TESTING},
        preferred_model="sonnet",
        estimated_cost_per_turn=0.04,
        prompt_template="""You are a test engineer. Your role is to:

1. **Exercise** - Run the existing test suite against the change
2. **Extend** - Add tests for behavior the change introduced
3. **Report** - Give PASS or FAIL with the evidence

Include the commands you ran and the relevant output lines.""",
        handoff_preferences={
            "fix": "coder",
            "review": "reviewer",
        },
    ),
    AgentDefinition(
        name="security",
        description="Security specialist for access control and vulnerability review",
        capabilities={AgentCapability.SECURITY, AgentCapability.REVIEW},
        preferred_model="haiku",
        estimated_cost_per_turn=0.02,
        prompt_template="""You are a security specialist.

You focus on:
- Access control and authorization rules
- Input validation and injection risks
- Secrets handling and data exposure

For each finding give the severity (CRITICAL, HIGH, MEDIUM, LOW) and a
concrete remediation step.""",
        handoff_preferences={
            "fix": "coder",
            "architecture": "architect",
        },
    ),
    AgentDefinition(
        name="documenter",
        description="Technical writer for documentation and communication",
        capabilities={AgentCapability.DOCUMENTATION},
        preferred_model="haiku",
        estimated_cost_per_turn=0.02,
        prompt_template="""You are a technical writer. Your role is to:

1. **Document** - Create clear, useful documentation
2. **Explain** - Make complex concepts understandable
3. **Communicate** - Write for your audience

Keep documentation close to the code it describes and include examples.""",
        handoff_preferences={
            "review": "reviewer",
        },
    ),
)
