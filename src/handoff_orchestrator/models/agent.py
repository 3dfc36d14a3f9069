"""Agent role definitions."""

from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from handoff_orchestrator.constants import DEFAULT_ENGINE_MODEL

AGENT_NAME_PATTERN = r"^[a-z][a-z0-9_-]*$"


class AgentCapability(str, Enum):
    """Capability tags attached to agent roles."""

    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    TESTING = "testing"
    SECURITY = "security"
    DOCUMENTATION = "documentation"


class HandoffPreference(BaseModel):
    """Route to ``target`` when a handoff reason mentions ``keyword``."""

    model_config = ConfigDict(frozen=True)

    keyword: str = Field(min_length=1)
    target: str = Field(pattern=AGENT_NAME_PATTERN)

    @field_validator("keyword")
    @classmethod
    def _lower_keyword(cls, value: str) -> str:
        return value.strip().lower()


class AgentDefinition(BaseModel):
    """Immutable definition of one agent role.

    ``handoff_preferences`` accepts a mapping of reason keyword to target agent
    name and is stored as an ordered tuple so the definition stays immutable.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(pattern=AGENT_NAME_PATTERN)
    description: str = ""
    capabilities: FrozenSet[str] = frozenset()
    prompt_template: str = Field(min_length=1)
    preferred_model: str = DEFAULT_ENGINE_MODEL
    estimated_cost_per_turn: float = Field(default=0.05, ge=0)
    handoff_preferences: Tuple[HandoffPreference, ...] = ()
    mcp_tools: Tuple[str, ...] = ()

    @field_validator("capabilities", mode="before")
    @classmethod
    def _normalize_capabilities(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        return frozenset(c.value if isinstance(c, AgentCapability) else c for c in value)

    @field_validator("handoff_preferences", mode="before")
    @classmethod
    def _preferences_from_mapping(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return tuple({"keyword": k, "target": v} for k, v in value.items())
        return value

    def preferred_target(self, reason: str) -> Optional[str]:
        """Return the first preferred target whose keyword occurs in ``reason``."""
        reason_lower = (reason or "").lower()
        for preference in self.handoff_preferences:
            if preference.keyword in reason_lower:
                return preference.target
        return None

    def build_prompt(
        self,
        task: str,
        conversation_context: str = "",
        roster: Iterable[Tuple[str, str]] = (),
    ) -> str:
        """Assemble the role prompt, prior conversation, task, and protocol."""
        parts = [self.prompt_template]

        if conversation_context:
            parts.append("\n---\n## Prior Conversation\n" + conversation_context)

        parts.append("\n---\n## Your Task\n" + task)

        if self.mcp_tools:
            parts.append(
                "\n---\n## Tools\nPrefer these tools when they apply: "
                + ", ".join(self.mcp_tools)
            )

        roster_lines = "\n".join(
            f"- **{name}**: {description}" for name, description in roster if name != self.name
        )
        parts.append(_PROTOCOL_TEMPLATE.format(roster=roster_lines or "- (none)"))
        return "\n".join(parts)


_PROTOCOL_TEMPLATE = """
---
## Communication Protocol

You are part of a multi-agent team. Follow these communication rules:

1. **State your understanding** - Start by summarizing what needs to be done
2. **Report your findings** - Share what you discovered or implemented
3. **Finish with exactly one turn result** - End your response with a fenced
   block tagged `turn-result` containing one JSON object:

   ```turn-result
   {{"action": "handoff", "target": "<agent-name>", "reason": "<why>"}}
   ```

   Use `"action": "complete"` with a `"summary"` when the task is done, or
   `"action": "continue"` if you need another turn yourself.

If you cannot produce the block, use these lines instead:

   HANDOFF: [agent-name]
   REASON: [why this agent should continue]

   or

   COMPLETE: [summary of what was accomplished]

Available agents you can hand off to:
{roster}
"""
