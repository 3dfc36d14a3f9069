"""Extract handoff/completion directives from agent responses.

Agents are asked to finish each turn with a fenced ``turn-result`` block
holding one JSON object. Responses without a valid block are scanned for the
legacy ``HANDOFF:`` / ``REASON:`` / ``COMPLETE:`` lines instead. Either way a
turn yields exactly one of: handoff, completion, or nothing.
"""

import json
import logging
import re
from enum import Enum
from typing import Annotated, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

TURN_RESULT_BLOCK_RE = re.compile(r"```turn-result[ \t]*\n(.*?)```", re.DOTALL)
HANDOFF_RE = re.compile(r"\bHANDOFF:\s*([a-z][a-z0-9_-]*)", re.IGNORECASE)
REASON_RE = re.compile(r"\bREASON:\s*([^\n]+)", re.IGNORECASE)
COMPLETE_RE = re.compile(r"\bCOMPLETE:\s*([^\n]+)", re.IGNORECASE)

NO_REASON = "No reason provided"


class DirectiveKind(str, Enum):
    HANDOFF = "handoff"
    COMPLETE = "complete"
    NONE = "none"


class TurnDirective(BaseModel):
    """The single control signal carried by one agent response."""

    kind: DirectiveKind = DirectiveKind.NONE
    target: Optional[str] = None
    reason: Optional[str] = None
    summary: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def none(cls) -> "TurnDirective":
        return cls()


class _HandoffAction(BaseModel):
    action: Literal["handoff"]
    target: str = Field(min_length=1)
    reason: str = NO_REASON


class _CompleteAction(BaseModel):
    action: Literal["complete"]
    summary: str = ""


class _ContinueAction(BaseModel):
    action: Literal["continue"]


_TurnAction = TypeAdapter(
    Annotated[
        Union[_HandoffAction, _CompleteAction, _ContinueAction],
        Field(discriminator="action"),
    ]
)


class DirectiveParser(Protocol):
    def parse(self, text: str) -> TurnDirective: ...


class LegacyDirectiveParser:
    """Regex scan over free text. ``COMPLETE:`` wins over ``HANDOFF:``."""

    def parse(self, text: str) -> TurnDirective:
        if not text:
            return TurnDirective.none()

        complete_match = COMPLETE_RE.search(text)
        if complete_match:
            return TurnDirective(
                kind=DirectiveKind.COMPLETE,
                summary=complete_match.group(1).strip(),
                source="legacy",
            )

        handoff_match = HANDOFF_RE.search(text)
        if handoff_match:
            reason_match = REASON_RE.search(text)
            return TurnDirective(
                kind=DirectiveKind.HANDOFF,
                target=handoff_match.group(1).strip().lower(),
                reason=reason_match.group(1).strip() if reason_match else NO_REASON,
                source="legacy",
            )

        return TurnDirective.none()


class StructuredDirectiveParser:
    """Read the last valid ``turn-result`` block, else defer to ``fallback``."""

    def __init__(self, fallback: Optional[DirectiveParser] = None):
        self.fallback = fallback if fallback is not None else LegacyDirectiveParser()

    def parse(self, text: str) -> TurnDirective:
        if not text:
            return TurnDirective.none()

        for block in reversed(TURN_RESULT_BLOCK_RE.findall(text)):
            try:
                action = _TurnAction.validate_python(json.loads(block))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.debug(f"Ignoring invalid turn-result block: {e}")
                continue

            if isinstance(action, _HandoffAction):
                return TurnDirective(
                    kind=DirectiveKind.HANDOFF,
                    target=action.target.strip().lower(),
                    reason=action.reason.strip() or NO_REASON,
                    source="trailer",
                )
            if isinstance(action, _CompleteAction):
                return TurnDirective(
                    kind=DirectiveKind.COMPLETE,
                    summary=action.summary.strip(),
                    source="trailer",
                )
            return TurnDirective(source="trailer")

        return self.fallback.parse(text)
