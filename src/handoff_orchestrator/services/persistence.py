"""Durable conversation snapshots.

Each conversation is written as a structured ``conversation-<id>.json`` plus a
human-readable ``conversation-<id>.md`` transcript. Writes go through a
temporary file and an atomic rename so a crash never leaves a half-written
ledger behind.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, List

from pydantic import ValidationError

from handoff_orchestrator.constants import CONVERSATION_FILE_PREFIX
from handoff_orchestrator.exceptions import ConversationNotFoundError, OrchestratorError
from handoff_orchestrator.models.conversation import ConversationInfo, ConversationRecord
from handoff_orchestrator.models.message import MessageRole

if TYPE_CHECKING:
    from handoff_orchestrator.services.conversation import Conversation

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, text: str) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(text, encoding="utf-8")
    os.replace(tmp_path, path)


def render_transcript(record: ConversationRecord) -> str:
    """Render a persisted ledger as a Markdown transcript."""
    lines = [
        f"# Conversation {record.conversation_id}",
        "",
        f"**Task:** {record.task_description or '(none)'}",
        f"**Status:** {record.status.value}",
        f"**Total cost:** ${record.total_cost:.4f}",
    ]
    if record.parent_conversation_id:
        lines.append(f"**Continued from:** {record.parent_conversation_id}")
    if record.agents:
        lines.append(f"**Agents:** {', '.join(record.agents)}")
    lines.extend(["", "---", ""])

    for message in record.messages:
        stamp = message.timestamp.strftime("%H:%M:%S")
        if message.role == MessageRole.AGENT:
            header = f"### [{stamp}] {message.agent_name}"
            if message.cost_usd:
                header += f" (${message.cost_usd:.4f})"
        elif message.role == MessageRole.TOOL_RESULT:
            header = f"#### [{stamp}] Tool `{message.tool_name}` ({message.agent_name})"
        else:
            header = f"### [{stamp}] {message.role.value.replace('_', ' ').title()}"
        lines.extend([header, "", message.content, ""])

    if record.cost_by_agent:
        lines.extend(["---", "", "## Cost by agent", ""])
        for name, cost in record.cost_by_agent.items():
            lines.append(f"- {name}: ${cost:.4f}")
        lines.append("")

    return "\n".join(lines)


class ConversationStore:
    """Reads and writes conversation snapshots under ``output_dir``."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def json_path(self, conversation_id: str) -> Path:
        return self.output_dir / f"{CONVERSATION_FILE_PREFIX}{conversation_id}.json"

    def transcript_path(self, conversation_id: str) -> Path:
        return self.output_dir / f"{CONVERSATION_FILE_PREFIX}{conversation_id}.md"

    def save(self, conversation: "Conversation") -> Path:
        """Persist ``conversation`` and return the JSON path."""
        record = conversation.to_record()
        self.output_dir.mkdir(parents=True, exist_ok=True)

        json_path = self.json_path(record.conversation_id)
        _atomic_write(json_path, record.model_dump_json(indent=2) + "\n")
        _atomic_write(self.transcript_path(record.conversation_id), render_transcript(record))

        logger.info(f"Saved conversation {record.conversation_id} to {json_path}")
        return json_path

    def exists(self, conversation_id: str) -> bool:
        return self.json_path(conversation_id).is_file()

    def load(self, conversation_id: str) -> ConversationRecord:
        path = self.json_path(conversation_id)
        if not path.is_file():
            raise ConversationNotFoundError(conversation_id)
        try:
            return ConversationRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise OrchestratorError(f"Corrupt conversation file {path}: {e}")

    def list(self) -> List[ConversationInfo]:
        """Summaries of every readable snapshot, newest first."""
        if not self.output_dir.is_dir():
            return []

        infos = []
        for path in self.output_dir.glob(f"{CONVERSATION_FILE_PREFIX}*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                record = ConversationRecord.model_validate(data)
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping unreadable conversation file {path}: {e}")
                continue
            infos.append(
                ConversationInfo(
                    conversation_id=record.conversation_id,
                    status=record.status,
                    task_description=record.task_description,
                    message_count=len(record.messages),
                    total_cost=record.total_cost,
                    source="disk",
                    saved_at=record.saved_at,
                )
            )

        infos.sort(key=lambda info: info.saved_at or datetime.min, reverse=True)
        return infos
