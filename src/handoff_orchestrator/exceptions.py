"""Exception hierarchy for the handoff orchestrator."""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    pass


class ConfigError(OrchestratorError):
    """Raised when configuration cannot be loaded or validated."""

    pass


# Engine errors are fatal for one turn. ``kind`` becomes ExecutionResult.error.
class EngineError(OrchestratorError):
    """Exception raised when a reasoning-engine turn cannot produce a result."""

    kind = "engine_error"


class EngineSpawnError(EngineError):
    """The engine binary is missing or cannot be executed."""

    kind = "spawn_failure"


class EngineTimeoutError(EngineError):
    """The engine exceeded the turn's wall-clock timeout and was terminated."""

    kind = "timeout"

    def __init__(self, timeout_ms: int, killed: bool = False):
        self.timeout_ms = timeout_ms
        self.killed = killed
        how = "killed" if killed else "terminated"
        super().__init__(f"Engine timed out after {timeout_ms}ms ({how})")


class MalformedOutputError(EngineError):
    """The engine's stdout was not a single JSON object."""

    kind = "malformed_output"


class EngineExitError(EngineError):
    """The engine exited with a nonzero status."""

    kind = "exit_status"

    def __init__(self, returncode: int, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"Engine exited with code {returncode}{detail}")


class EngineReportedError(EngineError):
    """The engine returned a well-formed result flagged with ``is_error``."""

    kind = "engine_error"


class UnknownAgentError(OrchestratorError, KeyError):
    """Raised when an agent name is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown agent: {name}")

    def __str__(self) -> str:
        return f"Unknown agent: {self.name}"


class ConversationStateError(OrchestratorError):
    """Raised when a conversation is mutated in a way its status forbids."""

    pass


class ConversationClosedError(OrchestratorError):
    """Raised to waiters when a conversation is torn down while they wait."""

    def __init__(self, conversation_id: str, reason: Optional[str] = None):
        self.conversation_id = conversation_id
        message = f"Conversation {conversation_id} closed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ConversationNotFoundError(OrchestratorError):
    """Raised when a conversation id is neither in memory nor on disk."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")
