"""Constants for the handoff orchestrator (HOC).

This module defines the configuration defaults used throughout HOC, including
directory paths, reasoning-engine settings, handoff-loop limits, and agent
role names.

HOC coordinates several specialized agent roles on one task by invoking a
headless reasoning-engine CLI once per agent turn and routing control between
roles until the task is judged complete.
"""

from pathlib import Path


# =============================================================================
# Application Directory Structure
# =============================================================================
# Base directory for user-level HOC data (~/.handoff-orchestrator)
HOC_HOME_DIR = Path.home() / ".handoff-orchestrator"

# Log file directory
LOG_DIR = HOC_HOME_DIR / "logs"

# Per-project output directory name; conversations are persisted under
# <working_dir>/.handoff-orchestrator unless configured otherwise
OUTPUT_DIR_NAME = ".handoff-orchestrator"

# Persisted conversation file prefix: conversation-<id>.json / .md
CONVERSATION_FILE_PREFIX = "conversation-"

# =============================================================================
# Reasoning Engine Configuration
# =============================================================================
# Command used to spawn the engine; extra arguments are appended per turn
DEFAULT_ENGINE_COMMAND = ["claude"]

# Model the engine uses when no --model flag is passed
DEFAULT_ENGINE_MODEL = "sonnet"

# Hard wall-clock limit for a single agent turn (milliseconds)
DEFAULT_TURN_TIMEOUT_MS = 300_000

# Seconds to wait after SIGTERM before escalating to SIGKILL
KILL_GRACE_SECONDS = 5

# MCP config files picked up automatically from the working directory
MCP_CONFIG_CANDIDATES = ("mcp-config.json", ".mcp-config.json")

# Tool names the executor records when an agent response mentions them
TRACKED_TOOL_NAMES = (
    "trace_component_impact",
    "trace_table_dependencies",
    "trace_full_lineage",
    "validate_change_impact",
    "query_table_schema",
    "analyze_script_crud",
    "refresh_dependency_cache",
)

# =============================================================================
# Handoff Loop Configuration
# =============================================================================
# Upper bound on agent turns in one sequential run
DEFAULT_MAX_ITERATIONS = 10

# Number of ledger messages rendered into each agent's prompt
CONTEXT_MAX_MESSAGES = 20

# Truncation limits used when rendering conversation context
AGENT_CONTEXT_CHARS = 500
AUX_CONTEXT_CHARS = 200

# Task text sent to every turn after the first one in a sequence
CONTINUE_TASK_PROMPT = "Continue with the task based on prior conversation."

# =============================================================================
# Agent Roles
# =============================================================================
# Fallback when no keyword routes a task to a specific role
PLANNER_AGENT = "architect"

# Recovery agent for failures, unknown handoff targets, and missing directives
DEFAULT_REVIEWER_AGENT = "reviewer"

# Implementation agent that executes a planner-led plan
IMPLEMENTER_AGENT = "coder"

# Fixed pair used by the parallel strategy
PARALLEL_AGENTS = ("coder", "reviewer")

# =============================================================================
# Observer Configuration
# =============================================================================
# Events buffered per subscriber before the oldest ones are dropped
EVENT_BUFFER_SIZE = 1000

# Timeout for webhook event delivery (seconds)
WEBHOOK_TIMEOUT_SECONDS = 10.0

# Upper bound on how long an observer may keep draining after its task ends
OBSERVER_DRAIN_SECONDS = 2.0
