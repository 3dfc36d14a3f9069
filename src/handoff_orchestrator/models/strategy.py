"""Strategy and complexity enums."""

from enum import Enum


class OrchestratorStrategy(str, Enum):
    """Top-level execution pattern for a task."""

    SINGLE = "single"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    PLANNER_LED = "planner_led"
    AUTO = "auto"


class TaskComplexity(str, Enum):
    """Heuristic complexity bucket for a task description."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPLORATORY = "exploratory"
