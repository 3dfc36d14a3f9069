"""Configuration loading.

Precedence (highest to lowest): ``HOC_*`` env vars > JSON config file >
defaults from :mod:`handoff_orchestrator.constants`. Empty env vars are
treated as unset.
"""

import json
import os
import shlex
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from handoff_orchestrator.constants import (
    CONTEXT_MAX_MESSAGES,
    DEFAULT_ENGINE_COMMAND,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TURN_TIMEOUT_MS,
    KILL_GRACE_SECONDS,
    MCP_CONFIG_CANDIDATES,
    OUTPUT_DIR_NAME,
)
from handoff_orchestrator.exceptions import ConfigError
from handoff_orchestrator.models.strategy import OrchestratorStrategy

ENV_PREFIX = "HOC_"
TRUTHY_VALUES = {"1", "true", "yes", "on"}


class OrchestratorConfig(BaseModel):
    """Validated runtime configuration."""

    model_config = ConfigDict(extra="forbid")

    engine_command: List[str] = Field(default_factory=lambda: list(DEFAULT_ENGINE_COMMAND), min_length=1)
    model: Optional[str] = None
    working_dir: Path = Field(default_factory=Path.cwd)
    output_dir: Optional[Path] = None
    timeout_ms: int = Field(default=DEFAULT_TURN_TIMEOUT_MS, gt=0)
    kill_grace_seconds: float = Field(default=KILL_GRACE_SECONDS, ge=0)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    context_max_messages: int = Field(default=CONTEXT_MAX_MESSAGES, ge=1)
    strategy: OrchestratorStrategy = OrchestratorStrategy.AUTO
    mcp_config: Optional[Path] = None
    agents_file: Optional[Path] = None
    webhook_url: Optional[str] = None
    verbose: bool = True
    save: bool = True

    @model_validator(mode="after")
    def _derive_paths(self) -> "OrchestratorConfig":
        if self.output_dir is None:
            self.output_dir = self.working_dir / OUTPUT_DIR_NAME
        if self.mcp_config is None:
            self.mcp_config = find_mcp_config(self.working_dir)
        return self


def find_mcp_config(working_dir: Path) -> Optional[Path]:
    """Return the first MCP config file found in ``working_dir``."""
    for name in MCP_CONFIG_CANDIDATES:
        candidate = Path(working_dir) / name
        if candidate.is_file():
            return candidate
    return None


def _parse_env(raw: str, field_name: str) -> object:
    annotation = OrchestratorConfig.model_fields[field_name].annotation
    if annotation is bool:
        return raw.strip().lower() in TRUTHY_VALUES
    if field_name == "engine_command":
        return shlex.split(raw)
    return raw


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: object,
) -> OrchestratorConfig:
    """Load config from an optional JSON file, env vars and explicit overrides.

    ``overrides`` with a value of ``None`` are ignored so CLI options that were
    not given do not mask lower-precedence sources.
    """
    if environ is None:
        environ = os.environ

    data: dict = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a JSON object")

        unknown = set(data) - set(OrchestratorConfig.model_fields)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    for field_name in OrchestratorConfig.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
        if raw is None or raw == "":
            continue
        data[field_name] = _parse_env(raw, field_name)

    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return OrchestratorConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")
