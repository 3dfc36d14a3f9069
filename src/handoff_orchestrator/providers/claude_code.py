"""Claude Code engine provider (headless ``claude -p`` invocations)."""

import asyncio
import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from handoff_orchestrator.constants import (
    DEFAULT_ENGINE_COMMAND,
    DEFAULT_ENGINE_MODEL,
    DEFAULT_TURN_TIMEOUT_MS,
    KILL_GRACE_SECONDS,
)
from handoff_orchestrator.exceptions import (
    EngineExitError,
    EngineReportedError,
    EngineSpawnError,
    EngineTimeoutError,
    MalformedOutputError,
)
from handoff_orchestrator.providers.base import BaseEngine, EngineResponse
from handoff_orchestrator.utils.lazy import LazyResource
from handoff_orchestrator.utils.text import tail_excerpt, truncate

logger = logging.getLogger(__name__)

# Env var Claude Code sets in its own shells; left in place it makes a nested
# `claude` refuse to start
NESTED_SESSION_ENV = "CLAUDECODE"

MCP_LOG_MARKER = "[MCP"


class ClaudeCodeEngine(BaseEngine):
    """Spawn the Claude Code CLI once per turn in print mode with JSON output."""

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        working_dir: Optional[Path] = None,
        default_model: str = DEFAULT_ENGINE_MODEL,
        mcp_config: Optional[Path] = None,
        timeout_ms: int = DEFAULT_TURN_TIMEOUT_MS,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
        env: Optional[Dict[str, str]] = None,
    ):
        self.command = list(command or DEFAULT_ENGINE_COMMAND)
        if not self.command:
            raise ValueError("engine command must not be empty")
        self.working_dir = Path(working_dir or Path.cwd())
        self.default_model = default_model
        self.mcp_config = mcp_config
        self.timeout_ms = timeout_ms
        self.kill_grace_seconds = kill_grace_seconds
        self._env = env
        self._binary: LazyResource[str] = LazyResource(self._resolve_binary, name="engine binary")

    async def _resolve_binary(self) -> str:
        """Locate the engine executable on PATH (or verify an explicit path)."""
        executable = self.command[0]
        if os.path.sep in executable:
            if os.path.isfile(executable) and os.access(executable, os.X_OK):
                return executable
            raise EngineSpawnError(f"Engine binary is missing or not executable: {executable}")

        resolved = shutil.which(executable)
        if resolved is None:
            raise EngineSpawnError(f"Engine binary not found on PATH: {executable}")
        logger.info(f"Using engine binary: {resolved}")
        return resolved

    def _build_args(
        self,
        prompt: str,
        session_id: str,
        model: Optional[str] = None,
        resume: bool = False,
    ) -> List[str]:
        """Build engine arguments for one non-interactive turn.

        The prompt goes last, after ``--``, so prompt text starting with a dash
        is never read as an option.
        """
        # --dangerously-skip-permissions: turns run unattended, a permission
        # prompt would block until the turn times out
        args = ["-p", "--output-format", "json", "--dangerously-skip-permissions"]

        if resume:
            args.extend(["--resume", session_id])
        else:
            args.extend(["--session-id", session_id])

        if model and model != self.default_model:
            args.extend(["--model", model])

        if self.mcp_config:
            args.extend(["--mcp-config", str(self.mcp_config)])

        args.extend(["--add-dir", str(self.working_dir)])
        args.append("--")
        args.append(prompt)
        return args

    def _child_env(self) -> Dict[str, str]:
        env = dict(os.environ if self._env is None else self._env)
        env.pop(NESTED_SESSION_ENV, None)
        return env

    async def run(
        self,
        prompt: str,
        session_id: str,
        model: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        resume: bool = False,
    ) -> EngineResponse:
        binary = await self._binary.get()
        argv = [binary, *self.command[1:], *self._build_args(prompt, session_id, model, resume)]
        timeout_ms = timeout_ms or self.timeout_ms

        logger.debug(f"Spawning engine with {len(argv)} args (session {session_id})")
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.working_dir),
                env=self._child_env(),
            )
        except OSError as e:
            raise EngineSpawnError(f"Failed to spawn engine: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"Engine exceeded {timeout_ms}ms (pid {proc.pid}), terminating")
            killed = await self._terminate(proc)
            raise EngineTimeoutError(timeout_ms, killed=killed)
        except asyncio.CancelledError:
            logger.warning(f"Engine turn cancelled (pid {proc.pid}), stopping process")
            await self._terminate(proc)
            raise

        stderr_text = stderr.decode("utf-8", errors="replace")
        self._log_stderr(stderr_text)
        logger.debug(
            f"Engine exited with code {proc.returncode} after {time.monotonic() - start:.1f}s"
        )

        if proc.returncode != 0:
            raise EngineExitError(proc.returncode, tail_excerpt(stderr_text))

        return self._parse_output(stdout.decode("utf-8", errors="replace"), session_id)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> bool:
        """Send SIGTERM, then SIGKILL after the grace window.

        Returns True when the forced kill was needed.
        """
        if proc.returncode is not None:
            return False
        try:
            proc.terminate()
        except ProcessLookupError:
            return False

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
            return False
        except asyncio.TimeoutError:
            logger.warning(
                f"Engine (pid {proc.pid}) ignored SIGTERM for {self.kill_grace_seconds}s, killing"
            )

        try:
            proc.kill()
        except ProcessLookupError:
            return False
        await proc.wait()
        return True

    def _log_stderr(self, stderr_text: str) -> None:
        for line in stderr_text.splitlines():
            if not line.strip():
                continue
            if MCP_LOG_MARKER in line:
                logger.info(f"engine: {line.strip()}")
            else:
                logger.debug(f"engine: {line.rstrip()}")

    @staticmethod
    def _parse_output(stdout: str, session_id: str) -> EngineResponse:
        """Parse the single JSON object the engine prints on completion."""
        text = stdout.strip()
        if not text:
            raise MalformedOutputError("Engine produced no output")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedOutputError(
                f"Failed to parse engine output: {e} (output: {truncate(text, 200)!r})"
            )

        if not isinstance(data, dict):
            raise MalformedOutputError(f"Engine output is not a JSON object: {type(data).__name__}")

        result, cost, turns = _required_fields(data)

        if data.get("is_error"):
            raise EngineReportedError(result or "Unknown error")

        return EngineResponse(
            result=result,
            cost_usd=cost,
            session_id=data.get("session_id") or session_id,
            num_turns=turns,
            is_error=False,
            raw=data,
        )


def _required_fields(data: dict) -> Tuple[str, float, int]:
    result = data.get("result", "")
    if not isinstance(result, str):
        raise MalformedOutputError(f"Engine 'result' is not a string: {type(result).__name__}")

    try:
        cost = float(data.get("total_cost_usd") or 0.0)
        turns = int(data.get("num_turns") or 1)
    except (TypeError, ValueError) as e:
        raise MalformedOutputError(f"Engine output has invalid cost or turn count: {e}")

    if cost < 0:
        raise MalformedOutputError(f"Engine reported negative cost: {cost}")
    return result, cost, turns
