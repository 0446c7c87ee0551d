from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shlex
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from ..cancellation import CancellationToken
from ..errors import AgentError, CancellationError, ErrorType
from ..settings import StudyGraphSettings
from .schemas import AgentModel
from .snapshot import RESULT_FILE, write_mcp_config, write_snapshot, write_system_prompt
from .tasks import AgentTask

logger = logging.getLogger(__name__)

PASSTHROUGH_ENV = ("PATH", "HOME", "SHELL", "TERM")
ERROR_OUTPUT_LIMIT = 500


@dataclass(slots=True)
class AgentOutcome:
    """``result`` is None when the agent exited cleanly without submitting."""

    result: AgentModel | None
    attempts: int


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, AgentError) and exc.error_type.retryable


def _slug(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", label).strip("-")[:60] or "agent"


class AgentRunner:
    """Runs one agent task as a supervised subprocess.

    Every attempt gets a fresh temporary directory with a new snapshot, a
    tool-server config and the system prompt; the directory is removed when
    the attempt ends. Retries cover ``llm_error`` and ``parse_error`` only.
    """

    def __init__(
        self,
        *,
        command: str = "claude",
        model: str = "sonnet",
        blocked_tools: Sequence[str] = (),
        max_attempts: int = 3,
        retry_wait_s: float = 1.0,
        timeout_s: float = 1800.0,
    ):
        self.command = shlex.split(command)
        self.model = model
        self.blocked_tools = list(blocked_tools)
        self.max_attempts = max_attempts
        self.retry_wait_s = retry_wait_s
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls, s: StudyGraphSettings) -> AgentRunner:
        return cls(
            command=s.agent_command,
            model=s.agent_model,
            blocked_tools=s.agent_blocked_tools,
            max_attempts=s.agent_max_attempts,
            retry_wait_s=s.agent_retry_wait_s,
            timeout_s=s.agent_timeout_s,
        )

    async def run(
        self,
        task: AgentTask,
        token: CancellationToken | None = None,
        *,
        log_dir: Path | None = None,
    ) -> AgentOutcome:
        attempt_no = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry_wait_s, max=30.0 * self.retry_wait_s, jitter=self.retry_wait_s
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_no = attempt.retry_state.attempt_number
                    if attempt_no > 1:
                        logger.info(
                            "Retrying %s agent for %s (attempt %d/%d)",
                            task.kind,
                            task.label,
                            attempt_no,
                            self.max_attempts,
                        )
                    result = await self._attempt(task, token, attempt_no, log_dir)
        except AgentError as e:
            e.attempts = attempt_no
            logger.error("%s agent for %s failed after %d attempt(s): %s", task.kind, task.label, attempt_no, e)
            raise
        return AgentOutcome(result=result, attempts=attempt_no)

    def build_argv(self, task: AgentTask, mcp_config: Path, system_prompt: Path) -> list[str]:
        argv = [
            *self.command,
            "--print",
            "--output-format",
            "text",
            "--model",
            self.model,
            "--mcp-config",
            str(mcp_config),
            "--strict-mcp-config",
            "--dangerously-skip-permissions",
            "--max-turns",
            str(task.max_turns),
        ]
        if self.blocked_tools:
            argv += ["--disallowedTools", *self.blocked_tools]
        argv += [
            "--setting-sources",
            "",
            "--no-session-persistence",
            "--append-system-prompt-file",
            str(system_prompt),
            task.instruction,
        ]
        return argv

    async def _attempt(
        self,
        task: AgentTask,
        token: CancellationToken | None,
        attempt_no: int,
        log_dir: Path | None,
    ) -> AgentModel | None:
        if token is not None:
            token.raise_if_cancelled(f"{task.kind} for {task.label} cancelled before start")

        workdir = Path(tempfile.mkdtemp(prefix=f"studygraph-{task.kind}-"))
        try:
            snapshot = await asyncio.to_thread(task.build_snapshot)
            write_snapshot(workdir, snapshot)
            mcp_config = write_mcp_config(workdir, f"studygraph-{task.kind}")
            system_prompt = write_system_prompt(workdir, task.system_prompt)
            argv = self.build_argv(task, mcp_config, system_prompt)

            if token is not None:
                token.raise_if_cancelled(f"{task.kind} for {task.label} cancelled before start")
            logger.info("Starting %s agent for %s (max_turns=%d)", task.kind, task.label, task.max_turns)
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(workdir),
                    env={k: os.environ[k] for k in PASSTHROUGH_ENV if k in os.environ},
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise AgentError(f"{task.kind} agent spawn error: {e}", ErrorType.LLM_ERROR) from e

            stdout, stderr = await self._supervise(proc, task, token)
            if log_dir is not None:
                self._write_log(log_dir, task, attempt_no, proc.returncode, stdout, stderr)

            if proc.returncode != 0:
                output = (stderr or stdout)[:ERROR_OUTPUT_LIMIT]
                raise AgentError(
                    f"{task.kind} agent exited with code {proc.returncode}: {output}", ErrorType.LLM_ERROR
                )
            return self._read_result(task, workdir)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def _supervise(
        self, proc: asyncio.subprocess.Process, task: AgentTask, token: CancellationToken | None
    ) -> tuple[str, str]:
        """Wait for exit; kill on abort or timeout without draining output."""
        comm = asyncio.ensure_future(proc.communicate())
        abort = asyncio.ensure_future(token.wait_aborted()) if token is not None else None
        waiters = {comm} if abort is None else {comm, abort}
        try:
            done, _ = await asyncio.wait(waiters, timeout=self.timeout_s, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if abort is not None:
                abort.cancel()
            if not comm.done():
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                comm.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await comm
                await proc.wait()

        if comm in done:
            out, err = comm.result()
            return out.decode("utf-8", "replace"), err.decode("utf-8", "replace")
        if abort is not None and abort in done:
            logger.info("Killed %s agent for %s (cancelled)", task.kind, task.label)
            raise CancellationError(f"{task.kind} for {task.label} cancelled")
        logger.warning("Killed %s agent for %s after %.0fs timeout", task.kind, task.label, self.timeout_s)
        raise AgentError(f"{task.kind} agent timed out after {self.timeout_s:.0f}s", ErrorType.LLM_ERROR)

    def _read_result(self, task: AgentTask, workdir: Path) -> AgentModel | None:
        path = workdir / RESULT_FILE
        if not path.exists():
            logger.info("%s agent for %s produced no output", task.kind, task.label)
            return None
        try:
            return task.result_model.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise AgentError(f"{task.kind} result failed validation: {e}", ErrorType.PARSE_ERROR) from e

    def _write_log(
        self, log_dir: Path, task: AgentTask, attempt_no: int, returncode: int | None, stdout: str, stderr: str
    ) -> None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            path = log_dir / f"{task.kind}-{_slug(task.label)}-attempt{attempt_no}.log"
            path.write_text(
                f"exit code: {returncode}\n\n--- stdout ---\n{stdout}\n--- stderr ---\n{stderr}\n",
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Could not write agent log for %s: %s", task.label, e)
