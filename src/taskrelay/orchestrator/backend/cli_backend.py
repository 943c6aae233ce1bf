"""Subprocess-based executor for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from taskrelay.orchestrator.backend.base import AgentRequest, AgentResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class BackendRunError(RuntimeError):
    """Agent could not be started; ``transient`` tells whether a retry may help."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentExecutor:
    """Render the agent command template and run it with a per-phase timeout.

    Combined stdout/stderr is streamed to
    ``<logs_dir>/<task_id>/phase-<phase>-attempt<N>.log`` and returned as output.
    """

    def __init__(
        self,
        *,
        agent: str,
        command_template: str,
        logs_dir: Path,
        working_dir: Path | None = None,
    ) -> None:
        self.agent = agent
        self.command_template = command_template
        self.logs_dir = logs_dir
        self.working_dir = working_dir

    def invoke(self, request: AgentRequest) -> AgentResult:
        task_logs = self.logs_dir / request.task_id
        task_logs.mkdir(parents=True, exist_ok=True)
        stem = f"phase-{request.phase.index}-{request.phase.value}-attempt{request.attempt}"
        prompt_file = task_logs / f"{stem}.prompt.md"
        log_path = task_logs / f"{stem}.log"
        prompt_file.write_text(request.prompt, "utf-8")

        run_args = _build_run_args(
            command_template=self.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=prompt_file,
        )

        env = os.environ.copy()
        env["TASKRELAY_AGENT"] = self.agent
        env["TASKRELAY_AGENT_MODEL"] = request.model
        env["TASKRELAY_TASK_ID"] = request.task_id
        env["TASKRELAY_PHASE"] = request.phase.value
        env["TASKRELAY_ATTEMPT"] = str(request.attempt)

        logger.info(
            "Invoking %s (%s) for %s %s attempt %d",
            self.agent,
            request.model,
            request.task_id,
            request.phase.label,
            request.attempt,
        )
        started = time.monotonic()
        try:
            with log_path.open("w", encoding="utf-8") as log_handle:
                exit_code, timed_out = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=self.working_dir,
                    timeout_seconds=request.timeout_seconds,
                    output_handle=log_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(f"Agent failed to start: {error}", transient=True) from error

        return AgentResult(
            output=log_path.read_text("utf-8", errors="replace"),
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=timed_out,
            log_path=log_path,
        )


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.", transient=False)
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: int,
    output_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int | None,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=output_handle,
        stderr=subprocess.STDOUT,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            logger.warning("Agent exceeded %ss timeout; terminating", timeout_seconds)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
