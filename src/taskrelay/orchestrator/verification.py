"""Quality gate: run project checks after a phase and report pass/fail."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from taskrelay.orchestrator.models import VerificationOutcome

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

SAFE_QUALITY_COMMANDS = frozenset(
    {
        "npm", "yarn", "pnpm", "npx", "bun",
        "cargo", "go", "make",
        "pytest", "python", "python3", "ruff", "mypy", "black", "flake8", "pylint", "uv",
        "jest", "eslint", "tsc", "prettier", "vitest", "mocha",
        "shellcheck", "bats",
        "node", "deno", "php", "composer", "ruby", "rake", "bundle",
        "gradle", "mvn", "dotnet",
    },
)  # fmt: skip
# Chaining and redirection run through the shell; only what the segments do is judged.
COMMAND_CHAIN_PATTERN = re.compile(r"\|\||&&|[|;]")
DESTRUCTIVE_COMMANDS = frozenset({"sh", "bash", "zsh", "dash", "fish", "rm", "sudo"})
DANGEROUS_COMMAND_PATTERNS: tuple[str, ...] = (
    "$(",
    "`",
    "curl ",
    "wget ",
    "nc ",
    "bash -c",
    "sh -c",
    "eval ",
    "/dev/",
    "~/",
    "../",
)


class CommandSafety(str, Enum):
    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    DANGEROUS = "dangerous"


class UnsafeQualityCommandError(ValueError):
    """Raised in strict mode when a configured quality command looks dangerous."""


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    output: str
    duration_ms: int
    timed_out: bool = False


@dataclass(slots=True)
class GateResult:
    """Aggregate result of one gate run."""

    outcome: VerificationOutcome
    failing_command: str | None = None
    output: str = ""
    results: list[CommandResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.outcome != VerificationOutcome.FAIL

    @classmethod
    def skipped(cls) -> GateResult:
        return cls(outcome=VerificationOutcome.SKIPPED)

    def describe_failure(self) -> str:
        if self.failing_command is None:
            return "verification failed"
        exit_code = self.results[-1].exit_code if self.results else "?"
        return f"`{self.failing_command}` exited with {exit_code}"


class QualityGateRunner(Protocol):
    def run(self, commands: Sequence[str]) -> GateResult:
        """Run commands in order, stopping at the first failure."""


class CommandGateRunner:
    """Runs quality commands as subprocesses inside the project directory."""

    def __init__(
        self,
        *,
        working_dir: Path,
        command_timeout_seconds: int = 900,
        max_output_chars: int = 4_000,
    ) -> None:
        self.working_dir = working_dir
        self.command_timeout_seconds = command_timeout_seconds
        self.max_output_chars = max_output_chars

    def run(self, commands: Sequence[str]) -> GateResult:
        active = [command.strip() for command in commands if command.strip()]
        if not active:
            return GateResult.skipped()

        results: list[CommandResult] = []
        for command in active:
            result = self._run_command(command)
            results.append(result)
            if result.exit_code != 0:
                logger.info("Quality gate failed: %r exited with %d", command, result.exit_code)
                return GateResult(
                    outcome=VerificationOutcome.FAIL,
                    failing_command=command,
                    output=truncate_tail(result.output, self.max_output_chars),
                    results=results,
                )
        return GateResult(outcome=VerificationOutcome.PASS, results=results)

    def _run_command(self, command: str) -> CommandResult:
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command))
        payload: str | list[str] = command
        if not used_shell:
            try:
                payload = shlex.split(command)
            except ValueError:
                used_shell = True
                payload = command

        started = time.monotonic()
        try:
            proc = subprocess.run(  # noqa: S603
                payload,
                cwd=self.working_dir,
                shell=used_shell,  # noqa: S604
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.command_timeout_seconds,
                env=os.environ.copy(),
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            partial = error.output or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            return CommandResult(
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
                output=f"{partial}\n[timed out after {self.command_timeout_seconds}s]",
                duration_ms=_elapsed_ms(started),
                timed_out=True,
            )
        except FileNotFoundError as error:
            return CommandResult(
                command=command,
                exit_code=127,
                output=f"command not found: {error.filename or command}",
                duration_ms=_elapsed_ms(started),
            )
        return CommandResult(
            command=command,
            exit_code=proc.returncode,
            output=proc.stdout or "",
            duration_ms=_elapsed_ms(started),
        )


def check_quality_command(command: str) -> CommandSafety:
    """Classify a configured quality command against the allowlist and injection patterns.

    Commands chained with ``&&``, ``||``, ``;`` or ``|`` are judged segment by segment,
    so ``pytest -q && ruff check .`` is safe while piping into a shell is not.
    """

    stripped = command.strip()
    if not stripped:
        return CommandSafety.SAFE
    if any(pattern in stripped for pattern in DANGEROUS_COMMAND_PATTERNS):
        return CommandSafety.DANGEROUS
    verdict = CommandSafety.SAFE
    for segment in COMMAND_CHAIN_PATTERN.split(stripped):
        words = segment.split()
        if not words:
            continue
        base_command = os.path.basename(words[0])
        if base_command in DESTRUCTIVE_COMMANDS:
            return CommandSafety.DANGEROUS
        if base_command not in SAFE_QUALITY_COMMANDS:
            verdict = CommandSafety.SUSPICIOUS
    return verdict


def validate_quality_commands(commands: Sequence[str], *, strict: bool) -> None:
    for command in commands:
        safety = check_quality_command(command)
        if safety == CommandSafety.SAFE:
            continue
        if safety == CommandSafety.DANGEROUS and strict:
            raise UnsafeQualityCommandError(
                f"Quality command blocked in strict mode: {command!r}",
            )
        logger.warning("Quality command looks %s: %r", safety.value, command)


def truncate_tail(text: str, limit: int) -> str:
    """Keep the last ``limit`` characters, where test runners print failures."""

    stripped = text.strip()
    if limit <= 0 or len(stripped) <= limit:
        return stripped
    return f"[... {len(stripped) - limit} chars truncated]\n{stripped[-limit:]}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
