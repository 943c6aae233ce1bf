"""Agent executor interface for phase invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from taskrelay.orchestrator.models import Phase


@dataclass(slots=True)
class AgentRequest:
    """Inputs required to run one agent invocation."""

    prompt: str
    model: str
    timeout_seconds: int
    phase: Phase
    task_id: str
    attempt: int = 1
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentResult:
    """Execution outcome of one agent invocation."""

    output: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False
    log_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class AgentExecutor(Protocol):
    """Protocol implemented by agent runners."""

    def invoke(self, request: AgentRequest) -> AgentResult:
        """Run the agent on a prompt and return its combined output."""
