"""Agent executor implementations."""

from taskrelay.orchestrator.backend.base import AgentExecutor, AgentRequest, AgentResult
from taskrelay.orchestrator.backend.cli_backend import BackendRunError, CliAgentExecutor

__all__ = [
    "AgentExecutor",
    "AgentRequest",
    "AgentResult",
    "BackendRunError",
    "CliAgentExecutor",
]
