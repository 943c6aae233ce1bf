"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from datetime import UTC, datetime, timedelta

import pytest

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskrelay.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file} --model {model}"
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch) -> str:
    """Point the configured agent command at the bundled echo agent."""

    monkeypatch.setenv("TASKRELAY_AGENT_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop TASKRELAY_* variables leaking in from the developer shell."""

    for name in list(os.environ):
        if name.startswith("TASKRELAY_"):
            monkeypatch.delenv(name, raising=False)
