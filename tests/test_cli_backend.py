from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskrelay.orchestrator.backend.base import AgentRequest
from taskrelay.orchestrator.backend.cli_backend import (
    BackendRunError,
    CliAgentExecutor,
    _build_run_args,
)
from taskrelay.orchestrator.models import Phase

from conftest import ECHO_AGENT_COMMAND_TEMPLATE

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("CLI Agent Executor"),
]


def _request(**overrides: object) -> AgentRequest:
    values: dict[str, object] = {
        "prompt": "# Phase 4/8: IMPLEMENT\n\nDo the thing.",
        "model": "opus",
        "timeout_seconds": 30,
        "phase": Phase.IMPLEMENT,
        "task_id": "001-a",
        "attempt": 2,
    }
    values.update(overrides)
    return AgentRequest(**values)  # type: ignore[arg-type]


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    prompt_file = tmp_path / "prompt file.md"

    argv = _build_run_args(
        command_template="agent --model {model} -p {prompt} --file {prompt_file}",
        model="opus",
        prompt="fix it; rm -rf /",
        prompt_file=prompt_file,
    )

    assert argv == [
        "agent",
        "--model",
        "opus",
        "-p",
        "fix it; rm -rf /",
        "--file",
        str(prompt_file),
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("agent --model {model}", "must include"),
        ("agent {prompt} {unknown}", "placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error:
        _build_run_args(
            command_template=template,
            model="opus",
            prompt="x",
            prompt_file=tmp_path / "p.md",
        )

    assert error.value.transient is False


def test_invoke_runs_agent_and_writes_logs(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        agent="claude",
        command_template=ECHO_AGENT_COMMAND_TEMPLATE,
        logs_dir=tmp_path / "logs",
        working_dir=tmp_path,
    )

    result = executor.invoke(_request())

    assert result.succeeded
    assert "echo-agent model=opus: # Phase 4/8: IMPLEMENT" in result.output
    task_logs = tmp_path / "logs" / "001-a"
    assert result.log_path == task_logs / "phase-3-implement-attempt2.log"
    assert (task_logs / "phase-3-implement-attempt2.prompt.md").read_text("utf-8").startswith(
        "# Phase 4/8",
    )


def test_invoke_reports_non_zero_exit(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        agent="claude",
        command_template=f"{ECHO_AGENT_COMMAND_TEMPLATE} --exit-code 3 --message 'rate limit'",
        logs_dir=tmp_path / "logs",
    )

    result = executor.invoke(_request())

    assert result.exit_code == 3
    assert not result.succeeded
    assert "rate limit" in result.output


def test_invoke_times_out(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        agent="claude",
        command_template=f"{ECHO_AGENT_COMMAND_TEMPLATE} --sleep-seconds 10",
        logs_dir=tmp_path / "logs",
    )

    result = executor.invoke(_request(timeout_seconds=1))

    assert result.timed_out
    assert result.exit_code == 124


def test_invoke_stops_on_shutdown_request(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        agent="claude",
        command_template=f"{ECHO_AGENT_COMMAND_TEMPLATE} --sleep-seconds 10",
        logs_dir=tmp_path / "logs",
    )

    result = executor.invoke(
        _request(shutdown_requested=lambda: True, graceful_shutdown_seconds=0),
    )

    assert result.timed_out
    assert result.duration_ms < 10_000


def test_missing_agent_binary_is_not_transient(tmp_path: Path) -> None:
    executor = CliAgentExecutor(
        agent="claude",
        command_template="definitely-not-a-real-agent-xyz {prompt}",
        logs_dir=tmp_path / "logs",
    )

    with pytest.raises(BackendRunError, match="not found") as error:
        executor.invoke(_request())

    assert error.value.transient is False

