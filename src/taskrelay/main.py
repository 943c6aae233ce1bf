"""CLI entrypoint for taskrelay."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskrelay import __version__
from taskrelay.orchestrator.controllers import (
    AddTaskCommand,
    ListTasksCommand,
    LocksCommand,
    OrchestratorCliController,
    RunWorkerCommand,
    StatusCommand,
    TaskCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CommandT = TypeVar("CommandT")

project_dir_option = click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root holding `.taskrelay/`. Defaults to `TASKRELAY_PROJECT_DIR` or cwd.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskrelay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to `TASKRELAY_LOG_LEVEL` or INFO.",
)
def taskrelay(log_level: str | None) -> None:
    """Filesystem-coordinated workers that drive tasks through an 8-phase agent pipeline."""

    level = (log_level or os.getenv("TASKRELAY_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


@taskrelay.command("run")
@project_dir_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one resume/claim cycle or loop until the queue is idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive empty polls before exiting. Defaults to `TASKRELAY_MAX_IDLE_POLLS`.",
)
@click.option(
    "--worker-id",
    default=None,
    help="Fixed worker id. Without it a free `worker-N` slot is claimed.",
)
def run_worker(
    project_dir: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    worker_id: str | None,
) -> None:
    """Run a worker: resume its session, recover orphans, then claim and run tasks."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.run_worker,
            RunWorkerCommand(
                project_dir=project_dir,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                worker_id=worker_id,
            ),
        ),
    )


@taskrelay.command("status")
@project_dir_option
def status(project_dir: Path | None) -> None:
    """Show bucket counts, leases and worker sessions."""

    _emit_lines(_call(ORCHESTRATOR_CONTROLLER.status, StatusCommand(project_dir=project_dir)))


@taskrelay.group()
def tasks() -> None:
    """Task record commands."""


@tasks.command("add")
@project_dir_option
@click.option("--id", "task_id", required=True, help="Task id, e.g. `010-002-add-login`.")
@click.option("--title", required=True, help="Short task title.")
@click.option("--body", default="", help="Request text handed to every phase.")
@click.option(
    "--blocked-by",
    multiple=True,
    help="Task id that must be done first. Can be repeated.",
)
def tasks_add(
    project_dir: Path | None,
    task_id: str,
    title: str,
    body: str,
    blocked_by: tuple[str, ...],
) -> None:
    """Create a task in todo, or in blocked while a dependency is not done."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.add_task,
            AddTaskCommand(
                project_dir=project_dir,
                task_id=task_id,
                title=title,
                body=body,
                blocked_by=blocked_by,
            ),
        ),
    )


@tasks.command("list")
@project_dir_option
@click.option(
    "--state",
    type=click.Choice(["blocked", "todo", "doing", "done"], case_sensitive=False),
    default=None,
    help="Optional bucket filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(project_dir: Path | None, state: str | None, limit: int) -> None:
    """List tasks in scheduling order."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.list_tasks,
            ListTasksCommand(project_dir=project_dir, state=state, limit=limit),
        ),
    )


@tasks.command("show")
@project_dir_option
@click.argument("task_id")
def tasks_show(project_dir: Path | None, task_id: str) -> None:
    """Show one task with its work log."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.show_task,
            TaskCommand(project_dir=project_dir, task_id=task_id),
        ),
    )


@tasks.command("reset")
@project_dir_option
@click.argument("task_id")
def tasks_reset(project_dir: Path | None, task_id: str) -> None:
    """Move a doing or incomplete task back to todo."""

    _emit_lines(
        _call(
            ORCHESTRATOR_CONTROLLER.reset_task,
            TaskCommand(project_dir=project_dir, task_id=task_id),
        ),
    )


@taskrelay.group()
def locks() -> None:
    """Lease commands."""


@locks.command("list")
@project_dir_option
def locks_list(project_dir: Path | None) -> None:
    """List task leases with owner, age and validity."""

    _emit_lines(_call(ORCHESTRATOR_CONTROLLER.list_locks, LocksCommand(project_dir=project_dir)))


@locks.command("sweep")
@project_dir_option
def locks_sweep(project_dir: Path | None) -> None:
    """Delete every stale lease now instead of waiting for the next reader."""

    _emit_lines(
        _call(ORCHESTRATOR_CONTROLLER.sweep_locks, LocksCommand(project_dir=project_dir)),
    )


def _call(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskrelay()
