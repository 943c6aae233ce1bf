"""Controllers for taskrelay CLI commands."""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskrelay.config import Settings
from taskrelay.orchestrator.locks import FileLeaseBackend, LockManager, claim_worker_slot
from taskrelay.orchestrator.models import LockOutcome, TaskRecord, TaskState
from taskrelay.orchestrator.sessions import FileSessionStore
from taskrelay.orchestrator.worker import build_worker
from taskrelay.storage.common import to_iso, utc_now
from taskrelay.storage.task_store import FileTaskStore, TaskNotFoundError

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(slots=True)
class RunWorkerCommand:
    """CLI input for worker execution."""

    project_dir: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None
    worker_id: str | None = None


@dataclass(slots=True)
class StatusCommand:
    project_dir: Path | None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for creating a task record."""

    project_dir: Path | None
    task_id: str
    title: str
    body: str
    blocked_by: tuple[str, ...] = ()


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    project_dir: Path | None
    state: str | None
    limit: int


@dataclass(slots=True)
class TaskCommand:
    """CLI input for single-task inspection and reset."""

    project_dir: Path | None
    task_id: str


@dataclass(slots=True)
class LocksCommand:
    project_dir: Path | None


class OrchestratorCliController:
    """Coordinates worker, task and lease CLI operations."""

    def run_worker(self, command: RunWorkerCommand) -> list[str]:
        settings = _settings(command.project_dir)
        with _worker_identity(settings, override=command.worker_id) as worker_id:
            worker = build_worker(settings, worker_id=worker_id)
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls or settings.worker.max_idle_polls,
                )
            )

        return [
            f"Worker summary ({worker_id}): "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"incomplete={summary.incomplete} interrupted={summary.interrupted} "
            f"lease_lost={summary.lease_lost} resumed={summary.resumed} "
            f"orphans_reset={summary.orphans_reset} promoted={summary.promoted} "
            f"idle_polls={summary.idle_polls}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        """Bucket counts, incomplete tasks, leases and worker sessions."""

        settings = _settings(command.project_dir)
        store = _task_store(settings)
        lines = [f"Project: {settings.paths.project_dir}", "Tasks:"]
        for state in TaskState:
            lines.append(f"  {state.value}: {len(store.ids(state))}")
        incomplete = sorted(
            task.task_id for task in store.list(TaskState.DOING) if task.is_incomplete
        )
        lines.append(f"Incomplete: {', '.join(incomplete) if incomplete else '-'}")

        leases = _lock_manager(settings).list_leases()
        stale = sum(1 for _, valid in leases if not valid)
        lines.append(f"Leases: {len(leases)} (stale={stale})")

        sessions_dir = settings.paths.state_dir
        session_store = FileSessionStore(sessions_dir)
        session_files = (
            sorted(sessions_dir.glob("session-*.json")) if sessions_dir.is_dir() else []
        )
        lines.append(f"Sessions: {len(session_files)}")
        for path in session_files:
            session = session_store.load(path.stem.removeprefix("session-"))
            if session is None:
                continue
            phase = session.phase.label if session.phase is not None else "-"
            lines.append(
                f"  {session.worker_id} status={session.status.value} "
                f"task={session.task_id or '-'} phase={phase} "
                f"updated={to_iso(session.updated_at)}",
            )
        return lines

    def add_task(self, command: AddTaskCommand) -> list[str]:
        if not _TASK_ID_RE.match(command.task_id):
            raise ValueError(f"Invalid task id: {command.task_id!r}")
        settings = _settings(command.project_dir)
        store = _task_store(settings)
        blocked_by = set(command.blocked_by)
        waiting = blocked_by - store.ids(TaskState.DONE)
        state = TaskState.BLOCKED if waiting else TaskState.TODO
        record = TaskRecord.new(
            task_id=command.task_id,
            title=command.title,
            state=state,
            body=command.body,
            blocked_by=blocked_by,
            created_at=utc_now(),
        )
        store.add(record)
        return [
            f"Task added: {record.task_id} state={state.value} priority={record.priority}",
            f"File: {store.path_for(record.task_id, state)}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.project_dir)
        store = _task_store(settings)
        states = [TaskState(command.state.lower())] if command.state else list(TaskState)
        tasks: list[TaskRecord] = []
        for state in states:
            tasks.extend(sorted(store.list(state), key=lambda task: task.sort_key))

        shown = tasks[: command.limit]
        lines = [f"Tasks: {len(shown)}"]
        for task in shown:
            flags = " incomplete" if task.is_incomplete else ""
            blockers = ",".join(sorted(task.blocked_by)) or "-"
            lines.append(
                f"  {task.task_id} state={task.state.value}{flags} priority={task.priority} "
                f"assigned_to={task.assigned_to or '-'} blocked_by={blockers}",
            )
        return lines

    def show_task(self, command: TaskCommand) -> list[str]:
        settings = _settings(command.project_dir)
        store = _task_store(settings)
        try:
            task = store.get(command.task_id)
        except TaskNotFoundError:
            return [f"Task not found: {command.task_id}"]

        owner = _lock_manager(settings).owner_of(task.task_id)
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"State: {task.state.value}",
            f"Outcome: {task.outcome.value if task.outcome else '-'}",
            f"Priority: {task.priority}",
            f"Blocked by: {', '.join(sorted(task.blocked_by)) or '-'}",
            f"Assigned to: {task.assigned_to or '-'}",
            f"Lease owner: {owner or '-'}",
            f"Work log entries: {len(task.work_log)}",
        ]
        for entry in task.work_log:
            lines.append(f"  {to_iso(entry.timestamp)} {entry.title}")
            lines.extend(f"    {line}" for line in entry.lines)
        return lines

    def reset_task(self, command: TaskCommand) -> list[str]:
        """Return a doing task (typically incomplete) to todo so it restarts from EXPAND."""

        settings = _settings(command.project_dir)
        store = _task_store(settings)
        locks = _lock_manager(settings)
        if store.locate(command.task_id) != TaskState.DOING:
            raise ValueError(f"Task {command.task_id} is not in doing.")

        operator = f"cli-{os.getpid()}"
        if locks.acquire(command.task_id, operator) != LockOutcome.ACQUIRED:
            raise ValueError(
                f"Task {command.task_id} is leased by {locks.owner_of(command.task_id)}.",
            )
        try:
            now = utc_now()

            def _reset(record: TaskRecord) -> None:
                record.outcome = None
                record.unassign()
                record.log(timestamp=now, title="Reset to todo", lines=[f"by {operator}"])

            store.update(command.task_id, _reset, state=TaskState.DOING)
            store.move(command.task_id, TaskState.DOING, TaskState.TODO)
        finally:
            locks.release(command.task_id, operator)
        return [f"Task re-queued: {command.task_id}"]

    def list_locks(self, command: LocksCommand) -> list[str]:
        settings = _settings(command.project_dir)
        leases = _lock_manager(settings).list_leases()
        now = utc_now()
        lines = [f"Leases: {len(leases)}"]
        for lease, valid in leases:
            lines.append(
                f"  {lease.task_id} owner={lease.owner} pid={lease.pid or '-'} "
                f"age={lease.age_seconds(now):.0f}s {'valid' if valid else 'stale'}",
            )
        return lines

    def sweep_locks(self, command: LocksCommand) -> list[str]:
        settings = _settings(command.project_dir)
        removed = _lock_manager(settings).sweep()
        return [f"Stale leases removed: {len(removed)}", *(f"  {task_id}" for task_id in removed)]


def _settings(project_dir: Path | None) -> Settings:
    settings = Settings.from_env(project_dir=project_dir)
    settings.validate()
    return settings


def _task_store(settings: Settings) -> FileTaskStore:
    store = FileTaskStore(settings.paths.tasks_dir)
    store.init_layout()
    return store


def _lock_manager(settings: Settings) -> LockManager:
    return LockManager(
        FileLeaseBackend(settings.paths.locks_dir),
        lease_timeout_seconds=settings.worker.lease_timeout_seconds,
    )


@contextmanager
def _worker_identity(settings: Settings, *, override: str | None) -> Iterator[str]:
    """Configured worker id, or a ``worker-N`` slot held for the duration of the run."""

    fixed = override or settings.worker.worker_id
    if fixed:
        yield fixed
        return
    slot = claim_worker_slot(settings.paths.locks_dir, max_slots=settings.worker.max_worker_slots)
    try:
        yield slot.worker_id
    finally:
        slot.release()

