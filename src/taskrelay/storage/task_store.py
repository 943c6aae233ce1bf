"""Task record stores: markdown files in bucket directories, or memory for tests."""

from __future__ import annotations

import copy
import logging
import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Protocol

from taskrelay.orchestrator.models import TaskRecord, TaskState
from taskrelay.storage.common import atomic_write_text
from taskrelay.storage.taskfile import TaskParseError, parse_task, render_task

logger = logging.getLogger(__name__)

BUCKET_DIRS: dict[TaskState, str] = {
    TaskState.BLOCKED: "1.blocked",
    TaskState.TODO: "2.todo",
    TaskState.DOING: "3.doing",
    TaskState.DONE: "4.done",
}
TASK_SUFFIX = ".md"

TaskMutation = Callable[[TaskRecord], None]


class TaskStoreError(RuntimeError):
    """Base error for task store operations."""


class TaskNotFoundError(TaskStoreError):
    def __init__(self, task_id: str, state: TaskState | None = None) -> None:
        where = f" in {state.value}" if state is not None else ""
        super().__init__(f"Task not found{where}: {task_id}")
        self.task_id = task_id
        self.state = state


class TaskCollisionError(TaskStoreError):
    def __init__(self, task_id: str, state: TaskState) -> None:
        super().__init__(f"Task {task_id} already exists in {state.value}")
        self.task_id = task_id
        self.state = state


class TaskStore(Protocol):
    """Persistence contract shared by scheduler, pipeline and CLI."""

    def list(self, state: TaskState) -> Iterator[TaskRecord]:
        """Lazily yield well-formed records of one bucket, ordered by id."""

    def ids(self, state: TaskState) -> set[str]:
        """Task ids present in one bucket, without parsing."""

    def get(self, task_id: str, state: TaskState | None = None) -> TaskRecord:
        """Load one record, searching all buckets when ``state`` is None."""

    def locate(self, task_id: str) -> TaskState | None:
        """Bucket currently holding ``task_id``."""

    def location(self, task_id: str, state: TaskState) -> str:
        """Human-readable address of a record, handed to agents as TASK_FILE."""

    def add(self, record: TaskRecord) -> TaskRecord:
        """Create a new record in ``record.state``."""

    def move(self, task_id: str, from_state: TaskState, to_state: TaskState) -> TaskRecord:
        """Atomically transfer a record between buckets."""

    def update(
        self,
        task_id: str,
        mutate: TaskMutation,
        *,
        state: TaskState | None = None,
    ) -> TaskRecord:
        """Read-modify-write one record in place."""


class FileTaskStore:
    """Markdown task files under ``<root>/{1.blocked,2.todo,3.doing,4.done}``."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def init_layout(self) -> None:
        for dirname in BUCKET_DIRS.values():
            (self.root_dir / dirname).mkdir(parents=True, exist_ok=True)

    def bucket_dir(self, state: TaskState) -> Path:
        return self.root_dir / BUCKET_DIRS[state]

    def path_for(self, task_id: str, state: TaskState) -> Path:
        return self.bucket_dir(state) / f"{task_id}{TASK_SUFFIX}"

    def location(self, task_id: str, state: TaskState) -> str:
        return str(self.path_for(task_id, state))

    def list(self, state: TaskState) -> Iterator[TaskRecord]:
        for path in self._bucket_files(state):
            try:
                yield self._read(path, state=state)
            except FileNotFoundError:
                logger.debug("Task file %s vanished while listing %s", path, state.value)
            except TaskParseError as error:
                logger.warning("Skipping malformed task file: %s", error)

    def ids(self, state: TaskState) -> set[str]:
        return {path.stem for path in self._bucket_files(state)}

    def get(self, task_id: str, state: TaskState | None = None) -> TaskRecord:
        found = state if state is not None else self.locate(task_id)
        if found is None:
            raise TaskNotFoundError(task_id)
        try:
            return self._read(self.path_for(task_id, found), state=found)
        except FileNotFoundError as error:
            raise TaskNotFoundError(task_id, found) from error

    def locate(self, task_id: str) -> TaskState | None:
        for state in reversed(BUCKET_DIRS):
            if self.path_for(task_id, state).exists():
                return state
        return None

    def add(self, record: TaskRecord) -> TaskRecord:
        existing = self.locate(record.task_id)
        if existing is not None:
            raise TaskCollisionError(record.task_id, existing)
        path = self.path_for(record.task_id, record.state)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with path.open("x", encoding="utf-8") as handle:
                handle.write(render_task(record))
        except FileExistsError as error:
            raise TaskCollisionError(record.task_id, record.state) from error
        return record

    def move(self, task_id: str, from_state: TaskState, to_state: TaskState) -> TaskRecord:
        source = self.path_for(task_id, from_state)
        target = self.path_for(task_id, to_state)
        target.parent.mkdir(parents=True, exist_ok=True)
        # link + unlink never clobbers an existing destination, unlike os.rename.
        try:
            os.link(source, target)
        except FileExistsError as error:
            if not _same_file(source, target):
                raise TaskCollisionError(task_id, to_state) from error
            # Left behind by a mover that died between link and unlink.
            logger.warning(
                "Finishing interrupted move of %s: %s -> %s",
                task_id,
                from_state.value,
                to_state.value,
            )
        except FileNotFoundError as error:
            raise TaskNotFoundError(task_id, from_state) from error
        source.unlink(missing_ok=True)
        logger.debug("Moved task %s: %s -> %s", task_id, from_state.value, to_state.value)
        return self.update(task_id, lambda record: None, state=to_state)

    def update(
        self,
        task_id: str,
        mutate: TaskMutation,
        *,
        state: TaskState | None = None,
    ) -> TaskRecord:
        record = self.get(task_id, state)
        bucket = record.state
        mutate(record)
        record.state = bucket
        atomic_write_text(self.path_for(task_id, record.state), render_task(record))
        return record

    def _bucket_files(self, state: TaskState) -> list[Path]:
        directory = self.bucket_dir(state)
        if not directory.is_dir():
            return []
        return sorted(
            path
            for path in directory.iterdir()
            if path.suffix == TASK_SUFFIX and not path.name.startswith(".")
        )

    def _read(self, path: Path, *, state: TaskState) -> TaskRecord:
        text = path.read_text("utf-8")
        record = parse_task(text, state=state, path=str(path))
        if record.task_id != path.stem:
            raise TaskParseError(
                f"ID {record.task_id!r} does not match file name",
                path=str(path),
            )
        return record


class InMemoryTaskStore:
    """Dictionary-backed store with the same semantics as :class:`FileTaskStore`."""

    def __init__(self, records: list[TaskRecord] | None = None) -> None:
        self._buckets: dict[TaskState, dict[str, TaskRecord]] = {
            state: {} for state in BUCKET_DIRS
        }
        for record in records or []:
            self.add(record)

    def list(self, state: TaskState) -> Iterator[TaskRecord]:
        for task_id in sorted(self._buckets[state]):
            record = self._buckets[state].get(task_id)
            if record is not None:
                yield copy.deepcopy(record)

    def ids(self, state: TaskState) -> set[str]:
        return set(self._buckets[state])

    def get(self, task_id: str, state: TaskState | None = None) -> TaskRecord:
        found = state if state is not None else self.locate(task_id)
        if found is None or task_id not in self._buckets[found]:
            raise TaskNotFoundError(task_id, found)
        return copy.deepcopy(self._buckets[found][task_id])

    def locate(self, task_id: str) -> TaskState | None:
        for state in reversed(BUCKET_DIRS):
            if task_id in self._buckets[state]:
                return state
        return None

    def location(self, task_id: str, state: TaskState) -> str:
        return f"memory://{BUCKET_DIRS[state]}/{task_id}{TASK_SUFFIX}"

    def add(self, record: TaskRecord) -> TaskRecord:
        existing = self.locate(record.task_id)
        if existing is not None:
            raise TaskCollisionError(record.task_id, existing)
        self._buckets[record.state][record.task_id] = copy.deepcopy(record)
        return record

    def move(self, task_id: str, from_state: TaskState, to_state: TaskState) -> TaskRecord:
        if task_id in self._buckets[to_state]:
            raise TaskCollisionError(task_id, to_state)
        record = self._buckets[from_state].pop(task_id, None)
        if record is None:
            raise TaskNotFoundError(task_id, from_state)
        record.state = to_state
        self._buckets[to_state][task_id] = record
        return copy.deepcopy(record)

    def update(
        self,
        task_id: str,
        mutate: TaskMutation,
        *,
        state: TaskState | None = None,
    ) -> TaskRecord:
        record = self.get(task_id, state)
        bucket = record.state
        mutate(record)
        record.state = bucket
        self._buckets[record.state][task_id] = copy.deepcopy(record)
        return record


def _same_file(first: Path, second: Path) -> bool:
    try:
        return os.path.samefile(first, second)
    except FileNotFoundError:
        return False
