"""Task selection: priority order, dependency gating and lease-guarded claiming."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from taskrelay.orchestrator.locks import LockManager
from taskrelay.orchestrator.models import LockOutcome, TaskRecord, TaskState
from taskrelay.storage.common import utc_now
from taskrelay.storage.task_store import TaskNotFoundError, TaskStore, TaskStoreError
from taskrelay.storage.taskfile import TaskParseError

logger = logging.getLogger(__name__)


class Scheduler:
    """Picks the next eligible todo task and claims it for one worker."""

    def __init__(
        self,
        *,
        task_store: TaskStore,
        lock_manager: LockManager,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.task_store = task_store
        self.lock_manager = lock_manager
        self._clock = clock

    def next_task(self, worker_id: str) -> TaskRecord | None:
        """Claim the highest-priority todo task whose blockers are all done.

        Candidates are ordered by (priority, sequence, id). A candidate lost to a
        concurrent worker is skipped, never retried within the same pass.
        """

        done_ids = self.task_store.ids(TaskState.DONE)
        candidates = sorted(self.task_store.list(TaskState.TODO), key=lambda task: task.sort_key)
        for candidate in candidates:
            missing = candidate.blocked_by - done_ids
            if missing:
                logger.debug(
                    "Skipping %s: waiting on %s",
                    candidate.task_id,
                    ", ".join(sorted(missing)),
                )
                continue
            if self.lock_manager.is_locked(candidate.task_id):
                continue
            if self.lock_manager.acquire(candidate.task_id, worker_id) != LockOutcome.ACQUIRED:
                logger.debug("Lost claim race for %s", candidate.task_id)
                continue

            claimed = self._move_to_doing(candidate.task_id, worker_id)
            if claimed is not None:
                logger.info("Claimed task %s for %s", claimed.task_id, worker_id)
                return claimed
        return None

    def recover_orphans(self, worker_id: str) -> list[str]:
        """Return doing tasks without a valid lease to todo.

        Tasks annotated incomplete are terminal and stay in doing. The reset runs
        under a fresh lease, so concurrent recoveries of one task happen once. A
        record that cannot be read or moved is logged and left for the operator.
        """

        recovered: list[str] = []
        for task_id in sorted(self.task_store.ids(TaskState.DOING)):
            if self.lock_manager.is_locked(task_id):
                continue
            if self.lock_manager.acquire(task_id, worker_id) != LockOutcome.ACQUIRED:
                continue
            try:
                if self._reset_orphan(task_id, worker_id):
                    recovered.append(task_id)
            except (TaskStoreError, TaskParseError) as error:
                logger.warning("Could not recover %s: %s", task_id, error)
            finally:
                self.lock_manager.release(task_id, worker_id)
        return recovered

    def promote_unblocked(self, worker_id: str) -> list[str]:
        """Move blocked tasks whose dependencies are all done into todo."""

        done_ids = self.task_store.ids(TaskState.DONE)
        promoted: list[str] = []
        for task in self.task_store.list(TaskState.BLOCKED):
            if not task.blocked_by or task.blocked_by - done_ids:
                continue
            if self.lock_manager.acquire(task.task_id, worker_id) != LockOutcome.ACQUIRED:
                continue
            try:
                self.task_store.move(task.task_id, TaskState.BLOCKED, TaskState.TODO)
                self.task_store.update(
                    task.task_id,
                    lambda record: record.log(
                        timestamp=self._clock(),
                        title="Unblocked",
                        lines=[f"all dependencies done; promoted to todo by {worker_id}"],
                    ),
                    state=TaskState.TODO,
                )
                promoted.append(task.task_id)
                logger.info("Promoted %s from blocked to todo", task.task_id)
            except TaskStoreError as error:
                logger.warning("Could not promote %s: %s", task.task_id, error)
            finally:
                self.lock_manager.release(task.task_id, worker_id)
        return promoted

    def _move_to_doing(self, task_id: str, worker_id: str) -> TaskRecord | None:
        try:
            self.task_store.move(task_id, TaskState.TODO, TaskState.DOING)
        except TaskStoreError as error:
            logger.warning("Claim of %s abandoned: %s", task_id, error)
            self.lock_manager.release(task_id, worker_id)
            return None

        now = self._clock()

        def _assign(record: TaskRecord) -> None:
            record.started_at = record.started_at or now
            record.assigned_to = worker_id
            record.assigned_at = now
            record.outcome = None
            record.log(timestamp=now, title="Claimed", lines=[f"{worker_id} moved task to doing"])

        return self.task_store.update(task_id, _assign, state=TaskState.DOING)

    def _reset_orphan(self, task_id: str, worker_id: str) -> bool:
        if task_id in self.task_store.ids(TaskState.DONE):
            # Completion died after linking into done; finish it instead of reopening.
            self.task_store.move(task_id, TaskState.DOING, TaskState.DONE)
            return False
        try:
            task = self.task_store.get(task_id, TaskState.DOING)
        except TaskNotFoundError:
            return False
        except TaskParseError as error:
            logger.error("Leaving malformed task %s in doing: %s", task_id, error)
            return False
        if task.is_incomplete:
            return False

        previous_owner = task.assigned_to or "unknown"
        now = self._clock()

        def _unassign(record: TaskRecord) -> None:
            record.unassign()
            record.log(
                timestamp=now,
                title="Returned to todo",
                lines=[
                    f"orphaned: no valid lease held by {previous_owner}",
                    f"reset by {worker_id}",
                ],
            )

        self.task_store.move(task_id, TaskState.DOING, TaskState.TODO)
        self.task_store.update(task_id, _unassign, state=TaskState.TODO)
        logger.warning("Orphaned task %s (owner %s) returned to todo", task_id, previous_owner)
        return True
