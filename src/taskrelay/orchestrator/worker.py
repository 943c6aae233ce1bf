"""Worker process loop: resume, recover orphans, claim and run tasks."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from taskrelay.config import Settings
from taskrelay.orchestrator.backend import AgentExecutor, CliAgentExecutor
from taskrelay.orchestrator.backoff import ModelBackoffManager
from taskrelay.orchestrator.locks import FileLeaseBackend, LockManager
from taskrelay.orchestrator.models import PipelineStatus, SessionStatus, TaskState
from taskrelay.orchestrator.pipeline import PhasePipeline, PipelineRunResult, build_phase_specs
from taskrelay.orchestrator.prompts import TemplatePromptResolver
from taskrelay.orchestrator.routing import AgentRouting
from taskrelay.orchestrator.scheduler import Scheduler
from taskrelay.orchestrator.sessions import FileSessionStore, SessionRecorder
from taskrelay.orchestrator.verification import CommandGateRunner, QualityGateRunner
from taskrelay.storage.task_store import FileTaskStore, TaskNotFoundError, TaskStore
from taskrelay.storage.taskfile import TaskParseError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    incomplete: int = 0
    interrupted: int = 0
    lease_lost: int = 0
    resumed: int = 0
    orphans_reset: int = 0
    promoted: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        for name in self.__slots__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class TaskWorker:
    """Consumes todo tasks one at a time and drives each through the pipeline."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_store: TaskStore,
        lock_manager: LockManager,
        scheduler: Scheduler,
        pipeline: PhasePipeline,
        session_recorder: SessionRecorder,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        sweep_stale_leases: bool = False,
        promote_blocked: bool = True,
        resume: bool = True,
    ) -> None:
        self.task_store = task_store
        self.lock_manager = lock_manager
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.session_recorder = session_recorder
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.sweep_stale_leases = sweep_stale_leases
        self.promote_blocked = promote_blocked
        self._resume_pending = resume
        self._stop_requested = False
        self.pipeline.stop_requested = self.stop_requested

    def stop_requested(self) -> bool:
        return self._stop_requested

    def run_once(self) -> WorkerRunSummary:
        """Resume a checkpointed task on first call, otherwise claim at most one task."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        if self._resume_pending:
            self._resume_pending = False
            resumed = self.resume_session()
            if resumed is not None:
                summary.resumed = 1
                _count(summary, resumed)
                return summary

        if self.sweep_stale_leases:
            self.lock_manager.sweep()
        summary.orphans_reset = len(self.scheduler.recover_orphans(self.worker_id))
        if self.promote_blocked:
            summary.promoted = len(self.scheduler.promote_unblocked(self.worker_id))

        task = None if self._stop_requested else self.scheduler.next_task(self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        _count(summary, self.pipeline.run(task))
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue stays empty for ``max_idle_polls`` polls or ``max_tasks`` ran."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def resume_session(self) -> PipelineRunResult | None:
        """Continue the checkpointed task at its recorded phase if the lease is still ours."""

        session = self.session_recorder.load()
        if session is None or not session.resumable:
            return None
        task_id, phase = session.task_id, session.phase
        if task_id is None or phase is None:
            return None

        owner = self.lock_manager.owner_of(task_id)
        if owner != self.worker_id:
            logger.info(
                "Discarding session for %s: lease owned by %s",
                task_id,
                owner or "nobody",
            )
            self.session_recorder.clear()
            return None

        try:
            task = self.task_store.get(task_id, TaskState.DOING)
        except (TaskNotFoundError, TaskParseError) as error:
            logger.warning("Discarding session for %s: %s", task_id, error)
            self.lock_manager.release(task_id, self.worker_id)
            self.session_recorder.clear()
            return None
        if task.is_incomplete or not self.lock_manager.renew(task_id, self.worker_id):
            self.session_recorder.clear()
            return None

        if session.status == SessionStatus.RUNNING:
            # The previous process died mid-phase without checkpointing a pause.
            session = self.session_recorder.mark(SessionStatus.CRASHED) or session

        logger.info(
            "Resuming %s at %s from %s session %s",
            task_id,
            phase.label,
            session.status.value,
            session.session_id,
        )
        return self.pipeline.run(task, start_phase=phase)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        if not self._stop_requested:
            logger.warning(
                "%s received; %s stops after the current step",
                signal_name,
                self.worker_id,
            )
        self._stop_requested = True


def build_worker(  # noqa: PLR0913
    settings: Settings,
    *,
    worker_id: str,
    executor: AgentExecutor | None = None,
    gate_runner: QualityGateRunner | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> TaskWorker:
    """Wire file-backed stores, the configured agent and quality gate into a worker."""

    paths = settings.paths
    task_store = FileTaskStore(paths.tasks_dir)
    task_store.init_layout()
    lock_manager = LockManager(
        FileLeaseBackend(paths.locks_dir),
        lease_timeout_seconds=settings.worker.lease_timeout_seconds,
    )
    session_recorder = SessionRecorder(FileSessionStore(paths.state_dir), worker_id=worker_id)
    routing = AgentRouting.for_agent(
        settings.agent.agent,
        model=settings.agent.model,
        command_template=settings.agent.command_template,
        allow_fallback=settings.agent.allow_fallback,
    )
    pipeline = PhasePipeline(
        task_store=task_store,
        lock_manager=lock_manager,
        session_recorder=session_recorder,
        executor=executor
        or CliAgentExecutor(
            agent=routing.agent,
            command_template=routing.command_template,
            logs_dir=paths.logs_dir,
            working_dir=paths.project_dir,
        ),
        prompt_resolver=TemplatePromptResolver(paths.prompts_dir),
        gate_runner=gate_runner
        or CommandGateRunner(
            working_dir=paths.project_dir,
            command_timeout_seconds=settings.quality.command_timeout_seconds,
            max_output_chars=settings.quality.max_output_chars,
        ),
        backoff_manager=ModelBackoffManager(
            routing,
            base_seconds=settings.backoff.base_seconds,
            max_seconds=settings.backoff.max_seconds,
            max_attempts=settings.backoff.max_attempts,
            transient_exit_codes=settings.agent.transient_exit_codes,
        ),
        phase_specs=build_phase_specs(settings),
        worker_id=worker_id,
        sleep=sleep,
        graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
    )
    return TaskWorker(
        task_store=task_store,
        lock_manager=lock_manager,
        scheduler=Scheduler(task_store=task_store, lock_manager=lock_manager),
        pipeline=pipeline,
        session_recorder=session_recorder,
        worker_id=worker_id,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        sweep_stale_leases=settings.worker.sweep_stale_leases,
        promote_blocked=settings.worker.promote_blocked,
        resume=settings.worker.resume,
    )


def _count(summary: WorkerRunSummary, result: PipelineRunResult) -> None:
    summary.processed += 1
    if result.status == PipelineStatus.DONE:
        summary.succeeded += 1
    elif result.status == PipelineStatus.INCOMPLETE:
        summary.incomplete += 1
    elif result.status == PipelineStatus.INTERRUPTED:
        summary.interrupted += 1
    else:
        summary.lease_lost += 1
