from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from pathlib import Path

import allure
import pytest

from taskrelay.config import Settings
from taskrelay.orchestrator.backend import AgentRequest, AgentResult
from taskrelay.orchestrator.backoff import ModelBackoffManager
from taskrelay.orchestrator.locks import InMemoryLeaseBackend, LockManager
from taskrelay.orchestrator.models import (
    PHASE_ORDER,
    Phase,
    SessionStatus,
    TaskRecord,
    TaskState,
    VerificationOutcome,
)
from taskrelay.orchestrator.pipeline import PhasePipeline, PhaseSpec
from taskrelay.orchestrator.prompts import BuiltinPromptResolver
from taskrelay.orchestrator.routing import AgentRouting
from taskrelay.orchestrator.scheduler import Scheduler
from taskrelay.orchestrator.sessions import InMemorySessionStore, SessionRecorder
from taskrelay.orchestrator.verification import GateResult
from taskrelay.orchestrator.worker import TaskWorker, WorkerRunSummary, build_worker
from taskrelay.storage.task_store import FileTaskStore, InMemoryTaskStore, TaskStore

from conftest import FakeClock

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Worker Loop and Resume"),
]

LEASE_TIMEOUT = 600


class RecordingExecutor:
    def __init__(self) -> None:
        self.requests: list[AgentRequest] = []

    def invoke(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        return AgentResult(output=f"{request.phase.label} ok", exit_code=0, duration_ms=1)


class PassingGate:
    def run(self, commands: Sequence[str]) -> GateResult:
        return GateResult(outcome=VerificationOutcome.PASS)


class Cluster:
    """Shared in-memory stores with one worker per id."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.store: TaskStore = InMemoryTaskStore()
        self.locks = LockManager(
            InMemoryLeaseBackend(),
            lease_timeout_seconds=LEASE_TIMEOUT,
            clock=clock,
        )
        self.session_store = InMemorySessionStore()
        self.executor = RecordingExecutor()

    def recorder(self, worker_id: str) -> SessionRecorder:
        return SessionRecorder(self.session_store, worker_id=worker_id, clock=self.clock)

    def worker(self, worker_id: str, *, resume: bool = True) -> TaskWorker:
        recorder = self.recorder(worker_id)
        pipeline = PhasePipeline(
            task_store=self.store,
            lock_manager=self.locks,
            session_recorder=recorder,
            executor=self.executor,
            prompt_resolver=BuiltinPromptResolver(),
            gate_runner=PassingGate(),
            backoff_manager=ModelBackoffManager(
                AgentRouting.for_agent("claude"),
                rng=random.Random(0),
            ),
            phase_specs=[
                PhaseSpec(phase=phase, timeout_seconds=60, retry_budget=2)
                for phase in PHASE_ORDER
            ],
            worker_id=worker_id,
            sleep=lambda _: None,
            clock=self.clock,
        )
        return TaskWorker(
            task_store=self.store,
            lock_manager=self.locks,
            scheduler=Scheduler(task_store=self.store, lock_manager=self.locks, clock=self.clock),
            pipeline=pipeline,
            session_recorder=recorder,
            worker_id=worker_id,
            poll_interval_seconds=0.0,
            resume=resume,
        )

    def crashed_mid_task(self, worker_id: str, phase: Phase) -> None:
        """Leave the state a worker killed during ``phase`` would leave behind."""

        self.store.add(TaskRecord.new(task_id="001-a", title="a"))
        scheduler = Scheduler(task_store=self.store, lock_manager=self.locks, clock=self.clock)
        assert scheduler.next_task(worker_id) is not None
        self.recorder(worker_id).checkpoint(
            task_id="001-a",
            phase=phase,
            status=SessionStatus.RUNNING,
        )

    def phases_run(self) -> list[Phase]:
        return [request.phase for request in self.executor.requests]


@pytest.fixture()
def cluster(clock: FakeClock) -> Cluster:
    return Cluster(clock)


def test_run_once_claims_and_completes_one_task(cluster: Cluster) -> None:
    cluster.store.add(TaskRecord.new(task_id="002-b", title="b"))
    cluster.store.add(TaskRecord.new(task_id="001-a", title="a"))

    summary = cluster.worker("worker-1").run_once()

    assert (summary.processed, summary.succeeded) == (1, 1)
    assert cluster.store.locate("001-a") == TaskState.DONE
    assert cluster.store.locate("002-b") == TaskState.TODO


def test_run_loop_drains_queue_then_stops_when_idle(cluster: Cluster) -> None:
    for task_id in ("001-a", "002-b", "003-c"):
        cluster.store.add(TaskRecord.new(task_id=task_id, title=task_id))

    summary = cluster.worker("worker-1").run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert summary.idle_polls == 1
    assert cluster.store.ids(TaskState.DONE) == {"001-a", "002-b", "003-c"}


def test_run_loop_honours_max_tasks(cluster: Cluster) -> None:
    for task_id in ("001-a", "002-b"):
        cluster.store.add(TaskRecord.new(task_id=task_id, title=task_id))

    summary = cluster.worker("worker-1").run_loop(max_tasks=1)

    assert summary.processed == 1
    assert cluster.store.locate("002-b") == TaskState.TODO


def test_restarted_worker_resumes_at_recorded_phase(cluster: Cluster) -> None:
    cluster.crashed_mid_task("worker-1", Phase.TEST)

    summary = cluster.worker("worker-1").run_once()

    assert summary.resumed == 1
    assert summary.succeeded == 1
    assert cluster.phases_run() == [Phase.TEST, Phase.DOCS, Phase.REVIEW, Phase.VERIFY]
    assert cluster.store.locate("001-a") == TaskState.DONE


@pytest.mark.parametrize(
    ("left_as", "reported"),
    [(SessionStatus.RUNNING, "crashed"), (SessionStatus.PAUSED, "paused")],
)
def test_resume_records_how_the_previous_run_ended(
    cluster: Cluster,
    caplog: pytest.LogCaptureFixture,
    left_as: SessionStatus,
    reported: str,
) -> None:
    caplog.set_level(logging.INFO, logger="taskrelay.orchestrator.worker")
    cluster.crashed_mid_task("worker-1", Phase.DOCS)
    cluster.recorder("worker-1").mark(left_as)

    summary = cluster.worker("worker-1").run_once()

    assert summary.resumed == 1
    assert f"Resuming 001-a at DOCS from {reported} session" in caplog.text


def test_malformed_task_behind_session_is_skipped(
    cluster: Cluster,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    file_store = FileTaskStore(tmp_path / "tasks")
    file_store.init_layout()
    cluster.store = file_store
    cluster.crashed_mid_task("worker-1", Phase.IMPLEMENT)
    file_store.path_for("001-a", TaskState.DOING).write_text("garbage\n", "utf-8")
    file_store.add(TaskRecord.new(task_id="002-b", title="b"))

    summary = cluster.worker("worker-1").run_once()

    assert summary.resumed == 0
    assert summary.succeeded == 1
    assert "Discarding session for 001-a" in caplog.text
    assert file_store.locate("002-b") == TaskState.DONE
    assert file_store.ids(TaskState.DOING) == {"001-a"}
    assert not cluster.locks.is_locked("001-a")


def test_session_is_discarded_when_lease_belongs_to_another_worker(cluster: Cluster) -> None:
    cluster.crashed_mid_task("worker-2", Phase.IMPLEMENT)
    cluster.recorder("worker-1").checkpoint(
        task_id="001-a",
        phase=Phase.IMPLEMENT,
        status=SessionStatus.RUNNING,
    )

    summary = cluster.worker("worker-1").run_once()

    assert summary.resumed == 0
    assert summary.idle_polls == 1
    assert cluster.executor.requests == []
    assert cluster.store.locate("001-a") == TaskState.DOING
    session = cluster.recorder("worker-1").load()
    assert session is not None
    assert session.status == SessionStatus.IDLE


def test_expired_session_lease_falls_back_to_orphan_recovery(
    cluster: Cluster,
    clock: FakeClock,
) -> None:
    cluster.crashed_mid_task("worker-1", Phase.REVIEW)
    clock.advance(LEASE_TIMEOUT + 1)

    summary = cluster.worker("worker-1").run_once()

    assert summary.resumed == 0
    assert summary.orphans_reset == 1
    assert summary.succeeded == 1
    assert cluster.phases_run() == list(PHASE_ORDER)


def test_resume_disabled_leaves_session_alone(cluster: Cluster) -> None:
    cluster.crashed_mid_task("worker-1", Phase.PLAN)

    summary = cluster.worker("worker-1", resume=False).run_once()

    assert summary.resumed == 0
    assert summary.processed == 0
    assert cluster.store.locate("001-a") == TaskState.DOING


def test_blocked_task_is_promoted_and_claimed(cluster: Cluster) -> None:
    cluster.store.add(TaskRecord.new(task_id="001-a", title="a", state=TaskState.DONE))
    cluster.store.add(
        TaskRecord.new(task_id="002-b", title="b", state=TaskState.BLOCKED, blocked_by={"001-a"}),
    )

    summary = cluster.worker("worker-1").run_once()

    assert summary.promoted == 1
    assert summary.succeeded == 1
    assert cluster.store.locate("002-b") == TaskState.DONE


def test_stop_request_makes_worker_idle(cluster: Cluster) -> None:
    cluster.store.add(TaskRecord.new(task_id="001-a", title="a"))
    worker = cluster.worker("worker-1")

    worker._request_stop(signal_name="SIGTERM")

    assert worker.run_loop().processed == 0
    assert worker.pipeline.stop_requested()
    assert cluster.store.locate("001-a") == TaskState.TODO


def test_summary_add_sums_every_counter() -> None:
    total = WorkerRunSummary(processed=1, succeeded=1)
    total.add(WorkerRunSummary(processed=2, incomplete=1, idle_polls=3))

    assert total == WorkerRunSummary(processed=3, succeeded=1, incomplete=1, idle_polls=3)


def test_build_worker_runs_echo_agent_end_to_end(tmp_path: Path, echo_agent: str) -> None:
    settings = Settings.from_env(project_dir=tmp_path)
    settings.validate()
    store = FileTaskStore(settings.paths.tasks_dir)
    store.init_layout()
    store.add(TaskRecord.new(task_id="001-hello", title="Say hello", body="Print hello."))

    summary = build_worker(settings, worker_id="worker-1").run_loop(max_idle_polls=1)

    assert summary.succeeded == 1
    done = store.get("001-hello")
    assert done.state == TaskState.DONE
    assert "output: echo-agent model=opus: # Phase 8/8: VERIFY" in [
        line for entry in done.work_log for line in entry.lines
    ]
    logs = sorted(path.name for path in (settings.paths.logs_dir / "001-hello").glob("*.log"))
    assert len(logs) == 8
    assert logs[0] == "phase-0-expand-attempt1.log"
