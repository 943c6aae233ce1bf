from __future__ import annotations

import random
from collections.abc import Callable, Sequence

import allure
import pytest

from taskrelay.config import PhaseSettings, QualitySettings, Settings
from taskrelay.orchestrator.backend import AgentRequest, AgentResult, BackendRunError
from taskrelay.orchestrator.backoff import ModelBackoffManager
from taskrelay.orchestrator.locks import InMemoryLeaseBackend, LockManager
from taskrelay.orchestrator.models import (
    PHASE_ORDER,
    Phase,
    PipelineStatus,
    SessionStatus,
    TaskRecord,
    TaskState,
    VerificationOutcome,
)
from taskrelay.orchestrator.pipeline import PhasePipeline, PhaseSpec, build_phase_specs
from taskrelay.orchestrator.prompts import BuiltinPromptResolver
from taskrelay.orchestrator.routing import AgentRouting
from taskrelay.orchestrator.scheduler import Scheduler
from taskrelay.orchestrator.sessions import InMemorySessionStore, SessionRecorder
from taskrelay.orchestrator.verification import CommandResult, GateResult
from taskrelay.storage.task_store import InMemoryTaskStore

from conftest import FakeClock

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Phase State Machine"),
]

WORKER = "worker-1"
TASK_ID = "001-a"


def _ok(text: str = "all good") -> AgentResult:
    return AgentResult(output=f"working...\n{text}\n", exit_code=0, duration_ms=10)


class ScriptedExecutor:
    """Returns queued results (or raises queued errors), then succeeds."""

    def __init__(
        self,
        script: Sequence[AgentResult | Exception] = (),
        *,
        hook: Callable[[AgentRequest], None] | None = None,
    ) -> None:
        self.script = list(script)
        self.hook = hook
        self.requests: list[AgentRequest] = []

    def invoke(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        if self.hook is not None:
            self.hook(request)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return _ok(f"{request.phase.label} finished")


class ScriptedGate:
    """Fails the first ``failures`` runs, then passes."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.runs = 0

    def run(self, commands: Sequence[str]) -> GateResult:
        self.runs += 1
        if self.runs <= self.failures:
            output = f"FAILED test_login.py::test_submit (run {self.runs})"
            return GateResult(
                outcome=VerificationOutcome.FAIL,
                failing_command=commands[0],
                output=output,
                results=[
                    CommandResult(command=commands[0], exit_code=1, output=output, duration_ms=5),
                ],
            )
        return GateResult(outcome=VerificationOutcome.PASS)


class Harness:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.store = InMemoryTaskStore(
            [TaskRecord.new(task_id=TASK_ID, title="Add login", body="Build the form.")],
        )
        self.locks = LockManager(InMemoryLeaseBackend(), lease_timeout_seconds=600, clock=clock)
        self.sessions = SessionRecorder(InMemorySessionStore(), worker_id=WORKER, clock=clock)
        self.sleeps: list[float] = []
        self.stop = False

    def claim(self) -> TaskRecord:
        scheduler = Scheduler(task_store=self.store, lock_manager=self.locks, clock=self.clock)
        task = scheduler.next_task(WORKER)
        assert task is not None
        return task

    def pipeline(  # noqa: PLR0913
        self,
        executor: ScriptedExecutor,
        gate: ScriptedGate | None = None,
        *,
        budgets: dict[Phase, int] | None = None,
        skipped: Sequence[Phase] = (),
        gated: Sequence[Phase] = (Phase.IMPLEMENT,),
        max_backoff_attempts: int = 2,
    ) -> PhasePipeline:
        specs = [
            PhaseSpec(
                phase=phase,
                timeout_seconds=60,
                retry_budget=(budgets or {}).get(phase, 3),
                skip=phase in skipped,
                gate_commands=("pytest -q",) if phase in gated else (),
            )
            for phase in PHASE_ORDER
        ]
        return PhasePipeline(
            task_store=self.store,
            lock_manager=self.locks,
            session_recorder=self.sessions,
            executor=executor,
            prompt_resolver=BuiltinPromptResolver(),
            gate_runner=gate or ScriptedGate(),
            backoff_manager=ModelBackoffManager(
                AgentRouting.for_agent("claude"),
                base_seconds=1.0,
                max_seconds=4.0,
                max_attempts=max_backoff_attempts,
                rng=random.Random(3),
            ),
            phase_specs=specs,
            worker_id=WORKER,
            sleep=self.sleeps.append,
            stop_requested=lambda: self.stop,
            clock=self.clock,
        )


@pytest.fixture()
def harness(clock: FakeClock) -> Harness:
    return Harness(clock)


def test_all_phases_pass_and_task_is_done(harness: Harness) -> None:
    executor = ScriptedExecutor()
    task = harness.claim()

    result = harness.pipeline(executor).run(task)

    assert result.status == PipelineStatus.DONE
    assert [item.phase for item in result.phase_results] == list(PHASE_ORDER)
    assert len(executor.requests) == 8
    assert "memory://3.doing/001-a.md" in executor.requests[0].prompt

    done = harness.store.get(TASK_ID)
    assert done.state == TaskState.DONE
    assert done.completed_at == harness.clock.now
    titles = [entry.title for entry in done.work_log]
    assert titles[-1] == "Done"
    assert [title for title in titles if title.endswith("completed")] == [
        f"{phase.label} completed" for phase in PHASE_ORDER
    ]
    assert not harness.locks.is_locked(TASK_ID)
    session = harness.sessions.load()
    assert session is not None
    assert session.status == SessionStatus.IDLE


def test_later_phase_prompt_carries_earlier_summaries(harness: Harness) -> None:
    executor = ScriptedExecutor()

    harness.pipeline(executor).run(harness.claim())

    expected = "- EXPAND: attempts: 1; model: opus; verification: skipped; output: EXPAND finished"
    assert expected in executor.requests[1].prompt


def test_exhausted_retry_budget_leaves_task_incomplete(harness: Harness) -> None:
    executor = ScriptedExecutor()
    gate = ScriptedGate(failures=100)

    result = harness.pipeline(executor, gate, budgets={Phase.IMPLEMENT: 3}).run(harness.claim())

    assert result.status == PipelineStatus.INCOMPLETE
    assert result.failed_phase == Phase.IMPLEMENT
    assert result.attempts(Phase.IMPLEMENT) == 3
    assert result.attempts(Phase.TEST) == 0
    assert result.cause is not None
    assert result.cause.startswith("verification: `pytest -q` exited with 1")
    assert len(executor.requests) == 6
    assert "FAILED test_login.py::test_submit (run 2)" in executor.requests[-1].prompt

    task = harness.store.get(TASK_ID)
    assert task.state == TaskState.DOING
    assert task.is_incomplete
    assert task.assigned_to is None
    assert task.work_log[-1].title == "IMPLEMENT failed"
    assert not harness.locks.is_locked(TASK_ID)


def test_attempt_within_budget_passes_and_pipeline_advances(harness: Harness) -> None:
    gate = ScriptedGate(failures=4)

    result = harness.pipeline(ScriptedExecutor(), gate, budgets={Phase.IMPLEMENT: 5}).run(
        harness.claim(),
    )

    assert result.status == PipelineStatus.DONE
    assert result.attempts(Phase.IMPLEMENT) == 5
    assert result.attempts(Phase.TEST) == 1
    implement = [item for item in result.phase_results if item.phase == Phase.IMPLEMENT]
    assert [item.verification for item in implement] == [VerificationOutcome.FAIL] * 4 + [
        VerificationOutcome.PASS,
    ]
    completed = next(
        entry
        for entry in harness.store.get(TASK_ID).work_log
        if entry.title == "IMPLEMENT completed"
    )
    assert "attempts: 5" in completed.lines


def test_rate_limit_downgrades_model_once_for_rest_of_task(harness: Harness) -> None:
    limited = AgentResult(output="Error: 429 Too Many Requests", exit_code=1, duration_ms=3)
    executor = ScriptedExecutor([limited])

    result = harness.pipeline(executor).run(harness.claim())

    assert result.status == PipelineStatus.DONE
    assert [request.model for request in executor.requests] == ["opus"] + ["sonnet"] * 8
    assert result.attempts(Phase.EXPAND) == 1
    assert harness.sleeps == []


def test_exhausted_backoff_fails_phase_immediately(harness: Harness) -> None:
    limited = AgentResult(output="rate limit reached", exit_code=1, duration_ms=3)
    executor = ScriptedExecutor([limited, limited, limited])

    result = harness.pipeline(executor, max_backoff_attempts=2).run(harness.claim())

    assert result.status == PipelineStatus.INCOMPLETE
    assert result.failed_phase == Phase.EXPAND
    assert result.attempts(Phase.EXPAND) == 1
    assert len(executor.requests) == 3
    assert len(harness.sleeps) == 1
    assert result.cause is not None
    assert "backoff attempts exhausted" in result.cause


def test_fatal_failure_is_not_retried(harness: Harness) -> None:
    fatal = AgentResult(output="401 Unauthorized", exit_code=1, duration_ms=3)
    executor = ScriptedExecutor([fatal])

    result = harness.pipeline(executor).run(harness.claim())

    assert result.status == PipelineStatus.INCOMPLETE
    assert len(executor.requests) == 1
    assert harness.store.get(TASK_ID).is_incomplete


def test_transient_start_failure_backs_off_and_retries(harness: Harness) -> None:
    executor = ScriptedExecutor([BackendRunError("Agent failed to start", transient=True)])

    result = harness.pipeline(executor).run(harness.claim())

    assert result.status == PipelineStatus.DONE
    assert len(harness.sleeps) == 1
    assert 0.5 <= harness.sleeps[0] <= 1.0


def test_timeout_consumes_an_attempt(harness: Harness) -> None:
    stalled = AgentResult(output="thinking", exit_code=124, duration_ms=60_000, timed_out=True)
    executor = ScriptedExecutor([stalled])

    result = harness.pipeline(executor).run(harness.claim())

    assert result.status == PipelineStatus.DONE
    assert result.attempts(Phase.EXPAND) == 2
    assert "agent timed out after 60s" in executor.requests[1].prompt
    titles = [entry.title for entry in harness.store.get(TASK_ID).work_log]
    assert "EXPAND attempt 1 failed" in titles


def test_lost_lease_abandons_task_untouched(harness: Harness) -> None:
    task = harness.claim()
    harness.locks.release(TASK_ID, WORKER)
    harness.locks.acquire(TASK_ID, "worker-2")
    executor = ScriptedExecutor()

    result = harness.pipeline(executor).run(task)

    assert result.status == PipelineStatus.LEASE_LOST
    assert executor.requests == []
    stored = harness.store.get(TASK_ID)
    assert stored.state == TaskState.DOING
    assert stored.outcome is None
    assert harness.locks.owner_of(TASK_ID) == "worker-2"


def test_lease_is_renewed_across_backoff_reinvocations(harness: Harness) -> None:
    limited = AgentResult(output="rate limit reached", exit_code=1, duration_ms=3)
    rival = Scheduler(task_store=harness.store, lock_manager=harness.locks, clock=harness.clock)
    rival_attempts: list[tuple[list[str], TaskRecord | None]] = []
    verify_models: list[str] = []

    def _slow_rate_limited_verify(request: AgentRequest) -> None:
        if request.phase != Phase.VERIFY:
            return
        verify_models.append(request.model)
        harness.clock.advance(400)
        if len(verify_models) == 2:
            rival_attempts.append(
                (rival.recover_orphans("worker-2"), rival.next_task("worker-2")),
            )
        if len(verify_models) <= 2:
            executor.script.append(limited)

    executor = ScriptedExecutor(hook=_slow_rate_limited_verify)

    result = harness.pipeline(executor, max_backoff_attempts=2).run(harness.claim())

    assert result.status == PipelineStatus.DONE
    assert verify_models == ["opus", "sonnet", "sonnet"]
    assert rival_attempts == [([], None)]
    assert len(harness.sleeps) == 1
    assert harness.store.get(TASK_ID).state == TaskState.DONE


def test_lease_taken_over_mid_phase_stops_before_any_write(harness: Harness) -> None:
    rival = Scheduler(task_store=harness.store, lock_manager=harness.locks, clock=harness.clock)

    def _stall_then_lose_lease(request: AgentRequest) -> None:
        if request.phase == Phase.VERIFY:
            harness.clock.advance(700)
            assert rival.recover_orphans("worker-2") == [TASK_ID]
            assert rival.next_task("worker-2") is not None

    executor = ScriptedExecutor(hook=_stall_then_lose_lease)

    result = harness.pipeline(executor).run(harness.claim())

    assert result.status == PipelineStatus.LEASE_LOST
    assert result.failed_phase == Phase.VERIFY
    stored = harness.store.get(TASK_ID)
    assert stored.state == TaskState.DOING
    assert stored.assigned_to == "worker-2"
    titles = [entry.title for entry in stored.work_log]
    assert "VERIFY completed" not in titles
    assert "Done" not in titles
    assert harness.locks.owner_of(TASK_ID) == "worker-2"
    session = harness.sessions.load()
    assert session is not None
    assert session.status == SessionStatus.IDLE


def test_skipped_phase_is_logged_and_not_run(harness: Harness) -> None:
    executor = ScriptedExecutor()

    result = harness.pipeline(executor, skipped=[Phase.DOCS]).run(harness.claim())

    assert result.status == PipelineStatus.DONE
    assert Phase.DOCS not in {item.phase for item in result.phase_results}
    assert len(executor.requests) == 7
    assert "DOCS skipped" in [entry.title for entry in harness.store.get(TASK_ID).work_log]


def test_run_can_start_from_recorded_phase(harness: Harness) -> None:
    executor = ScriptedExecutor()

    result = harness.pipeline(executor).run(harness.claim(), start_phase=Phase.TEST)

    assert result.status == PipelineStatus.DONE
    assert [item.phase for item in result.phase_results] == [
        Phase.TEST,
        Phase.DOCS,
        Phase.REVIEW,
        Phase.VERIFY,
    ]


def test_stop_request_pauses_at_next_phase_and_keeps_lease(harness: Harness) -> None:
    def _stop_after_triage(request: AgentRequest) -> None:
        if request.phase == Phase.TRIAGE:
            harness.stop = True

    executor = ScriptedExecutor(hook=_stop_after_triage)

    result = harness.pipeline(executor).run(harness.claim())

    assert result.status == PipelineStatus.INTERRUPTED
    assert result.failed_phase == Phase.PLAN
    session = harness.sessions.load()
    assert session is not None
    assert (session.task_id, session.phase, session.status) == (
        TASK_ID,
        Phase.PLAN,
        SessionStatus.PAUSED,
    )
    assert harness.locks.owner_of(TASK_ID) == WORKER
    assert harness.store.get(TASK_ID).outcome is None


def test_build_phase_specs_from_settings() -> None:
    settings = Settings(
        phases=PhaseSettings(skipped=frozenset({Phase.DOCS})),
        quality=QualitySettings(commands=("pytest -q", "ruff check .")),
    )

    specs = {spec.phase: spec for spec in build_phase_specs(settings)}

    assert list(specs) == list(PHASE_ORDER)
    assert specs[Phase.DOCS].skip
    assert specs[Phase.IMPLEMENT].gate_commands == ("pytest -q", "ruff check .")
    assert specs[Phase.EXPAND].gate_commands == ()
    assert specs[Phase.IMPLEMENT].timeout_seconds == 5_400
    assert specs[Phase.VERIFY].retry_budget == 3
