"""Eight-phase state machine that drives one claimed task to done or incomplete."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from taskrelay.config import Settings
from taskrelay.orchestrator.backend import (
    AgentExecutor,
    AgentRequest,
    AgentResult,
    BackendRunError,
)
from taskrelay.orchestrator.backoff import ModelBackoffManager, ModelState
from taskrelay.orchestrator.locks import LockManager
from taskrelay.orchestrator.models import (
    PHASE_ORDER,
    AttemptOutcome,
    FailureClass,
    Phase,
    PhaseResult,
    PipelineStatus,
    SessionStatus,
    TaskOutcome,
    TaskRecord,
    TaskState,
    VerificationOutcome,
)
from taskrelay.orchestrator.prompts import (
    PromptResolver,
    compose_phase_prompt,
    phase_completed_title,
)
from taskrelay.orchestrator.sessions import SessionRecorder
from taskrelay.orchestrator.verification import GateResult, QualityGateRunner, truncate_tail
from taskrelay.storage.common import to_iso, utc_now
from taskrelay.storage.task_store import TaskStore

logger = logging.getLogger(__name__)

_SUMMARY_CHARS = 200


@dataclass(slots=True)
class PhaseSpec:
    """Execution limits for one phase."""

    phase: Phase
    timeout_seconds: int
    retry_budget: int
    skip: bool = False
    gate_commands: tuple[str, ...] = ()


def build_phase_specs(settings: Settings) -> list[PhaseSpec]:
    """Phase specs in pipeline order from configured timeouts, budgets and gates."""

    return [
        PhaseSpec(
            phase=phase,
            timeout_seconds=settings.phases.timeouts[phase],
            retry_budget=settings.phases.retry_budgets[phase],
            skip=phase in settings.phases.skipped,
            gate_commands=(
                settings.quality.commands if phase in settings.quality.gate_phases else ()
            ),
        )
        for phase in PHASE_ORDER
    ]


@dataclass(slots=True)
class PipelineRunResult:
    task_id: str
    status: PipelineStatus
    phase_results: list[PhaseResult] = field(default_factory=list)
    failed_phase: Phase | None = None
    cause: str | None = None

    def attempts(self, phase: Phase) -> int:
        return sum(1 for result in self.phase_results if result.phase == phase)


@dataclass(slots=True)
class _Invocation:
    """Final agent result of one attempt after backoff re-invocations."""

    outcome: AttemptOutcome
    model: str
    result: AgentResult | None = None
    cause: str | None = None


class LeaseLostError(RuntimeError):
    """This worker no longer holds the lease on the task it is running."""

    def __init__(self, task_id: str, phase: Phase) -> None:
        super().__init__(f"Lease on {task_id} lost during {phase.label}")
        self.task_id = task_id
        self.phase = phase


class PhasePipeline:
    """Runs EXPAND through VERIFY for a task held under this worker's lease.

    Each phase gets ``retry_budget`` attempts. An attempt fails when the agent
    times out or the quality gate fails; the failure output is folded into the
    next attempt's prompt. Rate limits and transient crashes are re-invoked
    inside the same attempt through the backoff manager. Fatal failures and
    exhausted budgets leave the task in doing, annotated incomplete.

    The lease is renewed before every agent invocation, before the quality gate
    and before every write to the task record. Once a renewal fails the run
    stops with LEASE_LOST and the record is left to whoever holds it now.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_store: TaskStore,
        lock_manager: LockManager,
        session_recorder: SessionRecorder,
        executor: AgentExecutor,
        prompt_resolver: PromptResolver,
        gate_runner: QualityGateRunner,
        backoff_manager: ModelBackoffManager,
        phase_specs: list[PhaseSpec],
        worker_id: str,
        sleep: Callable[[float], None] = time.sleep,
        stop_requested: Callable[[], bool] | None = None,
        clock: Callable[[], datetime] = utc_now,
        graceful_shutdown_seconds: int | None = None,
    ) -> None:
        self.task_store = task_store
        self.lock_manager = lock_manager
        self.session_recorder = session_recorder
        self.executor = executor
        self.prompt_resolver = prompt_resolver
        self.gate_runner = gate_runner
        self.backoff_manager = backoff_manager
        self.phase_specs = {spec.phase: spec for spec in phase_specs}
        self.worker_id = worker_id
        self._sleep = sleep
        self.stop_requested = stop_requested or (lambda: False)
        self._clock = clock
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def run(self, task: TaskRecord, *, start_phase: Phase = Phase.EXPAND) -> PipelineRunResult:
        task_id = task.task_id
        model_state = self.backoff_manager.new_state()
        results: list[PhaseResult] = []
        if start_phase != Phase.EXPAND:
            logger.info("Resuming %s at %s", task_id, start_phase.label)

        try:
            for phase in PHASE_ORDER[start_phase.index :]:
                if self.stop_requested():
                    return self._interrupt(task_id, phase, results)

                spec = self.phase_specs[phase]
                if spec.skip:
                    logger.info("Skipping %s for %s", phase.label, task_id)
                    self._append_log(
                        task_id,
                        phase,
                        f"{phase.label} skipped",
                        ["disabled by configuration"],
                    )
                    continue

                terminal = self._run_phase(task_id, spec, model_state, results)
                if terminal is not None:
                    return terminal

                following = phase.next()
                if following is not None:
                    self.session_recorder.checkpoint(
                        task_id=task_id,
                        phase=following,
                        status=SessionStatus.RUNNING,
                    )
            return self._complete(task_id, results)
        except LeaseLostError as error:
            logger.error("%s; abandoning", error)
            self.session_recorder.clear()
            return PipelineRunResult(
                task_id=task_id,
                status=PipelineStatus.LEASE_LOST,
                phase_results=results,
                failed_phase=error.phase,
                cause="lease lost",
            )

    def _run_phase(  # noqa: C901
        self,
        task_id: str,
        spec: PhaseSpec,
        model_state: ModelState,
        results: list[PhaseResult],
    ) -> PipelineRunResult | None:
        """Run all attempts of one phase; returns a terminal result or None to advance."""

        phase = spec.phase
        failure_context: str | None = None
        for attempt in range(1, spec.retry_budget + 1):
            self.session_recorder.checkpoint(
                task_id=task_id,
                phase=phase,
                status=SessionStatus.RUNNING,
            )
            self._ensure_lease(task_id, phase)

            task = self.task_store.get(task_id, TaskState.DOING)
            prompt = self._build_prompt(task, phase, attempt, failure_context)
            invocation = self._invoke(task_id, spec, attempt, prompt, model_state)

            if invocation.outcome != AttemptOutcome.SUCCESS and self.stop_requested():
                return self._interrupt(task_id, phase, results)

            if invocation.outcome in {AttemptOutcome.RATE_LIMITED, AttemptOutcome.CRASHED}:
                results.append(
                    self._phase_result(phase, attempt, invocation, VerificationOutcome.SKIPPED),
                )
                return self._fail(task_id, phase, attempt, results, invocation.cause or "")

            if invocation.outcome == AttemptOutcome.TIMED_OUT:
                cause = f"agent timed out after {spec.timeout_seconds}s"
                results.append(
                    self._phase_result(
                        phase,
                        attempt,
                        invocation,
                        VerificationOutcome.SKIPPED,
                        error_context=cause,
                    ),
                )
                output = invocation.result.output if invocation.result is not None else ""
                failure_context = f"{cause}\n{truncate_tail(output, _SUMMARY_CHARS * 10)}"
                self._log_failed_attempt(task_id, phase, attempt, cause, invocation.model)
                if attempt == spec.retry_budget:
                    return self._fail(task_id, phase, attempt, results, cause)
                continue

            gate = self._run_gate(task_id, spec)
            if not gate.passed:
                cause = gate.describe_failure()
                results.append(
                    self._phase_result(
                        phase,
                        attempt,
                        invocation,
                        VerificationOutcome.FAIL,
                        error_context=gate.output,
                    ),
                )
                failure_context = f"{cause}\n{gate.output}"
                self._log_failed_attempt(task_id, phase, attempt, cause, invocation.model)
                if attempt == spec.retry_budget:
                    return self._fail(task_id, phase, attempt, results, f"verification: {cause}")
                continue

            results.append(self._phase_result(phase, attempt, invocation, gate.outcome))
            output = invocation.result.output if invocation.result is not None else ""
            self._append_log(
                task_id,
                phase,
                phase_completed_title(phase),
                [
                    f"attempts: {attempt}",
                    f"model: {invocation.model}",
                    f"verification: {gate.outcome.value}",
                    f"output: {_summary_line(output)}",
                ],
            )
            logger.info("%s completed %s in %d attempt(s)", task_id, phase.label, attempt)
            return None

        return self._fail(task_id, phase, spec.retry_budget, results, "retry budget exhausted")

    def _invoke(
        self,
        task_id: str,
        spec: PhaseSpec,
        attempt: int,
        prompt: str,
        model_state: ModelState,
    ) -> _Invocation:
        """Invoke the agent, re-invoking through backoff on transient failures."""

        while True:
            request = AgentRequest(
                prompt=prompt,
                model=model_state.model,
                timeout_seconds=spec.timeout_seconds,
                phase=spec.phase,
                task_id=task_id,
                attempt=attempt,
                shutdown_requested=self.stop_requested,
                graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            )
            result: AgentResult | None = None
            try:
                result = self.executor.invoke(request)
            except BackendRunError as error:
                failure_class = (
                    FailureClass.OTHER_TRANSIENT if error.transient else FailureClass.FATAL
                )
                detail = str(error)
            else:
                if result.succeeded:
                    model_state.attempts = 0
                    return _Invocation(AttemptOutcome.SUCCESS, request.model, result)
                if result.timed_out:
                    return _Invocation(AttemptOutcome.TIMED_OUT, request.model, result)
                classification = self.backoff_manager.classify(result)
                failure_class = classification.failure_class
                detail = f"exit code {result.exit_code}; {classification.describe()}"

            outcome = (
                AttemptOutcome.RATE_LIMITED
                if failure_class == FailureClass.RATE_LIMIT
                else AttemptOutcome.CRASHED
            )
            if self.stop_requested():
                return _Invocation(outcome, request.model, result, cause="stop requested")

            decision = self.backoff_manager.next(model_state, failure_class)
            if not decision.should_retry:
                return _Invocation(
                    outcome,
                    request.model,
                    result,
                    cause=f"{decision.reason}: {detail}",
                )
            logger.warning(
                "%s %s attempt %d: %s; %s",
                task_id,
                spec.phase.label,
                attempt,
                detail,
                decision.reason,
            )
            if decision.delay_seconds > 0:
                self._sleep(decision.delay_seconds)
            self._ensure_lease(task_id, spec.phase)

    def _run_gate(self, task_id: str, spec: PhaseSpec) -> GateResult:
        if not spec.gate_commands:
            return GateResult.skipped()
        self._ensure_lease(task_id, spec.phase)
        return self.gate_runner.run(spec.gate_commands)

    def _build_prompt(
        self,
        task: TaskRecord,
        phase: Phase,
        attempt: int,
        failure_context: str | None,
    ) -> str:
        instructions = self.prompt_resolver.resolve(
            phase,
            {
                "TASK_ID": task.task_id,
                "TASK_FILE": self.task_store.location(task.task_id, TaskState.DOING),
                "TIMESTAMP": to_iso(self._clock()),
                "AGENT_ID": self.worker_id,
                "PHASE": phase.label,
            },
        )
        return compose_phase_prompt(
            instructions=instructions,
            task=task,
            phase=phase,
            attempt=attempt,
            failure_context=failure_context,
        )

    def _phase_result(  # noqa: PLR0913
        self,
        phase: Phase,
        attempt: int,
        invocation: _Invocation,
        verification: VerificationOutcome,
        *,
        error_context: str | None = None,
    ) -> PhaseResult:
        return PhaseResult(
            phase=phase,
            attempt=attempt,
            verification=verification,
            timestamp=self._clock(),
            outcome=invocation.outcome,
            model=invocation.model,
            error_context=error_context or invocation.cause,
        )

    def _log_failed_attempt(
        self,
        task_id: str,
        phase: Phase,
        attempt: int,
        cause: str,
        model: str,
    ) -> None:
        logger.info("%s %s attempt %d failed: %s", task_id, phase.label, attempt, cause)
        self._append_log(
            task_id,
            phase,
            f"{phase.label} attempt {attempt} failed",
            [_summary_line(cause), f"model: {model}"],
        )

    def _fail(
        self,
        task_id: str,
        phase: Phase,
        attempts: int,
        results: list[PhaseResult],
        cause: str,
    ) -> PipelineRunResult:
        self._ensure_lease(task_id, phase)
        now = self._clock()

        def _mark_incomplete(record: TaskRecord) -> None:
            record.outcome = TaskOutcome.INCOMPLETE
            record.unassign()
            record.log(
                timestamp=now,
                title=f"{phase.label} failed",
                lines=[
                    f"cause: {_summary_line(cause)}",
                    f"attempts: {attempts}",
                    "left in doing as incomplete",
                ],
            )

        self.task_store.update(task_id, _mark_incomplete, state=TaskState.DOING)
        self.lock_manager.release(task_id, self.worker_id)
        self.session_recorder.clear()
        logger.warning("%s incomplete at %s: %s", task_id, phase.label, cause)
        return PipelineRunResult(
            task_id=task_id,
            status=PipelineStatus.INCOMPLETE,
            phase_results=results,
            failed_phase=phase,
            cause=cause,
        )

    def _complete(self, task_id: str, results: list[PhaseResult]) -> PipelineRunResult:
        self._ensure_lease(task_id, PHASE_ORDER[-1])
        now = self._clock()

        def _mark_done(record: TaskRecord) -> None:
            record.completed_at = now
            record.log(timestamp=now, title="Done", lines=[f"completed by {self.worker_id}"])

        self.task_store.update(task_id, _mark_done, state=TaskState.DOING)
        self.task_store.move(task_id, TaskState.DOING, TaskState.DONE)
        self.lock_manager.release(task_id, self.worker_id)
        self.session_recorder.clear()
        logger.info("%s done", task_id)
        return PipelineRunResult(
            task_id=task_id,
            status=PipelineStatus.DONE,
            phase_results=results,
        )

    def _interrupt(
        self,
        task_id: str,
        phase: Phase,
        results: list[PhaseResult],
    ) -> PipelineRunResult:
        self.session_recorder.checkpoint(task_id=task_id, phase=phase, status=SessionStatus.PAUSED)
        logger.info("Stop requested; %s paused before finishing %s", task_id, phase.label)
        return PipelineRunResult(
            task_id=task_id,
            status=PipelineStatus.INTERRUPTED,
            phase_results=results,
            failed_phase=phase,
            cause="stop requested",
        )

    def _append_log(self, task_id: str, phase: Phase, title: str, lines: list[str]) -> None:
        self._ensure_lease(task_id, phase)
        now = self._clock()
        self.task_store.update(
            task_id,
            lambda record: record.log(timestamp=now, title=title, lines=lines),
            state=TaskState.DOING,
        )

    def _ensure_lease(self, task_id: str, phase: Phase) -> None:
        if not self.lock_manager.renew(task_id, self.worker_id):
            raise LeaseLostError(task_id, phase)


def _summary_line(text: str) -> str:
    """Last non-empty line of ``text``, shortened to fit one work log bullet."""

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return "(no output)"
    last = lines[-1]
    if len(last) > _SUMMARY_CHARS:
        return last[: _SUMMARY_CHARS - 3] + "..."
    return last
