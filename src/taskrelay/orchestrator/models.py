"""Domain models for task records, leases, sessions and phase attempts."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

UNPRIORITIZED = 999
_TASK_ID_PREFIX = re.compile(r"^(\d+)(?:-(\d+))?-")


class TaskState(str, Enum):
    """Queue bucket a task record lives in."""

    BLOCKED = "blocked"
    TODO = "todo"
    DOING = "doing"
    DONE = "done"


class TaskOutcome(str, Enum):
    """Terminal annotation for tasks that stay in doing."""

    INCOMPLETE = "incomplete"


class Phase(str, Enum):
    """Fixed pipeline stages, in execution order."""

    EXPAND = "expand"
    TRIAGE = "triage"
    PLAN = "plan"
    IMPLEMENT = "implement"
    TEST = "test"
    DOCS = "docs"
    REVIEW = "review"
    VERIFY = "verify"

    @property
    def index(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def label(self) -> str:
        return self.value.upper()

    def next(self) -> Phase | None:
        """Phase that follows this one, or None after VERIFY."""

        position = self.index + 1
        if position >= len(PHASE_ORDER):
            return None
        return PHASE_ORDER[position]


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


class PipelineStatus(str, Enum):
    """How a pipeline run ended."""

    DONE = "done"
    INCOMPLETE = "incomplete"
    LEASE_LOST = "lease_lost"
    INTERRUPTED = "interrupted"


class SessionStatus(str, Enum):
    """Worker session lifecycle."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CRASHED = "crashed"

    @property
    def resumable(self) -> bool:
        return self in {SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.CRASHED}


class VerificationOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


class AttemptOutcome(str, Enum):
    """Classification of a single agent invocation."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"


class FailureClass(str, Enum):
    """Normalized failure classes used by the backoff strategy."""

    RATE_LIMIT = "rate_limit"
    OTHER_TRANSIENT = "other_transient"
    FATAL = "fatal"


class LockOutcome(str, Enum):
    ACQUIRED = "acquired"
    ALREADY_HELD = "already_held"


@dataclass(slots=True)
class WorkLogEntry:
    """One timestamped entry of a task's append-only work log."""

    timestamp: datetime
    title: str
    lines: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskRecord:
    """Unit of work tracked as one record inside a state bucket."""

    task_id: str
    title: str
    state: TaskState
    priority: int
    sequence: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    blocked_by: set[str] = field(default_factory=set)
    blocks: set[str] = field(default_factory=set)
    assigned_to: str | None = None
    assigned_at: datetime | None = None
    outcome: TaskOutcome | None = None
    body: str = ""
    footer: str = ""
    work_log: list[WorkLogEntry] = field(default_factory=list)

    @classmethod
    def new(  # noqa: PLR0913
        cls,
        *,
        task_id: str,
        title: str,
        state: TaskState = TaskState.TODO,
        body: str = "",
        blocked_by: set[str] | None = None,
        created_at: datetime | None = None,
    ) -> TaskRecord:
        priority, sequence = parse_task_order(task_id)
        return cls(
            task_id=task_id,
            title=title,
            state=state,
            priority=priority,
            sequence=sequence,
            created_at=created_at,
            blocked_by=set(blocked_by or ()),
            body=body,
        )

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return (self.priority, self.sequence, self.task_id)

    @property
    def is_incomplete(self) -> bool:
        return self.outcome == TaskOutcome.INCOMPLETE

    def log(self, *, timestamp: datetime, title: str, lines: list[str] | None = None) -> None:
        """Append a work log entry."""

        self.work_log.append(WorkLogEntry(timestamp=timestamp, title=title, lines=lines or []))

    def unassign(self) -> None:
        self.assigned_to = None
        self.assigned_at = None


@dataclass(slots=True)
class Lease:
    """Time-bounded exclusive claim on one task id."""

    task_id: str
    owner: str
    acquired_at: datetime
    lease_id: str
    pid: int | None = None

    def age_seconds(self, now: datetime) -> float:
        return (now - self.acquired_at).total_seconds()

    def is_valid(self, *, now: datetime, timeout_seconds: int) -> bool:
        return self.age_seconds(now) < timeout_seconds


@dataclass(slots=True)
class SessionRecord:
    """Per-worker checkpoint used for crash resume."""

    worker_id: str
    session_id: str
    status: SessionStatus
    updated_at: datetime
    task_id: str | None = None
    phase: Phase | None = None

    @property
    def resumable(self) -> bool:
        return self.status.resumable and self.task_id is not None and self.phase is not None


@dataclass(slots=True)
class PhaseResult:
    """Outcome of one phase attempt, summarized into the work log."""

    phase: Phase
    attempt: int
    verification: VerificationOutcome
    timestamp: datetime
    outcome: AttemptOutcome = AttemptOutcome.SUCCESS
    model: str | None = None
    error_context: str | None = None


def parse_task_order(task_id: str) -> tuple[int, int]:
    """Extract (priority, sequence) from ids shaped like ``PPP-SSS-slug``.

    ``PPP-slug`` yields sequence 0; ids without a numeric prefix sort last.
    """

    match = _TASK_ID_PREFIX.match(task_id)
    if match is None:
        return UNPRIORITIZED, 0
    priority = int(match.group(1))
    sequence = int(match.group(2)) if match.group(2) is not None else 0
    return priority, sequence
