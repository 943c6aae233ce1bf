"""Runtime configuration for workers, agents, phases and quality gates."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from taskrelay.orchestrator.models import PHASE_ORDER, Phase
from taskrelay.orchestrator.routing import SUPPORTED_AGENTS
from taskrelay.orchestrator.verification import validate_quality_commands

DEFAULT_DATA_DIRNAME = ".taskrelay"
DEFAULT_PHASE_TIMEOUTS: dict[Phase, int] = {
    Phase.EXPAND: 900,
    Phase.TRIAGE: 540,
    Phase.PLAN: 900,
    Phase.IMPLEMENT: 5_400,
    Phase.TEST: 1_800,
    Phase.DOCS: 900,
    Phase.REVIEW: 1_800,
    Phase.VERIFY: 900,
}
DEFAULT_PHASE_RETRY_BUDGET = 3
DEFAULT_GATE_PHASES = frozenset({Phase.IMPLEMENT, Phase.TEST, Phase.REVIEW})
QUALITY_COMMAND_KINDS = ("test", "lint", "format", "build")


@dataclass(slots=True)
class PathSettings:
    """On-disk layout shared by all workers of one project."""

    project_dir: Path = Path()
    data_dir: Path = Path(DEFAULT_DATA_DIRNAME)

    @property
    def tasks_dir(self) -> Path:
        return self.data_dir / "tasks"

    @property
    def locks_dir(self) -> Path:
        return self.data_dir / "locks"

    @property
    def state_dir(self) -> Path:
        return self.data_dir / "state"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def prompts_dir(self) -> Path:
        return self.data_dir / "prompts"


@dataclass(slots=True)
class WorkerSettings:
    """Claiming, lease and loop settings."""

    worker_id: str | None = None
    lease_timeout_seconds: int = 10_800
    poll_interval_seconds: float = 2.0
    max_idle_polls: int = 1
    graceful_shutdown_seconds: int = 30
    sweep_stale_leases: bool = False
    promote_blocked: bool = True
    resume: bool = True
    max_worker_slots: int = 100


@dataclass(slots=True)
class AgentSettings:
    """Which CLI agent runs the phases and how it is invoked."""

    agent: str = "claude"
    model: str | None = None
    command_template: str | None = None
    allow_fallback: bool = True
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class BackoffSettings:
    base_seconds: float = 5.0
    max_seconds: float = 60.0
    max_attempts: int = 3


@dataclass(slots=True)
class PhaseSettings:
    """Per-phase timeout, retry budget and skip flags."""

    timeouts: dict[Phase, int] = field(default_factory=lambda: dict(DEFAULT_PHASE_TIMEOUTS))
    retry_budgets: dict[Phase, int] = field(
        default_factory=lambda: dict.fromkeys(PHASE_ORDER, DEFAULT_PHASE_RETRY_BUDGET),
    )
    skipped: frozenset[Phase] = frozenset()


@dataclass(slots=True)
class QualitySettings:
    """Quality gate commands and the phases they guard."""

    commands: tuple[str, ...] = ()
    gate_phases: frozenset[Phase] = DEFAULT_GATE_PHASES
    command_timeout_seconds: int = 900
    max_output_chars: int = 4_000
    strict: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    paths: PathSettings = field(default_factory=PathSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    phases: PhaseSettings = field(default_factory=PhaseSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> Settings:
        """Load settings from ``TASKRELAY_*`` environment variables."""

        resolved_project = project_dir or Path(os.getenv("TASKRELAY_PROJECT_DIR", "."))
        data_dir_raw = os.getenv("TASKRELAY_DATA_DIR", "").strip()
        data_dir = Path(data_dir_raw or DEFAULT_DATA_DIRNAME)
        if not data_dir.is_absolute():
            data_dir = resolved_project / data_dir

        default_budget = _env_int("TASKRELAY_PHASE_RETRY_BUDGET", DEFAULT_PHASE_RETRY_BUDGET)
        return cls(
            paths=PathSettings(project_dir=resolved_project, data_dir=data_dir),
            worker=WorkerSettings(
                worker_id=os.getenv("TASKRELAY_WORKER_ID") or None,
                lease_timeout_seconds=_env_int("TASKRELAY_LOCK_TIMEOUT_SECONDS", 10_800),
                poll_interval_seconds=float(os.getenv("TASKRELAY_POLL_INTERVAL_SECONDS", "2.0")),
                max_idle_polls=_env_int("TASKRELAY_MAX_IDLE_POLLS", 1),
                graceful_shutdown_seconds=_env_int("TASKRELAY_GRACEFUL_SHUTDOWN_SECONDS", 30),
                sweep_stale_leases=_env_bool("TASKRELAY_SWEEP_STALE_LEASES", default=False),
                promote_blocked=_env_bool("TASKRELAY_PROMOTE_BLOCKED", default=True),
                resume=not _env_bool("TASKRELAY_NO_RESUME", default=False),
                max_worker_slots=_env_int("TASKRELAY_MAX_WORKER_SLOTS", 100),
            ),
            agent=AgentSettings(
                agent=os.getenv("TASKRELAY_AGENT", "claude").strip().lower(),
                model=os.getenv("TASKRELAY_MODEL") or None,
                command_template=os.getenv("TASKRELAY_AGENT_COMMAND") or None,
                allow_fallback=not _env_bool("TASKRELAY_NO_FALLBACK", default=False),
                transient_exit_codes=_env_int_tuple("TASKRELAY_TRANSIENT_EXIT_CODES", (137, 143)),
            ),
            backoff=BackoffSettings(
                base_seconds=float(os.getenv("TASKRELAY_RETRY_DELAY_SECONDS", "5")),
                max_seconds=float(os.getenv("TASKRELAY_RETRY_MAX_DELAY_SECONDS", "60")),
                max_attempts=_env_int("TASKRELAY_MAX_RETRIES", 3),
            ),
            phases=PhaseSettings(
                timeouts={
                    phase: _env_int(f"TASKRELAY_TIMEOUT_{phase.name}", default)
                    for phase, default in DEFAULT_PHASE_TIMEOUTS.items()
                },
                retry_budgets={
                    phase: _env_int(f"TASKRELAY_RETRIES_{phase.name}", default_budget)
                    for phase in PHASE_ORDER
                },
                skipped=frozenset(
                    phase
                    for phase in PHASE_ORDER
                    if _env_bool(f"TASKRELAY_SKIP_{phase.name}", default=False)
                ),
            ),
            quality=QualitySettings(
                commands=_collect_quality_commands(),
                gate_phases=_env_phases("TASKRELAY_GATE_PHASES", DEFAULT_GATE_PHASES),
                command_timeout_seconds=_env_int("TASKRELAY_QUALITY_TIMEOUT_SECONDS", 900),
                max_output_chars=_env_int("TASKRELAY_GATE_OUTPUT_CHARS", 4_000),
                strict=_env_bool("TASKRELAY_STRICT_QUALITY", default=False),
            ),
            log_level=os.getenv("TASKRELAY_LOG_LEVEL", "INFO").strip().upper(),
        )

    def longest_renewal_gap_seconds(self) -> float:
        """Worst case time a worker holds a lease without renewing it.

        One agent run (phase timeout plus the shutdown grace period) followed by
        the longest backoff sleep, or one full quality gate run.
        """

        agent_run = max(self.phases.timeouts.values()) + self.worker.graceful_shutdown_seconds
        gate_run = len(self.quality.commands) * self.quality.command_timeout_seconds
        return max(agent_run + self.backoff.max_seconds, gate_run)

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error for inconsistent or unsafe settings."""

        if self.agent.agent not in SUPPORTED_AGENTS:
            allowed = ", ".join(SUPPORTED_AGENTS)
            raise ValueError(f"TASKRELAY_AGENT must be one of: {allowed}.")
        if self.worker.lease_timeout_seconds <= 0:
            raise ValueError("TASKRELAY_LOCK_TIMEOUT_SECONDS must be > 0.")
        for phase in PHASE_ORDER:
            if self.phases.timeouts.get(phase, 0) <= 0:
                raise ValueError(f"TASKRELAY_TIMEOUT_{phase.name} must be > 0.")
            if self.phases.retry_budgets.get(phase, 0) < 1:
                raise ValueError(f"TASKRELAY_RETRIES_{phase.name} must be >= 1.")
        renewal_gap = self.longest_renewal_gap_seconds()
        if self.worker.lease_timeout_seconds <= renewal_gap:
            raise ValueError(
                "TASKRELAY_LOCK_TIMEOUT_SECONDS must exceed the longest gap between lease "
                f"renewals ({renewal_gap:.0f}s), otherwise leases expire mid-phase.",
            )
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("TASKRELAY_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.max_idle_polls < 1:
            raise ValueError("TASKRELAY_MAX_IDLE_POLLS must be >= 1.")
        if self.backoff.base_seconds < 0 or self.backoff.max_seconds < self.backoff.base_seconds:
            raise ValueError(
                "TASKRELAY_RETRY_DELAY_SECONDS must be >= 0 and not exceed "
                "TASKRELAY_RETRY_MAX_DELAY_SECONDS.",
            )
        if self.backoff.max_attempts < 0:
            raise ValueError("TASKRELAY_MAX_RETRIES must be >= 0.")
        if self.quality.command_timeout_seconds <= 0:
            raise ValueError("TASKRELAY_QUALITY_TIMEOUT_SECONDS must be > 0.")
        if self.quality.max_output_chars <= 0:
            raise ValueError("TASKRELAY_GATE_OUTPUT_CHARS must be > 0.")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Invalid TASKRELAY_LOG_LEVEL: {self.log_level!r}")
        validate_quality_commands(self.quality.commands, strict=self.quality.strict)


def _collect_quality_commands() -> tuple[str, ...]:
    commands: list[str] = []
    for kind in QUALITY_COMMAND_KINDS:
        value = os.getenv(f"TASKRELAY_QUALITY_{kind.upper()}_COMMAND", "").strip()
        if value:
            commands.append(value)
    return tuple(commands)


def _env_phases(name: str, default: frozenset[Phase]) -> frozenset[Phase]:
    raw = os.getenv(name)
    if raw is None:
        return default
    phases: set[Phase] = set()
    for token in raw.split(","):
        normalized = token.strip().lower()
        if not normalized:
            continue
        try:
            phases.add(Phase(normalized))
        except ValueError as error:
            raise ValueError(f"Invalid phase in {name}: {token.strip()!r}") from error
    return frozenset(phases)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return tuple(int(part.strip()) for part in value.split(",") if part.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
