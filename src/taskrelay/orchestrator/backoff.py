"""Model downgrade and exponential backoff for transient agent failures."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum

from taskrelay.orchestrator.backend.base import AgentResult
from taskrelay.orchestrator.failure_classifier import (
    FailureClassification,
    classify_agent_failure,
)
from taskrelay.orchestrator.models import FailureClass
from taskrelay.orchestrator.routing import AgentRouting

logger = logging.getLogger(__name__)


class RetryAction(str, Enum):
    FAIL = "fail"
    RETRY_DOWNGRADED = "retry_downgraded"
    RETRY_AFTER_BACKOFF = "retry_after_backoff"


@dataclass(slots=True)
class ModelState:
    """Model in use for the current task plus consumed backoff attempts."""

    model: str
    attempts: int = 0
    downgraded: bool = False


@dataclass(slots=True)
class RetryDecision:
    action: RetryAction
    model: str
    delay_seconds: float = 0.0
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action != RetryAction.FAIL


class ModelBackoffManager:
    """Decides whether and how to re-invoke the agent after a failed invocation.

    Strategy:
      * FATAL failures are never retried.
      * RATE_LIMIT first downgrades the model once (one-way, no upgrade within
        a task); when no downgrade is left it is handled as OTHER_TRANSIENT.
      * OTHER_TRANSIENT sleeps ``min(max, base * 2**(n-1))`` with equal jitter.
      * Downgrades and backoffs share the ``max_attempts`` budget.
    """

    def __init__(  # noqa: PLR0913
        self,
        routing: AgentRouting,
        *,
        base_seconds: float = 5.0,
        max_seconds: float = 60.0,
        max_attempts: int = 3,
        transient_exit_codes: tuple[int, ...] = (137, 143),
        rng: random.Random | None = None,
    ) -> None:
        self.routing = routing
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.max_attempts = max_attempts
        self.transient_exit_codes = transient_exit_codes
        self._random = rng or random.Random()  # noqa: S311

    def new_state(self) -> ModelState:
        return ModelState(model=self.routing.model)

    def classify(self, result: AgentResult) -> FailureClassification:
        return classify_agent_failure(
            agent=self.routing.agent,
            exit_code=result.exit_code,
            output=result.output,
            transient_exit_codes=self.transient_exit_codes,
        )

    def on_rate_limit(self, state: ModelState) -> str | None:
        """Switch ``state`` to the fallback model; None when already downgraded."""

        if state.downgraded:
            return None
        fallback = self.routing.downgrade_from(state.model)
        if fallback is None:
            return None
        logger.warning(
            "Rate limited on %s/%s; falling back to %s",
            self.routing.agent,
            state.model,
            fallback,
        )
        state.model = fallback
        state.downgraded = True
        return fallback

    def compute_backoff(self, attempt: int) -> float:
        cap = min(self.max_seconds, self.base_seconds * (2 ** max(attempt - 1, 0)))
        half = cap / 2
        return half + self._random.uniform(0, half)

    def next(self, state: ModelState, failure_class: FailureClass) -> RetryDecision:
        if failure_class == FailureClass.FATAL:
            return RetryDecision(
                action=RetryAction.FAIL,
                model=state.model,
                reason="fatal agent failure",
            )
        if state.attempts >= self.max_attempts:
            return RetryDecision(
                action=RetryAction.FAIL,
                model=state.model,
                reason=f"backoff attempts exhausted ({self.max_attempts})",
            )

        state.attempts += 1
        if failure_class == FailureClass.RATE_LIMIT:
            downgraded = self.on_rate_limit(state)
            if downgraded is not None:
                return RetryDecision(
                    action=RetryAction.RETRY_DOWNGRADED,
                    model=downgraded,
                    reason="rate limited, model downgraded",
                )

        delay = self.compute_backoff(state.attempts)
        logger.info(
            "Transient %s failure; retry %d/%d in %.1fs",
            failure_class.value,
            state.attempts,
            self.max_attempts,
            delay,
        )
        return RetryDecision(
            action=RetryAction.RETRY_AFTER_BACKOFF,
            model=state.model,
            delay_seconds=delay,
            reason=f"{failure_class.value}, backing off",
        )
