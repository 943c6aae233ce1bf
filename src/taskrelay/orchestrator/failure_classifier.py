"""Deterministic agent failure classification for the backoff strategy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from taskrelay.orchestrator.models import FailureClass

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    r"unauthorized",
    r"forbidden",
    r"permission denied",
    r"invalid api key",
    r"authentication",
    r"not logged in",
    r"restricted token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    r"model not found",
    r"unknown model",
    r"unsupported model",
    r"invalid model",
    r"model is not available",
    r"not available in your region",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate.?limit",
    r"too many requests",
    r"\b429\b",
    r"overloaded",
    r"capacity",
    r"quota",
    r"resource_exhausted",
    r"usage limit",
    r"\b50[234]\b",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    r"temporarily unavailable",
    r"temporary failure",
    r"connection reset",
    r"connection refused",
    r"network error",
    r"could not resolve host",
    r"timed out",
    r"econnreset",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def describe(self) -> str:
        if self.matched_pattern is None:
            return f"{self.reason_code} ({self.matched_rule})"
        return f"{self.reason_code} ({self.matched_rule}: {self.matched_pattern})"


def classify_agent_failure(
    *,
    agent: str,
    exit_code: int,
    output: str,
    transient_exit_codes: tuple[int, ...],
) -> FailureClassification:
    """Classify a non-timeout agent failure into RATE_LIMIT, OTHER_TRANSIENT or FATAL."""

    haystack = output.lower()

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.FATAL,
            reason_code=f"{agent}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.FATAL,
            reason_code=f"{agent}_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMIT,
            reason_code=f"{agent}_rate_limit",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return FailureClassification(
            failure_class=FailureClass.OTHER_TRANSIENT,
            reason_code=f"{agent}_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.FATAL,
        reason_code=f"{agent}_fatal",
        matched_rule="fallback_fatal",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack):
            return pattern
    return None
