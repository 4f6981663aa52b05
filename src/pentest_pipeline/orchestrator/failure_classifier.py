"""Deterministic task-runtime failure classification for the unit retry policy."""

from __future__ import annotations

import random
from dataclasses import dataclass

from pentest_pipeline.orchestrator.models import FailureClass

RUNTIME_FAILURE_CLASSIFIER_VERSION = 1

RATE_LIMIT_BASE_DELAY_SECONDS = 30.0
RATE_LIMIT_STEP_SECONDS = 10.0
RATE_LIMIT_MAX_DELAY_SECONDS = 120.0
BACKOFF_MAX_DELAY_SECONDS = 30.0

_SESSION_LIMIT_PATTERNS: tuple[str, ...] = (
    "session limit reached",
    "session limit",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "spending cap",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "restricted token",
    "invalid prompt",
    "out of memory",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
)
_MAX_TURNS_PATTERNS: tuple[str, ...] = (
    "error_max_turns",
    "max turns",
    "maximum turns",
    "stuck in silence",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "econnreset",
    "econnrefused",
    "enotfound",
    "network error",
    "could not resolve host",
    "internal server error",
    "server error",
    "service unavailable",
    "bad gateway",
    "overloaded",
    "model unavailable",
    "mcp server",
    "api error",
    "terminated",
    "please retry",
    "try again later",
    "500",
    "502",
    "503",
    "504",
)

_RULES: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
    ("session_limit", FailureClass.SESSION_LIMIT, _SESSION_LIMIT_PATTERNS),
    ("billing_or_quota", FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    ("access_or_auth", FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    ("model_not_available", FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    ("rate_limit", FailureClass.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    ("max_turns", FailureClass.MAX_TURNS, _MAX_TURNS_PATTERNS),
    ("timeout", FailureClass.TIMEOUT, _TIMEOUT_PATTERNS),
    ("generic_transient", FailureClass.BACKEND_TRANSIENT, _GENERIC_TRANSIENT_PATTERNS),
)

_FATAL_CLASSES = frozenset({FailureClass.SESSION_LIMIT, FailureClass.BILLING_OR_QUOTA})
_NON_RETRYABLE_CLASSES = frozenset(
    {
        FailureClass.SESSION_LIMIT,
        FailureClass.BILLING_OR_QUOTA,
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.MODEL_NOT_AVAILABLE,
        FailureClass.BACKEND_NON_RETRYABLE,
    },
)


@dataclass(slots=True)
class RuntimeFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class not in _NON_RETRYABLE_CLASSES

    @property
    def fatal(self) -> bool:
        return self.failure_class in _FATAL_CLASSES

    def to_event_details(self, *, unit: str) -> dict[str, object]:
        """Serialize classifier diagnostics for audit events."""

        return {
            "classifier_version": RUNTIME_FAILURE_CLASSIFIER_VERSION,
            "unit": unit,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "retryable": self.retryable,
            "fatal": self.fatal,
        }


def classify_runtime_failure(
    *,
    unit: str,
    message: str,
    exit_code: int | None = None,
    transient_exit_codes: tuple[int, ...] = (),
) -> RuntimeFailureClassification:
    """Classify a runtime failure message into a deterministic retry class."""

    haystack = message.lower()
    for rule, failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return RuntimeFailureClassification(
                failure_class=failure_class,
                reason_code=f"{unit}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if exit_code is not None and exit_code in transient_exit_codes:
        return RuntimeFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{unit}_backend_transient",
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )

    return RuntimeFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{unit}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def retry_delay_seconds(
    failure_class: FailureClass,
    attempt: int,
    *,
    rng: random.Random | None = None,
) -> float:
    """Backoff before the next attempt.

    Rate limits wait 30s plus 10s per attempt (capped at 2 minutes); everything
    else uses exponential backoff with up to one second of jitter, capped at 30s.
    """

    if failure_class is FailureClass.RATE_LIMIT:
        return min(
            RATE_LIMIT_BASE_DELAY_SECONDS + attempt * RATE_LIMIT_STEP_SECONDS,
            RATE_LIMIT_MAX_DELAY_SECONDS,
        )
    jitter = (rng or random).random()
    return min(2.0**attempt + jitter, BACKOFF_MAX_DELAY_SECONDS)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
