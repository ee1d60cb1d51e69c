"""Deterministic agent failure classification for retry policy."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pentest_pipeline.orchestrator.models import FailureClass

if TYPE_CHECKING:
    from pentest_pipeline.config import RetrySettings

FAILURE_CLASSIFIER_VERSION = 1

_SESSION_LIMIT_PATTERNS: tuple[str, ...] = (
    "session limit reached",
    "spending cap",
    "usage limit reached",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credit balance",
    "credits",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "invalid x-api-key",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "overloaded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
    "timeout",
    "econnreset",
    "socket hang up",
    "could not resolve host",
    "api error",
    "terminated",
    "try again later",
)

_ALWAYS_NON_RETRYABLE: frozenset[FailureClass] = frozenset(
    {FailureClass.SESSION_LIMIT, FailureClass.BILLING_OR_QUOTA},
)
_RETRYABLE_CLASSES: frozenset[FailureClass] = frozenset(
    {FailureClass.RATE_LIMIT, FailureClass.TRANSIENT, FailureClass.VALIDATION},
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for audit events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def is_session_limit_text(text: str) -> bool:
    """True when streamed agent content reports session or quota exhaustion."""

    return _first_match(text.lower(), _SESSION_LIMIT_PATTERNS) is not None


def classify_failure(
    message: str,
    *,
    exit_code: int | None = None,
    retryable_hint: bool | None = None,
    transient_exit_codes: tuple[int, ...] = (124, 137, 143),
) -> FailureClassification:
    """Classify an execution failure into a deterministic retry class.

    An explicit ``retryable_hint`` from the invoker wins over text heuristics,
    except for session and quota exhaustion which never retry.
    """

    haystack = message.lower()
    failure_class, rule, pattern = _match_class(haystack, exit_code, transient_exit_codes)

    if failure_class in _ALWAYS_NON_RETRYABLE:
        retryable = False
    elif retryable_hint is not None:
        retryable = retryable_hint
        rule = f"{rule}+invoker_hint"
    else:
        retryable = failure_class in _RETRYABLE_CLASSES

    return FailureClassification(
        failure_class=failure_class,
        retryable=retryable,
        matched_rule=rule,
        matched_pattern=pattern,
    )


def compute_retry_delay(
    attempt_number: int,
    failure_class: FailureClass | None,
    settings: RetrySettings,
    rng: random.Random | None = None,
) -> float:
    """Full-jitter exponential backoff, floored for rate-limit failures."""

    source = rng or random.Random()
    ceiling = min(
        settings.retry_max_seconds,
        settings.retry_base_seconds * (2 ** max(0, attempt_number - 1)),
    )
    delay = source.uniform(0, ceiling)
    if failure_class == FailureClass.RATE_LIMIT:
        delay = max(delay, settings.rate_limit_floor_seconds)
    return delay


def _match_class(
    haystack: str,
    exit_code: int | None,
    transient_exit_codes: tuple[int, ...],
) -> tuple[FailureClass, str, str | None]:
    ordered: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
        (FailureClass.SESSION_LIMIT, "session_limit", _SESSION_LIMIT_PATTERNS),
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.RATE_LIMIT, "rate_limit", _RATE_LIMIT_PATTERNS),
    )
    for failure_class, rule, patterns in ordered:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return failure_class, rule, pattern

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClass.TRANSIENT, "generic_transient", pattern
    if exit_code is not None and exit_code in transient_exit_codes:
        return FailureClass.TRANSIENT, "transient_exit_code", None
    return FailureClass.NON_RETRYABLE, "fallback_non_retryable", None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
