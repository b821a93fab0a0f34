"""Retry delay calculation shared by task queues and the workflow engine."""
from __future__ import annotations

from fleet.core.models import BackoffType, RetryPolicy


def calculate_delay(policy: RetryPolicy, attempt: int) -> float:
    """Return the delay in milliseconds before retry ``attempt`` (0-based)."""
    attempt = max(attempt, 0)
    initial = policy.initial_delay_ms
    if policy.backoff_type is BackoffType.FIXED:
        return initial
    if policy.backoff_type is BackoffType.LINEAR:
        return min(initial + initial * attempt, policy.max_delay_ms)
    try:
        delay = initial * policy.multiplier**attempt
    except OverflowError:
        return policy.max_delay_ms
    return min(delay, policy.max_delay_ms)
