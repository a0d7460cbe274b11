"""Exponential backoff for failed deliveries.

Retry ``n`` is due ``2**n`` minutes after attempt ``n`` fails:
attempt 1 -> 2 minutes, attempt 2 -> 4 minutes, attempt 3 -> 8 minutes.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from dealhook.models import utc_now


def backoff_delay(attempt: int) -> timedelta:
    """Delay before the retry that follows ``attempt``."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return timedelta(minutes=2**attempt)


def next_retry_at(
    attempt: int,
    max_attempts: int,
    now: datetime | None = None,
) -> datetime | None:
    """Compute when the next retry is due.

    Args:
        attempt: Attempts already made (the failed one included).
        max_attempts: Subscription's retry_count.
        now: Reference time. Defaults to the current UTC time.

    Returns:
        The due time, or None once attempts are exhausted.
    """
    if attempt >= max_attempts:
        return None
    return (now or utc_now()) + backoff_delay(attempt)
