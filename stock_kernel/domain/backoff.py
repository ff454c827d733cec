"""
Backoff -- retry delay after consecutive sync failures.

Pure function, zero I/O.  The delay grows geometrically with the failure
count and is capped, so a cursor that keeps failing settles into polling
every ``cap_seconds`` instead of going silent.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from stock_kernel.domain.policy import StockPolicy


def compute_backoff_seconds(
    consecutive_failures: int,
    base_seconds: int,
    multiplier: int,
    cap_seconds: int,
) -> int:
    """Delay before the next attempt.

    ``0`` failures -> no delay; ``n`` failures ->
    ``min(cap, base * multiplier ** (n - 1))``.

    Guarantees:
        - Non-decreasing in ``consecutive_failures``.
        - Never exceeds ``cap_seconds``.
    """
    if consecutive_failures <= 0:
        return 0

    delay = base_seconds
    for _ in range(consecutive_failures - 1):
        delay *= multiplier
        if delay >= cap_seconds:
            return cap_seconds
    return min(delay, cap_seconds)


def next_attempt_at(
    now: datetime,
    consecutive_failures: int,
    policy: StockPolicy,
) -> datetime:
    """Absolute time of the next attempt under ``policy``."""
    return now + timedelta(
        seconds=compute_backoff_seconds(
            consecutive_failures,
            policy.backoff_base_seconds,
            policy.backoff_multiplier,
            policy.backoff_cap_seconds,
        )
    )
