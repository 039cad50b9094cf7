from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable

RATE_LIMIT_STATUS = 429
JITTER_MIN = 0.8
JITTER_MAX = 1.2
RETRY_AFTER_MAX_JITTER_SECONDS = 1.0


def is_transient_status(status_code: int) -> bool:
    return int(status_code) == RATE_LIMIT_STATUS or int(status_code) >= 500


def backoff_seconds(
    attempt: int,
    *,
    base_delay_ms: int,
    max_delay_ms: int,
    random_fn: Callable[[], float],
) -> float:
    """Exponential backoff capped at ``max_delay_ms`` with a 0.8x..1.2x jitter."""
    capped_ms = min(int(base_delay_ms) * (2 ** max(0, int(attempt))), int(max_delay_ms))
    jitter = JITTER_MIN + (JITTER_MAX - JITTER_MIN) * float(random_fn())
    return max(0.0, capped_ms * jitter / 1000.0)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max(0.0, (when - reference).total_seconds())


def retry_after_delay(
    value: str | None,
    *,
    random_fn: Callable[[], float],
    now: datetime | None = None,
) -> float | None:
    seconds = parse_retry_after(value, now=now)
    if seconds is None:
        return None
    return seconds + RETRY_AFTER_MAX_JITTER_SECONDS * float(random_fn())
