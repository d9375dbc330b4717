"""Policy helpers for driver submission and relaunch.

This module enforces static boundaries on a DriverDescription and decides the
relaunch schedule of supervised drivers. It never touches registry state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from clusterdispatch.config.settings import RetryConfig
from clusterdispatch.errors import RetryBudgetExhausted, ValidationError
from clusterdispatch.models import DriverDescription, DriverState


def _is_positive_int(v: object) -> bool:
    # bool is an int subclass; `cores: true` is not a core count.
    return isinstance(v, int) and not isinstance(v, bool) and v > 0


def enforce_driver_description(description: DriverDescription) -> None:
    """Reject descriptions the scheduler cannot launch."""
    if not _is_positive_int(description.mem_mb):
        raise ValidationError(f"Driver memory must be a positive number of MB (got {description.mem_mb!r})")
    if not _is_positive_int(description.cores):
        raise ValidationError(f"Driver cores must be a positive integer (got {description.cores!r})")
    main_class = description.command.main_class if description.command is not None else ""
    if not main_class or not main_class.strip():
        raise ValidationError("Driver command must name a main class")
    if description.submission_date is None or description.submission_date.tzinfo is None:
        raise ValidationError("Driver submission_date must be timezone-aware")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a bounded number of relaunches."""

    max_retries: int
    initial_backoff_seconds: float
    max_backoff_seconds: float

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=cfg.max_retries,
            initial_backoff_seconds=cfg.initial_backoff_seconds,
            max_backoff_seconds=cfg.max_backoff_seconds,
        )

    def backoff(self, attempt: int) -> timedelta:
        seconds = min(self.initial_backoff_seconds * (2**attempt), self.max_backoff_seconds)
        return timedelta(seconds=seconds)

    def next_retry_at(self, driver: DriverState, now: datetime) -> datetime:
        """Return when `driver` may be queued again; raise when it may not."""
        if driver.retries >= self.max_retries:
            raise RetryBudgetExhausted(driver.submission_id, driver.retries)
        return now + self.backoff(driver.retries)
