"""
SLA Clock: time-in-stage and the green / yellow / red health bucket.

    elapsed_days  = whole days since the entry reached its stage (never < 0)
    overdue_days  = max(0, elapsed_days - sla_deadline_days)
    bucket        = red     if overdue_days > 0
                    yellow  if sla_deadline_days - elapsed_days <= warning window (1 day)
                    green   otherwise

Pure given ``now``.  Health is recomputed on every read; a stored value is
only ever a cache.  Callers take one ``now`` per logical operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from leadflow.core.exceptions import ConfigurationError
from leadflow.models.entry import as_utc

DEFAULT_WARNING_WINDOW_DAYS = 1
_SECONDS_PER_DAY = 86400


class HealthBucket(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


@dataclass(frozen=True)
class SLAHealth:
    elapsed_days: int
    overdue_days: int
    bucket: HealthBucket
    deadline_days: int
    due_at: datetime | None = None

    @property
    def days_remaining(self) -> int:
        return self.deadline_days - self.elapsed_days

    def to_dict(self) -> dict:
        return {
            "elapsed_days": self.elapsed_days,
            "overdue_days": self.overdue_days,
            "days_remaining": self.days_remaining,
            "deadline_days": self.deadline_days,
            "bucket": self.bucket.value,
            "due_at": self.due_at.isoformat() if self.due_at else None,
        }


def elapsed_whole_days(since: datetime, now: datetime) -> int:
    """Floor of the days between ``since`` and ``now``, clamped at 0 for clock skew."""
    seconds = (as_utc(now) - as_utc(since)).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // _SECONDS_PER_DAY)


def classify(
    elapsed_days: int,
    deadline_days: int,
    warning_window_days: int = DEFAULT_WARNING_WINDOW_DAYS,
) -> tuple[int, HealthBucket]:
    """Return ``(overdue_days, bucket)`` for an elapsed / deadline pair."""
    if deadline_days is None or deadline_days < 0:
        raise ConfigurationError(f"SLA deadline must be >= 0, got {deadline_days!r}")
    overdue = max(0, elapsed_days - deadline_days)
    if overdue > 0:
        return overdue, HealthBucket.RED
    if deadline_days - elapsed_days <= warning_window_days:
        return overdue, HealthBucket.YELLOW
    return overdue, HealthBucket.GREEN


def health(
    stage,
    entry,
    now: datetime,
    *,
    warning_window_days: int = DEFAULT_WARNING_WINDOW_DAYS,
) -> SLAHealth:
    """Health of ``entry`` in ``stage`` at instant ``now``.

    ``stage`` needs ``sla_deadline_days``; ``entry`` needs ``entered_stage_at``.
    """
    entered = as_utc(entry.entered_stage_at)
    elapsed = elapsed_whole_days(entered, now)
    overdue, bucket = classify(elapsed, stage.sla_deadline_days, warning_window_days)
    return SLAHealth(
        elapsed_days=elapsed,
        overdue_days=overdue,
        bucket=bucket,
        deadline_days=stage.sla_deadline_days,
        due_at=entered + timedelta(days=stage.sla_deadline_days),
    )


def time_metrics(stage, entry, now: datetime, sla: SLAHealth | None = None) -> dict:
    """``time-metric`` values for rule evaluation, all computed from one ``now``."""
    sla = sla or health(stage, entry, now)
    return {
        "days_in_stage": sla.elapsed_days,
        "overdue_days": sla.overdue_days,
        "days_remaining": sla.days_remaining,
        "sla_deadline_days": sla.deadline_days,
        "days_since_enrolled": elapsed_whole_days(entry.enrolled_at, now),
        "health": sla.bucket.value,
    }
