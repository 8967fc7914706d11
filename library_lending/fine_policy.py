"""Overdue fine pricing.

Pure functions only: the same due date, reference instant and configuration
always price to the same amount, so a fine can be recomputed as often as a
caller likes.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .loan import FineConfig

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def effective_config(config: Optional[FineConfig]) -> FineConfig:
    """Return ``config`` if usable, otherwise the documented defaults (10/day, 0 grace, cap 1000)."""
    if config is not None and config.is_valid():
        return config
    if config is not None:
        logger.warning(f"Ignoring invalid fine configuration {config.to_dict()}, using defaults")
    return FineConfig(is_default=True)


def days_late(due_date: datetime, reference_date: datetime, grace_period_days: int = 0) -> int:
    """Whole days past the end of the grace period, rounded up.

    One second past the threshold already counts as a full day.
    """
    threshold = _aware(due_date) + timedelta(days=grace_period_days)
    elapsed = _aware(reference_date) - threshold
    if elapsed <= timedelta(0):
        return 0
    return -((-elapsed) // ONE_DAY)


def compute_fine(due_date: datetime, reference_date: datetime, config: Optional[FineConfig] = None) -> float:
    cfg = effective_config(config)
    late = days_late(due_date, reference_date, int(cfg.grace_period_days))
    if late == 0:
        return 0.0
    amount = late * float(cfg.rate_per_day)
    return round(min(max(amount, 0.0), float(cfg.max_fine)), 2)
