"""
metered/features/queue/admission.py

Batch admission against per-plan rate limits and daily caps.

Handles:
- Sliding-window rate limit (distinct batches per window)
- Daily job cap (process-local calendar day)
- Raising helpers for callers that want exceptions instead of decisions
"""

import math
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from metered.core.database import jobs
from metered.core.errors import DailyLimitExceededError, RateLimitedError, ValidationError
from metered.core.logging import log_event
from metered.features.plans.policy import get_policy
from metered.models.billing import as_utc, utc_now
from metered.models.queue import AdmissionDecision, DenyReason


def local_day_start(now: datetime) -> datetime:
    """Midnight of `now`'s calendar day in the process timezone, as UTC."""
    local = as_utc(now).astimezone()
    # Resolve the offset at midnight itself; it differs from `now` on DST days
    midnight = datetime.combine(local.date(), time.min).astimezone()
    return midnight.astimezone(timezone.utc)


def _batches_in_window(db: Session, account_id: str, since: datetime):
    """(batch count, oldest batch start) for batches created after `since`."""
    first_seen = (
        select(jobs.c.batch_id, func.min(jobs.c.created_at).label("started_at"))
        .where(jobs.c.account_id == account_id)
        .where(jobs.c.created_at > since)
        .group_by(jobs.c.batch_id)
        .subquery()
    )
    row = db.execute(
        select(func.count(), func.min(first_seen.c.started_at)).select_from(first_seen)
    ).fetchone()
    return int(row[0] or 0), as_utc(row[1])


def _jobs_since(db: Session, account_id: str, since: datetime) -> int:
    return db.execute(
        select(func.count())
        .select_from(jobs)
        .where(jobs.c.account_id == account_id)
        .where(jobs.c.created_at >= since)
    ).scalar() or 0


def admit(
    db: Session,
    account_id: str,
    plan,
    batch_size: int,
    *,
    new_batch: bool = True,
    now: Optional[datetime] = None,
) -> AdmissionDecision:
    """
    Decide whether a new batch of `batch_size` jobs may be queued.

    Run this in the same transaction that inserts the jobs. With
    `new_batch=False` the jobs join a batch already counted by the rate
    window, so only the daily cap applies.

    Raises:
        ValidationError: batch_size < 1
    """
    if batch_size < 1:
        raise ValidationError("batch_size must be at least 1")

    now = as_utc(now) or utc_now()
    policy = get_policy(plan)

    if new_batch and policy.rate_limit is not None:
        window = timedelta(seconds=policy.rate_limit.window_seconds)
        count, oldest = _batches_in_window(db, account_id, now - window)
        if count >= policy.rate_limit.max_batches:
            retry_after = policy.rate_limit.window_seconds
            if oldest is not None:
                retry_after = max(1, math.ceil((oldest + window - now).total_seconds()))
            log_event(
                "info",
                "queue.admit.denied",
                account_id=account_id,
                event_type="queue.admit",
                error_code=DenyReason.RATE_LIMITED.value,
                extra={"plan": policy.plan.value, "batches_in_window": count, "retry_after": retry_after},
            )
            return AdmissionDecision.deny(DenyReason.RATE_LIMITED, retry_after_seconds=retry_after)

    if policy.daily_limit is not None:
        used = _jobs_since(db, account_id, local_day_start(now))
        if used + batch_size > policy.daily_limit:
            log_event(
                "info",
                "queue.admit.denied",
                account_id=account_id,
                event_type="queue.admit",
                error_code=DenyReason.DAILY_LIMIT_EXCEEDED.value,
                extra={"plan": policy.plan.value, "daily_used": used, "batch_size": batch_size},
            )
            return AdmissionDecision.deny(
                DenyReason.DAILY_LIMIT_EXCEEDED,
                daily_used=used,
                daily_limit=policy.daily_limit,
            )
        return AdmissionDecision.allow(daily_used=used, daily_limit=policy.daily_limit)

    return AdmissionDecision.allow()


def ensure_admitted(
    db: Session,
    account_id: str,
    plan,
    batch_size: int,
    *,
    new_batch: bool = True,
    now: Optional[datetime] = None,
) -> AdmissionDecision:
    """admit(), raising RateLimitedError / DailyLimitExceededError on deny."""
    decision = admit(db, account_id, plan, batch_size, new_batch=new_batch, now=now)
    if decision.allowed:
        return decision
    if decision.reason == DenyReason.RATE_LIMITED:
        raise RateLimitedError(
            "Too many batches in a short time. Try again later.",
            retry_after_seconds=decision.retry_after_seconds,
        )
    raise DailyLimitExceededError(
        f"Daily limit reached ({decision.daily_used}/{decision.daily_limit} jobs today)."
    )
