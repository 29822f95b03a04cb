"""
metered/features/queue/eta.py

Queue position and ETA for status polls.

The estimate approximates a multi-server queue: known work ahead of the
batch plus work in flight plus the batch's own remaining jobs, divided by
the plan's parallelism. It is display guidance, not a scheduling promise.
"""

import math
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from metered.core.config import settings
from metered.core.database import jobs
from metered.features.jobs.store import list_batch_jobs
from metered.features.plans.policy import max_parallel_of, normalize_plan
from metered.models.billing import as_utc
from metered.models.job import Job, JobMode, JobStatus
from metered.models.queue import QueueEstimate

MIN_ESTIMATE_SECONDS = 5.0
MAX_ESTIMATE_SECONDS = 600.0
MIN_ETA_SECONDS = 5
SAMPLE_SIZE = 200


def fallback_seconds(mode) -> float:
    """Configured per-mode duration, else the per-image default; never below 5s."""
    mode = JobMode(mode)
    per_mode = {
        JobMode.BASIC: settings.IMAGE_QUEUE_ESTIMATE_SECONDS_BASIC,
        JobMode.PRO: settings.IMAGE_QUEUE_ESTIMATE_SECONDS_PRO,
        JobMode.ULTRA: settings.IMAGE_QUEUE_ESTIMATE_SECONDS_ULTRA,
    }[mode]
    value = per_mode if per_mode is not None else settings.IMAGE_QUEUE_ESTIMATE_SECONDS_PER_IMAGE
    return max(MIN_ESTIMATE_SECONDS, float(value))


def estimate_avg_duration_seconds(db: Session, plan, mode) -> float:
    """
    Mean run time of the latest succeeded jobs for plan + mode.

    Uses up to 200 samples, clamped to [5, 600] seconds. Without samples the
    configured fallback for the mode is returned.
    """
    plan = normalize_plan(plan)
    mode = JobMode(mode)
    rows = db.execute(
        select(jobs.c.started_at, jobs.c.finished_at)
        .where(jobs.c.plan == plan.value)
        .where(jobs.c.mode == mode.value)
        .where(jobs.c.status == JobStatus.SUCCEEDED.value)
        .where(jobs.c.started_at.isnot(None))
        .where(jobs.c.finished_at.isnot(None))
        .order_by(jobs.c.finished_at.desc())
        .limit(SAMPLE_SIZE)
    ).all()

    durations = [
        (as_utc(row.finished_at) - as_utc(row.started_at)).total_seconds()
        for row in rows
    ]
    if not durations:
        return fallback_seconds(mode)
    avg = sum(durations) / len(durations)
    if avg <= 0:
        return fallback_seconds(mode)
    return min(MAX_ESTIMATE_SECONDS, max(MIN_ESTIMATE_SECONDS, avg))


def estimates_for_plan(db: Session, plan) -> Dict[JobMode, float]:
    return {mode: estimate_avg_duration_seconds(db, plan, mode) for mode in JobMode}


def workload_seconds_by_mode(counts: Dict[JobMode, int], estimates: Dict[JobMode, float]) -> float:
    return sum(max(0, count) * estimates[mode] for mode, count in counts.items())


def _counts_by_mode(db: Session, plan: str, status: JobStatus, created_before: Optional[datetime] = None) -> Dict[JobMode, int]:
    query = (
        select(jobs.c.mode, func.count())
        .where(jobs.c.plan == plan)
        .where(jobs.c.status == status.value)
        .group_by(jobs.c.mode)
    )
    if created_before is not None:
        query = query.where(jobs.c.created_at < created_before)
    return {JobMode(mode): int(count) for mode, count in db.execute(query).all()}


def queue_position(
    db: Session,
    job: Job,
    *,
    batch_jobs: Optional[List[Job]] = None,
    estimates: Optional[Dict[JobMode, float]] = None,
) -> QueueEstimate:
    """
    Position and ETA for the batch `job` belongs to.

    - a queued sibling exists: position counts same-plan queued jobs created
      strictly before the first queued sibling; ETA covers queued work ahead,
      work in flight, and the batch's remaining jobs
    - only processing siblings remain: ETA covers the batch's remaining jobs
    - batch finished: no position, no ETA
    """
    siblings = batch_jobs if batch_jobs is not None else list_batch_jobs(db, job.batch_id)
    remaining = sum(1 for j in siblings if not j.status.is_terminal)
    if remaining == 0:
        return QueueEstimate()

    plan = normalize_plan(job.plan)
    parallel = max_parallel_of(plan)
    estimates = estimates or estimates_for_plan(db, plan)
    own_seconds = remaining * estimates[job.mode]

    queued = [j for j in siblings if j.status == JobStatus.QUEUED]
    if queued:
        first_created = min(j.created_at for j in queued)
        ahead = _counts_by_mode(db, plan.value, JobStatus.QUEUED, created_before=first_created)
        active = _counts_by_mode(db, plan.value, JobStatus.PROCESSING)
        position = max(1, sum(ahead.values()) + 1)
        total_seconds = (
            workload_seconds_by_mode(ahead, estimates)
            + workload_seconds_by_mode(active, estimates)
            + own_seconds
        )
        return QueueEstimate(
            position=position,
            eta_seconds=max(MIN_ETA_SECONDS, math.ceil(total_seconds / parallel)),
        )

    return QueueEstimate(eta_seconds=max(MIN_ETA_SECONDS, math.ceil(own_seconds / parallel)))
