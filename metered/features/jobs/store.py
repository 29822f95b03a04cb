"""
metered/features/jobs/store.py

Job record store and status machine.

Handles:
- Job insertion (only after a reservation)
- Owner-scoped lookups
- Status-guarded transitions (queued -> processing -> succeeded|failed|canceled)
- Claiming under the per-plan parallel limit
- Stale processing job recovery

Functions take an open Session and never commit.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, func
from sqlalchemy.orm import Session

from metered.core.config import settings
from metered.core.database import jobs
from metered.core.errors import InvalidJobTransitionError, JobNotFoundError
from metered.core.logging import log_event
from metered.features.plans.policy import max_parallel_of, normalize_plan, priority_of
from metered.models.billing import DebitComposition, as_utc, to_tokens, utc_now, TokenAmount
from metered.models.job import Job, JobMode, JobSpec, JobStatus

MAX_ERROR_CHARS = 5000
MIN_STALE_MINUTES = 5

# Allowed source statuses per target status
_TRANSITIONS = {
    JobStatus.PROCESSING: (JobStatus.QUEUED,),
    JobStatus.SUCCEEDED: (JobStatus.PROCESSING,),
    JobStatus.FAILED: (JobStatus.QUEUED, JobStatus.PROCESSING),
    JobStatus.CANCELED: (JobStatus.QUEUED, JobStatus.PROCESSING),
}


def _row_to_job(row) -> Job:
    return Job(
        id=row.id,
        batch_id=row.batch_id,
        batch_index=row.batch_index,
        account_id=row.account_id,
        plan=normalize_plan(row.plan),
        mode=JobMode(row.mode),
        status=JobStatus(row.status),
        priority=row.priority,
        tokens_reserved=to_tokens(row.tokens_reserved),
        tokens_refunded=to_tokens(row.tokens_refunded),
        reservation=DebitComposition.from_json(row.reservation) if row.reservation else None,
        usage_recorded=bool(row.usage_recorded),
        label=row.label,
        model=row.model,
        prompt=row.prompt,
        payload=row.payload,
        result_url=row.result_url,
        error_text=row.error_text,
        worker_id=row.worker_id,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        started_at=as_utc(row.started_at),
        finished_at=as_utc(row.finished_at),
    )


def insert_job(db: Session, spec: JobSpec, *, now: Optional[datetime] = None) -> Job:
    """Insert one queued job. Priority comes from the plan policy."""
    ts = as_utc(now) or utc_now()
    job_id = str(uuid4())
    db.execute(
        insert(jobs).values(
            id=job_id,
            batch_id=spec.batch_id,
            batch_index=spec.batch_index,
            account_id=spec.account_id,
            plan=spec.plan.value,
            mode=spec.mode.value,
            status=JobStatus.QUEUED.value,
            priority=priority_of(spec.plan),
            label=spec.label,
            model=spec.model,
            prompt=spec.prompt,
            payload=spec.payload,
            tokens_reserved=to_tokens(spec.tokens_reserved),
            tokens_refunded=to_tokens(0),
            reservation=spec.reservation.to_json() if spec.reservation else None,
            usage_recorded=False,
            created_at=ts,
            updated_at=ts,
        )
    )
    return get_job(db, job_id)


def get_job(
    db: Session,
    job_id: str,
    *,
    account_id: Optional[str] = None,
    for_update: bool = False,
) -> Job:
    """
    Load a job, optionally scoped to its owner.

    Raises:
        JobNotFoundError: missing, or owned by another account
    """
    query = select(jobs).where(jobs.c.id == job_id)
    if account_id is not None:
        query = query.where(jobs.c.account_id == account_id)
    if for_update:
        query = query.with_for_update()
    row = db.execute(query).fetchone()
    if row is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return _row_to_job(row)


def list_batch_jobs(
    db: Session,
    batch_id: str,
    *,
    account_id: Optional[str] = None,
    for_update: bool = False,
) -> List[Job]:
    """Sibling jobs of a batch in batch_index order (empty when none or foreign)."""
    query = select(jobs).where(jobs.c.batch_id == batch_id)
    if account_id is not None:
        query = query.where(jobs.c.account_id == account_id)
    if for_update:
        query = query.with_for_update()
    rows = db.execute(query.order_by(jobs.c.batch_index.asc())).all()
    return [_row_to_job(row) for row in rows]


def count_processing(db: Session, plan) -> int:
    plan = normalize_plan(plan)
    return db.execute(
        select(func.count())
        .select_from(jobs)
        .where(jobs.c.plan == plan.value)
        .where(jobs.c.status == JobStatus.PROCESSING.value)
    ).scalar() or 0


def _transition(
    db: Session,
    job_id: str,
    target: JobStatus,
    values: dict,
) -> Job:
    sources = [s.value for s in _TRANSITIONS[target]]
    result = db.execute(
        update(jobs)
        .where(jobs.c.id == job_id)
        .where(jobs.c.status.in_(sources))
        .values(status=target.value, **values)
    )
    if result.rowcount == 0:
        current = get_job(db, job_id)
        log_event(
            "warning",
            "job.transition_rejected",
            account_id=current.account_id,
            batch_id=current.batch_id,
            job_id=job_id,
            event_type="job.transition",
            error_code=InvalidJobTransitionError.code,
            extra={"from": current.status.value, "to": target.value},
        )
        raise InvalidJobTransitionError(
            f"Job {job_id} cannot move from {current.status.value} to {target.value}"
        )
    return get_job(db, job_id)


def claim_next_job(
    db: Session,
    plan,
    *,
    worker_id: str,
    now: Optional[datetime] = None,
) -> Optional[Job]:
    """
    Move the next queued job of `plan` to processing.

    Picks the highest priority, then oldest, queued job. Returns None when
    nothing is queued or the plan already runs `max_parallel` jobs.
    """
    plan = normalize_plan(plan)
    ts = as_utc(now) or utc_now()

    if count_processing(db, plan) >= max_parallel_of(plan):
        return None

    row = db.execute(
        select(jobs.c.id)
        .where(jobs.c.plan == plan.value)
        .where(jobs.c.status == JobStatus.QUEUED.value)
        .order_by(jobs.c.priority.desc(), jobs.c.created_at.asc(), jobs.c.batch_index.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    ).fetchone()
    if row is None:
        return None

    result = db.execute(
        update(jobs)
        .where(jobs.c.id == row.id)
        .where(jobs.c.status == JobStatus.QUEUED.value)
        .values(status=JobStatus.PROCESSING.value, worker_id=worker_id, started_at=ts, updated_at=ts)
    )
    if result.rowcount == 0:
        return None

    job = get_job(db, row.id)
    log_event(
        "info",
        "job.claimed",
        account_id=job.account_id,
        batch_id=job.batch_id,
        job_id=job.id,
        event_type="job.claim",
        extra={"worker_id": worker_id, "plan": plan.value},
    )
    return job


def mark_succeeded(db: Session, job_id: str, *, result_url: Optional[str] = None, now: Optional[datetime] = None) -> Job:
    ts = as_utc(now) or utc_now()
    return _transition(
        db, job_id, JobStatus.SUCCEEDED,
        {"result_url": result_url, "error_text": None, "finished_at": ts, "updated_at": ts},
    )


def mark_failed(db: Session, job_id: str, *, error: Optional[str] = None, now: Optional[datetime] = None) -> Job:
    ts = as_utc(now) or utc_now()
    error_text = str(error or "Unknown error")[:MAX_ERROR_CHARS]
    return _transition(
        db, job_id, JobStatus.FAILED,
        {"error_text": error_text, "finished_at": ts, "updated_at": ts},
    )


def mark_canceled(db: Session, job_id: str, *, now: Optional[datetime] = None) -> Job:
    ts = as_utc(now) or utc_now()
    return _transition(
        db, job_id, JobStatus.CANCELED,
        {"finished_at": ts, "updated_at": ts},
    )


def mark_refunded(db: Session, job_id: str, tokens_refunded: TokenAmount, *, now: Optional[datetime] = None) -> None:
    """Set the cumulative refunded amount on a job row."""
    ts = as_utc(now) or utc_now()
    db.execute(
        update(jobs)
        .where(jobs.c.id == job_id)
        .values(tokens_refunded=to_tokens(tokens_refunded), updated_at=ts)
    )


def mark_usage_recorded(db: Session, job_ids: Iterable[str], *, now: Optional[datetime] = None) -> None:
    ids = list(job_ids)
    if not ids:
        return
    ts = as_utc(now) or utc_now()
    db.execute(
        update(jobs)
        .where(jobs.c.id.in_(ids))
        .values(usage_recorded=True, updated_at=ts)
    )


def requeue_stale_jobs(
    db: Session,
    *,
    stale_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Put processing jobs whose worker went quiet back in the queue.

    A job is stale when `updated_at` is older than `stale_minutes`
    (default IMAGE_WORKER_STALE_MINUTES, never below 5). Returns the ids moved.
    """
    ts = as_utc(now) or utc_now()
    minutes = max(MIN_STALE_MINUTES, int(stale_minutes or settings.IMAGE_WORKER_STALE_MINUTES))
    cutoff = ts - timedelta(minutes=minutes)

    stale_ids = [
        row.id
        for row in db.execute(
            select(jobs.c.id)
            .where(jobs.c.status == JobStatus.PROCESSING.value)
            .where(jobs.c.updated_at < cutoff)
            .with_for_update(skip_locked=True)
        ).all()
    ]
    if not stale_ids:
        return []

    db.execute(
        update(jobs)
        .where(jobs.c.id.in_(stale_ids))
        .where(jobs.c.status == JobStatus.PROCESSING.value)
        .values(status=JobStatus.QUEUED.value, worker_id=None, updated_at=ts)
    )
    return stale_ids


def unrefunded_tokens(job: Job) -> Decimal:
    return to_tokens(max(job.tokens_reserved - job.tokens_refunded, to_tokens(0)))
