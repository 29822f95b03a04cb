"""
metered/features/generation/service.py

Generation service: the transactional entry points callers use.

Handles:
- Ledger operations (reserve, refund, usage) as single units of work
- Batch submission (admit, reserve, enqueue in one transaction)
- Worker outcomes and cancellation with per-job refunds
- One-time batch settlement
- Owner-scoped status views

Each public function opens its own transaction; settle_batch takes the
caller's session so it can run inside the outcome transaction.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from metered.core.database import transaction
from metered.core.errors import BatchNotFoundError, PlanRestrictedError, ValidationError
from metered.core.logging import log_event
from metered.features.batches.aggregator import summarize
from metered.features.jobs import store
from metered.features.plans.policy import get_image_policy, max_parallel_of, next_plan
from metered.features.queue import admission
from metered.features.queue.eta import queue_position
from metered.features.tokens import ledger
from metered.features.usage import service as usage
from metered.models.account import Account
from metered.models.batch import BatchItem, BatchStatusView, BatchSubmission, BatchSummary
from metered.models.billing import ZERO, DebitComposition, ReservationResult, TokenAmount, UsageRecord, to_tokens
from metered.models.job import Job, JobMode, JobSpec, JobStatus, OutputRequest
from metered.models.plan import ImagePolicy, Plan
from metered.models.queue import AdmissionDecision

IMAGE_SERVICE_TYPE = "image_generate"


def _burn_if_expired(account_id: str, *, now: Optional[datetime] = None) -> None:
    """Persist a lapsed subscription's burn even when the reservation that follows is denied."""
    with transaction() as db:
        ledger.burn_if_expired(db, account_id, now=now)


def reserve(account_id: str, tokens: TokenAmount, *, now: Optional[datetime] = None) -> ReservationResult:
    _burn_if_expired(account_id, now=now)
    with transaction() as db:
        return ledger.reserve(db, account_id, tokens, now=now)


def refund(
    account_id: str,
    tokens: TokenAmount,
    composition: Optional[DebitComposition] = None,
    *,
    now: Optional[datetime] = None,
) -> Decimal:
    with transaction() as db:
        return ledger.refund(db, account_id, tokens, composition, now=now)


def record_usage(
    account_id: str,
    tokens_used: TokenAmount,
    *,
    service_type: str,
    model_used: Optional[str] = None,
    prompt: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[UsageRecord]:
    with transaction() as db:
        return usage.record_usage(
            db,
            account_id,
            tokens_used,
            service_type=service_type,
            model_used=model_used,
            prompt=prompt,
            metadata=metadata,
        )


def admit(account_id: str, plan, batch_size: int, *, now: Optional[datetime] = None) -> AdmissionDecision:
    with transaction() as db:
        return admission.admit(db, account_id, plan, batch_size, now=now)


def enqueue_job(spec: JobSpec, *, now: Optional[datetime] = None) -> str:
    """
    Admit and insert a job for an existing reservation.

    The first job of a batch is admitted as a new batch; later jobs of the
    same batch only count against the daily cap.

    Raises:
        ValidationError: no reservation, or it does not cover tokens_reserved
        RateLimitedError / DailyLimitExceededError: admission denied
    """
    if spec.reservation is None:
        raise ValidationError("A job can only be queued after a successful reservation")
    if spec.reservation.total != to_tokens(spec.tokens_reserved):
        raise ValidationError("Job reservation does not match tokens_reserved")
    with transaction() as db:
        ledger.get_account(db, spec.account_id, for_update=True)
        siblings = store.list_batch_jobs(db, spec.batch_id, for_update=True)
        admission.ensure_admitted(db, spec.account_id, spec.plan, 1, new_batch=not siblings, now=now)
        job = store.insert_job(db, spec, now=now)
    log_event("info", "job.enqueued", account_id=job.account_id, batch_id=job.batch_id, job_id=job.id, event_type="job.enqueue")
    return job.id


def _coerce_output(output: Union[OutputRequest, Dict[str, Any], str, None]) -> OutputRequest:
    if isinstance(output, OutputRequest):
        return output
    if isinstance(output, dict):
        return OutputRequest(**output)
    return OutputRequest(label=output)


def _clip(prompt: Optional[str], limit: int) -> Optional[str]:
    return prompt[:limit] if prompt else prompt


def _check_image_request(account: Account, image_policy: ImagePolicy, outputs: int, model: Optional[str]) -> str:
    """Enforce the plan's batch size and model list; returns the model to use."""
    if outputs > image_policy.output_count:
        upgrade = next_plan(account.plan)
        raise PlanRestrictedError(
            f"The {image_policy.plan.value} plan allows at most {image_policy.output_count} "
            f"{image_policy.tier.value} images per batch.",
            recommended_plan=upgrade.value if upgrade else None,
        )
    selected = (model or image_policy.allowed_models[0]).strip()
    if selected not in image_policy.allowed_models:
        raise PlanRestrictedError(
            f"Model {selected} is not available on this plan. "
            f"Allowed: {', '.join(image_policy.allowed_models)}"
        )
    return selected


def submit_batch(
    account_id: str,
    *,
    mode,
    outputs: Sequence[Union[OutputRequest, Dict[str, Any], str, None]],
    model: Optional[str] = None,
    prompt: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BatchSubmission:
    """
    Admit, reserve the plan's per-image cost for each output and queue one
    job per output.

    Price, batch size, models and prompt length come from the account's
    image policy; admins are priced as business_plus. All or nothing: a
    denial or billing error leaves no jobs and no debit (an expired
    subscription is still burned).

    Raises:
        ValidationError: no outputs
        PlanRestrictedError: mode, model or batch size not in the plan
        RateLimitedError / DailyLimitExceededError: admission denied
        SubscriptionExpiredError / InsufficientTokensError: reservation failed
    """
    requests = [_coerce_output(o) for o in outputs]
    if not requests:
        raise ValidationError("A batch needs at least one output")
    mode = JobMode(mode)
    batch_id = str(uuid4())

    _burn_if_expired(account_id, now=now)
    with transaction() as db:
        account = ledger.get_account(db, account_id, for_update=True)
        image_policy = get_image_policy(Plan.BUSINESS_PLUS if account.is_admin else account.plan, mode)
        model = _check_image_request(account, image_policy, len(requests), model)
        prompt = _clip(prompt, image_policy.max_prompt_chars)
        cost = image_policy.cost_per_image

        admission.ensure_admitted(db, account_id, account.plan, len(requests), now=now)

        total = to_tokens(cost * len(requests))
        reservation = ledger.reserve(db, account_id, total, now=now)
        # Billing-exempt accounts reserve nothing, so their jobs carry zero
        per_job = [cost] * len(requests) if reservation.debited.total == total else [ZERO] * len(requests)
        slices = ledger.split_composition(reservation.debited, per_job)

        job_ids: List[str] = []
        for index, (request, amount, part) in enumerate(zip(requests, per_job, slices)):
            job = store.insert_job(
                db,
                JobSpec(
                    batch_id=batch_id,
                    batch_index=index,
                    account_id=account_id,
                    plan=account.plan,
                    mode=mode,
                    tokens_reserved=amount,
                    reservation=part,
                    label=request.label,
                    model=model,
                    prompt=_clip(request.prompt, image_policy.max_prompt_chars) or prompt,
                    payload=request.payload,
                ),
                now=now,
            )
            job_ids.append(job.id)

    log_event(
        "info",
        "batch.submitted",
        account_id=account_id,
        batch_id=batch_id,
        event_type="batch.submit",
        extra={
            "plan": account.plan.value,
            "mode": mode.value,
            "outputs": len(job_ids),
            "cost_per_image": str(cost),
            "tokens": str(reservation.debited.total),
        },
    )
    return BatchSubmission(
        batch_id=batch_id,
        job_ids=job_ids,
        tokens_reserved=reservation.debited.total,
        tokens_remaining=reservation.tokens_remaining,
    )


def _refund_job(db: Session, job: Job, *, now: Optional[datetime] = None) -> Decimal:
    """Refund whatever this job still holds, using its persisted slice."""
    amount = store.unrefunded_tokens(job)
    if amount <= ZERO:
        return ZERO
    ledger.refund(db, job.account_id, amount, job.reservation, now=now)
    store.mark_refunded(db, job.id, to_tokens(job.tokens_refunded + amount), now=now)
    log_event(
        "info",
        "job.refunded",
        account_id=job.account_id,
        batch_id=job.batch_id,
        job_id=job.id,
        event_type="job.refund",
        extra={"tokens": str(amount), "status": job.status.value},
    )
    return amount


def settle_batch(db: Session, batch_id: str, *, now: Optional[datetime] = None) -> bool:
    """
    Close the books on a finished batch, once.

    When every job is terminal: refund anything non-succeeded jobs still
    hold, record usage for the charged tokens and flag every job
    usage_recorded. Returns True only on the call that settled the batch.

    Raises:
        BatchNotFoundError: no jobs for batch_id
    """
    batch = store.list_batch_jobs(db, batch_id, for_update=True)
    if not batch:
        raise BatchNotFoundError(f"Batch {batch_id} not found")
    if any(not job.status.is_terminal for job in batch):
        return False
    if all(job.usage_recorded for job in batch):
        return False

    for job in batch:
        if job.status != JobStatus.SUCCEEDED:
            _refund_job(db, job, now=now)

    batch = store.list_batch_jobs(db, batch_id)
    summary = summarize(batch)
    first = batch[0]
    if summary.tokens_charged > ZERO:
        usage.record_usage(
            db,
            first.account_id,
            summary.tokens_charged,
            service_type=IMAGE_SERVICE_TYPE,
            model_used=first.model,
            prompt=first.prompt,
            metadata={
                "batch_id": batch_id,
                "mode": first.mode.value,
                "outputs": summary.progress.total,
                "succeeded": summary.progress.succeeded,
            },
            now=now,
        )
    store.mark_usage_recorded(db, [job.id for job in batch], now=now)

    log_event(
        "info",
        "batch.settled",
        account_id=first.account_id,
        batch_id=batch_id,
        event_type="batch.settle",
        extra={
            "status": summary.status.value,
            "tokens_charged": str(summary.tokens_charged),
            "tokens_refunded": str(summary.tokens_refunded),
        },
    )
    return True


def claim_next_job(plan, *, worker_id: str, now: Optional[datetime] = None) -> Optional[Job]:
    with transaction() as db:
        return store.claim_next_job(db, plan, worker_id=worker_id, now=now)


def _lock_batch_of(db: Session, job_id: str, *, account_id: Optional[str] = None) -> List[Job]:
    """
    Lock every sibling of `job_id` in batch_index order.

    Outcome calls take this lock before touching their own row, so two
    workers finishing jobs of one batch queue up behind each other.

    Raises:
        JobNotFoundError: missing, or owned by another account
    """
    job = store.get_job(db, job_id, account_id=account_id)
    return store.list_batch_jobs(db, job.batch_id, for_update=True)


def complete_job(job_id: str, *, result_url: Optional[str] = None, now: Optional[datetime] = None) -> Job:
    """Mark a processing job succeeded and settle its batch if it was the last one."""
    with transaction() as db:
        _lock_batch_of(db, job_id)
        job = store.mark_succeeded(db, job_id, result_url=result_url, now=now)
        settle_batch(db, job.batch_id, now=now)
        return store.get_job(db, job_id)


def fail_job(job_id: str, *, error: Optional[str] = None, now: Optional[datetime] = None) -> Job:
    """Mark a job failed, refund its slice, and settle the batch if finished."""
    with transaction() as db:
        _lock_batch_of(db, job_id)
        job = store.mark_failed(db, job_id, error=error, now=now)
        _refund_job(db, job, now=now)
        settle_batch(db, job.batch_id, now=now)
        return store.get_job(db, job_id)


def cancel_job(job_id: str, account_id: str, *, now: Optional[datetime] = None) -> Job:
    """
    Cancel one of the account's queued or processing jobs and refund it.

    Raises:
        JobNotFoundError: missing or owned by another account
        InvalidJobTransitionError: job already terminal
    """
    with transaction() as db:
        _lock_batch_of(db, job_id, account_id=account_id)
        job = store.mark_canceled(db, job_id, now=now)
        _refund_job(db, job, now=now)
        settle_batch(db, job.batch_id, now=now)
        return store.get_job(db, job_id)


def cancel_batch(batch_id: str, account_id: str, *, now: Optional[datetime] = None) -> BatchSummary:
    """
    Cancel every non-terminal job of the account's batch.

    Raises:
        BatchNotFoundError: missing or owned by another account
    """
    with transaction() as db:
        batch = store.list_batch_jobs(db, batch_id, account_id=account_id, for_update=True)
        if not batch:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        canceled = 0
        for job in batch:
            if job.status.is_terminal:
                continue
            job = store.mark_canceled(db, job.id, now=now)
            _refund_job(db, job, now=now)
            canceled += 1
        settle_batch(db, batch_id, now=now)
        log_event(
            "info",
            "batch.canceled",
            account_id=account_id,
            batch_id=batch_id,
            event_type="batch.cancel",
            extra={"canceled_jobs": canceled},
        )
        return summarize(store.list_batch_jobs(db, batch_id))


def get_job(job_id: str, account_id: str) -> Job:
    with transaction() as db:
        return store.get_job(db, job_id, account_id=account_id)


def get_batch_status(batch_id: str, account_id: str) -> BatchStatusView:
    """
    Status poll for a batch owned by `account_id`.

    Raises:
        BatchNotFoundError: missing or owned by another account
    """
    with transaction() as db:
        batch = store.list_batch_jobs(db, batch_id, account_id=account_id)
        if not batch:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        first = batch[0]
        estimate = queue_position(db, first, batch_jobs=batch)
        return BatchStatusView(
            batch_id=batch_id,
            plan=first.plan,
            parallel_limit=max_parallel_of(first.plan),
            summary=summarize(batch),
            queue_position=estimate.position,
            eta_seconds=estimate.eta_seconds,
            tokens_remaining=ledger.get_available_tokens(db, account_id),
            items=[
                BatchItem(
                    id=job.id,
                    index=job.batch_index,
                    status=job.status,
                    label=job.label,
                    result_url=job.result_url,
                    error=job.error_text,
                    created_at=job.created_at,
                    started_at=job.started_at,
                    finished_at=job.finished_at,
                )
                for job in batch
            ],
        )
