"""Tests for the job state machine, claiming and stale recovery."""

from datetime import timedelta

import pytest

from metered.core.errors import InvalidJobTransitionError, JobNotFoundError
from metered.features.jobs import store
from metered.features.plans import policy
from metered.models.job import JobStatus
from metered.models.plan import Plan, PlanPolicy


def _set_parallel(plan, max_parallel):
    policies = dict(policy.build_plan_policies())
    current = policies[plan]
    policies[plan] = PlanPolicy(
        plan=plan,
        max_parallel=max_parallel,
        priority=current.priority,
        rate_limit=current.rate_limit,
        daily_limit=current.daily_limit,
    )
    policy.set_policies(policies)


def test_insert_job_takes_priority_from_plan(db_session, make_account, make_job):
    account_id = make_account(db_session, plan="business_plus")

    job = make_job(db_session, account_id, plan="business_plus")

    assert job.status == JobStatus.QUEUED
    assert job.priority == policy.priority_of(Plan.BUSINESS_PLUS)
    assert job.usage_recorded is False


def test_claim_never_exceeds_max_parallel(db_session, make_account, make_job, now):
    _set_parallel(Plan.PRO, 2)
    account_id = make_account(db_session, plan="pro")
    for index in range(5):
        make_job(db_session, account_id, plan="pro", batch_id="b", batch_index=index, created_at=now)

    claimed = []
    for attempt in range(5):
        job = store.claim_next_job(db_session, Plan.PRO, worker_id=f"w{attempt}", now=now)
        if job:
            claimed.append(job)
        assert store.count_processing(db_session, Plan.PRO) <= 2

    assert len(claimed) == 2
    assert all(job.status == JobStatus.PROCESSING for job in claimed)

    store.mark_succeeded(db_session, claimed[0].id, result_url="https://cdn/x.png", now=now)

    assert store.claim_next_job(db_session, Plan.PRO, worker_id="w9", now=now) is not None
    assert store.count_processing(db_session, Plan.PRO) == 2


def test_claim_takes_oldest_job_of_the_plan(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    later = make_job(db_session, account_id, plan="starter", created_at=now)
    earlier = make_job(db_session, account_id, plan="starter", created_at=now - timedelta(minutes=5))
    make_job(db_session, account_id, plan="pro", created_at=now - timedelta(minutes=10))

    claimed = store.claim_next_job(db_session, Plan.STARTER, worker_id="w1", now=now)

    assert claimed.id == earlier.id
    assert claimed.worker_id == "w1"
    assert claimed.started_at == now
    assert store.get_job(db_session, later.id).status == JobStatus.QUEUED


def test_claim_returns_none_when_queue_empty(db_session):
    assert store.claim_next_job(db_session, Plan.FREE, worker_id="w1") is None


def test_transitions_only_move_forward(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    job = make_job(db_session, account_id)

    with pytest.raises(InvalidJobTransitionError):
        store.mark_succeeded(db_session, job.id, now=now)

    store.claim_next_job(db_session, Plan.STARTER, worker_id="w1", now=now)
    done = store.mark_failed(db_session, job.id, error="boom", now=now)

    assert done.status == JobStatus.FAILED
    assert done.error_text == "boom"
    assert done.finished_at == now
    with pytest.raises(InvalidJobTransitionError):
        store.mark_canceled(db_session, job.id, now=now)
    with pytest.raises(InvalidJobTransitionError):
        store.mark_succeeded(db_session, job.id, now=now)


def test_failure_text_is_truncated(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    job = make_job(db_session, account_id)

    failed = store.mark_failed(db_session, job.id, error="x" * 6000, now=now)

    assert len(failed.error_text) == store.MAX_ERROR_CHARS


def test_get_job_is_owner_scoped(db_session, make_account, make_job):
    owner = make_account(db_session, plan="starter")
    stranger = make_account(db_session)
    job = make_job(db_session, owner)

    assert store.get_job(db_session, job.id, account_id=owner).id == job.id
    with pytest.raises(JobNotFoundError):
        store.get_job(db_session, job.id, account_id=stranger)


def test_requeue_stale_jobs(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    stale = make_job(db_session, account_id, created_at=now - timedelta(hours=1))
    fresh = make_job(db_session, account_id, created_at=now - timedelta(minutes=50))
    store.claim_next_job(db_session, Plan.STARTER, worker_id="w1", now=now - timedelta(minutes=30))
    _set_parallel(Plan.STARTER, 2)
    store.claim_next_job(db_session, Plan.STARTER, worker_id="w2", now=now - timedelta(minutes=1))

    moved = store.requeue_stale_jobs(db_session, stale_minutes=20, now=now)

    assert moved == [stale.id]
    requeued = store.get_job(db_session, stale.id)
    assert requeued.status == JobStatus.QUEUED
    assert requeued.worker_id is None
    assert store.get_job(db_session, fresh.id).status == JobStatus.PROCESSING


def test_requeue_threshold_has_a_floor(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    job = make_job(db_session, account_id)
    store.claim_next_job(db_session, Plan.STARTER, worker_id="w1", now=now - timedelta(minutes=3))

    assert store.requeue_stale_jobs(db_session, stale_minutes=1, now=now) == []
    assert store.get_job(db_session, job.id).status == JobStatus.PROCESSING
