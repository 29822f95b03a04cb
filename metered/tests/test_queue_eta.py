"""Tests for duration estimates, queue position and ETA."""

from datetime import timedelta

from metered.core.config import settings
from metered.features.jobs import store
from metered.features.queue import eta
from metered.models.job import JobMode


ESTIMATES = {JobMode.BASIC: 10.0, JobMode.PRO: 20.0, JobMode.ULTRA: 30.0}


def _succeeded(make_job, db, account_id, seconds, now, *, plan="starter", mode="basic"):
    started = now - timedelta(hours=1)
    return make_job(
        db,
        account_id,
        plan=plan,
        mode=mode,
        status="succeeded",
        started_at=started,
        finished_at=started + timedelta(seconds=seconds),
    )


def test_fallback_is_clamped_to_five_seconds(db_session, monkeypatch):
    monkeypatch.setattr(settings, "IMAGE_QUEUE_ESTIMATE_SECONDS_BASIC", 1.0)

    assert eta.estimate_avg_duration_seconds(db_session, "starter", "basic") == 5.0


def test_fallback_uses_per_image_default(db_session, monkeypatch):
    monkeypatch.setattr(settings, "IMAGE_QUEUE_ESTIMATE_SECONDS_PRO", None)
    monkeypatch.setattr(settings, "IMAGE_QUEUE_ESTIMATE_SECONDS_PER_IMAGE", 45.0)

    assert eta.estimate_avg_duration_seconds(db_session, "pro", "pro") == 45.0


def test_average_of_succeeded_jobs(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    _succeeded(make_job, db_session, account_id, 30, now)
    _succeeded(make_job, db_session, account_id, 50, now)
    _succeeded(make_job, db_session, account_id, 500, now, mode="pro")

    assert eta.estimate_avg_duration_seconds(db_session, "starter", "basic") == 40.0


def test_average_is_clamped(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    _succeeded(make_job, db_session, account_id, 2, now)
    _succeeded(make_job, db_session, account_id, 3, now)
    _succeeded(make_job, db_session, account_id, 900, now, mode="ultra")
    _succeeded(make_job, db_session, account_id, 1200, now, mode="ultra")

    assert eta.estimate_avg_duration_seconds(db_session, "starter", "basic") == 5.0
    assert eta.estimate_avg_duration_seconds(db_session, "starter", "ultra") == 600.0


def test_queued_batch_position_and_eta(db_session, make_account, make_job, now):
    other = make_account(db_session, plan="starter")
    mine = make_account(db_session, plan="starter")
    make_job(db_session, other, batch_id="ahead", batch_index=0, created_at=now - timedelta(minutes=10))
    make_job(db_session, other, batch_id="ahead", batch_index=1, created_at=now - timedelta(minutes=10))
    make_job(db_session, other, mode="pro", status="processing", created_at=now - timedelta(minutes=20))
    for index in range(3):
        make_job(db_session, mine, batch_id="mine", batch_index=index, created_at=now)

    own = store.list_batch_jobs(db_session, "mine")
    estimate = eta.queue_position(db_session, own[0], estimates=ESTIMATES)

    assert estimate.position == 3
    # (2 basic ahead * 10 + 1 pro running * 20 + 3 own * 10) / parallel 1
    assert estimate.eta_seconds == 70


def test_processing_batch_only_counts_own_remaining_work(db_session, make_account, make_job, now):
    account_id = make_account(db_session, plan="starter")
    make_job(db_session, account_id, batch_id="b", batch_index=0, status="processing")
    make_job(db_session, account_id, batch_id="b", batch_index=1, status="processing")
    make_job(db_session, account_id, batch_id="b", batch_index=2, status="succeeded")

    own = store.list_batch_jobs(db_session, "b")
    estimate = eta.queue_position(db_session, own[0], estimates=ESTIMATES)

    assert estimate.position is None
    assert estimate.eta_seconds == 20


def test_eta_has_a_five_second_floor(db_session, make_account, make_job):
    account_id = make_account(db_session, plan="starter")
    job = make_job(db_session, account_id, status="processing")

    estimate = eta.queue_position(db_session, job, estimates={mode: 1.0 for mode in JobMode})

    assert estimate.eta_seconds == 5


def test_finished_batch_has_no_estimate(db_session, make_account, make_job):
    account_id = make_account(db_session, plan="starter")
    job = make_job(db_session, account_id, status="failed")

    estimate = eta.queue_position(db_session, job, estimates=ESTIMATES)

    assert estimate.position is None
    assert estimate.eta_seconds is None
