# metered/conftest.py
import os
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import delete, insert

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def db_url():
    """
    Database for tests.

    TEST_DATABASE_URL when set, otherwise a shared in-memory SQLite database.
    """
    return os.getenv("TEST_DATABASE_URL") or "sqlite://"


@pytest.fixture(scope="session", autouse=True)
def engine(db_url):
    """Bind the engine once per session and create all tables."""
    from metered.core.database import create_all_tables, dispose_engine, drop_all_tables, init_engine

    engine = init_engine(db_url)
    create_all_tables()
    yield engine
    drop_all_tables()
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db(engine):
    """
    Empty every table before each test and restore the default plan policies after.
    """
    from metered.core.database import metadata
    from metered.features.plans import policy

    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(delete(table))

    yield

    policy.set_policies(None)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db_session():
    """A session for tests that drive module functions directly; rolled back on exit."""
    from metered.core.database import get_session_factory

    session = get_session_factory()()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_account():
    """Insert an account row; returns its id."""
    from metered.core.database import accounts

    def _make(
        db,
        account_id=None,
        *,
        balance="0",
        plan="free",
        role="user",
        status="free",
        expires_at=None,
    ):
        account_id = account_id or f"acct_{uuid4().hex[:12]}"
        db.execute(
            insert(accounts).values(
                id=account_id,
                role=role,
                plan=plan,
                subscription_status=status,
                subscription_expires_at=expires_at,
                token_balance=Decimal(str(balance)),
                created_at=NOW,
                updated_at=NOW,
            )
        )
        return account_id

    return _make


@pytest.fixture
def make_reward(make_account):
    """Insert a referral reward owned by `referrer_id`; returns its id."""
    from metered.core.database import referral_rewards

    def _make(db, referrer_id, *, tokens="5", remaining=None, created_at=None, reward_id=None, plan="starter"):
        reward_id = reward_id or str(uuid4())
        referred_id = make_account(db, plan=plan, status="active")
        db.execute(
            insert(referral_rewards).values(
                id=reward_id,
                referrer_account_id=referrer_id,
                referred_account_id=referred_id,
                plan=plan,
                tokens_awarded=Decimal(str(tokens)),
                tokens_remaining=Decimal(str(remaining if remaining is not None else tokens)),
                created_at=created_at or NOW,
            )
        )
        return reward_id

    return _make


@pytest.fixture
def make_job():
    """Insert a job row directly (no reservation); returns the Job."""
    from metered.features.jobs import store
    from metered.core.database import jobs
    from sqlalchemy import update
    from metered.models.job import JobMode, JobSpec
    from metered.features.plans.policy import normalize_plan

    def _make(
        db,
        account_id,
        *,
        plan="starter",
        mode="basic",
        batch_id=None,
        batch_index=0,
        status="queued",
        created_at=None,
        started_at=None,
        finished_at=None,
        tokens_reserved="0",
    ):
        spec = JobSpec(
            batch_id=batch_id or str(uuid4()),
            batch_index=batch_index,
            account_id=account_id,
            plan=normalize_plan(plan),
            mode=JobMode(mode),
            tokens_reserved=Decimal(str(tokens_reserved)),
        )
        ts = created_at or NOW
        job = store.insert_job(db, spec, now=ts)
        if status != "queued" or started_at or finished_at:
            db.execute(
                update(jobs)
                .where(jobs.c.id == job.id)
                .values(status=status, started_at=started_at, finished_at=finished_at)
            )
            job = store.get_job(db, job.id)
        return job

    return _make

