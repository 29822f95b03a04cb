"""
metered/features/tokens/ledger.py

Token ledger: the only writer of account balances.

Handles:
- Reservation (referral credit first, oldest reward first, then subscription)
- Refund of an exact reservation composition (newest reward first)
- On-demand burn of expired subscriptions
- Splitting one reservation into per-job slices

Every function takes an open Session and runs inside the caller's
transaction; the account row is locked before any balance is read.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from metered.core.database import accounts
from metered.core.errors import (
    AccountNotFoundError,
    InsufficientTokensError,
    SubscriptionExpiredError,
    ValidationError,
)
from metered.core.logging import log_event
from metered.features.plans.policy import next_plan, normalize_plan
from metered.features.referrals import ledger as referrals
from metered.features.usage.service import record_usage  # noqa: F401
from metered.models.account import Account, Role, SubscriptionStatus
from metered.models.billing import (
    UNLIMITED_TOKENS,
    ZERO,
    DebitComposition,
    ReferralDebit,
    ReservationResult,
    TokenAmount,
    as_utc,
    to_tokens,
    utc_now,
)
from metered.models.plan import Plan


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        role=Role(row.role),
        plan=normalize_plan(row.plan),
        subscription_status=SubscriptionStatus(row.subscription_status),
        subscription_expires_at=as_utc(row.subscription_expires_at),
        token_balance=to_tokens(row.token_balance),
    )


def get_account(db: Session, account_id: str, *, for_update: bool = False) -> Account:
    """
    Load an account.

    Raises:
        AccountNotFoundError: no such account
    """
    query = select(accounts).where(accounts.c.id == account_id)
    if for_update:
        query = query.with_for_update()
    row = db.execute(query).fetchone()
    if row is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    return _row_to_account(row)


def _is_past(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is not None and as_utc(expires_at) <= now


def is_subscription_expired(account: Account, now: Optional[datetime] = None) -> bool:
    """Expired status, or an active subscription with no future expiry."""
    now = as_utc(now) or utc_now()
    if account.subscription_status == SubscriptionStatus.EXPIRED:
        return True
    if account.subscription_status == SubscriptionStatus.ACTIVE:
        return account.subscription_expires_at is None or _is_past(account.subscription_expires_at, now)
    return False


def expire_if_due(db: Session, account: Account, *, now: Optional[datetime] = None) -> Account:
    """Flip a lapsed active subscription to expired and burn its balance."""
    now = as_utc(now) or utc_now()
    if account.subscription_status != SubscriptionStatus.ACTIVE:
        return account
    if not _is_past(account.subscription_expires_at, now):
        return account

    db.execute(
        update(accounts)
        .where(accounts.c.id == account.id)
        .values(subscription_status=SubscriptionStatus.EXPIRED.value, token_balance=ZERO, updated_at=now)
    )
    log_event(
        "info",
        "ledger.subscription_expired",
        account_id=account.id,
        event_type="ledger.expire",
        extra={"burned_tokens": str(account.token_balance), "plan": account.plan.value},
    )
    return account.model_copy(
        update={"subscription_status": SubscriptionStatus.EXPIRED, "token_balance": ZERO}
    )


def burn_if_expired(db: Session, account_id: str, *, now: Optional[datetime] = None) -> Account:
    """Lock the account and expire it if its subscription lapsed. Admins are left alone."""
    account = get_account(db, account_id, for_update=True)
    if account.is_admin:
        return account
    return expire_if_due(db, account, now=now)


def _expired_recommendation(plan: Plan) -> str:
    return Plan.STARTER.value if plan == Plan.FREE else plan.value


def reserve(db: Session, account_id: str, tokens: TokenAmount, *, now: Optional[datetime] = None) -> ReservationResult:
    """
    Debit `tokens` from an account, referral credit first.

    Returns:
        ReservationResult with the remaining spendable tokens (subscription
        balance plus referral credit) and the exact debit composition.

    The expiry burn runs in the caller's transaction, so it is rolled back
    with the denial; callers that want it kept run burn_if_expired in a
    unit of work of its own first.

    Raises:
        AccountNotFoundError: no such account
        SubscriptionExpiredError: subscription lapsed (balance already burned)
        InsufficientTokensError: referral + subscription < tokens; nothing mutated
    """
    amount = to_tokens(tokens)
    now = as_utc(now) or utc_now()

    account = get_account(db, account_id, for_update=True)
    if account.is_admin:
        return ReservationResult(tokens_remaining=UNLIMITED_TOKENS, debited=DebitComposition())

    account = expire_if_due(db, account, now=now)
    rewards = referrals.list_consumable(db, account_id, for_update=True)
    referral_available = to_tokens(sum((r.tokens_remaining for r in rewards), ZERO))

    if amount <= ZERO:
        return ReservationResult(
            tokens_remaining=to_tokens(account.token_balance + referral_available),
            debited=DebitComposition(),
        )

    if is_subscription_expired(account, now):
        log_event(
            "warning",
            "ledger.reserve.denied",
            account_id=account_id,
            event_type="ledger.reserve",
            error_code=SubscriptionExpiredError.code,
            extra={"tokens": str(amount)},
        )
        raise SubscriptionExpiredError(
            "Subscription has expired. Renew the plan to continue.",
            recommended_plan=_expired_recommendation(account.plan),
        )

    available = to_tokens(account.token_balance + referral_available)
    if available < amount:
        upgrade = next_plan(account.plan)
        log_event(
            "warning",
            "ledger.reserve.denied",
            account_id=account_id,
            event_type="ledger.reserve",
            error_code=InsufficientTokensError.code,
            extra={"tokens": str(amount), "available": str(available)},
        )
        raise InsufficientTokensError(
            "Not enough tokens. Top up or upgrade the plan.",
            recommended_plan=upgrade.value if upgrade else None,
        )

    need = amount
    debits: List[ReferralDebit] = []
    for reward in rewards:
        if need <= ZERO:
            break
        take = min(reward.tokens_remaining, need)
        if take <= ZERO:
            continue
        referrals.debit(db, reward.id, take)
        debits.append(ReferralDebit(reward_id=reward.id, tokens=take))
        need = to_tokens(need - take)

    referral_total = to_tokens(amount - need)
    new_balance = to_tokens(account.token_balance - need)
    if need > ZERO:
        db.execute(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(token_balance=new_balance, updated_at=now)
        )

    composition = DebitComposition(referral=referral_total, subscription=need, referral_debits=debits)
    tokens_remaining = to_tokens(new_balance + referral_available - referral_total)
    log_event(
        "info",
        "ledger.reserve",
        account_id=account_id,
        event_type="ledger.reserve",
        extra={
            "tokens": str(amount),
            "referral": str(referral_total),
            "subscription": str(need),
            "tokens_remaining": str(tokens_remaining),
        },
    )
    return ReservationResult(tokens_remaining=tokens_remaining, debited=composition)


def refund(
    db: Session,
    account_id: str,
    tokens: TokenAmount,
    composition: Optional[DebitComposition] = None,
    *,
    now: Optional[datetime] = None,
) -> Decimal:
    """
    Return `tokens` to an account, reversing `composition`.

    Referral debits are credited back newest reward first, each capped at the
    reward's original award; whatever is left goes to the subscription
    balance. Admin accounts are never credited.

    Returns:
        The subscription balance after the refund.
    """
    amount = to_tokens(tokens)
    now = as_utc(now) or utc_now()
    composition = composition or DebitComposition()

    account = get_account(db, account_id, for_update=True)
    if amount <= ZERO or account.is_admin:
        return account.token_balance

    left = amount
    referral_credited = ZERO
    for debit in reversed(composition.referral_debits):
        if left <= ZERO:
            break
        credited = referrals.credit(db, debit.reward_id, min(debit.tokens, left))
        referral_credited = to_tokens(referral_credited + credited)
        left = to_tokens(left - credited)

    new_balance = to_tokens(account.token_balance + left)
    if left > ZERO:
        db.execute(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(token_balance=new_balance, updated_at=now)
        )

    log_event(
        "info",
        "ledger.refund",
        account_id=account_id,
        event_type="ledger.refund",
        extra={"tokens": str(amount), "referral": str(referral_credited), "subscription": str(left)},
    )
    return new_balance


def get_available_tokens(db: Session, account_id: str, *, now: Optional[datetime] = None) -> Decimal:
    """Spendable tokens right now: subscription balance plus referral credit."""
    account = get_account(db, account_id)
    if account.is_admin:
        return UNLIMITED_TOKENS
    subscription = ZERO if is_subscription_expired(account, now) else account.token_balance
    referral = sum((r.tokens_remaining for r in referrals.list_consumable(db, account_id)), ZERO)
    return to_tokens(subscription + referral)


def split_composition(composition: DebitComposition, amounts: Sequence[TokenAmount]) -> List[DebitComposition]:
    """
    Carve a reservation into consecutive slices, one per amount.

    Slices consume referral debits in their original order before the
    subscription part, so slice i is exactly what job i took.

    Raises:
        ValidationError: amounts do not add up to the composition total
    """
    amounts = [to_tokens(a) for a in amounts]
    if to_tokens(sum(amounts, ZERO)) != composition.total:
        raise ValidationError("Slice amounts must add up to the reservation total")

    pool = [[d.reward_id, d.tokens] for d in composition.referral_debits]
    subscription_left = composition.subscription
    slices: List[DebitComposition] = []

    for amount in amounts:
        need = amount
        debits: List[ReferralDebit] = []
        while need > ZERO and pool:
            reward_id, available = pool[0]
            take = min(available, need)
            debits.append(ReferralDebit(reward_id=reward_id, tokens=take))
            need = to_tokens(need - take)
            pool[0][1] = to_tokens(available - take)
            if pool[0][1] <= ZERO:
                pool.pop(0)
        from_subscription = min(need, subscription_left)
        subscription_left = to_tokens(subscription_left - from_subscription)
        slices.append(
            DebitComposition(
                referral=to_tokens(amount - need),
                subscription=from_subscription,
                referral_debits=debits,
            )
        )
    return slices
