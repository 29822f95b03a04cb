"""
metered/features/referrals/ledger.py

Referral reward sub-ledger.

Handles:
- Consumable rewards in FIFO order (oldest first, id tie-break)
- Per-reward debits and clamped credits
- One-time reward creation when a referred account buys a plan

Functions take an open Session and never commit; the caller owns the transaction.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from metered.core.database import referral_rewards
from metered.core.errors import ReferralLedgerError, ValidationError
from metered.core.logging import log_event
from metered.models.billing import ZERO, as_utc, to_tokens, utc_now, TokenAmount
from metered.models.referral import ReferralReward

REWARD_TOKENS_BY_PLAN = {
    "starter": 30,
    "pro": 50,
    "business_plus": 100,
}


def consumption_order_key(reward: ReferralReward) -> Tuple[datetime, str]:
    """Sort key for debits: created_at ascending, then id ascending."""
    return (as_utc(reward.created_at), reward.id)


def _row_to_reward(row) -> ReferralReward:
    return ReferralReward(
        id=row.id,
        referrer_account_id=row.referrer_account_id,
        referred_account_id=row.referred_account_id,
        plan=row.plan,
        tokens_awarded=to_tokens(row.tokens_awarded),
        tokens_remaining=to_tokens(row.tokens_remaining),
        created_at=as_utc(row.created_at),
    )


def _load_reward(db: Session, reward_id: str) -> Optional[ReferralReward]:
    row = db.execute(
        select(referral_rewards)
        .where(referral_rewards.c.id == reward_id)
        .with_for_update()
    ).fetchone()
    return _row_to_reward(row) if row else None


def list_consumable(db: Session, account_id: str, *, for_update: bool = False) -> List[ReferralReward]:
    """Rewards owned by `account_id` with tokens left, in consumption order."""
    query = (
        select(referral_rewards)
        .where(referral_rewards.c.referrer_account_id == account_id)
        .where(referral_rewards.c.tokens_remaining > 0)
        .order_by(referral_rewards.c.created_at.asc(), referral_rewards.c.id.asc())
    )
    if for_update:
        query = query.with_for_update()
    rewards = [_row_to_reward(row) for row in db.execute(query).all()]
    # consumption_order_key is the canonical order
    return sorted(rewards, key=consumption_order_key)


def get_reward(db: Session, reward_id: str) -> Optional[ReferralReward]:
    row = db.execute(select(referral_rewards).where(referral_rewards.c.id == reward_id)).fetchone()
    return _row_to_reward(row) if row else None


def debit(db: Session, reward_id: str, amount: TokenAmount) -> Decimal:
    """
    Take `amount` from a reward. Returns the new remaining balance.

    Raises:
        ReferralLedgerError: reward missing or amount exceeds what is left
    """
    amount = to_tokens(amount)
    if amount <= ZERO:
        raise ValidationError("Referral debit must be positive")

    reward = _load_reward(db, reward_id)
    if reward is None:
        raise ReferralLedgerError(f"Referral reward {reward_id} not found")
    if amount > reward.tokens_remaining:
        raise ReferralLedgerError(
            f"Referral reward {reward_id} has {reward.tokens_remaining} tokens, cannot debit {amount}"
        )

    remaining = to_tokens(reward.tokens_remaining - amount)
    db.execute(
        update(referral_rewards)
        .where(referral_rewards.c.id == reward_id)
        .values(tokens_remaining=remaining)
    )
    return remaining


def credit(db: Session, reward_id: str, amount: TokenAmount) -> Decimal:
    """
    Return up to `amount` to a reward, never past its original award.

    Returns the amount actually credited (0 when the reward no longer exists
    or is already full).
    """
    amount = to_tokens(amount)
    if amount <= ZERO:
        return ZERO

    reward = _load_reward(db, reward_id)
    if reward is None:
        log_event(
            "warning",
            "referral.credit_missing_reward",
            event_type="referral.credit",
            extra={"reward_id": reward_id, "tokens": str(amount)},
        )
        return ZERO

    new_remaining = min(reward.tokens_awarded, to_tokens(reward.tokens_remaining + amount))
    credited = to_tokens(new_remaining - reward.tokens_remaining)
    if credited > ZERO:
        db.execute(
            update(referral_rewards)
            .where(referral_rewards.c.id == reward_id)
            .values(tokens_remaining=new_remaining)
        )
    return credited


def reward_tokens_for_plan(plan) -> int:
    """Tokens a referrer earns when their referral buys `plan` (0 for free or unknown)."""
    key = str(getattr(plan, "value", plan) or "").strip().lower()
    return REWARD_TOKENS_BY_PLAN.get(key, 0)


def create_referral_reward(
    db: Session,
    referrer_account_id: str,
    referred_account_id: str,
    plan,
    *,
    now: Optional[datetime] = None,
) -> Optional[ReferralReward]:
    """
    Grant the one-time referral reward for a purchase.

    Returns None when the plan earns nothing, the account referred itself,
    or the referred account was already rewarded.
    """
    tokens = reward_tokens_for_plan(plan)
    if not tokens:
        return None
    if not referrer_account_id or referrer_account_id == referred_account_id:
        return None

    existing = db.execute(
        select(referral_rewards.c.id).where(referral_rewards.c.referred_account_id == referred_account_id)
    ).fetchone()
    if existing:
        return None

    ts = as_utc(now) or utc_now()
    plan_value = str(getattr(plan, "value", plan)).lower()
    reward = ReferralReward(
        id=str(uuid4()),
        referrer_account_id=referrer_account_id,
        referred_account_id=referred_account_id,
        plan=plan_value,
        tokens_awarded=to_tokens(tokens),
        tokens_remaining=to_tokens(tokens),
        created_at=ts,
    )
    db.execute(
        insert(referral_rewards).values(
            id=reward.id,
            referrer_account_id=reward.referrer_account_id,
            referred_account_id=reward.referred_account_id,
            plan=reward.plan,
            tokens_awarded=reward.tokens_awarded,
            tokens_remaining=reward.tokens_remaining,
            created_at=reward.created_at,
        )
    )
    log_event(
        "info",
        "referral.reward_created",
        account_id=referrer_account_id,
        event_type="referral.reward",
        extra={"reward_id": reward.id, "plan": plan_value, "tokens": str(reward.tokens_awarded)},
    )
    return reward
