"""
metered/models/referral.py

ReferralReward: one-time token credit granted to a referrer.
"""

from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict


class ReferralReward(BaseModel):
    """
    Constraint: 0 <= tokens_remaining <= tokens_awarded.
    tokens_awarded is fixed at creation.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    referrer_account_id: str
    referred_account_id: str
    plan: str
    tokens_awarded: Decimal
    tokens_remaining: Decimal
    created_at: datetime
