"""
metered/models/account.py

Account record consumed from the auth/session subsystem.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from metered.models.plan import Plan


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    EXPIRED = "expired"


class Account(BaseModel):
    """
    Account balance record.

    Constraint: admin accounts are billing-exempt and never debited.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    role: Role = Role.USER
    plan: Plan = Plan.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE
    subscription_expires_at: Optional[datetime] = None
    token_balance: Decimal = Decimal("0.00")

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
