"""
metered/models/billing.py

Billing value objects: token amounts, reservation composition, usage records.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

TOKEN_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

# tokens_remaining reported for billing-exempt (admin) accounts
UNLIMITED_TOKENS = Decimal("999999.00")

TokenAmount = Union[Decimal, int, float, str]


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_tokens(value: Optional[TokenAmount]) -> Decimal:
    """Coerce a numeric value to a two-decimal token amount."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(TOKEN_QUANT, rounding=ROUND_HALF_UP)


class ReferralDebit(BaseModel):
    """Tokens taken from (or returned to) a single referral reward."""
    model_config = ConfigDict(frozen=True)

    reward_id: str
    tokens: Decimal


class DebitComposition(BaseModel):
    """
    Exact split of a reservation between referral credit and subscription balance.

    Refunds must be issued with the composition returned by the matching
    reservation so the same rewards are credited back.
    """
    model_config = ConfigDict(frozen=True)

    referral: Decimal = ZERO
    subscription: Decimal = ZERO
    referral_debits: List[ReferralDebit] = Field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return to_tokens(self.referral + self.subscription)

    def to_json(self) -> Dict[str, Any]:
        """Serialize for the jobs.reservation JSON column."""
        return {
            "referral": str(self.referral),
            "subscription": str(self.subscription),
            "referral_debits": [
                {"reward_id": d.reward_id, "tokens": str(d.tokens)} for d in self.referral_debits
            ],
        }

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "DebitComposition":
        if not data:
            return cls()
        return cls(
            referral=to_tokens(data.get("referral")),
            subscription=to_tokens(data.get("subscription")),
            referral_debits=[
                ReferralDebit(reward_id=str(d["reward_id"]), tokens=to_tokens(d["tokens"]))
                for d in data.get("referral_debits") or []
            ],
        )


class ReservationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    tokens_remaining: Decimal
    debited: DebitComposition

    @property
    def referral_debits(self) -> List[ReferralDebit]:
        return self.debited.referral_debits


class UsageRecord(BaseModel):
    """Immutable usage audit row (reporting only, no balance effect)."""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    account_id: str
    tokens_used: Decimal
    service_type: str
    model_used: Optional[str] = None
    prompt: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
