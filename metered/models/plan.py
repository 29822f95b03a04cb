"""
metered/models/plan.py

Plan tiers, the static per-plan queue policy and image pricing.
"""

from enum import Enum
from decimal import Decimal
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict


class Plan(str, Enum):
    """Subscription tier. Closed set; lookups go through PlanPolicy."""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS_PLUS = "business_plus"


class RateLimit(BaseModel):
    """Sliding window: at most `max_batches` batches per `window_seconds`."""
    model_config = ConfigDict(frozen=True)

    window_seconds: int
    max_batches: int


class PlanPolicy(BaseModel):
    """
    Queue policy for one plan.

    `rate_limit` and `daily_limit` of None mean unlimited.
    """
    model_config = ConfigDict(frozen=True)

    plan: Plan
    max_parallel: int
    priority: int
    rate_limit: Optional[RateLimit] = None
    daily_limit: Optional[int] = None


class ImageTier(str, Enum):
    """Pricing tier; every premium job mode is billed as PRO."""
    BASIC = "basic"
    PRO = "pro"


class ImagePolicy(BaseModel):
    """Image pricing and per-batch limits for one plan and tier."""
    model_config = ConfigDict(frozen=True)

    plan: Plan
    tier: ImageTier
    cost_per_image: Decimal
    output_count: int
    max_prompt_chars: int
    allowed_models: Tuple[str, ...] = ()
