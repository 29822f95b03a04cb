"""
metered/features/plans/policy.py

Plan policy table.

Handles:
- Plan normalization (free, starter, pro, business_plus)
- Static per-plan queue policy built from settings
- Upgrade path for billing errors
- Image pricing and per-batch limits by plan and tier
"""

from decimal import Decimal
from typing import Dict, Optional, Tuple

from metered.core.config import Settings, settings
from metered.core.errors import PlanRestrictedError, ValidationError
from metered.models.plan import ImagePolicy, ImageTier, Plan, PlanPolicy, RateLimit

# Upgrade path used for `recommended_plan` on billing errors
NEXT_PLAN: Dict[Plan, Optional[Plan]] = {
    Plan.FREE: Plan.STARTER,
    Plan.STARTER: Plan.PRO,
    Plan.PRO: Plan.BUSINESS_PLUS,
    Plan.BUSINESS_PLUS: None,
}

# Legacy product names still found in account rows
PLAN_ALIASES = {
    "professional": Plan.PRO,
    "business+": Plan.BUSINESS_PLUS,
    "1month": Plan.STARTER,
}

MIN_RATE_WINDOW_SECONDS = 10


def normalize_plan(value) -> Plan:
    """Map a raw plan value to a Plan; empty values are the free plan."""
    if isinstance(value, Plan):
        return value
    raw = str(value or "").strip().lower().replace(" ", "_")
    if not raw:
        return Plan.FREE
    if raw in PLAN_ALIASES:
        return PLAN_ALIASES[raw]
    try:
        return Plan(raw)
    except ValueError:
        raise ValidationError(f"Unknown plan: {value!r}")


def next_plan(plan: Plan) -> Optional[Plan]:
    return NEXT_PLAN[plan]


def _rate_limit(max_batches: Optional[int], window_seconds: Optional[int]) -> Optional[RateLimit]:
    if not max_batches or not window_seconds:
        return None
    return RateLimit(
        max_batches=max(1, int(max_batches)),
        window_seconds=max(MIN_RATE_WINDOW_SECONDS, int(window_seconds)),
    )


def _daily_limit(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return max(1, int(value))


def build_plan_policies(cfg: Optional[Settings] = None) -> Dict[Plan, PlanPolicy]:
    """Build the per-plan policy table from settings (environment overrides apply)."""
    cfg = cfg or settings
    return {
        Plan.FREE: PlanPolicy(
            plan=Plan.FREE,
            max_parallel=max(1, cfg.IMAGE_QUEUE_PARALLEL_FREE),
            priority=cfg.IMAGE_QUEUE_PRIORITY_FREE,
            rate_limit=_rate_limit(cfg.IMAGE_RATE_LIMIT_FREE_MAX, cfg.IMAGE_RATE_LIMIT_FREE_WINDOW_SEC),
            daily_limit=_daily_limit(cfg.IMAGE_DAILY_LIMIT_FREE),
        ),
        Plan.STARTER: PlanPolicy(
            plan=Plan.STARTER,
            max_parallel=max(1, cfg.IMAGE_QUEUE_PARALLEL_STARTER),
            priority=cfg.IMAGE_QUEUE_PRIORITY_STARTER,
            rate_limit=_rate_limit(cfg.IMAGE_RATE_LIMIT_STARTER_MAX, cfg.IMAGE_RATE_LIMIT_STARTER_WINDOW_SEC),
            daily_limit=_daily_limit(cfg.IMAGE_DAILY_LIMIT_STARTER),
        ),
        Plan.PRO: PlanPolicy(
            plan=Plan.PRO,
            max_parallel=max(1, cfg.IMAGE_QUEUE_PARALLEL_PRO),
            priority=cfg.IMAGE_QUEUE_PRIORITY_PRO,
            rate_limit=_rate_limit(cfg.IMAGE_RATE_LIMIT_PRO_MAX, cfg.IMAGE_RATE_LIMIT_PRO_WINDOW_SEC),
            daily_limit=_daily_limit(cfg.IMAGE_DAILY_LIMIT_PRO),
        ),
        Plan.BUSINESS_PLUS: PlanPolicy(
            plan=Plan.BUSINESS_PLUS,
            max_parallel=max(1, cfg.IMAGE_QUEUE_PARALLEL_BUSINESS_PLUS),
            priority=cfg.IMAGE_QUEUE_PRIORITY_BUSINESS_PLUS,
            rate_limit=_rate_limit(cfg.IMAGE_RATE_LIMIT_BUSINESS_PLUS_MAX, cfg.IMAGE_RATE_LIMIT_BUSINESS_PLUS_WINDOW_SEC),
            daily_limit=_daily_limit(cfg.IMAGE_DAILY_LIMIT_BUSINESS_PLUS),
        ),
    }


_policies: Optional[Dict[Plan, PlanPolicy]] = None


def get_policies() -> Dict[Plan, PlanPolicy]:
    global _policies
    if _policies is None:
        _policies = build_plan_policies()
    return _policies


def set_policies(policies: Optional[Dict[Plan, PlanPolicy]]) -> None:
    """Override the policy table (None restores the settings-derived table)."""
    global _policies
    _policies = policies


def get_policy(plan) -> PlanPolicy:
    return get_policies()[normalize_plan(plan)]


def priority_of(plan) -> int:
    """Queue priority for a plan; higher is served first."""
    return get_policy(plan).priority


def max_parallel_of(plan) -> int:
    return get_policy(plan).max_parallel


BASIC_IMAGE_MODELS = ("gemini-2.5-flash-image",)
PRO_IMAGE_MODELS = ("gemini-3-pro-image-preview", "nano-banana-pro-preview")


def _image(plan: Plan, tier: ImageTier, cost: str, outputs: int, prompt_chars: int) -> ImagePolicy:
    return ImagePolicy(
        plan=plan,
        tier=tier,
        cost_per_image=Decimal(cost),
        output_count=outputs,
        max_prompt_chars=prompt_chars,
        allowed_models=BASIC_IMAGE_MODELS if tier == ImageTier.BASIC else PRO_IMAGE_MODELS,
    )


# Free has no PRO tier
IMAGE_POLICIES: Dict[Tuple[Plan, ImageTier], ImagePolicy] = {
    (Plan.FREE, ImageTier.BASIC): _image(Plan.FREE, ImageTier.BASIC, "2", 1, 50),
    (Plan.STARTER, ImageTier.BASIC): _image(Plan.STARTER, ImageTier.BASIC, "2", 2, 150),
    (Plan.STARTER, ImageTier.PRO): _image(Plan.STARTER, ImageTier.PRO, "7", 2, 150),
    (Plan.PRO, ImageTier.BASIC): _image(Plan.PRO, ImageTier.BASIC, "1.5", 2, 150),
    (Plan.PRO, ImageTier.PRO): _image(Plan.PRO, ImageTier.PRO, "6", 3, 200),
    (Plan.BUSINESS_PLUS, ImageTier.BASIC): _image(Plan.BUSINESS_PLUS, ImageTier.BASIC, "1", 3, 250),
    (Plan.BUSINESS_PLUS, ImageTier.PRO): _image(Plan.BUSINESS_PLUS, ImageTier.PRO, "5", 4, 300),
}


def image_tier(mode) -> ImageTier:
    value = str(getattr(mode, "value", mode) or "").strip().lower()
    return ImageTier.BASIC if value == ImageTier.BASIC.value else ImageTier.PRO


def get_image_policy(plan, mode) -> ImagePolicy:
    """
    Pricing and limits for generating images in `mode` on `plan`.

    Raises:
        PlanRestrictedError: the plan has no tier for this mode
    """
    plan = normalize_plan(plan)
    image_policy = IMAGE_POLICIES.get((plan, image_tier(mode)))
    if image_policy is None:
        raise PlanRestrictedError(
            "The free plan only includes basic images. Upgrade to use this mode.",
            recommended_plan=Plan.STARTER.value,
        )
    return image_policy
