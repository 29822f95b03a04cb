"""
metered/models/queue.py

Admission decisions and queue estimates.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class DenyReason(str, Enum):
    RATE_LIMITED = "RateLimited"
    DAILY_LIMIT_EXCEEDED = "DailyLimitExceeded"


class AdmissionDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[DenyReason] = None
    retry_after_seconds: Optional[int] = None
    daily_used: Optional[int] = None
    daily_limit: Optional[int] = None

    @classmethod
    def allow(cls, **kwargs) -> "AdmissionDecision":
        return cls(allowed=True, **kwargs)

    @classmethod
    def deny(cls, reason: DenyReason, **kwargs) -> "AdmissionDecision":
        return cls(allowed=False, reason=reason, **kwargs)


class QueueEstimate(BaseModel):
    """Queue position (queued batches only) and ETA in seconds."""
    model_config = ConfigDict(frozen=True)

    position: Optional[int] = None
    eta_seconds: Optional[int] = None
