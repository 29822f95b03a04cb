"""
metered/models/job.py

Generation job rows and the request to create them.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

from metered.models.billing import DebitComposition
from metered.models.plan import Plan


class JobMode(str, Enum):
    """Cost/latency tier."""
    BASIC = "basic"
    PRO = "pro"
    ULTRA = "ultra"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED})


class Job(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    batch_id: str
    batch_index: int
    account_id: str
    plan: Plan
    mode: JobMode
    status: JobStatus
    priority: int
    tokens_reserved: Decimal
    tokens_refunded: Decimal
    reservation: Optional[DebitComposition] = None
    usage_recorded: bool = False
    label: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    result_url: Optional[str] = None
    error_text: Optional[str] = None
    worker_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobSpec(BaseModel):
    """
    Request to enqueue one job. Only valid after a successful reservation;
    `reservation` is this job's slice of the batch reservation so a failed or
    canceled job can be refunded without the caller re-supplying it.
    """
    model_config = ConfigDict(frozen=True)

    batch_id: str
    batch_index: int = Field(ge=0)
    account_id: str
    plan: Plan
    mode: JobMode
    tokens_reserved: Decimal = Decimal("0.00")
    reservation: Optional[DebitComposition] = None
    label: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class OutputRequest(BaseModel):
    """One requested output of a batch submission."""
    model_config = ConfigDict(frozen=True)

    label: Optional[str] = None
    prompt: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
