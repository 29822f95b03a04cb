"""
metered/models/batch.py

Batch views: one user submission fans out into N sibling jobs.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict

from metered.models.job import JobStatus
from metered.models.plan import Plan


class BatchStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELED = "canceled"


class BatchProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    done: int
    total: int
    percent: int
    queued: int
    processing: int
    succeeded: int
    failed: int
    canceled: int


class BatchSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: BatchStatus
    progress: BatchProgress
    tokens_reserved: Decimal
    tokens_refunded: Decimal
    tokens_charged: Decimal


class BatchItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    index: int
    status: JobStatus
    label: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class BatchStatusView(BaseModel):
    """Everything a status poll needs to render a batch."""
    model_config = ConfigDict(frozen=True)

    batch_id: str
    plan: Plan
    parallel_limit: int
    summary: BatchSummary
    queue_position: Optional[int] = None
    eta_seconds: Optional[int] = None
    tokens_remaining: Optional[Decimal] = None
    items: List[BatchItem]


class BatchSubmission(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    job_ids: List[str]
    tokens_reserved: Decimal
    tokens_remaining: Decimal
