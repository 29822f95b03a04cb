"""
metered/features/batches/aggregator.py

Pure reduction of sibling jobs into a batch status, progress and token totals.
"""

import math
from collections import Counter
from decimal import Decimal
from typing import Iterable

from metered.models.batch import BatchProgress, BatchStatus, BatchSummary
from metered.models.billing import ZERO, to_tokens
from metered.models.job import Job, JobStatus


def derive_status(progress: BatchProgress) -> BatchStatus:
    """
    Batch status from job counts, first match wins:
    all terminal (canceled / succeeded / partial / failed), any processing, else queued.
    """
    if progress.total and progress.done >= progress.total:
        if progress.canceled >= progress.total:
            return BatchStatus.CANCELED
        if progress.succeeded >= progress.total:
            return BatchStatus.SUCCEEDED
        if progress.succeeded > 0:
            return BatchStatus.PARTIAL
        return BatchStatus.FAILED
    if progress.processing > 0:
        return BatchStatus.PROCESSING
    return BatchStatus.QUEUED


def summarize(jobs: Iterable[Job]) -> BatchSummary:
    jobs = list(jobs)
    counts = Counter(job.status for job in jobs)
    total = len(jobs)
    succeeded = counts[JobStatus.SUCCEEDED]
    failed = counts[JobStatus.FAILED]
    canceled = counts[JobStatus.CANCELED]
    done = min(total, succeeded + failed + canceled)

    progress = BatchProgress(
        done=done,
        total=total,
        percent=math.floor(done * 100 / total + 0.5) if total else 0,
        queued=counts[JobStatus.QUEUED],
        processing=counts[JobStatus.PROCESSING],
        succeeded=succeeded,
        failed=failed,
        canceled=canceled,
    )

    reserved = to_tokens(sum((job.tokens_reserved for job in jobs), Decimal(0)))
    refunded = to_tokens(sum((job.tokens_refunded for job in jobs), Decimal(0)))
    return BatchSummary(
        status=derive_status(progress),
        progress=progress,
        tokens_reserved=reserved,
        tokens_refunded=refunded,
        tokens_charged=max(ZERO, to_tokens(reserved - refunded)),
    )
