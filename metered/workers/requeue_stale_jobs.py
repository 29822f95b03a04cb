"""Sweeper that returns stuck processing jobs to the queue after a worker crash."""
from datetime import datetime
import logging
from typing import Optional

from metered.core.config import settings, validate_config
from metered.core.database import get_db_session
from metered.features.jobs import store
from metered.core.logging import configure_logging

logger = logging.getLogger("metered.workers.requeue")


def requeue_stale_jobs(
    *,
    stale_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    minutes = max(store.MIN_STALE_MINUTES, int(stale_minutes or settings.IMAGE_WORKER_STALE_MINUTES))

    with get_db_session() as session:
        requeued = store.requeue_stale_jobs(session, stale_minutes=minutes, now=now)

    if requeued:
        logger.info(
            "[requeue] stale jobs returned to queue",
            extra={"stale_minutes": minutes, "requeued": len(requeued)},
        )
    return {"stale_minutes": minutes, "requeued": len(requeued), "job_ids": requeued}


if __name__ == "__main__":
    configure_logging(settings.ENV)
    validate_config()
    result = requeue_stale_jobs()
    print(result)
