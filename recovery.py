"""
Startup reconciliation and housekeeping for the download queue.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import (
    COMPLETED_RETENTION_DAYS,
    FAILED_RETENTION_DAYS,
    MAX_RECOVERY_ATTEMPTS,
    RECOVERY_POLICY,
)
from models import JobStatus

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Download was interrupted by a server restart"

DAY_SECONDS = 24 * 60 * 60


@dataclass
class RecoveryReport:
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    pending: int = 0


async def recover_download_queue(
    store,
    policy: str = RECOVERY_POLICY,
    max_attempts: int = MAX_RECOVERY_ATTEMPTS,
) -> RecoveryReport:
    """
    Reconcile jobs left processing by a previous run.

    No execution survives a restart, so every processing record is orphaned.
    With the ``requeue`` policy a job goes back to pending (progress reset)
    unless it has already been dispatched ``max_attempts`` times; otherwise,
    and always with the ``fail`` policy, it is marked failed.
    Must run before the queue manager starts and before submissions are accepted.
    """
    report = RecoveryReport()
    logger.info("Recovering download queue")

    orphaned = await store.run(store.list_jobs, statuses=[JobStatus.PROCESSING])
    if orphaned:
        logger.info("Found %d interrupted download(s)", len(orphaned))

    for job in orphaned:
        requeue = policy == "requeue" and job.attempts < max_attempts
        if requeue:
            updated = await store.run(
                store.transition, job.id, [JobStatus.PROCESSING], JobStatus.PENDING, progress=0, error=None
            )
            item_status = JobStatus.PENDING
        else:
            message = INTERRUPTED_MESSAGE
            if policy == "requeue":
                message += f" ({job.attempts} attempts)"
            updated = await store.run(
                store.transition, job.id, [JobStatus.PROCESSING], JobStatus.FAILED, error=message
            )
            item_status = JobStatus.FAILED

        if updated is None:
            continue
        if job.type.is_playlist:
            await store.run(
                store.reset_unfinished_items,
                job.id,
                to_status=item_status,
                error=None if requeue else INTERRUPTED_MESSAGE,
            )
        if requeue:
            report.requeued.append(job.id)
        else:
            report.failed.append(job.id)

    if report.requeued:
        logger.info("Requeued %d job(s)", len(report.requeued))
    if report.failed:
        logger.warning("Marked %d interrupted job(s) as failed", len(report.failed))

    counts = await store.run(store.count_by_status)
    report.pending = counts[JobStatus.PENDING.value]
    if report.pending:
        logger.info("%d download(s) waiting in the queue", report.pending)
    else:
        logger.info("No queued downloads to recover")
    logger.info(
        "Download queue: completed=%d failed=%d pending=%d",
        counts[JobStatus.COMPLETED.value],
        counts[JobStatus.FAILED.value],
        report.pending,
    )
    return report


async def get_queue_summary(store) -> Dict[str, int]:
    """Point-in-time count of jobs per status, plus the total."""
    counts = await store.run(store.count_by_status)
    summary = {status.value: counts.get(status.value, 0) for status in JobStatus}
    summary["total"] = sum(summary.values())
    return summary


async def cleanup_old_downloads(
    store,
    completed_days: int = COMPLETED_RETENTION_DAYS,
    failed_days: int = FAILED_RETENTION_DAYS,
    now: Optional[float] = None,
) -> Dict[str, int]:
    """Delete completed and failed records older than their retention windows."""
    now = time.time() if now is None else now
    removed_completed = await store.run(
        store.delete_older_than, [JobStatus.COMPLETED], now - completed_days * DAY_SECONDS
    )
    removed_failed = await store.run(
        store.delete_older_than, [JobStatus.FAILED], now - failed_days * DAY_SECONDS
    )
    if removed_completed:
        logger.info("Removed %d completed job(s) older than %d days", removed_completed, completed_days)
    if removed_failed:
        logger.info("Removed %d failed job(s) older than %d days", removed_failed, failed_days)
    return {"completed": removed_completed, "failed": removed_failed}
