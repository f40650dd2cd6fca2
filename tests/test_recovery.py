"""
Tests for startup recovery, queue summary and retention cleanup.
"""

import asyncio
import time

from models import Job, JobStatus, JobType, PlaylistItem
from recovery import (
    DAY_SECONDS,
    cleanup_old_downloads,
    get_queue_summary,
    recover_download_queue,
)
from store import JobStore


def _store(tmp_path):
    store = JobStore(str(tmp_path / "queue.db"))
    store.ensure_schema()
    return store


def _seed(store, job_id, status, attempts=1, job_type=JobType.MP3, updated_at=None, items=None):
    now = time.time()
    store.create_job(
        Job(
            id=job_id,
            url=f"https://youtu.be/{job_id}",
            type=job_type,
            status=status,
            progress=40 if status == JobStatus.PROCESSING else 0,
            attempts=attempts,
            created_at=updated_at or now,
            updated_at=updated_at or now,
        ),
        items,
    )


def test_recovery_leaves_no_job_processing(tmp_path):
    store = _store(tmp_path)
    _seed(store, "fresh", JobStatus.PROCESSING, attempts=1)
    _seed(store, "worn", JobStatus.PROCESSING, attempts=3)
    _seed(store, "waiting", JobStatus.PENDING, attempts=0)

    report = asyncio.run(recover_download_queue(store, policy="requeue", max_attempts=3))

    assert report.requeued == ["fresh"]
    assert report.failed == ["worn"]
    assert report.pending == 2

    fresh = store.get_job("fresh")
    assert fresh.status == JobStatus.PENDING
    assert fresh.progress == 0

    worn = store.get_job("worn")
    assert worn.status == JobStatus.FAILED
    assert "interrupted" in worn.error

    assert store.list_jobs(statuses=[JobStatus.PROCESSING]) == []


def test_fail_policy_marks_every_orphan_failed(tmp_path):
    store = _store(tmp_path)
    _seed(store, "a", JobStatus.PROCESSING)
    _seed(store, "b", JobStatus.PROCESSING)

    report = asyncio.run(recover_download_queue(store, policy="fail"))

    assert sorted(report.failed) == ["a", "b"]
    assert report.requeued == []
    assert {job.status for job in store.list_jobs()} == {JobStatus.FAILED}


def test_recovery_resets_interrupted_playlist_items(tmp_path):
    store = _store(tmp_path)
    items = [
        PlaylistItem(job_id="pl", position=0, url="u0", title="t0", status=JobStatus.COMPLETED),
        PlaylistItem(job_id="pl", position=1, url="u1", title="t1", status=JobStatus.PROCESSING),
    ]
    _seed(store, "pl", JobStatus.PROCESSING, job_type=JobType.PLAYLIST_MP3, items=items)

    asyncio.run(recover_download_queue(store))

    statuses = [item.status for item in store.get_items("pl")]
    assert statuses == [JobStatus.COMPLETED, JobStatus.PENDING]


def test_queue_summary_counts_each_status(tmp_path):
    store = _store(tmp_path)
    _seed(store, "a", JobStatus.PENDING)
    _seed(store, "b", JobStatus.PENDING)
    _seed(store, "c", JobStatus.PAUSED)
    _seed(store, "d", JobStatus.COMPLETED)

    summary = asyncio.run(get_queue_summary(store))

    assert summary["pending"] == 2
    assert summary["paused"] == 1
    assert summary["completed"] == 1
    assert summary["processing"] == 0
    assert summary["canceled"] == 0
    assert summary["total"] == 4


def test_cleanup_respects_retention_windows(tmp_path):
    store = _store(tmp_path)
    now = time.time()
    _seed(store, "old-done", JobStatus.COMPLETED, updated_at=now - 8 * DAY_SECONDS)
    _seed(store, "new-done", JobStatus.COMPLETED, updated_at=now - 1 * DAY_SECONDS)
    _seed(store, "old-failed", JobStatus.FAILED, updated_at=now - 31 * DAY_SECONDS)
    _seed(store, "mid-failed", JobStatus.FAILED, updated_at=now - 10 * DAY_SECONDS)
    _seed(store, "old-paused", JobStatus.PAUSED, updated_at=now - 60 * DAY_SECONDS)

    removed = asyncio.run(cleanup_old_downloads(store, completed_days=7, failed_days=30, now=now))

    assert removed == {"completed": 1, "failed": 1}
    remaining = {job.id for job in store.list_jobs()}
    assert remaining == {"new-done", "mid-failed", "old-paused"}
