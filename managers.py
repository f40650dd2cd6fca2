"""
Queue manager: admission, bounded dispatch and per-job control.

Worker tasks claim the oldest pending job from the store, run it through the
fetch executor and record the outcome. Progress reported by the executor is
posted to a per-job channel and applied by a single consumer task, which is
the only writer of progress for that attempt.
"""

import asyncio
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import (
    FETCH_WATCHDOG_SECONDS,
    MAX_CONCURRENT_DOWNLOADS,
    MEDIA_STORAGE_PATH,
    QUEUE_POLL_INTERVAL_SECONDS,
    RECENT_COMPLETED_LIMIT,
    RECENT_COMPLETED_WINDOW_SECONDS,
    RECENT_FAILED_LIMIT,
    RECENT_FAILED_WINDOW_SECONDS,
    STOP_ACK_TIMEOUT_SECONDS,
)
from errors import (
    DownloadCancelled,
    ExecutionFailure,
    InvalidInput,
    InvalidState,
    SystemFailure,
    error_manager,
)
from models import (
    FetchRequest,
    Job,
    JobStatus,
    JobType,
    Platform,
    PlaylistItem,
    can_transition,
)
from playlist import PlaylistExpander, aggregate_progress, build_playlist_items, summarize_items
from utils import (
    detect_platform,
    is_playlist_url,
    is_supported_url,
    sanitize_filename,
    strip_tracking_params,
    validate_url_input,
)

logger = logging.getLogger(__name__)


@dataclass
class JobProgress:
    progress: float


@dataclass
class ItemProgress:
    position: int
    total: int
    title: str
    progress: float


@dataclass(eq=False)
class ActiveJob:
    """In-memory handle for the one execution of a job id."""

    job: Job
    cancel_event: threading.Event = field(default_factory=threading.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    intent: Optional[JobStatus] = None
    timed_out: bool = False


@dataclass
class JobOutcome:
    file_path: str
    title: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    note: Optional[str] = None


def _clamp(value: float) -> int:
    return max(0, min(100, int(value)))


class QueueManager:
    """Owns the worker pool and every status change of a job."""

    def __init__(
        self,
        store,
        executor,
        broadcaster,
        expander: Optional[PlaylistExpander] = None,
        max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
        media_root: str = MEDIA_STORAGE_PATH,
        poll_interval: float = QUEUE_POLL_INTERVAL_SECONDS,
        watchdog_seconds: float = FETCH_WATCHDOG_SECONDS,
        stop_ack_timeout: float = STOP_ACK_TIMEOUT_SECONDS,
        shutdown_timeout: float = 5.0,
    ):
        self.store = store
        self.executor = executor
        self.broadcaster = broadcaster
        self.expander = expander or PlaylistExpander(executor)
        self.max_concurrent = max(1, max_concurrent)
        self.media_root = media_root
        self.poll_interval = poll_interval
        self.watchdog_seconds = watchdog_seconds
        self.stop_ack_timeout = stop_ack_timeout
        self.shutdown_timeout = shutdown_timeout

        self._runners: Dict[JobType, Callable[[ActiveJob, Callable[[Any], None]], Any]] = {
            JobType.MP3: self._run_single,
            JobType.VIDEO: self._run_single,
            JobType.PLAYLIST_MP3: self._run_playlist,
            JobType.PLAYLIST_VIDEO: self._run_playlist,
        }
        self._active: Dict[str, ActiveJob] = {}
        self._job_locks: Dict[str, asyncio.Lock] = {}
        self._dispatch_lock = asyncio.Lock()
        self._wakeups: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._stopping = False

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the worker pool. Recovery must have run before this."""
        if self._workers:
            return
        self._stopping = False
        self._wakeups = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker_loop(idx))
            for idx in range(self.max_concurrent)
        ]
        logger.info("Queue manager started with %d worker(s)", self.max_concurrent)
        self.process_queue()

    async def stop(self) -> None:
        """Stop worker tasks. Jobs still running stay processing in the store."""
        if not self._workers:
            return
        self._stopping = True
        for _ in self._workers:
            self._wakeups.put_nowait(None)

        done, pending = await asyncio.wait(self._workers, timeout=self.shutdown_timeout)
        for worker in pending:
            worker.cancel()
        results = await asyncio.gather(*self._workers, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Worker stop failed: %s", result)
        self._workers = []
        logger.info(
            "Queue manager stopped (%d worker(s) interrupted)",
            len(pending),
        )

    def process_queue(self) -> None:
        """Wake an idle worker to look for pending work."""
        if self._wakeups is None or self._stopping:
            return
        if self._wakeups.qsize() < len(self._workers):
            self._wakeups.put_nowait(True)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        return self._job_locks.setdefault(job_id, asyncio.Lock())

    # -- dispatch -----------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._stopping:
            try:
                handle = await self._claim_next()
            except SystemFailure:
                logger.error("Worker %s could not claim work; retrying later", worker_id)
                handle = None

            if handle is not None:
                try:
                    await self._run_job(handle)
                except Exception:
                    logger.exception("Unexpected worker error (worker=%s job=%s)", worker_id, handle.job.id)
                continue

            try:
                token = await asyncio.wait_for(self._wakeups.get(), self.poll_interval)
            except asyncio.TimeoutError:
                continue
            if token is None:
                break

    async def _claim_next(self) -> Optional[ActiveJob]:
        async with self._dispatch_lock:
            job = await self.store.run(self.store.claim_next_pending, exclude=list(self._active))
            if job is None:
                return None
            handle = ActiveJob(job=job)
            self._active[job.id] = handle
            return handle

    def _release(self, handle: ActiveJob) -> None:
        if self._active.get(handle.job.id) is handle:
            del self._active[handle.job.id]
        handle.finished.set()

    def _expire(self, handle: ActiveJob) -> None:
        logger.warning("Job %s exceeded the %ss watchdog; stopping it", handle.job.id, self.watchdog_seconds)
        handle.timed_out = True
        handle.cancel_event.set()

    async def _run_job(self, handle: ActiveJob) -> None:
        job = handle.job
        logger.info("Dispatching %s job %s (attempt %d)", job.type.value, job.id, job.attempts)
        self.broadcaster.emit_status(job.id, JobStatus.PROCESSING, job.progress)

        loop = asyncio.get_running_loop()
        channel: asyncio.Queue = asyncio.Queue()

        def post(message: Any) -> None:
            loop.call_soon_threadsafe(channel.put_nowait, message)

        consumer = asyncio.create_task(self._consume_progress(job, channel))
        timer = None
        if self.watchdog_seconds and self.watchdog_seconds > 0:
            timer = loop.call_later(self.watchdog_seconds, self._expire, handle)

        outcome: Optional[JobOutcome] = None
        failure: Optional[BaseException] = None
        try:
            outcome = await self._runners[job.type](handle, post)
        except asyncio.CancelledError:
            handle.cancel_event.set()
            consumer.cancel()
            self._release(handle)
            raise
        except Exception as error:
            failure = error
        finally:
            if timer is not None:
                timer.cancel()

        loop.call_soon(channel.put_nowait, None)
        try:
            await consumer
        except Exception:
            logger.exception("Progress consumer for %s crashed", job.id)
        await self._finalize(handle, outcome, failure)

    async def _consume_progress(self, job: Job, channel: asyncio.Queue) -> None:
        """Apply progress messages in order; values never go down within an attempt."""
        last_progress = -1
        last_items: Dict[int, int] = {}
        while True:
            message = await channel.get()
            if message is None:
                return
            try:
                if isinstance(message, JobProgress):
                    value = _clamp(message.progress)
                    if value <= last_progress:
                        continue
                    if await self.store.run(self.store.update_progress, job.id, value):
                        last_progress = value
                        self.broadcaster.emit_status(job.id, JobStatus.PROCESSING, value)
                elif isinstance(message, ItemProgress):
                    value = _clamp(message.progress)
                    if value <= last_items.get(message.position, -1):
                        continue
                    if await self.store.run(self.store.update_item_progress, job.id, message.position, value):
                        last_items[message.position] = value
                        self.broadcaster.emit_item_progress(
                            job.id, message.position, message.total, message.title, value
                        )
            except SystemFailure:
                logger.warning("Progress update for %s dropped: job store unavailable", job.id)

    async def _finalize(
        self,
        handle: ActiveJob,
        outcome: Optional[JobOutcome],
        failure: Optional[BaseException],
    ) -> None:
        job = handle.job
        updated: Optional[Job] = None
        try:
            async with self._lock_for(job.id):
                if outcome is not None:
                    updated = await self._record_completed(job, outcome)
                elif handle.intent is not None:
                    updated = await self._record_stopped(job, handle.intent)
                elif handle.timed_out:
                    updated = await self._record_failed(
                        job, ExecutionFailure(f"Download timed out after {self.watchdog_seconds}s")
                    )
                else:
                    updated = await self._record_failed(
                        job, failure or ExecutionFailure("Download stopped unexpectedly")
                    )
        except SystemFailure:
            logger.error("Outcome of job %s could not be recorded; recovery will reconcile it", job.id)
        finally:
            self._release(handle)
            if (updated is not None and updated.status.is_terminal) or handle.intent == JobStatus.CANCELED:
                self._job_locks.pop(job.id, None)
            self.process_queue()

    async def _record_completed(self, job: Job, outcome: JobOutcome) -> Optional[Job]:
        updated = await self.store.run(
            self.store.transition,
            job.id,
            [JobStatus.PROCESSING],
            JobStatus.COMPLETED,
            progress=100,
            file_path=outcome.file_path,
            title=outcome.title or job.title,
            error=outcome.note,
        )
        if updated is None:
            logger.info("Job %s left processing before its completion was recorded", job.id)
            return None
        logger.info("Job %s completed: %s", job.id, outcome.file_path)
        self.broadcaster.emit_status(job.id, JobStatus.COMPLETED, 100)
        self.broadcaster.emit_complete(job.id, outcome.data)
        return updated

    async def _record_failed(self, job: Job, error: BaseException) -> Optional[Job]:
        message = error_manager.describe(error)
        if isinstance(error, (ExecutionFailure, InvalidInput, DownloadCancelled)):
            logger.warning("Job %s failed: %s", job.id, message)
        else:
            logger.error("Job %s failed unexpectedly", job.id, exc_info=error)

        updated = await self.store.run(
            self.store.transition, job.id, [JobStatus.PROCESSING], JobStatus.FAILED, error=message
        )
        if updated is None:
            logger.info("Job %s left processing before its failure was recorded", job.id)
            return None
        if job.type.is_playlist:
            await self.store.run(
                self.store.reset_unfinished_items, job.id, to_status=JobStatus.FAILED, error=message
            )
        self.broadcaster.emit_error(job.id, message)
        self.broadcaster.emit_status(job.id, JobStatus.FAILED, updated.progress)
        return updated

    async def _record_stopped(self, job: Job, target: JobStatus) -> Optional[Job]:
        updated = await self.store.run(self.store.transition, job.id, [JobStatus.PROCESSING], target)
        if updated is None:
            return None
        if job.type.is_playlist:
            item_status = JobStatus.PENDING if target == JobStatus.PAUSED else JobStatus.CANCELED
            await self.store.run(self.store.reset_unfinished_items, job.id, to_status=item_status)
        logger.info("Job %s is now %s", job.id, target.value)
        self.broadcaster.emit_status(job.id, target, updated.progress)
        return updated

    # -- runners ------------------------------------------------------------

    def _output_dir(self, job_type: JobType) -> str:
        return os.path.join(self.media_root, job_type.file_format.value)

    async def _run_single(self, handle: ActiveJob, post: Callable[[Any], None]) -> JobOutcome:
        job = handle.job
        request = FetchRequest(
            url=job.url,
            job_type=job.type,
            output_dir=self._output_dir(job.type),
            options=job.options,
        )
        result = await self.executor.download(
            request,
            lambda percent: post(JobProgress(percent)),
            handle.cancel_event,
        )
        return JobOutcome(file_path=result.file_path, title=result.title, data=result.to_dict())

    async def _run_playlist(self, handle: ActiveJob, post: Callable[[Any], None]) -> JobOutcome:
        """Fetch items strictly in order; one failed item does not stop the rest."""
        job = handle.job
        items = await self.store.run(self.store.get_items, job.id)
        if not items:
            info = await self.expander.expand(job.url)
            await self.store.run(self.store.replace_items, job.id, build_playlist_items(job.id, info))
            if not job.title:
                await self.store.run(self.store.update_job, job.id, title=info.title)
                job.title = info.title

        # every attempt starts over, keeping items that already completed
        await self.store.run(self.store.reset_unfinished_items, job.id, include_failed=True)
        items = await self.store.run(self.store.get_items, job.id)

        folder = os.path.join(self.media_root, "playlists", sanitize_filename(job.title or job.id))
        total = len(items)
        for item in items:
            if item.status == JobStatus.COMPLETED:
                continue
            if handle.cancel_event.is_set():
                raise DownloadCancelled(f"Playlist {job.id} stopped before item {item.position}")

            await self.store.run(
                self.store.update_item, job.id, item.position, status=JobStatus.PROCESSING, progress=0
            )
            item.status = JobStatus.PROCESSING
            request = FetchRequest(
                url=item.url,
                job_type=job.type.item_type,
                output_dir=folder,
                options=job.options,
            )

            def report(percent: float, item: PlaylistItem = item) -> None:
                post(ItemProgress(item.position, total, item.title, percent))

            try:
                result = await self.executor.download(request, report, handle.cancel_event)
            except DownloadCancelled:
                await self.store.run(
                    self.store.update_item, job.id, item.position, status=JobStatus.PENDING, progress=0
                )
                raise
            except Exception as error:
                message = error_manager.describe(error)
                logger.warning("Playlist %s item %d failed: %s", job.id, item.position, message)
                await self.store.run(
                    self.store.update_item, job.id, item.position, status=JobStatus.FAILED, error=message
                )
                item.status = JobStatus.FAILED
                item.error = message
                self.broadcaster.emit_error(job.id, f"{item.title}: {message}")
            else:
                await self.store.run(
                    self.store.update_item,
                    job.id,
                    item.position,
                    status=JobStatus.COMPLETED,
                    progress=100,
                    file_path=result.file_path,
                    error=None,
                )
                item.status = JobStatus.COMPLETED
                item.file_path = result.file_path
                self.broadcaster.emit_item_complete(job.id, item.position, total, result.to_dict())

            post(JobProgress(aggregate_progress(items)))

        summary = summarize_items(items)
        completed = summary["completedItems"]
        if completed == 0:
            raise ExecutionFailure(f"None of the {total} playlist items could be downloaded")

        note = None
        if completed < total:
            note = f"{completed} of {total} items downloaded successfully"
        return JobOutcome(file_path=folder, title=job.title, data=summary, note=note)

    # -- admission ----------------------------------------------------------

    async def add_to_queue(
        self,
        url: Any,
        job_type: Any = None,
        options: Any = None,
    ) -> Job:
        """Validate and persist a submission as a pending job."""
        url = url.strip() if isinstance(url, str) else ""
        valid, message = validate_url_input(url)
        if not valid:
            raise InvalidInput(message)
        if not is_supported_url(url):
            raise InvalidInput("URL is not supported; send a YouTube link or a direct media file link")
        url = strip_tracking_params(url)

        if options is None:
            options = {}
        if not isinstance(options, dict):
            raise InvalidInput("options must be an object")

        try:
            kind = JobType.classify(job_type, is_playlist_url(url))
        except ValueError as error:
            raise InvalidInput(str(error)) from error
        if kind.is_playlist and detect_platform(url) == Platform.DIRECT:
            raise InvalidInput("A direct media file URL cannot be downloaded as a playlist")

        job = Job(id=str(uuid.uuid4()), url=url, type=kind, options=dict(options))
        items: List[PlaylistItem] = []
        if kind.is_playlist:
            info = await self.expander.expand(url)
            job.title = info.title
            items = build_playlist_items(job.id, info)

        await self.store.run(self.store.create_job, job, items)
        logger.info("Queued %s job %s for %s (%d item(s))", kind.value, job.id, url, len(items) or 1)
        self.broadcaster.emit_status(job.id, JobStatus.PENDING, 0)
        self.process_queue()
        return job

    # -- control ------------------------------------------------------------

    async def _stop(self, job_id: str, target: JobStatus) -> Tuple[Optional[Job], bool]:
        """
        Move a job to ``target`` (paused or canceled).

        Pending and paused jobs change immediately. A processing job gets its
        stop flag set and the transition is recorded when the executor
        acknowledges, or forced after ``stop_ack_timeout``. Returns the job as
        it stands afterwards and whether this call changed it.
        """
        handle: Optional[ActiveJob] = None
        for _ in range(3):
            async with self._lock_for(job_id):
                job = await self.store.run(self.store.find_job, job_id)
                if job is None:
                    return None, False
                if job.status.is_terminal or job.status == target:
                    return job, False

                if job.status == JobStatus.PROCESSING:
                    handle = self._active.get(job_id)
                    if handle is None:
                        async with self._dispatch_lock:
                            handle = self._active.get(job_id)
                    if handle is None:
                        updated = await self._record_stopped(job, target)
                        if updated is None:
                            continue
                        return updated, True
                    if handle.intent != JobStatus.CANCELED:
                        handle.intent = target
                    handle.cancel_event.set()
                    break

                if not can_transition(job.status, target):
                    return job, False
                updated = await self.store.run(self.store.transition, job_id, [job.status], target)
                if updated is None:
                    continue
                if job.type.is_playlist and target == JobStatus.CANCELED:
                    await self.store.run(self.store.reset_unfinished_items, job_id, to_status=JobStatus.CANCELED)
                logger.info("Job %s moved from %s to %s", job_id, job.status.value, target.value)
                self.broadcaster.emit_status(job_id, target, updated.progress)
                return updated, True
        else:
            job = await self.store.run(self.store.find_job, job_id)
            return job, False

        try:
            await asyncio.wait_for(handle.finished.wait(), self.stop_ack_timeout)
        except asyncio.TimeoutError:
            logger.warning("Job %s did not acknowledge stop within %ss; forcing %s",
                           job_id, self.stop_ack_timeout, handle.intent.value)
            async with self._lock_for(job_id):
                forced = await self._record_stopped(handle.job, handle.intent)
            if forced is not None:
                return forced, forced.status == target

        job = await self.store.run(self.store.find_job, job_id)
        return job, job is not None and job.status == target

    async def cancel_download(self, job_id: str) -> Optional[Job]:
        """Cancel a job. Missing and already finished jobs are a successful no-op."""
        job, changed = await self._stop(job_id, JobStatus.CANCELED)
        if job is not None and job.status.is_terminal and job_id not in self._active:
            self._job_locks.pop(job_id, None)
        if job is None:
            logger.info("Cancel for %s ignored: job already gone", job_id)
        elif not changed:
            logger.info("Cancel for %s was a no-op (status %s)", job_id, job.status.value)
        return job

    async def pause_download(self, job_id: str) -> int:
        job, changed = await self._stop(job_id, JobStatus.PAUSED)
        return 1 if changed else 0

    async def pause_all_downloads(self) -> int:
        paused = await self.store.run(self.store.transition_all, [JobStatus.PENDING], JobStatus.PAUSED)
        for job in paused:
            self.broadcaster.emit_status(job.id, JobStatus.PAUSED, job.progress)

        processing = await self.store.run(self.store.list_jobs, statuses=[JobStatus.PROCESSING])
        results = await asyncio.gather(*(self._stop(job.id, JobStatus.PAUSED) for job in processing))
        count = len(paused) + sum(1 for _, changed in results if changed)
        logger.info("Paused %d job(s)", count)
        return count

    async def resume_download(self, job_id: str) -> Optional[Job]:
        """Return a paused job to pending. Its last progress is kept for display."""
        async with self._lock_for(job_id):
            job = await self.store.run(self.store.find_job, job_id)
            if job is None:
                return None
            if job.status.is_terminal:
                raise InvalidState(f"Job {job_id} is {job.status.value} and cannot be resumed", [job_id])
            if job.status != JobStatus.PAUSED:
                return job
            updated = await self.store.run(self.store.transition, job_id, [JobStatus.PAUSED], JobStatus.PENDING)
            if updated is None:
                return await self.store.run(self.store.find_job, job_id)
            self.broadcaster.emit_status(job_id, JobStatus.PENDING, updated.progress)

        logger.info("Job %s resumed", job_id)
        self.process_queue()
        return updated

    async def resume_all_downloads(self) -> int:
        resumed = await self.store.run(self.store.transition_all, [JobStatus.PAUSED], JobStatus.PENDING)
        for job in resumed:
            self.broadcaster.emit_status(job.id, JobStatus.PENDING, job.progress)
        logger.info("Resumed %d job(s)", len(resumed))
        if resumed:
            self.process_queue()
        return len(resumed)

    async def delete_download(self, job_id: str) -> bool:
        """Delete a finished job. Returns False when it was already gone."""
        async with self._lock_for(job_id):
            job = await self.store.run(self.store.find_job, job_id)
            if job is None:
                return False
            if not job.status.is_terminal:
                raise InvalidState(
                    f"Job {job_id} is {job.status.value}; cancel it before deleting",
                    [job_id],
                )
            await self.store.run(self.store.delete_job, job_id)
        self._job_locks.pop(job_id, None)
        logger.info("Job %s deleted", job_id)
        return True

    async def delete_downloads(self, job_ids: Any) -> int:
        """Delete every listed job or none of them."""
        if not isinstance(job_ids, list) or not job_ids:
            raise InvalidInput("ids must be a non-empty list of job ids")
        if not all(isinstance(job_id, str) and job_id for job_id in job_ids):
            raise InvalidInput("ids must be a non-empty list of job ids")
        deleted = await self.store.run(self.store.delete_terminal_jobs, job_ids)
        for job_id in job_ids:
            self._job_locks.pop(job_id, None)
        logger.info("Batch delete removed %d of %d job(s)", deleted, len(job_ids))
        return deleted

    # -- queries ------------------------------------------------------------

    async def get_download_status(self, job_id: str) -> Tuple[Job, List[PlaylistItem]]:
        job = await self.store.run(self.store.get_job, job_id)
        items: List[PlaylistItem] = []
        if job.type.is_playlist:
            items = await self.store.run(self.store.get_items, job_id)
        return job, items

    async def get_all_pending_downloads(self) -> List[Job]:
        return await self.store.run(self.store.list_jobs, statuses=[JobStatus.PENDING])

    async def get_all_processing_downloads(self) -> List[Job]:
        return await self.store.run(self.store.list_jobs, statuses=[JobStatus.PROCESSING])

    async def get_all_paused_downloads(self) -> List[Job]:
        return await self.store.run(self.store.list_jobs, statuses=[JobStatus.PAUSED])

    async def _recent(self, status: JobStatus, window: int, limit: int) -> List[Job]:
        return await self.store.run(
            self.store.list_jobs,
            statuses=[status],
            updated_since=time.time() - window,
            limit=limit,
            order_by="updated_at",
            newest_first=True,
        )

    async def get_recent_failed_downloads(self) -> List[Job]:
        return await self._recent(JobStatus.FAILED, RECENT_FAILED_WINDOW_SECONDS, RECENT_FAILED_LIMIT)

    async def get_recent_completed_downloads(self) -> List[Job]:
        return await self._recent(JobStatus.COMPLETED, RECENT_COMPLETED_WINDOW_SECONDS, RECENT_COMPLETED_LIMIT)

    async def get_queue_listing(self) -> Dict[str, List[Job]]:
        """Processing, then pending, then paused, then recent failures and completions."""
        return {
            "processing": await self.get_all_processing_downloads(),
            "pending": await self.get_all_pending_downloads(),
            "paused": await self.get_all_paused_downloads(),
            "failed": await self.get_recent_failed_downloads(),
            "completed": await self.get_recent_completed_downloads(),
        }
