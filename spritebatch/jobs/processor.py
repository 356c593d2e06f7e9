import asyncio
import structlog
from typing import Any, Awaitable, Callable

from spritebatch.jobs.models import ELIGIBLE_STATUSES, Job, JobStatus
from spritebatch.jobs.queue import JobStore

logger = structlog.get_logger()

AnimateFn = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

STRING_PARAMS = ("final_image", "model", "image_type", "margin_ratio_mode")
INT_PARAMS = ("frames", "frame_size")
FLOAT_PARAMS = ("duration", "margin_ratio")
BOOL_PARAMS = ("loop", "crop", "augment_prompt", "gif", "spritesheet_with_background")

DEFAULT_ERROR_MESSAGE = "Animation request failed"


def _is_set(value: Any) -> bool:
    return value is not None and value != ""


def build_api_params(settings: dict[str, Any]) -> dict[str, Any]:
    """Translate job settings into animate request parameters.

    Empty values are dropped, numeric values are parsed explicitly (0 is
    kept) and booleans pass through when present. Individual frames are
    always requested.

    Args:
        settings: Job settings mapping

    Returns:
        Parameters for the animate operation

    Raises:
        ValueError: If a numeric setting cannot be parsed
    """
    params: dict[str, Any] = {}

    for key in STRING_PARAMS:
        if settings.get(key):
            params[key] = settings[key]

    pixel_art_filter = settings.get("pixel_art_filter")
    if pixel_art_filter and pixel_art_filter != "none":
        params["pixel_art_filter"] = pixel_art_filter

    for key in INT_PARAMS:
        if _is_set(settings.get(key)):
            params[key] = int(settings[key])

    for key in FLOAT_PARAMS:
        if _is_set(settings.get(key)):
            params[key] = float(settings[key])

    for key in BOOL_PARAMS:
        if settings.get(key) is not None:
            params[key] = settings[key]

    params["individual_frames"] = True

    return params


def build_params(job: Job) -> dict[str, Any]:
    """Full animate request for a job: prompt and source image plus settings."""
    params = {
        "motion_prompt": job.settings.get("motion_prompt"),
        "initial_image": job.image,
    }
    params.update(build_api_params(job.settings))
    return params


class QueueProcessor:
    """Runs queued jobs one at a time against the animate operation.

    Batch runs and single-job runs share one in-flight guard, so a job is
    never executed by both paths at once.
    """

    def __init__(self, store: JobStore, animate: AnimateFn):
        """Initialize queue processor.

        Args:
            store: JobStore that owns the jobs
            animate: Async callable taking request params and returning the result
        """
        self.store = store
        self.animate = animate
        self._running = False
        self._scheduled = False
        self._cancel_requested = False
        self._in_flight: set[str] = set()

    @property
    def is_processing(self) -> bool:
        return self._running

    @property
    def is_busy(self) -> bool:
        """True while a batch runs or one has been scheduled to run."""
        return self._running or self._scheduled

    def schedule(self) -> bool:
        """Reserve the next batch run before it is started in the background.

        Returns:
            False if a batch is already running or scheduled
        """
        if self.is_busy:
            return False
        self._scheduled = True
        return True

    async def process_all(self) -> None:
        """Process every eligible job sequentially.

        Eligible jobs are the ones pending or failed when the run starts;
        jobs added afterwards wait for the next run. Returns immediately if a
        run is already in progress.
        """
        if self._running:
            logger.warning("batch_already_running", source="processor")
            return

        self._running = True
        self._scheduled = False
        self._cancel_requested = False
        self.store.notify()

        batch = [j for j in self.store.jobs() if j.status in ELIGIBLE_STATUSES]

        logger.info("batch_started", job_count=len(batch), source="processor")

        processed = 0
        try:
            for job in batch:
                if self._cancel_requested:
                    logger.info(
                        "batch_cancelled",
                        processed=processed,
                        remaining=len(batch) - processed,
                        source="processor",
                    )
                    break

                processed += 1

                # Removed, retried elsewhere or already finished since the snapshot
                if self.store.find(job.id) is not job:
                    continue
                if job.status not in ELIGIBLE_STATUSES:
                    continue

                await self._execute(job)
        finally:
            self._running = False

        await self.store.flush()

        stats = self.store.get_stats()
        self.store.notify()

        logger.info(
            "batch_finished",
            done=stats.done,
            errors=stats.errors,
            pending=stats.pending,
            source="processor",
        )

        self.store.emit("all_complete", stats)

    async def process_single(self, job_id: str) -> None:
        """Process one job outside the batch loop.

        No-op if the job does not exist or is already processing.
        """
        job = self.store.find(job_id)
        if job is None or job.status == JobStatus.PROCESSING:
            return

        await self._execute(job)

    def cancel_processing(self) -> None:
        """Stop the batch before its next job. The in-flight job still finishes."""
        if not self._running:
            return

        self._cancel_requested = True

        logger.info("batch_cancel_requested", source="processor")

    def retry_job(self, job_id: str) -> None:
        """Put a failed job back to pending. Does not start processing."""
        job = self.store.find(job_id)
        if job is None or job.status != JobStatus.ERROR:
            return

        job.status = JobStatus.PENDING
        job.error = None

        logger.info("job_retry_scheduled", job_id=job_id, source="processor")

        self.store.commit()

    async def _execute(self, job: Job) -> None:
        if job.id in self._in_flight:
            logger.warning("job_already_in_flight", job_id=job.id, source="processor")
            return

        self._in_flight.add(job.id)
        try:
            job.status = JobStatus.PROCESSING
            job.error = None
            job.result = None
            self.store.notify()

            logger.info(
                "processing_job",
                job_id=job.id,
                image_name=job.image_name,
                source="processor",
            )

            try:
                result = await self.animate(build_params(job))
            except asyncio.CancelledError:
                # Task shutdown: nobody owns the job any more
                job.status = JobStatus.PENDING
                self.store.commit()
                logger.info("job_interrupted", job_id=job.id, source="processor")
                raise
            except Exception as e:
                job.status = JobStatus.ERROR
                job.error = str(e) or DEFAULT_ERROR_MESSAGE

                logger.error(
                    "job_failed",
                    job_id=job.id,
                    error=job.error,
                    error_type=type(e).__name__,
                    source="processor",
                )
            else:
                job.status = JobStatus.DONE
                job.result = result

                logger.info("job_completed", job_id=job.id, source="processor")

                self.store.emit("job_complete", job.copy())
        finally:
            self._in_flight.discard(job.id)

        self.store.commit()
        await self.store.flush()
