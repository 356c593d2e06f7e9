import asyncio
import json
import structlog
from typing import Any, Callable, Optional

from spritebatch.jobs.models import (
    Job,
    JobStatus,
    JobSubmission,
    QueueStats,
    generate_job_id,
)
from spritebatch.storage.slots import MemorySlot, SnapshotSlot

logger = structlog.get_logger()

EVENTS = ("update", "job_complete", "all_complete")


class JobStore:
    """Ordered collection of animation jobs.

    The store is the only owner of job state. Every mutation is followed by a
    synchronous `update` notification and a snapshot write. Writes run as a
    background task on the event loop; `flush()` waits until the latest
    snapshot is stored.

    Each event name holds at most one callback; registering another one
    replaces it.
    """

    def __init__(
        self,
        slot: Optional[SnapshotSlot] = None,
        storage_key: str = "spritebatch_queue",
        preview_max_chars: int = 100,
    ):
        """Initialize job store.

        Args:
            slot: Snapshot slot for persistence (in-memory if not provided)
            storage_key: Fixed key the snapshot is written under
            preview_max_chars: Previews longer than this are truncated when persisted
        """
        self.slot = slot or MemorySlot()
        self.storage_key = storage_key
        self.preview_max_chars = preview_max_chars
        self._jobs: list[Job] = []
        self._issued_ids: set[str] = set()
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._unsaved: Optional[str] = None
        self._write_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None

    # Events

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register the callback for an event, replacing any previous one.

        Args:
            event: One of 'update', 'job_complete', 'all_complete'
            callback: Called synchronously when the event fires

        Raises:
            ValueError: If the event name is unknown
        """
        if event not in EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._handlers[event] = callback

    def emit(self, event: str, *args: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            logger.error(
                "queue_event_handler_failed",
                queue_event=event,
                error=str(e),
                error_type=type(e).__name__,
                source="queue",
                exc_info=True,
            )

    def notify(self) -> None:
        self.emit("update", self.get_all(), self.get_stats())

    def commit(self) -> None:
        """Persist the current state and notify subscribers."""
        self._persist()
        self.notify()

    # Mutations

    def add_job(self, submission: JobSubmission) -> str:
        """Append a new pending job.

        Args:
            submission: Validated submission (image, image_preview,
                image_name and settings)

        Returns:
            Job ID
        """
        job = Job(
            id=self._new_id(),
            image=submission.image,
            image_preview=submission.image_preview or submission.image,
            image_name=submission.image_name or "Untitled",
            settings=dict(submission.settings),
        )
        self._jobs.append(job)

        logger.info(
            "job_added",
            job_id=job.id,
            image_name=job.image_name,
            source="queue",
        )

        self.commit()
        return job.id

    def remove_job(self, job_id: str) -> None:
        """Remove a job. Unknown ids are ignored."""
        before = len(self._jobs)
        self._jobs = [j for j in self._jobs if j.id != job_id]

        if len(self._jobs) != before:
            logger.info("job_removed", job_id=job_id, source="queue")

        self.commit()

    def clear_jobs(self, only_completed: bool = False) -> None:
        """Remove every job, or only the ones that finished successfully.

        Args:
            only_completed: Keep everything that is not 'done'
        """
        before = len(self._jobs)
        if only_completed:
            self._jobs = [j for j in self._jobs if j.status != JobStatus.DONE]
        else:
            self._jobs = []

        logger.info(
            "jobs_cleared",
            removed=before - len(self._jobs),
            only_completed=only_completed,
            source="queue",
        )

        self.commit()

    def update_job_settings(self, job_id: str, settings: dict[str, Any]) -> None:
        """Merge settings into an existing job. Unknown ids are ignored."""
        job = self.find(job_id)
        if job is None:
            return

        job.settings = {**job.settings, **settings}
        self.commit()

    # Queries

    def find(self, job_id: str) -> Optional[Job]:
        """Return the live job object (not a copy)."""
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    def jobs(self) -> list[Job]:
        """Return the live jobs in queue order."""
        return list(self._jobs)

    def get(self, job_id: str) -> Optional[Job]:
        job = self.find(job_id)
        return job.copy() if job else None

    def get_all(self) -> list[Job]:
        return [j.copy() for j in self._jobs]

    def get_stats(self) -> QueueStats:
        stats = QueueStats(total=len(self._jobs))
        for job in self._jobs:
            if job.status == JobStatus.PENDING:
                stats.pending += 1
            elif job.status == JobStatus.PROCESSING:
                stats.processing += 1
            elif job.status == JobStatus.DONE:
                stats.done += 1
            elif job.status == JobStatus.ERROR:
                stats.errors += 1
        return stats

    # Persistence

    def snapshot(self) -> list[dict[str, Any]]:
        """Lightweight view of the queue for persistence."""
        views = []
        for job in self._jobs:
            view = job.to_dict()
            preview = view.get("image_preview")
            if preview and len(preview) > self.preview_max_chars:
                view["image_preview"] = preview[: self.preview_max_chars] + "..."
            views.append(view)
        return views

    def _persist(self) -> None:
        try:
            self._unsaved = json.dumps(self.snapshot())
        except (TypeError, ValueError) as e:
            logger.warning(
                "queue_persist_failed",
                error=str(e),
                error_type=type(e).__name__,
                source="queue",
            )
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next flush() writes it
            return

        task = self._flush_task
        if task is None or task.done() or task.get_loop() is not loop:
            self._flush_task = loop.create_task(self._write_unsaved())

    async def _write_unsaved(self) -> None:
        async with self._write_lock:
            while self._unsaved is not None:
                value, self._unsaved = self._unsaved, None
                try:
                    await self.slot.write(self.storage_key, value)
                except Exception as e:
                    logger.warning(
                        "queue_persist_failed",
                        error=str(e),
                        error_type=type(e).__name__,
                        source="queue",
                    )

    async def flush(self) -> None:
        """Wait until the latest snapshot has been handed to the slot."""
        task = self._flush_task
        loop = asyncio.get_running_loop()
        if task is not None and not task.done() and task.get_loop() is loop:
            await task
        await self._write_unsaved()

    async def restore(self) -> int:
        """Load the persisted snapshot, replacing the current jobs.

        Missing or unreadable snapshots leave the store empty. Jobs that were
        mid-flight when the snapshot was written go back to pending.

        Returns:
            Number of jobs restored
        """
        self._jobs = []

        try:
            await self.slot.initialize()
            raw = await self.slot.read(self.storage_key)
            if not raw:
                return 0

            restored = []
            seen: set[str] = set()
            for item in json.loads(raw):
                job = Job.from_dict(item)
                if job.id in seen:
                    continue
                seen.add(job.id)
                if job.status == JobStatus.PROCESSING:
                    job.status = JobStatus.PENDING
                    job.result = None
                    job.error = None
                restored.append(job)
                self._issued_ids.add(job.id)
        except Exception as e:
            logger.warning(
                "queue_restore_failed",
                error=str(e),
                error_type=type(e).__name__,
                source="queue",
            )
            return 0

        self._jobs = restored

        logger.info("queue_restored", job_count=len(restored), source="queue")

        self.notify()
        return len(restored)

    def _new_id(self) -> str:
        job_id = generate_job_id()
        while job_id in self._issued_ids:
            job_id = generate_job_id()
        self._issued_ids.add(job_id)
        return job_id
