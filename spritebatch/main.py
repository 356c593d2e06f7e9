"""Main entry point for spritebatch - FastAPI Server."""

from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from spritebatch import __version__
from spritebatch.client import LudoClient
from spritebatch.config import settings
from spritebatch.jobs import JobStore, JobSubmission, QueueProcessor, QueueStats
from spritebatch.jobs.models import Job, JobStatus
from spritebatch.jobs.processor import AnimateFn
from spritebatch.log_setup import configure_logging
from spritebatch.storage import SnapshotSlot, create_slot
from spritebatch.storage.downloads import NoFrameDataError, ResultDownloader

logger = structlog.get_logger()


class BatchSubmission(BaseModel):
    """One character image animated with several prompts."""
    image: str
    image_preview: Optional[str] = None
    image_name: Optional[str] = None
    prompts: list[dict[str, str]] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)


class JobCreatedResponse(BaseModel):
    job_ids: list[str]


class ProcessResponse(BaseModel):
    """Response model for processing requests."""
    status: str
    message: str


class DownloadResponse(BaseModel):
    files: list[str]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    processing: bool


def _queue_payload(store: JobStore) -> dict:
    return {
        "jobs": [j.to_dict() for j in store.get_all()],
        "stats": store.get_stats().to_dict(),
    }


def _on_job_complete(job: Job) -> None:
    logger.info(
        "job_completed_notification",
        job_id=job.id,
        motion_prompt=job.settings.get("motion_prompt"),
    )


def _on_all_complete(stats: QueueStats) -> None:
    logger.info("batch_completed", succeeded=stats.done, failed=stats.errors)


def create_app(
    slot: Optional[SnapshotSlot] = None,
    animate: Optional[AnimateFn] = None,
    downloader: Optional[ResultDownloader] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        slot: Snapshot slot (built from settings if not provided)
        animate: Animate operation (LudoClient.animate_sprite if not provided)
        downloader: Result downloader (writes to settings.downloads_path if not provided)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        configure_logging(settings.log_level)

        logger.info("spritebatch_starting", version=__version__)

        store = JobStore(
            slot=slot or create_slot(settings),
            storage_key=settings.queue_storage_key,
            preview_max_chars=settings.preview_max_chars,
        )
        restored = await store.restore()
        logger.info("queue_initialized", restored_jobs=restored)

        store.on("job_complete", _on_job_complete)
        store.on("all_complete", _on_all_complete)

        app.state.store = store
        app.state.processor = QueueProcessor(
            store, animate or LudoClient().animate_sprite
        )
        app.state.downloader = downloader or ResultDownloader(settings.downloads_path)

        yield

        app.state.processor.cancel_processing()
        await store.flush()
        logger.info("spritebatch_shutdown")

    app = FastAPI(
        title="spritebatch",
        description="Bulk sprite animation queue for the Ludo.ai API",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            processing=request.app.state.processor.is_processing,
        )

    @app.get("/jobs")
    async def list_jobs(request: Request):
        """List queued jobs with statistics."""
        return _queue_payload(request.app.state.store)

    @app.post("/jobs", response_model=JobCreatedResponse, status_code=201)
    async def add_job(submission: JobSubmission, request: Request):
        """Queue one sprite for animation."""
        job_id = request.app.state.store.add_job(submission)
        return JobCreatedResponse(job_ids=[job_id])

    @app.post("/jobs/batch", response_model=JobCreatedResponse, status_code=201)
    async def add_batch(batch: BatchSubmission, request: Request):
        """Queue one character image once per named prompt."""
        if not batch.prompts:
            raise HTTPException(status_code=400, detail="At least one prompt is required")

        store: JobStore = request.app.state.store
        base_name = batch.image_name or "Untitled"
        job_ids = []
        for anim in batch.prompts:
            job_ids.append(
                store.add_job(
                    JobSubmission(
                        image=batch.image,
                        image_preview=batch.image_preview,
                        image_name=f"{base_name} - {anim.get('name', '')}",
                        settings={**batch.settings, "motion_prompt": anim.get("prompt")},
                    )
                )
            )

        logger.info("batch_queued", job_count=len(job_ids))

        return JobCreatedResponse(job_ids=job_ids)

    @app.delete("/jobs")
    async def clear_jobs(request: Request, only_completed: bool = False):
        """Clear the queue, or only its completed jobs."""
        store: JobStore = request.app.state.store
        store.clear_jobs(only_completed=only_completed)
        return _queue_payload(store)

    @app.post("/jobs/process", response_model=ProcessResponse, status_code=202)
    async def process_all(request: Request, background_tasks: BackgroundTasks):
        """Start processing every pending or failed job."""
        processor: QueueProcessor = request.app.state.processor
        if processor.is_busy:
            raise HTTPException(
                status_code=409,
                detail="Processing already in progress",
            )

        stats = request.app.state.store.get_stats()
        eligible = stats.pending + stats.errors
        if eligible == 0:
            return ProcessResponse(status="skipped", message="No pending jobs to process")

        # Reserved until the background run starts
        processor.schedule()
        background_tasks.add_task(processor.process_all)

        return ProcessResponse(
            status="accepted",
            message=f"Processing {eligible} animation{'s' if eligible > 1 else ''}",
        )

    @app.post("/jobs/cancel", response_model=ProcessResponse)
    async def cancel_processing(request: Request):
        """Stop processing after the current job."""
        request.app.state.processor.cancel_processing()
        return ProcessResponse(status="cancelled", message="Processing cancelled")

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        """Get one job with its result."""
        job = request.app.state.store.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_dict()

    @app.patch("/jobs/{job_id}/settings")
    async def update_job_settings(job_id: str, changes: dict[str, Any], request: Request):
        """Merge new settings into a job."""
        store: JobStore = request.app.state.store
        if store.get(job_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")
        store.update_job_settings(job_id, changes)
        return store.get(job_id).to_dict()

    @app.delete("/jobs/{job_id}", status_code=204)
    async def remove_job(job_id: str, request: Request):
        """Remove a job from the queue."""
        request.app.state.store.remove_job(job_id)

    @app.post("/jobs/{job_id}/retry", response_model=ProcessResponse, status_code=202)
    async def retry_job(job_id: str, request: Request, background_tasks: BackgroundTasks):
        """Reset a failed job and process it again."""
        store: JobStore = request.app.state.store
        job = store.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.status != JobStatus.ERROR:
            raise HTTPException(status_code=409, detail=f"Job is {job.status.value}, not error")

        processor: QueueProcessor = request.app.state.processor
        processor.retry_job(job_id)
        background_tasks.add_task(processor.process_single, job_id)

        return ProcessResponse(status="accepted", message="Retry started")

    @app.post("/jobs/{job_id}/download", response_model=DownloadResponse)
    async def download_frames(job_id: str, request: Request):
        """Download the individual frames of a completed job."""
        job = request.app.state.store.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.status != JobStatus.DONE:
            raise HTTPException(status_code=409, detail="Job has no result yet")

        try:
            paths = await request.app.state.downloader.download_frames(job)
        except NoFrameDataError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except httpx.HTTPError as e:
            logger.error("frame_download_failed", job_id=job_id, error=str(e))
            raise HTTPException(status_code=502, detail=f"Download failed: {e}")

        return DownloadResponse(files=[str(p) for p in paths])

    @app.post("/results/download", response_model=DownloadResponse)
    async def download_all_sheets(request: Request):
        """Download the spritesheets of every completed job."""
        jobs = request.app.state.store.get_all()
        paths = await request.app.state.downloader.download_all_spritesheets(jobs)
        return DownloadResponse(files=[str(p) for p in paths])

    @app.get("/stats")
    async def get_stats(request: Request):
        """Queue statistics."""
        return request.app.state.store.get_stats().to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "spritebatch.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
