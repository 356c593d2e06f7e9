"""Download generated spritesheets and frames to local disk."""

import asyncio
import re
from io import BytesIO
from pathlib import Path
from typing import Optional

import httpx
import structlog
from PIL import Image

from spritebatch.jobs.models import Job, JobStatus

logger = structlog.get_logger()


class NoFrameDataError(Exception):
    """Raised when a job result has neither frame URLs nor a sliceable sheet."""


def slug(prompt: Optional[str]) -> str:
    """Filename-safe fragment of a motion prompt (max 30 chars)."""
    return re.sub(r"[^a-zA-Z0-9]", "_", prompt or "")[:30]


def write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


class ResultDownloader:
    """Writes job result artifacts into a directory."""

    def __init__(
        self,
        output_dir: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=True
        )

    def _job_dir(self, job: Job) -> Path:
        return self.output_dir / job.id

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> bytes:
        response = await client.get(url)
        response.raise_for_status()
        return response.content

    async def download_spritesheet(self, job: Job, index: int = 1) -> Path:
        """Save the job's spritesheet.

        Args:
            job: Completed job
            index: 1-based position used in the filename

        Returns:
            Path of the written file

        Raises:
            NoFrameDataError: If the job has no spritesheet URL
            httpx.HTTPError: If the download fails
        """
        sheet_url = (job.result or {}).get("spritesheet_url")
        if not sheet_url:
            raise NoFrameDataError(f"Job {job.id} has no spritesheet")

        async with self._client() as client:
            content = await self._fetch(client, sheet_url)

        path = self._job_dir(job) / (
            f"spritesheet_{slug(job.settings.get('motion_prompt'))}_{index}.png"
        )
        await asyncio.to_thread(write_file, path, content)

        logger.info(
            "spritesheet_downloaded",
            job_id=job.id,
            path=str(path),
            size=len(content),
            source="downloads",
        )

        return path

    async def download_all_spritesheets(self, jobs: list[Job]) -> list[Path]:
        """Save the spritesheet of every completed job.

        Failed downloads are logged and skipped.

        Returns:
            Paths of the files written
        """
        completed = [j for j in jobs if j.status == JobStatus.DONE]
        paths = []

        for index, job in enumerate(completed, start=1):
            if not (job.result or {}).get("spritesheet_url"):
                continue
            try:
                paths.append(await self.download_spritesheet(job, index))
            except (httpx.HTTPError, OSError) as e:
                logger.warning(
                    "spritesheet_download_failed",
                    job_id=job.id,
                    index=index,
                    error=str(e),
                    error_type=type(e).__name__,
                    source="downloads",
                )

        return paths

    async def download_frames(self, job: Job) -> list[Path]:
        """Save a job's individual frames.

        Uses the frame URLs returned by the API when available, otherwise
        slices the spritesheet using its column, row and frame counts.

        Returns:
            Paths of the frame files, in frame order

        Raises:
            NoFrameDataError: If there is nothing to extract frames from
            httpx.HTTPError: If a download fails
        """
        result = job.result or {}
        prefix = f"frame_{slug(job.settings.get('motion_prompt'))}"
        frame_urls = result.get("individual_frame_urls") or []

        if frame_urls:
            paths = []
            job_dir = self._job_dir(job)
            async with self._client() as client:
                for i, url in enumerate(frame_urls, start=1):
                    path = job_dir / f"{prefix}_{i}.png"
                    content = await self._fetch(client, url)
                    await asyncio.to_thread(write_file, path, content)
                    paths.append(path)

            logger.info(
                "frames_downloaded",
                job_id=job.id,
                frame_count=len(paths),
                source="downloads",
            )
            return paths

        sheet_url = result.get("spritesheet_url")
        num_cols = result.get("num_cols")
        num_rows = result.get("num_rows")
        num_frames = result.get("num_frames")
        if not (sheet_url and num_cols and num_rows and num_frames):
            raise NoFrameDataError(f"No frame data available for job {job.id}")

        async with self._client() as client:
            content = await self._fetch(client, sheet_url)

        paths = await asyncio.to_thread(
            slice_spritesheet,
            content,
            int(num_cols),
            int(num_rows),
            int(num_frames),
            self._job_dir(job),
            prefix,
        )

        logger.info(
            "frames_extracted",
            job_id=job.id,
            frame_count=len(paths),
            source="downloads",
        )
        return paths


def slice_spritesheet(
    content: bytes,
    num_cols: int,
    num_rows: int,
    num_frames: int,
    output_dir: Path,
    prefix: str,
) -> list[Path]:
    """Cut a spritesheet into frame images, row by row.

    Args:
        content: Encoded spritesheet image
        num_cols: Columns in the grid
        num_rows: Rows in the grid
        num_frames: Frames to extract (the last row may be partial)
        output_dir: Directory for the frame files
        prefix: Filename prefix; frames are numbered with two digits

    Returns:
        Paths of the written frames
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    with Image.open(BytesIO(content)) as sheet:
        sheet.load()
        frame_width = sheet.width // num_cols
        frame_height = sheet.height // num_rows

        paths = []
        for row in range(num_rows):
            for col in range(num_cols):
                if len(paths) >= num_frames:
                    return paths
                box = (
                    col * frame_width,
                    row * frame_height,
                    (col + 1) * frame_width,
                    (row + 1) * frame_height,
                )
                path = output_dir / f"{prefix}_{len(paths) + 1:02d}.png"
                sheet.crop(box).save(path, format="PNG")
                paths.append(path)

    return paths
