"""Job queue and sequential processing engine."""

from .models import Job, JobStatus, JobSubmission, QueueStats
from .queue import JobStore
from .processor import QueueProcessor, build_api_params, build_params

__all__ = [
    "Job",
    "JobStatus",
    "JobSubmission",
    "QueueStats",
    "JobStore",
    "QueueProcessor",
    "build_api_params",
    "build_params",
]
