"""Job data model for the animation queue."""

import copy
import random
import string
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


ELIGIBLE_STATUSES = (JobStatus.PENDING, JobStatus.ERROR)


def generate_job_id() -> str:
    """Build a short id from the current time plus a random suffix."""
    millis = int(time.time() * 1000)
    alphabet = string.digits + string.ascii_lowercase
    stamp = ""
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = alphabet[rem] + stamp
    suffix = "".join(random.choices(alphabet, k=6))
    return f"{stamp}{suffix}"


@dataclass
class Job:
    """Represents one sprite animation request in the queue."""
    id: str
    image: str
    image_preview: Optional[str] = None
    image_name: str = "Untitled"
    settings: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    added_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def copy(self) -> "Job":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=str(data["id"]),
            image=data["image"],
            image_preview=data.get("image_preview"),
            image_name=data.get("image_name") or "Untitled",
            settings=dict(data.get("settings") or {}),
            status=JobStatus(data.get("status", JobStatus.PENDING)),
            result=data.get("result"),
            error=data.get("error"),
            added_at=int(data.get("added_at") or 0),
        )


@dataclass
class QueueStats:
    """Aggregate job counts by status."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    done: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class JobSubmission(BaseModel):
    """Input accepted when adding a job."""
    image: str
    image_preview: Optional[str] = None
    image_name: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
