from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union
from uuid import uuid4

from .errors import MissingImageError, UnknownJobTypeError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return str(uuid4())


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FULFILLED = "fulfilled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.FULFILLED, JobStatus.FAILED)


# status -> statuses it may be entered from; nothing leaves a terminal state
PREDECESSORS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.RUNNING: (JobStatus.PENDING,),
    JobStatus.FULFILLED: (JobStatus.RUNNING,),
    JobStatus.FAILED: (JobStatus.RUNNING,),
}


class JobType(str, Enum):
    GENERATE = "generate"
    OCR_EXTRACT = "ocr_extract"


# ---------------- images_path codec (storage boundary only) ----------------

def encode_images_path(paths: List[str]) -> Optional[str]:
    if not paths:
        return None
    return json.dumps(list(paths))


def decode_images_path(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    decoded = json.loads(raw)
    if not isinstance(decoded, list):
        raise ValueError(f"images_path must encode a list, got {type(decoded).__name__}")
    return [str(p) for p in decoded]


# ---------------- task variants ----------------

@dataclass(frozen=True)
class GenerateTask:
    model: str
    prompt: str


@dataclass(frozen=True)
class OCRExtractTask:
    model: str
    image_path: str


Task = Union[GenerateTask, OCRExtractTask]


@dataclass
class Job:
    id: str
    model: str
    job_type: str
    status: JobStatus = JobStatus.PENDING
    prompt: str = ""
    result: Optional[str] = None
    images_path: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    fulfilled_at: Optional[datetime] = None

    def to_task(self) -> Task:
        """Build the typed work item for this job.

        Raises UnknownJobTypeError for a job_type this build cannot run and
        MissingImageError for an extraction job without a staged image.
        """
        if self.job_type == JobType.GENERATE.value:
            return GenerateTask(model=self.model, prompt=self.prompt)
        if self.job_type == JobType.OCR_EXTRACT.value:
            if not self.images_path:
                raise MissingImageError()
            return OCRExtractTask(model=self.model, image_path=self.images_path[0])
        raise UnknownJobTypeError(self.job_type)
