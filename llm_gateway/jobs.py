from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .db import JobStore
from .errors import ResultExpiredError, StagingError, ValidationError
from .models import Job, JobStatus, JobType, new_job_id, utcnow
from .ollama import EXTRACTION_PROMPT, MULTIMODAL_MODELS

log = logging.getLogger("llm-jobs")

ALLOWED_IMAGE_EXTENSIONS: tuple[str, ...] = (".png", ".jpg", ".jpeg")
DEFAULT_RESULT_EXPIRY = timedelta(minutes=60)


def extension_of(filename: str) -> str:
    idx = filename.rfind(".")
    return filename[idx:].lower() if idx != -1 else ".unknown"


def validate_extraction(model: str, extension: str) -> None:
    if not model:
        raise ValidationError("Model is required")
    if model not in MULTIMODAL_MODELS:
        raise ValidationError(
            f"Unsupported model for multimodal extraction: {model} "
            f"(supported: {', '.join(MULTIMODAL_MODELS)})"
        )
    if extension.lower() not in ALLOWED_IMAGE_EXTENSIONS:
        raise ValidationError("Unsupported file type. Only .png, .jpg, and .jpeg images are supported")


def is_result_retrievable(job: Job, expiry: timedelta, now: Optional[datetime] = None) -> bool:
    """A result is retrievable while strictly less than ``expiry`` has elapsed."""
    if job.fulfilled_at is None:
        return False
    now = now or utcnow()
    return now - job.fulfilled_at < expiry


@dataclass
class JobResult:
    id: str
    status: JobStatus
    result: Optional[str] = None


class JobService:
    """Caller-facing side of the job system: submission and retrieval."""

    def __init__(
        self,
        store: JobStore,
        staging_dir: Path,
        result_expiry: timedelta = DEFAULT_RESULT_EXPIRY,
    ) -> None:
        self.store = store
        self.staging_dir = Path(staging_dir)
        self.result_expiry = result_expiry

    # ---------------- submission ----------------

    async def submit_generation(self, model: str, prompt: str) -> Job:
        if not prompt:
            raise ValidationError("Prompt is required")
        if not model:
            raise ValidationError("Model is required")

        job = Job(id=new_job_id(), model=model, job_type=JobType.GENERATE.value, prompt=prompt)
        await self.store.insert(job)
        log.info("created generation job id=%s model=%s", job.id, job.model)
        return job

    async def submit_extraction(self, model: str, image_bytes: bytes, extension: str) -> Job:
        validate_extraction(model, extension)
        if not image_bytes:
            raise ValidationError("File is required")

        job_id = new_job_id()
        staged = self.staging_dir / f"{job_id}{extension.lower()}"
        await asyncio.to_thread(self._stage, staged, image_bytes)

        job = Job(
            id=job_id,
            model=model,
            job_type=JobType.OCR_EXTRACT.value,
            prompt=EXTRACTION_PROMPT,
            images_path=[str(staged)],
        )
        try:
            await self.store.insert(job)
        except BaseException:
            staged.unlink(missing_ok=True)
            raise
        log.info("created extraction job id=%s model=%s file=%s", job.id, job.model, staged)
        return job

    def _stage(self, path: Path, data: bytes) -> None:
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            if path.is_file():
                path.unlink()  # partial write
            log.error("staging %s failed: %s", path, e)
            raise StagingError(f"cannot stage upload: {e}") from e

    # ---------------- retrieval ----------------

    async def get_status(self, job_id: str) -> JobStatus:
        return await self.store.get_status(job_id)

    async def get_result(self, job_id: str, now: Optional[datetime] = None) -> JobResult:
        job = await self.store.get_by_id(job_id, include_result=True)
        if job.status is not JobStatus.FULFILLED:
            return JobResult(id=job.id, status=job.status)
        if not is_result_retrievable(job, self.result_expiry, now):
            raise ResultExpiredError(job.id)
        return JobResult(id=job.id, status=job.status, result=job.result)

    async def list_recent(self, limit: int = 50, include_result: bool = False) -> List[Job]:
        return await self.store.list_jobs(limit, include_result=include_result)

    async def empty(self) -> int:
        deleted = await self.store.delete_all()
        log.warning("deleted all jobs (%d rows)", deleted)
        return deleted
