from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .db import JobStore
from .errors import GatewayError, MissingImageError, StoreError, UnknownJobTypeError
from .models import GenerateTask, Job, JobStatus, OCRExtractTask, utcnow
from .ollama import OllamaClient

log = logging.getLogger("llm-jobs")

POLL_INTERVAL_SEC: float = 5.0

Outcome = Tuple[JobStatus, str]


class JobWorker:
    """Single background loop that drains pending jobs one at a time.

    Each tick fetches the pending batch once and processes it sequentially,
    so the backend never sees more than one job request from this worker at
    a time. Jobs submitted mid-tick wait for the next tick.
    """

    def __init__(
        self,
        store: JobStore,
        client: OllamaClient,
        poll_interval: float = POLL_INTERVAL_SEC,
        stale_after: Optional[timedelta] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop), name="job-worker")

    async def stop(self) -> None:
        """Ask the loop to exit and wait for any in-flight tick to finish."""
        if self._task is None or self._stop is None:
            return
        self._stop.set()
        await self._task
        self._task = None

    async def run(self, stop: asyncio.Event) -> None:
        log.info("job worker started (interval=%ss)", self.poll_interval)
        while not stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                log.exception("job worker tick failed (%s), retrying next interval", e)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        log.info("job worker stopped")

    def stopping(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    async def tick(self) -> int:
        """Process the current pending batch; returns how many jobs were processed.

        A stop request is honoured between jobs: the in-flight job finishes and
        the rest of the batch stays pending.
        """
        await self._reclaim_stale()
        jobs = await self.store.list_pending()
        if not jobs:
            return 0
        log.info("processing %d pending job(s)", len(jobs))
        done = 0
        for job in jobs:
            if self.stopping():
                log.info("stop requested, leaving %d job(s) pending", len(jobs) - done)
                break
            await self.process(job)
            done += 1
        return done

    async def _reclaim_stale(self) -> None:
        if self.stale_after is None:
            return
        try:
            ids = await self.store.reclaim_stale(utcnow() - self.stale_after)
        except StoreError as e:
            log.error("stale reclaim failed: %s", e)
            return
        for job_id in ids:
            log.warning("reclaimed job %s stuck in running, back to pending", job_id)

    async def process(self, job: Job) -> Optional[JobStatus]:
        """Run one job through running to its terminal state.

        Returns the terminal status written, or None when the job was skipped
        or its outcome could not be persisted.
        """
        log.info("processing job id=%s type=%s model=%s", job.id, job.job_type, job.model)
        try:
            claimed = await self.store.update_status(job.id, JobStatus.RUNNING)
        except StoreError as e:
            log.error("job %s: could not mark running: %s", job.id, e)
            return None
        if not claimed:
            log.warning("job %s is no longer pending, skipping", job.id)
            return None

        try:
            status, result = await self._dispatch(job)
        except Exception as e:
            log.exception("job %s: unexpected error during dispatch", job.id)
            status, result = JobStatus.FAILED, f"internal error: {e}"

        try:
            written = await self.store.update_result(job.id, status, result)
        except StoreError as e:
            log.error("job %s: could not persist %s outcome: %s", job.id, status.value, e)
            return None
        if not written:
            log.warning("job %s: %s outcome not written, job is no longer running", job.id, status.value)
            return None
        log.info("job %s -> %s", job.id, status.value)
        return status

    async def _dispatch(self, job: Job) -> Outcome:
        try:
            task = job.to_task()
        except (UnknownJobTypeError, MissingImageError) as e:
            log.error("job %s failed: %s", job.id, e)
            return JobStatus.FAILED, str(e)

        if isinstance(task, GenerateTask):
            return await self._generate(job.id, task)
        if isinstance(task, OCRExtractTask):
            return await self._extract(job.id, task)
        raise TypeError(f"unhandled task variant {type(task).__name__}")

    async def _generate(self, job_id: str, task: GenerateTask) -> Outcome:
        try:
            payload = await self.client.generate(task.model, task.prompt)
        except GatewayError as e:
            log.warning("job %s failed (generation): %s", job_id, e)
            return JobStatus.FAILED, str(e)
        return self._serialize(job_id, payload)

    async def _extract(self, job_id: str, task: OCRExtractTask) -> Outcome:
        path = Path(task.image_path)
        try:
            image_bytes = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            log.warning("job %s failed to read image %s: %s", job_id, path, e)
            self._discard(path)
            return JobStatus.FAILED, f"error reading staged image: {e}"

        try:
            payload = await self.client.extract_text(task.model, image_bytes, path.name)
        except GatewayError as e:
            log.warning("job %s failed (OCR extraction): %s", job_id, e)
            return JobStatus.FAILED, str(e)
        finally:
            self._discard(path)
        return self._serialize(job_id, payload)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log.error("could not remove staged file %s: %s", path, e)

    @staticmethod
    def _serialize(job_id: str, payload: Dict[str, Any]) -> Outcome:
        try:
            return JobStatus.FULFILLED, json.dumps(payload)
        except (TypeError, ValueError) as e:
            log.error("job %s failed to serialize response: %s", job_id, e)
            return JobStatus.FAILED, f"error serializing result: {e}"
