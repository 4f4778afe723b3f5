"""Tests for job submission and result retrieval."""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from llm_gateway.db import JobStore
from llm_gateway.errors import JobNotFoundError, ResultExpiredError, StagingError, StoreError, ValidationError
from llm_gateway.jobs import JobService, extension_of, is_result_retrievable
from llm_gateway.models import Job, JobStatus, JobType, utcnow
from llm_gateway.ollama import EXTRACTION_PROMPT


def _staged_files(staging_dir: Path) -> list:
    return list(staging_dir.iterdir()) if staging_dir.exists() else []


class TestSubmitGeneration:
    @pytest.mark.asyncio
    async def test_creates_pending_job(self, service: JobService, store: JobStore) -> None:
        job = await service.submit_generation("llama3", "hi")
        assert job.status is JobStatus.PENDING
        assert job.job_type == JobType.GENERATE.value

        stored = await store.get_by_id(job.id)
        assert stored.status is JobStatus.PENDING
        assert stored.prompt == "hi"

    @pytest.mark.asyncio
    async def test_ids_are_distinct(self, service: JobService) -> None:
        ids = {(await service.submit_generation("llama3", f"p{i}")).id for i in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("model,prompt", [("", "hi"), ("llama3", "")])
    async def test_empty_fields_rejected_before_insert(
        self, service: JobService, store: JobStore, model: str, prompt: str
    ) -> None:
        with pytest.raises(ValidationError):
            await service.submit_generation(model, prompt)
        assert await store.list_jobs(10) == []


class TestSubmitExtraction:
    @pytest.mark.asyncio
    async def test_stages_file_named_after_job(self, service: JobService, staging_dir: Path) -> None:
        job = await service.submit_extraction("llava:7b", b"png-bytes", ".PNG")

        staged = staging_dir / f"{job.id}.png"
        assert job.images_path == [str(staged)]
        assert staged.read_bytes() == b"png-bytes"
        assert job.prompt == EXTRACTION_PROMPT
        assert job.job_type == JobType.OCR_EXTRACT.value

    @pytest.mark.asyncio
    async def test_disallowed_model_leaves_no_trace(
        self, service: JobService, store: JobStore, staging_dir: Path
    ) -> None:
        with pytest.raises(ValidationError, match="Unsupported model"):
            await service.submit_extraction("llama3", b"png-bytes", ".png")
        assert await store.list_jobs(10) == []
        assert _staged_files(staging_dir) == []

    @pytest.mark.asyncio
    async def test_disallowed_extension(self, service: JobService, staging_dir: Path) -> None:
        with pytest.raises(ValidationError, match="Unsupported file type"):
            await service.submit_extraction("gemma3:4b", b"%PDF", ".pdf")
        assert _staged_files(staging_dir) == []

    @pytest.mark.asyncio
    async def test_empty_payload(self, service: JobService) -> None:
        with pytest.raises(ValidationError):
            await service.submit_extraction("gemma3:4b", b"", ".jpg")

    @pytest.mark.asyncio
    async def test_staging_failure_creates_no_job(self, store: JobStore, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("occupied")
        service = JobService(store, blocker)

        with pytest.raises(StagingError):
            await service.submit_extraction("llava:7b", b"png-bytes", ".png")
        assert await store.list_jobs(10) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [StoreError("disk full"), asyncio.CancelledError()])
    async def test_insert_failure_removes_staged_file(
        self,
        service: JobService,
        store: JobStore,
        staging_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
        error: BaseException,
    ) -> None:
        async def broken_insert(job):
            raise error

        monkeypatch.setattr(store, "insert", broken_insert)
        with pytest.raises(type(error)):
            await service.submit_extraction("llava:7b", b"png-bytes", ".png")
        assert _staged_files(staging_dir) == []


def test_extension_of():
    assert extension_of("scan.final.JPG") == ".jpg"
    assert extension_of("noext") == ".unknown"


class TestRetrieval:
    @pytest.mark.asyncio
    async def test_status_and_unknown_id(self, service: JobService) -> None:
        job = await service.submit_generation("llama3", "hi")
        assert await service.get_status(job.id) is JobStatus.PENDING
        with pytest.raises(JobNotFoundError):
            await service.get_status("missing")
        with pytest.raises(JobNotFoundError):
            await service.get_result("missing")

    @pytest.mark.asyncio
    async def test_not_ready_has_no_result(self, service: JobService, store: JobStore) -> None:
        job = await service.submit_generation("llama3", "hi")
        assert (await service.get_result(job.id)).result is None

        await store.update_status(job.id, JobStatus.RUNNING)
        res = await service.get_result(job.id)
        assert res.status is JobStatus.RUNNING
        assert res.result is None

    @pytest.mark.asyncio
    async def test_failed_is_a_normal_answer(self, service: JobService, store: JobStore) -> None:
        job = await service.submit_generation("llama3", "hi")
        await store.update_status(job.id, JobStatus.RUNNING)
        await store.update_result(job.id, JobStatus.FAILED, "model not found")

        res = await service.get_result(job.id)
        assert res.status is JobStatus.FAILED
        assert res.result is None

    @pytest.mark.asyncio
    async def test_fulfilled_within_and_after_window(self, service: JobService, store: JobStore) -> None:
        job = await service.submit_generation("llama3", "hi")
        await store.update_status(job.id, JobStatus.RUNNING)
        await store.update_result(job.id, JobStatus.FULFILLED, '{"response": "hello"}')
        fulfilled_at = (await store.get_by_id(job.id)).fulfilled_at

        fresh = await service.get_result(job.id, now=fulfilled_at + timedelta(minutes=59))
        assert fresh.result == '{"response": "hello"}'

        with pytest.raises(ResultExpiredError):
            await service.get_result(job.id, now=fulfilled_at + timedelta(minutes=61))


class TestRetrievableWindow:
    def _job(self, fulfilled_at):
        return Job(id="j", model="m", job_type="generate", status=JobStatus.FULFILLED, fulfilled_at=fulfilled_at)

    def test_exact_edge_is_expired(self):
        job = self._job(fulfilled_at=utcnow())
        window = timedelta(minutes=60)
        assert not is_result_retrievable(job, window, now=job.fulfilled_at + window)

    def test_just_before_edge_is_retrievable(self):
        job = self._job(fulfilled_at=utcnow())
        window = timedelta(minutes=60)
        assert is_result_retrievable(job, window, now=job.fulfilled_at + window - timedelta(microseconds=1))

    @pytest.mark.asyncio
    async def test_service_rejects_result_at_edge(self, service: JobService, store: JobStore) -> None:
        job = await service.submit_generation("llama3", "hi")
        await store.update_status(job.id, JobStatus.RUNNING)
        await store.update_result(job.id, JobStatus.FULFILLED, "done")
        fulfilled_at = (await store.get_by_id(job.id)).fulfilled_at

        with pytest.raises(ResultExpiredError):
            await service.get_result(job.id, now=fulfilled_at + service.result_expiry)

    def test_unfulfilled_is_never_retrievable(self):
        assert not is_result_retrievable(self._job(fulfilled_at=None), timedelta(minutes=60))
