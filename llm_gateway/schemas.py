from __future__ import annotations
from datetime import datetime
from typing import Any, List, Literal, Optional
from pydantic import BaseModel

from .models import Job, JobStatus

class GenerationRequest(BaseModel):
    model: str = ""
    prompt: str = ""

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str

class ChatRequest(BaseModel):
    model: str = ""
    messages: List[ChatMessage] = []

class AddModelRequest(BaseModel):
    model: str = ""

class GenerationResponse(BaseModel):
    model: str
    response: Any = None

class ModelListResponse(BaseModel):
    models: List[str]

class MessageResponse(BaseModel):
    message: str

class CreateJobResponse(BaseModel):
    id: str
    status: JobStatus
    message: str

class JobStatusResponse(BaseModel):
    id: str
    status: JobStatus

class JobResultResponse(BaseModel):
    id: str
    status: JobStatus
    result: Optional[str] = None

class JobView(BaseModel):
    id: str
    created_at: datetime
    fulfilled_at: Optional[datetime] = None
    status: JobStatus
    model: str
    job_type: str
    prompt: Optional[str] = None
    result: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(
            id=job.id,
            created_at=job.created_at,
            fulfilled_at=job.fulfilled_at,
            status=job.status,
            model=job.model,
            job_type=job.job_type,
            prompt=job.prompt or None,
            result=job.result,
        )

class JobListResponse(BaseModel):
    jobs: List[JobView]

class DeleteJobsResponse(BaseModel):
    message: str
    deleted: int

