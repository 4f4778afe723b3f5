from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Callable, List

import httpx
import pytest
import pytest_asyncio

from llm_gateway.db import JobStore
from llm_gateway.jobs import JobService
from llm_gateway.ollama import OllamaClient

BACKEND_URL = "http://ollama.test"

Handler = Callable[[httpx.Request], httpx.Response]


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[JobStore]:
    """Fresh sqlite-backed store per test."""
    s = JobStore.open(tmp_path / "jobs.db", size=2, busy_timeout_ms=2000)
    await s.init()
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    return tmp_path / "staging"


@pytest.fixture
def service(store: JobStore, staging_dir: Path) -> JobService:
    return JobService(store, staging_dir)


@pytest_asyncio.fixture
async def make_client() -> AsyncIterator[Callable[..., OllamaClient]]:
    """Factory for OllamaClient instances wired to an in-process mock backend."""
    clients: List[OllamaClient] = []

    def _make(handler: Handler, **kwargs) -> OllamaClient:
        client = OllamaClient(BACKEND_URL, transport=httpx.MockTransport(handler), **kwargs)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()
