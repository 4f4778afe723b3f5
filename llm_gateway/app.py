from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import httpx
from fastapi import FastAPI

from .api import admin_router, router
from .config import Settings
from .db import JobStore
from .jobs import JobService
from .ollama import OllamaClient
from .worker import JobWorker

log = logging.getLogger("llm-jobs")


def create_app(
    settings: Optional[Settings] = None,
    start_worker: bool = True,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(asctime)s %(levelname)s %(message)s")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        Path(settings.DATABASE_PATH).mkdir(parents=True, exist_ok=True)
        store = JobStore.open(settings.db_file, size=settings.DB_POOL_SIZE, busy_timeout_ms=settings.DB_BUSY_TIMEOUT_MS)
        await store.init()
        log.info("store init ok")

        client = OllamaClient(settings.OLLAMA_URL, timeout=settings.BACKEND_TIMEOUT_SECONDS, transport=transport)
        worker = JobWorker(
            store,
            client,
            poll_interval=settings.JOB_WORKER_INTERVAL_SECONDS,
            stale_after=settings.stale_after,
        )
        app.state.store = store
        app.state.client = client
        app.state.worker = worker
        app.state.jobs = JobService(store, Path(settings.STAGING_DIR), result_expiry=settings.result_expiry)

        if start_worker:
            await worker.start()
            log.info("worker started")
        try:
            yield
        finally:
            await worker.stop()
            await client.aclose()
            await store.close()
            log.info("shutdown complete")

    app: FastAPI = FastAPI(title="LLM Job Gateway", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.include_router(router)
    app.include_router(admin_router)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"status": "ok"}

    return app
