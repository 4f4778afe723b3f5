from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence

import aiosqlite
from aiosqlite import Row

from .errors import JobNotFoundError, StoreError
from .models import (
    PREDECESSORS,
    Job,
    JobStatus,
    JobType,
    decode_images_path,
    encode_images_path,
    utcnow,
)

log = logging.getLogger("llm-jobs")

STAGED_IMAGE_LOST = "staged image no longer available"

_RESULT_COLUMNS = "id, status, job_type, model, prompt, result, images_path, created_at, fulfilled_at"
_LIGHT_COLUMNS = "id, status, job_type, model, prompt, images_path, created_at, fulfilled_at"


def _iso(dt: datetime) -> str:
    return dt.isoformat()


def _utcnow_iso() -> str:
    return _iso(utcnow())


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _staged_image_present(raw: Optional[str]) -> bool:
    try:
        paths = decode_images_path(raw)
    except ValueError:
        return False
    return bool(paths) and Path(paths[0]).is_file()


@dataclass
class AioSqlitePool:
    db_path: Path
    size: int
    busy_timeout_ms: int = 10000
    _queue: "asyncio.Queue[aiosqlite.Connection]" = field(default_factory=asyncio.Queue)
    _all: List[aiosqlite.Connection] = field(default_factory=list)
    _inited: bool = False
    _init_lock: asyncio.Lock = field(default_factory=asyncio.Lock)  # idempotent init

    async def init(self) -> None:
        if self._inited:
            return
        async with self._init_lock:
            if self._inited:
                return
            for _ in range(self.size):
                conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)  # autocommit
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)};")
                await self._queue.put(conn)
                self._all.append(conn)
            self._inited = True

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self._queue.get()
        try:
            yield conn
        finally:
            await self._queue.put(conn)

    async def close(self) -> None:
        if not self._inited:
            return
        for conn in self._all:
            await conn.close()
        self._all.clear()
        self._queue = asyncio.Queue()
        self._inited = False


def _row_to_job(row: Row) -> Job:
    keys = row.keys()
    return Job(
        id=row["id"],
        status=JobStatus(row["status"]),
        job_type=row["job_type"],
        model=row["model"],
        prompt=row["prompt"] or "",
        result=row["result"] if "result" in keys else None,
        images_path=decode_images_path(row["images_path"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        fulfilled_at=_parse_dt(row["fulfilled_at"]),
    )


class JobStore:
    """Durable table of job records.

    Every write is keyed by id and guarded by the current status, so a row
    only moves forward through the state machine no matter who else is
    polling or writing. Concurrency is left to sqlite (WAL + busy timeout).
    """

    def __init__(self, pool: AioSqlitePool) -> None:
        self.pool = pool

    @classmethod
    def open(cls, db_path: Path, size: int = 5, busy_timeout_ms: int = 10000) -> "JobStore":
        return cls(AioSqlitePool(db_path=db_path, size=size, busy_timeout_ms=busy_timeout_ms))

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.pool.acquire() as conn:
            try:
                yield conn
            except sqlite3.IntegrityError as e:
                raise StoreError(f"constraint violation: {e}") from e
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    async def init(self) -> None:
        try:
            await self.pool.init()
        except sqlite3.Error as e:
            raise StoreError(f"cannot open {self.pool.db_path}: {e}") from e
        async with self._conn() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs(
                id              TEXT    PRIMARY KEY,
                status          TEXT    NOT NULL,
                job_type        TEXT    NOT NULL,
                model           TEXT    NOT NULL,
                prompt          TEXT,
                result          TEXT,
                images_path     TEXT,
                created_at      TEXT    NOT NULL,
                started_at      TEXT,
                fulfilled_at    TEXT
                );
                """
            )
            await conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_status     ON jobs(status)")
            await conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_created_at ON jobs(created_at)")
        log.info("job store ready at %s", self.pool.db_path)

    async def close(self) -> None:
        await self.pool.close()

    async def insert(self, job: Job) -> None:
        async with self._conn() as conn:
            await conn.execute(
                "INSERT INTO jobs (id, status, job_type, model, prompt, result, images_path, created_at, started_at, fulfilled_at) "
                "VALUES (?, ?, ?, ?, ?, NULL, ?, ?, NULL, NULL)",
                (
                    job.id,
                    job.status.value,
                    job.job_type,
                    job.model,
                    job.prompt,
                    encode_images_path(job.images_path),
                    _iso(job.created_at),
                ),
            )

    async def get_by_id(self, job_id: str, include_result: bool = True) -> Job:
        columns = _RESULT_COLUMNS if include_result else _LIGHT_COLUMNS
        async with self._conn() as conn:
            cur = await conn.execute(f"SELECT {columns} FROM jobs WHERE id=?", (job_id,))
            row: Optional[Row] = await cur.fetchone()
            await cur.close()
        if row is None:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    async def get_status(self, job_id: str) -> JobStatus:
        async with self._conn() as conn:
            cur = await conn.execute("SELECT status FROM jobs WHERE id=?", (job_id,))
            row: Optional[Row] = await cur.fetchone()
            await cur.close()
        if row is None:
            raise JobNotFoundError(job_id)
        return JobStatus(row["status"])

    async def update_status(self, job_id: str, status: JobStatus) -> bool:
        """Move a job to a non-terminal status. Returns False if the row was not in a predecessor state."""
        if status.is_terminal:
            raise ValueError(f"terminal status {status.value} must be written with update_result")
        allowed = PREDECESSORS.get(status, ())
        if not allowed:
            raise ValueError(f"no transition leads to {status.value}")
        marks = ",".join("?" for _ in allowed)
        async with self._conn() as conn:
            cur = await conn.execute(
                f"UPDATE jobs SET status=?, started_at=? WHERE id=? AND status IN ({marks})",
                (status.value, _utcnow_iso(), job_id, *(s.value for s in allowed)),
            )
            changed = cur.rowcount > 0
            await cur.close()
        return changed

    async def update_result(self, job_id: str, status: JobStatus, result: str) -> bool:
        """Write the terminal status, result and fulfilled_at together, once."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        marks = ",".join("?" for _ in PREDECESSORS[status])
        async with self._conn() as conn:
            cur = await conn.execute(
                f"""
                UPDATE jobs
                   SET status=?,
                       result=?,
                       fulfilled_at=?
                 WHERE id=?
                   AND status IN ({marks})
                   AND fulfilled_at IS NULL
                """,
                (status.value, result, _utcnow_iso(), job_id, *(s.value for s in PREDECESSORS[status])),
            )
            changed = cur.rowcount > 0
            await cur.close()
        return changed

    async def list_pending(self) -> List[Job]:
        async with self._conn() as conn:
            cur = await conn.execute(
                f"SELECT {_LIGHT_COLUMNS} FROM jobs WHERE status=? ORDER BY created_at ASC",
                (JobStatus.PENDING.value,),
            )
            rows: Sequence[Row] = await cur.fetchall()
            await cur.close()
        return [_row_to_job(r) for r in rows]

    async def list_jobs(self, limit: int, include_result: bool = False) -> List[Job]:
        columns = _RESULT_COLUMNS if include_result else _LIGHT_COLUMNS
        async with self._conn() as conn:
            cur = await conn.execute(
                f"SELECT {columns} FROM jobs ORDER BY created_at DESC LIMIT ?",
                (int(limit),),
            )
            rows: Sequence[Row] = await cur.fetchall()
            await cur.close()
        return [_row_to_job(r) for r in rows]

    async def delete_all(self) -> int:
        async with self._conn() as conn:
            cur = await conn.execute("DELETE FROM jobs")
            deleted = cur.rowcount
            await cur.close()
        return deleted

    # ---------------- stale reclaim ----------------

    async def reclaim_stale(self, cutoff: datetime) -> List[str]:
        """Put running jobs started before ``cutoff`` back to pending.

        Extraction jobs whose staged image is already gone cannot be rerun;
        those are failed with ``STAGED_IMAGE_LOST`` instead. Returns the ids
        put back to pending.
        """
        async with self._conn() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cur = await conn.execute(
                    "SELECT id, job_type, images_path FROM jobs "
                    "WHERE status=? AND started_at IS NOT NULL AND started_at < ?",
                    (JobStatus.RUNNING.value, _iso(cutoff)),
                )
                rows: Sequence[Row] = await cur.fetchall()
                await cur.close()
                requeued: List[str] = []
                for r in rows:
                    job_id = str(r["id"])
                    if r["job_type"] == JobType.OCR_EXTRACT.value and not _staged_image_present(r["images_path"]):
                        await conn.execute(
                            "UPDATE jobs SET status=?, result=?, fulfilled_at=? "
                            "WHERE id=? AND status=? AND fulfilled_at IS NULL",
                            (JobStatus.FAILED.value, STAGED_IMAGE_LOST, _utcnow_iso(), job_id, JobStatus.RUNNING.value),
                        )
                        log.warning("stale job %s lost its staged image, marked failed", job_id)
                        continue
                    await conn.execute(
                        "UPDATE jobs SET status=?, started_at=NULL WHERE id=? AND status=?",
                        (JobStatus.PENDING.value, job_id, JobStatus.RUNNING.value),
                    )
                    requeued.append(job_id)
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")
        return requeued
