from __future__ import annotations
import argparse
import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx

def ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

async def create_generation_job(client: httpx.AsyncClient, api: str, model: str, prompt: str) -> str:
    r = await client.post(f"{api}/jobs/generate", json={"model": model, "prompt": prompt})
    print("POST /jobs/generate ->", r.status_code, r.text)
    r.raise_for_status()
    return r.json()["id"]

async def create_extraction_job(client: httpx.AsyncClient, api: str, model: str, image: Path) -> str:
    files = {"file": (image.name, image.read_bytes(), "application/octet-stream")}
    r = await client.post(f"{api}/jobs/multimodal_extraction", data={"model": model}, files=files)
    print("POST /jobs/multimodal_extraction ->", r.status_code, r.text)
    r.raise_for_status()
    return r.json()["id"]

async def poll_result(client: httpx.AsyncClient, api: str, job_id: str, poll_delay: float, poll_limit: int) -> dict[str, Any]:
    for _ in range(poll_limit):
        r = await client.get(f"{api}/jobs/{job_id}/result")
        if r.status_code == 404:
            return {"status": "not_found"}
        if r.status_code == 410:
            return {"status": "expired"}
        if r.status_code != 200:
            return {"status": "error", "code": r.status_code, "body": r.text}

        data: dict[str, Any] = r.json()
        if data["status"] in ("fulfilled", "failed"):
            return data
        await asyncio.sleep(poll_delay)
    return {"status": "timeout"}

async def main() -> None:
    parser = argparse.ArgumentParser(description="Smoke test the LLM job gateway")
    parser.add_argument("--api", default="http://127.0.0.1:3000", help="Base API URL")
    parser.add_argument("--api-key", required=True, help="Value for the X-API-Key header")
    parser.add_argument("--model", default="llama3", help="Model for generation jobs")
    parser.add_argument("--prompt", default="Say hello in one sentence.", help="Prompt for generation jobs")
    parser.add_argument("--image", default=None, help="Optional image to submit as an extraction job")
    parser.add_argument("--ocr-model", default="llava:7b", help="Model for the extraction job")
    parser.add_argument("--count", type=int, default=3, help="How many generation jobs to create")
    parser.add_argument("--poll-delay", type=float, default=2.0, help="Seconds between polls")
    parser.add_argument("--poll-limit", type=int, default=60, help="Max polls per job")
    parser.add_argument("--log", default="client.log", help="Where to write logs")
    args = parser.parse_args()

    image: Optional[Path] = Path(args.image).resolve() if args.image else None
    if image is not None and not image.exists():
        raise SystemExit(f"File not found: {image}")

    headers = {"X-API-Key": args.api_key}
    async with httpx.AsyncClient(timeout=30.0, headers=headers) as client:
        with open(args.log, "a", encoding="utf-8") as logf:
            logf.write(f"==== SMOKE START {ts()} ====\n")
            job_ids: list[str] = []
            for i in range(1, args.count + 1):
                job_id = await create_generation_job(client, args.api, args.model, args.prompt)
                logf.write(f"{ts()} [create #{i}] generate job_id={job_id}\n")
                job_ids.append(job_id)
            if image is not None:
                job_id = await create_extraction_job(client, args.api, args.ocr_model, image)
                logf.write(f"{ts()} [create] extraction job_id={job_id} file={image}\n")
                job_ids.append(job_id)

            for job_id in job_ids:
                result: dict[str, Any] = await poll_result(client, args.api, job_id, args.poll_delay, args.poll_limit)
                logf.write(f"{ts()} [result {job_id}] {json.dumps(result)}\n")
            logf.write(f"==== SMOKE END {ts()} ====\n")


if __name__ == "__main__":
    asyncio.run(main())
