#!/usr/bin/env python3
"""
Fires concurrent enqueue requests for the same target at a running API and
checks that they all resolve to a single job.

Expects a SyllabusNode with id TARGET_ID (a TOPIC) to exist.
"""
import asyncio
import os

import httpx

API_URL = os.getenv("CONTENT_API_URL", "http://localhost:8000")
API_KEY = os.getenv("ADMIN_API_KEY")
TARGET_ID = os.getenv("TARGET_ID", "topic-fractions")
CONCURRENCY = 20


async def enqueue(client: httpx.AsyncClient) -> dict:
    resp = await client.post("/api/v1/jobs", json={
        "entity_id": TARGET_ID,
        "job_type": "notes",
        "payload": {"language": "en"},
    })
    resp.raise_for_status()
    return resp.json()


async def verify_idempotency():
    headers = {"X-API-Key": API_KEY} if API_KEY else {}
    async with httpx.AsyncClient(base_url=API_URL, headers=headers, timeout=10.0) as client:
        print(f"1. Sending {CONCURRENCY} concurrent enqueue requests for notes:{TARGET_ID}...")
        results = await asyncio.gather(*(enqueue(client) for _ in range(CONCURRENCY)))

        job_ids = {r["job_id"] for r in results}
        created = sum(1 for r in results if r["created"])
        print(f"2. Results: {len(job_ids)} distinct job(s), {created} reported as created.")

        if len(job_ids) != 1:
            print(f"FAILURE: Duplicate jobs created: {sorted(job_ids)}")
            return

        job_id = job_ids.pop()
        timeline = (await client.get(f"/api/v1/jobs/{job_id}/timeline")).json()
        created_logs = [e for e in timeline if e["event"] == "CREATED"]
        if len(created_logs) == 1:
            print(f"SUCCESS: Exactly one job ({job_id}) with one CREATED log.")
        else:
            print(f"FAILURE: Expected one CREATED log, found {len(created_logs)}")


if __name__ == "__main__":
    asyncio.run(verify_idempotency())
