from __future__ import annotations

import pytest
from aiohttp import test_utils

from personacord.jobs.queue import JobQueue
from personacord.jobs.schemas import JobStatus, LLMGenerationResult
from personacord.server import create_app

from ._fakes import make_audio_job


def _client(queue: JobQueue | None = None) -> test_utils.TestClient:
    return test_utils.TestClient(test_utils.TestServer(create_app(queue or JobQueue())))


@pytest.mark.asyncio
async def test_health_check() -> None:
    async with _client() as client:
        response = await client.get("/")

        assert response.status == 200
        assert await response.text() == "I'm alive"


@pytest.mark.asyncio
async def test_submit_then_poll_a_job() -> None:
    queue = JobQueue()
    job = make_audio_job()

    async with _client(queue) as client:
        accepted = await client.post("/jobs", json=job.to_wire())
        pending = await client.get("/jobs/audio-1")

        assert accepted.status == 202
        assert await accepted.json() == {"requestId": "audio-1", "status": "queued"}
        assert pending.status == 404
        assert await pending.json() == {"requestId": "audio-1", "status": "queued"}
        assert queue.qsize() == 1


@pytest.mark.asyncio
async def test_completed_request_returns_stored_result() -> None:
    queue = JobQueue()
    queue.results.store_once(
        "gen-1",
        LLMGenerationResult(request_id="gen-1", success=True, content="hello"),
    )

    async with _client(queue) as client:
        polled = await client.get("/jobs/gen-1")
        body = await polled.json()

        assert polled.status == 200
        assert body["requestId"] == "gen-1"
        assert body["content"] == "hello"
        assert body["metadata"]["crossTurnDuplicateDetected"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("body", "expected_error"),
    [
        ("not json", "Body must be JSON"),
        ("[1, 2]", "Body must be a JSON object"),
    ],
)
async def test_submit_rejects_malformed_bodies(body: str, expected_error: str) -> None:
    async with _client() as client:
        response = await client.post(
            "/jobs",
            data=body,
            headers={"Content-Type": "application/json"},
        )

        assert response.status == 400
        assert (await response.json())["error"] == expected_error


@pytest.mark.asyncio
async def test_submit_reports_validation_issues() -> None:
    async with _client() as client:
        response = await client.post(
            "/jobs",
            json={"requestId": "x", "jobType": "image-description"},
        )
        body = await response.json()

        assert response.status == 400
        assert body["issues"]


@pytest.mark.asyncio
async def test_resubmitting_an_active_job_reports_its_status() -> None:
    queue = JobQueue()
    job = make_audio_job()

    async with _client(queue) as client:
        await client.post("/jobs", json=job.to_wire())
        queue.set_status("audio-1", JobStatus.ACTIVE)
        again = await client.post("/jobs", json=job.to_wire())

        assert again.status == 202
        assert await again.json() == {"requestId": "audio-1", "status": "active"}
        assert queue.qsize() == 1
