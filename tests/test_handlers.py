"""
Unit tests for the HTTP and websocket layer.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

from aiohttp.test_utils import TestClient, TestServer

from broadcaster import ProgressBroadcaster
from errors import InvalidInput, InvalidState, NotFound, SystemFailure
from handlers import create_app
from models import Job, JobStatus, JobType, PlaylistItem


def _job(job_id="job-1", status=JobStatus.PENDING, job_type=JobType.MP3):
    return Job(id=job_id, url="https://youtu.be/abc", type=job_type, status=status)


class _StubQueueManager:
    active_count = 1

    def __init__(self):
        self.store = SimpleNamespace(
            count_by_status=lambda: None,
            run=AsyncMock(
                return_value={
                    "pending": 2,
                    "processing": 1,
                    "paused": 0,
                    "completed": 3,
                    "failed": 1,
                    "canceled": 0,
                }
            ),
        )
        self.add_to_queue = AsyncMock(return_value=_job())
        self.get_download_status = AsyncMock(return_value=(_job(), []))
        self.cancel_download = AsyncMock(return_value=_job(status=JobStatus.CANCELED))
        self.pause_download = AsyncMock(return_value=1)
        self.resume_download = AsyncMock(return_value=None)
        self.pause_all_downloads = AsyncMock(return_value=5)
        self.resume_all_downloads = AsyncMock(return_value=5)
        self.delete_download = AsyncMock(return_value=True)
        self.delete_downloads = AsyncMock(return_value=2)
        self.get_queue_listing = AsyncMock(
            return_value={"processing": [], "pending": [_job()], "paused": [], "failed": [], "completed": []}
        )


def _run(scenario, manager=None, broadcaster=None):
    manager = manager or _StubQueueManager()

    async def runner():
        app = create_app(manager, broadcaster or ProgressBroadcaster())
        async with TestClient(TestServer(app)) as client:
            return await scenario(client)

    return manager, asyncio.run(runner())


def test_download_queues_job():
    async def scenario(client):
        response = await client.post(
            "/api/youtube/download",
            json={"url": "https://youtu.be/abc", "type": "mp3", "options": {"quality": "5"}},
        )
        return response.status, await response.json()

    manager, (status, body) = _run(scenario)

    assert status == 201
    assert body["success"] is True
    assert body["data"]["id"] == "job-1"
    assert body["data"]["isPlaylist"] is False
    manager.add_to_queue.assert_awaited_once_with("https://youtu.be/abc", "mp3", {"quality": "5"})


def test_download_without_url_is_rejected():
    async def scenario(client):
        response = await client.post("/api/youtube/download", json={"type": "mp3"})
        return response.status, await response.json()

    manager, (status, body) = _run(scenario)

    assert status == 400
    assert body["success"] is False
    manager.add_to_queue.assert_not_awaited()


def test_invalid_input_maps_to_400():
    manager = _StubQueueManager()
    manager.add_to_queue.side_effect = InvalidInput("URL is not supported")

    async def scenario(client):
        response = await client.post("/api/youtube/download", json={"url": "https://example.com"})
        return response.status, await response.json()

    _, (status, body) = _run(scenario, manager)
    assert status == 400
    assert body == {"success": False, "message": "URL is not supported"}


def test_malformed_json_maps_to_400():
    async def scenario(client):
        response = await client.post(
            "/api/youtube/download",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        return response.status

    _, status = _run(scenario)
    assert status == 400


def test_cancel_missing_job_is_success():
    manager = _StubQueueManager()
    manager.cancel_download.return_value = None

    async def scenario(client):
        response = await client.post("/api/youtube/cancel/gone")
        return response.status, await response.json()

    _, (status, body) = _run(scenario, manager)
    assert status == 200
    assert body["success"] is True
    manager.cancel_download.assert_awaited_once_with("gone")


def test_pause_resume_all_report_counts():
    async def scenario(client):
        paused = await (await client.post("/api/youtube/pause-all")).json()
        resumed = await (await client.post("/api/youtube/resume-all")).json()
        return paused, resumed

    _, (paused, resumed) = _run(scenario)
    assert paused["data"] == {"count": 5}
    assert resumed["data"] == {"count": 5}


def test_delete_batch_conflict_returns_active_ids():
    manager = _StubQueueManager()
    manager.delete_downloads.side_effect = InvalidState("1 job(s) are still active", ["busy"])

    async def scenario(client):
        response = await client.delete("/api/youtube/delete-batch", json={"ids": ["done", "busy"]})
        return response.status, await response.json()

    _, (status, body) = _run(scenario, manager)
    assert status == 409
    assert body["success"] is False
    assert body["activeIds"] == ["busy"]


def test_delete_already_removed_job_is_success():
    manager = _StubQueueManager()
    manager.delete_download.return_value = False

    async def scenario(client):
        response = await client.delete("/api/youtube/delete/gone")
        return response.status, await response.json()

    _, (status, body) = _run(scenario, manager)
    assert status == 200
    assert body["data"] == {"id": "gone", "deleted": False}


def test_status_includes_playlist_items():
    manager = _StubQueueManager()
    items = [
        PlaylistItem(job_id="pl", position=0, url="u0", title="t0", status=JobStatus.COMPLETED, file_path="/a.mp3"),
        PlaylistItem(job_id="pl", position=1, url="u1", title="t1", status=JobStatus.FAILED),
    ]
    manager.get_download_status.return_value = (_job("pl", JobStatus.COMPLETED, JobType.PLAYLIST_MP3), items)

    async def scenario(client):
        response = await client.get("/api/youtube/status/pl")
        return await response.json()

    _, body = _run(scenario, manager)
    assert [item["position"] for item in body["data"]["items"]] == [0, 1]
    assert body["data"]["summary"] == {"totalItems": 2, "completedItems": 1, "failedItems": 1}


def test_status_of_unknown_job_is_404():
    manager = _StubQueueManager()
    manager.get_download_status.side_effect = NotFound("nope")

    async def scenario(client):
        response = await client.get("/api/youtube/status/nope")
        return response.status

    _, status = _run(scenario, manager)
    assert status == 404


def test_store_failure_is_generic_500():
    manager = _StubQueueManager()
    manager.get_queue_listing.side_effect = SystemFailure("Job store is unavailable")

    async def scenario(client):
        response = await client.get("/api/youtube/queue")
        return response.status, await response.json()

    _, (status, body) = _run(scenario, manager)
    assert status == 500
    assert body["message"] == "Server error; the request can be retried"


def test_queue_listing_and_summary():
    async def scenario(client):
        listing = await (await client.get("/api/youtube/queue")).json()
        summary = await (await client.get("/api/queue/status")).json()
        return listing, summary

    _, (listing, summary) = _run(scenario)
    assert [job["id"] for job in listing["data"]["pending"]] == ["job-1"]
    assert summary["data"]["total"] == 7
    assert summary["data"]["paused"] == 0


def test_socket_forwards_subscribed_job_events():
    broadcaster = ProgressBroadcaster()

    async def scenario(client):
        ws = await client.ws_connect("/api/socket")
        await ws.send_json({"action": "subscribe", "id": "job-1"})
        ack = await ws.receive_json(timeout=2)
        broadcaster.emit_status("job-1", JobStatus.PROCESSING, 42)
        event = await ws.receive_json(timeout=2)
        await ws.close()
        return ack, event

    _, (ack, event) = _run(scenario, broadcaster=broadcaster)
    assert ack == {"event": "subscribed", "data": {"id": "job-1"}}
    assert event["event"] == "download:status"
    assert event["data"]["id"] == "job-1"
    assert event["data"]["progress"] == 42


def test_health_reports_activity():
    async def scenario(client):
        response = await client.get("/health")
        return await response.json()

    _, body = _run(scenario)
    assert body == {"status": "ok", "activeDownloads": 1, "subscribers": 0}
