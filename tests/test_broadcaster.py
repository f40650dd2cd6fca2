"""
Unit tests for event fan-out.
"""

import asyncio

from broadcaster import (
    COMPLETE_EVENT,
    ITEM_PROGRESS_EVENT,
    STATUS_EVENT,
    Event,
    ProgressBroadcaster,
)
from config import GLOBAL_CHANNEL
from models import JobStatus


def _drain(subscription):
    events = []
    while subscription.pending():
        events.append(subscription.queue.get_nowait())
    return events


def test_events_reach_job_and_global_subscribers_only():
    async def scenario():
        broadcaster = ProgressBroadcaster()
        job_sub = broadcaster.subscribe("job-1")
        other_sub = broadcaster.subscribe("job-2")
        global_sub = broadcaster.subscribe(GLOBAL_CHANNEL)

        delivered = broadcaster.emit_status("job-1", JobStatus.PROCESSING, 25)
        return delivered, _drain(job_sub), _drain(other_sub), _drain(global_sub)

    delivered, job_events, other_events, global_events = asyncio.run(scenario())

    assert delivered == 2
    assert other_events == []
    assert len(job_events) == len(global_events) == 1
    data = job_events[0].data
    assert job_events[0].name == STATUS_EVENT
    assert data["id"] == "job-1"
    assert data["status"] == "processing"
    assert data["progress"] == 25
    assert data["timestamp"]


def test_full_buffer_drops_oldest_event():
    async def scenario():
        broadcaster = ProgressBroadcaster(buffer_size=2)
        subscription = broadcaster.subscribe("job")
        for progress in (10, 20, 30):
            broadcaster.emit_status("job", JobStatus.PROCESSING, progress)
        return subscription.dropped, [event.data["progress"] for event in _drain(subscription)]

    dropped, progress = asyncio.run(scenario())
    assert dropped == 1
    assert progress == [20, 30]


def test_unsubscribed_consumer_receives_nothing():
    async def scenario():
        broadcaster = ProgressBroadcaster()
        subscription = broadcaster.subscribe("job")
        broadcaster.unsubscribe(subscription)
        broadcaster.emit_error("job", "boom")
        return broadcaster.subscriber_count, subscription.pending()

    assert asyncio.run(scenario()) == (0, 0)


def test_playlist_and_completion_payloads():
    async def scenario():
        broadcaster = ProgressBroadcaster()
        subscription = broadcaster.subscribe("pl")
        broadcaster.emit_item_progress("pl", 1, 3, "Track 2", 55)
        broadcaster.emit_complete("pl", {"filePath": "/media/a.mp3"})
        return _drain(subscription)

    item_event, complete_event = asyncio.run(scenario())
    assert item_event.name == ITEM_PROGRESS_EVENT
    assert item_event.data["itemIndex"] == 1
    assert item_event.data["totalItems"] == 3
    assert item_event.data["itemTitle"] == "Track 2"
    assert item_event.data["itemProgress"] == 55
    assert complete_event.name == COMPLETE_EVENT
    assert complete_event.data["fileData"] == {"filePath": "/media/a.mp3"}


def test_event_serializes_to_wire_shape():
    assert Event("download:error", {"id": "x"}).to_dict() == {"event": "download:error", "data": {"id": "x"}}
