import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import RedisError

from conftest import OTHER_OWNER, OWNER, FakeClock, FakeRedis
from recordkeeper.api.schemas.progress import ProgressUpdate
from recordkeeper.core.exceptions import ProgressChannelForbidden, ProgressChannelNotFound
from recordkeeper.main import collect_finished_channels
from recordkeeper.services.progress_publisher import ProgressPublisher, compute_percentage
from recordkeeper.services.progress_snapshots import ProgressSnapshotStore
from recordkeeper.utils.sse import HEARTBEAT_FRAME, format_event, frame_updates


class BrokenRedis:
    def set(self, *args, **kwargs):
        raise RedisError("connection refused")

    def get(self, *args, **kwargs):
        raise RedisError("connection refused")

    def delete(self, *args, **kwargs):
        raise RedisError("connection refused")


def processing(processed: int, total: int = 10) -> ProgressUpdate:
    return ProgressUpdate(status="processing", processed=processed, total=total)


async def collect(publisher: ProgressPublisher, channel_id: str) -> list[ProgressUpdate]:
    return [update async for update in publisher.subscribe(channel_id)]


@pytest.mark.parametrize(
    "processed,total,expected",
    [(0, 0, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13), (10, 10, 100), (12, 10, 100)],
)
def test_compute_percentage(processed, total, expected):
    assert compute_percentage(processed, total) == expected


@pytest.mark.asyncio
async def test_late_subscriber_gets_replay_then_stops_on_completion():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)
    publisher.publish(channel_id, ProgressUpdate(status="started", total=10))
    publisher.publish(channel_id, processing(5))
    publisher.publish(channel_id, ProgressUpdate(status="completed", processed=10, total=10))

    updates = await collect(publisher, channel_id)

    assert [u.status for u in updates] == ["started", "processing", "completed"]
    assert [u.percentage for u in updates] == [0, 50, 100]


@pytest.mark.asyncio
async def test_every_subscriber_sees_the_same_sequence():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)
    first = asyncio.create_task(collect(publisher, channel_id))
    second = asyncio.create_task(collect(publisher, channel_id))
    await asyncio.sleep(0)

    for processed in (2, 4, 6):
        publisher.publish(channel_id, processing(processed))
        await asyncio.sleep(0)
    publisher.publish(channel_id, ProgressUpdate(status="error", processed=6, total=10, log="boom"))

    a, b = await asyncio.wait_for(asyncio.gather(first, second), timeout=1)
    assert [u.processed for u in a] == [2, 4, 6, 6]
    assert a == b
    assert a[-1].log == "boom"


def test_processed_never_goes_backwards():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)
    publisher.publish(channel_id, processing(5))
    stored = publisher.publish(channel_id, processing(3))

    assert stored.processed == 5
    assert stored.percentage == 50


def test_total_is_carried_forward():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)
    publisher.publish(channel_id, processing(2, total=8))
    stored = publisher.publish(channel_id, ProgressUpdate(status="processing", processed=4))

    assert stored.total == 8
    assert stored.percentage == 50


def test_updates_after_terminal_are_ignored():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)
    publisher.publish(channel_id, ProgressUpdate(status="completed", processed=1, total=1))
    publisher.publish(channel_id, processing(1, total=1))

    assert [u.status for u in publisher.updates(channel_id)] == ["completed"]


def test_estimates_use_observed_rate():
    clock = FakeClock()
    wall = datetime(2024, 1, 1, tzinfo=timezone.utc)
    publisher = ProgressPublisher(clock=clock, wall_clock=lambda: wall)
    channel_id = publisher.create_channel(OWNER)
    publisher.publish(channel_id, processing(0, total=100))

    clock.advance(10)
    stored = publisher.publish(channel_id, processing(20, total=100))

    assert stored.estimated_time_remaining == 40
    assert stored.estimated_completion_time == "2024-01-01T00:00:40.000Z"
    assert publisher.latest(channel_id) == stored


def test_no_estimate_without_progress():
    publisher = ProgressPublisher(clock=FakeClock())
    channel_id = publisher.create_channel(OWNER)
    stored = publisher.publish(channel_id, processing(0, total=100))

    assert stored.estimated_time_remaining is None
    assert stored.estimated_completion_time is None


@pytest.mark.asyncio
async def test_idle_channel_yields_heartbeats():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)
    stream = publisher.subscribe(channel_id, heartbeat_interval=0.01)

    assert await stream.__anext__() is None

    publisher.publish(channel_id, ProgressUpdate(status="completed", processed=1, total=1))
    final = await stream.__anext__()
    assert final.status == "completed"
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_sse_framing():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)
    publisher.publish(channel_id, ProgressUpdate(status="completed", processed=2, total=2, session_id="s-1"))

    async def updates():
        yield None
        async for update in publisher.subscribe(channel_id):
            yield update

    frames = [frame async for frame in frame_updates(updates())]

    assert frames[0] == HEARTBEAT_FRAME
    assert frames[1].startswith("data: ") and frames[1].endswith("\n\n")
    body = json.loads(frames[1][len("data: "):])
    assert body == {"status": "completed", "processed": 2, "total": 2, "percentage": 100, "sessionId": "s-1"}
    assert format_event({"a": 1}) == 'data: {"a": 1}\n\n'


@pytest.mark.asyncio
async def test_subscribing_to_unknown_channel_fails():
    publisher = ProgressPublisher()
    with pytest.raises(ProgressChannelNotFound):
        await publisher.subscribe("progress-missing").__anext__()


def test_authorize_checks_owner():
    publisher = ProgressPublisher()
    channel_id = publisher.create_channel(OWNER)

    publisher.authorize(channel_id, OWNER)
    with pytest.raises(ProgressChannelForbidden):
        publisher.authorize(channel_id, OTHER_OWNER)
    with pytest.raises(ProgressChannelNotFound):
        publisher.authorize("progress-missing", OWNER)


def test_cleanup_removes_only_finished_channels_after_grace():
    clock = FakeClock()
    publisher = ProgressPublisher(clock=clock)
    finished = publisher.create_channel(OWNER)
    running = publisher.create_channel(OWNER)
    publisher.publish(finished, ProgressUpdate(status="completed", processed=1, total=1))
    publisher.publish(running, processing(1))

    clock.advance(100)
    assert publisher.cleanup(300) == 0

    clock.advance(200)
    assert publisher.cleanup(300) == 1
    assert not publisher.has_channel(finished)
    assert publisher.has_channel(running)


def test_snapshots_are_mirrored_with_owner():
    redis = FakeRedis()
    snapshots = ProgressSnapshotStore(redis, ttl=timedelta(hours=1))
    publisher = ProgressPublisher(snapshot_store=snapshots)
    channel_id = publisher.create_channel(OWNER)

    publisher.publish(
        channel_id,
        ProgressUpdate(status="completed", processed=1, total=1, export_data={"version": "2.0"}),
    )

    snapshot = snapshots.fetch(channel_id)
    assert snapshot["ownerId"] == OWNER
    assert snapshot["status"] == "completed"
    assert "exportData" not in snapshot
    assert redis.expiry[f"progress:snapshot:{channel_id}"] == 3600

    snapshots.delete(channel_id)
    assert snapshots.fetch(channel_id) == {}


def test_unavailable_redis_does_not_break_publishing():
    publisher = ProgressPublisher(snapshot_store=ProgressSnapshotStore(BrokenRedis()))
    channel_id = publisher.create_channel(OWNER)

    stored = publisher.publish(channel_id, processing(1))

    assert stored.processed == 1
    assert publisher.snapshot_store.fetch(channel_id) == {}


class FlakyCleanupPublisher:
    def __init__(self):
        self.calls = 0

    def cleanup(self, grace_seconds):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("channel registry unavailable")
        return 0


@pytest.mark.asyncio
async def test_channel_collector_survives_a_failed_pass(settings):
    settings.progress_cleanup_interval_seconds = 0.01
    publisher = FlakyCleanupPublisher()

    collector = asyncio.create_task(collect_finished_channels(publisher, settings))
    await asyncio.sleep(0.1)
    collector.cancel()
    with pytest.raises(asyncio.CancelledError):
        await collector

    assert publisher.calls >= 2
