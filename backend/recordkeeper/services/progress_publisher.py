"""In-memory progress channels with replay, fan-out and terminal teardown."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from recordkeeper.api.schemas.progress import ProgressUpdate
from recordkeeper.core.exceptions import ProgressChannelForbidden, ProgressChannelNotFound
from recordkeeper.services.progress_snapshots import ProgressSnapshotStore
from recordkeeper.utils.timestamps import format_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ProgressChannel:
    channel_id: str
    owner_id: str
    created_at: float
    updates: list[ProgressUpdate] = field(default_factory=list)
    terminal_at: float | None = None
    last_processed: int = 0
    last_total: int = 0
    # processed count when the channel first saw progress; resumed jobs start above zero
    baseline: int | None = None
    waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.terminal_at is not None


def _wake(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


def compute_percentage(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, math.floor(processed / total * 100 + 0.5)))


class ProgressPublisher:
    """Broadcasts ordered ProgressUpdates per channel to any number of subscribers.

    Updates published before a subscriber attaches are buffered and replayed.
    Publishing is safe from worker threads; subscribers are woken on their own loop.
    """

    def __init__(
        self,
        *,
        snapshot_store: ProgressSnapshotStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ):
        self.snapshot_store = snapshot_store
        self._clock = clock
        self._wall_clock = wall_clock
        self._channels: dict[str, ProgressChannel] = {}
        self._lock = threading.Lock()

    def create_channel(self, owner_id: str, channel_id: str | None = None) -> str:
        channel_id = channel_id or f"progress-{uuid.uuid4().hex}"
        with self._lock:
            self._channels[channel_id] = ProgressChannel(
                channel_id=channel_id,
                owner_id=owner_id,
                created_at=self._clock(),
            )
        logger.debug(f"Created progress channel {channel_id}")
        return channel_id

    def has_channel(self, channel_id: str) -> bool:
        with self._lock:
            return channel_id in self._channels

    def authorize(self, channel_id: str, owner_id: str) -> None:
        with self._lock:
            channel = self._channels.get(channel_id)
        if channel is None:
            raise ProgressChannelNotFound(channel_id)
        if channel.owner_id != owner_id:
            raise ProgressChannelForbidden(channel_id)

    def publish(self, channel_id: str, update: ProgressUpdate) -> ProgressUpdate:
        """Enrich ``update`` and append it to the channel; returns the stored snapshot."""
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                raise ProgressChannelNotFound(channel_id)
            if channel.terminal:
                logger.warning(f"Ignoring update on terminal progress channel {channel_id}")
                return channel.updates[-1]
            enriched = self._enrich(channel, update)
            channel.updates.append(enriched)
            if enriched.is_terminal:
                channel.terminal_at = self._clock()
            waiters, channel.waiters = channel.waiters, []
            owner_id = channel.owner_id

        for loop, future in waiters:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_wake, future)

        if self.snapshot_store is not None:
            self.snapshot_store.save(channel_id, enriched, owner_id=owner_id)
        return enriched

    def _enrich(self, channel: ProgressChannel, update: ProgressUpdate) -> ProgressUpdate:
        total = update.total or channel.last_total
        processed = max(update.processed, channel.last_processed)
        if total:
            processed = min(processed, max(total, channel.last_processed))
        channel.last_total = total
        channel.last_processed = processed

        changes: dict = {
            "processed": processed,
            "total": total,
            "percentage": compute_percentage(processed, total),
        }
        if channel.baseline is None:
            channel.baseline = processed
        if 0 < processed < total:
            elapsed = self._clock() - channel.created_at
            done_here = processed - channel.baseline
            if elapsed > 0 and done_here > 0:
                rate = done_here / elapsed
                remaining = math.ceil((total - processed) / rate)
                changes["estimated_time_remaining"] = remaining
                changes["estimated_completion_time"] = format_timestamp(
                    self._wall_clock() + timedelta(seconds=remaining)
                )
        return update.model_copy(update=changes)

    def updates(self, channel_id: str) -> list[ProgressUpdate]:
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                raise ProgressChannelNotFound(channel_id)
            return list(channel.updates)

    def latest(self, channel_id: str) -> ProgressUpdate | None:
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                raise ProgressChannelNotFound(channel_id)
            return channel.updates[-1] if channel.updates else None

    async def subscribe(
        self,
        channel_id: str,
        *,
        heartbeat_interval: float | None = None,
    ) -> AsyncIterator[ProgressUpdate | None]:
        """Replay buffered updates, then stream live ones until a terminal status.

        With ``heartbeat_interval`` set, ``None`` is yielded whenever that many
        seconds pass without an update.
        """
        loop = asyncio.get_running_loop()
        position = 0
        while True:
            waiter: asyncio.Future | None = None
            with self._lock:
                channel = self._channels.get(channel_id)
                if channel is None:
                    if position == 0:
                        raise ProgressChannelNotFound(channel_id)
                    return
                pending = channel.updates[position:]
                position += len(pending)
                if not pending:
                    if channel.terminal:
                        return
                    waiter = loop.create_future()
                    channel.waiters.append((loop, waiter))

            for update in pending:
                yield update
                if update.is_terminal:
                    return

            if waiter is None:
                continue
            try:
                done, _ = await asyncio.wait({waiter}, timeout=heartbeat_interval)
            finally:
                self._discard_waiter(channel_id, waiter)
            if not done:
                yield None

    def _discard_waiter(self, channel_id: str, waiter: asyncio.Future) -> None:
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is not None:
                channel.waiters = [(l, f) for l, f in channel.waiters if f is not waiter]
        if not waiter.done():
            waiter.cancel()

    def remove(self, channel_id: str) -> None:
        with self._lock:
            self._channels.pop(channel_id, None)

    def cleanup(self, grace_seconds: float, *, now: float | None = None) -> int:
        """Drop terminal channels whose final update is older than ``grace_seconds``."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                channel_id
                for channel_id, channel in self._channels.items()
                if channel.terminal and now - channel.terminal_at >= grace_seconds
            ]
            for channel_id in expired:
                del self._channels[channel_id]
        if expired:
            logger.info(f"Removed {len(expired)} finished progress channels")
        return len(expired)
