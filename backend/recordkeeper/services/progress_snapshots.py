"""Mirror the latest progress snapshot of each channel to Redis."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

from recordkeeper.api.schemas.progress import ProgressUpdate
from recordkeeper.core.config import Settings, get_settings
from recordkeeper.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "progress:snapshot:"


def _key(channel_id: str) -> str:
    return f"{SNAPSHOT_PREFIX}{channel_id}"


class ProgressSnapshotStore:
    """Latest-snapshot cache so pollers on other processes can read progress."""

    def __init__(self, client: Redis, *, ttl: timedelta = timedelta(hours=24)):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ProgressSnapshotStore":
        settings = settings or get_settings()
        client = create_redis_client(
            settings.redis_url, decode_responses=True, socket_connect_timeout=2
        )
        return cls(client, ttl=timedelta(hours=settings.progress_snapshot_ttl_hours))

    def save(self, channel_id: str, update: ProgressUpdate, *, owner_id: str | None = None) -> None:
        payload = update.to_wire()
        if owner_id is not None:
            payload["ownerId"] = owner_id
        # The export envelope can be large; the snapshot only needs the counters.
        payload.pop("exportData", None)
        try:
            self.client.set(_key(channel_id), json.dumps(payload), ex=int(self.ttl.total_seconds()))
        except RedisError as e:
            # Redis availability should not break imports.
            logger.warning(f"Could not store progress snapshot for {channel_id}: {e}")

    def fetch(self, channel_id: str) -> dict[str, Any]:
        try:
            raw = self.client.get(_key(channel_id))
        except RedisError as e:
            logger.warning(f"Could not read progress snapshot for {channel_id}: {e}")
            return {}
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {}

    def delete(self, channel_id: str) -> None:
        try:
            self.client.delete(_key(channel_id))
        except RedisError as e:
            logger.warning(f"Could not delete progress snapshot for {channel_id}: {e}")
