"""Process-wide progress publisher."""

from functools import lru_cache

from recordkeeper.core.config import get_settings
from recordkeeper.services.progress_publisher import ProgressPublisher
from recordkeeper.services.progress_snapshots import ProgressSnapshotStore


@lru_cache
def get_publisher() -> ProgressPublisher:
    """One publisher per process; channels live in memory, snapshots in Redis."""
    return ProgressPublisher(snapshot_store=ProgressSnapshotStore.from_settings(get_settings()))
