"""Progress snapshots delivered over SSE and the latest-snapshot endpoint."""

from typing import Any, Literal

from recordkeeper.api.schemas.base import CamelModel

ProgressStatus = Literal["started", "processing", "completed", "error"]
TERMINAL_PROGRESS_STATUSES = frozenset({"completed", "error"})


class ProgressUpdate(CamelModel):
    status: ProgressStatus
    processed: int = 0
    total: int = 0
    percentage: int = 0
    current_operation: str | None = None
    log: str | None = None
    estimated_time_remaining: int | None = None
    estimated_completion_time: str | None = None
    imported: int | None = None
    skipped: int | None = None
    errors: int | None = None
    session_id: str | None = None
    # Terminal export events carry the assembled envelope.
    export_data: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PROGRESS_STATUSES


class ProgressAccepted(CamelModel):
    session_id: str | None = None
    progress_channel_id: str
    progress_url: str
