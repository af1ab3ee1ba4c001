"""Response payloads for the import endpoints."""

from datetime import datetime

from recordkeeper.api.schemas.base import CamelModel
from recordkeeper.api.schemas.errors import ErrorSummary, RepairSuggestion, ResumeInfo


class ImportResultResponse(CamelModel):
    imported: int
    skipped: int
    errors: list[str]


class ImportSessionStatus(CamelModel):
    session_id: str
    status: str
    total_records: int
    processed_records: int
    imported_records: int
    skipped_records: int
    failed_records: int
    last_processed_index: int
    can_resume: bool
    created_at: datetime
    updated_at: datetime
    error_summary: ErrorSummary
    repair_suggestions: list[RepairSuggestion]
    resume_info: ResumeInfo | None = None


class ResumeResponse(CamelModel):
    session_id: str
    resumed: bool
    requires_records: bool = False
    status: str | None = None
    resume_info: ResumeInfo
    result: ImportResultResponse | None = None
    progress_channel_id: str | None = None
    progress_url: str | None = None


class TagCount(CamelModel):
    tag: str
    count: int


class TagSuggestions(CamelModel):
    query: str
    suggestions: list[str]
