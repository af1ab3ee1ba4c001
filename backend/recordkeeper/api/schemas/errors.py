"""Error log entries and repair suggestions shared by sessions and responses."""

from typing import Literal

from recordkeeper.api.schemas.base import CamelModel

Severity = Literal["error", "warning", "info"]


class RepairSuggestion(CamelModel):
    type: str
    message: str
    action: str
    example: str | None = None


class ErrorLogEntry(CamelModel):
    error_code: str
    record_index: int
    message: str
    severity: Severity = "error"
    record_content: str | None = None
    timestamp: str | None = None
    suggestion: RepairSuggestion | None = None


class ErrorSummary(CamelModel):
    total_errors: int
    errors_by_type: dict[str, int]
    errors_by_severity: dict[str, int]
    affected_records: list[int]
    successful_records: int
    failed_records: int


class ResumeInfo(CamelModel):
    session_id: str
    last_processed_index: int
    remaining_records: int
    estimated_time: int


class ImportErrorResponse(CamelModel):
    success: bool = False
    session_id: str
    can_resume: bool
    error_summary: ErrorSummary
    errors: list[ErrorLogEntry]
    repair_suggestions: list[RepairSuggestion]
    resume_info: ResumeInfo | None = None
