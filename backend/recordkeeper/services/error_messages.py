"""Error taxonomy and human-readable message builders for import failures."""

from __future__ import annotations

import math
import re
from enum import Enum

from recordkeeper.api.schemas.errors import ErrorLogEntry, RepairSuggestion
from recordkeeper.utils.timestamps import format_timestamp, utcnow

TIMESTAMP_EXAMPLE = "2024-01-15T10:30:00.000Z"
CONTENT_PREVIEW_LENGTH = 50
MAX_DETAIL_LENGTH = 200

_SECRET_PATTERNS = (
    re.compile(r"password=[^;\s]*", re.IGNORECASE),
    re.compile(r"pwd=[^;\s]*", re.IGNORECASE),
)
_CREDENTIALS_IN_URL = re.compile(r"(://[^:/@\s]+):[^@\s]+@")


class ErrorCode(str, Enum):
    EMPTY_CONTENT = "EMPTY_CONTENT"
    DUPLICATE_RECORD = "DUPLICATE_RECORD"
    INVALID_DATE_FORMAT = "INVALID_DATE_FORMAT"
    TOO_MANY_RECORDS = "TOO_MANY_RECORDS"
    INVALID_CHARACTERS = "INVALID_CHARACTERS"
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    CHUNK_FAILED = "CHUNK_FAILED"
    IMPORT_FAILED = "IMPORT_FAILED"
    # Produced by the boundary builders only, never by the chunk engine.
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"


def truncate_content(content: str, max_length: int = CONTENT_PREVIEW_LENGTH) -> str:
    if len(content) <= max_length:
        return content
    return f"{content[:max_length]}..."


def sanitize_error_message(detail: str) -> str:
    """Strip credentials from driver errors and cap their length."""
    for pattern in _SECRET_PATTERNS:
        detail = pattern.sub(lambda m: m.group(0).split("=", 1)[0] + "=***", detail)
    detail = _CREDENTIALS_IN_URL.sub(r"\1:***@", detail)
    return detail[:MAX_DETAIL_LENGTH]


def _now() -> str:
    return format_timestamp(utcnow())


def duplicate_record(content: str, record_index: int) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.DUPLICATE_RECORD.value,
        record_index=record_index,
        record_content=content,
        message=f"Record '{truncate_content(content)}' already exists (line {record_index + 1})",
        severity="warning",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="duplicate_update",
            message="This record already exists. Update the existing record instead of importing it again.",
            action="Remove the record from the import file or update the existing record",
        ),
    )


def invalid_date(value: str, record_index: int, content: str | None = None) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.INVALID_DATE_FORMAT.value,
        record_index=record_index,
        record_content=content,
        message=f"Invalid date '{value}' in record at line {record_index + 1}",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="date_format",
            message="Date must be in ISO 8601 format",
            example=TIMESTAMP_EXAMPLE,
            action="Convert date to YYYY-MM-DDTHH:mm:ss.sssZ format",
        ),
    )


def empty_content(record_index: int) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.EMPTY_CONTENT.value,
        record_index=record_index,
        message=f"Record at line {record_index + 1} has no content",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="remove_empty",
            message="Records must contain at least one word",
            action=f"Remove empty record at line {record_index + 1}",
        ),
    )


def malformed_payload(details: str) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.MALFORMED_PAYLOAD.value,
        record_index=-1,
        message=f"Import payload could not be parsed: {sanitize_error_message(details)}",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="contact_support",
            message="The import file is not a valid import envelope",
            action="Validate the file with a JSON validator and check it against the export format",
            example='{"version":"2.0","records":[...],"metadata":{...}}',
        ),
    )


def too_many_records(actual: int, maximum: int) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.TOO_MANY_RECORDS.value,
        record_index=-1,
        message=f"Import exceeds limit: {actual:,} records (max: {maximum:,})",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="split_batch",
            message="The import file is too large",
            action=f"Split into {math.ceil(actual / maximum)} files of max {maximum:,} records each",
        ),
    )


def database_error(detail: str, record_index: int = -1) -> ErrorLogEntry:
    """Classify a storage failure; connection and timeout wording becomes CONNECTION_ERROR."""
    lowered = detail.lower()
    is_connection = "connection" in lowered or "timeout" in lowered
    if is_connection:
        return ErrorLogEntry(
            error_code=ErrorCode.CONNECTION_ERROR.value,
            record_index=record_index,
            message="Database temporarily unavailable, please retry",
            timestamp=_now(),
            suggestion=RepairSuggestion(
                type="retry",
                message="The database connection was temporarily lost",
                action="Wait a few moments and retry using the resume feature",
            ),
        )
    return ErrorLogEntry(
        error_code=ErrorCode.DATABASE_ERROR.value,
        record_index=record_index,
        message=f"Database error: {sanitize_error_message(detail)}",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="retry",
            message="An unexpected database error occurred",
            action="Contact support if this error persists",
        ),
    )


_CONSTRAINT_MESSAGES = (
    ("unique", "Duplicate record found"),
    ("foreign key", "Referenced record does not exist"),
    ("not null", "Required field is missing"),
    ("check", "Data validation failed"),
)


def constraint_violation(constraint: str, record_index: int, content: str | None = None) -> ErrorLogEntry:
    lowered = constraint.lower()
    friendly = next(
        (message for key, message in _CONSTRAINT_MESSAGES if key in lowered),
        "Database constraint violation",
    )
    return ErrorLogEntry(
        error_code=ErrorCode.CONSTRAINT_VIOLATION.value,
        record_index=record_index,
        record_content=content,
        message=f"{friendly} (line {record_index + 1})",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="duplicate_update",
            message="Database constraint prevents this operation",
            action="Verify data integrity and remove conflicting records",
        ),
    )


def invalid_characters(record_index: int, content: str) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.INVALID_CHARACTERS.value,
        record_index=record_index,
        record_content=truncate_content(content),
        message=f"Special characters detected in record at line {record_index + 1}",
        severity="warning",
        timestamp=_now(),
        suggestion=RepairSuggestion(
            type="normalize_content",
            message="Content contains control characters that cannot be stored",
            action="Remove or escape special characters",
        ),
    )


def chunk_failed(chunk_number: int, start_index: int, reason: str) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.CHUNK_FAILED.value,
        record_index=start_index,
        message=f"Chunk {chunk_number} failed and was rolled back: {sanitize_error_message(reason)}",
        timestamp=_now(),
    )


def import_failed(reason: str) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=ErrorCode.IMPORT_FAILED.value,
        record_index=-1,
        message=f"Import failed: {sanitize_error_message(reason)}",
        timestamp=_now(),
    )


def generic(
    error_code: str,
    message: str,
    record_index: int = -1,
    content: str | None = None,
    severity: str = "error",
) -> ErrorLogEntry:
    return ErrorLogEntry(
        error_code=error_code,
        record_index=record_index,
        record_content=content,
        message=message,
        severity=severity,
        timestamp=_now(),
    )
