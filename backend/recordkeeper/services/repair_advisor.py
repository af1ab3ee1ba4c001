"""Turn a session's error log into repair suggestions for the caller."""

from __future__ import annotations

from collections.abc import Iterable

from recordkeeper.api.schemas.errors import ErrorLogEntry, RepairSuggestion
from recordkeeper.services.error_messages import TIMESTAMP_EXAMPLE, ErrorCode

MAX_LISTED_INDICES = 10

_RETRYABLE = {
    ErrorCode.DATABASE_ERROR.value,
    ErrorCode.CONNECTION_ERROR.value,
    ErrorCode.CHUNK_FAILED.value,
}


def generate_repair_suggestions(
    errors: Iterable[ErrorLogEntry],
    *,
    max_records: int | None = None,
) -> list[RepairSuggestion]:
    """Emit at most one suggestion per distinct error code present in ``errors``."""
    errors = list(errors)
    codes = {entry.error_code for entry in errors}
    suggestions: list[RepairSuggestion] = []

    if ErrorCode.DUPLICATE_RECORD.value in codes:
        suggestions.append(
            RepairSuggestion(
                type="duplicate_update",
                message=(
                    "Some records already exist. Consider updating the existing records "
                    "instead of importing them again."
                ),
                action="Remove duplicate records from import file or use the update API",
            )
        )

    if ErrorCode.INVALID_DATE_FORMAT.value in codes:
        suggestions.append(
            RepairSuggestion(
                type="date_format",
                message="Invalid date format detected.",
                example=TIMESTAMP_EXAMPLE,
                action="Convert dates to ISO 8601 format (YYYY-MM-DDTHH:mm:ss.sssZ)",
            )
        )

    if ErrorCode.EMPTY_CONTENT.value in codes:
        indices = [e.record_index for e in errors if e.error_code == ErrorCode.EMPTY_CONTENT.value]
        listed = ", ".join(str(i) for i in indices[:MAX_LISTED_INDICES])
        ellipsis = "..." if len(indices) > MAX_LISTED_INDICES else ""
        suggestions.append(
            RepairSuggestion(
                type="remove_empty",
                message=f"Found {len(indices)} record(s) with empty content.",
                action=f"Remove records at indices: {listed}{ellipsis}",
            )
        )

    if ErrorCode.TOO_MANY_RECORDS.value in codes:
        action = "Split your import file into smaller batches"
        if max_records:
            action = f"{action} of at most {max_records:,} records"
        suggestions.append(
            RepairSuggestion(
                type="split_batch",
                message="Import file exceeds maximum size limit.",
                action=action,
            )
        )

    if ErrorCode.INVALID_CHARACTERS.value in codes:
        suggestions.append(
            RepairSuggestion(
                type="normalize_content",
                message="Special or invalid characters detected in record content.",
                action="Remove or escape special characters before importing",
            )
        )

    if codes & _RETRYABLE:
        suggestions.append(
            RepairSuggestion(
                type="retry",
                message="Temporary database connection issue detected.",
                action="Wait a few moments and retry the import using the resume feature",
            )
        )

    if ErrorCode.IMPORT_FAILED.value in codes:
        suggestions.append(
            RepairSuggestion(
                type="contact_support",
                message="The import stopped because of an unexpected error.",
                action="Resume the import; contact support if it fails again",
            )
        )

    return suggestions
