from recordkeeper.api.schemas.errors import ErrorLogEntry
from recordkeeper.services import error_messages
from recordkeeper.services.error_messages import ErrorCode
from recordkeeper.services.repair_advisor import generate_repair_suggestions


def _entry(code: ErrorCode, index: int = 0) -> ErrorLogEntry:
    return error_messages.generic(code.value, f"{code.value} at {index}", index)


def test_duplicate_message_truncates_content_and_uses_line_numbers():
    content = "word " * 20
    entry = error_messages.duplicate_record(content, 3)

    assert entry.error_code == "DUPLICATE_RECORD"
    assert entry.severity == "warning"
    assert entry.message == f"Record '{content[:50]}...' already exists (line 4)"


def test_invalid_date_message():
    entry = error_messages.invalid_date("31/12/2024", 0)
    assert entry.message == "Invalid date '31/12/2024' in record at line 1"
    assert entry.suggestion.example == "2024-01-15T10:30:00.000Z"


def test_empty_content_message():
    assert error_messages.empty_content(9).message == "Record at line 10 has no content"


def test_size_limit_message_suggests_file_count():
    entry = error_messages.too_many_records(120_000, 50_000)

    assert entry.message == "Import exceeds limit: 120,000 records (max: 50,000)"
    assert entry.suggestion.action == "Split into 3 files of max 50,000 records each"
    assert entry.record_index == -1


def test_connection_wording_is_reclassified():
    entry = error_messages.database_error("could not receive data: connection reset by peer", 5)

    assert entry.error_code == "CONNECTION_ERROR"
    assert entry.message == "Database temporarily unavailable, please retry"


def test_timeout_wording_is_reclassified():
    assert error_messages.database_error("statement Timeout expired").error_code == "CONNECTION_ERROR"


def test_database_error_scrubs_credentials_and_caps_length():
    entry = error_messages.database_error("bad host=db password=hunter2;user=app " + "x" * 400)

    assert entry.error_code == "DATABASE_ERROR"
    assert "hunter2" not in entry.message
    assert "password=***" in entry.message
    assert len(entry.message) <= len("Database error: ") + 200


def test_database_error_scrubs_url_passwords():
    entry = error_messages.database_error("failed for postgresql://app:s3cret@db/records")
    assert "s3cret" not in entry.message


def test_constraint_violation_is_interpreted():
    entry = error_messages.constraint_violation("UNIQUE constraint failed: records.tag_fingerprint", 1)
    assert entry.message == "Duplicate record found (line 2)"


def test_invalid_characters_is_a_warning():
    entry = error_messages.invalid_characters(2, "bad\x00content")
    assert entry.severity == "warning"
    assert entry.suggestion.type == "normalize_content"


def test_chunk_failure_message():
    entry = error_messages.chunk_failed(3, 1000, "server closed the connection")
    assert entry.message == "Chunk 3 failed and was rolled back: server closed the connection"
    assert entry.record_index == 1000


def test_one_suggestion_per_distinct_code():
    errors = [_entry(ErrorCode.DUPLICATE_RECORD, i) for i in range(5)]
    errors += [_entry(ErrorCode.INVALID_DATE_FORMAT, 7)]

    suggestions = generate_repair_suggestions(errors)

    assert [s.type for s in suggestions] == ["duplicate_update", "date_format"]
    assert suggestions[1].example == "2024-01-15T10:30:00.000Z"


def test_empty_content_suggestion_lists_first_ten_indices():
    errors = [error_messages.empty_content(i) for i in range(12)]

    (suggestion,) = generate_repair_suggestions(errors)

    assert suggestion.message == "Found 12 record(s) with empty content."
    assert suggestion.action == "Remove records at indices: 0, 1, 2, 3, 4, 5, 6, 7, 8, 9..."


def test_empty_content_suggestion_without_ellipsis():
    (suggestion,) = generate_repair_suggestions([error_messages.empty_content(4)])
    assert suggestion.action == "Remove records at indices: 4"


def test_storage_failures_share_a_single_retry_suggestion():
    errors = [
        _entry(ErrorCode.DATABASE_ERROR),
        _entry(ErrorCode.CONNECTION_ERROR),
        _entry(ErrorCode.CHUNK_FAILED),
    ]
    assert [s.type for s in generate_repair_suggestions(errors)] == ["retry"]


def test_size_limit_suggestion_mentions_maximum():
    (suggestion,) = generate_repair_suggestions([_entry(ErrorCode.TOO_MANY_RECORDS)], max_records=50_000)
    assert suggestion.type == "split_batch"
    assert "50,000" in suggestion.action


def test_no_errors_no_suggestions():
    assert generate_repair_suggestions([]) == []
