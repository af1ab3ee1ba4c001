"""Validate inbound import envelopes and normalize them to the current shape."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from recordkeeper.api.schemas.envelope import (
    SUPPORTED_VERSIONS,
    EnvelopeV1,
    EnvelopeV2,
    ImportRecord,
    NormalizationRules,
    RecordV1,
    RecordV2,
)


class PayloadValidationError(ValueError):
    """Structural rejection of an import payload, with field-level detail."""

    def __init__(self, issues: list[tuple[str, str]]):
        self.issues = issues
        super().__init__("; ".join(f"{path}: {message}" for path, message in issues))

    @property
    def field(self) -> str:
        return self.issues[0][0] if self.issues else "root"


@dataclass
class ValidatedPayload:
    version: str
    records: list[ImportRecord]
    normalization_rules: NormalizationRules | None = None


def _format_path(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc) if loc else "root"


def _issues_from(error: PydanticValidationError, prefix: tuple[Any, ...] = ()) -> list[tuple[str, str]]:
    issues = []
    for item in error.errors():
        message = item.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        issues.append((_format_path(prefix + tuple(item.get("loc", ()))), message))
    return issues


def _content_size_issues(records: list[ImportRecord], max_content_length: int | None) -> list[tuple[str, str]]:
    if not max_content_length:
        return []
    return [
        (
            f"records.{index}.content",
            f"Record content exceeds maximum length of {max_content_length} bytes",
        )
        for index, record in enumerate(records)
        if len(record.content.encode("utf-8")) > max_content_length
    ]


def validate_payload(payload: Any, *, max_content_length: int | None = None) -> ValidatedPayload:
    """Return the normalized record list for ``payload`` or raise PayloadValidationError.

    Legacy (1.0) records lack ``updatedAt``; it is back-filled from ``createdAt``.
    """
    if not isinstance(payload, dict):
        raise PayloadValidationError([("root", "Import payload must be a JSON object")])

    version = payload.get("version")
    if version is None:
        raise PayloadValidationError([("version", "Field required")])
    if version not in SUPPORTED_VERSIONS:
        raise PayloadValidationError(
            [("version", f"Unsupported version '{version}'; expected one of {', '.join(SUPPORTED_VERSIONS)}")]
        )

    try:
        if version == "1.0":
            envelope = EnvelopeV1.model_validate(payload)
        else:
            envelope = EnvelopeV2.model_validate(payload)
    except PydanticValidationError as exc:
        raise PayloadValidationError(_issues_from(exc)) from exc

    if isinstance(envelope, EnvelopeV1):
        records = [
            ImportRecord(content=r.content, created_at=r.created_at, updated_at=r.created_at)
            for r in envelope.records
        ]
        rules = envelope.metadata.normalization_rules if envelope.metadata else None
    else:
        records = [
            ImportRecord(content=r.content, created_at=r.created_at, updated_at=r.updated_at)
            for r in envelope.records
        ]
        rules = envelope.metadata.normalization_rules

    issues = _content_size_issues(records, max_content_length)
    if issues:
        raise PayloadValidationError(issues)

    return ValidatedPayload(version=version, records=records, normalization_rules=rules)


def validate_records(raw_records: Any, *, max_content_length: int | None = None) -> list[ImportRecord]:
    """Validate a bare record list (resume tails); ``updatedAt`` is optional per record."""
    if not isinstance(raw_records, list):
        raise PayloadValidationError([("records", "Input should be a valid list")])

    records: list[ImportRecord] = []
    issues: list[tuple[str, str]] = []
    for index, raw in enumerate(raw_records):
        schema = RecordV2 if isinstance(raw, dict) and "updatedAt" in raw else RecordV1
        try:
            parsed = schema.model_validate(raw)
        except PydanticValidationError as exc:
            issues.extend(_issues_from(exc, ("records", index)))
            continue
        records.append(
            ImportRecord(
                content=parsed.content,
                created_at=parsed.created_at,
                updated_at=getattr(parsed, "updated_at", parsed.created_at),
            )
        )
    if issues:
        raise PayloadValidationError(issues)

    issues = _content_size_issues(records, max_content_length)
    if issues:
        raise PayloadValidationError(issues)
    return records
