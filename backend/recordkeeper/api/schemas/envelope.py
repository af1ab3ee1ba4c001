"""Versioned import/export envelope payloads."""

from typing import Literal

from pydantic import Field, field_validator

from recordkeeper.api.schemas.base import CamelModel
from recordkeeper.utils.timestamps import parse_timestamp

CURRENT_VERSION = "2.0"
LEGACY_VERSION = "1.0"
SUPPORTED_VERSIONS = (LEGACY_VERSION, CURRENT_VERSION)


def _check_timestamp(value: str) -> str:
    if parse_timestamp(value) is None:
        raise ValueError("Must be a valid ISO-8601 timestamp")
    return value


class NormalizationRules(CamelModel):
    case_sensitive: bool
    remove_accents: bool


DEFAULT_NORMALIZATION_RULES = NormalizationRules(case_sensitive=False, remove_accents=True)


class RecordV1(CamelModel):
    content: str = Field(..., min_length=1)
    created_at: str

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v:
            raise ValueError("Record content cannot be empty")
        return v

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: str) -> str:
        return _check_timestamp(v)


class RecordV2(RecordV1):
    updated_at: str

    @field_validator("updated_at")
    @classmethod
    def validate_updated_at(cls, v: str) -> str:
        return _check_timestamp(v)


class MetadataV1(CamelModel):
    exported_at: str | None = None
    record_count: int | None = Field(None, ge=0)
    normalization_rules: NormalizationRules | None = None

    @field_validator("exported_at")
    @classmethod
    def validate_exported_at(cls, v: str | None) -> str | None:
        return v if v is None else _check_timestamp(v)


class MetadataV2(CamelModel):
    exported_at: str
    record_count: int = Field(..., ge=0)
    normalization_rules: NormalizationRules

    @field_validator("exported_at")
    @classmethod
    def validate_exported_at(cls, v: str) -> str:
        return _check_timestamp(v)


class EnvelopeV1(CamelModel):
    version: Literal["1.0"]
    records: list[RecordV1]
    metadata: MetadataV1 | None = None


class EnvelopeV2(CamelModel):
    version: Literal["2.0"]
    records: list[RecordV2]
    metadata: MetadataV2


class ImportRecord(CamelModel):
    """One record in the current shape, as consumed by the import engine."""

    content: str
    created_at: str
    updated_at: str


class ExportRecord(CamelModel):
    content: str
    created_at: str
    updated_at: str


class ExportMetadata(CamelModel):
    exported_at: str
    record_count: int
    normalization_rules: NormalizationRules


class ExportEnvelope(CamelModel):
    version: str = CURRENT_VERSION
    records: list[ExportRecord]
    metadata: ExportMetadata
