"""Derive tag sets from record content."""

from __future__ import annotations

import hashlib
import unicodedata

ALLOWED_CONTROL_CHARACTERS = {"\t", "\n", "\r"}


def extract_tags(content: str) -> list[str]:
    """Split content on whitespace, dropping empty tokens."""
    return content.split()


def normalize_tags(tags: list[str]) -> list[str]:
    return [tag.casefold() for tag in tags]


def tag_fingerprint(normalized_tags: list[str]) -> str:
    """Order-insensitive key identifying a normalized tag set.

    A SHA-256 hex digest of the sorted, de-duplicated tags, so the unique index
    entry has a fixed size however long the content is.
    """
    canonical = " ".join(sorted(set(normalized_tags)))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def has_invalid_characters(content: str) -> bool:
    """True when content carries NUL or other control characters."""
    return any(
        unicodedata.category(char) == "Cc" and char not in ALLOWED_CONTROL_CHARACTERS
        for char in content
    )
