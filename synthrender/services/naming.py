"""Utility helpers for consistent identifiers and storage names."""

from __future__ import annotations

import re
import uuid

__all__ = [
    "IDENTIFIER_PATTERN",
    "build_storage_name",
    "is_identifier",
    "new_identifier",
    "slugify",
]


IDENTIFIER_PATTERN = re.compile(r"^[a-f0-9]{32}$")


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def new_identifier() -> str:
    """Return a fresh identifier used for uploads and jobs."""

    return uuid.uuid4().hex


def is_identifier(value: str) -> bool:
    return bool(IDENTIFIER_PATTERN.match(value))


def build_storage_name(identifier: str, extension: str = "") -> str:
    """Return the on-disk file name for *identifier*.

    Names never include user supplied text; only generated identifiers and a
    known extension are used.
    """

    if not is_identifier(identifier):
        raise ValueError(f"Refusing to build a storage name from '{identifier}'")
    suffix = ""
    if extension:
        suffix = extension if extension.startswith(".") else f".{extension}"
        suffix = suffix.lower()
    return identifier + suffix
