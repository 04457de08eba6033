"""Media types accepted by the transcoding engine and their signatures."""

from __future__ import annotations

import fnmatch
from typing import Dict, Iterable, Tuple


VIDEO_TYPES: Tuple[str, ...] = (
    "video/mp4",
    "video/webm",
    "video/ogg",
    "video/quicktime",
    "video/x-matroska",
    "video/x-msvideo",
)

AUDIO_TYPES: Tuple[str, ...] = (
    "audio/mpeg",
    "audio/ogg",
    "audio/wav",
    "audio/flac",
    "audio/aac",
    "audio/webm",
)

IMAGE_TYPES: Tuple[str, ...] = (
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
)

SUPPORTED_TYPES: Tuple[str, ...] = VIDEO_TYPES + AUDIO_TYPES + IMAGE_TYPES

_EXTENSIONS: Dict[str, str] = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/ogg": ".ogv",
    "video/quicktime": ".mov",
    "video/x-matroska": ".mkv",
    "video/x-msvideo": ".avi",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "audio/flac": ".flac",
    "audio/aac": ".aac",
    "audio/webm": ".weba",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

# Number of leading bytes needed by ``matches_signature``.
SIGNATURE_BYTES = 12

_EBML = b"\x1a\x45\xdf\xa3"


def normalize_content_type(value: str | None) -> str:
    """Return the lower-cased base media type without parameters."""

    if not value:
        return ""
    return value.split(";", 1)[0].strip().lower()


def is_supported(content_type: str) -> bool:
    return normalize_content_type(content_type) in SUPPORTED_TYPES


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(normalize_content_type(content_type), ".bin")


def matches_any(content_type: str, patterns: Iterable[str]) -> bool:
    """Return ``True`` when *content_type* matches one of the glob *patterns*.

    An empty pattern list accepts everything.
    """

    normalized = normalize_content_type(content_type)
    patterns = tuple(patterns)
    if not patterns:
        return True
    return any(fnmatch.fnmatchcase(normalized, pattern.lower()) for pattern in patterns)


def matches_signature(header: bytes, content_type: str) -> bool:
    """Check the leading bytes of an upload against its declared type."""

    mime = normalize_content_type(content_type)
    if len(header) < 4:
        return False

    if mime in {"video/mp4", "video/quicktime"}:
        return len(header) >= 8 and header[4:8] == b"ftyp"
    if mime in {"video/webm", "video/x-matroska", "audio/webm"}:
        return header[:4] == _EBML
    if mime in {"video/ogg", "audio/ogg"}:
        return header[:4] == b"OggS"
    if mime == "video/x-msvideo":
        return len(header) >= 12 and header[:4] == b"RIFF" and header[8:12] == b"AVI "
    if mime == "audio/mpeg":
        return (header[0] == 0xFF and (header[1] & 0xE0) == 0xE0) or header[:3] == b"ID3"
    if mime == "audio/wav":
        return len(header) >= 12 and header[:4] == b"RIFF" and header[8:12] == b"WAVE"
    if mime == "audio/flac":
        return header[:4] == b"fLaC"
    if mime == "audio/aac":
        return header[0] == 0xFF and (header[1] & 0xF0) == 0xF0
    if mime == "image/png":
        return header[:4] == b"\x89PNG"
    if mime == "image/jpeg":
        return header[:3] == b"\xff\xd8\xff"
    if mime == "image/gif":
        return header[:6] in {b"GIF87a", b"GIF89a"}
    if mime == "image/webp":
        return len(header) >= 12 and header[:4] == b"RIFF" and header[8:12] == b"WEBP"
    return False


__all__ = [
    "AUDIO_TYPES",
    "IMAGE_TYPES",
    "SIGNATURE_BYTES",
    "SUPPORTED_TYPES",
    "VIDEO_TYPES",
    "extension_for",
    "is_supported",
    "matches_any",
    "matches_signature",
    "normalize_content_type",
]
