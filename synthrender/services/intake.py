"""Validation and persistence of incoming media uploads."""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Optional

from ..errors import (
    ContentMismatch,
    EmptyUpload,
    StorageError,
    TooLarge,
    UnsupportedType,
    ValidationError,
)
from . import media_types
from .artifacts import ArtifactStore, Upload, utcnow
from .events import emit_file_event
from .naming import new_identifier


LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class UploadIntake:
    """Accept an upload stream and persist it under the uploads area."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        allowed_types: Iterable[str] = media_types.SUPPORTED_TYPES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        id_factory: Callable[[], str] = new_identifier,
    ) -> None:
        self._store = store
        self._allowed_types = frozenset(media_types.normalize_content_type(item) for item in allowed_types)
        self._chunk_size = chunk_size
        self._id_factory = id_factory

    def validate_content_type(self, declared_content_type: Optional[str]) -> str:
        content_type = media_types.normalize_content_type(declared_content_type)
        if content_type not in self._allowed_types:
            raise UnsupportedType(content_type or "unknown")
        return content_type

    def accept(
        self,
        stream: BinaryIO,
        declared_content_type: Optional[str],
        max_size: int,
        *,
        declared_size: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> Upload:
        """Persist *stream* and return the resulting :class:`Upload`.

        The declared size is checked before anything is read. While streaming,
        a chunk that would take the file past *max_size* aborts the upload
        before it is written. Any failure removes the partial file.
        """

        content_type = self.validate_content_type(declared_content_type)
        if declared_size is not None and declared_size > max_size:
            raise TooLarge(max_size, received=declared_size)

        upload_id = self._id_factory()
        extension = media_types.extension_for(content_type)
        target = self._store.reserve_upload(upload_id, extension)
        start = time.perf_counter()
        try:
            size_bytes, digest = self._write_stream(stream, target, content_type, max_size)
            upload = Upload(
                id=upload_id,
                original_filename=Path(filename or "").name,
                content_type=content_type,
                path=target,
                created_at=utcnow(),
                size_bytes=size_bytes,
                sha256=digest,
            )
            self._store.register_upload(upload)
        except ValidationError as error:
            self._store.discard_upload(upload_id)
            LOGGER.info("Rejected upload %s: %s", upload_id, error)
            raise
        except OSError as error:
            self._store.discard_upload(upload_id)
            LOGGER.error("Failed to persist upload %s: %s", upload_id, error)
            raise StorageError(f"Unable to store upload: {error}") from error
        except BaseException:
            self._store.discard_upload(upload_id)
            raise

        emit_file_event(
            "upload_accepted",
            payload={
                "upload_id": upload_id,
                "content_type": content_type,
                "size_bytes": upload.size_bytes,
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return upload

    def _write_stream(
        self,
        stream: BinaryIO,
        target: Path,
        content_type: str,
        max_size: int,
    ) -> tuple[int, str]:
        hasher = hashlib.sha256()
        written = 0
        header = b""
        with target.open("xb") as handle:
            while True:
                chunk = stream.read(self._chunk_size)
                if not chunk:
                    break
                if written + len(chunk) > max_size:
                    raise TooLarge(max_size, received=written + len(chunk))
                if len(header) < media_types.SIGNATURE_BYTES:
                    header += chunk[: media_types.SIGNATURE_BYTES - len(header)]
                    if len(header) >= media_types.SIGNATURE_BYTES and not media_types.matches_signature(
                        header, content_type
                    ):
                        raise ContentMismatch(content_type)
                handle.write(chunk)
                hasher.update(chunk)
                written += len(chunk)

        if written == 0:
            raise EmptyUpload()
        if len(header) < media_types.SIGNATURE_BYTES and not media_types.matches_signature(header, content_type):
            raise ContentMismatch(content_type)
        return written, hasher.hexdigest()


__all__ = ["DEFAULT_CHUNK_SIZE", "UploadIntake"]
