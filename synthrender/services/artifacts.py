"""Bookkeeping for uploaded sources and rendered artifacts on disk."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..errors import ArtifactNotFound, StorageError
from .events import emit_file_event
from .naming import build_storage_name


LOGGER = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Upload:
    """A validated source asset persisted under the uploads area."""

    id: str
    original_filename: str
    content_type: str
    path: Path
    created_at: datetime
    size_bytes: int
    sha256: str


@dataclass(frozen=True)
class Artifact:
    """The finished output of a successful render job."""

    job_id: str
    path: Path
    size_bytes: int
    content_type: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ArtifactStore:
    """Thread-safe registry of upload and artifact files.

    Every identifier maps to exactly one path derived from the identifier
    itself. Paths are reserved before the file is created so the orphan sweep
    never mistakes an in-flight write for a leaked file.
    """

    def __init__(self, uploads_dir: Path, outputs_dir: Path) -> None:
        self._uploads_dir = uploads_dir
        self._outputs_dir = outputs_dir
        self._lock = threading.RLock()
        self._uploads: Dict[str, Upload] = {}
        self._upload_reservations: Dict[str, Path] = {}
        self._artifacts: Dict[str, Artifact] = {}
        self._output_reservations: Dict[str, Path] = {}

    @property
    def uploads_dir(self) -> Path:
        return self._uploads_dir

    @property
    def outputs_dir(self) -> Path:
        return self._outputs_dir

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    def reserve_upload(self, upload_id: str, extension: str) -> Path:
        path = self._uploads_dir / build_storage_name(upload_id, extension)
        with self._lock:
            if upload_id in self._uploads or upload_id in self._upload_reservations:
                raise StorageError(f"Upload identifier '{upload_id}' is already in use")
            self._upload_reservations[upload_id] = path
        return path

    def register_upload(self, upload: Upload) -> Upload:
        with self._lock:
            reserved = self._upload_reservations.pop(upload.id, None)
            if reserved is None or reserved != upload.path:
                raise StorageError(f"Upload '{upload.id}' was not reserved at {upload.path}")
            self._uploads[upload.id] = upload
        emit_file_event(
            "upload_registered",
            payload={"upload_id": upload.id, "size_bytes": upload.size_bytes, "path": upload.path},
        )
        return upload

    def discard_upload(self, upload_id: str) -> None:
        """Drop a reservation and remove whatever partial file it produced."""

        with self._lock:
            path = self._upload_reservations.pop(upload_id, None)
            if path is None:
                return
            try:
                path.unlink(missing_ok=True)
            except OSError as error:
                LOGGER.warning("Could not remove partial upload %s: %s", path, error)
                return
        emit_file_event("upload_discarded", payload={"upload_id": upload_id, "path": path})

    def get_upload(self, upload_id: str) -> Optional[Upload]:
        with self._lock:
            return self._uploads.get(upload_id)

    def uploads(self) -> List[Upload]:
        with self._lock:
            return list(self._uploads.values())

    def delete_upload(self, upload_id: str) -> bool:
        """Delete the upload record and file. Returns ``True`` when it was removed."""

        with self._lock:
            upload = self._uploads.pop(upload_id, None)
            if upload is None:
                return False
            if not self._unlink(upload.path):
                self._uploads[upload_id] = upload
                return False
        emit_file_event("upload_deleted", payload={"upload_id": upload_id, "path": upload.path})
        return True

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------
    def reserve_output(self, job_id: str, extension: str) -> Path:
        path = self._outputs_dir / build_storage_name(job_id, extension)
        with self._lock:
            if job_id in self._artifacts or job_id in self._output_reservations:
                raise StorageError(f"Output for job '{job_id}' is already reserved")
            self._output_reservations[job_id] = path
        return path

    def register(
        self,
        job_id: str,
        path: Path,
        *,
        content_type: str,
        expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> Artifact:
        """Record the finished output of *job_id*."""

        with self._lock:
            reserved = self._output_reservations.get(job_id)
            if reserved is None or reserved != path:
                raise StorageError(f"Output path {path} was not reserved for job '{job_id}'")
            try:
                size_bytes = path.stat().st_size
            except OSError as error:
                raise StorageError(f"Rendered output {path} is not readable: {error}") from error
            artifact = Artifact(
                job_id=job_id,
                path=path,
                size_bytes=size_bytes,
                content_type=content_type,
                created_at=created_at or utcnow(),
                expires_at=expires_at,
            )
            del self._output_reservations[job_id]
            self._artifacts[job_id] = artifact
        emit_file_event(
            "artifact_registered",
            payload={"job_id": job_id, "size_bytes": size_bytes, "path": path},
        )
        return artifact

    def release_output(self, job_id: str) -> None:
        """Drop an output reservation and delete any partial render."""

        with self._lock:
            path = self._output_reservations.pop(job_id, None)
            if path is None:
                return
            try:
                path.unlink(missing_ok=True)
            except OSError as error:
                LOGGER.warning("Could not remove partial output %s: %s", path, error)

    def fetch(self, job_id: str) -> Artifact:
        with self._lock:
            artifact = self._artifacts.get(job_id)
        if artifact is None:
            raise ArtifactNotFound(job_id)
        return artifact

    def artifacts(self) -> List[Artifact]:
        with self._lock:
            return list(self._artifacts.values())

    def delete_artifact(self, job_id: str) -> bool:
        with self._lock:
            artifact = self._artifacts.pop(job_id, None)
            if artifact is None:
                return False
            if not self._unlink(artifact.path):
                self._artifacts[job_id] = artifact
                return False
        emit_file_event("artifact_deleted", payload={"job_id": job_id, "path": artifact.path})
        return True

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------
    def _known_stems(self) -> Tuple[Set[str], Set[str]]:
        uploads = set(self._uploads) | set(self._upload_reservations)
        outputs = set(self._artifacts) | set(self._output_reservations)
        return uploads, outputs

    def reclaim_orphans(self, *, grace_seconds: float, now: Optional[float] = None) -> Tuple[int, int]:
        """Delete files with no matching record. Returns ``(deleted, errors)``."""

        current = time.time() if now is None else now
        deleted = 0
        errors = 0
        with self._lock:
            upload_ids, output_ids = self._known_stems()
            for directory, known in ((self._uploads_dir, upload_ids), (self._outputs_dir, output_ids)):
                for candidate in self._iter_files(directory):
                    if candidate.name.split(".", 1)[0] in known:
                        continue
                    try:
                        age = current - candidate.stat().st_mtime
                    except FileNotFoundError:
                        continue
                    except OSError as error:
                        errors += 1
                        LOGGER.warning("Could not inspect %s during orphan sweep: %s", candidate, error)
                        continue
                    if age < grace_seconds:
                        continue
                    if self._unlink(candidate):
                        deleted += 1
                        emit_file_event("orphan_reclaimed", payload={"path": candidate, "age_s": round(age, 1)})
                    else:
                        errors += 1
        return deleted, errors

    @staticmethod
    def _iter_files(directory: Path) -> Iterable[Path]:
        try:
            entries = list(directory.iterdir())
        except FileNotFoundError:
            return []
        except OSError as error:
            LOGGER.warning("Could not list %s during orphan sweep: %s", directory, error)
            return []
        return [entry for entry in entries if entry.is_file() and not entry.name.startswith(".")]

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            LOGGER.debug("File %s was already gone", path)
            return True
        except OSError as error:
            LOGGER.warning("Could not delete %s: %s", path, error)
            return False
        return True


__all__ = ["Artifact", "ArtifactStore", "Upload", "utcnow"]
