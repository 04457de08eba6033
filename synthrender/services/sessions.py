"""Resumable uploads assembled from numbered chunks.

A session stages each chunk as its own file under the sessions area. The
client may resend a chunk or fill gaps in any order; completion streams the
chunks in index order through :class:`UploadIntake`, so the assembled upload
gets the same size, type and signature checks as a single-shot upload.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple

from ..errors import EmptyUpload, IncompleteUpload, StorageError, TooLarge, UploadSessionNotFound
from .artifacts import Upload, utcnow
from .events import emit_file_event
from .intake import DEFAULT_CHUNK_SIZE, UploadIntake
from .naming import build_storage_name, is_identifier, new_identifier


LOGGER = logging.getLogger(__name__)


@dataclass
class UploadSession:
    id: str
    content_type: str
    filename: str
    directory: Path
    created_at: datetime
    updated_at: datetime
    chunks: Dict[int, int] = field(default_factory=dict)

    @property
    def received_bytes(self) -> int:
        return sum(self.chunks.values())

    def first_missing(self) -> Optional[int]:
        if not self.chunks:
            return None
        for index in range(max(self.chunks) + 1):
            if index not in self.chunks:
                return index
        return None

    def describe(self) -> Dict[str, object]:
        return {
            "upload_id": self.id,
            "content_type": self.content_type,
            "chunks": sorted(self.chunks),
            "received_bytes": self.received_bytes,
        }


class _ChunkReader:
    """Read a sequence of chunk files as one stream."""

    def __init__(self, paths: List[Path]) -> None:
        self._pending = list(paths)
        self._handle: Optional[BinaryIO] = None

    def read(self, size: int = -1) -> bytes:
        while self._handle is not None or self._pending:
            if self._handle is None:
                self._handle = self._pending.pop(0).open("rb")
            data = self._handle.read(size)
            if data:
                return data
            self._handle.close()
            self._handle = None
        return b""

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        self._pending.clear()


class UploadSessionManager:
    """Track open chunked uploads and turn completed ones into uploads."""

    def __init__(
        self,
        intake: UploadIntake,
        sessions_dir: Path,
        *,
        max_upload_bytes: int,
        max_chunk_bytes: int,
        ttl_seconds: float,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_identifier,
    ) -> None:
        self._intake = intake
        self._sessions_dir = sessions_dir
        self._max_upload_bytes = max_upload_bytes
        self._max_chunk_bytes = min(max_chunk_bytes, max_upload_bytes)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._sessions: Dict[str, UploadSession] = {}

    @property
    def max_chunk_bytes(self) -> int:
        return self._max_chunk_bytes

    def begin(self, content_type: Optional[str], *, filename: Optional[str] = None) -> UploadSession:
        normalized = self._intake.validate_content_type(content_type)
        session_id = self._id_factory()
        directory = self._sessions_dir / build_storage_name(session_id)
        try:
            directory.mkdir(parents=True)
        except OSError as error:
            raise StorageError(f"Unable to open upload session: {error}") from error
        now = self._clock()
        session = UploadSession(
            id=session_id,
            content_type=normalized,
            filename=Path(filename or "").name,
            directory=directory,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._sessions[session_id] = session
        emit_file_event("upload_session_opened", payload={"session_id": session_id, "content_type": normalized})
        return session

    def get(self, session_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UploadSessionNotFound(session_id)
        return session

    def append(self, session_id: str, index: int, stream: BinaryIO) -> int:
        """Stage chunk *index* of *session_id*; returns the bytes received.

        A resent index replaces the earlier copy. A chunk over the per-chunk
        ceiling, or one that would take the session past the upload ceiling,
        is rejected before it is kept.
        """

        if index < 0:
            raise ValueError("chunk index must not be negative")
        session = self.get(session_id)
        with self._lock:
            budget = self._max_upload_bytes - (session.received_bytes - session.chunks.get(index, 0))
        limit = min(self._max_chunk_bytes, budget)

        staging = session.directory / f".{index}.{self._id_factory()}"
        try:
            written = self._write_chunk(stream, staging, limit)
            with self._lock:
                if self._sessions.get(session_id) is not session:
                    raise UploadSessionNotFound(session_id)
                total = session.received_bytes - session.chunks.get(index, 0) + written
                if total > self._max_upload_bytes:
                    raise TooLarge(self._max_upload_bytes, received=total)
                staging.replace(session.directory / str(index))
                session.chunks[index] = written
                session.updated_at = self._clock()
        except OSError as error:
            staging.unlink(missing_ok=True)
            with self._lock:
                closed = self._sessions.get(session_id) is not session
            if closed:
                raise UploadSessionNotFound(session_id) from error
            raise StorageError(f"Unable to store chunk {index}: {error}") from error
        except BaseException:
            staging.unlink(missing_ok=True)
            raise
        return written

    def _write_chunk(self, stream: BinaryIO, target: Path, limit: int) -> int:
        written = 0
        with target.open("xb") as handle:
            while True:
                data = stream.read(DEFAULT_CHUNK_SIZE)
                if not data:
                    break
                if written + len(data) > limit:
                    if limit < self._max_chunk_bytes:
                        raise TooLarge(self._max_upload_bytes, received=written + len(data))
                    raise TooLarge(self._max_chunk_bytes, received=written + len(data))
                handle.write(data)
                written += len(data)
        return written

    def complete(self, session_id: str) -> Upload:
        """Assemble the chunks into an :class:`Upload` and close the session.

        A session with a gap is left open so the missing chunk can be sent.
        """

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise UploadSessionNotFound(session_id)
            if not session.chunks:
                raise EmptyUpload()
            missing = session.first_missing()
            if missing is not None:
                raise IncompleteUpload(session_id, missing)
            del self._sessions[session_id]

        paths = [session.directory / str(index) for index in sorted(session.chunks)]
        reader = _ChunkReader(paths)
        start = time.perf_counter()
        try:
            upload = self._intake.accept(
                reader,
                session.content_type,
                self._max_upload_bytes,
                declared_size=session.received_bytes,
                filename=session.filename,
            )
        finally:
            reader.close()
            self._remove_directory(session.directory)
        emit_file_event(
            "upload_session_completed",
            payload={"session_id": session_id, "upload_id": upload.id, "chunks": len(paths)},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return upload

    def discard(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        return self._remove_directory(session.directory)

    def open_sessions(self) -> List[UploadSession]:
        with self._lock:
            return list(self._sessions.values())

    def expire(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Drop sessions idle past the TTL and stale leftover directories.

        Returns ``(expired, errors)``.
        """

        current = now or self._clock()
        cutoff = current - self._ttl
        with self._lock:
            stale = [session for session in self._sessions.values() if session.updated_at <= cutoff]
            for session in stale:
                del self._sessions[session.id]
            known = set(self._sessions)

        expired = 0
        errors = 0
        for session in stale:
            if self._remove_directory(session.directory):
                expired += 1
                emit_file_event("upload_session_expired", payload={"session_id": session.id})
            else:
                errors += 1

        for directory in self._leftover_directories(known | {session.id for session in stale}):
            try:
                age = current.timestamp() - directory.stat().st_mtime
            except FileNotFoundError:
                continue
            except OSError as error:
                LOGGER.warning("Could not inspect %s during session sweep: %s", directory, error)
                errors += 1
                continue
            if age < self._ttl.total_seconds():
                continue
            if self._remove_directory(directory):
                expired += 1
            else:
                errors += 1
        return expired, errors

    def _leftover_directories(self, known: set) -> List[Path]:
        try:
            entries = list(self._sessions_dir.iterdir())
        except FileNotFoundError:
            return []
        except OSError as error:
            LOGGER.warning("Could not list %s during session sweep: %s", self._sessions_dir, error)
            return []
        return [
            entry
            for entry in entries
            if entry.is_dir() and is_identifier(entry.name) and entry.name not in known
        ]

    @staticmethod
    def _remove_directory(directory: Path) -> bool:
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return True
        except OSError as error:
            LOGGER.warning("Could not remove upload session directory %s: %s", directory, error)
            return False
        return True


__all__ = ["UploadSession", "UploadSessionManager"]
