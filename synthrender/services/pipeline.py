"""High level facade wiring intake, jobs, scheduling and cleanup together."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, BinaryIO, Callable, Dict, Optional, Tuple

from ..config import AppConfig
from ..errors import ArtifactNotFound, ArtifactNotReady, SchedulerClosed, UnsupportedType
from ..processing.engine import FFmpegEngine, TranscodingEngine
from .artifacts import Artifact, ArtifactStore, Upload, utcnow
from .cleanup import CleanupSweeper, SweepReport
from .intake import UploadIntake
from .jobs import JobState, JobStatus, RenderJobManager
from .scheduler import JobScheduler
from .sessions import UploadSession, UploadSessionManager
from .synthemes import Syntheme, SynthemeRegistry


LOGGER = logging.getLogger(__name__)


class RenderService:
    """Entry point used by the web adapter and the command line."""

    def __init__(
        self,
        config: AppConfig,
        *,
        engine: Optional[TranscodingEngine] = None,
        registry: Optional[SynthemeRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._engine = engine or FFmpegEngine(config.ffmpeg_binary, ffprobe_binary=config.ffffprobe_binary)
        self._registry = registry or SynthemeRegistry.load(config.synthemes_dir)
        self._store = ArtifactStore(config.uploads_dir, config.outputs_dir)
        self._intake = UploadIntake(self._store)
        self._sessions = UploadSessionManager(
            self._intake,
            config.sessions_dir,
            max_upload_bytes=config.max_upload_bytes,
            max_chunk_bytes=config.max_chunk_bytes,
            ttl_seconds=config.upload_session_ttl_seconds,
            clock=clock,
        )
        self._manager = RenderJobManager(
            self._registry,
            self._store,
            self._engine,
            default_timeout=config.job_timeout_seconds,
            retention_seconds=config.retention_seconds,
            clock=clock,
        )
        self._scheduler = JobScheduler(
            self._manager.execute,
            self._manager.cancel,
            max_concurrent=config.max_concurrent_jobs,
        )
        self._sweeper = CleanupSweeper(
            self._manager,
            self._store,
            retention_seconds=config.retention_seconds,
            interval_seconds=config.sweep_interval_seconds,
            orphan_grace_seconds=config.orphan_grace_seconds,
            sessions=self._sessions,
            clock=clock,
        )
        LOGGER.info(
            "Render service ready with %s syntheme(s) and %s worker slot(s)",
            len(self._registry),
            config.max_concurrent_jobs,
        )

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def registry(self) -> SynthemeRegistry:
        return self._registry

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def manager(self) -> RenderJobManager:
        return self._manager

    @property
    def scheduler(self) -> JobScheduler:
        return self._scheduler

    @property
    def engine(self) -> TranscodingEngine:
        return self._engine

    @property
    def sessions(self) -> UploadSessionManager:
        return self._sessions

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, *, sweep: bool = True) -> None:
        self._scheduler.start()
        if sweep:
            self._sweeper.start()

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        grace = self._config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        LOGGER.info("Shutting down render service (grace=%ss)", grace)
        self._sweeper.stop()
        self._scheduler.shutdown(grace)

    # ------------------------------------------------------------------
    # Inbound operations
    # ------------------------------------------------------------------
    def create_job(
        self,
        stream: BinaryIO,
        content_type: Optional[str],
        syntheme_name: str,
        *,
        filename: Optional[str] = None,
        declared_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Validate and persist *stream*, then queue a render job for it.

        The syntheme is resolved before any byte is read, so an unknown name
        never leaves an upload behind. Returns the new job identifier.
        """

        syntheme = self._registry.get(syntheme_name)
        normalized = self._intake.validate_content_type(content_type)
        if not syntheme.accepts_content_type(normalized):
            raise UnsupportedType(normalized, syntheme=syntheme.name)

        upload = self._intake.accept(
            stream,
            normalized,
            self._config.max_upload_bytes,
            declared_size=declared_size,
            filename=filename,
        )
        return self._enqueue(upload, syntheme, timeout_seconds)

    def begin_upload(self, content_type: Optional[str], *, filename: Optional[str] = None) -> UploadSession:
        """Open a chunked upload session."""

        return self._sessions.begin(content_type, filename=filename)

    def append_upload_chunk(self, session_id: str, index: int, stream: BinaryIO) -> int:
        return self._sessions.append(session_id, index, stream)

    def complete_upload(
        self,
        session_id: str,
        syntheme_name: str,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Assemble a chunked upload and queue a render job for it.

        The syntheme is checked first; a rejected syntheme leaves the session
        open.
        """

        session = self._sessions.get(session_id)
        syntheme = self._registry.get(syntheme_name)
        if not syntheme.accepts_content_type(session.content_type):
            raise UnsupportedType(session.content_type, syntheme=syntheme.name)
        upload = self._sessions.complete(session_id)
        return self._enqueue(upload, syntheme, timeout_seconds)

    def discard_upload(self, session_id: str) -> None:
        self._sessions.get(session_id)
        self._sessions.discard(session_id)

    def _enqueue(self, upload: Upload, syntheme: Syntheme, timeout_seconds: Optional[float]) -> str:
        rendered = self._manager.find_rendered(upload.sha256, syntheme.name)
        if rendered is not None:
            LOGGER.info(
                "Upload %s matches the source of job %s; reusing its artifact",
                upload.id,
                rendered.id,
            )
            self._store.delete_upload(upload.id)
            return rendered.id

        try:
            job = self._manager.submit(upload, syntheme.name, timeout_seconds=timeout_seconds)
        except Exception:
            self._store.delete_upload(upload.id)
            raise

        try:
            self._scheduler.admit(job)
        except SchedulerClosed:
            self._manager.cancel(job.id)
            self._manager.evict(job.id)
            self._store.delete_upload(upload.id)
            raise
        return job.id

    def get_status(self, job_id: str) -> JobStatus:
        return self._manager.get(job_id).status()

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        """Block until *job_id* settles or *timeout* elapses."""

        job = self._manager.get(job_id)
        job.wait(timeout)
        return job.status()

    def get_artifact(self, job_id: str) -> Artifact:
        status = self.get_status(job_id)
        if status.state is not JobState.SUCCEEDED:
            raise ArtifactNotReady(job_id, status.state.value)
        return self._store.fetch(job_id)

    def open_artifact(self, job_id: str) -> Tuple[Artifact, BinaryIO]:
        artifact = self.get_artifact(job_id)
        try:
            handle = artifact.path.open("rb")
        except FileNotFoundError as error:
            raise ArtifactNotFound(job_id) from error
        return artifact, handle

    def list_synthemes(self) -> Tuple[str, ...]:
        return self._registry.list()

    def describe_syntheme(self, name: str) -> Syntheme:
        return self._registry.get(name)

    def cancel_job(self, job_id: str) -> JobStatus:
        return self._manager.cancel(job_id).status()

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return self._sweeper.sweep(now)

    def health(self) -> Dict[str, Any]:
        engine_available = getattr(self._engine, "available", None)
        return {
            "status": "closed" if self._scheduler.closed else "ok",
            "synthemes": len(self._registry),
            "running": self._scheduler.running_count(),
            "queued": self._scheduler.queued_count(),
            "max_concurrent": self._scheduler.max_concurrent,
            "engine_available": bool(engine_available()) if callable(engine_available) else True,
        }


__all__ = ["RenderService"]
