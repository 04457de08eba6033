"""Render job lifecycle: state machine, execution and cancellation.

Each job owns one lock. Every terminal transition goes through
:meth:`RenderJob._settle`, which only the first caller can win; engine exit,
timeout and cancellation all race for that single point, so the outcome is
decided exactly once.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from ..errors import ArtifactNotFound, EngineUnavailable, JobNotFound, StorageError
from ..processing.engine import EngineProcess, TranscodingEngine
from .artifacts import ArtifactStore, Upload, utcnow
from .events import emit_task_event
from .naming import new_identifier
from .synthemes import Syntheme, SynthemeRegistry


LOGGER = logging.getLogger(__name__)


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED, JobState.TIMED_OUT}
)

_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.FAILED, JobState.CANCELLED}),
    JobState.RUNNING: TERMINAL_STATES,
}


class ErrorKind(str, Enum):
    ENGINE_FAILURE = "engine_failure"
    EMPTY_OUTPUT = "empty_output"
    UPLOAD_MISSING = "upload_missing"
    ENGINE_UNAVAILABLE = "engine_unavailable"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


@dataclass(frozen=True)
class JobStatus:
    """Point-in-time view of a render job, safe to hand to callers."""

    id: str
    state: JobState
    syntheme: str
    upload_id: str
    created_at: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    timeout_seconds: float
    exit_code: Optional[int]
    rendered_seconds: float
    error_kind: Optional[str]
    error_detail: Optional[str]
    artifact_path: Optional[Path]
    history: Tuple[JobState, ...]
    media_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "state": self.state.value,
            "syntheme": self.syntheme,
            "upload_id": self.upload_id,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "timeout_seconds": self.timeout_seconds,
            "exit_code": self.exit_code,
            "rendered_seconds": round(self.rendered_seconds, 3),
            "media_seconds": self.media_seconds,
        }
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind
            payload["error_detail"] = self.error_detail
        return payload


@dataclass(eq=False)
class RenderJob:
    """One request to apply a syntheme to an uploaded asset."""

    upload: Upload
    syntheme: Syntheme
    timeout_seconds: float
    id: str = field(default_factory=new_identifier)
    created_at: datetime = field(default_factory=utcnow)
    state: JobState = JobState.QUEUED
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    rendered_seconds: float = 0.0
    media_seconds: Optional[float] = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    artifact_path: Optional[Path] = None
    history: List[JobState] = field(default_factory=lambda: [JobState.QUEUED])

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._process: Optional[EngineProcess] = None

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def status(self) -> JobStatus:
        with self._lock:
            return JobStatus(
                id=self.id,
                state=self.state,
                syntheme=self.syntheme.name,
                upload_id=self.upload.id,
                created_at=self.created_at,
                started_at=self.started_at,
                finished_at=self.finished_at,
                timeout_seconds=self.timeout_seconds,
                exit_code=self.exit_code,
                rendered_seconds=self.rendered_seconds,
                error_kind=self.error_kind,
                error_detail=self.error_detail,
                artifact_path=self.artifact_path,
                history=tuple(self.history),
                media_seconds=self.media_seconds,
            )

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job reaches a terminal state."""

        return self._done.wait(timeout)

    def is_terminal(self) -> bool:
        with self._lock:
            return self.state.terminal

    # Callers must hold ``self._lock`` for the helpers below.
    def _transition(self, state: JobState) -> bool:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            return False
        self.state = state
        self.history.append(state)
        return True

    def _mark_running(self, process: EngineProcess) -> bool:
        if not self._transition(JobState.RUNNING):
            return False
        self._process = process
        self.started_at = utcnow()
        return True

    def _settle(
        self,
        state: JobState,
        *,
        error_kind: Optional[ErrorKind] = None,
        error_detail: Optional[str] = None,
        exit_code: Optional[int] = None,
        artifact_path: Optional[Path] = None,
    ) -> bool:
        if not state.terminal or not self._transition(state):
            return False
        self.finished_at = utcnow()
        self.exit_code = exit_code
        self.artifact_path = artifact_path
        if error_kind is not None:
            self.error_kind = error_kind.value
            self.error_detail = error_detail
        self._done.set()
        return True

    def _record_progress(self, seconds: float) -> None:
        with self._lock:
            if not self.state.terminal and seconds > self.rendered_seconds:
                self.rendered_seconds = seconds


def _describe_exit(returncode: int, diagnostics: str) -> str:
    if diagnostics:
        return diagnostics
    return f"Engine exited with status {returncode}"


class RenderJobManager:
    """Create, execute and cancel render jobs."""

    def __init__(
        self,
        registry: SynthemeRegistry,
        store: ArtifactStore,
        engine: TranscodingEngine,
        *,
        default_timeout: float,
        retention_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._store = store
        self._engine = engine
        self._default_timeout = default_timeout
        self._retention = timedelta(seconds=retention_seconds)
        self._clock = clock
        self._jobs: Dict[str, RenderJob] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def submit(
        self,
        upload: Upload,
        syntheme_name: str,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> RenderJob:
        """Create a job in ``Queued``. Unknown synthemes create nothing."""

        syntheme = self._registry.get(syntheme_name)
        if self._store.get_upload(upload.id) is None:
            raise StorageError(f"Upload '{upload.id}' is not registered")
        if timeout_seconds is None:
            timeout_seconds = syntheme.timeout_seconds or self._default_timeout
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        job = RenderJob(upload=upload, syntheme=syntheme, timeout_seconds=float(timeout_seconds))
        with self._lock:
            self._jobs[job.id] = job
        emit_task_event(
            JobState.QUEUED.value,
            "Render job queued",
            job_id=job.id,
            payload={"syntheme": syntheme.name, "upload_id": upload.id},
        )
        return job

    def get(self, job_id: str) -> RenderJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list(self) -> List[RenderJob]:
        with self._lock:
            return list(self._jobs.values())

    def jobs_for_upload(self, upload_id: str) -> List[RenderJob]:
        with self._lock:
            return [job for job in self._jobs.values() if job.upload.id == upload_id]

    def find_rendered(self, sha256: str, syntheme_name: str) -> Optional[RenderJob]:
        """Return a succeeded job for the same source bytes and syntheme.

        Only jobs whose artifact is still registered and unexpired qualify.
        """

        now = self._clock()
        for job in self.list():
            if job.upload.sha256 != sha256 or job.syntheme.name != syntheme_name:
                continue
            if job.status().state is not JobState.SUCCEEDED:
                continue
            try:
                artifact = self._store.fetch(job.id)
            except ArtifactNotFound:
                continue
            if not artifact.is_expired(now) and artifact.path.is_file():
                return job
        return None

    def evict(self, job_id: str) -> Optional[RenderJob]:
        """Forget a terminal job. Live jobs are never evicted."""

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_terminal():
                return None
            del self._jobs[job_id]
        LOGGER.debug("Evicted render job %s", job_id)
        return job

    def cancel(self, job_id: str) -> RenderJob:
        """Cancel a queued or running job; terminal jobs are left untouched.

        For a running job the engine process is terminated and reaped before
        this method returns.
        """

        job = self.get(job_id)
        with job.lock:
            if job.state.terminal:
                return job
            previous = job.state
            process = job._process
            job._settle(JobState.CANCELLED, error_kind=ErrorKind.CANCELLED, error_detail="Cancelled on request")
        if process is not None:
            process.terminate()
        emit_task_event(
            JobState.CANCELLED.value,
            "Render job cancelled",
            job_id=job.id,
            payload={"previous_state": previous.value},
        )
        return job

    def execute(self, job: RenderJob) -> None:
        """Run an admitted job to a terminal state."""

        if job.is_terminal():
            LOGGER.debug("Skipping job %s; it settled before admission", job.id)
            return
        started = time.perf_counter()
        try:
            self._execute(job)
        except Exception as error:  # noqa: BLE001 - record unexpected failures on the job
            LOGGER.exception("Render job %s failed unexpectedly", job.id)
            with job.lock:
                process = job._process
                job._settle(JobState.FAILED, error_kind=ErrorKind.INTERNAL, error_detail=str(error) or "Internal error")
            if process is not None:
                process.terminate()
            self._store.release_output(job.id)
        status = job.status()
        emit_task_event(
            status.state.value,
            "Render job finished",
            job_id=job.id,
            payload={
                "syntheme": status.syntheme,
                "exit_code": status.exit_code,
                "error_kind": status.error_kind,
            },
            duration_ms=(time.perf_counter() - started) * 1000.0,
            level=logging.INFO if status.state is JobState.SUCCEEDED else logging.WARNING,
        )

    # ------------------------------------------------------------------
    # Execution internals
    # ------------------------------------------------------------------
    def _fail(self, job: RenderJob, kind: ErrorKind, detail: str, *, exit_code: Optional[int] = None) -> None:
        with job.lock:
            job._settle(JobState.FAILED, error_kind=kind, error_detail=detail, exit_code=exit_code)

    @staticmethod
    def _source_ready(path: Path) -> bool:
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    def _execute(self, job: RenderJob) -> None:
        upload = job.upload
        syntheme = job.syntheme
        if not self._source_ready(upload.path):
            self._fail(job, ErrorKind.UPLOAD_MISSING, f"Upload '{upload.id}' is missing or empty")
            return

        media_seconds = self._engine.media_duration(upload.path)
        output_path = self._store.reserve_output(job.id, syntheme.output_extension)
        arguments = syntheme.build_arguments(upload.path, output_path)

        with job.lock:
            job.media_seconds = media_seconds
            if job.state is not JobState.QUEUED:
                process = None
            else:
                try:
                    process = self._engine.launch(
                        upload.path,
                        output_path,
                        arguments,
                        progress_callback=job._record_progress,
                    )
                except EngineUnavailable as error:
                    job._settle(
                        JobState.FAILED,
                        error_kind=ErrorKind.ENGINE_UNAVAILABLE,
                        error_detail=str(error),
                    )
                    process = None
                else:
                    job._mark_running(process)
        if process is None:
            self._store.release_output(job.id)
            return

        emit_task_event(
            JobState.RUNNING.value,
            "Render job running",
            job_id=job.id,
            payload={"syntheme": syntheme.name, "timeout_s": job.timeout_seconds},
        )

        returncode = process.wait(job.timeout_seconds)
        if returncode is None:
            with job.lock:
                job._settle(
                    JobState.TIMED_OUT,
                    error_kind=ErrorKind.TIMED_OUT,
                    error_detail=f"Render exceeded {job.timeout_seconds:g}s",
                )
            process.terminate()
            self._store.release_output(job.id)
            return

        diagnostics = process.diagnostics
        succeeded = False
        with job.lock:
            if job.state.terminal:
                LOGGER.debug("Job %s settled as %s before the engine exit was observed", job.id, job.state.value)
            elif returncode != 0:
                job._settle(
                    JobState.FAILED,
                    error_kind=ErrorKind.ENGINE_FAILURE,
                    error_detail=_describe_exit(returncode, diagnostics),
                    exit_code=returncode,
                )
            elif not self._source_ready(output_path):
                job._settle(
                    JobState.FAILED,
                    error_kind=ErrorKind.EMPTY_OUTPUT,
                    error_detail=diagnostics or "Engine produced no output",
                    exit_code=returncode,
                )
            else:
                finished = self._clock()
                try:
                    self._store.register(
                        job.id,
                        output_path,
                        content_type=syntheme.output_content_type,
                        created_at=finished,
                        expires_at=finished + self._retention,
                    )
                except StorageError as error:
                    job._settle(
                        JobState.FAILED,
                        error_kind=ErrorKind.INTERNAL,
                        error_detail=str(error),
                        exit_code=returncode,
                    )
                else:
                    succeeded = job._settle(
                        JobState.SUCCEEDED,
                        exit_code=returncode,
                        artifact_path=output_path,
                    )
        if not succeeded:
            self._store.release_output(job.id)


__all__ = [
    "ErrorKind",
    "JobState",
    "JobStatus",
    "RenderJob",
    "RenderJobManager",
    "TERMINAL_STATES",
]
