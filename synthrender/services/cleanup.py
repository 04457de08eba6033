"""Retention sweep for uploads, artifacts and orphaned files."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ..errors import ArtifactNotFound
from .artifacts import ArtifactStore, utcnow
from .events import emit_structured_event
from .jobs import RenderJobManager
from .sessions import UploadSessionManager


LOGGER = logging.getLogger(__name__)


@dataclass
class SweepReport:
    evicted_jobs: int = 0
    deleted_artifacts: int = 0
    deleted_uploads: int = 0
    reclaimed_orphans: int = 0
    expired_sessions: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    @property
    def changed(self) -> bool:
        return any(value for key, value in self.as_dict().items() if key != "errors")


class CleanupSweeper:
    """Delete expired working data and reclaim files nobody owns."""

    def __init__(
        self,
        manager: RenderJobManager,
        store: ArtifactStore,
        *,
        retention_seconds: float,
        interval_seconds: float,
        orphan_grace_seconds: float = 60.0,
        sessions: Optional[UploadSessionManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._manager = manager
        self._store = store
        self._sessions = sessions
        self._retention = timedelta(seconds=retention_seconds)
        self._interval = interval_seconds
        self._orphan_grace = orphan_grace_seconds
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one pass. Failures on single files are counted, never raised."""

        current = now or self._clock()
        cutoff = current - self._retention
        report = SweepReport()
        start = time.perf_counter()
        with self._sweep_lock:
            self._expire_jobs(cutoff, report)
            self._expire_uploads(cutoff, report)
            reclaimed, errors = self._store.reclaim_orphans(
                grace_seconds=self._orphan_grace,
                now=current.timestamp(),
            )
            report.reclaimed_orphans += reclaimed
            report.errors += errors
            if self._sessions is not None:
                expired, errors = self._sessions.expire(current)
                report.expired_sessions += expired
                report.errors += errors

        if report.changed or report.errors:
            emit_structured_event(
                "CLEANUP",
                "Retention sweep finished",
                payload=report.as_dict(),
                duration_ms=(time.perf_counter() - start) * 1000.0,
                level=logging.WARNING if report.errors else logging.INFO,
            )
        return report

    def _expire_jobs(self, cutoff: datetime, report: SweepReport) -> None:
        for job in self._manager.list():
            status = job.status()
            if not status.state.terminal or status.finished_at is None:
                continue
            if status.finished_at > cutoff:
                continue
            if status.artifact_path is not None:
                try:
                    self._store.fetch(job.id)
                except ArtifactNotFound:
                    pass
                else:
                    if not self._store.delete_artifact(job.id):
                        report.errors += 1
                        continue
                    report.deleted_artifacts += 1
            if self._manager.evict(job.id) is not None:
                report.evicted_jobs += 1

    def _expire_uploads(self, cutoff: datetime, report: SweepReport) -> None:
        for upload in self._store.uploads():
            if upload.created_at > cutoff:
                continue
            still_needed = False
            for job in self._manager.jobs_for_upload(upload.id):
                status = job.status()
                if not status.state.terminal or (status.finished_at and status.finished_at > cutoff):
                    still_needed = True
                    break
            if still_needed:
                continue
            if self._store.delete_upload(upload.id):
                report.deleted_uploads += 1
            else:
                report.errors += 1

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------
    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.sweep()
            except Exception:  # noqa: BLE001 - keep sweeping on the next tick
                LOGGER.exception("Retention sweep failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-sweeper", daemon=True)
        self._thread.start()
        LOGGER.debug("Retention sweeper started (interval=%ss)", self._interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout)


__all__ = ["CleanupSweeper", "SweepReport"]
