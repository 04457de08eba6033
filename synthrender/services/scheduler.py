"""Concurrency gate that admits render jobs in submission order."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Set

from ..errors import SchedulerClosed
from .jobs import RenderJob


LOGGER = logging.getLogger(__name__)


class JobScheduler:
    """Run at most ``max_concurrent`` jobs at once; queue the rest FIFO.

    Worker threads pull from a shared deque, so admission order always
    matches submission order. A running job is never preempted.
    """

    def __init__(
        self,
        runner: Callable[[RenderJob], None],
        canceller: Callable[[str], object],
        *,
        max_concurrent: int,
        thread_name_prefix: str = "render-worker",
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._runner = runner
        self._canceller = canceller
        self._max_concurrent = max_concurrent
        self._thread_name_prefix = thread_name_prefix
        self._pending: Deque[RenderJob] = deque()
        self._active: Set[str] = set()
        self._condition = threading.Condition()
        self._workers: List[threading.Thread] = []
        self._closed = False
        self._stopping = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def start(self) -> None:
        with self._condition:
            if self._workers or self._closed:
                return
            for index in range(self._max_concurrent):
                worker = threading.Thread(
                    target=self._run,
                    name=f"{self._thread_name_prefix}-{index}",
                    daemon=True,
                )
                self._workers.append(worker)
                worker.start()
        LOGGER.debug("Started %s render worker(s)", self._max_concurrent)

    def admit(self, job: RenderJob) -> None:
        """Queue *job* for execution once a concurrency slot is free."""

        with self._condition:
            if self._closed:
                raise SchedulerClosed("The render scheduler is shutting down")
            self._pending.append(job)
            queued_ahead = len(self._pending) - 1
            self._condition.notify()
        if not self._workers:
            self.start()
        LOGGER.debug("Admitted job %s with %s job(s) ahead", job.id, queued_ahead)

    def running_count(self) -> int:
        with self._condition:
            return len(self._active)

    def queued_count(self) -> int:
        with self._condition:
            return sum(1 for job in self._pending if not job.is_terminal())

    def _next_job(self) -> Optional[RenderJob]:
        with self._condition:
            while True:
                while self._pending:
                    job = self._pending.popleft()
                    if job.is_terminal():
                        continue
                    self._active.add(job.id)
                    return job
                if self._stopping:
                    return None
                self._condition.wait()

    def _run(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                return
            try:
                self._runner(job)
            except Exception:  # noqa: BLE001 - a failing job must not kill the worker
                LOGGER.exception("Render worker failed while running job %s", job.id)
            finally:
                with self._condition:
                    self._active.discard(job.id)
                    self._condition.notify_all()

    def _drained(self) -> bool:
        return not self._active and not any(not job.is_terminal() for job in self._pending)

    def shutdown(self, grace_seconds: float = 30.0) -> None:
        """Stop admitting, wait up to *grace_seconds*, then cancel the remainder."""

        deadline = time.monotonic() + max(grace_seconds, 0.0)
        with self._condition:
            if self._stopping:
                return
            self._closed = True
            while not self._drained():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                # Queued jobs cancelled elsewhere do not notify; poll periodically.
                self._condition.wait(min(remaining, 0.1))
            leftovers = [job for job in self._pending if not job.is_terminal()]
            self._pending.clear()
            active_ids = list(self._active)

        if leftovers or active_ids:
            LOGGER.warning(
                "Shutdown grace elapsed; cancelling %s queued and %s running job(s)",
                len(leftovers),
                len(active_ids),
            )
        for job in leftovers:
            self._canceller(job.id)
        for job_id in active_ids:
            self._canceller(job_id)

        with self._condition:
            self._stopping = True
            self._condition.notify_all()
            workers = list(self._workers)
        for worker in workers:
            worker.join()
        LOGGER.info("Render scheduler stopped")


__all__ = ["JobScheduler"]
