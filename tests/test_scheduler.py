from __future__ import annotations

import io
import threading
import time

import pytest

from synthrender.errors import SchedulerClosed
from synthrender.services.jobs import JobState

from conftest import MP4_BYTES, FakeEngine


def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


def _create(service) -> str:
    return service.create_job(io.BytesIO(MP4_BYTES), "video/mp4", "noir")


def test_running_jobs_never_exceed_limit(make_service) -> None:
    release = threading.Event()
    engine = FakeEngine("success", release=release)
    service = make_service(engine, max_concurrent_jobs=2)

    job_ids = [_create(service) for _ in range(3)]
    _wait_until(lambda: service.scheduler.running_count() == 2)
    time.sleep(0.05)

    states = [service.get_status(job_id).state for job_id in job_ids]
    assert states.count(JobState.RUNNING) == 2
    assert states[2] is JobState.QUEUED
    assert service.scheduler.queued_count() == 1

    release.set()
    for job_id in job_ids:
        assert service.wait_for(job_id, 2).state is JobState.SUCCEEDED
    assert engine.max_active == 2


def test_jobs_are_admitted_in_submission_order(make_service) -> None:
    release = threading.Event()
    engine = FakeEngine("success", release=release)
    service = make_service(engine, max_concurrent_jobs=1)

    job_ids = [_create(service) for _ in range(4)]
    release.set()
    for job_id in job_ids:
        service.wait_for(job_id, 2)

    started = [service.get_status(job_id).started_at for job_id in job_ids]
    assert started == sorted(started)
    assert engine.max_active == 1


def test_cancelled_queued_job_is_skipped(make_service) -> None:
    release = threading.Event()
    engine = FakeEngine("success", release=release)
    service = make_service(engine, max_concurrent_jobs=1)

    first = _create(service)
    second = _create(service)
    _wait_until(lambda: service.get_status(first).state is JobState.RUNNING)

    assert service.cancel_job(second).state is JobState.CANCELLED
    release.set()
    service.wait_for(first, 2)

    assert service.get_status(first).state is JobState.SUCCEEDED
    assert service.get_status(second).history == (JobState.QUEUED, JobState.CANCELLED)
    assert len(engine.launches) == 1


def test_shutdown_waits_for_jobs_within_grace(make_service) -> None:
    engine = FakeEngine("success", delay=0.1)
    service = make_service(engine, max_concurrent_jobs=1)
    job_ids = [_create(service) for _ in range(2)]

    service.shutdown(grace_seconds=5)

    assert [service.get_status(job_id).state for job_id in job_ids] == [JobState.SUCCEEDED] * 2


def test_shutdown_cancels_leftovers_after_grace(make_service) -> None:
    engine = FakeEngine("hang")
    service = make_service(engine, max_concurrent_jobs=1)
    running = _create(service)
    queued = _create(service)
    _wait_until(lambda: service.get_status(running).state is JobState.RUNNING)

    service.shutdown(grace_seconds=0.1)

    assert service.get_status(running).state is JobState.CANCELLED
    assert service.get_status(queued).state is JobState.CANCELLED
    assert engine.processes[0].terminated
    assert len(engine.launches) == 1


def test_admission_after_shutdown_is_refused(make_service) -> None:
    service = make_service(FakeEngine())
    service.shutdown(0)

    with pytest.raises(SchedulerClosed):
        _create(service)

    assert service.manager.list() == []
    assert service.store.uploads() == []
    assert list(service.store.uploads_dir.iterdir()) == []
