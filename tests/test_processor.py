"""Tests for job execution, retries, timeouts and cancellation."""

import threading
import time
from datetime import datetime
from uuid import uuid4

import pytest
from pydantic import BaseModel

from datacollector.errors import ConfigurationError, RetryableFailure
from datacollector.jobs.base import BaseJobHandler
from datacollector.orchestrator import build_orchestrator
from datacollector.schemas.job import JobRecord, JobStatus, JobType
from datacollector.services.registry import ServiceRegistry


class TaskParams(BaseModel):
    value: int = 0


class ScriptedHandler(BaseJobHandler):
    """Handler whose logic is supplied by the test."""

    job_type = JobType.PROCESSING
    params_model = TaskParams

    def __init__(self, fn):
        self._fn = fn

    def run(self, params, context):
        return self._fn(params, context)


class StrictParams(BaseModel):
    query: str


class StrictHandler(ScriptedHandler):
    params_model = StrictParams


class FlakyError(Exception):
    retryable = True


def _register(orchestrator, job_type, fn, handler_class=ScriptedHandler):
    orchestrator.processor.register_handler(job_type, lambda: handler_class(fn))


def _wait_status(orchestrator, job_id, status, wait_for, timeout=10.0):
    return wait_for(
        lambda: (lambda job: job if job.status == status else None)(orchestrator.get(job_id)),
        timeout=timeout,
    )


def test_successful_job_completes(orchestrator, wait_for):
    def run(params, context):
        context.report_progress(50, "Halfway", stage="work")
        return {"value": params.value * 2}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {"value": 21})
    job = _wait_status(orchestrator, result.id, JobStatus.COMPLETED, wait_for)

    assert job.results == {"value": 42}
    assert job.progress == 100
    assert job.attempts == 1
    assert job.error is None
    assert orchestrator.processor.get_stats().success_count == 1


def test_retry_twice_then_success(orchestrator, wait_for):
    """Test that two retryable failures then success with max 3 attempts completes on attempt 3."""
    calls = []

    def run(params, context):
        calls.append(context.attempt)
        if len(calls) < 3:
            raise RetryableFailure("temporary outage")
        return {"ok": True}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    job = _wait_status(orchestrator, result.id, JobStatus.COMPLETED, wait_for)

    assert job.attempts == 3
    assert calls == [1, 2, 3]
    assert orchestrator.processor.get_stats().retry_count == 2


def test_always_retryable_exhausts_attempts(orchestrator, wait_for):
    """Test that an always-retryable failure with max 2 attempts ends FAILED after 2 attempts."""
    def run(params, context):
        raise FlakyError("flaky")

    _register(orchestrator, JobType.INDEXING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.INDEXING, {})
    job = _wait_status(orchestrator, result.id, JobStatus.FAILED, wait_for)

    assert job.attempts == 2
    assert job.error == "flaky"
    assert job.results is None


def test_unknown_exception_is_not_retried(orchestrator, wait_for):
    def run(params, context):
        raise KeyError("missing")

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    job = _wait_status(orchestrator, result.id, JobStatus.FAILED, wait_for)

    assert job.attempts == 1
    assert "missing" in job.error


def test_invalid_metadata_fails_without_retry(orchestrator, wait_for):
    _register(orchestrator, JobType.PROCESSING, lambda params, context: {}, handler_class=StrictHandler)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {"unexpected": 1})
    job = _wait_status(orchestrator, result.id, JobStatus.FAILED, wait_for)

    assert job.attempts == 1
    assert job.error.startswith("Invalid processing job")


def test_unregistered_type_fails(orchestrator, wait_for):
    orchestrator.start()

    result = orchestrator.submit(JobType.SEARCH, {"query": "graphene"})
    job = _wait_status(orchestrator, result.id, JobStatus.FAILED, wait_for)

    assert job.attempts == 1
    assert "No handler registered" in job.error


def test_concurrency_is_bounded(orchestrator, wait_for):
    """Test that no more than the configured number of jobs run at once."""
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def run(params, context):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.1)
        with lock:
            state["active"] -= 1
        return {}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    ids = [orchestrator.submit(JobType.PROCESSING, {}).id for _ in range(6)]
    for job_id in ids:
        _wait_status(orchestrator, job_id, JobStatus.COMPLETED, wait_for)

    assert state["peak"] <= orchestrator.settings.PROCESSING_CONCURRENCY
    assert orchestrator.processor.get_stats().total_processed == 6


def test_cancel_running_job(orchestrator, wait_for):
    started = threading.Event()

    def run(params, context):
        started.set()
        while True:
            context.check_cancelled()
            time.sleep(0.01)

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    assert started.wait(5)
    assert orchestrator.cancel(result.id) is True

    job = _wait_status(orchestrator, result.id, JobStatus.CANCELLED, wait_for)
    assert job.results is None
    assert job.error is None
    assert orchestrator.cancel(result.id) is False


def test_cancellation_wins_over_completion(orchestrator, wait_for):
    """Test that a result returned after a cancel request is discarded."""
    started = threading.Event()
    release = threading.Event()

    def run(params, context):
        started.set()
        release.wait(5)
        return {"late": True}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    assert started.wait(5)
    assert orchestrator.cancel(result.id) is True
    release.set()

    job = _wait_status(orchestrator, result.id, JobStatus.CANCELLED, wait_for)
    assert job.results is None


def test_timeout_records_stalled_failure(settings, session_factory, wait_for):
    settings = settings.model_copy(update={"JOB_TIMEOUT": 0.3})
    orchestrator = build_orchestrator(settings, session_factory=session_factory, services=ServiceRegistry())
    finished = threading.Event()

    def run(params, context):
        context.cancel_event.wait(5)
        finished.set()
        return {"late": True}

    _register(orchestrator, JobType.SEARCH, run)
    orchestrator.start()
    try:
        result = orchestrator.submit(JobType.SEARCH, {})
        job = _wait_status(orchestrator, result.id, JobStatus.FAILED, wait_for)

        assert "timeout" in job.error
        assert job.attempts == 1
        assert finished.wait(5)
        time.sleep(0.1)
        assert orchestrator.get(result.id).results is None
    finally:
        orchestrator.shutdown(grace_period=2)


def test_progress_stored_before_broadcast(orchestrator, wait_for):
    """Test that every broadcast progress value is already persisted."""
    observed = []

    def on_update(update):
        if update.status == JobStatus.RUNNING and update.progress:
            observed.append(orchestrator.get(update.job_id).progress >= update.progress)

    orchestrator.notifier.subscribe_all(on_update)

    def run(params, context):
        for percent in (10, 40, 80):
            context.report_progress(percent, f"At {percent}%")
        return {}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    _wait_status(orchestrator, result.id, JobStatus.COMPLETED, wait_for)

    assert observed == [True, True, True]


def test_initialize_is_reentrant(orchestrator):
    orchestrator.processor.initialize()
    threads = threading.active_count()

    orchestrator.processor.initialize()

    assert threading.active_count() == threads
    assert orchestrator.health().initialized is True


def test_register_unknown_type_rejected(orchestrator):
    with pytest.raises(ConfigurationError):
        orchestrator.processor.register_handler("translation", lambda: None)


def test_shutdown_requeues_interrupted_job(settings, session_factory, wait_for):
    """Test that an interrupted job on its only attempt is re-queued without using that attempt."""
    settings = settings.model_copy(update={"PROCESSING_MAX_ATTEMPTS": 1})
    orchestrator = build_orchestrator(settings, session_factory=session_factory, services=ServiceRegistry())
    started = threading.Event()
    calls = []

    def run(params, context):
        calls.append(context.attempt)
        if len(calls) == 1:
            started.set()
            context.cancel_event.wait(10)
            context.check_cancelled()
        return {"done": True}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()
    try:
        result = orchestrator.submit(JobType.PROCESSING, {})
        assert started.wait(5)
        orchestrator.shutdown(grace_period=0.2)

        job = _wait_status(orchestrator, result.id, JobStatus.PENDING, wait_for)
        assert "Interrupted" in job.message
        assert job.attempts == 0
        assert orchestrator.health().initialized is False

        orchestrator.start()
        job = _wait_status(orchestrator, result.id, JobStatus.COMPLETED, wait_for)
        assert job.attempts == 1
        assert job.results == {"done": True}
        assert calls == [1, 1]
    finally:
        orchestrator.shutdown(grace_period=2)


def test_reconcile_stale_running_jobs(orchestrator, store):
    retry = store.insert(JobRecord(type=JobType.PROCESSING))
    exhausted = store.insert(JobRecord(type=JobType.SEARCH))
    store.claim_next(JobType.PROCESSING, max_attempts=3)
    store.claim_next(JobType.SEARCH, max_attempts=1)

    recovered = orchestrator.processor.reconcile_stale(stale_after=-1)

    assert recovered == 2
    assert store.get(retry.id).status == JobStatus.PENDING
    failed = store.get(exhausted.id)
    assert failed.status == JobStatus.FAILED
    assert "stalled" in failed.error


def test_reconcile_ignores_fresh_jobs(orchestrator, store):
    store.insert(JobRecord(type=JobType.PROCESSING))
    store.claim_next(JobType.PROCESSING, max_attempts=3)

    assert orchestrator.processor.reconcile_stale(stale_after=3600) == 0


def test_result_encoded_to_json(orchestrator, wait_for):
    job_ref = uuid4()
    _register(
        orchestrator,
        JobType.PROCESSING,
        lambda params, context: {"when": datetime(2024, 1, 1), "ref": job_ref},
    )
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    job = _wait_status(orchestrator, result.id, JobStatus.COMPLETED, wait_for)

    assert job.results == {"when": "2024-01-01T00:00:00", "ref": str(job_ref)}


def test_unserializable_result_fails_job(orchestrator, wait_for):
    """Test that a result that cannot be stored fails the job instead of leaving it running."""
    _register(orchestrator, JobType.PROCESSING, lambda params, context: {"raw": object()})
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    job = _wait_status(orchestrator, result.id, JobStatus.FAILED, wait_for)

    assert job.attempts == 1
    assert "not JSON serializable" in job.error
    assert job.results is None


def test_watchdog_recovers_abandoned_job(settings, session_factory, store, wait_for):
    """Test that a job left RUNNING by another process is recovered while the processor runs."""
    settings = settings.model_copy(update={"STALE_JOB_THRESHOLD": 0.3})
    orchestrator = build_orchestrator(settings, session_factory=session_factory, services=ServiceRegistry())
    abandoned = store.insert(JobRecord(type=JobType.PROCESSING))
    store.claim_next(JobType.PROCESSING, max_attempts=3)

    _register(orchestrator, JobType.PROCESSING, lambda params, context: {"recovered": True})
    orchestrator.start()
    try:
        job = _wait_status(orchestrator, abandoned.id, JobStatus.COMPLETED, wait_for)
        assert job.attempts == 2
        assert job.results == {"recovered": True}
    finally:
        orchestrator.shutdown(grace_period=2)


def test_watchdog_keeps_own_slow_job(settings, session_factory, wait_for):
    """Test that a long job without progress writes is not taken for stale."""
    settings = settings.model_copy(update={"STALE_JOB_THRESHOLD": 0.3})
    orchestrator = build_orchestrator(settings, session_factory=session_factory, services=ServiceRegistry())
    calls = []

    def run(params, context):
        calls.append(context.attempt)
        time.sleep(1.0)
        return {}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()
    try:
        result = orchestrator.submit(JobType.PROCESSING, {})
        job = _wait_status(orchestrator, result.id, JobStatus.COMPLETED, wait_for)
        assert job.attempts == 1
        assert calls == [1]
    finally:
        orchestrator.shutdown(grace_period=2)


def test_reinitialize_counts_surviving_workers(orchestrator, wait_for):
    """Test that workers still busy after shutdown keep their slot in the pool."""
    before = set(threading.enumerate())
    started = threading.Event()
    release = threading.Event()

    def run(params, context):
        started.set()
        release.wait(10)
        return {}

    _register(orchestrator, JobType.PROCESSING, run)
    orchestrator.start()

    result = orchestrator.submit(JobType.PROCESSING, {})
    assert started.wait(5)
    orchestrator.shutdown(grace_period=0.1)
    orchestrator.processor.initialize()

    workers = [
        thread
        for thread in threading.enumerate()
        if thread not in before and thread.name.startswith("processing-worker-") and thread.is_alive()
    ]
    assert len(workers) <= orchestrator.settings.PROCESSING_CONCURRENCY

    release.set()
    _wait_status(orchestrator, result.id, JobStatus.COMPLETED, wait_for)
