"""Pytest configuration and fixtures."""

import time

import pytest

from datacollector.config import Settings
from datacollector.database import create_db_engine, create_session_factory, init_db
from datacollector.job_queue import JobQueue
from datacollector.orchestrator import build_orchestrator
from datacollector.services.notifier import StatusNotifier
from datacollector.services.registry import ServiceRegistry
from datacollector.services.state_store import StateStore


@pytest.fixture(scope="function")
def settings(tmp_path):
    """Settings with short timings and a database file per test."""
    # File-based SQLite so worker threads share the database
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        COLLECTION_CONCURRENCY=2,
        PROCESSING_CONCURRENCY=2,
        INDEXING_CONCURRENCY=1,
        SEARCH_CONCURRENCY=1,
        COLLECTION_MAX_ATTEMPTS=3,
        PROCESSING_MAX_ATTEMPTS=3,
        INDEXING_MAX_ATTEMPTS=2,
        SEARCH_MAX_ATTEMPTS=1,
        JOB_BACKOFF_DELAY=0.01,
        JOB_TIMEOUT=30,
        SHUTDOWN_GRACE_PERIOD=2,
        STALE_JOB_THRESHOLD=60,
        WORKER_POLL_INTERVAL=0.05,
        WATCHDOG_INTERVAL=0.05,
        STATE_STORE_RETRIES=2,
        DOWNLOAD_DIR=str(tmp_path / "downloads"),
    )


@pytest.fixture(scope="function")
def engine(settings):
    """Create a test database for each test."""
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return StateStore(session_factory)


@pytest.fixture
def notifier():
    return StatusNotifier()


@pytest.fixture
def queue(store, notifier, settings):
    return JobQueue(
        store,
        notifier,
        settings.queue_configs(),
        default_job_duration=settings.DEFAULT_JOB_DURATION,
        poll_interval=settings.WORKER_POLL_INTERVAL,
    )


@pytest.fixture
def orchestrator(settings, session_factory):
    """Orchestrator without collaborator services; tests register their own handlers."""
    orchestrator = build_orchestrator(settings, session_factory=session_factory, services=ServiceRegistry())

    yield orchestrator

    orchestrator.shutdown(grace_period=2)


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds or the timeout expires."""

    def _wait_for(predicate, timeout=10.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = predicate()
            if result:
                return result
            time.sleep(interval)
        raise AssertionError("Condition not met before timeout")

    return _wait_for
