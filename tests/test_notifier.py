"""Tests for the status notifier."""

from uuid import uuid4

from datacollector.schemas.job import JobStatus
from datacollector.services.notifier import StatusNotifier


def test_broadcast_reaches_job_and_global_subscribers():
    notifier = StatusNotifier()
    job_id = uuid4()
    job_updates = []
    all_updates = []
    notifier.subscribe(job_id, job_updates.append)
    notifier.subscribe_all(all_updates.append)

    update = notifier.broadcast(job_id, JobStatus.RUNNING, "Working", {"progress": 40, "stage": "download"})

    assert job_updates == [update]
    assert all_updates == [update]
    assert update.progress == 40
    assert update.data["stage"] == "download"


def test_other_jobs_not_delivered():
    notifier = StatusNotifier()
    received = []
    notifier.subscribe(uuid4(), received.append)

    notifier.broadcast(uuid4(), JobStatus.PENDING)

    assert received == []


def test_failing_subscriber_does_not_break_broadcast():
    """Test that one raising callback does not stop delivery to the others."""
    notifier = StatusNotifier()
    job_id = uuid4()
    received = []

    def broken(update):
        raise RuntimeError("subscriber crashed")

    notifier.subscribe(job_id, broken)
    notifier.subscribe(job_id, received.append)

    notifier.broadcast(job_id, JobStatus.COMPLETED, "Done")

    assert len(received) == 1
    assert received[0].status == JobStatus.COMPLETED


def test_unsubscribe():
    notifier = StatusNotifier()
    job_id = uuid4()
    received = []
    notifier.subscribe(job_id, received.append)
    assert notifier.subscriber_count(job_id) == 1

    notifier.unsubscribe(job_id)
    notifier.broadcast(job_id, JobStatus.CANCELLED)

    assert received == []
    assert notifier.subscriber_count(job_id) == 0
