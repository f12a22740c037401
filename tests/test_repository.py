import uuid

import pytest

from localq.config import set_config
from localq.errors import NotFoundError, ValidationError
from localq.models import COMPLETED, JOBS, PENDING, PROCESSING, WORKERS, WorkerRecord
from localq.repository import counts, enqueue_job, get_job, list_jobs, status


def test_enqueue_defaults(any_store):
    job = enqueue_job(any_store, command="echo hi")
    assert uuid.UUID(job.id)
    assert job.state == PENDING
    assert job.attempts == 0
    assert job.max_retries == 3
    assert job.created_at == job.updated_at
    assert get_job(any_store, job.id) == job


def test_enqueue_uses_configured_max_retries(any_store):
    set_config(any_store, "max_retries", 5)
    assert enqueue_job(any_store, command="true").max_retries == 5
    assert enqueue_job(any_store, command="true", max_retries=0).max_retries == 0


@pytest.mark.parametrize("kwargs", [
    {"command": ""},
    {"command": "   "},
    {"command": "echo", "job_id": " "},
    {"command": "echo", "max_retries": -1},
    {"command": "echo", "max_retries": "lots"},
])
def test_enqueue_validation(any_store, kwargs):
    with pytest.raises(ValidationError):
        enqueue_job(any_store, **kwargs)
    assert any_store.read(JOBS) == {}


def test_enqueue_duplicate_id(any_store):
    enqueue_job(any_store, job_id="a", command="echo 1")
    with pytest.raises(ValidationError):
        enqueue_job(any_store, job_id="a", command="echo 2")
    assert get_job(any_store, "a").command == "echo 1"


def test_get_job_missing(any_store):
    with pytest.raises(NotFoundError):
        get_job(any_store, "ghost")


def test_list_jobs_by_state(any_store):
    for job_id in ("a", "b", "c"):
        enqueue_job(any_store, job_id=job_id, command="echo " + job_id)
    any_store.claim_next("w1")

    assert [j.id for j in list_jobs(any_store)] == ["a", "b", "c"]
    assert [j.id for j in list_jobs(any_store, state=PENDING)] == ["b", "c"]
    assert [j.id for j in list_jobs(any_store, state=PROCESSING)] == ["a"]
    assert list_jobs(any_store, state=COMPLETED) == []
    with pytest.raises(ValidationError):
        list_jobs(any_store, state="queued")


def test_counts_and_status(any_store):
    enqueue_job(any_store, job_id="a", command="echo a")
    enqueue_job(any_store, job_id="b", command="echo b")
    any_store.claim_next("w1")
    any_store.write(WORKERS, "w1", WorkerRecord(id="w1", pid=1, thread="w1",
                                                started_at="2030-01-01T00:00:00.000000Z").to_dict())
    any_store.write(WORKERS, "w0", WorkerRecord(id="w0", pid=1, thread="w0", status="stopped").to_dict())

    assert counts(any_store) == {
        "pending": 1, "processing": 1, "completed": 0, "failed": 0, "dead": 0, "total": 2,
    }
    report = status(any_store)
    assert report["jobs"]["total"] == 2
    assert [w["id"] for w in report["workers"]] == ["w1"]
    assert report["config"]["max_retries"] == 3
