import pytest

from localq.config import Config
from localq.dlq import MAX_RETRIES_EXCEEDED
from localq.errors import InvalidTransition
from localq.executor import JobExecutor
from localq.models import DEAD, DLQ, FAILED, JOBS, PENDING, Job
from localq.repository import enqueue_job
from localq.retry import LEASE_GRACE_SECONDS, MAX_BACKOFF_SECONDS, RetryPolicy, calculate_backoff
from localq.utils import iso_after

from conftest import T0


def start_attempt(store, job_id, worker_id="w1", now=T0):
    record = store.claim_next(worker_id, now=now)
    assert record["id"] == job_id
    return JobExecutor(store).begin_attempt(Job.from_dict(record), worker_id, now=now)


def test_backoff_values():
    assert calculate_backoff(1, 2) == 2
    assert calculate_backoff(2, 2) == 4
    assert calculate_backoff(3, 2) == 8
    assert calculate_backoff(0, 3) == 1


@pytest.mark.parametrize("base", [1.1, 2, 3.5])
def test_backoff_is_monotonic(base):
    delays = [calculate_backoff(a, base) for a in range(10)]
    assert delays == sorted(delays)
    assert len(set(delays)) == len(delays)


def test_policy_uses_configured_base(any_store):
    policy = RetryPolicy(any_store, Config(backoff_base=3))
    assert policy.calculate_backoff(2) == 9
    assert policy.calculate_backoff(2, base=2) == 4


def test_should_retry():
    assert RetryPolicy.should_retry(Job(id="a", command="x", attempts=1, max_retries=3))
    assert not RetryPolicy.should_retry(Job(id="a", command="x", attempts=3, max_retries=3))
    assert not RetryPolicy.should_retry(Job(id="a", command="x", attempts=1, max_retries=0))


def test_schedule_retry_backs_off(any_store):
    enqueue_job(any_store, job_id="a", command="exit 1", max_retries=3)
    job = start_attempt(any_store, "a")
    policy = RetryPolicy(any_store, Config(backoff_base=2))

    failed = policy.schedule_retry(job, "boom", now=T0)

    assert failed.state == FAILED
    assert failed.attempts == 1
    assert failed.last_error == "boom"
    assert failed.locked_by is None
    assert failed.next_retry_at == iso_after(2, T0)
    assert policy.retryable_jobs(now=T0) == []
    assert [j.id for j in policy.retryable_jobs(now=iso_after(3, T0))] == ["a"]
    assert any_store.claim_next("w2", now=iso_after(1, T0)) is None
    assert any_store.claim_next("w2", now=iso_after(3, T0))["id"] == "a"


def test_schedule_retry_dead_letters_when_exhausted(any_store):
    enqueue_job(any_store, job_id="a", command="exit 1", max_retries=1)
    job = start_attempt(any_store, "a")

    dead = RetryPolicy(any_store).schedule_retry(job, "boom", now=T0)

    assert dead.state == DEAD
    assert dead.dlq_reason == MAX_RETRIES_EXCEEDED
    assert dead.moved_to_dlq_at == T0
    assert any_store.read(JOBS, "a") is None
    assert any_store.read(DLQ, "a")["attempts"] == 1


def test_schedule_retry_rejects_stale_attempt(any_store):
    enqueue_job(any_store, job_id="a", command="exit 1", max_retries=3)
    job = start_attempt(any_store, "a")
    stale = Job.from_dict(dict(job.to_dict(), attempts=job.attempts - 1))

    with pytest.raises(InvalidTransition):
        RetryPolicy(any_store).schedule_retry(stale, "boom", now=T0)
    assert any_store.read(JOBS, "a")["attempts"] == 1


def test_error_message_truncated(any_store):
    enqueue_job(any_store, job_id="a", command="exit 1", max_retries=3)
    job = start_attempt(any_store, "a")
    failed = RetryPolicy(any_store).schedule_retry(job, "x" * 5000, now=T0)
    assert len(failed.last_error) == 500


def test_promote_due_keeps_fifo_position(any_store):
    first = enqueue_job(any_store, job_id="a", command="exit 1", max_retries=3)
    enqueue_job(any_store, job_id="b", command="echo b")
    job = start_attempt(any_store, "a")
    policy = RetryPolicy(any_store, Config(backoff_base=2))
    policy.schedule_retry(job, "boom", now=T0)

    assert policy.promote_due(now=T0) == 0
    assert policy.promote_due(now=iso_after(5, T0)) == 1

    promoted = Job.from_dict(any_store.read(JOBS, "a"))
    assert promoted.state == PENDING
    assert promoted.next_retry_at is None
    assert promoted.created_at == first.created_at
    assert any_store.claim_next("w2", now=iso_after(5, T0))["id"] == "a"


def test_attempts_never_exceed_budget(any_store):
    enqueue_job(any_store, job_id="a", command="exit 1", max_retries=3)
    policy = RetryPolicy(any_store, Config(backoff_base=1.1))
    now = T0
    while True:
        job = start_attempt(any_store, "a", now=now)
        assert job.attempts <= job.max_retries
        result = policy.schedule_retry(job, "boom", now=now)
        if result.state == DEAD:
            break
        now = iso_after(60, now)
    assert result.attempts == 3


def test_expired_lease_is_failed(any_store):
    enqueue_job(any_store, job_id="a", command="sleep 100", max_retries=3)
    start_attempt(any_store, "a", worker_id="crashed")
    policy = RetryPolicy(any_store, Config(job_timeout=1000))

    assert policy.release_expired_leases(now=iso_after(10, T0)) == 0
    assert any_store.read(JOBS, "a")["locked_by"] == "crashed"

    expired = iso_after(1 + LEASE_GRACE_SECONDS + 1, T0)
    assert policy.release_expired_leases(now=expired) == 1
    job = Job.from_dict(any_store.read(JOBS, "a"))
    assert job.state == FAILED
    assert job.locked_by is None
    assert "lease expired" in job.last_error


def test_backoff_is_capped():
    assert calculate_backoff(12, 10) == MAX_BACKOFF_SECONDS
    assert calculate_backoff(10000, 10) == MAX_BACKOFF_SECONDS
    assert calculate_backoff(3, 2) < MAX_BACKOFF_SECONDS


def test_iso_after_clamps_far_future():
    assert iso_after(1e20, T0).startswith("9999-12-31T23:59:59")
    assert iso_after(10 ** 12, T0) > iso_after(MAX_BACKOFF_SECONDS, T0)


def test_schedule_retry_with_large_backoff(any_store):
    enqueue_job(any_store, job_id="a", command="exit 1", max_retries=20)
    any_store.update(JOBS, "a", lambda r: dict(r, attempts=11))
    job = start_attempt(any_store, "a")
    assert job.attempts == 12

    failed = RetryPolicy(any_store, Config(backoff_base=10)).schedule_retry(job, "boom", now=T0)

    assert failed.state == FAILED
    assert failed.next_retry_at == iso_after(MAX_BACKOFF_SECONDS, T0)


def test_huge_job_timeout_never_expires_leases(any_store):
    enqueue_job(any_store, job_id="a", command="sleep 100")
    start_attempt(any_store, "a")
    policy = RetryPolicy(any_store, Config(job_timeout=10 ** 15))
    assert policy.release_expired_leases(now=iso_after(10 ** 6, T0)) == 0
    assert any_store.read(JOBS, "a")["state"] == "processing"


def test_release_expired_leases_skips_failing_job(any_store, monkeypatch):
    enqueue_job(any_store, job_id="broken", command="true")
    enqueue_job(any_store, job_id="ok", command="true")
    start_attempt(any_store, "broken", worker_id="w1")
    start_attempt(any_store, "ok", worker_id="w2")
    policy = RetryPolicy(any_store, Config(job_timeout=1000))
    original = policy.schedule_retry

    def schedule_retry(job, error, now=None):
        if job.id == "broken":
            raise ValueError("corrupt record")
        return original(job, error, now=now)

    monkeypatch.setattr(policy, "schedule_retry", schedule_retry)

    assert policy.release_expired_leases(now=iso_after(3600, T0)) == 1
    assert any_store.read(JOBS, "ok")["state"] == FAILED
    assert any_store.read(JOBS, "broken")["state"] == "processing"
