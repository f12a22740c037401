"""Retry with exponential backoff, and dead-lettering once retries run out.

Failed attempts wait ``backoff_base ** attempts`` seconds before they can be
claimed again. ``attempts`` already counts the failed run, so the first retry
waits ``backoff_base`` seconds, the second ``backoff_base ** 2`` and so on,
never more than ``MAX_BACKOFF_SECONDS``.

A worker that dies mid-job leaves its record PROCESSING. Such a lease counts
as expired once ``job_timeout + LEASE_GRACE_SECONDS`` has passed since it was
taken. The job is then failed like any other attempt.
"""
import logging
from typing import List, Optional

from .config import Config
from .dlq import MAX_RETRIES_EXCEEDED, move_to_dlq
from .errors import InvalidTransition, NotFoundError, StoreUnavailable
from .models import FAILED, JOBS, PENDING, PROCESSING, Job, transition
from .utils import iso_after, now_iso

logger = logging.getLogger(__name__)

LEASE_GRACE_SECONDS = 30
MAX_ERROR_CHARS = 500
# one week
MAX_BACKOFF_SECONDS = 7 * 24 * 3600.0


def calculate_backoff(attempts: int, base: float = 2.0) -> float:
    """Delay in seconds before retry number `attempts`, capped at MAX_BACKOFF_SECONDS."""
    try:
        delay = float(base) ** attempts
    except OverflowError:
        return MAX_BACKOFF_SECONDS
    return min(delay, MAX_BACKOFF_SECONDS)


class RetryPolicy:
    def __init__(self, store, config: Optional[Config] = None):
        self.store = store
        self.config = config or Config()

    @staticmethod
    def should_retry(job: Job) -> bool:
        return job.attempts < job.max_retries

    def calculate_backoff(self, attempts: int, base: Optional[float] = None) -> float:
        return calculate_backoff(attempts, self.config.backoff_base if base is None else base)

    def schedule_retry(self, job: Job, error: str, now: Optional[str] = None) -> Job:
        """Fail the current attempt of `job`: back off and retry, or dead-letter it.

        Raises InvalidTransition if the job is no longer PROCESSING on the
        attempt described by `job` (its lease was lost).
        """
        now = now or now_iso()
        error = (error or "unknown error")[:MAX_ERROR_CHARS]
        current = self.store.read(JOBS, job.id)
        if current is None:
            raise NotFoundError(f"Job {job.id} not found")
        current_job = Job.from_dict(current)
        _check_same_attempt(job, current_job)

        if not self.should_retry(current_job):
            return move_to_dlq(self.store, current_job, MAX_RETRIES_EXCEEDED, error=error, now=now)

        delay = self.calculate_backoff(current_job.attempts)
        retry_at = iso_after(delay, now)

        def to_failed(record):
            if record is None:
                raise NotFoundError(f"Job {job.id} not found")
            cur = Job.from_dict(record)
            _check_same_attempt(job, cur)
            return transition(
                cur, FAILED, now,
                last_error=error, next_retry_at=retry_at,
                locked_by=None, locked_at=None,
            ).to_dict()

        failed = Job.from_dict(self.store.update(JOBS, job.id, to_failed))
        logger.warning(
            "Job %s will retry in %.1fs (attempt %s/%s): %s",
            job.id, delay, failed.attempts, failed.max_retries, error,
        )
        return failed

    def retryable_jobs(self, now: Optional[str] = None) -> List[Job]:
        now = now or now_iso()
        return [
            Job.from_dict(r)
            for r in self.store.list(
                JOBS, state=FAILED,
                predicate=lambda r: r.get("next_retry_at") is not None and r["next_retry_at"] <= now,
            )
        ]

    def promote_due(self, now: Optional[str] = None) -> int:
        """Move due FAILED jobs back to PENDING; they keep their FIFO position."""
        now = now or now_iso()
        promoted = 0
        for job in self.retryable_jobs(now):
            def to_pending(record, job_id=job.id):
                if record is None:
                    raise NotFoundError(f"Job {job_id} not found")
                cur = Job.from_dict(record)
                if not (cur.state == FAILED and cur.is_claimable(now)):
                    raise InvalidTransition(f"Job {job_id} is no longer due ({cur.state})")
                return transition(cur, PENDING, now, next_retry_at=None).to_dict()

            try:
                self.store.update(JOBS, job.id, to_pending)
            except (InvalidTransition, NotFoundError):
                # claimed or promoted by another worker meanwhile
                continue
            promoted += 1
            logger.debug("Job %s is due for retry", job.id)
        return promoted

    def lease_expired(self, job: Job, now: str) -> bool:
        if job.state != PROCESSING or not job.locked_at:
            return False
        lease_seconds = self.config.job_timeout_seconds + LEASE_GRACE_SECONDS
        return iso_after(lease_seconds, job.locked_at) < now

    def release_expired_leases(self, now: Optional[str] = None) -> int:
        now = now or now_iso()
        released = 0
        for record in self.store.list(JOBS, state=PROCESSING):
            job = Job.from_dict(record)
            if not self.lease_expired(job, now):
                continue
            logger.warning("Job %s lease held by %s expired (locked at %s)",
                           job.id, job.locked_by, job.locked_at)
            try:
                self.schedule_retry(job, f"lease expired (worker {job.locked_by})", now=now)
            except (InvalidTransition, NotFoundError):
                continue
            except StoreUnavailable:
                raise
            except Exception:
                logger.exception("Could not release expired lease of job %s", job.id)
                continue
            released += 1
        return released


def _check_same_attempt(expected: Job, current: Job):
    if current.state != PROCESSING or current.attempts != expected.attempts \
            or current.locked_by != expected.locked_by:
        raise InvalidTransition(
            f"Job {expected.id} is no longer held by {expected.locked_by} "
            f"({current.state}, attempts={current.attempts}, locked_by={current.locked_by})"
        )
