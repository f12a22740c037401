"""Dead letter queue: jobs that ran out of retries live in their own collection."""
import logging
from typing import List, Optional

from .errors import DuplicateKeyError, InvalidTransition, NotFoundError, ValidationError
from .models import DLQ, JOBS, DEAD, PENDING, PROCESSING, Job, transition
from .utils import now_iso

logger = logging.getLogger(__name__)

MAX_RETRIES_EXCEEDED = "max retries exceeded"


def move_to_dlq(store, job: Job, reason: str, error: Optional[str] = None,
                now: Optional[str] = None) -> Job:
    """Snapshot `job` into the DLQ and drop it from the main collection.

    Only applies while the job is still PROCESSING on the same attempt it was
    read at; otherwise another worker owns it now and InvalidTransition is raised.
    """
    now = now or now_iso()

    def to_dead(current):
        cur = Job.from_dict(current)
        if cur.state != PROCESSING or cur.attempts != job.attempts or cur.locked_by != job.locked_by:
            raise InvalidTransition(
                f"Job {job.id} changed underneath us ({cur.state}, attempts={cur.attempts})"
            )
        return transition(
            cur, DEAD, now,
            last_error=error if error is not None else cur.last_error,
            locked_by=None, locked_at=None, next_retry_at=None,
            dlq_reason=reason, moved_to_dlq_at=now,
        ).to_dict()

    moved = store.move(JOBS, DLQ, job.id, to_dead)
    if moved is None:
        raise NotFoundError(f"Job {job.id} not found")
    logger.warning("Job %s moved to DLQ: %s (attempts=%s)", job.id, reason, job.attempts)
    return Job.from_dict(moved)


def list_dlq(store) -> List[Job]:
    jobs = [Job.from_dict(r) for r in store.list(DLQ)]
    jobs.sort(key=lambda j: j.moved_to_dlq_at or "", reverse=True)
    return jobs


def retry_from_dlq(store, job_id: str) -> Job:
    if not job_id or not job_id.strip():
        raise ValidationError("Job id cannot be empty.")
    now = now_iso()

    def to_pending(current):
        return transition(
            Job.from_dict(current), PENDING, now,
            attempts=0, last_error=None, output=None,
            started_at=None, completed_at=None,
            locked_by=None, locked_at=None, next_retry_at=None,
            dlq_reason=None, moved_to_dlq_at=None,
        ).to_dict()

    try:
        revived = store.move(DLQ, JOBS, job_id, to_pending)
    except DuplicateKeyError as e:
        raise DuplicateKeyError(
            f"Job {job_id} is already in the queue.",
            collection=JOBS, key=job_id,
        ) from e
    if revived is None:
        raise NotFoundError(f"Job {job_id} not found in DLQ.")
    logger.info("Job %s moved from DLQ back to the queue", job_id)
    return Job.from_dict(revived)

