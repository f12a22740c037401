from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional

from .errors import InvalidTransition
from .utils import now_iso

# Job States
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
DEAD = "dead"  # DLQ

STATES = (PENDING, PROCESSING, COMPLETED, FAILED, DEAD)

TRANSITIONS = {
    PENDING: {PROCESSING},
    PROCESSING: {COMPLETED, FAILED, DEAD},
    FAILED: {PROCESSING, PENDING},
    COMPLETED: set(),
    DEAD: {PENDING},
}

# Collections
JOBS = "jobs"
DLQ = "dlq"
WORKERS = "workers"
CONFIG = "config"

COLLECTIONS = (JOBS, DLQ, WORKERS, CONFIG)

# Worker registry status
WORKER_RUNNING = "running"
WORKER_STOPPED = "stopped"


def check_transition(current: str, target: str):
    if target not in TRANSITIONS.get(current, ()):
        raise InvalidTransition(f"Illegal job transition {current} -> {target}")


@dataclass
class Job:
    id: str
    command: str
    state: str = PENDING
    attempts: int = 0
    max_retries: int = 3
    created_at: str = ""
    updated_at: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output: Optional[str] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[str] = None
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    worker_id: Optional[str] = None
    # DLQ snapshot only
    dlq_reason: Optional[str] = None
    moved_to_dlq_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def attempt_budget(self) -> int:
        # max_retries=0 still allows the first execution
        return max(self.max_retries, 1)

    def is_claimable(self, now: str) -> bool:
        if self.state == PENDING:
            return True
        return self.state == FAILED and self.next_retry_at is not None and self.next_retry_at <= now

    def check_invariants(self):
        if self.locked_by is not None and self.state != PROCESSING:
            raise InvalidTransition(f"Job {self.id} is locked by {self.locked_by} while {self.state}")
        if self.next_retry_at is not None and self.state != FAILED:
            raise InvalidTransition(f"Job {self.id} has next_retry_at while {self.state}")
        if self.state in (PENDING, PROCESSING, FAILED) and self.attempts > self.attempt_budget:
            raise InvalidTransition(
                f"Job {self.id} has {self.attempts} attempts over max_retries={self.max_retries}"
            )


def transition(job: Job, target: str, now: Optional[str] = None, **changes) -> Job:
    """Return a copy of `job` moved to `target` with `changes` applied."""
    check_transition(job.state, target)
    data = job.to_dict()
    data.update(changes)
    data["state"] = target
    data["updated_at"] = now or now_iso()
    moved = Job.from_dict(data)
    moved.check_invariants()
    return moved


def claim(job: Job, worker_id: str, now: str) -> Job:
    """Claim a PENDING job, or a FAILED job that is due, for `worker_id`."""
    if not job.is_claimable(now):
        raise InvalidTransition(f"Job {job.id} is not claimable ({job.state})")
    return transition(
        job, PROCESSING, now,
        locked_by=worker_id, locked_at=now, started_at=now,
        worker_id=worker_id, next_retry_at=None,
    )


@dataclass
class WorkerRecord:
    id: str
    pid: int
    thread: str
    status: str = WORKER_RUNNING
    started_at: str = ""
    stopped_at: Optional[str] = None
    jobs_processed: int = 0
    current_job: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
