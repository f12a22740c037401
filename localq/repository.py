import logging
import uuid
from typing import Any, Dict, List, Optional

from .config import Config, load_config, parse_config_value
from .errors import DuplicateKeyError, NotFoundError, ValidationError
from .models import (
    DLQ, JOBS, STATES, WORKERS, WORKER_RUNNING,
    PENDING, PROCESSING, COMPLETED, FAILED, DEAD,
    Job, WorkerRecord,
)
from .utils import now_iso

logger = logging.getLogger(__name__)


# ---------- Jobs: enqueue ----------
def enqueue_job(
    store,
    *,
    command: str,
    job_id: Optional[str] = None,
    max_retries: Optional[Any] = None,
    config: Optional[Config] = None,
) -> Job:
    if job_id is not None and not str(job_id).strip():
        raise ValidationError("Job id cannot be empty.")
    if not isinstance(command, str) or not command.strip():
        raise ValidationError("Command cannot be empty.")

    cfg = config or load_config(store)
    if max_retries is None:
        mret = cfg.max_retries
    else:
        mret = parse_config_value("max_retries", max_retries)

    job_id = str(job_id).strip() if job_id is not None else str(uuid.uuid4())

    ts = now_iso()
    job = Job(
        id=job_id,
        command=command,
        state=PENDING,
        attempts=0,
        max_retries=mret,
        created_at=ts,
        updated_at=ts,
    )
    if not store.insert(JOBS, job_id, job.to_dict(), absent_from=(DLQ,)):
        where = " in the DLQ" if store.read(DLQ, job_id) is not None else ""
        raise DuplicateKeyError(f"Job '{job_id}' already exists{where}.", collection=JOBS, key=job_id)
    logger.info("Enqueued job %s -> %s (max_retries=%s)", job_id, command, mret)
    return job


def get_job(store, job_id: str) -> Job:
    record = store.read(JOBS, job_id) or store.read(DLQ, job_id)
    if record is None:
        raise NotFoundError(f"Job {job_id} not found.")
    return Job.from_dict(record)


# ---------- Queries ----------
def list_jobs(store, state: Optional[str] = None) -> List[Job]:
    if state is not None and state not in STATES:
        raise ValidationError(f"Unknown state {state!r}. Expected one of: {', '.join(STATES)}")
    if state == DEAD:
        rows = store.list(DLQ)
    else:
        rows = store.list(JOBS, state=state)
    jobs = [Job.from_dict(r) for r in rows]
    jobs.sort(key=lambda j: j.created_at)
    return jobs


def counts(store) -> Dict[str, int]:
    out = {s: 0 for s in (PENDING, PROCESSING, COMPLETED, FAILED, DEAD)}
    for record in store.list(JOBS):
        out[record["state"]] = out.get(record["state"], 0) + 1
    out[DEAD] = len(store.list(DLQ))
    # main queue only, dead letters are reported separately
    out["total"] = sum(out[s] for s in STATES if s != DEAD)
    return out


def active_workers(store) -> List[WorkerRecord]:
    rows = store.list(WORKERS, predicate=lambda r: r.get("status") == WORKER_RUNNING)
    return [WorkerRecord.from_dict(r) for r in rows]


def status(store) -> Dict[str, Any]:
    return {
        "jobs": counts(store),
        "workers": [
            {
                "id": w.id,
                "pid": w.pid,
                "started_at": w.started_at,
                "jobs_processed": w.jobs_processed,
                "current_job": w.current_job,
            }
            for w in active_workers(store)
        ],
        "config": load_config(store).to_dict(),
    }
