import logging
import os
import signal
import threading
import time
from typing import List, Optional

from .config import Config
from .errors import InvalidTransition, NotFoundError, StoreUnavailable, ValidationError
from .executor import JobExecutor
from .models import WORKERS, WORKER_RUNNING, WORKER_STOPPED, Job, WorkerRecord
from .retry import RetryPolicy
from .utils import now_iso

logger = logging.getLogger(__name__)

# Worker loop states
STARTING = "starting"
RUNNING = "running"
DRAINING = "draining"
STOPPED = "stopped"

MIN_WORKERS = 1
MAX_WORKERS = 10
DEFAULT_GRACE_PERIOD = 30.0
TRANSIENT_BACKOFF_SECONDS = 0.5
UNEXPECTED_ERROR_BACKOFF_SECONDS = 1.0


class Worker:
    """One polling loop: claims a job, runs it to the end, repeats until shutdown."""

    def __init__(self, store, config: Config, worker_id: str,
                 shutdown: Optional[threading.Event] = None,
                 executor: Optional[JobExecutor] = None):
        self.store = store
        self.config = config
        self.worker_id = worker_id
        self.shutdown = shutdown or threading.Event()
        self.policy = RetryPolicy(store, config)
        self.executor = executor or JobExecutor(store, config, self.policy)
        self.state = STARTING
        self.jobs_processed = 0
        self.current_job: Optional[str] = None
        self.started_at: Optional[str] = None

    # ---------- registry ----------
    def register(self):
        self.started_at = now_iso()
        record = WorkerRecord(
            id=self.worker_id,
            pid=os.getpid(),
            thread=self.worker_id,
            status=WORKER_RUNNING,
            started_at=self.started_at,
        )
        self.store.write(WORKERS, self.worker_id, record.to_dict())

    def _save(self, **changes):
        def apply(record):
            if record is None:
                raise NotFoundError(f"Worker {self.worker_id} is not registered")
            record.update(changes)
            return record

        try:
            self.store.update(WORKERS, self.worker_id, apply)
        except NotFoundError:
            logger.debug("[%s] Registry entry is gone, not saving %s", self.worker_id, changes)
        except StoreUnavailable as e:
            logger.warning("[%s] Could not persist worker stats: %s", self.worker_id, e)

    def deregister(self):
        self._save(status=WORKER_STOPPED, stopped_at=now_iso(), current_job=None,
                   jobs_processed=self.jobs_processed)

    # ---------- loop ----------
    def run(self):
        if self.started_at is None:
            self.register()
        self.state = RUNNING
        logger.info("[%s] Worker started", self.worker_id)
        try:
            while not self.shutdown.is_set():
                try:
                    self.run_once()
                except Exception:
                    logger.exception("[%s] Unexpected error", self.worker_id)
                    self.shutdown.wait(UNEXPECTED_ERROR_BACKOFF_SECONDS)
        finally:
            self.state = DRAINING
            self.deregister()
            self.state = STOPPED
            logger.info("[%s] Worker stopped after %s job(s).", self.worker_id, self.jobs_processed)

    def run_once(self) -> bool:
        """One poll cycle. Returns True if a job was claimed."""
        try:
            self.policy.release_expired_leases()
            self.policy.promote_due()
            record = self.store.claim_next(self.worker_id)
        except StoreUnavailable as e:
            logger.warning("[%s] Store unavailable, backing off: %s", self.worker_id, e)
            self.shutdown.wait(TRANSIENT_BACKOFF_SECONDS)
            return False

        if record is None:
            self.shutdown.wait(self.config.poll_interval_seconds)
            return False

        job = Job.from_dict(record)
        self.current_job = job.id
        self._save(current_job=job.id)
        try:
            final = self.executor.execute(job, self.worker_id)
            logger.debug("[%s] Job %s finished as %s", self.worker_id, job.id, final.state)
        except InvalidTransition as e:
            logger.warning("[%s] Lost job %s: %s", self.worker_id, job.id, e)
        except StoreUnavailable as e:
            logger.error("[%s] Could not record result of job %s, it stays processing "
                         "until its lease expires: %s", self.worker_id, job.id, e)
        finally:
            self.current_job = None
        self.jobs_processed += 1
        self._save(current_job=None, jobs_processed=self.jobs_processed)
        return True


class WorkerPool:
    """Starts and stops a set of worker threads sharing one shutdown event."""

    def __init__(self, store, config: Optional[Config] = None):
        self.store = store
        self.config = config or Config()
        self.shutdown = threading.Event()
        self.workers: List[Worker] = []
        self.threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self.threads)

    @property
    def worker_ids(self) -> List[str]:
        return [w.worker_id for w in self.workers]

    def start(self, count: int) -> List[str]:
        if isinstance(count, bool) or not isinstance(count, int) or not MIN_WORKERS <= count <= MAX_WORKERS:
            raise ValidationError(f"Worker count must be between {MIN_WORKERS} and {MAX_WORKERS}, got {count!r}")
        if self.running:
            logger.info("Workers already running: %s", ", ".join(self.worker_ids))
            return self.worker_ids

        self.shutdown.clear()
        self.workers, self.threads = [], []
        pid = os.getpid()
        for i in range(count):
            worker = Worker(self.store, self.config, f"worker-{pid}-{i + 1}", self.shutdown)
            worker.register()
            t = threading.Thread(target=worker.run, name=worker.worker_id, daemon=True)
            self.workers.append(worker)
            self.threads.append(t)
            t.start()
            logger.info("Started %s", worker.worker_id)
        return self.worker_ids

    def request_stop(self):
        self.shutdown.set()

    def wait_for_stop_request(self, poll_seconds: float = 0.5):
        """Block until a stop is requested or every loop has exited on its own."""
        while self.running and not self.shutdown.wait(poll_seconds):
            pass

    def wait(self, poll_seconds: float = 0.5):
        """Block until every loop exits; short joins keep the main thread signalable."""
        while self.running:
            for t in self.threads:
                t.join(poll_seconds)

    def stop(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> List[str]:
        """Drain all loops. Returns the ids that had to be force-stopped."""
        self.request_stop()
        deadline = time.monotonic() + grace_period
        for t in self.threads:
            t.join(max(0.0, deadline - time.monotonic()))

        forced = []
        for worker, t in zip(self.workers, self.threads):
            if not t.is_alive():
                continue
            forced.append(worker.worker_id)
            logger.warning("[%s] Did not drain within %ss (job %s still running); removing it from the registry",
                           worker.worker_id, grace_period, worker.current_job)
            try:
                self.store.delete(WORKERS, worker.worker_id)
            except StoreUnavailable as e:
                logger.error("[%s] Could not remove registry entry: %s", worker.worker_id, e)
        if self.threads and not forced:
            logger.info("All workers stopped gracefully.")
        return forced


def install_signal_handlers(pool: WorkerPool) -> bool:
    """Make SIGINT/SIGTERM request a graceful stop. Only possible in the main thread."""
    if threading.current_thread() is not threading.main_thread():
        return False

    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping workers", signum)
        pool.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)
    return True


def start_workers(store, count: int, config: Optional[Config] = None,
                  grace_period: float = DEFAULT_GRACE_PERIOD) -> WorkerPool:
    """Run `count` workers in the foreground until a signal stops them."""
    pool = WorkerPool(store, config)
    pool.start(count)
    install_signal_handlers(pool)
    try:
        pool.wait_for_stop_request()
    finally:
        pool.stop(grace_period)
    return pool


def stop_registered_workers(store) -> int:
    """Ask every other process with running workers to shut down (SIGTERM).

    Registry entries whose process no longer exists are marked stopped.
    Returns the number of processes signalled.
    """
    me = os.getpid()
    signalled = set()
    for record in store.list(WORKERS, predicate=lambda r: r.get("status") == WORKER_RUNNING):
        pid = record.get("pid")
        if pid == me or pid in signalled:
            continue
        try:
            os.kill(pid, signal.SIGTERM)
            signalled.add(pid)
            logger.info("Sent SIGTERM to worker process %s", pid)
        except ProcessLookupError:
            logger.info("[%s] Process %s is gone; marking worker stopped", record["id"], pid)
            _mark_stopped(store, record["id"])
        except PermissionError as e:
            logger.warning("[%s] Cannot signal process %s: %s", record["id"], pid, e)
    return len(signalled)


def _mark_stopped(store, worker_id: str):
    def apply(record):
        if record is None:
            raise NotFoundError(f"Worker {worker_id} is not registered")
        record.update(status=WORKER_STOPPED, stopped_at=now_iso(), current_job=None)
        return record

    try:
        store.update(WORKERS, worker_id, apply)
    except NotFoundError:
        # already removed by a force-stop
        return
