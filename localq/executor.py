import logging
import os
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import Optional

from .config import Config
from .errors import ExecutionFailure, InvalidTransition, NotFoundError
from .models import COMPLETED, JOBS, PROCESSING, Job, transition
from .retry import RetryPolicy
from .utils import now_iso

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 300000
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
POLL_SECONDS = 0.05
KILL_GRACE_SECONDS = 2


@dataclass
class CommandResult:
    command: str
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    overflowed: bool = False
    spawn_error: Optional[str] = None
    duration_seconds: float = 0.0
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not (self.timed_out or self.overflowed or self.spawn_error)

    def check(self):
        if self.spawn_error is not None:
            raise ExecutionFailure(f"Failed to start command: {self.spawn_error}", kind="spawn")
        if self.timed_out:
            raise ExecutionFailure(f"Command timed out after {self.timeout_ms}ms", kind="timeout")
        if self.overflowed:
            raise ExecutionFailure(
                f"Command output exceeded {self.max_output_bytes} bytes", kind="overflow",
            )
        if self.exit_code != 0:
            detail = self.stderr.strip() or self.stdout.strip()
            message = f"Command failed with exit code {self.exit_code}"
            if detail:
                message = f"{message}: {detail}"
            raise ExecutionFailure(message, kind="exit", exit_code=self.exit_code)
        return self


def run_command(command: str, timeout_ms: int = DEFAULT_TIMEOUT_MS,
                max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> CommandResult:
    """Run `command` through the shell with a hard timeout and an output cap.

    Never raises for command failures; inspect the result or call ``check()``.
    """
    start = time.monotonic()
    result = CommandResult(command=command, exit_code=None,
                           timeout_ms=timeout_ms, max_output_bytes=max_output_bytes)
    with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            result.spawn_error = str(e)
            result.duration_seconds = time.monotonic() - start
            return result

        deadline = start + timeout_ms / 1000.0
        while True:
            try:
                process.wait(timeout=POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                pass
            if time.monotonic() >= deadline:
                result.timed_out = True
                _terminate_process(process)
                break
            if _output_size(out, err) > max_output_bytes:
                result.overflowed = True
                _terminate_process(process)
                break

        if _output_size(out, err) > max_output_bytes:
            result.overflowed = True
        result.exit_code = process.returncode
        result.stdout = _read_capped(out, max_output_bytes)
        result.stderr = _read_capped(err, max_output_bytes)
    result.duration_seconds = time.monotonic() - start
    return result


def _output_size(*handles) -> int:
    return sum(os.fstat(h.fileno()).st_size for h in handles)


def _read_capped(handle, limit: int) -> str:
    handle.seek(0)
    return handle.read(limit).decode("utf-8", errors="replace")


def _signal_group(process: subprocess.Popen, sig):
    if os.name == "posix":
        os.killpg(process.pid, sig)
    elif sig == signal.SIGTERM:
        process.terminate()
    else:
        process.kill()


def _terminate_process(process: subprocess.Popen):
    """SIGTERM the command's process group, then SIGKILL it if it lingers."""
    try:
        _signal_group(process, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        pass
    try:
        process.wait(timeout=KILL_GRACE_SECONDS)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    except (ProcessLookupError, PermissionError):
        pass
    process.wait()


class JobExecutor:
    """Runs claimed jobs and records the outcome."""

    def __init__(self, store, config: Optional[Config] = None,
                 policy: Optional[RetryPolicy] = None,
                 max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES):
        self.store = store
        self.config = config or Config()
        self.policy = policy or RetryPolicy(store, self.config)
        self.max_output_bytes = max_output_bytes

    def begin_attempt(self, job: Job, worker_id: str, now: Optional[str] = None) -> Job:
        now = now or now_iso()

        def stamp(record):
            if record is None:
                raise NotFoundError(f"Job {job.id} not found")
            cur = Job.from_dict(record)
            if cur.state != PROCESSING or cur.locked_by != worker_id:
                raise InvalidTransition(f"Job {job.id} is not held by {worker_id} ({cur.state})")
            cur.attempts += 1
            cur.started_at = now
            cur.updated_at = now
            cur.check_invariants()
            return cur.to_dict()

        return Job.from_dict(self.store.update(JOBS, job.id, stamp))

    def complete(self, job: Job, output: str, now: Optional[str] = None) -> Job:
        now = now or now_iso()

        def to_completed(record):
            if record is None:
                raise NotFoundError(f"Job {job.id} not found")
            cur = Job.from_dict(record)
            if cur.state != PROCESSING or cur.locked_by != job.locked_by or cur.attempts != job.attempts:
                raise InvalidTransition(f"Job {job.id} is no longer held by {job.locked_by}")
            return transition(
                cur, COMPLETED, now,
                output=output, completed_at=now, last_error=None,
                locked_by=None, locked_at=None,
            ).to_dict()

        return Job.from_dict(self.store.update(JOBS, job.id, to_completed))

    def execute(self, job: Job, worker_id: str) -> Job:
        """Run one claimed job to completion, retry or DLQ. Returns its final record.

        Command failures never escape; store errors and lost leases
        (InvalidTransition) do.
        """
        job = self.begin_attempt(job, worker_id)
        logger.info("[%s] Executing job %s (attempt %s/%s): %s",
                    worker_id, job.id, job.attempts, job.max_retries, job.command)
        result = run_command(job.command, self.config.job_timeout, self.max_output_bytes)
        try:
            result.check()
        except ExecutionFailure as e:
            logger.warning("[%s] Job %s failed (%s): %s", worker_id, job.id, e.kind, e)
            return self.policy.schedule_retry(job, str(e))

        output = result.stdout.strip() or result.stderr.strip()
        done = self.complete(job, output)
        logger.info("[%s] Job %s completed in %.2fs", worker_id, job.id, result.duration_seconds)
        return done
