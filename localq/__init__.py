from .config import Config, get_config, load_config, set_config
from .db import SQLiteStore
from .dlq import list_dlq, move_to_dlq, retry_from_dlq
from .errors import (
    DuplicateKeyError, ExecutionFailure, InvalidTransition, LockTimeout, NotFoundError,
    QueueError, StoreUnavailable, ValidationError,
)
from .executor import JobExecutor, run_command
from .models import Job, WorkerRecord
from .repository import enqueue_job, list_jobs, status
from .retry import RetryPolicy, calculate_backoff
from .store import MemoryStore, Store
from .worker import Worker, WorkerPool

__version__ = "0.1.0"
