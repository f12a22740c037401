from typing import Optional


class QueueError(Exception):
    """Base class for every handled localq failure (CLI exits with 1)."""


class ValidationError(QueueError, ValueError):
    """Bad job spec or config value; raised before anything is written."""


class NotFoundError(QueueError, LookupError):
    pass


class DuplicateKeyError(ValidationError):
    """The key is already present where it would be written."""

    def __init__(self, message: str, *, collection: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.collection = collection
        self.key = key


class StoreUnavailable(QueueError, RuntimeError):
    """The persistent store could not serve the request. Transient."""


class LockTimeout(StoreUnavailable):
    """Exclusive access to a record was not obtained within the lock window."""

    def __init__(self, message: str, *, collection: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.collection = collection
        self.key = key


class InvalidTransition(QueueError, RuntimeError):
    """Illegal state transition, or the job is no longer held by the caller."""


class ExecutionFailure(QueueError, RuntimeError):
    """A job command did not finish cleanly.

    ``kind`` is one of ``exit``, ``timeout``, ``overflow`` or ``spawn``.
    """

    def __init__(self, message: str, *, kind: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code
