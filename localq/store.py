"""Persistent store contract.

A store holds a few named collections (``jobs``, ``dlq``, ``workers``,
``config``) of JSON-like records keyed by string. Every mutation of a single
key is linearizable. ``claim_next``, ``move`` and ``insert`` with
``absent_from`` are the only primitives that look at more than one record,
and all three are atomic.

``SQLiteStore`` (see ``db.py``) is the durable implementation. ``MemoryStore``
keeps everything in-process and is used by tests and embedders.
"""
import contextlib
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import DuplicateKeyError, LockTimeout, ValidationError
from .models import COLLECTIONS, JOBS, Job, claim
from .utils import now_iso

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Updater = Callable[[Optional[Record]], Record]
Predicate = Callable[[Record], bool]

DEFAULT_LOCK_TIMEOUT = 5.0


class Store(ABC):
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT

    @abstractmethod
    def read(self, collection: str, key: Optional[str] = None):
        """Return one record (or None), or the whole collection as a dict."""

    @abstractmethod
    def write(self, collection: str, key: str, value: Record) -> None:
        pass

    @abstractmethod
    def insert(self, collection: str, key: str, value: Record,
               absent_from: Sequence[str] = ()) -> bool:
        """Write only if `key` is absent from `collection` and every `absent_from` collection.

        Returns False when it already exists in any of them.
        """

    @abstractmethod
    def update(self, collection: str, key: str, fn: Updater) -> Record:
        """Replace the record with ``fn(current)``, exclusively for this key.

        ``fn`` receives None when the key is absent and may be called more
        than once, so it must not have side effects. Anything it raises
        propagates and nothing is written.
        """

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        pass

    @abstractmethod
    def list(self, collection: str, predicate: Optional[Predicate] = None,
             state: Optional[str] = None) -> List[Record]:
        pass

    @abstractmethod
    def move(self, src: str, dst: str, key: str, fn: Callable[[Record], Record]) -> Optional[Record]:
        """Write ``fn(record)`` into `dst` and remove `key` from `src`, atomically.

        Returns None when `key` is not in `src`. Raises DuplicateKeyError, and
        changes nothing, when `dst` already holds `key`.
        """

    @abstractmethod
    def claim_next(self, worker_id: str, now: Optional[str] = None) -> Optional[Record]:
        """Claim the oldest claimable job for `worker_id`, or return None."""

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def check_collection(collection: str):
    if collection not in COLLECTIONS:
        raise ValidationError(f"Unknown collection: {collection}")


class MemoryStore(Store):
    """Thread-safe in-process store with one lock per key."""

    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._data: Dict[str, Dict[str, Record]] = {c: {} for c in COLLECTIONS}
        # submission order, used as the FIFO tie-break
        self._seq: Dict[str, Dict[str, int]] = {c: {} for c in COLLECTIONS}
        self._counter = itertools.count()
        self._guard = threading.Lock()
        # (collection, key) -> [lock, holders and waiters]
        self._key_locks: Dict[tuple, list] = {}

    @contextlib.contextmanager
    def _locked(self, *keys: Tuple[str, str]):
        """Hold the locks of all `keys` (collection, key pairs), taken in sorted order."""
        with contextlib.ExitStack() as stack:
            for ident in sorted(set(keys)):
                self._acquire(ident)
                stack.callback(self._release, ident)
            yield

    def _acquire(self, ident: Tuple[str, str]):
        with self._guard:
            entry = self._key_locks.setdefault(ident, [threading.Lock(), 0])
            entry[1] += 1
        if not entry[0].acquire(timeout=self.lock_timeout):
            self._unref(ident)
            collection, key = ident
            raise LockTimeout(
                f"Could not lock {collection}/{key} within {self.lock_timeout}s",
                collection=collection, key=key,
            )

    def _release(self, ident: Tuple[str, str]):
        with self._guard:
            lock = self._key_locks[ident][0]
        lock.release()
        self._unref(ident)

    def _unref(self, ident: Tuple[str, str]):
        with self._guard:
            entry = self._key_locks[ident]
            entry[1] -= 1
            if entry[1] == 0:
                del self._key_locks[ident]

    # callers hold self._guard
    def _put_unguarded(self, collection: str, key: str, value: Record):
        if key not in self._data[collection]:
            self._seq[collection][key] = next(self._counter)
        self._data[collection][key] = dict(value)

    def _pop_unguarded(self, collection: str, key: str) -> bool:
        self._seq[collection].pop(key, None)
        return self._data[collection].pop(key, None) is not None

    def _put(self, collection: str, key: str, value: Record):
        with self._guard:
            self._put_unguarded(collection, key, value)

    def _pop(self, collection: str, key: str) -> bool:
        with self._guard:
            return self._pop_unguarded(collection, key)

    def read(self, collection, key=None):
        check_collection(collection)
        with self._guard:
            if key is None:
                return {k: dict(v) for k, v in self._data[collection].items()}
            value = self._data[collection].get(key)
            return dict(value) if value is not None else None

    def write(self, collection, key, value):
        check_collection(collection)
        with self._locked((collection, key)):
            self._put(collection, key, value)

    def insert(self, collection, key, value, absent_from=()):
        check_collection(collection)
        for other in absent_from:
            check_collection(other)
        with self._locked((collection, key), *((other, key) for other in absent_from)):
            with self._guard:
                if any(key in self._data[c] for c in (collection, *absent_from)):
                    return False
                self._put_unguarded(collection, key, value)
                return True

    def update(self, collection, key, fn):
        check_collection(collection)
        with self._locked((collection, key)):
            new = fn(self.read(collection, key))
            self._put(collection, key, new)
            return dict(new)

    def delete(self, collection, key):
        check_collection(collection)
        with self._locked((collection, key)):
            return self._pop(collection, key)

    def list(self, collection, predicate=None, state=None):
        check_collection(collection)
        with self._guard:
            keys = sorted(self._data[collection], key=self._seq[collection].get)
            rows = [dict(self._data[collection][k]) for k in keys]
        if state is not None:
            rows = [r for r in rows if r.get("state") == state]
        if predicate is not None:
            rows = [r for r in rows if predicate(r)]
        return rows

    def move(self, src, dst, key, fn):
        check_collection(src)
        check_collection(dst)
        with self._locked((src, key), (dst, key)):
            current = self.read(src, key)
            if current is None:
                return None
            if self.read(dst, key) is not None:
                raise DuplicateKeyError(f"{key} already exists in {dst}", collection=dst, key=key)
            moved = fn(current)
            with self._guard:
                self._put_unguarded(dst, key, moved)
                self._pop_unguarded(src, key)
            return dict(moved)

    def claim_next(self, worker_id, now=None):
        now = now or now_iso()
        with self._guard:
            candidates = [
                (rec.get("created_at") or "", self._seq[JOBS][key], key)
                for key, rec in self._data[JOBS].items()
                if Job.from_dict(rec).is_claimable(now)
            ]
        for _, _, key in sorted(candidates):
            with self._locked((JOBS, key)):
                current = self.read(JOBS, key)
                if current is None:
                    continue
                job = Job.from_dict(current)
                if not job.is_claimable(now):
                    # someone else got it first
                    continue
                claimed = claim(job, worker_id, now).to_dict()
                self._put(JOBS, key, claimed)
                return dict(claimed)
        return None
