import contextlib
import json
import logging
import os
import random
import sqlite3
import threading
import time
from typing import Optional

from .errors import DuplicateKeyError, LockTimeout, StoreUnavailable
from .models import COLLECTIONS, PENDING, FAILED, Job, claim
from .store import DEFAULT_LOCK_TIMEOUT, Store, check_collection
from .utils import now_iso

logger = logging.getLogger(__name__)

DB_FILE = os.environ.get("LOCALQ_DB", "localq.db")

TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    key TEXT PRIMARY KEY,
    version INTEGER NOT NULL DEFAULT 0,
    value TEXT NOT NULL
);
"""

SCHEMA = "PRAGMA journal_mode=WAL;\n" + "".join(TABLE_SCHEMA.format(table=c) for c in COLLECTIONS) + """
CREATE INDEX IF NOT EXISTS idx_jobs_state_created
    ON jobs(json_extract(value, '$.state'), json_extract(value, '$.created_at'));
CREATE INDEX IF NOT EXISTS idx_dlq_state ON dlq(json_extract(value, '$.state'));
"""

CLAIMABLE_SQL = """
SELECT key, version, value FROM jobs
WHERE json_extract(value, '$.state') = ?
   OR (json_extract(value, '$.state') = ? AND json_extract(value, '$.next_retry_at') <= ?)
ORDER BY json_extract(value, '$.created_at') ASC, rowid ASC
LIMIT ?
"""

# Rows fetched per claim round; conflicts walk further down the FIFO.
CLAIM_BATCH = 8


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    msg = str(error).lower()
    return "locked" in msg or "busy" in msg


def _jitter(attempt: int) -> float:
    return min(0.25, 0.005 * (2 ** attempt)) * random.uniform(0.5, 1.0)


class SQLiteStore(Store):
    """Store backed by one SQLite file, shared by threads and processes.

    Single-key writes are optimistic compare-and-swap on a per-row version,
    so concurrent workers only contend on the row they are both touching.
    """

    def __init__(self, path: Optional[str] = None, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = str(path or DB_FILE)
        self.lock_timeout = lock_timeout
        self._local = threading.local()
        self._conns = []
        self._conns_lock = threading.Lock()
        self.init_db()

    # ---------- connections ----------
    def connect_db(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self.path,
                timeout=self.lock_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def init_db(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            self.connect_db().executescript(SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailable(f"Cannot initialise database {self.path}: {e}") from e

    def close(self):
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        self._local = threading.local()

    def _execute(self, sql: str, params=()):
        try:
            return self.connect_db().execute(sql, params)
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise LockTimeout(f"Database {self.path} is locked: {e}") from e
            raise StoreUnavailable(f"DB error: {e}") from e
        except sqlite3.Error as e:
            raise StoreUnavailable(f"DB error: {e}") from e

    # ---------- single-key operations ----------
    def read(self, collection, key=None):
        check_collection(collection)
        if key is None:
            rows = self._execute(f"SELECT key, value FROM {collection} ORDER BY rowid").fetchall()
            return {r["key"]: json.loads(r["value"]) for r in rows}
        row = self._execute(f"SELECT value FROM {collection} WHERE key=?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    def write(self, collection, key, value):
        check_collection(collection)
        self._execute(
            f"INSERT INTO {collection}(key, value) VALUES(?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, version=version+1",
            (key, json.dumps(value)),
        )

    def insert(self, collection, key, value, absent_from=()):
        check_collection(collection)
        for other in absent_from:
            check_collection(other)
        if not absent_from:
            cur = self._execute(
                f"INSERT OR IGNORE INTO {collection}(key, value) VALUES(?, ?)",
                (key, json.dumps(value)),
            )
            return cur.rowcount == 1
        with self._transaction(f"insert {key}") as conn:
            for other in absent_from:
                if conn.execute(f"SELECT 1 FROM {other} WHERE key=?", (key,)).fetchone():
                    return False
            cur = conn.execute(
                f"INSERT OR IGNORE INTO {collection}(key, value) VALUES(?, ?)",
                (key, json.dumps(value)),
            )
            return cur.rowcount == 1

    def update(self, collection, key, fn):
        check_collection(collection)
        deadline = time.monotonic() + self.lock_timeout
        attempt = 0
        while True:
            row = self._execute(
                f"SELECT version, value FROM {collection} WHERE key=?", (key,)
            ).fetchone()
            new = fn(json.loads(row["value"]) if row else None)
            if row is None:
                cur = self._execute(
                    f"INSERT OR IGNORE INTO {collection}(key, value) VALUES(?, ?)",
                    (key, json.dumps(new)),
                )
            else:
                cur = self._execute(
                    f"UPDATE {collection} SET value=?, version=version+1 WHERE key=? AND version=?",
                    (json.dumps(new), key, row["version"]),
                )
            if cur.rowcount == 1:
                return new
            if time.monotonic() >= deadline:
                raise LockTimeout(
                    f"Gave up updating {collection}/{key} after {attempt + 1} conflicts",
                    collection=collection, key=key,
                )
            time.sleep(_jitter(attempt))
            attempt += 1

    def delete(self, collection, key):
        check_collection(collection)
        cur = self._execute(f"DELETE FROM {collection} WHERE key=?", (key,))
        return cur.rowcount == 1

    def list(self, collection, predicate=None, state=None):
        check_collection(collection)
        if state is not None:
            rows = self._execute(
                f"SELECT value FROM {collection} WHERE json_extract(value, '$.state')=? ORDER BY rowid",
                (state,),
            ).fetchall()
        else:
            rows = self._execute(f"SELECT value FROM {collection} ORDER BY rowid").fetchall()
        records = [json.loads(r["value"]) for r in rows]
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return records

    # ---------- multi-record primitives ----------
    @contextlib.contextmanager
    def _transaction(self, what: str):
        """One BEGIN IMMEDIATE transaction; commits unless the body raises."""
        conn = self.connect_db()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise LockTimeout(f"Could not lock {self.path} to {what}: {e}") from e
            raise StoreUnavailable(f"DB error: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException as e:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")
            if isinstance(e, sqlite3.OperationalError) and _is_lock_error(e):
                raise LockTimeout(f"Database {self.path} is locked during {what}: {e}") from e
            if isinstance(e, sqlite3.Error):
                raise StoreUnavailable(f"DB error during {what}: {e}") from e
            raise

    def move(self, src, dst, key, fn):
        check_collection(src)
        check_collection(dst)
        with self._transaction(f"move {key}") as conn:
            row = conn.execute(f"SELECT value FROM {src} WHERE key=?", (key,)).fetchone()
            if row is None:
                return None
            if conn.execute(f"SELECT 1 FROM {dst} WHERE key=?", (key,)).fetchone():
                raise DuplicateKeyError(f"{key} already exists in {dst}", collection=dst, key=key)
            moved = fn(json.loads(row["value"]))
            # write new, then delete old
            conn.execute(
                f"INSERT INTO {dst}(key, value) VALUES(?, ?)",
                (key, json.dumps(moved)),
            )
            conn.execute(f"DELETE FROM {src} WHERE key=?", (key,))
            return moved

    def claim_next(self, worker_id, now=None):
        deadline = time.monotonic() + self.lock_timeout
        attempt = 0
        while True:
            now_ts = now or now_iso()
            rows = self._execute(CLAIMABLE_SQL, (PENDING, FAILED, now_ts, CLAIM_BATCH)).fetchall()
            if not rows:
                return None
            for row in rows:
                job = Job.from_dict(json.loads(row["value"]))
                claimed = claim(job, worker_id, now_ts).to_dict()
                cur = self._execute(
                    "UPDATE jobs SET value=?, version=version+1 WHERE key=? AND version=?",
                    (json.dumps(claimed), row["key"], row["version"]),
                )
                if cur.rowcount == 1:
                    return claimed
                logger.debug("[%s] Lost race for job %s, trying next", worker_id, row["key"])
            if time.monotonic() >= deadline:
                raise LockTimeout(f"[{worker_id}] Could not claim a job within {self.lock_timeout}s")
            time.sleep(_jitter(attempt))
            attempt += 1
