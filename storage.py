# storage.py
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from errors import StoreUnavailable
from models import JOB_COLUMNS, JOB_TYPE_SINGLE, Job, to_iso
from recurrence import utc_now
from settings import DEFAULT_DB_PATH

log = logging.getLogger("schedctl.storage")

# Columns an upsert of a single-type job may overwrite; lock and run history stay.
SINGLE_UPSERT_COLUMNS = (
    "data", "priority", "repeat_interval", "repeat_at", "repeat_timezone",
    "attempts", "backoff", "should_save_result", "disabled", "next_run_at",
    "last_modified_by", "updated_at",
)

STATE_CASE_SQL = """
    CASE
        WHEN disabled = 1 THEN 'disabled'
        WHEN locked_at IS NOT NULL THEN 'locked'
        WHEN next_run_at IS NOT NULL THEN 'scheduled'
        WHEN failed_at IS NOT NULL AND (last_finished_at IS NULL OR failed_at >= last_finished_at) THEN 'failed'
        WHEN last_finished_at IS NOT NULL THEN 'completed'
        ELSE 'unscheduled'
    END
"""

Filter = Tuple[str, tuple]


def _sql_value(value):
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _column_expr(key: str) -> str:
    if key.startswith("data.") and key[5:].replace("_", "").isalnum():
        return f"json_extract(data, '$.{key[5:]}')"
    if key not in JOB_COLUMNS:
        raise ValueError(f"Unknown job field: {key!r}")
    return key


def build_where(filters: Optional[Dict] = None) -> Filter:
    """Equality filter over job columns or "data.<key>"; None matches NULL, lists match IN."""
    clauses, params = [], []
    for key, value in (filters or {}).items():
        expr = _column_expr(key)
        if value is None:
            clauses.append(f"{expr} IS NULL")
        elif isinstance(value, (list, tuple, set)):
            values = [_sql_value(v) for v in value]
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{expr} IN ({','.join('?' for _ in values)})")
            params.extend(values)
        else:
            clauses.append(f"{expr} = ?")
            params.append(_sql_value(value))
    return (" AND ".join(clauses) or "1"), tuple(params)


def build_order_by(sort: Optional[Dict[str, int]]) -> str:
    if not sort:
        return "created_at ASC"
    parts = []
    for key, direction in sort.items():
        if key not in JOB_COLUMNS:
            raise ValueError(f"Unknown sort field: {key!r}")
        parts.append(f"{key} {'DESC' if direction == -1 else 'ASC'}")
    # stable tie-break across workers
    parts.append("id ASC")
    return ", ".join(parts)


class Storage:
    def __init__(self, db_path=None):
        self.db_path = db_path or DEFAULT_DB_PATH
        self._lock = threading.RLock()
        try:
            # autocommit; multi-statement operations open BEGIN IMMEDIATE themselves
            self.conn = sqlite3.connect(self.db_path, timeout=30.0,
                                        check_same_thread=False, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open job store {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row

        with self._guard():
            # Better concurrency for multiple workers
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
            self._init_schema()

    def _init_schema(self):
        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'normal',
            data TEXT,
            priority INTEGER NOT NULL DEFAULT 0,
            next_run_at TEXT,
            last_run_at TEXT,
            last_finished_at TEXT,
            locked_at TEXT,
            failed_at TEXT,
            fail_reason TEXT,
            fail_count INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            attempts_made INTEGER NOT NULL DEFAULT 0,
            backoff TEXT,
            repeat_interval TEXT,
            repeat_at TEXT,
            repeat_timezone TEXT,
            disabled INTEGER NOT NULL DEFAULT 0,
            should_save_result INTEGER NOT NULL DEFAULT 0,
            result TEXT,
            last_modified_by TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("""
        CREATE INDEX IF NOT EXISTS ix_jobs_find_and_lock
            ON jobs (name, disabled, locked_at, next_run_at, priority)
        """)
        self.conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_jobs_single_name
            ON jobs (name) WHERE type = 'single'
        """)

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

    @contextmanager
    def _guard(self):
        """Serialize use of the shared connection and map sqlite errors to StoreUnavailable."""
        with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e

    @contextmanager
    def _transaction(self):
        # BEGIN IMMEDIATE takes the database write lock up front, so a
        # select-then-update inside it is atomic across processes.
        with self._guard():
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
                self.conn.execute("COMMIT")
            except BaseException:
                # also reached when COMMIT itself fails
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------------- Job writes ----------------
    def insert(self, job: Job) -> str:
        now = utc_now()
        job.id = job.id or uuid.uuid4().hex
        job.created_at = job.created_at or now
        job.updated_at = now
        row = job.to_row()
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        with self._guard():
            self.conn.execute(f"INSERT INTO jobs ({cols}) VALUES ({marks})", tuple(row.values()))
        return job.id

    def save(self, job: Job) -> bool:
        """Write every column of an existing row; False if the row is gone."""
        job.updated_at = utc_now()
        row = job.to_row()
        row.pop("id")
        row.pop("created_at")
        sets = ", ".join(f"{col}=?" for col in row)
        with self._guard():
            cur = self.conn.execute(f"UPDATE jobs SET {sets} WHERE id=?", (*row.values(), job.id))
        return cur.rowcount == 1

    def upsert_single(self, job: Job, now: Optional[datetime] = None) -> str:
        """Insert or update the one row of a single-type job, keyed by name."""
        now = now or utc_now()
        job.type = JOB_TYPE_SINGLE
        job.updated_at = now
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT * FROM jobs WHERE name=? AND type=?", (job.name, JOB_TYPE_SINGLE)
            ).fetchone()
            if existing is None:
                job.id = job.id or uuid.uuid4().hex
                job.created_at = job.created_at or now
                row = job.to_row()
                conn.execute(
                    f"INSERT INTO jobs ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
                    tuple(row.values()),
                )
                return job.id

            row = job.to_row()
            values = {col: row[col] for col in SINGLE_UPSERT_COLUMNS}
            # An immediate run request must not reset an existing schedule
            if job.next_run_at is not None and job.next_run_at <= now:
                values["next_run_at"] = existing["next_run_at"]
            sets = ", ".join(f"{col}=?" for col in values)
            conn.execute(f"UPDATE jobs SET {sets} WHERE id=?", (*values.values(), existing["id"]))
            updated = Job.from_row(conn.execute("SELECT * FROM jobs WHERE id=?", (existing["id"],)).fetchone())

        for col in JOB_COLUMNS:
            setattr(job, col, getattr(updated, col))
        return job.id

    def compare_and_set(self, job_id: str, expected_locked_at: Optional[datetime], values: Dict) -> bool:
        """
        Update a job only while it still carries the lock we took.
        False means another worker relocked it (or it was removed).
        """
        values = dict(values)
        values["updated_at"] = utc_now()
        sets = ", ".join(f"{col}=?" for col in values)
        params = [_sql_value(v) for v in values.values()]
        if expected_locked_at is None:
            where = "id=? AND locked_at IS NULL"
            params.append(job_id)
        else:
            where = "id=? AND locked_at=?"
            params.extend([job_id, to_iso(expected_locked_at)])
        with self._guard():
            cur = self.conn.execute(f"UPDATE jobs SET {sets} WHERE {where}", tuple(params))
        return cur.rowcount == 1

    def claim(self, filter: Filter, update: Dict, sort: Optional[Dict[str, int]] = None) -> Optional[Job]:
        """
        Atomically find one job matching `filter`, apply `update` and return
        the updated job. None when nothing matched or another worker won.
        """
        where, params = filter
        order_by = build_order_by(sort)
        sets = ", ".join(f"{col}=?" for col in update)
        set_params = tuple(_sql_value(v) for v in update.values())
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT id FROM jobs WHERE {where} ORDER BY {order_by} LIMIT 1", params
            ).fetchone()
            if row is None:
                return None
            cur = conn.execute(
                f"UPDATE jobs SET {sets} WHERE id=? AND ({where})", (*set_params, row["id"], *params)
            )
            if cur.rowcount != 1:
                return None
            claimed = conn.execute("SELECT * FROM jobs WHERE id=?", (row["id"],)).fetchone()
        return Job.from_row(claimed)

    def update_many(self, filters: Optional[Dict], values: Dict) -> int:
        where, params = build_where(filters)
        values = dict(values)
        values["updated_at"] = utc_now()
        sets = ", ".join(f"{col}=?" for col in values)
        with self._guard():
            cur = self.conn.execute(
                f"UPDATE jobs SET {sets} WHERE {where}",
                (*(_sql_value(v) for v in values.values()), *params),
            )
        return cur.rowcount

    def delete(self, filters: Optional[Dict]) -> List[Job]:
        where, params = build_where(filters)
        with self._transaction() as conn:
            rows = conn.execute(f"SELECT * FROM jobs WHERE {where}", params).fetchall()
            conn.execute(f"DELETE FROM jobs WHERE {where}", params)
        return [Job.from_row(r) for r in rows]

    def delete_unknown_names(self, known_names: Iterable[str]) -> int:
        names = list(known_names)
        with self._guard():
            if names:
                cur = self.conn.execute(
                    f"DELETE FROM jobs WHERE name NOT IN ({','.join('?' for _ in names)})", tuple(names)
                )
            else:
                cur = self.conn.execute("DELETE FROM jobs")
        return cur.rowcount

    # ---------------- Job reads ----------------
    def get(self, job_id: str) -> Optional[Job]:
        with self._guard():
            row = self.conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return Job.from_row(row) if row else None

    def find(self, filters: Optional[Dict] = None, sort: Optional[Dict[str, int]] = None,
             limit: int = 0, skip: int = 0) -> List[Job]:
        where, params = build_where(filters)
        sql = f"SELECT * FROM jobs WHERE {where} ORDER BY {build_order_by(sort)}"
        if limit or skip:
            sql += " LIMIT ? OFFSET ?"
            params = (*params, limit if limit else -1, skip)
        with self._guard():
            rows = self.conn.execute(sql, params).fetchall()
        return [Job.from_row(r) for r in rows]

    def find_where(self, where: str, params: tuple = ()) -> List[Job]:
        with self._guard():
            rows = self.conn.execute(f"SELECT * FROM jobs WHERE {where}", params).fetchall()
        return [Job.from_row(r) for r in rows]

    def count(self, filters: Optional[Dict] = None) -> int:
        where, params = build_where(filters)
        with self._guard():
            row = self.conn.execute(f"SELECT COUNT(*) AS c FROM jobs WHERE {where}", params).fetchone()
        return row["c"]

    def count_by_state(self) -> Dict[str, int]:
        with self._guard():
            rows = self.conn.execute(
                f"SELECT {STATE_CASE_SQL} AS state, COUNT(*) AS count FROM jobs GROUP BY state"
            ).fetchall()
        return {r["state"]: r["count"] for r in rows}

    def find_by_state(self, state: str, limit: int = 50, name: Optional[str] = None) -> List[Job]:
        where, params = f"{STATE_CASE_SQL} = ?", (state,)
        if name:
            where, params = where + " AND name = ?", params + (name,)
        with self._guard():
            rows = self.conn.execute(
                f"SELECT * FROM jobs WHERE {where} ORDER BY updated_at DESC LIMIT ?", (*params, limit)
            ).fetchall()
        return [Job.from_row(r) for r in rows]

    def find_with_failures(self, limit: int = 100) -> List[Job]:
        """Jobs that failed terminally or have failed at least once, most recent first."""
        with self._guard():
            rows = self.conn.execute(
                f"SELECT * FROM jobs WHERE {STATE_CASE_SQL} = 'failed' OR fail_count > 0 "
                "ORDER BY failed_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [Job.from_row(r) for r in rows]

    def totals(self) -> Dict[str, int]:
        with self._guard():
            row = self.conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(fail_count), 0) AS failures, "
                "COUNT(DISTINCT last_modified_by) AS workers FROM jobs"
            ).fetchone()
        return dict(row)

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._guard():
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = to_iso(utc_now())
        with self._guard():
            self.conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def all_config(self) -> List[sqlite3.Row]:
        with self._guard():
            return self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
