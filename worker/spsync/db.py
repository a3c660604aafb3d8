import os
import random
import re
import time
from contextlib import contextmanager
from typing import Optional

import psycopg2
import psycopg2.extras

from spsync.runtime_logger import emit


DB_URL = os.getenv("DATABASE_URL")
DB_CONNECT_TIMEOUT_SECONDS = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "10"))
DB_WRITE_MAX_RETRIES = int(os.getenv("DB_WRITE_MAX_RETRIES", "6"))
DB_WRITE_RETRY_BASE_MS = int(os.getenv("DB_WRITE_RETRY_BASE_MS", "200"))
DB_WRITE_RETRY_MAX_MS = int(os.getenv("DB_WRITE_RETRY_MAX_MS", "3000"))
DB_WRITE_RETRY_JITTER_MS = int(os.getenv("DB_WRITE_RETRY_JITTER_MS", "150"))

# deadlock, lock_not_available, serialization_failure
RETRYABLE_DB_SQLSTATES = {"40P01", "55P03", "40001"}

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS change_cursors (
      scope_id text PRIMARY KEY,
      cursor text NOT NULL,
      updated_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_runs (
      run_id uuid PRIMARY KEY,
      crawl_type text NOT NULL,
      started_at timestamptz NOT NULL DEFAULT now(),
      finished_at timestamptz,
      status text NOT NULL,
      error text
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_run_logs (
      log_id bigserial PRIMARY KEY,
      run_id uuid NOT NULL,
      logged_at timestamptz NOT NULL DEFAULT now(),
      level text NOT NULL,
      message text NOT NULL,
      context jsonb NOT NULL DEFAULT '{}'::jsonb
    )
    """,
)


def configure(url: Optional[str]):
    global DB_URL
    DB_URL = url or None


def is_configured() -> bool:
    return bool(DB_URL)


def _classify_write_query(query: str) -> tuple[str, str]:
    normalized = " ".join((query or "").strip().split())
    for op, pattern in (
        ("insert", r"(?is)^insert\s+into\s+([a-zA-Z0-9_.\"]+)"),
        ("update", r"(?is)^update\s+([a-zA-Z0-9_.\"]+)"),
        ("delete", r"(?is)^delete\s+from\s+([a-zA-Z0-9_.\"]+)"),
    ):
        match = re.match(pattern, normalized)
        if match:
            return op, match.group(1).strip('"')
    return "unknown", "unknown"


def get_conn():
    if not DB_URL:
        raise RuntimeError("DATABASE_URL is not set")
    return psycopg2.connect(DB_URL, connect_timeout=DB_CONNECT_TIMEOUT_SECONDS)


@contextmanager
def get_cursor(commit: bool = False):
    conn = get_conn()
    try:
        cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        yield cur
        if commit:
            conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction():
    conn = get_conn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_one(query, params=None):
    with get_cursor() as cur:
        cur.execute(query, params or [])
        return cur.fetchone()


def fetch_all(query, params=None):
    with get_cursor() as cur:
        cur.execute(query, params or [])
        return cur.fetchall()


def execute(query, params=None):
    op, table = _classify_write_query(query)
    with get_cursor(commit=True) as cur:
        try:
            cur.execute(query, params or [])
        except Exception as exc:
            emit("ERROR", "DB_CONN", f"Write failed: table={table} op={op} error={exc}")
            raise
        return cur.rowcount


def execute_with_retry(query, params=None):
    """execute() retried with capped backoff on lock and serialization conflicts."""
    max_retries = max(0, DB_WRITE_MAX_RETRIES)
    attempt = 0
    while True:
        try:
            return execute(query, params)
        except psycopg2.Error as exc:
            if not is_retryable_db_error(exc) or attempt >= max_retries:
                raise
            attempt += 1
            sleep_s = compute_db_write_retry_sleep_seconds(
                attempt,
                base_ms=max(1, DB_WRITE_RETRY_BASE_MS),
                max_ms=max(DB_WRITE_RETRY_BASE_MS, DB_WRITE_RETRY_MAX_MS),
                jitter_ms=max(0, DB_WRITE_RETRY_JITTER_MS),
            )
            emit(
                "WARN",
                "DB_CONN",
                f"Write retrying: sqlstate={get_db_error_sqlstate(exc)} attempt={attempt}/{max_retries} sleep_s={sleep_s:.2f}",
            )
            time.sleep(sleep_s)


def ensure_schema():
    with transaction() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
    emit("INFO", "DB_CONN", "Schema ensured: tables=change_cursors,crawl_runs,crawl_run_logs")


def try_advisory_lock(cur, key: str) -> bool:
    lock_key = str(key)
    try:
        cur.execute("SELECT pg_try_advisory_lock(hashtext(%s))", [lock_key])
        locked = bool(cur.fetchone()[0])
    except Exception as exc:
        emit("ERROR", "DB_CONN", f"Advisory lock failed: key={lock_key} error={exc}")
        raise
    if locked:
        emit("INFO", "DB_CONN", f"Advisory lock acquired: key={lock_key}")
    else:
        emit("WARN", "DB_CONN", f"Advisory lock not_acquired: key={lock_key}")
    return locked


def advisory_unlock(cur, key: str) -> bool:
    lock_key = str(key)
    try:
        cur.execute("SELECT pg_advisory_unlock(hashtext(%s))", [lock_key])
        unlocked = bool(cur.fetchone()[0])
    except Exception as exc:
        emit("ERROR", "DB_CONN", f"Advisory lock release failed: key={lock_key} error={exc}")
        raise
    if not unlocked:
        emit("WARN", "DB_CONN", f"Advisory lock release_not_held: key={lock_key}")
    return unlocked


def get_db_error_sqlstate(exc: BaseException):
    pgcode = getattr(exc, "pgcode", None)
    if pgcode:
        return pgcode
    return getattr(getattr(exc, "__cause__", None), "pgcode", None)


def is_retryable_db_error(exc: BaseException) -> bool:
    sqlstate = get_db_error_sqlstate(exc)
    return bool(sqlstate and sqlstate in RETRYABLE_DB_SQLSTATES)


def compute_db_write_retry_sleep_seconds(attempt: int, *, base_ms: int, max_ms: int, jitter_ms: int) -> float:
    # attempt is 1-based.
    capped_ms = min(max_ms, base_ms * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0, jitter_ms) if jitter_ms > 0 else 0.0
    return max(0.0, (capped_ms + jitter) / 1000.0)
