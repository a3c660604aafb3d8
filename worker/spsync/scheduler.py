import json
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from croniter import croniter

from spsync import db
from spsync.changes import CrawlCancelled
from spsync.runtime_logger import emit
from spsync.utils import log_crawl_run_log

SCHEDULER_POLL_SECONDS = int(os.getenv("SCHEDULER_POLL_SECONDS", "30"))

CRAWL_FULL = "full"
CRAWL_INCREMENTAL = "incremental"
CRAWL_TYPES = (CRAWL_FULL, CRAWL_INCREMENTAL)

# One lock for both crawl types: a full and an incremental crawl never overlap.
CRAWL_LOCK_KEY = "spsync_crawl"

INTERRUPTED_RUN_ERROR = "interrupted_worker_restart"

_connector = None
_run_lock = threading.Lock()
_schedules: Dict[str, Dict[str, Any]] = {}

_scheduler_status = {
    "running": False,
    "last_tick": None,
    "last_error": None,
    "crawl_in_progress": None,
    "schedules": _schedules,
    "last_runs": {},
}


def get_scheduler_status():
    return _scheduler_status


def configure(connector, *, full_cron: str, incremental_cron: str):
    global _connector
    _connector = connector
    _schedules.clear()
    _schedules[CRAWL_FULL] = {"cron_expr": full_cron, "enabled": True, "next_run_at": None}
    _schedules[CRAWL_INCREMENTAL] = {"cron_expr": incremental_cron, "enabled": True, "next_run_at": None}


def start_scheduler_thread():
    thread = threading.Thread(target=_scheduler_loop, daemon=True)
    thread.start()
    emit("INFO", "SCHEDULER", "Scheduler thread started")


def _scheduler_loop():
    _scheduler_status["running"] = True
    if db.is_configured():
        try:
            recovered = _recover_interrupted_runs()
            if recovered:
                emit("WARN", "SCHEDULER", f"Recovered interrupted runs at startup: count={recovered}")
        except Exception as exc:
            emit("ERROR", "SCHEDULER", f"Failed recovering interrupted runs: error={exc}")
    while True:
        _scheduler_status["last_tick"] = datetime.now(timezone.utc).isoformat()
        try:
            _run_due_schedule()
            _scheduler_status["last_error"] = None
        except Exception as exc:
            _scheduler_status["last_error"] = str(exc)
            emit("ERROR", "SCHEDULER", f"Scheduler loop failure: error={exc}")
        time.sleep(SCHEDULER_POLL_SECONDS)


def _run_due_schedule(now: Optional[datetime] = None):
    now = now or datetime.now(timezone.utc)
    for crawl_type in CRAWL_TYPES:
        schedule = _schedules.get(crawl_type)
        if not schedule or not schedule["enabled"]:
            continue
        next_run_at = schedule["next_run_at"]
        if next_run_at is None or next_run_at <= now:
            try:
                following = _compute_next_run(schedule["cron_expr"], now)
            except Exception as exc:
                _disable_invalid_schedule(
                    crawl_type=crawl_type,
                    cron_expr=schedule["cron_expr"],
                    error_reason=f"invalid_cron_expr: {exc}",
                )
                continue
            schedule["next_run_at"] = following
            if next_run_at is None:
                emit(
                    "INFO",
                    "SCHEDULER",
                    f"New schedule picked up: crawl_type={crawl_type} next_run_at={following.isoformat()}",
                )
                continue
            emit("INFO", "SCHEDULER", f"Scheduled crawl triggered: crawl_type={crawl_type}")
            run_crawl_once(crawl_type, trigger="schedule")
            # One crawl per tick; the other type waits for the next tick.
            return


def _disable_invalid_schedule(*, crawl_type: str, cron_expr, error_reason: str):
    cron_expr = str(cron_expr or "")
    short_error = str(error_reason or "invalid_cron_expr").replace("\n", " ").replace("\r", " ").strip()
    if len(short_error) > 300:
        short_error = short_error[:297] + "..."

    schedule = _schedules.get(crawl_type)
    if schedule is not None:
        schedule["enabled"] = False
        schedule["next_run_at"] = None
        schedule["error"] = short_error

    emit(
        "ERROR",
        "SCHEDULER",
        f"Disabled invalid schedule: crawl_type={crawl_type} cron_expr='{cron_expr}' error={short_error}",
    )
    if not db.is_configured():
        return

    conn = db.get_conn()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO crawl_runs (run_id, crawl_type, started_at, finished_at, status, error)
            VALUES (%s, %s, now(), now(), 'failed', %s)
            RETURNING run_id
            """,
            [str(uuid.uuid4()), crawl_type, short_error],
        )
        run_row = cur.fetchone()
        if run_row:
            cur.execute(
                """
                INSERT INTO crawl_run_logs (run_id, level, message, context)
                VALUES (%s, %s, %s, %s::jsonb)
                """,
                [
                    str(run_row[0]),
                    "ERROR",
                    "schedule_invalid_cron_disabled",
                    _json_context(
                        {
                            "crawl_type": crawl_type,
                            "cron_expr": cron_expr,
                            "error": short_error,
                            "trigger": "scheduler_validation",
                        }
                    ),
                ],
            )
        conn.commit()
    except Exception as exc:
        conn.rollback()
        emit("ERROR", "SCHEDULER", f"Failed to record invalid schedule: crawl_type={crawl_type} error={exc}")
    finally:
        conn.close()


def _json_context(context: Dict[str, Any]) -> str:
    return json.dumps(context, default=str)


def _recover_interrupted_runs() -> int:
    conn = db.get_conn()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE crawl_runs
            SET finished_at = now(),
                status = 'failed',
                error = COALESCE(error, %s)
            WHERE status = 'running'
              AND finished_at IS NULL
            RETURNING run_id, crawl_type
            """,
            [INTERRUPTED_RUN_ERROR],
        )
        rows = cur.fetchall()
        conn.commit()
    finally:
        conn.close()

    for row in rows:
        run_id = str(row[0])
        try:
            log_crawl_run_log(
                run_id=run_id,
                level="ERROR",
                message="crawl_interrupted_recovered",
                context={"crawl_type": row[1], "error": INTERRUPTED_RUN_ERROR, "trigger": "worker_recovery"},
            )
        except Exception as exc:
            emit("WARN", "SCHEDULER", f"Recovered run log write failed: run_id={run_id} error={exc}")
    return len(rows)


def run_crawl_once(crawl_type: str, trigger: str = "run_now") -> Optional[str]:
    """Run one crawl synchronously; returns the run id, or None when skipped."""
    if crawl_type not in CRAWL_TYPES:
        raise ValueError(f"Unknown crawl_type: {crawl_type}")
    if _connector is None:
        raise RuntimeError("Scheduler is not configured with a connector")
    if not _run_lock.acquire(blocking=False):
        emit("WARN", "SCHEDULER", f"Crawl skipped: another crawl is in progress crawl_type={crawl_type} trigger={trigger}")
        return None
    try:
        if db.is_configured():
            return _run_locked_in_db(crawl_type, trigger)
        run_id = str(uuid.uuid4())
        _run_and_record(crawl_type, run_id, trigger)
        return run_id
    finally:
        _run_lock.release()


def _run_locked_in_db(crawl_type: str, trigger: str) -> Optional[str]:
    conn = db.get_conn()
    try:
        cur = conn.cursor()
        locked = db.try_advisory_lock(cur, CRAWL_LOCK_KEY)
        if not locked:
            conn.rollback()
            emit("WARN", "SCHEDULER", f"Crawl skipped: advisory lock unavailable crawl_type={crawl_type} trigger={trigger}")
            return None

        run_id = _insert_crawl_run(cur, crawl_type)
        conn.commit()
        try:
            status, error = _run_and_record(crawl_type, run_id, trigger)
            cur.execute(
                "UPDATE crawl_runs SET finished_at = now(), status = %s, error = %s WHERE run_id = %s",
                [status, error, run_id],
            )
        finally:
            db.advisory_unlock(cur, CRAWL_LOCK_KEY)
            conn.commit()
        return run_id
    finally:
        conn.close()


def _insert_crawl_run(cur, crawl_type: str) -> str:
    cur.execute(
        """
        INSERT INTO crawl_runs (run_id, crawl_type, started_at, status)
        VALUES (%s, %s, now(), 'running')
        RETURNING run_id
        """,
        [str(uuid.uuid4()), crawl_type],
    )
    return str(cur.fetchone()[0])


def _run_and_record(crawl_type: str, run_id: str, trigger: str) -> tuple[str, Optional[str]]:
    started_at = datetime.now(timezone.utc)
    _scheduler_status["crawl_in_progress"] = {"crawl_type": crawl_type, "run_id": run_id, "started_at": started_at.isoformat()}
    emit("INFO", "SCHEDULER", f"Crawl started: crawl_type={crawl_type} run_id={run_id} trigger={trigger}")
    try:
        status, error, stats = _execute_crawl(crawl_type, run_id=run_id)
    finally:
        _scheduler_status["crawl_in_progress"] = None

    _scheduler_status["last_runs"][crawl_type] = {
        "run_id": run_id,
        "trigger": trigger,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "status": status,
        "error": error,
        "stats": stats,
    }
    if status == "success":
        emit("INFO", "SCHEDULER", f"Crawl finished: crawl_type={crawl_type} run_id={run_id} status={status} stats={stats}")
    else:
        emit("ERROR", "SCHEDULER", f"Crawl finished: crawl_type={crawl_type} run_id={run_id} status={status} error={error}")
    _log_run(
        run_id,
        "INFO" if status == "success" else "ERROR",
        "crawl_finished",
        {"crawl_type": crawl_type, "trigger": trigger, "status": status, "error": error, "stats": stats},
    )
    return status, error


def _log_run(run_id: str, level: str, message: str, context: Dict[str, Any]):
    if not db.is_configured():
        return
    try:
        log_crawl_run_log(run_id=run_id, level=level, message=message, context=context)
    except Exception as exc:
        emit("WARN", "SCHEDULER", f"Crawl run log write failed: run_id={run_id} error={exc}")


def _compute_next_run(cron_expr, base: Optional[datetime] = None):
    base = base or datetime.now(timezone.utc)
    itr = croniter(cron_expr, base)
    return itr.get_next(datetime)


def _execute_crawl(crawl_type: str, *, run_id: str):
    try:
        _log_run(run_id, "INFO", f"{crawl_type}_crawl_started", {"crawl_type": crawl_type})
        if crawl_type == CRAWL_FULL:
            stats = _connector.get_doc_ids()
        else:
            stats = _connector.get_modified_doc_ids()
        return "success", None, stats
    except CrawlCancelled as exc:
        emit("WARN", "SCHEDULER", f"Crawl cancelled: crawl_type={crawl_type} run_id={run_id}")
        return "cancelled", str(exc), None
    except Exception as exc:
        emit("ERROR", "SCHEDULER", f"Crawl execution failed: crawl_type={crawl_type} run_id={run_id} error={exc}")
        _log_run(run_id, "ERROR", "crawl_exception", {"crawl_type": crawl_type, "error": str(exc)})
        return "failed", str(exc), None
