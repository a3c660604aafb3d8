import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spsync import scheduler
from spsync.changes import CrawlCancelled


class FakeCursor:
    def __init__(self):
        self._next_row = None
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        normalized = " ".join(sql.split()).lower()
        if normalized.startswith("insert into crawl_runs"):
            self._next_row = ("run-1",)
        else:
            self._next_row = None

    def fetchone(self):
        return self._next_row


class FakeConnection:
    def __init__(self):
        self.cursor_obj = FakeCursor()
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self):
        return self.cursor_obj

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


class SchedulerInvalidCronTests(unittest.TestCase):
    def setUp(self):
        scheduler.configure(MagicMock(), full_cron="bad cron", incremental_cron="*/15 * * * *")

    @patch("spsync.scheduler.emit")
    @patch("spsync.scheduler.db.get_conn")
    @patch("spsync.scheduler.db.is_configured", return_value=True)
    def test_invalid_cron_schedule_is_auto_disabled(self, _is_configured, mock_get_conn, _mock_emit):
        fake_conn = FakeConnection()
        mock_get_conn.return_value = fake_conn

        scheduler._disable_invalid_schedule(
            crawl_type="full",
            cron_expr="bad cron",
            error_reason="invalid_cron_expr: bad",
        )

        executed = fake_conn.cursor_obj.executed
        executed_sql = [sql for sql, _params in executed]
        self.assertTrue(any("INSERT INTO crawl_runs" in sql for sql in executed_sql))
        self.assertTrue(any("INSERT INTO crawl_run_logs" in sql for sql in executed_sql))
        log_params = [params for sql, params in executed if "crawl_run_logs" in sql][0]
        self.assertEqual(log_params[0], "run-1")
        self.assertEqual(log_params[2], "schedule_invalid_cron_disabled")
        self.assertTrue(fake_conn.committed)
        self.assertTrue(fake_conn.closed)
        self.assertFalse(scheduler._schedules["full"]["enabled"])

    @patch("spsync.scheduler.emit")
    @patch("spsync.scheduler.db.is_configured", return_value=False)
    def test_due_check_disables_invalid_cron_without_database(self, _is_configured, _mock_emit):
        scheduler._run_due_schedule(datetime(2026, 1, 1, tzinfo=timezone.utc))

        self.assertFalse(scheduler._schedules["full"]["enabled"])
        self.assertIn("invalid_cron_expr", scheduler._schedules["full"]["error"])
        self.assertTrue(scheduler._schedules["incremental"]["enabled"])
        self.assertIsNotNone(scheduler._schedules["incremental"]["next_run_at"])


@patch("spsync.scheduler.emit")
@patch("spsync.scheduler.db.is_configured", return_value=False)
class SchedulerRunTests(unittest.TestCase):
    def setUp(self):
        self.connector = MagicMock()
        scheduler.configure(self.connector, full_cron="0 3 * * *", incremental_cron="*/15 * * * *")

    def test_first_pickup_only_schedules(self, _is_configured, _emit):
        with patch("spsync.scheduler.run_crawl_once") as mock_run:
            scheduler._run_due_schedule(datetime(2026, 1, 1, 1, 0, tzinfo=timezone.utc))
        mock_run.assert_not_called()
        self.assertEqual(
            scheduler._schedules["full"]["next_run_at"],
            datetime(2026, 1, 1, 3, 0, tzinfo=timezone.utc),
        )

    def test_due_schedule_runs_one_crawl_per_tick(self, _is_configured, _emit):
        now = datetime(2026, 1, 1, 3, 1, tzinfo=timezone.utc)
        scheduler._schedules["full"]["next_run_at"] = now - timedelta(minutes=1)
        scheduler._schedules["incremental"]["next_run_at"] = now - timedelta(minutes=1)
        with patch("spsync.scheduler.run_crawl_once") as mock_run:
            scheduler._run_due_schedule(now)
        mock_run.assert_called_once_with("full", trigger="schedule")
        self.assertGreater(scheduler._schedules["full"]["next_run_at"], now)

    def test_full_crawl_records_success(self, _is_configured, _emit):
        self.connector.get_doc_ids.return_value = {"doc_ids": 1}
        run_id = scheduler.run_crawl_once("full")
        self.assertIsNotNone(run_id)
        last = scheduler.get_scheduler_status()["last_runs"]["full"]
        self.assertEqual(last["status"], "success")
        self.assertEqual(last["stats"], {"doc_ids": 1})
        self.assertIsNone(scheduler.get_scheduler_status()["crawl_in_progress"])

    def test_cancelled_crawl_is_recorded(self, _is_configured, _emit):
        self.connector.get_modified_doc_ids.side_effect = CrawlCancelled("stop")
        scheduler.run_crawl_once("incremental")
        self.assertEqual(scheduler.get_scheduler_status()["last_runs"]["incremental"]["status"], "cancelled")

    def test_failed_crawl_is_recorded(self, _is_configured, _emit):
        self.connector.get_modified_doc_ids.side_effect = RuntimeError("boom")
        scheduler.run_crawl_once("incremental")
        last = scheduler.get_scheduler_status()["last_runs"]["incremental"]
        self.assertEqual(last["status"], "failed")
        self.assertEqual(last["error"], "boom")

    def test_concurrent_crawl_is_skipped(self, _is_configured, _emit):
        scheduler._run_lock.acquire()
        try:
            self.assertIsNone(scheduler.run_crawl_once("full"))
        finally:
            scheduler._run_lock.release()
        self.connector.get_doc_ids.assert_not_called()

    def test_unknown_crawl_type(self, _is_configured, _emit):
        with self.assertRaises(ValueError):
            scheduler.run_crawl_once("partial")


if __name__ == "__main__":
    unittest.main()
