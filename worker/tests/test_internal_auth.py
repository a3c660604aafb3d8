import os
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spsync.api import create_app
from spsync.changes import CursorStore
from spsync.response import DocResponse


TOKEN_HEADERS = {"X-Worker-Internal-Token": "worker-secret-token"}


class WorkerInternalAuthTests(unittest.TestCase):
    def setUp(self):
        self.original_token = os.environ.get("WORKER_INTERNAL_API_TOKEN")
        os.environ["WORKER_INTERNAL_API_TOKEN"] = "worker-secret-token"
        self.connector = MagicMock()
        app = create_app(self.connector)
        self.client = app.test_client()

    def tearDown(self):
        if self.original_token is None:
            os.environ.pop("WORKER_INTERNAL_API_TOKEN", None)
        else:
            os.environ["WORKER_INTERNAL_API_TOKEN"] = self.original_token

    def test_worker_endpoints_require_internal_token(self):
        cases = [
            ("GET", "/health", None),
            ("GET", "/crawl/status", None),
            ("POST", "/crawl/run-now", {"crawl_type": "full"}),
            ("POST", "/crawl/cancel", None),
            ("GET", "/docs/content?doc_id=", None),
        ]
        for method, path, payload in cases:
            with self.subTest(method=method, path=path):
                response = self.client.open(path=path, method=method, json=payload)
                self.assertEqual(response.status_code, 401)
                self.assertEqual(response.get_json(), {"error": "missing_internal_token"})

    def test_wrong_token_is_rejected(self):
        response = self.client.get("/health", headers={"X-Worker-Internal-Token": "nope"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json(), {"error": "invalid_internal_token"})

    @patch("spsync.api.db.is_configured", return_value=False)
    def test_crawl_status_accepts_valid_internal_token(self, _is_configured):
        store = CursorStore()
        store.put("{db1}", "1;0;{db1};10;20")
        self.connector.tracker.store = store
        self.connector.auth.permitted_hosts.return_value = ["sp:80"]

        response = self.client.get("/crawl/status", headers=TOKEN_HEADERS)

        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["runs"], [])
        self.assertEqual(body["cursors"], {"{db1}": "1;0;{db1};10;20"})
        self.assertEqual(body["permitted_hosts"], ["sp:80"])

    def test_run_now_validates_crawl_type(self):
        response = self.client.post("/crawl/run-now", headers=TOKEN_HEADERS, json={})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "crawl_type_required"})
        response = self.client.post("/crawl/run-now", headers=TOKEN_HEADERS, json={"crawl_type": "partial"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "unknown_crawl_type"})

    @patch("spsync.api.Thread")
    def test_run_now_queues_background_crawl(self, mock_thread):
        response = self.client.post("/crawl/run-now", headers=TOKEN_HEADERS, json={"crawl_type": "incremental"})
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.get_json(), {"status": "queued", "crawl_type": "incremental"})
        self.assertEqual(mock_thread.call_args.kwargs["args"], ("incremental",))
        mock_thread.return_value.start.assert_called_once_with()

    def test_cancel_signals_connector(self):
        response = self.client.post("/crawl/cancel", headers=TOKEN_HEADERS)
        self.assertEqual(response.status_code, 202)
        self.connector.cancel.assert_called_once_with()

    def test_doc_content_not_found(self):
        self.connector.get_doc_content.return_value = DocResponse().respond_not_found()
        response = self.client.get("/docs/content?doc_id=http://sp/missing", headers=TOKEN_HEADERS)
        self.assertEqual(response.status_code, 404)
        body = response.get_json()
        self.assertEqual(body["error"], "not_found")
        self.assertEqual(body["doc_id"], "http://sp/missing")

    def test_doc_content_passes_if_modified_since(self):
        self.connector.get_doc_content.return_value = DocResponse(display_url="http://sp/doc")
        response = self.client.get(
            "/docs/content?doc_id=http://sp/doc",
            headers={**TOKEN_HEADERS, "If-Modified-Since": "Wed, 21 Oct 2015 07:28:00 GMT"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["display_url"], "http://sp/doc")
        request = self.connector.get_doc_content.call_args.args[0]
        self.assertEqual(request.doc_id, "http://sp/doc")
        self.assertEqual(request.last_access_time.year, 2015)


if __name__ == "__main__":
    unittest.main()
