import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spsync.auth_context import AuthContext
from spsync.content_fetch import ContentFetchError, ContentFetcher, FileInfo, content_type_for


def fake_response(status_code, headers=None, content=b""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.content = content
    return resp


@patch("spsync.content_fetch.emit")
class ContentFetcherTests(unittest.TestCase):
    def _fetcher(self, responses, *, lenient=True, max_redirects=20):
        session = MagicMock()
        session.get.side_effect = responses
        auth = AuthContext("user", "pw")
        with patch("spsync.auth_context.emit"):
            auth.add_permit_for_host("http://sp")
        return ContentFetcher(auth, lenient=lenient, max_redirects=max_redirects, session=session), session

    def test_ok_body_and_headers(self, _emit):
        fetcher, session = self._fetcher([fake_response(200, {"Content-Type": "text/plain"}, b"hello")])
        info = fetcher.issue_get("http://sp/sites/a/doc one.txt")
        self.assertEqual(info.contents, b"hello")
        self.assertEqual(info.header("content-type"), "text/plain")
        url = session.get.call_args.args[0]
        self.assertEqual(url, "http://sp/sites/a/doc%20one.txt")
        self.assertIn("auth", session.get.call_args.kwargs)
        self.assertFalse(session.get.call_args.kwargs["allow_redirects"])

    def test_not_found_returns_none(self, _emit):
        fetcher, _session = self._fetcher([fake_response(404)])
        self.assertIsNone(fetcher.issue_get("http://sp/missing.txt"))

    def test_relative_redirect_is_followed(self, _emit):
        fetcher, session = self._fetcher(
            [fake_response(302, {"Location": "/sites/b/doc.txt"}), fake_response(200, content=b"moved")]
        )
        self.assertEqual(fetcher.issue_get("http://sp/sites/a/doc.txt").contents, b"moved")
        self.assertEqual(session.get.call_args.args[0], "http://sp/sites/b/doc.txt")

    def test_redirect_bound_allows_exactly_max_redirects(self, _emit):
        fetcher, _session = self._fetcher(
            [fake_response(301, {"Location": "http://sp/1"}), fake_response(200, content=b"ok")],
            max_redirects=1,
        )
        self.assertEqual(fetcher.issue_get("http://sp/0").contents, b"ok")

        fetcher, _session = self._fetcher(
            [fake_response(301, {"Location": "http://sp/1"}), fake_response(301, {"Location": "http://sp/2"})],
            max_redirects=1,
        )
        with self.assertRaises(ContentFetchError):
            fetcher.issue_get("http://sp/0")

    def test_zero_redirects_configured(self, _emit):
        fetcher, _session = self._fetcher([fake_response(302, {"Location": "http://sp/1"})], max_redirects=0)
        with self.assertRaises(ContentFetchError):
            fetcher.issue_get("http://sp/0")

    def test_sharepoint_error_header_fails(self, _emit):
        fetcher, _session = self._fetcher([fake_response(200, {"SharePointError": "2"})])
        with self.assertRaisesRegex(ContentFetchError, "server load"):
            fetcher.issue_get("http://sp/busy.txt")

    def test_unexpected_status_fails(self, _emit):
        fetcher, _session = self._fetcher([fake_response(500)])
        with self.assertRaises(ContentFetchError):
            fetcher.issue_get("http://sp/broken.txt")

    def test_strict_mode_leaves_redirects_to_requests(self, _emit):
        fetcher, session = self._fetcher([fake_response(200, content=b"x")], lenient=False, max_redirects=-1)
        fetcher.issue_get("http://sp/a.txt")
        self.assertTrue(session.get.call_args.kwargs["allow_redirects"])

    def test_credentials_only_sent_to_permitted_hosts(self, _emit):
        fetcher, session = self._fetcher([fake_response(200, content=b"x")])
        fetcher.issue_get("http://other/a.txt")
        self.assertNotIn("auth", session.get.call_args.kwargs)

    def test_redirect_location_only_for_302(self, _emit):
        fetcher, _session = self._fetcher([fake_response(302, {"Location": "http://sp/l/AllItems.aspx"}), fake_response(200)])
        self.assertEqual(fetcher.get_redirect_location("http://sp/l"), "http://sp/l/AllItems.aspx")
        self.assertIsNone(fetcher.get_redirect_location("http://sp/l"))


class MimeTypeTests(unittest.TestCase):
    def test_legacy_office_types_are_mapped(self):
        self.assertEqual(
            content_type_for("/a/b.docx", "application/vnd.ms-word.document.12"),
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        )

    def test_extension_override_and_passthrough(self):
        self.assertEqual(content_type_for("/mail/note.MSG", "application/octet-stream"), "application/vnd.ms-outlook")
        self.assertEqual(content_type_for("/a/b.pdf", "application/pdf"), "application/pdf")
        self.assertIsNone(content_type_for("/a/b", None))

    def test_file_info_header_lookup_is_case_insensitive(self):
        self.assertEqual(FileInfo(b"", {"Last-Modified": "x"}).header("last-modified"), "x")


if __name__ == "__main__":
    unittest.main()
