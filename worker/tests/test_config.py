import sys
import unittest
from pathlib import Path
from unittest.mock import patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spsync.config import ConnectorConfig, InvalidConfigurationError, SharePointUrl, resolve_max_redirects
from spsync.urls import canonical_url, encode_sharepoint_url, host_key, root_url, sp_url_to_uri


@patch("spsync.config.emit")
class SharePointUrlTests(unittest.TestCase):
    def test_bare_host_is_virtual_server_mode(self, _emit):
        url = SharePointUrl("http://sp.example.com/", "", "")
        self.assertFalse(url.site_collection_only)
        self.assertEqual(url.sharepoint_url, "http://sp.example.com")
        self.assertEqual(url.virtual_server_url, "http://sp.example.com")

    def test_path_implies_site_collection_mode(self, _emit):
        url = SharePointUrl("http://sp.example.com/sites/team", "", "")
        self.assertTrue(url.site_collection_only)
        self.assertEqual(url.virtual_server_url, "http://sp.example.com")

    def test_explicit_mode_overrides_inference(self, _emit):
        self.assertFalse(SharePointUrl("http://sp/sites/team", "false", "").site_collection_only)
        self.assertTrue(SharePointUrl("http://sp", "true", "").site_collection_only)

    def test_include_list_is_case_insensitive_and_canonical(self, _emit):
        url = SharePointUrl("http://sp", "", "http://sp/sites/A/, http://sp/sites/b")
        self.assertTrue(url.is_site_collection_included("http://sp/sites/a"))
        self.assertTrue(url.is_site_collection_included("http://SP/sites/B/"))
        self.assertFalse(url.is_site_collection_included("http://sp/sites/c"))

    def test_empty_include_list_includes_everything(self, _emit):
        self.assertTrue(SharePointUrl("http://sp", "", "").is_site_collection_included("http://sp/sites/any"))

    def test_include_list_rejects_site_collection_server(self, _emit):
        with self.assertRaises(InvalidConfigurationError):
            SharePointUrl("http://sp/sites/team", "", "http://sp/sites/a")

    def test_include_list_rejects_site_collection_only_flag(self, _emit):
        with self.assertRaises(InvalidConfigurationError):
            SharePointUrl("http://sp", "true", "http://sp/sites/a")

    def test_malformed_url_is_rejected(self, _emit):
        with self.assertRaises(InvalidConfigurationError):
            SharePointUrl("sp.example.com", "", "")


class MaxRedirectsTests(unittest.TestCase):
    def test_defaults(self):
        self.assertEqual(resolve_max_redirects("", True), 20)
        self.assertEqual(resolve_max_redirects("", False), -1)
        self.assertEqual(resolve_max_redirects("3", True), 3)

    def test_invalid_values(self):
        for raw, lenient in (("-1", True), ("abc", True), ("3", False)):
            with self.subTest(raw=raw, lenient=lenient):
                with self.assertRaises(InvalidConfigurationError):
                    resolve_max_redirects(raw, lenient)


@patch("spsync.config.emit")
class ConnectorConfigTests(unittest.TestCase):
    def test_from_env_defaults(self, _emit):
        config = ConnectorConfig.from_env({"SHAREPOINT_SERVER": "http://sp"})
        self.assertEqual(config.namespace, "Default")
        self.assertTrue(config.honor_read_security)
        self.assertEqual(config.member_cache_refresh_seconds, 30 * 60)
        self.assertEqual(config.member_cache_expire_seconds, 45 * 60)
        self.assertEqual(config.max_redirects, 20)
        self.assertFalse(config.uses_app_credentials)

    def test_server_is_required(self, _emit):
        with self.assertRaises(InvalidConfigurationError):
            ConnectorConfig.from_env({})

    def test_expire_must_exceed_refresh(self, _emit):
        env = {"SHAREPOINT_SERVER": "http://sp", "MEMBER_CACHE_REFRESH_MINUTES": "45", "MEMBER_CACHE_EXPIRE_MINUTES": "30"}
        with self.assertRaises(InvalidConfigurationError):
            ConnectorConfig.from_env(env)

    def test_non_numeric_values_fail_fast(self, _emit):
        with self.assertRaises(InvalidConfigurationError):
            ConnectorConfig.from_env({"SHAREPOINT_SERVER": "http://sp", "FEED_MAX_URLS": "lots"})

    def test_password_is_not_in_repr(self, _emit):
        config = ConnectorConfig.from_env({"SHAREPOINT_SERVER": "http://sp", "SHAREPOINT_PASSWORD": "hunter2"})
        self.assertNotIn("hunter2", repr(config))


class UrlTests(unittest.TestCase):
    def test_canonical_url_strips_one_trailing_slash(self):
        self.assertEqual(canonical_url("http://sp/sites/a/"), "http://sp/sites/a")
        self.assertEqual(canonical_url("http://sp/sites/a//"), "http://sp/sites/a/")
        self.assertEqual(canonical_url("http://sp/sites/a"), "http://sp/sites/a")

    def test_sp_url_to_uri_escapes_path_only(self):
        self.assertEqual(sp_url_to_uri("http://sp/sites/a/My Doc.docx"), "http://sp/sites/a/My%20Doc.docx")
        self.assertEqual(sp_url_to_uri("http://sp"), "http://sp")
        with self.assertRaises(ValueError):
            sp_url_to_uri("nohost")

    def test_lenient_encoding_adds_root_path_before_query(self):
        self.assertEqual(encode_sharepoint_url("http://sp?ID=1", True), "http://sp/?ID=1")
        self.assertEqual(encode_sharepoint_url("http://sp/a b?x=1 2", True), "http://sp/a%20b?x=1%202")

    def test_root_url_and_host_key(self):
        self.assertEqual(root_url("https://sp.example.com:8443/sites/a"), "https://sp.example.com:8443")
        self.assertEqual(host_key("https://SP.example.com/sites/a"), "sp.example.com:443")
        self.assertEqual(host_key("http://sp.example.com/"), "sp.example.com:80")


if __name__ == "__main__":
    unittest.main()
