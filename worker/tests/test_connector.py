import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import requests


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spsync.changes import CrawlCancelled, CursorStore, PollResult
from spsync.config import ConnectorConfig, SharePointUrl
from spsync.connector import SharePointConnector, StartupError, check_full_read_permission
from spsync.models import ContentDatabase, GroupDescription, GroupMembership, GroupPrincipal, PolicyUser, Site, VirtualServer
from spsync.permissions import FULL_READ_PERMISSION_MASK, SPBasePermissions
from spsync.pusher import Record
from spsync.response import DocRequest, DocResponse
from spsync.site import SiteHandle
from spsync.soap import SoapError


@patch("spsync.connector.emit")
class FullReadPermissionTests(unittest.TestCase):
    def _vs(self, mask):
        return VirtualServer(url="http://sp/", policy_users=[PolicyUser("i:0#.w|dom\\crawler", mask, 0)])

    def test_exact_full_read(self, _emit):
        self.assertEqual(check_full_read_permission(self._vs(FULL_READ_PERMISSION_MASK), "DOM\\Crawler"), 1)

    def test_extra_rights_are_not_full_read(self, _emit):
        self.assertEqual(check_full_read_permission(self._vs(FULL_READ_PERMISSION_MASK | SPBasePermissions.MANAGELISTS), "dom\\crawler"), 0)

    def test_user_missing_from_policy(self, _emit):
        self.assertEqual(check_full_read_permission(self._vs(FULL_READ_PERMISSION_MASK), "dom\\someone"), -1)
        self.assertEqual(check_full_read_permission(self._vs(FULL_READ_PERMISSION_MASK), ""), -1)


class ConnectorTestCase(unittest.TestCase):
    server = "http://sp"
    include = ""
    feed_max_urls = 5000

    def setUp(self):
        for target in ("spsync.connector.emit", "spsync.auth_context.emit", "spsync.config.emit", "spsync.site.emit"):
            patcher = patch(target)
            patcher.start()
            self.addCleanup(patcher.stop)
        site_data_patcher = patch("spsync.site.SiteDataClient")
        self.site_data = site_data_patcher.start().return_value
        self.addCleanup(site_data_patcher.stop)

        self.pusher = MagicMock()
        config = ConnectorConfig(
            sharepoint_url=SharePointUrl(self.server, "", self.include),
            username="dom\\crawler",
            worker_pool_size=2,
            feed_max_urls=self.feed_max_urls,
        )
        self.connector = SharePointConnector(
            config,
            self.pusher,
            transport=MagicMock(),
            fetcher=MagicMock(),
            cursor_store=CursorStore(),
        )
        self.addCleanup(self.connector.destroy)


class VirtualServerConnectorTests(ConnectorTestCase):
    include = "http://sp/sites/a"

    def test_init_fails_fast_when_server_unreachable(self):
        self.site_data.get_content_virtual_server.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(StartupError):
            self.connector.init()

    def test_init_permits_hosts_of_listed_sites(self):
        self.site_data.get_content_virtual_server.return_value = VirtualServer("http://sp/", ["{db1}"])
        self.site_data.get_content_content_database.return_value = ContentDatabase("{db1}", "c1", ["http://other:8080/sites/x"])
        self.connector.init()
        self.assertTrue(self.connector.auth.is_permitted_host("http://sp/anything"))
        self.assertTrue(self.connector.auth.is_permitted_host("http://other:8080/"))

    def test_full_listing_pushes_root_and_group_definitions(self):
        self.site_data.get_content_virtual_server.return_value = VirtualServer("http://sp/", ["{db1}"])
        self.site_data.get_content_content_database.return_value = ContentDatabase("{db1}", "c1", ["/sites/a", "/sites/b"])
        self.site_data.get_content_site.return_value = Site(
            id="{a}",
            url="http://sp/sites/a",
            change_id="c",
            groups=[GroupMembership(GroupDescription(3, "Owners"), [])],
        )

        stats = self.connector.get_doc_ids()

        self.assertEqual(stats, {"doc_ids": 1, "sites": 1, "groups": 1})
        self.pusher.push_doc_ids.assert_called_once_with([""])
        self.pusher.push_group_definitions.assert_called_once_with(
            {GroupPrincipal("Owners", "Default_http://sp/sites/a"): []}
        )

    def test_incremental_pushes_discovery_first_then_each_scope(self):
        tracker = MagicMock()
        tracker.iter_virtual_server.return_value = iter(
            [
                PollResult(doc_ids={""}),
                PollResult(doc_ids={"http://sp/sites/a/Lists/l/1_.000"}),
            ]
        )
        self.connector._tracker = tracker

        stats = self.connector.get_modified_doc_ids()

        tracker.reset_cancel.assert_called_once_with()
        self.assertEqual(
            self.pusher.push_records.call_args_list,
            [
                call([Record("", crawl_immediately=True)]),
                call([Record("http://sp/sites/a/Lists/l/1_.000", crawl_immediately=True)]),
            ],
        )
        self.assertEqual(stats, {"doc_ids": 2, "security_changed": 0})

    def test_security_change_repushes_site_groups(self):
        tracker = MagicMock()
        tracker.iter_virtual_server.return_value = iter(
            [PollResult(), PollResult(doc_ids={"http://sp/sites/a"}, security_changed={"http://sp/sites/a"})]
        )
        self.connector._tracker = tracker
        self.site_data.get_content_site.return_value = Site(
            id="{a}",
            url="http://sp/sites/a",
            change_id="c",
            groups=[GroupMembership(GroupDescription(4, "Members"), [])],
        )

        self.connector.get_modified_doc_ids()

        self.pusher.push_records.assert_called_once_with([Record("http://sp/sites/a", crawl_immediately=True)])
        self.pusher.push_group_definitions.assert_called_once_with(
            {GroupPrincipal("Members", "Default_http://sp/sites/a"): []}
        )

    def test_doc_on_unpermitted_host_is_not_found(self):
        response = self.connector.get_doc_content(DocRequest("http://elsewhere/sites/a/doc.txt"))
        self.assertTrue(response.not_found)

    def test_document_failure_is_reported_as_not_found(self):
        self.connector.auth.add_permit_for_host("http://sp")
        handle = MagicMock(site_url="http://sp/sites/a")
        handle.get_doc_content.side_effect = SoapError(500, "boom", "http://sp/sites/a")
        with patch.object(SiteHandle, "get_handle_for_url", return_value=handle):
            response = self.connector.get_doc_content(DocRequest("http://sp/sites/a/doc.txt"))
        self.assertTrue(response.not_found)

    def test_document_outside_included_sites_is_not_found(self):
        self.connector.auth.add_permit_for_host("http://sp")
        handle = MagicMock(site_url="http://sp/sites/b")
        with patch.object(SiteHandle, "get_handle_for_url", return_value=handle):
            response = self.connector.get_doc_content(DocRequest("http://sp/sites/b/doc.txt"))
        self.assertTrue(response.not_found)
        handle.get_doc_content.assert_not_called()

    def test_document_is_served_by_its_web_handle(self):
        self.connector.auth.add_permit_for_host("http://sp")
        expected = DocResponse(content=b"hello")
        handle = MagicMock(site_url="http://sp/sites/a")
        handle.get_doc_content.return_value = expected
        with patch.object(SiteHandle, "get_handle_for_url", return_value=handle):
            response = self.connector.get_doc_content(DocRequest("http://sp/sites/a/doc.txt"))
        self.assertIs(response, expected)


class IncrementalGroupBatchingTests(ConnectorTestCase):
    feed_max_urls = 2

    def setUp(self):
        super().setUp()
        self.site_data.get_content_site.return_value = Site(
            id="{s}",
            url="http://sp/sites/s",
            change_id="c",
            groups=[GroupMembership(GroupDescription(4, "Members"), [])],
        )

    def _members(self, site_url):
        return GroupPrincipal("Members", f"Default_{site_url}")

    def test_group_definitions_are_pushed_in_batches(self):
        tracker = MagicMock()
        tracker.iter_virtual_server.return_value = iter(
            [
                PollResult(),
                PollResult(security_changed={"http://sp/sites/a", "http://sp/sites/b"}),
                PollResult(security_changed={"http://sp/sites/c"}),
            ]
        )
        self.connector._tracker = tracker

        self.connector.get_modified_doc_ids()

        self.assertEqual(
            self.pusher.push_group_definitions.call_args_list,
            [
                call({self._members("http://sp/sites/a"): [], self._members("http://sp/sites/b"): []}),
                call({self._members("http://sp/sites/c"): []}),
            ],
        )

    def test_cancelled_poll_still_pushes_committed_changes(self):
        def partials():
            yield PollResult()
            raise CrawlCancelled(
                "stop",
                PollResult(doc_ids={"http://sp/sites/a/Lists/l/1_.000"}, security_changed={"http://sp/sites/a"}),
            )

        tracker = MagicMock()
        tracker.iter_virtual_server.return_value = partials()
        self.connector._tracker = tracker

        with self.assertRaises(CrawlCancelled):
            self.connector.get_modified_doc_ids()

        self.pusher.push_records.assert_called_once_with([Record("http://sp/sites/a/Lists/l/1_.000", crawl_immediately=True)])
        self.pusher.push_group_definitions.assert_called_once_with({self._members("http://sp/sites/a"): []})

    def test_member_loads_do_not_share_the_push_pool(self):
        identity_pool = self.connector._identity._members._executor
        push_pool = self.connector._services.background._executor
        self.assertIsNot(identity_pool, push_pool)
        self.assertIs(self.connector._identity._site_users._executor, identity_pool)


class SiteCollectionConnectorTests(ConnectorTestCase):
    server = "http://sp/sites/a"

    def test_virtual_server_doc_is_not_found(self):
        self.assertTrue(self.connector.get_doc_content(DocRequest("")).not_found)

    def test_site_url_match_is_case_sensitive(self):
        self.connector.auth.add_permit_for_host("http://sp")
        handle = MagicMock(site_url="http://sp/sites/A")
        with patch.object(SiteHandle, "get_handle_for_url", return_value=handle):
            response = self.connector.get_doc_content(DocRequest("http://sp/sites/A/doc.txt"))
        self.assertTrue(response.not_found)

    def test_full_listing_pushes_site_and_groups(self):
        self.site_data.get_content_site.return_value = Site(
            id="{a}",
            url="http://sp/sites/a/",
            change_id="c",
            groups=[GroupMembership(GroupDescription(3, "Owners"), None)],
        )
        self.assertEqual(self.connector.get_doc_ids(), {"doc_ids": 1, "groups": 1})
        self.pusher.push_doc_ids.assert_called_once_with(["http://sp/sites/a"])
        self.pusher.push_group_definitions.assert_called_once_with(
            {GroupPrincipal("Owners", "Default_http://sp/sites/a"): []}
        )


if __name__ == "__main__":
    unittest.main()
