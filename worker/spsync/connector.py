"""Crawl orchestration: startup checks, full listing, incremental polling and
document retrieval, composed from the site handles, ACL engine and change
tracker.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

import requests

from spsync.acl import VIRTUAL_SERVER_DOC_ID, AclCycleError, ScopeNotFoundError
from spsync.auth_context import AppTokenProvider, AuthContext
from spsync.changes import ChangeCursorTracker, CrawlCancelled, CursorStore, PollResult
from spsync.claims import policy_account_name
from spsync.config import ConnectorConfig
from spsync.content_fetch import ContentFetchError, ContentFetcher
from spsync.identity import IdentityCache
from spsync.models import VirtualServer
from spsync.permissions import is_full_read_mask
from spsync.pusher import BackgroundPusher, DocIdPusher, GroupDefinitionBatcher, Record
from spsync.rare_cache import RareModificationCache
from spsync.registry import SiteRegistry
from spsync.response import DocRequest, DocResponse
from spsync.runtime_logger import emit
from spsync.site import SiteHandle, SiteServices
from spsync.soap import SoapError, SoapTransport, XmlProcessingError
from spsync.urls import canonical_url, root_url


# Member mapping loads get their own pool; background pushes never occupy it.
IDENTITY_LOAD_WORKERS = 2

# Failures that make a single document unavailable without affecting the crawl.
DOCUMENT_ERRORS = (
    SoapError,
    XmlProcessingError,
    ContentFetchError,
    ScopeNotFoundError,
    AclCycleError,
    LookupError,
    ValueError,
    requests.RequestException,
)


class StartupError(Exception):
    pass


def check_full_read_permission(vs: VirtualServer, username: str) -> int:
    """-1 when the user is not in the web application policy, 0 when its grant
    is anything but exactly full read, 1 when it is exactly full read."""
    if not username:
        emit("WARN", "CONNECTOR", "Unable to get connector user name")
        return -1
    policy_user = None
    for candidate in vs.policy_users:
        account = policy_account_name(candidate.login_name)
        if account is not None and account.lower() == username.lower():
            policy_user = candidate
            break
    if policy_user is None:
        emit("INFO", "CONNECTOR", f"Connector user not in web application policy: user={username}")
        return -1
    if not is_full_read_mask(policy_user.grant_mask):
        emit(
            "WARN",
            "CONNECTOR",
            f"Connector user does not have exactly full read permission; excess or missing rights may affect crawling: user={username}",
        )
        return 0
    return 1


class SharePointConnector:
    def __init__(
        self,
        config: ConnectorConfig,
        pusher: DocIdPusher,
        *,
        transport: Optional[SoapTransport] = None,
        fetcher: Optional[ContentFetcher] = None,
        auth: Optional[AuthContext] = None,
        cursor_store: Optional[CursorStore] = None,
    ):
        self._config = config
        self._pusher = pusher
        sharepoint_url = config.sharepoint_url
        if auth is None:
            token_provider = None
            if config.uses_app_credentials:
                token_provider = AppTokenProvider(
                    config.tenant_id,
                    config.client_id,
                    config.client_secret,
                    sharepoint_url.virtual_server_url,
                )
            auth = AuthContext(config.username, config.password, token_provider)
        self._auth = auth
        self._push_executor = ThreadPoolExecutor(max_workers=config.worker_pool_size, thread_name_prefix="spsync-push")
        self._identity_executor = ThreadPoolExecutor(max_workers=IDENTITY_LOAD_WORKERS, thread_name_prefix="spsync-identity")
        self._transport = transport or SoapTransport(
            auth,
            max_retries=config.max_retries,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            user_agent=config.user_agent,
        )
        self._fetcher = fetcher or ContentFetcher(
            auth,
            lenient=config.lenient_url_rules,
            max_redirects=config.max_redirects,
            user_agent=config.user_agent,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        )
        self._identity = IdentityCache(
            lambda site_url: self._registry.get_site(site_url, site_url).retrieve_member_id_mapping(),
            lambda site_url: self._registry.get_site(site_url, site_url).retrieve_site_user_mapping(),
            refresh_after=config.member_cache_refresh_seconds,
            expire_after=config.member_cache_expire_seconds,
            executor=self._identity_executor,
        )
        self._services = SiteServices(
            config=config,
            transport=self._transport,
            fetcher=self._fetcher,
            identity=self._identity,
            rare_cache=RareModificationCache(config.rare_cache_ttl_seconds),
            background=BackgroundPusher(pusher, self._push_executor),
        )
        self._registry: SiteRegistry[SiteHandle] = SiteRegistry(
            lambda site_url, web_url: SiteHandle(site_url, web_url, self._services, self._registry)
        )
        self._tracker = ChangeCursorTracker(
            cursor_store or CursorStore(persist=bool(config.database_url)),
            sharepoint_url,
            auth,
        )

    @property
    def auth(self) -> AuthContext:
        return self._auth

    @property
    def tracker(self) -> ChangeCursorTracker:
        return self._tracker

    def get_site(self, site_url: str, web_url: str) -> SiteHandle:
        return self._registry.get_site(site_url, web_url)

    # -- lifecycle ----------------------------------------------------------

    def init(self):
        sharepoint_url = self._config.sharepoint_url
        self._auth.add_permit_for_host(sharepoint_url.virtual_server_url)
        try:
            self._tracker.store.load()
            if sharepoint_url.site_collection_only:
                self._init_site_collection()
            else:
                self._init_virtual_server()
        except requests.ConnectionError as exc:
            self.destroy()
            raise StartupError(
                f"Cannot connect to SharePoint server \"{sharepoint_url.sharepoint_url}\". "
                "Please make sure the server is specified correctly and reachable."
            ) from exc
        except SoapError as exc:
            self.destroy()
            raise StartupError(
                f"Cannot access SharePoint server \"{sharepoint_url.sharepoint_url}\" as user "
                f"\"{self._auth.username}\": {exc}"
            ) from exc
        emit("INFO", "CONNECTOR", f"Connector initialized: {sharepoint_url!r}")

    def _init_site_collection(self):
        url = self._config.sharepoint_url.sharepoint_url
        site = self.get_site(url, url).site_data.get_content_site()
        if canonical_url(site.url) != url:
            emit("WARN", "CONNECTOR", f"Configured site collection URL differs from server's: configured={url} server={site.url}")

    def _init_virtual_server(self):
        sharepoint_url = self._config.sharepoint_url
        vs_url = sharepoint_url.virtual_server_url
        handle = self.get_site(vs_url, vs_url)
        vs = handle.site_data.get_content_virtual_server()
        check_full_read_permission(vs, self._auth.username)

        available_in_mapping = False
        for content_database_id in vs.content_database_ids:
            try:
                cd = handle.site_data.get_content_content_database(content_database_id, True)
            except (SoapError, XmlProcessingError) as exc:
                emit("WARN", "CONNECTOR", f"Failed to get sites for content database: id={content_database_id} error={exc}")
                continue
            for site_url in cd.site_urls or []:
                site_url = handle.encode_doc_id(site_url)
                if site_url.lower() == vs_url.lower():
                    available_in_mapping = True
                self._auth.add_permit_for_host(site_url)
        if not available_in_mapping:
            emit(
                "WARN",
                "CONNECTOR",
                f"Virtual server URL is not a public URL in alternate access mapping; configure the public URL instead: url={vs_url}",
            )

    def destroy(self):
        self._tracker.cancel()
        self._push_executor.shutdown(wait=False)
        self._identity_executor.shutdown(wait=False)
        self._registry.clear()
        emit("INFO", "CONNECTOR", "Connector stopped")

    # -- full listing -------------------------------------------------------

    def get_doc_ids(self) -> Dict[str, Any]:
        if self._config.sharepoint_url.site_collection_only:
            return self._get_doc_ids_site_collection()
        return self._get_doc_ids_virtual_server()

    def _get_doc_ids_site_collection(self) -> Dict[str, Any]:
        url = self._config.sharepoint_url.sharepoint_url
        site = self.get_site(url, url).site_data.get_content_site()
        site_url = canonical_url(site.url)
        handle = self.get_site(site_url, site_url)
        self._pusher.push_doc_ids([handle.encode_doc_id(site_url)])
        self._pusher.push_group_definitions(handle.compute_members_for_groups(site.groups))
        return {"doc_ids": 1, "groups": len(site.groups)}

    def _get_doc_ids_virtual_server(self) -> Dict[str, Any]:
        vs_url = self._config.sharepoint_url.virtual_server_url
        vs_handle = self.get_site(vs_url, vs_url)
        self._pusher.push_doc_ids([VIRTUAL_SERVER_DOC_ID])
        vs = vs_handle.site_data.get_content_virtual_server()
        batcher = GroupDefinitionBatcher(self._pusher, self._config.feed_max_urls)
        sites = 0
        for content_database_id in vs.content_database_ids:
            try:
                cd = vs_handle.site_data.get_content_content_database(content_database_id, True)
            except (SoapError, XmlProcessingError) as exc:
                emit("WARN", "CONNECTOR", f"Failed to get content database: id={content_database_id} error={exc}")
                continue
            excluded = set()
            for listing_url in cd.site_urls or []:
                site_url = canonical_url(vs_handle.encode_doc_id(listing_url))
                if not self._config.sharepoint_url.is_site_collection_included(site_url):
                    excluded.add(site_url)
                    continue
                self._auth.add_permit_for_host(site_url)
                handle = self.get_site(site_url, site_url)
                try:
                    site = handle.site_data.get_content_site()
                except (SoapError, XmlProcessingError) as exc:
                    emit("WARN", "CONNECTOR", f"Failed to get local groups for site: site={site_url} error={exc}")
                    continue
                batcher.add(handle.compute_members_for_groups(site.groups))
                sites += 1
            if excluded:
                emit("INFO", "CONNECTOR", f"Site collections excluded from full listing: {sorted(excluded)}")
        batcher.flush()
        return {"doc_ids": 1, "sites": sites, "groups": batcher.pushed}

    # -- incremental --------------------------------------------------------

    def get_modified_doc_ids(self) -> Dict[str, Any]:
        self._tracker.reset_cancel()
        batcher = GroupDefinitionBatcher(self._pusher, self._config.feed_max_urls)
        try:
            return self._poll_and_push(batcher)
        except CrawlCancelled as exc:
            # Cursors of these pages are already stored.
            self._push_incremental(exc.partial, batcher)
            raise
        finally:
            batcher.flush()

    def _poll_and_push(self, batcher: GroupDefinitionBatcher) -> Dict[str, Any]:
        url = self._config.sharepoint_url.sharepoint_url
        if self._config.sharepoint_url.site_collection_only:
            handle = self.get_site(url, url)
            result = self._tracker.poll_site_collection(handle.site_data)
            self._push_incremental(result, batcher)
            return {"doc_ids": len(result.doc_ids), "security_changed": len(result.security_changed)}

        vs_url = self._config.sharepoint_url.virtual_server_url
        handle = self.get_site(vs_url, vs_url)
        total = PollResult()
        for index, partial in enumerate(self._tracker.iter_virtual_server(handle.site_data)):
            total.merge(partial)
            if index == 0:
                # Scope set changes go straight to the front of the crawl queue.
                if partial.doc_ids:
                    self._pusher.push_records([Record(doc_id, crawl_immediately=True) for doc_id in sorted(partial.doc_ids)])
                continue
            self._push_incremental(partial, batcher)
        return {"doc_ids": len(total.doc_ids), "security_changed": len(total.security_changed)}

    def _push_incremental(self, result: PollResult, batcher: GroupDefinitionBatcher):
        if result.doc_ids:
            self._pusher.push_records([Record(doc_id, crawl_immediately=True) for doc_id in sorted(result.doc_ids)])
        if not result.security_changed:
            return
        for site_url in sorted(result.security_changed):
            handle = self.get_site(site_url, site_url)
            try:
                site = handle.site_data.get_content_site()
            except (SoapError, XmlProcessingError, requests.RequestException) as exc:
                emit("WARN", "CONNECTOR", f"Failed to get local groups for site: site={site_url} error={exc}")
                continue
            batcher.add(handle.compute_members_for_groups(site.groups))

    def cancel(self):
        self._tracker.cancel()

    # -- documents ----------------------------------------------------------

    def _handle_for_doc_id(self, doc_id: str) -> Optional[SiteHandle]:
        sharepoint_url = self._config.sharepoint_url
        if not self._auth.is_permitted_host(doc_id):
            emit("WARN", "CONNECTOR", f"URL not in host allow-list: url={doc_id}")
            return None
        host = root_url(doc_id)
        handle = self.get_site(host, host).get_handle_for_url(doc_id)
        if handle is None:
            return None
        # Case-sensitive on purpose: a casing mismatch breaks ACL inheritance in the index.
        if sharepoint_url.site_collection_only and sharepoint_url.sharepoint_url != handle.site_url:
            return None
        if not sharepoint_url.is_site_collection_included(handle.site_url):
            return None
        return handle

    def get_doc_content(self, request: DocRequest) -> DocResponse:
        sharepoint_url = self._config.sharepoint_url
        try:
            if request.doc_id == VIRTUAL_SERVER_DOC_ID:
                if sharepoint_url.site_collection_only:
                    return DocResponse().respond_not_found()
                vs_url = sharepoint_url.virtual_server_url
                return self.get_site(vs_url, vs_url).get_virtual_server_doc_content(request)
            handle = self._handle_for_doc_id(request.doc_id)
            if handle is None:
                return DocResponse().respond_not_found()
            return handle.get_doc_content(request)
        except DOCUMENT_ERRORS as exc:
            emit("ERROR", "CONNECTOR", f"Document retrieval failed, responding not found: doc_id={request.doc_id} error={exc}")
            return DocResponse().respond_not_found()
