"""Incremental change detection.

Each scope (a content database, or the one site collection in
site-collection-only mode) has an opaque change cursor. Polling walks the
scope's change feed page by page and stores the cursor after every page, so a
crash never replays a delivered page and a transport failure never skips one.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

import psycopg2
import requests

from spsync import db
from spsync.acl import VIRTUAL_SERVER_DOC_ID
from spsync.auth_context import AuthContext
from spsync.config import SharePointUrl
from spsync.models import ChangeKind, ChangeNode
from spsync.runtime_logger import emit
from spsync.soap import SoapError, XmlProcessingError
from spsync.urls import canonical_url


CHANGE_UNCHANGED = "Unchanged"
CHANGE_DELETE = "Delete"
CHANGE_UPDATE_SECURITY = "UpdateSecurity"

# Remote failures that abandon a scope's poll until the next cycle.
REMOTE_ERRORS = (SoapError, requests.RequestException)

_CHILD_KIND = {
    ChangeKind.CONTENT_DATABASE: ChangeKind.SITE,
    ChangeKind.SITE: ChangeKind.WEB,
    ChangeKind.WEB: ChangeKind.LIST,
    ChangeKind.LIST: ChangeKind.ITEM,
}


class CrawlCancelled(Exception):
    """Raised at a page boundary.

    ``partial`` holds the changes of the pages whose cursor was already
    stored; the caller must still deliver them.
    """

    def __init__(self, message: str, partial: Optional["PollResult"] = None):
        super().__init__(message)
        self.partial = partial if partial is not None else PollResult()


def is_modified(change: str) -> bool:
    # Deletes are left for the index to expire on its own.
    return change not in (CHANGE_UNCHANGED, CHANGE_DELETE)


@dataclass
class PollResult:
    doc_ids: set[str] = field(default_factory=set)
    security_changed: set[str] = field(default_factory=set)

    def merge(self, other: "PollResult") -> "PollResult":
        self.doc_ids |= other.doc_ids
        self.security_changed |= other.security_changed
        return self

    def __bool__(self) -> bool:
        return bool(self.doc_ids or self.security_changed)


class CursorStore:
    """scope id -> change cursor, optionally mirrored to the change_cursors table."""

    def __init__(self, persist: bool = False):
        self._persist = persist
        self._lock = threading.Lock()
        self._cursors: Dict[str, str] = {}

    def load(self):
        if not self._persist:
            return
        rows = db.fetch_all("SELECT scope_id, cursor FROM change_cursors")
        with self._lock:
            self._cursors = {row["scope_id"]: row["cursor"] for row in rows}
        emit("INFO", "CHANGES", f"Change cursors loaded: scopes={len(rows)}")

    def get(self, scope_id: str) -> Optional[str]:
        with self._lock:
            return self._cursors.get(scope_id)

    def scope_ids(self) -> set[str]:
        with self._lock:
            return set(self._cursors)

    def put(self, scope_id: str, cursor: str):
        if self._persist:
            db.execute_with_retry(
                """
                INSERT INTO change_cursors (scope_id, cursor, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (scope_id) DO UPDATE SET
                  cursor = EXCLUDED.cursor,
                  updated_at = EXCLUDED.updated_at
                """,
                [scope_id, cursor],
            )
        with self._lock:
            self._cursors[scope_id] = cursor

    def put_if_absent(self, scope_id: str, cursor: str) -> str:
        existing = self.get(scope_id)
        if existing is not None:
            return existing
        self.put(scope_id, cursor)
        return cursor

    def remove(self, scope_id: str):
        if self._persist:
            db.execute_with_retry("DELETE FROM change_cursors WHERE scope_id = %s", [scope_id])
        with self._lock:
            self._cursors.pop(scope_id, None)


class ChangeCursorTracker:
    def __init__(
        self,
        store: CursorStore,
        sharepoint_url: SharePointUrl,
        auth: Optional[AuthContext] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._store = store
        self._sharepoint_url = sharepoint_url
        self._auth = auth
        self._cancel_event = cancel_event or threading.Event()

    @property
    def store(self) -> CursorStore:
        return self._store

    def cancel(self):
        self._cancel_event.set()

    def reset_cancel(self):
        self._cancel_event.clear()

    def _check_cancelled(self, scope_id: str):
        if self._cancel_event.is_set():
            raise CrawlCancelled(f"Change polling cancelled: scope={scope_id}")

    def _include_site(self, site_url: str, result: PollResult):
        if not self._sharepoint_url.is_site_collection_included(site_url):
            return
        result.doc_ids.add(site_url)
        if self._auth is not None:
            self._auth.add_permit_for_host(site_url)

    # -- discovery ----------------------------------------------------------

    def discover_scopes(self, client) -> tuple[list[str], PollResult]:
        """Sync the known content databases with the server's list.

        Returns the databases to poll (known before and still present) and
        the documents changed by the discovery itself.
        """
        result = PollResult()
        known = self._store.scope_ids()
        try:
            vs = client.get_content_virtual_server()
            discovered = set(vs.content_database_ids)
        except REMOTE_ERRORS + (XmlProcessingError,) as exc:
            emit("WARN", "CHANGES", f"Could not retrieve list of content databases, reusing known scopes: error={exc}")
            discovered = set(known)

        removed = known - discovered
        new = discovered - known
        if removed or new:
            result.doc_ids.add(VIRTUAL_SERVER_DOC_ID)
        for scope_id in sorted(removed):
            self._store.remove(scope_id)
            emit("INFO", "CHANGES", f"Content database no longer reported, cursor dropped: scope={scope_id}")
        for scope_id in sorted(new):
            try:
                cd = client.get_content_content_database(scope_id, True)
            except REMOTE_ERRORS + (XmlProcessingError,) as exc:
                emit("WARN", "CHANGES", f"Could not retrieve change id for content database: scope={scope_id} error={exc}")
                continue
            if not cd.change_id:
                emit("WARN", "CHANGES", f"Content database reported no change id: scope={scope_id}")
                continue
            self._store.put(scope_id, cd.change_id)
            for site_url in cd.site_urls or []:
                self._include_site(canonical_url(site_url), result)
            emit("INFO", "CHANGES", f"Content database discovered, cursor seeded: scope={scope_id}")
        return sorted(known & discovered), result

    # -- polling ------------------------------------------------------------

    def _drain(self, scope_id: str, paginator, *, root_doc: bool) -> PollResult:
        result = PollResult()
        try:
            while True:
                self._check_cancelled(scope_id)
                page_result = PollResult()
                try:
                    page = paginator.next()
                    if page is None:
                        break
                    for node in page:
                        self.walk(node, page_result, root_doc=root_doc)
                except XmlProcessingError as exc:
                    # The paginator already moved past this page; retrying would loop forever.
                    emit("WARN", "CHANGES", f"Error parsing changes, page skipped: scope={scope_id} error={exc}")
                self._check_cancelled(scope_id)
                try:
                    self._store.put(scope_id, paginator.cursor)
                except psycopg2.Error as exc:
                    # The page is delivered again once the cursor can be stored.
                    emit("ERROR", "CHANGES", f"Could not store change cursor, will resume next cycle: scope={scope_id} error={exc}")
                    break
                result.merge(page_result)
        except REMOTE_ERRORS as exc:
            emit("WARN", "CHANGES", f"Error getting changes, will resume next cycle: scope={scope_id} error={exc}")
        except CrawlCancelled as exc:
            exc.partial = result
            raise
        return result

    def poll_content_database(self, client, scope_id: str) -> PollResult:
        cursor = self._store.get(scope_id)
        if cursor is None:
            return PollResult()
        paginator = client.get_changes_content_database(scope_id, cursor)
        return self._drain(scope_id, paginator, root_doc=True)

    def iter_virtual_server(self, client) -> Iterator[PollResult]:
        """Discovery result first, then one result per polled content database."""
        scopes, discovery = self.discover_scopes(client)
        yield discovery
        for scope_id in scopes:
            yield self.poll_content_database(client, scope_id)

    def poll_virtual_server(self, client) -> PollResult:
        result = PollResult()
        for partial in self.iter_virtual_server(client):
            result.merge(partial)
        return result

    def poll_site_collection(self, client) -> PollResult:
        try:
            site = client.get_content_site()
        except REMOTE_ERRORS + (XmlProcessingError,) as exc:
            emit("WARN", "CHANGES", f"Could not retrieve site collection for change polling: error={exc}")
            return PollResult()
        if not site.id or not site.change_id:
            emit("WARN", "CHANGES", "Invalid site object, unable to process incremental updates")
            return PollResult()
        cursor = self._store.put_if_absent(site.id, site.change_id)
        paginator = client.get_changes_sp_site(site.id, cursor)
        return self._drain(site.id, paginator, root_doc=False)

    # -- traversal ----------------------------------------------------------

    def walk(self, node: ChangeNode, result: PollResult, *, root_doc: bool = True):
        """Add the documents changed under ``node`` to ``result``.

        Every level decides on its own change state; an unchanged site may
        still hold modified items.
        """
        kind = node.kind
        url = node.server_url + node.display_url
        if kind == ChangeKind.CONTENT_DATABASE:
            if root_doc and node.change != CHANGE_UNCHANGED:
                result.doc_ids.add(VIRTUAL_SERVER_DOC_ID)
        elif kind == ChangeKind.SITE:
            site_url = canonical_url(url)
            if not self._sharepoint_url.is_site_collection_included(site_url):
                return
            if is_modified(node.change):
                self._include_site(site_url, result)
                if node.change == CHANGE_UPDATE_SECURITY:
                    result.security_changed.add(site_url)
        elif kind == ChangeKind.WEB:
            if is_modified(node.change):
                result.doc_ids.add(canonical_url(url))
        elif kind == ChangeKind.LIST:
            if is_modified(node.change):
                result.doc_ids.add(url)
        elif kind == ChangeKind.ITEM:
            if is_modified(node.change):
                if node.item_server_url is None:
                    emit("WARN", "CHANGES", f"Could not find server url attribute for list item: id={node.id}")
                else:
                    result.doc_ids.add(node.server_url + node.item_server_url)

        expected = _CHILD_KIND.get(kind)
        for child in node.children:
            if child.kind == expected:
                self.walk(child, result, root_doc=root_doc)
