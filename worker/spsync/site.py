"""Per-web document handling.

A SiteHandle knows one site collection URL and one web URL inside it and
turns doc ids under that web into DocResponse objects: ACL, metadata,
display URL, child links and, for files, the body.
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlsplit

from spsync.acl import (
    SITE_COLLECTION_ADMIN_FRAGMENT,
    Acl,
    AclResolver,
    ScopeNotFoundError,
    item_acl,
    list_acls,
    scope_id_from_row,
    site_admin_acl,
    virtual_server_acl,
    web_acl,
)
from spsync.claims import user_description_to_principal
from spsync.config import ConnectorConfig
from spsync.content_fetch import ContentFetcher, content_type_for
from spsync.identity import IdentityCache, MemberIdMapping
from spsync.models import CachedList, CachedWeb, GroupMembership, GroupPrincipal, Principal, PrincipalInfo
from spsync.permissions import (
    LIST_READ_SECURITY_ENABLED,
    is_allow_anonymous_peek_for_web,
    is_allow_anonymous_read_for_list,
    is_allow_anonymous_read_for_web,
    is_deny_anonymous_access_on_virtual_server,
)
from spsync.pusher import BackgroundPusher
from spsync.rare_cache import RareModificationCache
from spsync.response import (
    ITEM_MODIFIED_FORMAT,
    LIST_MODIFIED_FORMAT,
    DocRequest,
    DocResponse,
    parse_http_date,
    parse_timestamp,
)
from spsync.runtime_logger import emit
from spsync.site_data import PeopleClient, SiteDataClient, UserGroupClient
from spsync.soap import SoapError, SoapTransport, XmlProcessingError
from spsync.urls import canonical_url, sp_url_to_uri, web_parent_url


METADATA_OBJECT_TYPE = "google:objecttype"
METADATA_PARENT_WEB_TITLE = "sharepoint:parentwebtitle"
METADATA_LIST_GUID = "sharepoint:listguid"

OBJECT_TYPE_VIRTUAL_SERVER = "VirtualServer"
OBJECT_TYPE_SITE = "Site"
OBJECT_TYPE_LIST = "List"
OBJECT_TYPE_FOLDER = "Folder"
OBJECT_TYPE_LIST_ITEM = "ListItem"
OBJECT_TYPE_DOCUMENT = "Document"
OBJECT_TYPE_ATTACHMENT = "Attachment"
OBJECT_TYPE_ASPX = "Aspx"

CONTENT_TYPE_ID_DOCUMENT_PREFIX = "0x0101"
FILEREF_LIST_ITEM_SUFFIX = "_.000"

_ALTERNATIVE_VALUE_PATTERN = re.compile(r"^\d+;#")
_METADATA_ESCAPE_PATTERN = re.compile(r"_x([0-9a-f]{4})_")
_INTEGER_PATTERN = re.compile(r"^[0-9]+$")


def decode_metadata_name(name: str) -> str:
    """'Space_x0020_Name' -> 'Space Name'."""
    return _METADATA_ESCAPE_PATTERN.sub(lambda m: chr(int(m.group(1), 16)), name)


def add_row_metadata(response: DocResponse, name: str, value: str):
    if name == "ows_MetaInfo":
        # Already split out by the server into the other ows_ fields.
        return
    if name.startswith("ows_"):
        name = name[len("ows_"):]
    name = decode_metadata_name(name)
    if _ALTERNATIVE_VALUE_PATTERN.match(value):
        # Lookup field: "314;#pi;#42;#the answer" carries ids at even positions.
        parts = value.split(";#")
        for part in parts[1::2]:
            if part:
                response.add_metadata(name, part)
    elif value.startswith(";#") and value.endswith(";#"):
        for part in value.split(";#"):
            if part:
                response.add_metadata(name, part)
    else:
        response.add_metadata(name, value)


@dataclass(frozen=True)
class SiteServices:
    """Collaborators shared by every SiteHandle of one connector."""

    config: ConnectorConfig
    transport: SoapTransport
    fetcher: ContentFetcher
    identity: IdentityCache
    rare_cache: RareModificationCache
    background: BackgroundPusher


class SiteHandle:
    def __init__(self, site_url: str, web_url: str, services: SiteServices, registry):
        self._site_url = site_url
        self._web_url = web_url
        self._services = services
        self._config = services.config
        self._registry = registry
        self._site_data = SiteDataClient(services.transport, web_url)
        self._user_group = UserGroupClient(services.transport, site_url)
        self._people = PeopleClient(services.transport, web_url)

    @property
    def site_url(self) -> str:
        return self._site_url

    @property
    def web_url(self) -> str:
        return self._web_url

    @property
    def site_data(self) -> SiteDataClient:
        return self._site_data

    def __repr__(self) -> str:
        return f"SiteHandle(site={self._site_url}, web={self._web_url})"

    # -- identity ---------------------------------------------------------

    def _namespace(self) -> str:
        return self._config.namespace

    def _group_namespace(self, site_url: str) -> str:
        return f"{self._namespace()}_{site_url}"

    def retrieve_member_id_mapping(self) -> MemberIdMapping:
        site = self._site_data.get_content_site()
        mapping: Dict[int, Principal] = {}
        for membership in site.groups:
            mapping[membership.group.id] = GroupPrincipal(membership.group.name, self._group_namespace(site.url))
        for user in site.web_users:
            principal = user_description_to_principal(user, self._namespace())
            if principal is None:
                emit("WARN", "IDENTITY", f"Unable to determine login name, skipping user: id={user.id} site={self._site_url}")
                continue
            mapping[user.id] = principal
        emit("INFO", "IDENTITY", f"Member id mapping loaded: site={self._site_url} size={len(mapping)}")
        return MemberIdMapping(mapping)

    def retrieve_site_user_mapping(self) -> MemberIdMapping:
        mapping: Dict[int, Principal] = {}
        for user in self._user_group.get_user_collection_from_site():
            principal = user_description_to_principal(user, self._namespace())
            if principal is None:
                emit("WARN", "IDENTITY", f"Unable to determine login name, skipping user: id={user.id} site={self._site_url}")
                continue
            mapping[user.id] = principal
        emit("INFO", "IDENTITY", f"Site user mapping loaded: site={self._site_url} size={len(mapping)}")
        return MemberIdMapping(mapping)

    def compute_members_for_groups(self, groups: list[GroupMembership]) -> Dict[GroupPrincipal, list[Principal]]:
        definitions: Dict[GroupPrincipal, list[Principal]] = {}
        for membership in groups:
            group = GroupPrincipal(membership.group.name, self._group_namespace(self._site_url))
            members: list[Principal] = []
            # Empty groups are defined too.
            definitions[group] = members
            for user in membership.users or []:
                principal = user_description_to_principal(user, self._namespace())
                if principal is None:
                    emit("WARN", "IDENTITY", f"Unable to determine login name, skipping group member: id={user.id}")
                    continue
                members.append(principal)
        return definitions

    def resolve_principals(self, login_names: list[str]) -> Dict[str, PrincipalInfo]:
        if not login_names:
            return {}
        infos = self._people.resolve_principals(login_names)
        # Keyed by the requested names: returned account names come back claim-encoded.
        return dict(zip(login_names, infos))

    # -- helpers ----------------------------------------------------------

    def encode_doc_id(self, url: str) -> str:
        if url.lower().startswith(("https://", "http://")):
            return url
        if not url.startswith("/"):
            return f"{self._web_url}/{url}"
        parts = self._web_url.split("/", 3)
        return f"{parts[0]}//{parts[2]}{url}"

    def _resolver(self) -> AclResolver:
        return AclResolver(self._services.identity, self._site_url, self._web_url)

    def _is_web_site_collection(self) -> bool:
        return self._site_url == self._web_url

    def _parent_handle(self) -> "SiteHandle":
        if self._is_web_site_collection():
            raise ValueError(f"Site collection root has no parent web: {self._web_url}")
        return self._registry.get_site(self._site_url, web_parent_url(self._web_url))

    def _cached_web(self) -> CachedWeb:
        return self._services.rare_cache.get_web(self._site_data)

    def _cached_list(self, list_id: str) -> CachedList:
        return self._services.rare_cache.get_list(self._site_data, list_id)

    def is_web_no_index(self, web: CachedWeb) -> bool:
        """True when this web or any web above it is excluded from search."""
        if web.no_index:
            return True
        if self._is_web_site_collection():
            return False
        parent = self._parent_handle()
        return parent.is_web_no_index(parent._cached_web())

    def _is_deny_anonymous(self) -> bool:
        if self._config.site_collection_only:
            return False
        vs = self._services.rare_cache.get_virtual_server(self._site_data)
        return is_deny_anonymous_access_on_virtual_server(vs, site_collection_only=False)

    def get_handle_for_url(self, url: str) -> Optional["SiteHandle"]:
        result, site, web = self._site_data.get_site_and_web(url)
        if result != 0:
            return None
        if not self._config.sharepoint_url.is_site_collection_included(site):
            return None
        return self._registry.get_site(site, web)

    # -- content ----------------------------------------------------------

    def get_doc_content(self, request: DocRequest) -> DocResponse:
        response = DocResponse()
        url = request.doc_id
        # GetURLSegments fails on a trailing slash.
        if url.endswith("/"):
            emit("WARN", "CONNECTOR", f"Responding not found for doc id with trailing slash: doc_id={url}")
            return response.respond_not_found()
        if self._attachment_doc_content(request, response):
            return response

        segments = self._site_data.get_url_segments(url)
        if not segments.found:
            if url.lower().endswith(".aspx"):
                self._aspx_doc_content(request, response)
            else:
                response.respond_not_found()
            return response
        if segments.item_id is not None:
            self._list_item_doc_content(request, response, segments.list_id, segments.item_id)
        elif segments.list_id is not None:
            self._list_doc_content(request, response, segments.list_id)
        else:
            self._site_doc_content(request, response)
        return response

    def get_virtual_server_doc_content(self, request: DocRequest) -> DocResponse:
        response = DocResponse()
        vs = self._site_data.get_content_virtual_server()
        resolved = self.resolve_principals([p.login_name for p in vs.policy_users])
        response.acl = virtual_server_acl(vs.policy_users, resolved, self._namespace())
        response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_VIRTUAL_SERVER)
        response.display_url = vs.url or None

        excluded = set()
        for content_database_id in vs.content_database_ids:
            try:
                cd = self._site_data.get_content_content_database(content_database_id, True)
            except (SoapError, XmlProcessingError) as exc:
                emit("WARN", "CONNECTOR", f"Failed to list sites of content database: id={content_database_id} error={exc}")
                continue
            for site_url in cd.site_urls or []:
                site_url = canonical_url(site_url)
                if not self._config.sharepoint_url.is_site_collection_included(site_url):
                    excluded.add(site_url)
                    continue
                response.add_link(self.encode_doc_id(site_url))
        if excluded:
            emit("INFO", "CONNECTOR", f"Site collections excluded from the virtual server listing: {sorted(excluded)}")
        return response

    def _site_doc_content(self, request: DocRequest, response: DocResponse):
        w = self._site_data.get_content_web()
        if self.is_web_no_index(CachedWeb.from_web(w)):
            response.respond_not_found()
            return

        if self._is_web_site_collection():
            admin_acl = site_admin_acl(w.users, self._namespace(), site_collection_only=self._config.site_collection_only)
            response.named_resources[SITE_COLLECTION_ADMIN_FRAGMENT] = admin_acl
            groups = self._site_data.get_content_site().groups
            self._services.background.push_group_definitions(self.compute_members_for_groups(groups))

        allow_anonymous = is_allow_anonymous_read_for_web(w) and not self._is_deny_anonymous()
        if not allow_anonymous:
            if self._is_web_site_collection():
                response.acl = web_acl(self._resolver(), w, site_url=self._site_url, parent_url=None, parent_scope_id=None)
            else:
                parent = self._parent_handle()
                parent_web = parent.site_data.get_content_web()
                response.acl = web_acl(
                    self._resolver(),
                    w,
                    site_url=self._site_url,
                    parent_url=parent.web_url,
                    parent_scope_id=parent_web.scope_id,
                )

        response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_SITE)
        response.add_metadata(METADATA_PARENT_WEB_TITLE, w.title)
        response.display_url = sp_url_to_uri(w.url)

        for child_url in w.child_web_urls or []:
            child_url = canonical_url(child_url)
            response.add_link(self.encode_doc_id(child_url), child_url)
        for link in w.lists or []:
            if link.default_view_url == "":
                lst = self._site_data.get_content_list(link.id)
                emit("INFO", "CONNECTOR", f"Ignoring list without a default view: title={lst.title} web={self._web_url}")
                continue
            response.add_link(self.encode_doc_id(link.default_view_url), link.default_view_url)
        for folder_url in w.folder_urls:
            # "Lists" is always listed but never exists.
            if folder_url == "Lists":
                continue
            response.add_link(self.encode_doc_id(folder_url))
        for file_url in w.file_urls:
            response.add_link(self.encode_doc_id(file_url))

    def _list_doc_content(self, request: DocRequest, response: DocResponse, list_id: str):
        lst = self._site_data.get_content_list(list_id)
        w = self._site_data.get_content_web()
        if lst.no_index or self.is_web_no_index(CachedWeb.from_web(w)):
            response.respond_not_found()
            return

        allow_anonymous = (
            is_allow_anonymous_read_for_list(lst)
            and is_allow_anonymous_peek_for_web(w)
            and not self._is_deny_anonymous()
        )
        if not allow_anonymous:
            root_folder_doc_id = self.encode_doc_id(lst.root_folder)
            response.acl, folder_acl = list_acls(
                self._resolver(),
                lst,
                w.scope_id,
                web_url=self._web_url,
                site_url=self._site_url,
                root_folder_doc_id=root_folder_doc_id,
            )
            self._services.background.push_named_resource(root_folder_doc_id, folder_acl)

        response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_LIST)
        response.add_metadata(METADATA_PARENT_WEB_TITLE, w.title)
        response.add_metadata(METADATA_LIST_GUID, lst.id)
        display = lst.root_folder if lst.default_view_url == "/" else lst.default_view_url
        response.display_url = sp_url_to_uri(self.encode_doc_id(display))
        last_modified = parse_timestamp(lst.last_modified, LIST_MODIFIED_FORMAT)
        if last_modified is None:
            emit("INFO", "CONNECTOR", f"Could not parse list LastModified: value={lst.last_modified}")
        response.last_modified = last_modified
        self._process_folder(list_id, "", response)

    def _process_folder(self, list_id: str, folder_path: str, response: DocResponse):
        paginator = self._site_data.get_content_folder_children(list_id, folder_path)
        while True:
            page = paginator.next()
            if page is None:
                break
            for row in page.rows:
                row_url = row.get("ows_ServerUrl") or ""
                response.add_link(self.encode_doc_id(canonical_url(row_url)), row.get("ows_Title"))

    def _process_attachments(self, list_id: str, item_id: str, row: Dict[str, str], response: DocResponse):
        if _attachment_count(row) <= 0:
            return
        for attachment_url in self._site_data.get_content_list_item_attachments(list_id, item_id):
            response.add_link(self.encode_doc_id(attachment_url))

    def _parent_folder_scope(self, list_id: str, folder_doc_id: str) -> str:
        segments = self._site_data.get_url_segments(folder_doc_id)
        if not segments.found or segments.item_id is None:
            raise ScopeNotFoundError(f"Could not find parent folder's item id: {folder_doc_id}")
        if segments.list_id != list_id:
            raise ScopeNotFoundError(f"Parent folder belongs to another list: {folder_doc_id}")
        folder_item = self._site_data.get_content_item(list_id, segments.item_id)
        return scope_id_from_row(folder_item.first_row()["ows_ScopeId"])

    def _list_item_doc_content(self, request: DocRequest, response: DocResponse, list_id: str, item_id: str):
        lst = self._cached_list(list_id)
        w = self._cached_web()
        if lst.no_index or self.is_web_no_index(w):
            response.respond_not_found()
            return

        apply_read_security = self._config.honor_read_security and lst.read_security == LIST_READ_SECURITY_ENABLED
        item = self._site_data.get_content_item(list_id, item_id)
        row = item.first_row()

        modified = row.get("ows_Modified")
        last_modified = parse_timestamp(modified, ITEM_MODIFIED_FORMAT) if modified else None
        if modified and last_modified is None:
            emit("INFO", "CONNECTOR", f"Could not parse ows_Modified: value={modified}")
        response.last_modified = last_modified

        scope_id = scope_id_from_row(row["ows_ScopeId"])
        allow_anonymous = (
            is_allow_anonymous_read_for_list(lst)
            and scope_id == lst.scope_id.lower()
            and is_allow_anonymous_peek_for_web(w)
            and not self._is_deny_anonymous()
        )
        if not allow_anonymous:
            folder_doc_id = self.encode_doc_id("/" + (row.get("ows_FileDirRef") or "").split(";#", 1)[-1])
            response.acl, named = item_acl(
                self._resolver(),
                doc_id=request.doc_id,
                item=item,
                lst=lst,
                site_url=self._site_url,
                folder_doc_id=folder_doc_id,
                root_folder_doc_id=self.encode_doc_id(lst.root_folder),
                read_security=apply_read_security,
                parent_scope_lookup=lambda: self._parent_folder_scope(list_id, folder_doc_id),
            )
            response.named_resources.update(named)

        is_folder = (row.get("ows_FSObjType") or "").split(";#", 1)[-1] == "1"
        server_url = row.get("ows_ServerUrl") or ""
        for name, value in row.items():
            add_row_metadata(response, name, value)
        add_row_metadata(response, METADATA_PARENT_WEB_TITLE, w.web_title)
        add_row_metadata(response, METADATA_LIST_GUID, list_id)
        can_respond_with_no_content = request.can_respond_with_no_content(last_modified)

        if is_folder:
            root = self.encode_doc_id(lst.root_folder) + "/"
            folder = self.encode_doc_id(server_url)
            if not folder.startswith(root):
                raise ValueError(f"Folder {folder} is outside its list root {root}")
            display_page = urlsplit(sp_url_to_uri(self.encode_doc_id(lst.default_view_url)))
            response.display_url = f"{display_page.scheme}://{display_page.netloc}{display_page.path}?RootFolder={server_url}"
            response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_FOLDER)
            if can_respond_with_no_content:
                response.respond_no_content()
                return
            self._process_attachments(list_id, item_id, row, response)
            self._process_folder(list_id, folder[len(root):], response)
            return

        content_type_id = row.get("ows_ContentTypeId")
        file_ref = row.get("ows_FileRef")
        is_file = (content_type_id is not None and content_type_id.startswith(CONTENT_TYPE_ID_DOCUMENT_PREFIX)) or (
            file_ref is not None and not file_ref.endswith(FILEREF_LIST_ITEM_SUFFIX)
        )
        if is_file:
            response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_DOCUMENT)
            if can_respond_with_no_content:
                response.respond_no_content()
                return
            self._file_doc_content(request, response, set_last_modified=False)
            return

        display_page = urlsplit(sp_url_to_uri(self.encode_doc_id(lst.default_view_item_url)))
        response.display_url = f"{display_page.scheme}://{display_page.netloc}{display_page.path}?ID={item_id}"
        response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_LIST_ITEM)
        if can_respond_with_no_content:
            response.respond_no_content()
            return
        self._process_attachments(list_id, item_id, row, response)

    def _attachment_doc_content(self, request: DocRequest, response: DocResponse) -> bool:
        """Serve ``request`` if it names a list item attachment; False otherwise."""
        url = request.doc_id
        if "/Attachments/" not in url:
            return False
        list_base, rest = url.split("/Attachments/", 1)
        parts = rest.split("/", 1)
        if len(parts) != 2:
            return False
        item_id = parts[0]
        if not _INTEGER_PATTERN.match(item_id):
            return False

        redirect = self._services.fetcher.get_redirect_location(list_base)
        # Lists without views do not redirect; anything off the list is ignored.
        list_url = redirect if redirect is not None and redirect.startswith(list_base) else list_base
        segments = self._site_data.get_url_segments(list_url)
        if not segments.found and list_url != list_base:
            segments = self._site_data.get_url_segments(list_base)
        if not segments.found:
            segments = self._site_data.get_url_segments(f"{list_base}/{item_id}{FILEREF_LIST_ITEM_SUFFIX}")
            if not segments.found:
                return False
        list_id = segments.list_id
        if list_id is None:
            return False

        lst = self._cached_list(list_id)
        w = self._cached_web()
        if lst.no_index or self.is_web_no_index(w):
            response.respond_not_found()
            return True

        item = self._site_data.get_content_item(list_id, item_id)
        if item.item_count == 0 or not item.rows:
            # Could be a document library folder literally named Attachments.
            return False
        row = item.first_row()
        scope_id = scope_id_from_row(row["ows_ScopeId"])
        if _attachment_count(row) <= 0:
            return False

        allow_anonymous = (
            is_allow_anonymous_read_for_list(lst)
            and scope_id == lst.scope_id.lower()
            and is_allow_anonymous_peek_for_web(w)
            and not self._is_deny_anonymous()
        )
        if not allow_anonymous:
            response.acl = Acl().with_inherit_from(self.encode_doc_id(row.get("ows_ServerUrl") or ""))
        response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_ATTACHMENT)
        response.add_metadata(METADATA_PARENT_WEB_TITLE, w.web_title)
        response.add_metadata(METADATA_LIST_GUID, list_id)
        self._file_doc_content(request, response, set_last_modified=True)
        return True

    def _aspx_doc_content(self, request: DocRequest, response: DocResponse):
        w = self._cached_web()
        if self.is_web_no_index(w):
            response.respond_not_found()
            return
        aspx_id = request.doc_id
        parent_id = aspx_id[: aspx_id.rfind("/")]
        if self._web_url.lower() != parent_id.lower():
            emit("INFO", "CONNECTOR", f"Page is not a direct child of its web: doc_id={aspx_id} web={self._web_url}")
            response.respond_not_found()
            return
        allow_anonymous = is_allow_anonymous_read_for_web(w) and not self._is_deny_anonymous()
        if not allow_anonymous:
            response.acl = Acl().with_inherit_from(parent_id)
        response.add_metadata(METADATA_OBJECT_TYPE, OBJECT_TYPE_ASPX)
        response.add_metadata(METADATA_PARENT_WEB_TITLE, w.web_title)
        self._file_doc_content(request, response, set_last_modified=True)

    def _file_doc_content(self, request: DocRequest, response: DocResponse, *, set_last_modified: bool):
        info = self._services.fetcher.issue_get(request.doc_id)
        if info is None:
            response.respond_not_found()
            return
        display_url = sp_url_to_uri(request.doc_id)
        response.display_url = display_url
        response.content_type = content_type_for(urlsplit(display_url).path, info.header("Content-Type"))
        if set_last_modified:
            raw = info.header("Last-Modified")
            if raw is not None:
                parsed = parse_http_date(raw)
                if parsed is None:
                    emit("INFO", "CONNECTOR", f"Could not parse Last-Modified: value={raw}")
                response.last_modified = parsed or response.last_modified
        response.content = info.contents


def _attachment_count(row: Dict[str, str]) -> int:
    raw = row.get("ows_Attachments") or ""
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError:
        return 0
