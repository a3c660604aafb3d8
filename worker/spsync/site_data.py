"""Clients for the SiteData, UserGroup and People SharePoint web services.

Responses are parsed into the frozen models in ``spsync.models``. Element
lookups go by local name so namespace prefixes in the payload do not matter.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from spsync.models import (
    ChangeKind,
    ChangeNode,
    ContentDatabase,
    GroupDescription,
    GroupMembership,
    ItemData,
    ListLink,
    PermissionGrant,
    PolicyUser,
    PrincipalInfo,
    PrincipalType,
    Scope,
    Site,
    SPList,
    UserDescription,
    VirtualServer,
    Web,
)
from spsync.soap import XMLNS, XMLNS_DIRECTORY, SoapTransport, XmlProcessingError, child, children, local_name, parse_xml


T = TypeVar("T")

CHANGES_TIMEOUT_SECONDS = 600


def _bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _int(value: Optional[str], default: int = 0) -> int:
    try:
        return int((value or "").strip())
    except ValueError:
        return default


def _text(element: Optional[ET.Element]) -> str:
    if element is None or element.text is None:
        return ""
    return element.text


def _descendant(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    if element is None:
        return None
    for node in element.iter():
        if local_name(node.tag) == name:
            return node
    return None


def _require(element: Optional[ET.Element], name: str, what: str) -> ET.Element:
    found = child(element, name)
    if found is None:
        raise XmlProcessingError(f"{what} is missing <{name}>")
    return found


def _metadata(root: ET.Element, what: str) -> ET.Element:
    return _require(root, "Metadata", what)


def parse_permissions(container: Optional[ET.Element]) -> list[PermissionGrant]:
    if container is None:
        return []
    grants = []
    for node in container.iter():
        if local_name(node.tag).lower() != "permission":
            continue
        grants.append(PermissionGrant(_int(node.get("MemberID") or node.get("memberid")), _int(node.get("Mask") or node.get("mask"))))
    return grants


def parse_user(node: ET.Element) -> UserDescription:
    return UserDescription(
        id=_int(node.get("ID"), -1),
        login_name=node.get("LoginName") or "",
        name=node.get("Name") or "",
        is_domain_group=_bool(node.get("IsDomainGroup")),
        is_site_admin=_bool(node.get("IsSiteAdmin")),
        email=node.get("Email") or "",
    )


def parse_virtual_server(text: str) -> VirtualServer:
    root = parse_xml(text, "VirtualServer")
    metadata = _metadata(root, "VirtualServer")
    policies = child(root, "Policies")
    policy_users = []
    for node in children(policies, "PolicyUser"):
        policy_users.append(
            PolicyUser(
                login_name=node.get("LoginName") or "",
                grant_mask=_int(node.get("GrantMask")),
                deny_mask=_int(node.get("DenyMask")),
            )
        )
    return VirtualServer(
        url=metadata.get("URL") or "",
        content_database_ids=[node.get("ID") or "" for node in children(child(root, "ContentDatabases"), "ContentDatabase")],
        policy_users=policy_users,
        anonymous_grant_mask=_int(policies.get("AnonymousGrantMask")) if policies is not None else 0,
        anonymous_deny_mask=_int(policies.get("AnonymousDenyMask")) if policies is not None else 0,
    )


def parse_content_database(text: str) -> ContentDatabase:
    root = parse_xml(text, "ContentDatabase")
    metadata = _metadata(root, "ContentDatabase")
    sites = child(root, "Sites")
    return ContentDatabase(
        id=metadata.get("ID") or "",
        change_id=metadata.get("ChangeId"),
        site_urls=None if sites is None else [node.get("URL") or "" for node in children(sites, "Site")],
    )


def parse_site(text: str) -> Site:
    root = parse_xml(text, "Site")
    metadata = _metadata(root, "Site")
    groups = []
    for node in children(child(root, "Groups"), "Group"):
        description = _require(node, "Group", "Site group")
        users_node = child(node, "Users")
        groups.append(
            GroupMembership(
                group=GroupDescription(id=_int(description.get("ID"), -1), name=description.get("Name") or ""),
                users=None if users_node is None else [parse_user(u) for u in children(users_node, "User")],
            )
        )
    web_users = [parse_user(u) for u in children(child(child(root, "Web"), "Users"), "User")]
    return Site(
        id=metadata.get("ID"),
        url=metadata.get("URL") or "",
        change_id=metadata.get("ChangeId"),
        groups=groups,
        web_users=web_users,
    )


def parse_web(text: str) -> Web:
    root = parse_xml(text, "Web")
    metadata = _metadata(root, "Web")
    webs = child(root, "Webs")
    lists = child(root, "Lists")
    fp_folder = child(root, "FPFolder")
    return Web(
        url=metadata.get("URL") or "",
        title=metadata.get("Title") or "",
        scope_id=metadata.get("ScopeID") or "",
        no_index=_bool(metadata.get("NoIndex")),
        allow_anonymous_access=_bool(metadata.get("AllowAnonymousAccess")),
        anonymous_view_list_items=_bool(metadata.get("AnonymousViewListItems")),
        anonymous_perm_mask=_int(metadata.get("AnonymousPermMask")),
        users=[parse_user(u) for u in children(child(root, "Users"), "User")],
        permissions=parse_permissions(child(root, "ACL")),
        child_web_urls=None if webs is None else [node.get("URL") or "" for node in children(webs, "Web")],
        lists=None if lists is None else [
            ListLink(id=node.get("ID") or "", default_view_url=node.get("DefaultViewUrl") or "")
            for node in children(lists, "List")
        ],
        folder_urls=[node.get("URL") or "" for node in children(child(fp_folder, "Folders"), "Folder")],
        file_urls=[node.get("URL") or "" for node in children(child(fp_folder, "Files"), "File")],
    )


def parse_list(text: str) -> SPList:
    root = parse_xml(text, "List")
    metadata = _metadata(root, "List")
    return SPList(
        id=metadata.get("ID") or "",
        title=metadata.get("Title") or "",
        scope_id=metadata.get("ScopeID") or "",
        root_folder=metadata.get("RootFolder") or "",
        default_view_url=metadata.get("DefaultViewUrl") or "",
        default_view_item_url=metadata.get("DefaultViewItemUrl") or "",
        last_modified=metadata.get("LastModified") or "",
        no_index=_bool(metadata.get("NoIndex")),
        read_security=_int(metadata.get("ReadSecurity"), 1),
        allow_anonymous_access=_bool(metadata.get("AllowAnonymousAccess")),
        anonymous_view_list_items=_bool(metadata.get("AnonymousViewListItems")),
        anonymous_perm_mask=_int(metadata.get("AnonymousPermMask")),
        permissions=parse_permissions(child(root, "ACL")),
    )


def parse_item_data(text: str) -> ItemData:
    root = parse_xml(text, "Item")
    metadata_scope = _descendant(child(root, "Metadata"), "scope")
    xml = child(root, "xml")
    data = _descendant(xml, "data")
    if data is None:
        raise XmlProcessingError("Item payload is missing rowset data")
    scopes = [
        Scope(id=node.get("id") or node.get("ID") or "", permissions=parse_permissions(node))
        for node in children(_descendant(xml, "scopes"), "scope")
    ]
    rows = [dict(node.attrib) for node in children(data, "row")]
    return ItemData(
        item_count=_int(data.get("ItemCount"), len(rows)),
        rows=rows,
        scopes=scopes,
        metadata_scope_permissions=parse_permissions(metadata_scope),
    )


def parse_attachments(text: str) -> list[str]:
    root = parse_xml(text, "Attachments")
    return [node.get("URL") or "" for node in children(root, "Attachment")]


def _parse_change_node(node: ET.Element) -> Optional[ChangeNode]:
    try:
        kind = ChangeKind(local_name(node.tag))
    except ValueError:
        # Views, files and folders carry no document of their own.
        return None
    change = node.get("Change")
    if change is None:
        raise XmlProcessingError(f"{kind.value} change entry is missing its Change attribute")
    item_server_url = None
    if kind == ChangeKind.ITEM:
        list_item = child(node, "ListItem")
        row = next(iter(list_item), None) if list_item is not None else None
        if row is not None:
            item_server_url = row.get("ows_ServerUrl")
    nested = []
    for sub in node:
        parsed = _parse_change_node(sub)
        if parsed is not None:
            nested.append(parsed)
    return ChangeNode(
        kind=kind,
        change=change,
        server_url=node.get("ServerUrl") or "",
        display_url=node.get("DisplayUrl") or "",
        id=node.get("Id") or node.get("ID") or "",
        item_server_url=item_server_url,
        children=tuple(nested),
    )


def parse_changes(text: str) -> list[ChangeNode]:
    root = parse_xml(text, "changes")
    parsed = _parse_change_node(root)
    if parsed is not None:
        return [parsed]
    nodes = []
    for node in root:
        parsed = _parse_change_node(node)
        if parsed is not None:
            nodes.append(parsed)
    return nodes


@dataclass(frozen=True)
class UrlSegments:
    found: bool
    list_id: Optional[str] = None
    item_id: Optional[str] = None


class CursorPaginator(Generic[T]):
    """Walks a change feed page by page.

    The cursor moves as soon as a page is fetched, before it is parsed, so a
    page that fails to parse is never requested again.
    """

    def __init__(self, fetch: Callable[[str], tuple[str, str, bool]], parse: Callable[[str], T], cursor: str):
        self._fetch = fetch
        self._parse = parse
        self._cursor = cursor
        self._done = False

    @property
    def cursor(self) -> str:
        return self._cursor

    def next(self) -> Optional[T]:
        if self._done:
            return None
        text, cursor, more = self._fetch(self._cursor)
        self._cursor = cursor
        self._done = not more
        return self._parse(text)


class ItemPaginator:
    def __init__(self, fetch: Callable[[str], tuple[str, str]]):
        self._fetch = fetch
        self._last_item_id = ""
        self._done = False

    def next(self) -> Optional[ItemData]:
        if self._done:
            return None
        text, last_item_id = self._fetch(self._last_item_id)
        self._last_item_id = last_item_id
        self._done = not last_item_id
        return parse_item_data(text)


class SiteDataClient:
    def __init__(self, transport: SoapTransport, web_url: str):
        self._transport = transport
        self._web_url = web_url
        self._endpoint = web_url.rstrip("/") + "/_vti_bin/SiteData.asmx"

    @property
    def web_url(self) -> str:
        return self._web_url

    def _get_content(
        self,
        object_type: str,
        object_id: Optional[str] = None,
        folder_url: Optional[str] = None,
        item_id: Optional[str] = None,
        retrieve_child_items: bool = False,
        last_item_id_on_page: Optional[str] = None,
    ) -> tuple[str, str]:
        response = self._transport.call(
            self._endpoint,
            XMLNS,
            "GetContent",
            [
                ("objectType", object_type),
                ("objectId", object_id),
                ("folderUrl", folder_url),
                ("itemId", item_id),
                ("retrieveChildItems", retrieve_child_items),
                ("securityOnly", False),
                ("lastItemIdOnPage", last_item_id_on_page),
            ],
        )
        return _text(child(response, "GetContentResult")), _text(child(response, "lastItemIdOnPage"))

    def get_content_virtual_server(self) -> VirtualServer:
        return parse_virtual_server(self._get_content("VirtualServer")[0])

    def get_content_content_database(self, content_database_id: str, retrieve_child_items: bool) -> ContentDatabase:
        text, _ = self._get_content("ContentDatabase", content_database_id, retrieve_child_items=retrieve_child_items)
        return parse_content_database(text)

    def get_content_site(self) -> Site:
        return parse_site(self._get_content("Site", retrieve_child_items=True)[0])

    def get_content_web(self) -> Web:
        return parse_web(self._get_content("Web", retrieve_child_items=True)[0])

    def get_content_list(self, list_id: str) -> SPList:
        return parse_list(self._get_content("List", list_id)[0])

    def get_content_item(self, list_id: str, item_id: str) -> ItemData:
        return parse_item_data(self._get_content("ListItem", list_id, item_id=item_id)[0])

    def get_content_folder_children(self, list_id: str, folder_url: str) -> ItemPaginator:
        def fetch(last_item_id: str) -> tuple[str, str]:
            return self._get_content(
                "Folder",
                list_id,
                folder_url=folder_url,
                retrieve_child_items=True,
                last_item_id_on_page=last_item_id or None,
            )

        return ItemPaginator(fetch)

    def get_content_list_item_attachments(self, list_id: str, item_id: str) -> list[str]:
        text, _ = self._get_content("ListItemAttachments", list_id, item_id=item_id, retrieve_child_items=True)
        return parse_attachments(text)

    def get_url_segments(self, url: str) -> UrlSegments:
        response = self._transport.call(self._endpoint, XMLNS, "GetURLSegments", [("strURL", url)])
        if not _bool(_text(child(response, "GetURLSegmentsResult"))):
            return UrlSegments(found=False)
        return UrlSegments(
            found=True,
            list_id=_text(child(response, "strListID")) or None,
            item_id=_text(child(response, "strItemID")) or None,
        )

    def get_site_and_web(self, url: str) -> tuple[int, str, str]:
        response = self._transport.call(self._endpoint, XMLNS, "GetSiteAndWeb", [("strUrl", url)])
        return (
            _int(_text(child(response, "GetSiteAndWebResult")), -1),
            _text(child(response, "strSite")),
            _text(child(response, "strWeb")),
        )

    def _changes_fetcher(self, object_type: str, object_id: str) -> Callable[[str], tuple[str, str, bool]]:
        def fetch(cursor: str) -> tuple[str, str, bool]:
            response = self._transport.call(
                self._endpoint,
                XMLNS,
                "GetChanges",
                [
                    ("objectType", object_type),
                    ("contentDatabaseId", object_id),
                    ("LastChangeId", cursor),
                    ("CurrentChangeId", None),
                    ("Timeout", CHANGES_TIMEOUT_SECONDS),
                ],
            )
            next_cursor = _text(child(response, "LastChangeId")) or cursor
            return _text(child(response, "GetChangesResult")), next_cursor, _bool(_text(child(response, "moreChanges")))

        return fetch

    def get_changes_content_database(self, content_database_id: str, cursor: str) -> CursorPaginator[list[ChangeNode]]:
        return CursorPaginator(self._changes_fetcher("ContentDatabase", content_database_id), parse_changes, cursor)

    def get_changes_sp_site(self, site_id: str, cursor: str) -> CursorPaginator[list[ChangeNode]]:
        return CursorPaginator(self._changes_fetcher("SiteCollection", site_id), parse_changes, cursor)


class UserGroupClient:
    def __init__(self, transport: SoapTransport, site_url: str):
        self._transport = transport
        self._endpoint = site_url.rstrip("/") + "/_vti_bin/UserGroup.asmx"

    def get_user_collection_from_site(self) -> list[UserDescription]:
        response = self._transport.call(self._endpoint, XMLNS_DIRECTORY, "GetUserCollectionFromSite")
        users = _descendant(response, "Users")
        return [parse_user(node) for node in children(users, "User")]


class PeopleClient:
    def __init__(self, transport: SoapTransport, site_url: str):
        self._transport = transport
        self._endpoint = site_url.rstrip("/") + "/_vti_bin/People.asmx"

    def resolve_principals(self, login_names: list[str]) -> list[PrincipalInfo]:
        if not login_names:
            return []
        response = self._transport.call(
            self._endpoint,
            XMLNS,
            "ResolvePrincipals",
            [
                ("principalKeys", list(login_names)),
                ("principalType", PrincipalType.ALL.value),
                ("addToUserInfoList", False),
            ],
        )
        result = child(response, "ResolvePrincipalsResult")
        infos = []
        for node in children(result, "PrincipalInfo"):
            raw_type = _text(child(node, "PrincipalType")) or PrincipalType.NONE.value
            try:
                principal_type = PrincipalType(raw_type)
            except ValueError:
                principal_type = PrincipalType.NONE
            infos.append(
                PrincipalInfo(
                    account_name=_text(child(node, "AccountName")),
                    display_name=_text(child(node, "DisplayName")),
                    principal_type=principal_type,
                    is_resolved=_bool(_text(child(node, "IsResolved"))),
                )
            )
        return infos
