from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


DEFAULT_NAMESPACE = "Default"


@dataclass(frozen=True, eq=False)
class Principal:
    name: str
    namespace: str = DEFAULT_NAMESPACE

    kind = "principal"

    def _key(self) -> tuple[str, str, str]:
        return (self.kind, self.name.lower(), self.namespace.lower())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Principal):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.kind, "name": self.name, "namespace": self.namespace}


@dataclass(frozen=True, eq=False)
class UserPrincipal(Principal):
    kind = "user"


@dataclass(frozen=True, eq=False)
class GroupPrincipal(Principal):
    kind = "group"


@dataclass(frozen=True)
class PermissionGrant:
    member_id: int
    mask: int


@dataclass(frozen=True)
class UserDescription:
    id: int
    login_name: str
    name: str = ""
    is_domain_group: bool = False
    is_site_admin: bool = False
    email: str = ""


@dataclass(frozen=True)
class GroupDescription:
    id: int
    name: str


@dataclass(frozen=True)
class GroupMembership:
    group: GroupDescription
    users: Optional[list[UserDescription]] = None


@dataclass(frozen=True)
class PolicyUser:
    login_name: str
    grant_mask: int
    deny_mask: int


class PrincipalType(str, Enum):
    NONE = "None"
    USER = "User"
    DISTRIBUTION_LIST = "DistributionList"
    SECURITY_GROUP = "SecurityGroup"
    SHAREPOINT_GROUP = "SharePointGroup"
    ALL = "All"


@dataclass(frozen=True)
class PrincipalInfo:
    account_name: str
    display_name: str
    principal_type: PrincipalType
    is_resolved: bool


@dataclass(frozen=True)
class VirtualServer:
    url: str
    content_database_ids: list[str] = field(default_factory=list)
    policy_users: list[PolicyUser] = field(default_factory=list)
    anonymous_grant_mask: int = 0
    anonymous_deny_mask: int = 0


@dataclass(frozen=True)
class ContentDatabase:
    id: str
    change_id: Optional[str]
    site_urls: Optional[list[str]] = None


@dataclass(frozen=True)
class Site:
    id: Optional[str]
    url: str
    change_id: Optional[str]
    groups: list[GroupMembership] = field(default_factory=list)
    web_users: list[UserDescription] = field(default_factory=list)


@dataclass(frozen=True)
class ListLink:
    id: str
    default_view_url: str


@dataclass(frozen=True)
class Web:
    url: str
    title: str
    scope_id: str
    no_index: bool = False
    allow_anonymous_access: bool = False
    anonymous_view_list_items: bool = False
    anonymous_perm_mask: int = 0
    users: list[UserDescription] = field(default_factory=list)
    permissions: list[PermissionGrant] = field(default_factory=list)
    child_web_urls: Optional[list[str]] = None
    lists: Optional[list[ListLink]] = None
    folder_urls: list[str] = field(default_factory=list)
    file_urls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SPList:
    id: str
    title: str
    scope_id: str
    root_folder: str
    default_view_url: str
    default_view_item_url: str = ""
    last_modified: str = ""
    no_index: bool = False
    read_security: int = 1
    allow_anonymous_access: bool = False
    anonymous_view_list_items: bool = False
    anonymous_perm_mask: int = 0
    permissions: list[PermissionGrant] = field(default_factory=list)


@dataclass(frozen=True)
class Scope:
    id: str
    permissions: list[PermissionGrant] = field(default_factory=list)


@dataclass(frozen=True)
class ItemData:
    """Self-describing rowset returned for a list item or folder listing."""

    item_count: int
    rows: list[Dict[str, str]] = field(default_factory=list)
    scopes: list[Scope] = field(default_factory=list)
    metadata_scope_permissions: list[PermissionGrant] = field(default_factory=list)

    def first_row(self) -> Dict[str, str]:
        if not self.rows:
            raise LookupError("item data contains no rows")
        return self.rows[0]


class ChangeKind(str, Enum):
    CONTENT_DATABASE = "SPContentDatabase"
    SITE = "SPSite"
    WEB = "SPWeb"
    LIST = "SPList"
    ITEM = "SPListItem"


@dataclass(frozen=True)
class ChangeNode:
    """One entry of the nested change feed.

    ``item_server_url`` is only populated for list items, taken from the
    ``ows_ServerUrl`` attribute of the embedded row.
    """

    kind: ChangeKind
    change: str
    server_url: str = ""
    display_url: str = ""
    id: str = ""
    item_server_url: Optional[str] = None
    children: tuple["ChangeNode", ...] = ()


@dataclass(frozen=True)
class CachedVirtualServer:
    anonymous_deny_mask: int
    policy_contains_deny: bool

    @classmethod
    def from_virtual_server(cls, vs: VirtualServer) -> "CachedVirtualServer":
        return cls(
            anonymous_deny_mask=vs.anonymous_deny_mask,
            policy_contains_deny=any(p.deny_mask != 0 for p in vs.policy_users),
        )


@dataclass(frozen=True)
class CachedWeb:
    no_index: bool
    allow_anonymous_access: bool
    anonymous_view_list_items: bool
    anonymous_perm_mask: int
    web_title: str
    scope_id: str

    @classmethod
    def from_web(cls, web: Web) -> "CachedWeb":
        return cls(
            no_index=web.no_index,
            allow_anonymous_access=web.allow_anonymous_access,
            anonymous_view_list_items=web.anonymous_view_list_items,
            anonymous_perm_mask=web.anonymous_perm_mask,
            web_title=web.title,
            scope_id=web.scope_id,
        )


@dataclass(frozen=True)
class CachedList:
    no_index: bool
    read_security: int
    allow_anonymous_access: bool
    anonymous_view_list_items: bool
    anonymous_perm_mask: int
    scope_id: str
    root_folder: str
    default_view_url: str
    default_view_item_url: str

    @classmethod
    def from_list(cls, lst: SPList) -> "CachedList":
        return cls(
            no_index=lst.no_index,
            read_security=lst.read_security,
            allow_anonymous_access=lst.allow_anonymous_access,
            anonymous_view_list_items=lst.anonymous_view_list_items,
            anonymous_perm_mask=lst.anonymous_perm_mask,
            scope_id=lst.scope_id,
            root_folder=lst.root_folder,
            default_view_url=lst.default_view_url,
            default_view_item_url=lst.default_view_item_url,
        )
