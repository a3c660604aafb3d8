from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from spsync.claims import decode_claim, user_description_to_principal
from spsync.models import (
    CachedList,
    GroupPrincipal,
    ItemData,
    PermissionGrant,
    PolicyUser,
    Principal,
    PrincipalInfo,
    PrincipalType,
    UserDescription,
    UserPrincipal,
    Web,
)
from spsync.permissions import LIST_ITEM_MASK, READ_SECURITY_LIST_ITEM_MASK, is_permitted
from spsync.runtime_logger import emit


SITE_COLLECTION_ADMIN_FRAGMENT = "admin"
READ_SECURITY_FRAGMENT = "readSecurity"
VIRTUAL_SERVER_DOC_ID = ""


class InheritanceType(str, Enum):
    """How an ACL combines with the ACLs that inherit from it."""

    CHILD_OVERRIDES = "CHILD_OVERRIDES"
    PARENT_OVERRIDES = "PARENT_OVERRIDES"
    AND_BOTH_PERMIT = "AND_BOTH_PERMIT"
    LEAF_NODE = "LEAF_NODE"


class AclDecision(str, Enum):
    PERMIT = "PERMIT"
    DENY = "DENY"
    INDETERMINATE = "INDETERMINATE"


class AclCycleError(Exception):
    pass


class ScopeNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class Acl:
    permits: tuple[Principal, ...] = ()
    denies: tuple[Principal, ...] = ()
    inherit_from: Optional[str] = None
    inherit_from_fragment: Optional[str] = None
    inheritance_type: InheritanceType = InheritanceType.LEAF_NODE
    everything_case_insensitive: bool = False

    def with_inherit_from(self, doc_id: str, fragment: Optional[str] = None) -> "Acl":
        return replace(self, inherit_from=doc_id, inherit_from_fragment=fragment)

    def with_inheritance_type(self, inheritance_type: InheritanceType) -> "Acl":
        return replace(self, inheritance_type=inheritance_type)

    def with_permit(self, principal: Principal) -> "Acl":
        return replace(self, permits=self.permits + (principal,))

    def local_decision(self, principal: Principal) -> AclDecision:
        # Principal equality is already case-insensitive on name and namespace.
        if principal in self.denies:
            return AclDecision.DENY
        if principal in self.permits:
            return AclDecision.PERMIT
        return AclDecision.INDETERMINATE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permits": [p.to_dict() for p in self.permits],
            "denies": [p.to_dict() for p in self.denies],
            "inherit_from": self.inherit_from,
            "inherit_from_fragment": self.inherit_from_fragment,
            "inheritance_type": self.inheritance_type.value,
            "everything_case_insensitive": self.everything_case_insensitive,
        }


AclLookup = Callable[[str, Optional[str]], Optional[Acl]]


def inheritance_chain(doc_id: str, lookup: AclLookup, *, fragment: Optional[str] = None, max_depth: int = 64) -> list[Acl]:
    """ACLs from the document up to its root. Raises AclCycleError on a loop."""
    chain: list[Acl] = []
    seen: set[tuple[str, Optional[str]]] = set()
    key: Optional[tuple[str, Optional[str]]] = (doc_id, fragment)
    while key is not None:
        if key in seen or len(chain) >= max_depth:
            raise AclCycleError(f"ACL inheritance does not terminate: doc_id={doc_id} at={key}")
        seen.add(key)
        acl = lookup(*key)
        if acl is None:
            break
        chain.append(acl)
        key = (acl.inherit_from, acl.inherit_from_fragment) if acl.inherit_from is not None else None
    return chain


def is_authorized(principal: Principal, doc_id: str, lookup: AclLookup) -> bool:
    chain = inheritance_chain(doc_id, lookup)
    if not chain:
        return False
    decision = chain[-1].local_decision(principal)
    for index in range(len(chain) - 2, -1, -1):
        parent = chain[index + 1]
        child_decision = chain[index].local_decision(principal)
        if parent.inheritance_type == InheritanceType.AND_BOTH_PERMIT:
            both = decision == AclDecision.PERMIT and child_decision == AclDecision.PERMIT
            decision = AclDecision.PERMIT if both else AclDecision.DENY
        elif parent.inheritance_type == InheritanceType.CHILD_OVERRIDES:
            if child_decision != AclDecision.INDETERMINATE:
                decision = child_decision
        elif decision == AclDecision.INDETERMINATE:
            decision = child_decision
    return decision == AclDecision.PERMIT


class AclResolver:
    """Turns permission grants of one web into permit lists.

    Member ids are looked up in the site's member mapping, then its site-user
    mapping. Each mapping is refreshed at most once per generate_acl call.
    """

    def __init__(self, identity, site_url: str, web_url: str):
        self._identity = identity
        self._site_url = site_url
        self._web_url = web_url

    def generate_acl(self, permissions: Iterable[PermissionGrant], required_mask: int) -> Acl:
        permits: list[Principal] = []
        mapping = self._identity.member_mapping(self._site_url)
        member_mapping_refreshed = False
        site_users = None
        site_users_refreshed = False
        for grant in permissions:
            if not is_permitted(grant.mask, required_mask):
                continue
            principal = mapping.get_principal(grant.member_id)
            if principal is None:
                if site_users is None:
                    site_users = self._identity.site_user_mapping(self._site_url)
                principal = site_users.get_principal(grant.member_id)
            if principal is None and not member_mapping_refreshed:
                mapping = self._identity.refresh_member_mapping(self._site_url, mapping)
                member_mapping_refreshed = True
                principal = mapping.get_principal(grant.member_id)
            if principal is None and not site_users_refreshed:
                site_users = self._identity.refresh_site_user_mapping(self._site_url, site_users)
                site_users_refreshed = True
                principal = site_users.get_principal(grant.member_id)
            if principal is None:
                emit(
                    "WARN",
                    "ACL",
                    f"Could not resolve member id: member_id={grant.member_id} web={self._web_url} site={self._site_url}",
                )
                continue
            permits.append(principal)
        return Acl(permits=tuple(permits), everything_case_insensitive=True)

    def add_permit_user(self, acl: Acl, user_id: int) -> Acl:
        if user_id == -1:
            return acl
        principal = self._identity.member_mapping(self._site_url).get_principal(user_id)
        if principal is None:
            principal = self._identity.site_user_mapping(self._site_url).get_principal(user_id)
        if principal is None:
            emit("WARN", "ACL", f"Could not resolve user id: user_id={user_id} site={self._site_url}")
            return acl
        return acl.with_permit(principal)


def virtual_server_acl(policy_users: list[PolicyUser], resolved: Dict[str, PrincipalInfo], namespace: str) -> Acl:
    permits: list[Principal] = []
    denies: list[Principal] = []
    for policy_user in policy_users:
        login_name = policy_user.login_name
        info = resolved.get(login_name)
        if info is None or not info.is_resolved:
            emit("WARN", "ACL", f"Unable to resolve policy user: login_name={login_name}")
            continue
        if info.principal_type not in (PrincipalType.SECURITY_GROUP, PrincipalType.USER):
            emit(
                "WARN",
                "ACL",
                f"Policy principal has unexpected type: account={info.account_name} type={info.principal_type.value}",
            )
            continue
        is_group = info.principal_type == PrincipalType.SECURITY_GROUP
        account_name = decode_claim(info.account_name, info.display_name)
        if account_name is None:
            emit("WARN", "ACL", f"Unable to decode claim, skipping policy user: login_name={login_name}")
            continue
        principal = GroupPrincipal(account_name, namespace) if is_group else UserPrincipal(account_name, namespace)
        if is_permitted(policy_user.grant_mask, LIST_ITEM_MASK):
            permits.append(principal)
        # One list-item bit in the deny mask is enough to deny.
        if (LIST_ITEM_MASK & policy_user.deny_mask) != 0:
            denies.append(principal)
    return Acl(
        permits=tuple(permits),
        denies=tuple(denies),
        inheritance_type=InheritanceType.PARENT_OVERRIDES,
        everything_case_insensitive=True,
    )


def site_admin_acl(users: list[UserDescription], namespace: str, *, site_collection_only: bool) -> Acl:
    admins: list[Principal] = []
    for user in users:
        if not user.is_site_admin:
            continue
        principal = user_description_to_principal(user, namespace)
        if principal is None:
            emit("WARN", "ACL", f"Unable to determine login name, skipping admin user: id={user.id}")
            continue
        admins.append(principal)
    acl = Acl(
        permits=tuple(admins),
        inheritance_type=InheritanceType.PARENT_OVERRIDES,
        everything_case_insensitive=True,
    )
    if not site_collection_only:
        acl = acl.with_inherit_from(VIRTUAL_SERVER_DOC_ID)
    return acl


def web_acl(resolver: AclResolver, web: Web, *, site_url: str, parent_url: Optional[str], parent_scope_id: Optional[str]) -> Acl:
    """ACL of a web. ``parent_url`` is None for a site collection root."""
    include_permissions = parent_url is None or web.scope_id.lower() != (parent_scope_id or "").lower()
    if include_permissions:
        acl = resolver.generate_acl(web.permissions, LIST_ITEM_MASK).with_inherit_from(
            site_url, SITE_COLLECTION_ADMIN_FRAGMENT
        )
    else:
        acl = Acl().with_inherit_from(parent_url)
    return acl.with_inheritance_type(InheritanceType.PARENT_OVERRIDES)


def list_acls(resolver: AclResolver, lst, web_scope_id: str, *, web_url: str, site_url: str, root_folder_doc_id: str) -> tuple[Acl, Acl]:
    """(response ACL, root folder ACL) for a list.

    The list document inherits from its root folder; the root folder either
    inherits the web or carries the list's own permissions.
    """
    if lst.scope_id.lower() == web_scope_id.lower():
        folder_acl = Acl().with_inherit_from(web_url)
    else:
        folder_acl = resolver.generate_acl(lst.permissions, LIST_ITEM_MASK).with_inherit_from(
            site_url, SITE_COLLECTION_ADMIN_FRAGMENT
        )
    response_acl = Acl(inheritance_type=InheritanceType.PARENT_OVERRIDES).with_inherit_from(root_folder_doc_id)
    return response_acl, folder_acl.with_inheritance_type(InheritanceType.PARENT_OVERRIDES)


def scope_id_from_row(value: str) -> str:
    """'1234;#{GUID}' -> '{guid}'."""
    return value.split(";#", 1)[1].lower()


def _find_scope_permissions(item: ItemData, scope_id: str) -> Optional[list[PermissionGrant]]:
    for scope in item.scopes:
        if scope.id.lower() == scope_id:
            return scope.permissions
    return None


def item_acl(
    resolver: AclResolver,
    *,
    doc_id: str,
    item: ItemData,
    lst: CachedList,
    site_url: str,
    folder_doc_id: str,
    root_folder_doc_id: str,
    read_security: bool,
    parent_scope_lookup: Callable[[], str],
) -> tuple[Acl, Dict[str, Acl]]:
    """ACL and named fragments of a list item or folder.

    ``parent_scope_lookup`` is only invoked when the item sits in a folder
    whose scope cannot be inferred from the list.
    """
    row = item.first_row()
    scope_id = scope_id_from_row(row["ows_ScopeId"])
    list_scope_id = lst.scope_id.lower()
    named: Dict[str, Acl] = {}

    if not read_security:
        parent_is_list = folder_doc_id == root_folder_doc_id
        if parent_is_list or scope_id == list_scope_id:
            parent_scope_id = list_scope_id
        else:
            parent_scope_id = parent_scope_lookup()
        if scope_id == parent_scope_id:
            acl = Acl().with_inherit_from(folder_doc_id)
        else:
            permissions = _find_scope_permissions(item, scope_id)
            if permissions is None:
                raise ScopeNotFoundError(f"Unable to find permission scope for item: {doc_id}")
            acl = resolver.generate_acl(permissions, LIST_ITEM_MASK).with_inherit_from(
                site_url, SITE_COLLECTION_ADMIN_FRAGMENT
            )
    else:
        permissions = _find_scope_permissions(item, scope_id)
        if permissions is None:
            permissions = item.metadata_scope_permissions
        acl = resolver.generate_acl(permissions, LIST_ITEM_MASK).with_inherit_from(doc_id, READ_SECURITY_FRAGMENT)
        fragment = (
            resolver.generate_acl(permissions, READ_SECURITY_LIST_ITEM_MASK)
            .with_inherit_from(site_url, SITE_COLLECTION_ADMIN_FRAGMENT)
            .with_inheritance_type(InheritanceType.AND_BOTH_PERMIT)
        )
        named[READ_SECURITY_FRAGMENT] = resolver.add_permit_user(fragment, author_id_from_row(row.get("ows_Author")))
    return acl.with_inheritance_type(InheritanceType.PARENT_OVERRIDES), named


def author_id_from_row(value: Optional[str]) -> int:
    if not value:
        return -1
    parts = value.split(";#", 1)
    if len(parts) != 2:
        return -1
    try:
        return int(parts[0])
    except ValueError:
        return -1
