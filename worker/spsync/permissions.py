"""SharePoint base permission bits and the access predicates built on them.

Bit values follow the SPBasePermissions enumeration published for the
SharePoint SOAP services.
"""


class SPBasePermissions:
    EMPTYMASK = 0x0000000000000000
    VIEWLISTITEMS = 0x0000000000000001
    ADDLISTITEMS = 0x0000000000000002
    EDITLISTITEMS = 0x0000000000000004
    DELETELISTITEMS = 0x0000000000000008
    APPROVEITEMS = 0x0000000000000010
    OPENITEMS = 0x0000000000000020
    VIEWVERSIONS = 0x0000000000000040
    DELETEVERSIONS = 0x0000000000000080
    CANCELCHECKOUT = 0x0000000000000100
    MANAGEPERSONALVIEWS = 0x0000000000000200
    MANAGELISTS = 0x0000000000000800
    VIEWFORMPAGES = 0x0000000000001000
    OPEN = 0x0000000000010000
    VIEWPAGES = 0x0000000000020000
    ADDANDCUSTOMIZEPAGES = 0x0000000000040000
    APPLYTHEMEANDBORDER = 0x0000000000080000
    APPLYSTYLESHEETS = 0x0000000000100000
    VIEWUSAGEDATA = 0x0000000000200000
    CREATESSCSITE = 0x0000000000400000
    MANAGESUBWEBS = 0x0000000000800000
    CREATEGROUPS = 0x0000000001000000
    MANAGEPERMISSIONS = 0x0000000002000000
    BROWSEDIRECTORIES = 0x0000000004000000
    BROWSEUSERINFO = 0x0000000008000000
    ADDDELPRIVATEWEBPARTS = 0x0000000010000000
    UPDATEPERSONALWEBPARTS = 0x0000000020000000
    MANAGEWEB = 0x0000000040000000
    USECLIENTINTEGRATION = 0x0000001000000000
    USEREMOTEAPIS = 0x0000002000000000
    MANAGEALERTS = 0x0000004000000000
    CREATEALERTS = 0x0000008000000000
    EDITMYUSERINFO = 0x0000010000000000
    ENUMERATEPERMISSIONS = 0x4000000000000000
    FULLMASK = 0x7FFFFFFFFFFFFFFF


LIST_ITEM_MASK = SPBasePermissions.OPEN | SPBasePermissions.VIEWPAGES | SPBasePermissions.VIEWLISTITEMS

READ_SECURITY_LIST_ITEM_MASK = LIST_ITEM_MASK | SPBasePermissions.MANAGELISTS

FULL_READ_PERMISSION_MASK = (
    SPBasePermissions.OPEN
    | SPBasePermissions.VIEWLISTITEMS
    | SPBasePermissions.OPENITEMS
    | SPBasePermissions.VIEWVERSIONS
    | SPBasePermissions.VIEWPAGES
    | SPBasePermissions.VIEWUSAGEDATA
    | SPBasePermissions.BROWSEDIRECTORIES
    | SPBasePermissions.VIEWFORMPAGES
    | SPBasePermissions.ENUMERATEPERMISSIONS
    | SPBasePermissions.BROWSEUSERINFO
    | SPBasePermissions.USEREMOTEAPIS
    | SPBasePermissions.USECLIENTINTEGRATION
)

LIST_READ_SECURITY_ENABLED = 2


def is_permitted(permission: int, required: int) -> bool:
    # Every required bit must be present; a partial match is not enough.
    return (required & permission) == required


def is_allow_anonymous_peek_for_web(web) -> bool:
    return is_permitted(web.anonymous_perm_mask, SPBasePermissions.OPEN)


def is_allow_anonymous_read_for_web(web) -> bool:
    return (
        web.allow_anonymous_access
        and web.anonymous_view_list_items
        and is_permitted(web.anonymous_perm_mask, LIST_ITEM_MASK)
    )


def is_allow_anonymous_read_for_list(lst) -> bool:
    return (
        lst.read_security != LIST_READ_SECURITY_ENABLED
        and lst.allow_anonymous_access
        and lst.anonymous_view_list_items
        and is_permitted(lst.anonymous_perm_mask, SPBasePermissions.VIEWLISTITEMS)
    )


def is_deny_anonymous_access_on_virtual_server(virtual_server, *, site_collection_only: bool) -> bool:
    """Deployment-wide veto on anonymous access.

    Site-collection-only deployments ignore the web application policy.
    Otherwise any list-item bit in the anonymous deny mask vetoes, as does a
    policy that denies anything to any user or group.
    """
    if site_collection_only:
        return False
    if (LIST_ITEM_MASK & virtual_server.anonymous_deny_mask) != 0:
        return True
    return bool(virtual_server.policy_contains_deny)


def is_full_read_mask(mask: int) -> bool:
    return mask == FULL_READ_PERMISSION_MASK
