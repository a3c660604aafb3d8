import re
from typing import Optional

from spsync.models import DEFAULT_NAMESPACE, GroupPrincipal, Principal, UserDescription, UserPrincipal
from spsync.runtime_logger import emit


IDENTITY_CLAIMS_PREFIX = "i:0"
OTHER_CLAIMS_PREFIX = "c:0"

WINDOWS_USER_PREFIX = "i:0#.w|"
WINDOWS_GROUP_PREFIX = "c:0+.w|"
FORMS_ROLE_PREFIX = "c:0-.f|"
FORMS_USER_PREFIX = "i:0#.f|"
EVERYONE_CLAIM = "c:0(.s|true"
AUTHENTICATED_USERS_CLAIM = "c:0!.s|windows"

EVERYONE = "Everyone"
AUTHENTICATED_USERS = "NT AUTHORITY\\authenticated users"

_TRUSTED_PROVIDER_PATTERN = re.compile(r"^([i|c]:0.\.t\|).*$")
# <identity type>:0<claim type>.<issuer type>|<value>
_CLAIM_ENCODING_PATTERN = re.compile(r"^[a-z]:0.\.[a-z]\|")


def is_claim_encoded(login_name: str) -> bool:
    return (
        login_name.startswith(IDENTITY_CLAIMS_PREFIX)
        or login_name.startswith(OTHER_CLAIMS_PREFIX)
        or bool(_CLAIM_ENCODING_PATTERN.match(login_name))
    )


def decode_claim(login_name: str, name: Optional[str]) -> Optional[str]:
    """Map an encoded login name to a canonical account name.

    Returns None for a claim that carries a known prefix but an unsupported
    encoding; callers treat that as a resolution failure for the principal.
    """
    if not is_claim_encoded(login_name):
        return login_name
    if login_name.startswith(WINDOWS_USER_PREFIX):
        return login_name[len(WINDOWS_USER_PREFIX):]
    if login_name.startswith(WINDOWS_GROUP_PREFIX):
        # The group claim embeds a SID, the display name is the usable name.
        return name
    if login_name == EVERYONE_CLAIM:
        return EVERYONE
    if login_name == AUTHENTICATED_USERS_CLAIM:
        return AUTHENTICATED_USERS
    if login_name.startswith(FORMS_ROLE_PREFIX) or login_name.startswith(FORMS_USER_PREFIX):
        return login_name[7:].replace("|", ":")
    if _TRUSTED_PROVIDER_PATTERN.match(login_name):
        parts = login_name.split("|", 2)
        if len(parts) == 3:
            return parts[2]
    emit("WARN", "ACL", f"Unsupported claims value: login_name={login_name}")
    return None


def user_description_to_principal(user: UserDescription, namespace: str = DEFAULT_NAMESPACE) -> Optional[Principal]:
    account = decode_claim(user.login_name, user.name)
    if account is None:
        return None
    if user.is_domain_group:
        return GroupPrincipal(account, namespace)
    return UserPrincipal(account, namespace)


def policy_account_name(login_name: str) -> Optional[str]:
    """Decoded policy login name with any forms-auth provider prefix removed."""
    decoded = decode_claim(login_name, login_name)
    if decoded is None:
        return None
    return decoded[decoded.find(":") + 1:]
