import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from spsync.models import DEFAULT_NAMESPACE
from spsync.runtime_logger import emit
from spsync.urls import canonical_url, encode_sharepoint_url, root_url


DEFAULT_MAX_REDIRECTS_TO_FOLLOW = 20

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}


class InvalidConfigurationError(Exception):
    pass


def _is_enabled(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    return normalized in _TRUE_VALUES


def _parse_int(env: Mapping[str, str], key: str, default: str) -> int:
    raw = (env.get(key) or default).strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidConfigurationError(f"{key} must be an integer, got '{raw}'") from exc


def _parse_float(env: Mapping[str, str], key: str, default: str) -> float:
    raw = (env.get(key) or default).strip()
    try:
        return float(raw)
    except ValueError as exc:
        raise InvalidConfigurationError(f"{key} must be a number, got '{raw}'") from exc


class SharePointUrl:
    """Configured server URL together with the deployment mode it implies.

    A URL with a path points at one site collection, a bare host at the whole
    virtual server. The include-list only makes sense for the latter.
    """

    def __init__(self, sharepoint_url: str, site_collection_only: str, site_collections_to_include: str, *, lenient: bool = True):
        sharepoint_url = sharepoint_url.strip()
        site_collection_only = site_collection_only.strip()

        processed = set()
        for url in site_collections_to_include.lower().split(","):
            url = url.strip()
            if url:
                processed.add(canonical_url(url))
        self._site_collections_to_include = frozenset(processed)
        if self._site_collections_to_include:
            emit("INFO", "CONFIG", f"Site collections to index: {sorted(self._site_collections_to_include)}")

        self._sharepoint_url = canonical_url(sharepoint_url)
        depth = len(self._sharepoint_url.split("/"))
        if self._site_collections_to_include and depth > 3:
            raise InvalidConfigurationError(
                "SHAREPOINT_SERVER should point to the virtual server when "
                "SHAREPOINT_SITE_COLLECTIONS_TO_INCLUDE is specified"
            )
        if site_collection_only:
            flag = site_collection_only.lower() == "true"
            if flag and self._site_collections_to_include:
                raise InvalidConfigurationError(
                    "SHAREPOINT_SITE_COLLECTIONS_TO_INCLUDE can not be specified with "
                    "SHAREPOINT_SITE_COLLECTION_ONLY=true"
                )
            self._site_collection_only = flag and not self._site_collections_to_include
        else:
            self._site_collection_only = depth > 3

        try:
            self._virtual_server_url = root_url(encode_sharepoint_url(self._sharepoint_url, lenient))
        except ValueError as exc:
            raise InvalidConfigurationError(
                f"Configured with invalid SharePoint URL [{sharepoint_url}]. Please specify a valid SharePoint URL."
            ) from exc
        if not self._virtual_server_url.lower().startswith(("http://", "https://")):
            raise InvalidConfigurationError(
                f"Configured with malformed SharePoint URL [{sharepoint_url}]. Please specify a valid SharePoint URL."
            )

    @property
    def sharepoint_url(self) -> str:
        return self._sharepoint_url

    @property
    def virtual_server_url(self) -> str:
        return self._virtual_server_url

    @property
    def site_collection_only(self) -> bool:
        return self._site_collection_only

    @property
    def site_collections_to_include(self) -> frozenset:
        return self._site_collections_to_include

    def is_site_collection_included(self, site_collection_url: str) -> bool:
        if site_collection_url is None:
            raise ValueError("Site collection URL may not be None")
        url = canonical_url(site_collection_url)
        return not self._site_collections_to_include or url.lower() in self._site_collections_to_include

    def __repr__(self) -> str:
        return (
            f"SharePointUrl(sharepoint_url={self._sharepoint_url}, virtual_server_url={self._virtual_server_url}, "
            f"site_collection_only={self._site_collection_only})"
        )


def resolve_max_redirects(raw: str, lenient: bool) -> int:
    """-1 means redirects are left to the HTTP library."""
    raw = (raw or "").strip()
    if not lenient:
        if raw:
            raise InvalidConfigurationError(
                "ADAPTOR_MAX_REDIRECTS can only be set when ADAPTOR_LENIENT_URL_RULES is enabled"
            )
        return -1
    if not raw:
        return DEFAULT_MAX_REDIRECTS_TO_FOLLOW
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidConfigurationError(f"ADAPTOR_MAX_REDIRECTS must be a non-negative integer, got '{raw}'") from exc
    if value < 0:
        raise InvalidConfigurationError(f"ADAPTOR_MAX_REDIRECTS must be a non-negative integer, got '{raw}'")
    return value


@dataclass(frozen=True)
class ConnectorConfig:
    sharepoint_url: SharePointUrl
    username: str = ""
    password: str = field(default="", repr=False)
    namespace: str = DEFAULT_NAMESPACE
    lenient_url_rules: bool = True
    max_redirects: int = DEFAULT_MAX_REDIRECTS_TO_FOLLOW
    honor_read_security: bool = True
    member_cache_refresh_seconds: float = 30 * 60
    member_cache_expire_seconds: float = 45 * 60
    rare_cache_ttl_seconds: float = 5 * 60
    feed_max_urls: int = 5000
    max_retries: int = 3
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    user_agent: str = ""
    worker_pool_size: int = 8
    index_push_url: str = ""
    index_push_token: str = field(default="", repr=False)
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    full_crawl_cron: str = "0 3 * * *"
    incremental_crawl_cron: str = "*/15 * * * *"
    database_url: str = field(default="", repr=False)

    @property
    def site_collection_only(self) -> bool:
        return self.sharepoint_url.site_collection_only

    @property
    def uses_app_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ConnectorConfig":
        env = os.environ if env is None else env
        server = (env.get("SHAREPOINT_SERVER") or "").strip()
        if not server:
            raise InvalidConfigurationError("SHAREPOINT_SERVER must be set")

        lenient = _is_enabled(env.get("ADAPTOR_LENIENT_URL_RULES"), default=True)
        sharepoint_url = SharePointUrl(
            server,
            env.get("SHAREPOINT_SITE_COLLECTION_ONLY") or "",
            env.get("SHAREPOINT_SITE_COLLECTIONS_TO_INCLUDE") or "",
            lenient=lenient,
        )

        refresh_minutes = _parse_float(env, "MEMBER_CACHE_REFRESH_MINUTES", "30")
        expire_minutes = _parse_float(env, "MEMBER_CACHE_EXPIRE_MINUTES", "45")
        if refresh_minutes <= 0 or expire_minutes <= refresh_minutes:
            raise InvalidConfigurationError(
                "MEMBER_CACHE_EXPIRE_MINUTES must be greater than MEMBER_CACHE_REFRESH_MINUTES, both positive"
            )

        feed_max_urls = _parse_int(env, "FEED_MAX_URLS", "5000")
        if feed_max_urls <= 0:
            raise InvalidConfigurationError("FEED_MAX_URLS must be positive")
        pool_size = _parse_int(env, "WORKER_POOL_SIZE", "8")
        if pool_size <= 0:
            raise InvalidConfigurationError("WORKER_POOL_SIZE must be positive")

        config = cls(
            sharepoint_url=sharepoint_url,
            username=env.get("SHAREPOINT_USERNAME") or "",
            password=env.get("SHAREPOINT_PASSWORD") or "",
            namespace=(env.get("ADAPTOR_NAMESPACE") or DEFAULT_NAMESPACE).strip(),
            lenient_url_rules=lenient,
            max_redirects=resolve_max_redirects(env.get("ADAPTOR_MAX_REDIRECTS") or "", lenient),
            honor_read_security=_is_enabled(env.get("SHAREPOINT_HONOR_READ_SECURITY"), default=True),
            member_cache_refresh_seconds=refresh_minutes * 60,
            member_cache_expire_seconds=expire_minutes * 60,
            rare_cache_ttl_seconds=_parse_float(env, "RARE_CACHE_TTL_SECONDS", "300"),
            feed_max_urls=feed_max_urls,
            max_retries=max(0, _parse_int(env, "SP_MAX_RETRIES", "3")),
            connect_timeout=_parse_float(env, "SP_CONNECT_TIMEOUT", "10"),
            read_timeout=_parse_float(env, "SP_READ_TIMEOUT", "60"),
            user_agent=(env.get("ADAPTOR_USER_AGENT") or "").strip(),
            worker_pool_size=pool_size,
            index_push_url=(env.get("INDEX_PUSH_URL") or "").strip(),
            index_push_token=(env.get("INDEX_PUSH_TOKEN") or "").strip(),
            tenant_id=(env.get("ENTRA_TENANT_ID") or "").strip(),
            client_id=(env.get("ENTRA_CLIENT_ID") or "").strip(),
            client_secret=(env.get("ENTRA_CLIENT_SECRET") or "").strip(),
            full_crawl_cron=(env.get("FULL_CRAWL_CRON") or "0 3 * * *").strip(),
            incremental_crawl_cron=(env.get("INCREMENTAL_CRAWL_CRON") or "*/15 * * * *").strip(),
            database_url=(env.get("DATABASE_URL") or "").strip(),
        )
        emit(
            "INFO",
            "CONFIG",
            f"Configuration loaded: server={sharepoint_url.sharepoint_url} "
            f"site_collection_only={sharepoint_url.site_collection_only} lenient={lenient} "
            f"max_redirects={config.max_redirects} honor_read_security={config.honor_read_security}",
        )
        return config
