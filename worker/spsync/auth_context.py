import threading
import time
from typing import Dict, Optional

from msal import ConfidentialClientApplication
from requests.auth import HTTPBasicAuth

from spsync.runtime_logger import emit
from spsync.urls import host_key


class AppTokenProvider:
    """App-only bearer tokens for SharePoint Online tenants."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, resource: str):
        self._cca = ConfidentialClientApplication(
            client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            client_credential=client_secret,
        )
        self._scopes = [resource.rstrip("/") + "/.default"]
        self._token_lock = threading.Lock()
        self._cached_token: Optional[str] = None
        self._cached_token_expires_at: float = 0.0

    def get_token(self) -> str:
        now = time.time()
        if self._cached_token and now < (self._cached_token_expires_at - 60):
            return self._cached_token

        with self._token_lock:
            now = time.time()
            if self._cached_token and now < (self._cached_token_expires_at - 60):
                return self._cached_token

            result = self._cca.acquire_token_silent(self._scopes, account=None)
            if not result:
                result = self._cca.acquire_token_for_client(scopes=self._scopes)
            access_token = result.get("access_token")
            if not access_token:
                emit("ERROR", "HTTP", "SharePoint token acquisition failed: missing access_token")
                raise RuntimeError("Failed to acquire SharePoint token")

            expires_in = result.get("expires_in")
            if isinstance(expires_in, (int, float)):
                self._cached_token_expires_at = time.time() + float(expires_in)
            else:
                self._cached_token_expires_at = time.time() + 55 * 60
            self._cached_token = access_token
            return access_token

    def invalidate(self):
        with self._token_lock:
            self._cached_token = None
            self._cached_token_expires_at = 0.0


class AuthContext:
    """Credentials plus the set of hosts they may be sent to.

    Owned by one connector instance; created at start and dropped at stop.
    Credentials are only attached to requests whose host:port is in the
    allow-list.
    """

    def __init__(self, username: str = "", password: str = "", token_provider: Optional[AppTokenProvider] = None):
        self._username = username
        self._password = password
        self._token_provider = token_provider
        self._lock = threading.Lock()
        self._permitted_hosts: set[str] = set()

    @property
    def username(self) -> str:
        return self._username

    def add_permit_for_host(self, url: str):
        key = host_key(url)
        with self._lock:
            if key in self._permitted_hosts:
                return
            self._permitted_hosts.add(key)
        emit("INFO", "HTTP", f"Host added to credential allow-list: host={key}")

    def is_permitted_host(self, url: str) -> bool:
        key = host_key(url)
        with self._lock:
            return key in self._permitted_hosts

    def permitted_hosts(self) -> list[str]:
        with self._lock:
            return sorted(self._permitted_hosts)

    def request_kwargs(self, url: str) -> Dict[str, object]:
        if not self.is_permitted_host(url):
            return {}
        if self._token_provider is not None:
            return {"headers": {"Authorization": f"Bearer {self._token_provider.get_token()}"}}
        if self._username:
            return {"auth": HTTPBasicAuth(self._username, self._password)}
        return {}

    def on_unauthorized(self):
        if self._token_provider is not None:
            self._token_provider.invalidate()
