import threading
import time
from typing import Callable, Dict, Hashable, Optional, TypeVar

from spsync.models import CachedList, CachedVirtualServer, CachedWeb


T = TypeVar("T")


class RareModificationCache:
    """Short-lived snapshots of objects that almost never change.

    Two threads missing the same key may both load it; the later write wins.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, tuple[float, object]] = {}

    def _get(self, key: Hashable, loader: Callable[[], T]) -> T:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] < self._ttl:
                return entry[1]
        value = loader()
        with self._lock:
            self._entries[key] = (self._clock(), value)
        return value

    def get_virtual_server(self, site_data) -> CachedVirtualServer:
        return self._get(
            ("vs",),
            lambda: CachedVirtualServer.from_virtual_server(site_data.get_content_virtual_server()),
        )

    def get_web(self, site_data) -> CachedWeb:
        return self._get(("web", site_data.web_url.lower()), lambda: CachedWeb.from_web(site_data.get_content_web()))

    def get_list(self, site_data, list_id: str) -> CachedList:
        return self._get(
            ("list", site_data.web_url.lower(), list_id.lower()),
            lambda: CachedList.from_list(site_data.get_content_list(list_id)),
        )

    def invalidate(self, web_url: Optional[str] = None):
        with self._lock:
            if web_url is None:
                self._entries.clear()
                return
            prefix = web_url.lower()
            for key in [k for k in self._entries if len(k) > 1 and k[1] == prefix]:
                del self._entries[key]
