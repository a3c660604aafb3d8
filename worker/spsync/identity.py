"""Member id to principal mappings, cached per site collection.

Two caches exist per site: one built from site groups and the root web's
users, one from the full site user collection. Entries go stale after
``refresh_after`` seconds (served while a background reload runs) and expire
after ``expire_after`` seconds (reloaded synchronously).
"""

import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Generic, Mapping, Optional, TypeVar

from spsync.models import Principal
from spsync.runtime_logger import emit


class MemberIdMapping:
    """Immutable snapshot of member id -> Principal for one site collection."""

    def __init__(self, mapping: Mapping[int, Principal]):
        self._mapping = MappingProxyType(dict(mapping))

    def get_principal(self, member_id: int) -> Optional[Principal]:
        return self._mapping.get(member_id)

    def __len__(self) -> int:
        return len(self._mapping)

    def __repr__(self) -> str:
        return f"MemberIdMapping(size={len(self._mapping)})"


K = TypeVar("K")
V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    loaded_at: float


class RefreshingCache(Generic[K, V]):
    """Time-based cache whose loads run on an executor.

    Concurrent loads of the same key share one future. A failed load leaves
    the previous entry in place. A load started before ``invalidate`` never
    installs its result.
    """

    def __init__(
        self,
        name: str,
        loader: Callable[[K], V],
        *,
        refresh_after: float,
        expire_after: float,
        executor: Executor,
        clock: Callable[[], float] = time.monotonic,
    ):
        if expire_after <= refresh_after:
            raise ValueError("expire_after must be greater than refresh_after")
        self._name = name
        self._loader = loader
        self._refresh_after = refresh_after
        self._expire_after = expire_after
        self._executor = executor
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[K, _Entry[V]] = {}
        self._inflight: Dict[K, Future] = {}
        self._generations: Dict[K, int] = {}

    def get(self, key: K) -> V:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                age = self._clock() - entry.loaded_at
                if age < self._refresh_after:
                    return entry.value
                if age < self._expire_after:
                    self._start_load_locked(key)
                    return entry.value
            future = self._start_load_locked(key)
        return future.result()

    @property
    def name(self) -> str:
        return self._name

    def reload(self, key: K) -> V:
        """Load ``key`` now, joining a load already in flight.

        The current entry keeps being served until the load succeeds.
        """
        with self._lock:
            future = self._start_load_locked(key)
        return future.result()

    def invalidate(self, key: K):
        with self._lock:
            self._entries.pop(key, None)
            self._inflight.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def peek(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    def _start_load_locked(self, key: K) -> Future:
        future = self._inflight.get(key)
        if future is None:
            future = self._executor.submit(self._load, key, self._generations.get(key, 0))
            self._inflight[key] = future
        return future

    def _load(self, key: K, generation: int) -> V:
        try:
            value = self._loader(key)
        except Exception as exc:
            with self._lock:
                if self._generations.get(key, 0) == generation:
                    self._inflight.pop(key, None)
            emit("WARN", "IDENTITY", f"Cache load failed: cache={self._name} key={key} error={exc}")
            raise
        with self._lock:
            if self._generations.get(key, 0) == generation:
                self._entries[key] = _Entry(value, self._clock())
                self._inflight.pop(key, None)
        return value


class IdentityCache:
    """Per-site member and site-user mappings with coalesced refresh."""

    def __init__(
        self,
        member_loader: Callable[[str], MemberIdMapping],
        site_user_loader: Callable[[str], MemberIdMapping],
        *,
        refresh_after: float,
        expire_after: float,
        executor: Executor,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._members = RefreshingCache(
            "member_ids",
            member_loader,
            refresh_after=refresh_after,
            expire_after=expire_after,
            executor=executor,
            clock=clock,
        )
        self._site_users = RefreshingCache(
            "site_users",
            site_user_loader,
            refresh_after=refresh_after,
            expire_after=expire_after,
            executor=executor,
            clock=clock,
        )
        self._locks_guard = threading.Lock()
        self._refresh_locks: Dict[tuple[str, str], threading.Lock] = {}

    def member_mapping(self, site_url: str) -> MemberIdMapping:
        return self._members.get(site_url)

    def site_user_mapping(self, site_url: str) -> MemberIdMapping:
        return self._site_users.get(site_url)

    def refresh_member_mapping(self, site_url: str, observed: MemberIdMapping) -> MemberIdMapping:
        return self._refresh(self._members, site_url, observed)

    def refresh_site_user_mapping(self, site_url: str, observed: Optional[MemberIdMapping]) -> MemberIdMapping:
        return self._refresh(self._site_users, site_url, observed)

    def invalidate(self, site_url: str):
        self._members.invalidate(site_url)
        self._site_users.invalidate(site_url)

    def _refresh_lock(self, cache_name: str, site_url: str) -> threading.Lock:
        with self._locks_guard:
            return self._refresh_locks.setdefault((cache_name, site_url), threading.Lock())

    def _refresh(self, cache: RefreshingCache, site_url: str, observed) -> MemberIdMapping:
        # Held across the reload so callers that saw the same stale snapshot
        # queue up behind one refresher of this site only.
        with self._refresh_lock(cache.name, site_url):
            current = cache.get(site_url)
            if current is not observed:
                return current
            emit("INFO", "IDENTITY", f"Refreshing mapping: cache={cache.name} site={site_url}")
            try:
                return cache.reload(site_url)
            except Exception as exc:
                previous = cache.peek(site_url)
                if previous is None:
                    previous = observed
                if previous is None:
                    raise
                emit("WARN", "IDENTITY", f"Refresh failed, keeping previous mapping: cache={cache.name} site={site_url} error={exc}")
                return previous
