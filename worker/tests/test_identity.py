import sys
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spsync.identity import IdentityCache, MemberIdMapping, RefreshingCache
from spsync.models import UserPrincipal


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class CountingLoader:
    def __init__(self, delay: float = 0.0):
        self.calls = 0
        self._delay = delay
        self._lock = threading.Lock()

    def __call__(self, site_url):
        with self._lock:
            self.calls += 1
            generation = self.calls
        if self._delay:
            time.sleep(self._delay)
        return MemberIdMapping({generation: UserPrincipal(f"user{generation}")})


def _wait_for(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@patch("spsync.identity.emit")
class RefreshingCacheTests(unittest.TestCase):
    def setUp(self):
        self.executor = ThreadPoolExecutor(max_workers=4)
        self.clock = FakeClock()

    def tearDown(self):
        self.executor.shutdown(wait=True)

    def _cache(self, loader):
        return RefreshingCache("test", loader, refresh_after=10, expire_after=20, executor=self.executor, clock=self.clock)

    def test_fresh_entry_is_served_without_reload(self, _emit):
        loader = CountingLoader()
        cache = self._cache(loader)
        first = cache.get("s")
        self.clock.now += 5
        self.assertIs(cache.get("s"), first)
        self.assertEqual(loader.calls, 1)

    def test_stale_entry_is_served_while_reloading(self, _emit):
        release = threading.Event()
        calls = []

        def loader(key):
            calls.append(key)
            if len(calls) > 1:
                release.wait(2)
            return MemberIdMapping({len(calls): UserPrincipal("u")})

        cache = self._cache(loader)
        first = cache.get("s")
        self.clock.now += 15
        self.assertIs(cache.get("s"), first)
        release.set()
        self.assertTrue(_wait_for(lambda: cache.peek("s") is not first))
        self.assertEqual(len(calls), 2)

    def test_expired_entry_is_reloaded_synchronously(self, _emit):
        loader = CountingLoader()
        cache = self._cache(loader)
        first = cache.get("s")
        self.clock.now += 25
        second = cache.get("s")
        self.assertIsNot(second, first)
        self.assertEqual(loader.calls, 2)

    def test_failed_reload_keeps_previous_entry(self, _emit):
        calls = []

        def loader(key):
            calls.append(key)
            if len(calls) > 1:
                raise RuntimeError("boom")
            return MemberIdMapping({})

        cache = self._cache(loader)
        first = cache.get("s")
        self.clock.now += 15
        self.assertIs(cache.get("s"), first)
        self.assertTrue(_wait_for(lambda: len(calls) == 2))
        self.assertIs(cache.peek("s"), first)

    def test_failed_forced_reload_keeps_previous_entry(self, _emit):
        calls = []

        def loader(key):
            calls.append(key)
            if len(calls) > 1:
                raise RuntimeError("directory unavailable")
            return MemberIdMapping({1: UserPrincipal("alice")})

        cache = self._cache(loader)
        first = cache.get("s")
        with self.assertRaises(RuntimeError):
            cache.reload("s")
        self.assertIs(cache.peek("s"), first)
        self.assertIs(cache.get("s"), first)

    def test_reload_joins_load_in_flight(self, _emit):
        release = threading.Event()
        loader = CountingLoader()

        def slow(key):
            release.wait(2)
            return loader(key)

        cache = self._cache(slow)
        waiter = self.executor.submit(cache.get, "s")
        self.assertTrue(_wait_for(lambda: "s" in cache._inflight))
        reloader = self.executor.submit(cache.reload, "s")
        release.set()
        self.assertIs(reloader.result(2), waiter.result(2))
        self.assertEqual(loader.calls, 1)

    def test_invalidate_discards_load_in_flight(self, _emit):
        release = threading.Event()
        loader = CountingLoader()

        def slow(key):
            if loader.calls == 0:
                release.wait(2)
            return loader(key)

        cache = self._cache(slow)
        stale = self.executor.submit(cache.get, "s")
        self.assertTrue(_wait_for(lambda: "s" in cache._inflight))
        cache.invalidate("s")
        self.assertNotIn("s", cache._inflight)
        release.set()
        stale_value = stale.result(2)
        self.assertIsNone(cache.peek("s"))

        fresh = cache.get("s")
        self.assertIsNot(fresh, stale_value)
        self.assertIs(cache.peek("s"), fresh)
        self.assertEqual(loader.calls, 2)

    def test_expire_must_exceed_refresh(self, _emit):
        with self.assertRaises(ValueError):
            RefreshingCache("bad", CountingLoader(), refresh_after=10, expire_after=10, executor=self.executor)


@patch("spsync.identity.emit")
class IdentityCacheTests(unittest.TestCase):
    def setUp(self):
        self.executor = ThreadPoolExecutor(max_workers=4)

    def tearDown(self):
        self.executor.shutdown(wait=True)

    def test_concurrent_refreshes_of_same_snapshot_coalesce(self, _emit):
        members = CountingLoader(delay=0.05)
        cache = IdentityCache(members, CountingLoader(), refresh_after=600, expire_after=900, executor=self.executor)
        observed = cache.member_mapping("http://sp/sites/a")
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def refresh():
            barrier.wait()
            value = cache.refresh_member_mapping("http://sp/sites/a", observed)
            with results_lock:
                results.append(value)

        threads = [threading.Thread(target=refresh) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        # One initial load plus exactly one refresh.
        self.assertEqual(members.calls, 2)
        self.assertEqual(len(results), 8)
        self.assertTrue(all(value is results[0] for value in results))
        self.assertIsNot(results[0], observed)

    def test_refresh_with_outdated_snapshot_returns_current(self, _emit):
        members = CountingLoader()
        cache = IdentityCache(members, CountingLoader(), refresh_after=600, expire_after=900, executor=self.executor)
        old = cache.member_mapping("s")
        new = cache.refresh_member_mapping("s", old)
        self.assertIs(cache.refresh_member_mapping("s", old), new)
        self.assertEqual(members.calls, 2)

    def test_failed_refresh_keeps_previous_snapshot(self, mock_emit):
        calls = []

        def members(site_url):
            calls.append(site_url)
            if len(calls) > 1:
                raise RuntimeError("directory unavailable")
            return MemberIdMapping({1: UserPrincipal("alice")})

        cache = IdentityCache(members, CountingLoader(), refresh_after=600, expire_after=900, executor=self.executor)
        observed = cache.member_mapping("s")
        self.assertIs(cache.refresh_member_mapping("s", observed), observed)
        self.assertIs(cache.member_mapping("s"), observed)
        self.assertEqual(len(calls), 2)
        self.assertEqual(mock_emit.call_args.args[0], "WARN")

    def test_sites_are_cached_independently(self, _emit):
        members = CountingLoader()
        site_users = CountingLoader()
        cache = IdentityCache(members, site_users, refresh_after=600, expire_after=900, executor=self.executor)
        cache.member_mapping("a")
        cache.member_mapping("b")
        cache.member_mapping("a")
        cache.site_user_mapping("a")
        self.assertEqual(members.calls, 2)
        self.assertEqual(site_users.calls, 1)


if __name__ == "__main__":
    unittest.main()
